"""Summary: Application configuration for FlowHub.

Importance: Centralizes environment, .env, and config defaults for consistent behavior.
Alternatives: Use a dedicated settings library like Pydantic Settings.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class AppConfig:
    """Summary: Holds configuration values for providers, storage, and schedulers.

    Importance: Ensures all services derive settings from a single source of truth.
    Alternatives: Store settings in a shared config file and parse at startup.
    """

    db_path: str
    ai_provider: str
    openai_api_key: str | None
    openai_model: str
    ollama_url: str
    ollama_model: str
    api_host: str
    api_port: int
    api_key: str
    default_user_name: str
    default_user_email: str
    token_secret: str
    google_client_id: str = ""
    google_client_secret: str = ""
    google_token_url: str = "https://oauth2.googleapis.com/token"
    google_api_base_url: str = "https://gmail.googleapis.com/gmail/v1"
    oauth_redirect_uri: str = "http://localhost:8000/oauth/callback"
    poll_interval_seconds: int = 15
    dedup_window_seconds: int = 10
    ledger_gc_seconds: int = 3600
    reminder_sweep_seconds: int = 60
    escalation_window_minutes: int = 120
    local_utc_offset_minutes: int = 330
    ai_max_attempts: int = 3
    ai_backoff_seconds: float = 2.0
    default_plan_type: str = "free"
    plan_limits: dict[str, int] = field(
        default_factory=lambda: {"free": 20, "basic": 100, "premium": 500, "enterprise": 0}
    )
    calendar_export_dir: str = "calendar"

    @staticmethod
    def from_env() -> "AppConfig":
        """Summary: Build configuration from defaults, .env, and environment.

        Importance: Keeps all variables defined in config defaults while allowing overrides.
        Alternatives: Parse only environment variables without a defaults file.
        """

        defaults = load_defaults(Path("config") / "defaults.json")
        load_dotenv(Path(".env"))
        return AppConfig(
            db_path=os.getenv("FLOWHUB_DB_PATH", defaults["db_path"]),
            ai_provider=os.getenv("FLOWHUB_AI_PROVIDER", defaults["ai_provider"]),
            openai_api_key=os.getenv("OPENAI_API_KEY") or defaults["openai_api_key"] or None,
            openai_model=os.getenv("OPENAI_MODEL", defaults["openai_model"]),
            ollama_url=os.getenv("OLLAMA_URL", defaults["ollama_url"]),
            ollama_model=os.getenv("OLLAMA_MODEL", defaults["ollama_model"]),
            api_host=os.getenv("FLOWHUB_API_HOST", defaults["api_host"]),
            api_port=int(os.getenv("FLOWHUB_API_PORT", defaults["api_port"])),
            api_key=os.getenv("FLOWHUB_API_KEY", defaults["api_key"]),
            default_user_name=os.getenv(
                "FLOWHUB_DEFAULT_USER_NAME", defaults["default_user_name"]
            ),
            default_user_email=os.getenv(
                "FLOWHUB_DEFAULT_USER_EMAIL", defaults["default_user_email"]
            ),
            token_secret=os.getenv("FLOWHUB_TOKEN_SECRET", defaults["token_secret"]),
            google_client_id=os.getenv("GOOGLE_CLIENT_ID", defaults["google_client_id"]),
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET", defaults["google_client_secret"]),
            google_token_url=os.getenv("GOOGLE_TOKEN_URL", defaults["google_token_url"]),
            google_api_base_url=os.getenv(
                "FLOWHUB_GMAIL_API_BASE_URL", defaults["google_api_base_url"]
            ),
            oauth_redirect_uri=os.getenv(
                "FLOWHUB_OAUTH_REDIRECT_URI", defaults["oauth_redirect_uri"]
            ),
            poll_interval_seconds=int(
                os.getenv("FLOWHUB_POLL_INTERVAL_SECONDS", defaults["poll_interval_seconds"])
            ),
            dedup_window_seconds=int(
                os.getenv("FLOWHUB_DEDUP_WINDOW_SECONDS", defaults["dedup_window_seconds"])
            ),
            ledger_gc_seconds=int(
                os.getenv("FLOWHUB_LEDGER_GC_SECONDS", defaults["ledger_gc_seconds"])
            ),
            reminder_sweep_seconds=int(
                os.getenv("FLOWHUB_REMINDER_SWEEP_SECONDS", defaults["reminder_sweep_seconds"])
            ),
            escalation_window_minutes=int(
                os.getenv(
                    "FLOWHUB_ESCALATION_WINDOW_MINUTES", defaults["escalation_window_minutes"]
                )
            ),
            local_utc_offset_minutes=int(
                os.getenv(
                    "FLOWHUB_LOCAL_UTC_OFFSET_MINUTES", defaults["local_utc_offset_minutes"]
                )
            ),
            ai_max_attempts=int(os.getenv("FLOWHUB_AI_MAX_ATTEMPTS", defaults["ai_max_attempts"])),
            ai_backoff_seconds=float(
                os.getenv("FLOWHUB_AI_BACKOFF_SECONDS", defaults["ai_backoff_seconds"])
            ),
            default_plan_type=os.getenv("FLOWHUB_DEFAULT_PLAN", defaults["default_plan_type"]),
            plan_limits=parse_plan_limits(
                os.getenv("FLOWHUB_PLAN_LIMITS", defaults["plan_limits"])
            ),
            calendar_export_dir=os.getenv(
                "FLOWHUB_CALENDAR_EXPORT_DIR", defaults["calendar_export_dir"]
            ),
        )

    def limit_for_plan(self, plan_type: str) -> int:
        """Summary: Resolve the monthly AI task ceiling for a plan.

        Importance: Drives the quota check for AI-derived task creation.
        Alternatives: Store limits per user in the database.
        """

        if plan_type in self.plan_limits:
            return self.plan_limits[plan_type]
        return self.plan_limits.get(self.default_plan_type, 0)


def load_defaults(path: Path) -> dict[str, str]:
    """Summary: Load configuration defaults from JSON.

    Importance: Ensures all variables exist in a single config file.
    Alternatives: Inline defaults in the AppConfig initializer.
    """

    if not path.exists():
        raise FileNotFoundError(f"Defaults file not found: {path}")
    return json.loads(path.read_text(encoding="utf-8"))


def load_dotenv(path: Path) -> None:
    """Summary: Load key-value pairs from a .env file into the environment.

    Importance: Keeps secrets out of code while supporting local workflows.
    Alternatives: Use python-dotenv or OS-specific secret stores.
    """

    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


def parse_plan_limits(raw: str) -> dict[str, int]:
    """Summary: Parse `plan:limit` pairs separated by commas.

    Importance: Lets deployments tune plan ceilings without code changes.
    Alternatives: Keep plan limits in a dedicated JSON document.
    """

    limits: dict[str, int] = {}
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk or ":" not in chunk:
            continue
        name, value = chunk.split(":", 1)
        limits[name.strip()] = int(value.strip())
    return limits
