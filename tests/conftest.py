"""Summary: Shared fixtures for FlowHub tests.

Importance: Gives every test the same fixed clock and an isolated configuration.
Alternatives: Freeze time with a third-party library.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from flowhub.config import AppConfig


# Monday 2026-10-19 10:00 in UTC+05:30.
START = datetime(2026, 10, 19, 4, 30, tzinfo=timezone.utc)


class FakeClock:
    """Summary: Manually advanced clock injected wherever components read time.

    Importance: Makes windows, reminders, and rescheduling deterministic.
    Alternatives: Sleep in tests and accept flakiness.
    """

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    """Summary: Build a test configuration rooted in a temporary directory.

    Importance: Keeps database and calendar files out of the working tree.
    Alternatives: Load config/defaults.json and patch the environment.
    """

    return AppConfig(
        db_path=str(tmp_path / "test.db"),
        ai_provider="mock",
        openai_api_key=None,
        openai_model="gpt-4o-mini",
        ollama_url="http://localhost:11434",
        ollama_model="llama3",
        api_host="127.0.0.1",
        api_port=8000,
        api_key="",
        default_user_name="Local User",
        default_user_email="local@flowhub",
        token_secret="test-secret",
        google_client_id="client-id",
        google_client_secret="client-secret",
        calendar_export_dir=str(tmp_path / "calendar"),
    )
