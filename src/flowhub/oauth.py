"""Summary: OAuth helper utilities for the Gmail integration.

Importance: Generates authorization URLs, code exchanges, and refresh grants without extra dependencies.
Alternatives: Use provider SDKs for OAuth flows.
"""

from __future__ import annotations

import json
import logging
import secrets
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from flowhub.config import AppConfig
from flowhub.errors import SourceAuthError, SourceError


logger = logging.getLogger(__name__)

GOOGLE_SCOPES = (
    "https://www.googleapis.com/auth/gmail.readonly "
    "https://www.googleapis.com/auth/userinfo.email"
)


@dataclass(frozen=True)
class OAuthTokenResult:
    """Summary: Normalized OAuth token response data.

    Importance: Provides a consistent token representation for credential snapshots.
    Alternatives: Store the raw provider response without normalization.
    """

    access_token: str
    refresh_token: str | None
    expires_at: datetime | None
    token_type: str | None
    scope: str | None
    raw: dict[str, Any]

    @staticmethod
    def from_response(payload: dict[str, Any], now: datetime | None = None) -> "OAuthTokenResult":
        """Summary: Build an OAuthTokenResult from a provider payload.

        Importance: Normalizes expiry and optional fields.
        Alternatives: Use provider-specific token response classes.
        """

        if "access_token" not in payload:
            raise SourceAuthError("Token response did not include an access token")
        issued_at = now or datetime.now(timezone.utc)
        expires_in = payload.get("expires_in")
        expires_at = None
        if isinstance(expires_in, (int, float)):
            expires_at = issued_at + timedelta(seconds=expires_in)
        return OAuthTokenResult(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_at=expires_at,
            token_type=payload.get("token_type"),
            scope=payload.get("scope"),
            raw=payload,
        )


def create_state_token() -> str:
    """Summary: Generate a CSRF state token.

    Importance: Protects OAuth flows from CSRF attacks.
    Alternatives: Use server-side session storage with pre-generated tokens.
    """

    return secrets.token_urlsafe(24)


def build_google_auth_url(config: AppConfig, state: str) -> str:
    """Summary: Build a Google OAuth authorization URL.

    Importance: Enables read-only Gmail authorization with offline refresh.
    Alternatives: Use a different OAuth helper library.
    """

    params = {
        "client_id": config.google_client_id,
        "redirect_uri": config.oauth_redirect_uri,
        "response_type": "code",
        "access_type": "offline",
        "prompt": "consent",
        "scope": GOOGLE_SCOPES,
        "state": state,
    }
    return "https://accounts.google.com/o/oauth2/v2/auth?" + urllib.parse.urlencode(params)


def exchange_oauth_code(config: AppConfig, code: str) -> OAuthTokenResult:
    """Summary: Exchange an OAuth authorization code for tokens.

    Importance: Completes the connect flow by retrieving access and refresh tokens.
    Alternatives: Use provider SDKs or external auth services.
    """

    payload = _token_payload(config, code)
    response = _post_form(config.google_token_url, payload)
    return OAuthTokenResult.from_response(response)


def refresh_oauth_token(config: AppConfig, refresh_token: str) -> OAuthTokenResult:
    """Summary: Obtain a new access token with the refresh-token grant.

    Importance: Keeps polling alive after the short-lived access token expires.
    Alternatives: Force the user to reconnect on every expiry.
    """

    response = _post_form(config.google_token_url, _refresh_payload(config, refresh_token))
    result = OAuthTokenResult.from_response(response)
    if result.refresh_token is None:
        # Google omits the refresh token on refresh grants.
        result = OAuthTokenResult(
            access_token=result.access_token,
            refresh_token=refresh_token,
            expires_at=result.expires_at,
            token_type=result.token_type,
            scope=result.scope,
            raw=result.raw,
        )
    return result


def _token_payload(config: AppConfig, code: str) -> dict[str, str]:
    _ensure_oauth_config(config.google_client_id, config.google_client_secret)
    return {
        "client_id": config.google_client_id,
        "client_secret": config.google_client_secret,
        "code": code,
        "grant_type": "authorization_code",
        "redirect_uri": config.oauth_redirect_uri,
    }


def _refresh_payload(config: AppConfig, refresh_token: str) -> dict[str, str]:
    _ensure_oauth_config(config.google_client_id, config.google_client_secret)
    return {
        "client_id": config.google_client_id,
        "client_secret": config.google_client_secret,
        "refresh_token": refresh_token,
        "grant_type": "refresh_token",
    }


def _ensure_oauth_config(client_id: str, client_secret: str) -> None:
    """Summary: Validate that OAuth credentials exist.

    Importance: Prevents confusing token exchange errors when credentials are missing.
    Alternatives: Allow requests to fail at the provider endpoint.
    """

    if not client_id or not client_secret:
        raise ValueError("Missing OAuth client credentials for google")


def _post_form(url: str, payload: dict[str, str]) -> dict[str, Any]:
    """Summary: Send a form-encoded POST request and parse JSON.

    Importance: Avoids new dependencies while supporting OAuth exchanges.
    Alternatives: Use requests or a provider SDK.
    """

    data = urllib.parse.urlencode(payload).encode("utf-8")
    request = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=10) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        error_body = exc.read().decode("utf-8")
        logger.warning("Token endpoint returned %s", exc.code)
        if exc.code in (400, 401):
            raise SourceAuthError(f"Token request rejected: {error_body or exc.reason}") from exc
        raise SourceError(f"Token request failed: {error_body or exc.reason}") from exc
    except urllib.error.URLError as exc:
        raise SourceError(f"Token endpoint unreachable: {exc.reason}") from exc
    return json.loads(raw)
