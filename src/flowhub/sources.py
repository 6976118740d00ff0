"""Summary: Message source interfaces and implementations.

Importance: Encapsulates read-only listing and fetching of third-party messages.
Alternatives: Rely solely on provider SDKs with vendor lock-in.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import threading
import urllib.error
import urllib.parse
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

from flowhub.config import AppConfig
from flowhub.errors import SourceAuthError, SourceError
from flowhub.models import ItemRef, RawItem
from flowhub.oauth import refresh_oauth_token


logger = logging.getLogger(__name__)

GMAIL_LIST_LIMIT = 20

AUTOMATED_SENDER_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^no-reply@",
        r"^noreply@",
        r"^donotreply@",
        r"^do-not-reply@",
        r"^security@.*\.google\.com$",
        r"^security@.*\.microsoft\.com$",
        r"^security@.*\.apple\.com$",
        r"^.*@accounts\.google\.com$",
        r"^.*@facebookmail\.com$",
        r"^.*@mail\.twitter\.com$",
        r"^.*@notification\.amazon\.com$",
    )
]

_ANGLE_EMAIL = re.compile(r"<([^>]+)>")
_BARE_EMAIL = re.compile(r"([a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})")
_HTML_TAG = re.compile(r"<[^>]*>")


@dataclass(frozen=True)
class Credential:
    """Summary: Immutable snapshot of an account's OAuth credential.

    Importance: A poll tick reads one snapshot; a refresh produces a new one.
    Alternatives: Mutate a shared token object in place.
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scope: str | None = None

    def expires_soon(self, now: datetime, margin: timedelta = timedelta(seconds=60)) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at - margin <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "token_type": self.token_type,
            "scope": self.scope,
        }

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "Credential":
        expires_raw = payload.get("expires_at")
        return Credential(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_at=datetime.fromisoformat(expires_raw) if expires_raw else None,
            token_type=payload.get("token_type") or "Bearer",
            scope=payload.get("scope"),
        )


class MessageSource(ABC):
    """Summary: Abstract interface for a polled message source.

    Importance: Lets the ingestion loop run unchanged against Gmail or fakes.
    Alternatives: Use provider-specific classes directly in the poller.
    """

    name = "source"

    @abstractmethod
    def list_new_items(self, credential: Credential, checkpoint: datetime) -> list[ItemRef]:
        """Summary: List unread items received after the checkpoint.

        Importance: Bounds each tick to new work only.
        Alternatives: Fetch a fixed number of recent messages every time.
        """

    @abstractmethod
    def fetch_item(self, credential: Credential, ref: ItemRef) -> RawItem:
        """Summary: Fetch the full content of one listed item."""

    @abstractmethod
    def refresh_credential(self, credential: Credential) -> Credential:
        """Summary: Produce a fresh credential snapshot or raise SourceAuthError."""

    @abstractmethod
    def account_email(self, credential: Credential) -> str:
        """Summary: Resolve the account address a credential belongs to."""


class GmailMessageSource(MessageSource):
    """Summary: Reads Gmail messages through the REST API using OAuth tokens.

    Importance: Provides OAuth-based read-only ingestion without IMAP passwords.
    Alternatives: Use IMAP or the Google client library.
    """

    name = "gmail"

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self._base_url = config.google_api_base_url.rstrip("/")

    def list_new_items(self, credential: Credential, checkpoint: datetime) -> list[ItemRef]:
        query = f"is:unread category:primary after:{int(checkpoint.timestamp())}"
        params = urllib.parse.urlencode({"q": query, "maxResults": GMAIL_LIST_LIMIT})
        payload = _gmail_api_get(
            f"{self._base_url}/users/me/messages?{params}", credential.access_token
        )
        refs: list[ItemRef] = []
        for item in payload.get("messages", []) or []:
            message_id = item.get("id")
            if message_id:
                refs.append(ItemRef(external_id=message_id, thread_id=item.get("threadId")))
        return refs

    def fetch_item(self, credential: Credential, ref: ItemRef) -> RawItem:
        detail_url = f"{self._base_url}/users/me/messages/{ref.external_id}?format=full"
        return parse_gmail_message(_gmail_api_get(detail_url, credential.access_token))

    def account_email(self, credential: Credential) -> str:
        """Return the mailbox address the credential belongs to."""

        profile = _gmail_api_get(f"{self._base_url}/users/me/profile", credential.access_token)
        email = profile.get("emailAddress")
        if not email:
            raise SourceError("Gmail profile did not include an email address")
        return str(email).lower()

    def refresh_credential(self, credential: Credential) -> Credential:
        """Summary: Refresh the access token with the stored refresh token.

        Importance: Recovers from expired access tokens without user action.
        Alternatives: Mark the account disconnected on every 401.
        """

        if not credential.refresh_token:
            raise SourceAuthError("No refresh token available")
        try:
            result = refresh_oauth_token(self._config, credential.refresh_token)
        except ValueError as exc:
            raise SourceAuthError(str(exc)) from exc
        return Credential(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_at=result.expires_at,
            token_type=result.token_type or credential.token_type,
            scope=result.scope or credential.scope,
        )


class MockMessageSource(MessageSource):
    """Summary: In-memory message source for tests and demos.

    Importance: Supports offline runs of the full ingestion pipeline.
    Alternatives: Record Gmail HTTP traffic and replay it.
    """

    name = "mock"

    def __init__(
        self, items: list[RawItem] | None = None, email: str = "mock@flowhub.local"
    ) -> None:
        self._items: dict[str, RawItem] = {}
        self.email = email
        self._lock = threading.Lock()
        self.auth_failures = 0
        self.refresh_fails = False
        self.valid_tokens: set[str] | None = None
        self.list_calls = 0
        self.fetch_calls = 0
        self.refresh_calls = 0
        self.on_fetch: Callable[[ItemRef], None] | None = None
        for item in items or []:
            self.add_item(item)

    @staticmethod
    def from_fixture(path: Path) -> "MockMessageSource":
        """Summary: Load items from a JSON fixture file.

        Importance: Lets the CLI demo ingestion without a Gmail account.
        Alternatives: Hardcode sample data in the class.
        """

        data = json.loads(path.read_text(encoding="utf-8"))
        items = [
            RawItem(
                external_id=entry["id"],
                sender=entry["from"],
                sender_email=extract_sender_email(entry["from"]),
                subject=entry.get("subject", ""),
                body=entry.get("body", ""),
                received_at=_parse_received(entry.get("received_at")),
                source_app=entry.get("source_app", "gmail"),
            )
            for entry in data
        ]
        return MockMessageSource(items)

    def add_item(self, item: RawItem) -> None:
        with self._lock:
            self._items[item.external_id] = item

    def list_new_items(self, credential: Credential, checkpoint: datetime) -> list[ItemRef]:
        self._check_auth(credential)
        with self._lock:
            self.list_calls += 1
            items = list(self._items.values())
        return [ItemRef(external_id=item.external_id) for item in items if item.received_at > checkpoint]

    def fetch_item(self, credential: Credential, ref: ItemRef) -> RawItem:
        self._check_auth(credential)
        with self._lock:
            self.fetch_calls += 1
            item = self._items.get(ref.external_id)
        if self.on_fetch is not None:
            self.on_fetch(ref)
        if item is None:
            raise SourceError(f"Unknown item: {ref.external_id}")
        return item

    def account_email(self, credential: Credential) -> str:
        self._check_auth(credential)
        return self.email

    def refresh_credential(self, credential: Credential) -> Credential:
        self.refresh_calls += 1
        if self.refresh_fails:
            raise SourceAuthError("Refresh token revoked")
        refreshed = replace(credential, access_token=f"{credential.access_token}-r{self.refresh_calls}")
        if self.valid_tokens is not None:
            self.valid_tokens.add(refreshed.access_token)
        return refreshed

    def _check_auth(self, credential: Credential) -> None:
        if self.auth_failures > 0:
            self.auth_failures -= 1
            raise SourceAuthError("Access token rejected")
        if self.valid_tokens is not None and credential.access_token not in self.valid_tokens:
            raise SourceAuthError("Access token rejected")


def is_automated_sender(sender_email: str) -> bool:
    """Summary: Detect automated system senders that never produce work.

    Importance: Skips no-reply and vendor security mail before classification.
    Alternatives: Let the classifier mark these items as skip.
    """

    return any(pattern.search(sender_email) for pattern in AUTOMATED_SENDER_PATTERNS)


def extract_sender_email(sender: str) -> str:
    """Summary: Extract a normalized email address from a From header.

    Importance: Priority-contact matching and sender filtering compare addresses only.
    Alternatives: Use email.utils.parseaddr.
    """

    match = _ANGLE_EMAIL.search(sender)
    if match:
        return match.group(1).strip().lower()
    if "@" in sender:
        bare = _BARE_EMAIL.search(sender)
        if bare:
            return bare.group(1).strip().lower()
    return sender.strip().lower()


def _gmail_api_get(url: str, access_token: str) -> dict[str, Any]:
    """Summary: Fetch JSON data from the Gmail API.

    Importance: Encapsulates Gmail API calls and maps 401 to an auth failure.
    Alternatives: Use a third-party HTTP client or SDK.
    """

    request = urllib.request.Request(
        url,
        headers={"Authorization": f"Bearer {access_token}"},
        method="GET",
    )
    try:
        with urllib.request.urlopen(request, timeout=10) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        error_body = exc.read().decode("utf-8", errors="ignore")
        if exc.code == 401:
            raise SourceAuthError(f"Gmail rejected credential: {error_body or exc.reason}") from exc
        raise SourceError(f"Gmail API request failed ({exc.code}): {error_body or exc.reason}") from exc
    except urllib.error.URLError as exc:
        raise SourceError(f"Gmail API unreachable: {exc.reason}") from exc
    return json.loads(raw)


def parse_gmail_message(message: dict[str, Any]) -> RawItem:
    """Summary: Parse a Gmail message payload into a RawItem.

    Importance: Normalizes Gmail payloads into the core item model.
    Alternatives: Store raw Gmail payloads and parse later.
    """

    payload = message.get("payload") or {}
    headers = _parse_gmail_headers(payload.get("headers", []))
    sender = headers.get("From", "Unknown Sender")
    internal_date = message.get("internalDate")
    received_at = datetime.now(timezone.utc)
    if internal_date:
        try:
            received_at = datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
        except ValueError:
            logger.debug("Unparseable internalDate %s", internal_date)
    body = _extract_gmail_body(payload) or message.get("snippet", "")
    return RawItem(
        external_id=message.get("id", ""),
        sender=sender,
        sender_email=extract_sender_email(sender),
        subject=headers.get("Subject", "No Subject"),
        body=body,
        received_at=received_at,
        source_app="gmail",
    )


def _parse_gmail_headers(headers: list[dict[str, Any]]) -> dict[str, str]:
    normalized: dict[str, str] = {}
    for header in headers:
        name = header.get("name")
        value = header.get("value")
        if name and value:
            normalized[name] = value
    return normalized


def _extract_gmail_body(payload: dict[str, Any]) -> str:
    """Summary: Extract a plain text body from a Gmail payload.

    Importance: Prefers text/plain and falls back to tag-stripped HTML.
    Alternatives: Store the snippet only for Gmail messages.
    """

    text_parts: list[str] = []
    html_parts: list[str] = []
    for part in _walk_gmail_parts(payload):
        data = (part.get("body") or {}).get("data")
        if not data:
            continue
        decoded = _decode_base64url(data)
        mime_type = part.get("mimeType")
        if mime_type == "text/plain":
            text_parts.append(decoded)
        elif mime_type == "text/html":
            html_parts.append(_HTML_TAG.sub("", decoded))
    if text_parts:
        return "\n".join(item.strip() for item in text_parts if item.strip()).strip()
    if html_parts:
        return "\n".join(item.strip() for item in html_parts if item.strip()).strip()
    return ""


def _walk_gmail_parts(payload: dict[str, Any]) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = [payload]
    for part in payload.get("parts", []) or []:
        parts.extend(_walk_gmail_parts(part))
    return parts


def _decode_base64url(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("utf-8")).decode("utf-8", errors="ignore")


def _parse_received(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
