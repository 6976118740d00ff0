"""Summary: Tests for credential encoding and storage.

Importance: Ensures OAuth credentials never sit in the database as plaintext.
Alternatives: Skip credential storage until a vault integration exists.
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from flowhub.models import User
from flowhub.services import ConnectionService
from flowhub.sources import Credential
from flowhub.storage.sqlite_store import SqliteStore
from flowhub.token_codec import TokenCodec


def test_token_codec_roundtrip() -> None:
    """Summary: Verify encoding and decoding restores plaintext.

    Importance: Ensures token storage can be reversed for use.
    Alternatives: Store tokens in a vault without encoding.
    """

    codec = TokenCodec("secret")
    encoded = codec.encode("token")
    assert encoded != "token"
    assert codec.decode(encoded) == "token"


def test_token_codec_mapping_roundtrip() -> None:
    codec = TokenCodec("secret")
    payload = {"access_token": "abc", "refresh_token": None}
    assert codec.decode_mapping(codec.encode_mapping(payload)) == payload


def test_token_codec_requires_secret() -> None:
    with pytest.raises(ValueError):
        TokenCodec("")


def test_connection_service_stores_encoded_credential(tmp_path: Path, clock) -> None:
    """Summary: Store and load a credential snapshot through the service.

    Importance: Pollers read snapshots from the same registry the OAuth callback writes.
    Alternatives: Keep tokens in memory.
    """

    store = SqliteStore(str(tmp_path / "test.db"))
    store.initialize()
    user_id = store.ensure_user(User(display_name="Local User", email="local@flowhub"))
    service = ConnectionService(store=store, codec=TokenCodec("secret"), clock=clock)
    credential = Credential(
        access_token="access-123",
        refresh_token="refresh-456",
        expires_at=clock() + timedelta(hours=1),
    )

    connection = service.connect_account(user_id, "gmail", "Me@Example.com", credential)

    assert connection.account_email == "me@example.com"
    assert connection.checkpoint == clock()
    assert "access-123" not in (connection.credential or "")
    assert service.get_credential(connection.id) == credential


def test_set_credential_replaces_snapshot(tmp_path: Path, clock) -> None:
    store = SqliteStore(str(tmp_path / "test.db"))
    store.initialize()
    user_id = store.ensure_user(User(display_name="Local User", email="local@flowhub"))
    service = ConnectionService(store=store, codec=TokenCodec("secret"), clock=clock)
    connection = service.connect_account(user_id, "gmail", "me@example.com", Credential("old"))

    service.set_credential(connection.id, Credential("new", refresh_token="refresh"))

    loaded = service.get_credential(connection.id)
    assert loaded is not None
    assert loaded.access_token == "new"
    assert loaded.refresh_token == "refresh"
