"""Summary: Tests for per-account polling, dedup, and credential refresh.

Importance: Ensures ingestion is idempotent and isolates auth failures per account.
Alternatives: Exercise ingestion only through a live Gmail account.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from flowhub.ai import MockAiProvider
from flowhub.classifier import ItemClassifier
from flowhub.deriver import TaskDeriver
from flowhub.ingestion import AccountPoller, AccountState, IngestionSupervisor, to_account
from flowhub.ledger import DedupLedger
from flowhub.models import IMPORTANT, NORMAL, URGENT, RawItem, User
from flowhub.services import ConnectionService
from flowhub.sources import Credential, MockMessageSource, extract_sender_email
from flowhub.storage.sqlite_store import SqliteStore, StoredConnection
from flowhub.token_codec import TokenCodec


@dataclass
class _Pipeline:
    store: SqliteStore
    user_id: int
    source: MockMessageSource
    classifier: ItemClassifier
    deriver: TaskDeriver
    ledger: DedupLedger
    connections: ConnectionService
    supervisor: IngestionSupervisor

    def poller(self, connection: StoredConnection, clock) -> AccountPoller:
        return AccountPoller(
            to_account(connection),
            self.source,
            self.connections,
            self.store,
            self.classifier,
            self.deriver,
            self.ledger,
            clock=clock,
        )


def _pipeline(tmp_path: Path, clock) -> _Pipeline:
    """Summary: Wire a full ingestion pipeline around a mock source.

    Importance: Mirrors the production wiring in build_container.
    Alternatives: Construct only the poller under test.
    """

    store = SqliteStore(str(tmp_path / "test.db"))
    store.initialize()
    user_id = store.ensure_user(User(display_name="Local User", email="local@flowhub"))
    source = MockMessageSource(email="me@example.com")
    classifier = ItemClassifier(MockAiProvider(), clock=clock)
    deriver = TaskDeriver()
    ledger = DedupLedger(window=timedelta(seconds=10), clock=clock)
    connections = ConnectionService(store=store, codec=TokenCodec("secret"), clock=clock)
    supervisor = IngestionSupervisor(
        store,
        connections,
        {"gmail": source},
        classifier,
        deriver,
        ledger,
        poll_interval_seconds=0.01,
        clock=clock,
    )
    connections.supervisor = supervisor
    return _Pipeline(store, user_id, source, classifier, deriver, ledger, connections, supervisor)


def _item(external_id: str, sender: str, subject: str, body: str, received_at: datetime) -> RawItem:
    return RawItem(
        external_id=external_id,
        sender=sender,
        sender_email=extract_sender_email(sender),
        subject=subject,
        body=body,
        received_at=received_at,
    )


def _budget_item(received_at: datetime) -> RawItem:
    return _item(
        "msg-001",
        "Priya Raman <priya@acme.example>",
        "Quarterly budget review",
        "Please submit the draft budget by tomorrow and send the final version next Friday.",
        received_at,
    )


def _connect(pipeline: _Pipeline, credential: Credential | None = None) -> StoredConnection:
    return pipeline.connections.connect_account(
        pipeline.user_id,
        "gmail",
        "me@example.com",
        credential or Credential("token", refresh_token="refresh"),
    )


def test_tick_persists_actionable_items_only(tmp_path: Path, clock) -> None:
    """Summary: Verify one notification per actionable item and none for system mail.

    Importance: Skip items and automated senders must never reach the user.
    Alternatives: Store everything and filter in the UI.
    """

    pipeline = _pipeline(tmp_path, clock)
    connection = _connect(pipeline)
    received = clock.advance(minutes=1)
    pipeline.source.add_item(_budget_item(received))
    pipeline.source.add_item(
        _item("msg-002", "Sam <sam@friends.example>", "hey", "Hey, how are you?", received)
    )
    pipeline.source.add_item(
        _item(
            "msg-003",
            "IT Desk <it@corp.example>",
            "Your verification code",
            "Your verification code is 482913.",
            received,
        )
    )
    pipeline.source.add_item(
        _item("msg-004", "Accounts <no-reply@accounts.example>", "Welcome", "Hello", received)
    )

    state = pipeline.supervisor.tick_now(connection.id)

    assert state == AccountState.IDLE
    budget = pipeline.store.find_notifications_by_source_item(pipeline.user_id, "msg-001")
    casual = pipeline.store.find_notifications_by_source_item(pipeline.user_id, "msg-002")
    assert len(budget) == 1 and len(casual) == 1
    assert budget[0].type == IMPORTANT
    assert casual[0].type == NORMAL
    assert budget[0].metadata["full_content"].startswith("Subject: Quarterly budget review\n\n")
    assert [draft["title"] for draft in budget[0].metadata["drafts"]] == [
        "Submit draft budget",
        "Send final version",
    ]
    assert pipeline.store.find_notifications_by_source_item(pipeline.user_id, "msg-003") == []
    assert pipeline.store.find_notifications_by_source_item(pipeline.user_id, "msg-004") == []
    stored = pipeline.store.get_connection(connection.id)
    assert stored is not None and stored.checkpoint == clock()


def test_overlapping_ticks_and_restarts_do_not_duplicate(tmp_path: Path, clock) -> None:
    """Summary: Verify the ledger window and the durable lookup both suppress repeats.

    Importance: Processing the same item twice must yield one notification.
    Alternatives: Trust the checkpoint alone.
    """

    pipeline = _pipeline(tmp_path, clock)
    connection = _connect(pipeline)
    pipeline.source.add_item(_budget_item(clock.advance(minutes=1)))

    pipeline.poller(connection, clock).tick()
    fetches = pipeline.source.fetch_calls
    pipeline.poller(connection, clock).tick()
    assert pipeline.source.fetch_calls == fetches

    clock.advance(seconds=11)
    pipeline.poller(connection, clock).tick()
    assert pipeline.source.fetch_calls == fetches + 1
    assert len(pipeline.store.find_notifications_by_source_item(pipeline.user_id, "msg-001")) == 1


def test_auth_failure_refreshes_once_and_recovers(tmp_path: Path, clock) -> None:
    pipeline = _pipeline(tmp_path, clock)
    connection = _connect(pipeline)
    pipeline.source.add_item(_budget_item(clock.advance(minutes=1)))
    pipeline.source.auth_failures = 1

    assert pipeline.supervisor.tick_now(connection.id) == AccountState.IDLE

    assert pipeline.source.refresh_calls == 1
    credential = pipeline.connections.get_credential(connection.id)
    assert credential is not None and credential.access_token == "token-r1"
    assert pipeline.store.find_notifications_by_source_item(pipeline.user_id, "msg-001")


def test_second_auth_failure_marks_account_failed(tmp_path: Path, clock) -> None:
    """Summary: Verify a rejected refreshed credential stops the poller and alerts.

    Importance: The user must reconnect instead of the loop retrying forever.
    Alternatives: Keep polling with the stale credential.
    """

    pipeline = _pipeline(tmp_path, clock)
    connection = _connect(pipeline)
    pipeline.source.auth_failures = 2

    assert pipeline.supervisor.tick_now(connection.id) == AccountState.AUTH_FAILED
    stored = pipeline.store.get_connection(connection.id)
    assert stored is not None and stored.status == "auth_failed"
    alerts = [
        item
        for item in pipeline.store.list_notifications(pipeline.user_id)
        if item.title == "Gmail Connection Lost"
    ]
    assert len(alerts) == 1

    assert pipeline.supervisor.tick_now(connection.id) == AccountState.AUTH_FAILED
    assert pipeline.source.refresh_calls == 1


def test_revoked_refresh_token_marks_account_failed(tmp_path: Path, clock) -> None:
    pipeline = _pipeline(tmp_path, clock)
    connection = _connect(pipeline)
    pipeline.source.auth_failures = 1
    pipeline.source.refresh_fails = True
    assert pipeline.supervisor.tick_now(connection.id) == AccountState.AUTH_FAILED


def test_expiring_credential_refreshed_before_listing(tmp_path: Path, clock) -> None:
    pipeline = _pipeline(tmp_path, clock)
    connection = _connect(
        pipeline,
        Credential("token", refresh_token="refresh", expires_at=clock() + timedelta(seconds=30)),
    )
    assert pipeline.supervisor.tick_now(connection.id) == AccountState.IDLE
    assert pipeline.source.refresh_calls == 1
    assert pipeline.source.list_calls == 1


def test_stopping_mid_tick_discards_results(tmp_path: Path, clock) -> None:
    """Summary: Verify a poller stopped during a tick writes nothing.

    Importance: Disconnecting an account must not leak late notifications.
    Alternatives: Let the in-flight tick finish and persist.
    """

    pipeline = _pipeline(tmp_path, clock)
    connection = _connect(pipeline)
    pipeline.source.add_item(_budget_item(clock.advance(minutes=1)))
    pipeline.source.on_fetch = lambda _ref: pipeline.supervisor.stop(connection.id)
    poller = pipeline.supervisor.poller(connection.id)
    assert poller is not None

    assert poller.tick() == AccountState.STOPPED
    assert pipeline.store.list_notifications(pipeline.user_id) == []
    assert pipeline.supervisor.state(connection.id) is None
    stored = pipeline.store.get_connection(connection.id)
    assert stored is not None and stored.checkpoint == clock() - timedelta(minutes=1)


def test_priority_contact_items_are_urgent(tmp_path: Path, clock) -> None:
    pipeline = _pipeline(tmp_path, clock)
    pipeline.store.add_priority_contact(pipeline.user_id, "boss@corp.example")
    connection = _connect(pipeline)
    pipeline.source.add_item(
        _item("msg-9", "Boss <boss@corp.example>", "hey", "how are you", clock.advance(minutes=1))
    )

    pipeline.supervisor.tick_now(connection.id)

    notification = pipeline.store.find_notifications_by_source_item(pipeline.user_id, "msg-9")[0]
    assert notification.type == URGENT
    assert notification.metadata["is_priority_person"] is True
    assert notification.metadata["priority_reason"] == "Priority Contact"


def test_supervisor_polls_accounts_connected_while_running(tmp_path: Path, clock) -> None:
    """Summary: Verify connecting an account on a running loop starts polling immediately.

    Importance: OAuth callbacks arrive while the API server loop is running.
    Alternatives: Pick up new accounts on the next restart only.
    """

    pipeline = _pipeline(tmp_path, clock)
    pipeline.source.add_item(_budget_item(clock() + timedelta(minutes=1)))

    async def _run() -> AccountState | None:
        await pipeline.supervisor.start()
        connection = _connect(pipeline)
        for _ in range(200):
            if pipeline.store.list_notifications(pipeline.user_id):
                break
            await asyncio.sleep(0.01)
        state = pipeline.supervisor.state(connection.id)
        await pipeline.supervisor.stop_all()
        return state

    state = asyncio.run(_run())

    assert state in (AccountState.IDLE, AccountState.POLLING)
    assert len(pipeline.store.find_notifications_by_source_item(pipeline.user_id, "msg-001")) == 1


def test_recover_registers_active_accounts(tmp_path: Path, clock) -> None:
    pipeline = _pipeline(tmp_path, clock)
    connection = _connect(pipeline)
    pipeline.supervisor.stop(connection.id)
    assert pipeline.supervisor.state(connection.id) is None
    assert pipeline.supervisor.recover() == 1
    assert pipeline.supervisor.state(connection.id) == AccountState.IDLE


def test_failed_item_is_retried_before_checkpoint_moves(tmp_path: Path, clock) -> None:
    """Summary: Verify an item that fails mid-processing is picked up on a later tick.

    Importance: A transient fetch error must not move the checkpoint past unread mail.
    Alternatives: Advance the checkpoint and accept the lost item.
    """

    pipeline = _pipeline(tmp_path, clock)
    connection = _connect(pipeline)
    connected_at = clock()
    pipeline.source.add_item(_budget_item(clock.advance(minutes=1)))
    failures = [RuntimeError("connection reset")]

    def _fail_once(_ref) -> None:
        if failures:
            raise failures.pop()

    pipeline.source.on_fetch = _fail_once
    poller = pipeline.poller(connection, clock)

    assert poller.tick() == AccountState.IDLE
    assert pipeline.store.find_notifications_by_source_item(pipeline.user_id, "msg-001") == []
    stored = pipeline.store.get_connection(connection.id)
    assert stored is not None and stored.checkpoint == connected_at
    assert poller.checkpoint == connected_at

    clock.advance(seconds=30)
    assert poller.tick() == AccountState.IDLE
    assert len(pipeline.store.find_notifications_by_source_item(pipeline.user_id, "msg-001")) == 1
    stored = pipeline.store.get_connection(connection.id)
    assert stored is not None and stored.checkpoint == clock()


def test_unexpected_tick_error_returns_poller_to_idle(tmp_path: Path, clock, monkeypatch) -> None:
    pipeline = _pipeline(tmp_path, clock)
    connection = _connect(pipeline)
    poller = pipeline.poller(connection, clock)

    def _broken_listing(credential, checkpoint):
        raise ValueError("unexpected listing payload")

    monkeypatch.setattr(pipeline.source, "list_new_items", _broken_listing)
    with pytest.raises(ValueError):
        poller.tick()
    assert poller.state == AccountState.IDLE

    monkeypatch.undo()
    pipeline.source.add_item(_budget_item(clock.advance(minutes=1)))
    assert poller.tick() == AccountState.IDLE
    assert len(pipeline.store.find_notifications_by_source_item(pipeline.user_id, "msg-001")) == 1
