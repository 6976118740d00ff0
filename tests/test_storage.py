"""Summary: Tests for SQLite storage layer.

Importance: Ensures persistence behaves as expected for core workflows.
Alternatives: Rely on manual testing for storage operations.
"""

from __future__ import annotations

import threading
from datetime import timedelta
from pathlib import Path

import pytest

from flowhub.models import COMPLETED, Notification, Task, User
from flowhub.storage.sqlite_store import SqliteStore


def _store(tmp_path: Path) -> tuple[SqliteStore, int]:
    store = SqliteStore(str(tmp_path / "test.db"))
    store.initialize()
    user_id = store.ensure_user(User(display_name="Local User", email="local@flowhub"))
    return store, user_id


def _notification(source_item_id: str | None = "msg-1") -> Notification:
    return Notification(
        title="New email from Priya",
        description="Budget review: Please submit",
        type="important",
        source_app="gmail",
        source_item_id=source_item_id,
        metadata={"full_content": "Subject: Budget review\n\nPlease submit"},
    )


def test_users_are_idempotent(tmp_path: Path) -> None:
    store, user_id = _store(tmp_path)
    again = store.ensure_user(User(display_name="Other Name", email="local@flowhub"))
    assert again == user_id
    store.set_user_plan(user_id, "premium")
    user = store.get_user(user_id)
    assert user is not None
    assert user.plan_type == "premium"


def test_task_crud(tmp_path: Path, clock) -> None:
    """Summary: Verify tasks are saved, updated, and deleted.

    Importance: Every scheduler and service writes through these methods.
    Alternatives: Store tasks as notes.
    """

    store, user_id = _store(tmp_path)
    task_id = store.add_task(
        Task(title="Submit draft", estimated_minutes=30, due_at=clock() + timedelta(hours=2)),
        user_id,
        clock(),
    )
    clock.advance(minutes=5)
    updated = store.update_task(
        task_id, clock(), status=COMPLETED, actual_minutes=25, metadata={"note": "done"}
    )
    assert updated is not None
    assert updated.status == COMPLETED
    assert updated.actual_minutes == 25
    assert updated.metadata == {"note": "done"}
    assert updated.updated_at == clock()
    assert updated.due_at == clock() - timedelta(minutes=5) + timedelta(hours=2)
    with pytest.raises(ValueError):
        store.update_task(task_id, clock(), owner="someone")
    assert store.get_task(task_id, user_id=user_id + 1) is None
    assert store.delete_task(task_id, user_id)
    assert store.get_task(task_id) is None


def test_notification_written_once_per_source_item(tmp_path: Path, clock) -> None:
    """Summary: Verify the durable dedup insert refuses duplicates.

    Importance: Restarts and overlapping polls must not double-notify.
    Alternatives: Check and insert in separate statements.
    """

    store, user_id = _store(tmp_path)
    first = store.create_notification_if_absent(_notification(), user_id, clock())
    second = store.create_notification_if_absent(_notification(), user_id, clock())
    assert first is not None
    assert second is None
    assert len(store.find_notifications_by_source_item(user_id, "msg-1")) == 1
    stored = store.get_notification(first)
    assert stored is not None
    assert stored.metadata["full_content"].startswith("Subject: Budget review")

    store.dismiss_notification(first)
    assert store.list_notifications(user_id) == []
    assert len(store.list_notifications(user_id, include_dismissed=True)) == 1


def test_priority_contacts_normalized(tmp_path: Path) -> None:
    store, user_id = _store(tmp_path)
    first = store.add_priority_contact(user_id, " Boss@Corp.Example ", "Boss")
    assert store.add_priority_contact(user_id, "boss@corp.example") == first
    assert store.list_priority_contacts(user_id) == ["boss@corp.example"]
    assert store.remove_priority_contact(user_id, "BOSS@corp.example")
    assert not store.remove_priority_contact(user_id, "boss@corp.example")


def test_connection_upsert_reuses_row(tmp_path: Path, clock) -> None:
    store, user_id = _store(tmp_path)
    first = store.upsert_connection(user_id, "gmail", "me@example.com", "enc-1", "active", clock())
    store.update_connection_checkpoint(first, clock())
    store.update_connection_status(first, "auth_failed")
    second = store.upsert_connection(user_id, "gmail", "me@example.com", "enc-2", "active", clock())
    assert first == second
    connection = store.get_connection(first)
    assert connection is not None
    assert connection.credential == "enc-2"
    assert connection.status == "active"
    assert connection.checkpoint == clock()
    assert [item.id for item in store.list_connections(status="active")] == [first]


def test_ai_task_limit_enforced(tmp_path: Path, clock) -> None:
    store, user_id = _store(tmp_path)
    created = [
        store.create_ai_task_with_limit(Task(title=f"Task {n}"), user_id, "2026-10", 2, clock())
        for n in range(3)
    ]
    assert created[0] is not None and created[1] is not None
    assert created[2] is None
    assert store.get_ai_usage(user_id, "2026-10") == 2
    assert len(store.list_tasks(user_id)) == 2
    assert store.create_ai_task_with_limit(Task(title="Next"), user_id, "2026-11", 2, clock())


def test_unlimited_plan_still_counts(tmp_path: Path, clock) -> None:
    store, user_id = _store(tmp_path)
    for n in range(5):
        assert store.create_ai_task_with_limit(Task(title=f"T{n}"), user_id, "2026-10", 0, clock())
    assert store.get_ai_usage(user_id, "2026-10") == 5


def test_concurrent_conversions_never_exceed_limit(tmp_path: Path, clock) -> None:
    """Summary: Verify the quota reservation is atomic across threads.

    Importance: Two simultaneous conversions must not both take the last slot.
    Alternatives: Serialize conversions with an application lock.
    """

    store, user_id = _store(tmp_path)
    barrier = threading.Barrier(10)
    results: list[int | None] = []
    results_lock = threading.Lock()

    def _convert(index: int) -> None:
        barrier.wait()
        task_id = store.create_ai_task_with_limit(
            Task(title=f"Task {index}"), user_id, "2026-10", 3, clock()
        )
        with results_lock:
            results.append(task_id)

    threads = [threading.Thread(target=_convert, args=(index,)) for index in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len([task_id for task_id in results if task_id is not None]) == 3
    assert store.get_ai_usage(user_id, "2026-10") == 3
    assert len(store.list_tasks(user_id)) == 3
