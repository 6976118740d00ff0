"""Summary: Tests for the task lifecycle service.

Importance: Ensures edits, completion, and deletion keep reminders and calendar files in step.
Alternatives: Exercise task flows only through the API.
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from flowhub.app import AppContainer, build_container
from flowhub.config import AppConfig
from flowhub.errors import NotFoundError
from flowhub.models import COMPLETED, IN_PROGRESS, PAUSED
from flowhub.rescheduler import BASE_ESTIMATE_KEY, DUE_SET_KEY
from flowhub.sources import MockMessageSource


def _container(config: AppConfig, clock) -> AppContainer:
    return build_container(
        config, sources={"gmail": MockMessageSource()}, clock=clock, sleep=lambda _: None
    )


def test_create_task_registers_reminders_and_calendar_event(config: AppConfig, clock) -> None:
    """Summary: Verify a dated task gets five reminders and an exported event.

    Importance: Manual tasks surface the same way AI tasks do.
    Alternatives: Only remind for AI-derived tasks.
    """

    container = _container(config, clock)
    task = container.tasks.create_task(
        container.default_user_id,
        "Prepare slides",
        priority="important",
        estimated_minutes=40,
        due_at=clock() + timedelta(hours=2),
    )

    assert [reminder.label for reminder in container.reminders.pending(task.id)] == [
        "1 hour",
        "30 minutes",
        "15 minutes",
        "10 minutes",
        "5 minutes",
    ]
    assert task.metadata["calendar_event_id"] == f"flowhub-task-{task.id}"
    assert (Path(config.calendar_export_dir) / f"flowhub-task-{task.id}.ics").exists()
    assert container.usage.check_limit(container.default_user_id).current_count == 0


def test_create_task_validates_input(config: AppConfig, clock) -> None:
    container = _container(config, clock)
    with pytest.raises(ValueError):
        container.tasks.create_task(container.default_user_id, "   ")
    with pytest.raises(ValueError):
        container.tasks.create_task(container.default_user_id, "Fix it", priority="critical")
    with pytest.raises(ValueError):
        container.tasks.list_tasks(container.default_user_id, status="archived")


def test_small_due_changes_keep_reminders(config: AppConfig, clock) -> None:
    """Summary: Verify reminders regenerate only when the due time moves a minute or more.

    Importance: Cosmetic edits must not reset reminders that are about to fire.
    Alternatives: Regenerate reminders on every update.
    """

    container = _container(config, clock)
    user_id = container.default_user_id
    due = clock() + timedelta(hours=2)
    task = container.tasks.create_task(user_id, "Call supplier", due_at=due)

    container.tasks.update_task(user_id, task.id, due_at=due + timedelta(seconds=30))
    assert container.reminders.pending(task.id)[0].fire_at == due - timedelta(hours=1)

    moved = due + timedelta(minutes=30)
    container.tasks.update_task(user_id, task.id, due_at=moved)
    assert container.reminders.pending(task.id)[0].fire_at == moved - timedelta(hours=1)


def test_estimate_edit_resets_base_estimate(config: AppConfig, clock) -> None:
    container = _container(config, clock)
    user_id = container.default_user_id
    task = container.tasks.create_task(user_id, "Write report", estimated_minutes=20)

    container.tasks.reschedule(user_id)
    scheduled = container.tasks.get_task(user_id, task.id)
    assert scheduled.metadata[BASE_ESTIMATE_KEY] == 20

    edited = container.tasks.update_task(user_id, task.id, estimated_minutes=45)
    assert edited.estimated_minutes == 45
    assert BASE_ESTIMATE_KEY not in edited.metadata


def test_start_pause_and_complete(config: AppConfig, clock) -> None:
    """Summary: Verify completion records elapsed minutes from the first start.

    Importance: Actual durations drive the rescheduler's accuracy ratio.
    Alternatives: Ask the user how long the task took.
    """

    container = _container(config, clock)
    user_id = container.default_user_id
    task = container.tasks.create_task(
        user_id, "Review budget", estimated_minutes=30, due_at=clock() + timedelta(hours=3)
    )
    started_at = clock()

    started = container.tasks.start_task(user_id, task.id)
    assert started.task.status == IN_PROGRESS
    assert started.task.started_at == started_at

    clock.advance(minutes=20)
    paused = container.tasks.pause_task(user_id, task.id)
    assert paused.task.status == PAUSED

    clock.advance(minutes=5)
    resumed = container.tasks.start_task(user_id, task.id)
    assert resumed.task.started_at == started_at

    clock.advance(minutes=20)
    done = container.tasks.complete_task(user_id, task.id)
    assert done.task.status == COMPLETED
    assert done.task.actual_minutes == 45
    assert done.task.completed_at == clock()
    assert done.rescheduling.insights == ["No pending tasks to reschedule"]
    assert container.reminders.pending(task.id) == []


def test_delete_task_removes_calendar_event(config: AppConfig, clock) -> None:
    container = _container(config, clock)
    user_id = container.default_user_id
    task = container.tasks.create_task(user_id, "Book venue", due_at=clock() + timedelta(days=1))
    path = Path(config.calendar_export_dir) / f"flowhub-task-{task.id}.ics"
    assert path.exists()

    container.tasks.delete_task(user_id, task.id)

    assert not path.exists()
    assert container.reminders.pending(task.id) == []
    with pytest.raises(NotFoundError):
        container.tasks.delete_task(user_id, task.id)


def test_tasks_are_scoped_to_their_owner(config: AppConfig, clock) -> None:
    container = _container(config, clock)
    task = container.tasks.create_task(container.default_user_id, "Private task")
    other = container.users.create_user("Other", "other@flowhub")
    with pytest.raises(NotFoundError):
        container.tasks.get_task(other, task.id)
    assert container.tasks.list_tasks(other) == []


def test_due_edit_holds_slot_but_rename_does_not(config: AppConfig, clock) -> None:
    """Summary: Verify a user-set due time is kept briefly while a rename is not.

    Importance: Rescheduling right after a manual due edit must not undo it.
    Alternatives: Freeze every task after any edit.
    """

    container = _container(config, clock)
    user_id = container.default_user_id
    task = container.tasks.create_task(
        user_id, "Draft memo", estimated_minutes=30, due_at=clock() + timedelta(hours=6)
    )
    clock.advance(hours=1)

    container.tasks.update_task(user_id, task.id, title="Renamed memo")
    assert [item.task_id for item in container.tasks.reschedule(user_id).rescheduled] == [task.id]

    clock.advance(minutes=5)
    chosen = clock() + timedelta(hours=4)
    edited = container.tasks.update_task(user_id, task.id, due_at=chosen)
    assert edited.metadata[DUE_SET_KEY] == clock().isoformat()
    assert container.tasks.reschedule(user_id).rescheduled == []
    assert container.tasks.get_task(user_id, task.id).due_at == chosen
