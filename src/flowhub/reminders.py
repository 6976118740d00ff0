"""Summary: Reminder firing and deadline escalation for tasks.

Importance: Surfaces upcoming deadlines and promotes important tasks as they near.
Alternatives: Delegate reminders entirely to an external calendar.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable

from flowhub.models import COMPLETED, IMPORTANT, URGENT, Notification, utc_now
from flowhub.storage.sqlite_store import SqliteStore, StoredTask


logger = logging.getLogger(__name__)

REMINDER_OFFSETS = (
    (60, "1 hour"),
    (30, "30 minutes"),
    (15, "15 minutes"),
    (10, "10 minutes"),
    (5, "5 minutes"),
)

REMINDER_INSIGHTS = ["Complete task", "Reschedule task", "Mark as done"]


@dataclass(frozen=True)
class Reminder:
    """Summary: One pending or fired reminder for a task.

    Importance: A task holds at most one ordered set of these.
    Alternatives: Store reminders as rows in SQLite.
    """

    task_id: int
    fire_at: datetime
    label: str
    fired: bool = False


@dataclass(frozen=True)
class SweepReport:
    promoted: list[int] = field(default_factory=list)
    fired: list[Reminder] = field(default_factory=list)


class ReminderScheduler:
    """Summary: In-memory reminder registry with a periodic sweep.

    Importance: Fires reminder notifications and escalates near-deadline tasks.
    Alternatives: Schedule one timer per reminder.
    """

    def __init__(
        self,
        store: SqliteStore,
        sweep_seconds: float = 60,
        escalation_window: timedelta = timedelta(hours=2),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._sweep_seconds = sweep_seconds
        self._escalation_window = escalation_window
        self._clock = clock
        self._reminders: dict[int, list[Reminder]] = {}
        self._lock = threading.Lock()
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None

    def schedule_task(self, task: StoredTask) -> list[Reminder]:
        """Summary: Replace the task's reminder set with future offsets only.

        Importance: Offsets already in the past are dropped, never fired retroactively.
        Alternatives: Fire every missed reminder immediately.
        """

        if task.due_at is None or task.status == COMPLETED:
            self.clear_task(task.id)
            return []
        now = self._clock()
        reminders = [
            Reminder(task_id=task.id, fire_at=task.due_at - timedelta(minutes=minutes), label=label)
            for minutes, label in REMINDER_OFFSETS
            if task.due_at - timedelta(minutes=minutes) > now
        ]
        with self._lock:
            if reminders:
                self._reminders[task.id] = reminders
            else:
                self._reminders.pop(task.id, None)
        return list(reminders)

    def clear_task(self, task_id: int) -> None:
        with self._lock:
            self._reminders.pop(task_id, None)

    def reschedule_task(self, task: StoredTask) -> list[Reminder]:
        self.clear_task(task.id)
        return self.schedule_task(task)

    def pending(self, task_id: int) -> list[Reminder]:
        with self._lock:
            return [reminder for reminder in self._reminders.get(task_id, []) if not reminder.fired]

    def tracked_tasks(self) -> list[int]:
        with self._lock:
            return sorted(self._reminders)

    def escalate(self) -> list[int]:
        """Summary: Promote important tasks due within the escalation window to urgent.

        Importance: One-directional; urgent tasks are never demoted here.
        Alternatives: Recompute priority from scratch on every sweep.
        """

        now = self._clock()
        promoted: list[int] = []
        for task in self._store.list_tasks_by_priority(IMPORTANT):
            if task.status == COMPLETED or task.due_at is None:
                continue
            remaining = task.due_at - now
            if timedelta(0) < remaining < self._escalation_window:
                self._store.update_task(task.id, now, priority=URGENT)
                promoted.append(task.id)
                logger.info(
                    "Promoted task %s from important to urgent (%s minutes remaining)",
                    task.id,
                    round(remaining.total_seconds() / 60),
                )
        return promoted

    def sweep(self) -> SweepReport:
        """Summary: Escalate, then fire every due and unfired reminder.

        Importance: Single periodic pass keeps reminders and priorities consistent.
        Alternatives: Run escalation and reminders on separate timers.
        """

        try:
            promoted = self.escalate()
        except Exception:
            logger.exception("Priority escalation failed")
            promoted = []
        now = self._clock()
        with self._lock:
            due = [
                reminder
                for reminders in self._reminders.values()
                for reminder in reminders
                if not reminder.fired and reminder.fire_at <= now
            ]
        fired: list[Reminder] = []
        for reminder in due:
            try:
                delivered = self._deliver(reminder, now)
            except Exception:
                logger.exception("Failed to deliver reminder for task %s", reminder.task_id)
                continue
            self._mark_fired(reminder)
            if delivered:
                fired.append(reminder)
        self._prune()
        return SweepReport(promoted=promoted, fired=fired)

    def backfill(self) -> int:
        """Summary: Register reminders for every open task with a future due time.

        Importance: Restores the in-memory registry after a restart.
        Alternatives: Persist reminders and reload them.
        """

        now = self._clock()
        count = 0
        for user in self._store.list_users():
            for task in self._store.list_tasks(user.id):
                if task.due_at is None or task.status == COMPLETED or task.due_at <= now:
                    continue
                self.schedule_task(task)
                count += 1
        logger.info("Backfilled reminders for %s tasks", count)
        return count

    def start(self) -> None:
        """Summary: Backfill and start the periodic sweep on the running event loop."""

        if self._task is not None and not self._task.done():
            logger.warning("Reminder scheduler already running")
            return
        self.backfill()
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run(self._stop_event))
        logger.info("Reminder scheduler started (every %ss)", self._sweep_seconds)

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Reminder scheduler stopped")

    async def _run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.sleep(self._sweep_seconds)
                await asyncio.to_thread(self.sweep)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Reminder sweep failed")

    def _deliver(self, reminder: Reminder, now: datetime) -> bool:
        task = self._store.get_task(reminder.task_id)
        if task is None or task.status == COMPLETED:
            self.clear_task(reminder.task_id)
            return False
        source_type = _source_type(task)
        self._store.create_notification(
            Notification(
                title=f"Task Due in {reminder.label}",
                description=(
                    f'{source_type} task "{task.title}" is due in {reminder.label}. '
                    f"{task.description or 'Click to view task details.'}"
                ),
                type="browser_notification",
                source_app="system",
                ai_summary=f"Reminder for {source_type.lower()} task due in {reminder.label}",
                actionable_insights=list(REMINDER_INSIGHTS),
                metadata={
                    "task_id": task.id,
                    "reminder_type": reminder.label,
                    "source_type": source_type,
                    "browser_notification": True,
                    "task_title": task.title,
                    "task_priority": task.priority,
                    "due_at": task.due_at.isoformat() if task.due_at else None,
                    "reminder_timestamp": now.isoformat(),
                },
            ),
            task.user_id,
            now,
        )
        logger.info("Reminder fired for task %s due in %s", task.id, reminder.label)
        return True

    def _mark_fired(self, reminder: Reminder) -> None:
        with self._lock:
            reminders = self._reminders.get(reminder.task_id)
            if not reminders:
                return
            self._reminders[reminder.task_id] = [
                replace(item, fired=True) if item == reminder else item for item in reminders
            ]

    def _prune(self) -> None:
        with self._lock:
            for task_id in list(self._reminders):
                active = [item for item in self._reminders[task_id] if not item.fired]
                if active:
                    self._reminders[task_id] = active
                else:
                    del self._reminders[task_id]


def _source_type(task: StoredTask) -> str:
    if task.metadata.get("ai_generated"):
        return "AI Converted"
    if task.source_app == "gmail":
        return "Mail Converted"
    return "Manual"
