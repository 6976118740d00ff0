"""Summary: Accuracy-aware rescheduling of pending tasks.

Importance: Keeps due times realistic by learning how long the user actually takes.
Alternatives: Leave due times as originally estimated.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from flowhub.delivery import SinkDispatcher
from flowhub.models import COMPLETED, PENDING, PRIORITY_ORDER, utc_now
from flowhub.reminders import ReminderScheduler
from flowhub.storage.sqlite_store import SqliteStore, StoredTask


logger = logging.getLogger(__name__)

BASE_GAPS = {"urgent": 5, "important": 15, "normal": 30}
DEFAULT_GAP = 15
DEFAULT_ESTIMATE = 30
RECENT_SCHEDULE_WINDOW = timedelta(minutes=2)
MIN_SHIFT_MINUTES = 10
BASE_ESTIMATE_KEY = "base_estimated_minutes"
DUE_SET_KEY = "due_set_at"


@dataclass(frozen=True)
class RescheduledTask:
    task_id: int
    old_due_at: datetime | None
    new_due_at: datetime
    reason: str
    time_difference: int


@dataclass(frozen=True)
class ReschedulingResult:
    """Summary: Outcome of one rescheduling pass.

    Importance: Gives the caller rewritten tasks, user-facing insights, and minutes saved.
    Alternatives: Return only the count of changed tasks.
    """

    rescheduled: list[RescheduledTask] = field(default_factory=list)
    insights: list[str] = field(default_factory=list)
    total_time_saved: int = 0


@dataclass(frozen=True)
class SmartRescheduler:
    """Summary: Re-balances pending task due times for one owner.

    Importance: Uses the historical accuracy ratio and priority-ordered gap filling.
    Alternatives: Schedule tasks strictly in creation order.
    """

    store: SqliteStore
    reminders: ReminderScheduler | None = None
    dispatcher: SinkDispatcher | None = None
    utc_offset_minutes: int = 330
    clock: Callable[[], datetime] = utc_now

    def accuracy_ratio(self, owner_id: int) -> float:
        """Summary: Sum of actual minutes over sum of estimated minutes.

        Importance: Values above 1 mean the user overruns estimates.
        Alternatives: Use the median per-task ratio.
        """

        total_estimated = 0
        total_actual = 0
        for task in self.store.list_tasks(owner_id, status=COMPLETED):
            estimate = _base_estimate(task)
            if not estimate or task.started_at is None or task.completed_at is None:
                continue
            total_estimated += estimate
            total_actual += actual_minutes(task)
        if total_estimated == 0:
            return 1.0
        return total_actual / total_estimated

    def gap_minutes(self, cursor: datetime, priority: str) -> int:
        hour = cursor.astimezone(timezone(timedelta(minutes=self.utc_offset_minutes))).hour
        if 9 <= hour <= 11:
            multiplier = 0.8
        elif 14 <= hour <= 16:
            multiplier = 0.9
        elif hour >= 17 or hour <= 8:
            multiplier = 1.3
        else:
            multiplier = 1.0
        return math.ceil(BASE_GAPS.get(priority, DEFAULT_GAP) * multiplier)

    def reschedule(
        self, owner_id: int, just_completed_task_id: int | None = None
    ) -> ReschedulingResult:
        """Summary: Recompute due times for every pending task of an owner.

        Importance: Repeated calls with no task changes do not slide due times.
        Alternatives: Only schedule tasks that lack a due time.
        """

        now = self.clock()
        pending = self.store.list_tasks(owner_id, status=PENDING)
        if not pending:
            return ReschedulingResult(insights=["No pending tasks to reschedule"])

        ratio = self.accuracy_ratio(owner_id)
        insights: list[str] = []
        if just_completed_task_id is not None:
            insight = self._completion_insight(just_completed_task_id)
            if insight:
                insights.append(insight)

        pending.sort(key=_schedule_order)
        cursor = now
        rescheduled: list[RescheduledTask] = []
        for task in pending:
            old_due = task.due_at
            recently_set = now - due_set_at(task) < RECENT_SCHEDULE_WINDOW
            if old_due is not None and old_due > now and recently_set:
                # Recently scheduled tasks keep their slot but still occupy the timeline.
                cursor = max(cursor, old_due)
                continue
            base = _base_estimate(task) or DEFAULT_ESTIMATE
            adjusted = math.ceil(base * ratio)
            cursor = cursor + timedelta(minutes=self.gap_minutes(cursor, task.priority))
            new_due = cursor + timedelta(minutes=adjusted)
            cursor = new_due

            if old_due is None:
                difference = math.ceil((new_due - now).total_seconds() / 60)
                reason = (
                    "Scheduled based on current workload and "
                    f"{round(ratio * 100)}% historical accuracy"
                )
            else:
                difference = math.ceil((new_due - old_due).total_seconds() / 60)
                if abs(difference) < MIN_SHIFT_MINUTES:
                    continue
                if difference > 0:
                    reason = f"Delayed by {difference} minutes due to workload optimization"
                else:
                    reason = (
                        f"Moved earlier by {abs(difference)} minutes "
                        "based on faster completion patterns"
                    )
            updated = self._apply(task, new_due, adjusted, base, now)
            rescheduled.append(
                RescheduledTask(
                    task_id=task.id,
                    old_due_at=old_due,
                    new_due_at=new_due,
                    reason=reason,
                    time_difference=difference,
                )
            )
            if updated is not None:
                self._notify(updated)

        if ratio > 1.2:
            insights.append(
                f"You typically take {round((ratio - 1) * 100)}% longer than estimated "
                "- schedules adjusted accordingly"
            )
        elif ratio < 0.8:
            insights.append(
                f"You complete tasks {round((1 - ratio) * 100)}% faster than estimated "
                "- creating tighter schedules"
            )
        if rescheduled:
            insights.append(
                f"Smart rescheduling optimized {len(rescheduled)} tasks based on your work patterns"
            )
        total_saved = sum(-item.time_difference for item in rescheduled if item.time_difference < 0)
        logger.info(
            "Rescheduled %s of %s pending tasks for owner %s (ratio %.2f)",
            len(rescheduled),
            len(pending),
            owner_id,
            ratio,
        )
        return ReschedulingResult(
            rescheduled=rescheduled, insights=insights, total_time_saved=total_saved
        )

    def _apply(
        self, task: StoredTask, new_due: datetime, adjusted: int, base: int, now: datetime
    ) -> StoredTask | None:
        metadata = dict(task.metadata)
        metadata[BASE_ESTIMATE_KEY] = base
        metadata[DUE_SET_KEY] = now.isoformat()
        return self.store.update_task(
            task.id, now, due_at=new_due, estimated_minutes=adjusted, metadata=metadata
        )

    def _notify(self, task: StoredTask) -> None:
        if self.reminders is not None:
            self.reminders.reschedule_task(task)
        if self.dispatcher is not None:
            updates = self.dispatcher.task_updated(task)
            if updates:
                self.store.update_task(task.id, task.updated_at, metadata={**task.metadata, **updates})

    def _completion_insight(self, task_id: int) -> str | None:
        task = self.store.get_task(task_id)
        if task is None or task.started_at is None or task.completed_at is None:
            return None
        actual = actual_minutes(task)
        estimated = _base_estimate(task) or DEFAULT_ESTIMATE
        if actual > estimated * 1.2:
            return f"Recent task took {actual - estimated} minutes longer than expected"
        if actual < estimated * 0.8:
            return f"Recent task completed {estimated - actual} minutes faster than expected"
        return None


def actual_minutes(task: StoredTask) -> int:
    """Actual minutes recorded on completion, else the ceiling of elapsed wall time."""

    if task.actual_minutes is not None:
        return task.actual_minutes
    if task.started_at is None or task.completed_at is None:
        return 0
    return math.ceil((task.completed_at - task.started_at).total_seconds() / 60)


def due_set_at(task: StoredTask) -> datetime:
    """When the due time was last written; tasks without a stamp got theirs at creation."""

    stamp = task.metadata.get(DUE_SET_KEY)
    if isinstance(stamp, str):
        try:
            return datetime.fromisoformat(stamp)
        except ValueError:
            logger.debug("Ignoring malformed %s on task %s", DUE_SET_KEY, task.id)
    return task.created_at


def _base_estimate(task: StoredTask) -> int | None:
    base = task.metadata.get(BASE_ESTIMATE_KEY)
    if isinstance(base, (int, float)) and base > 0:
        return int(base)
    return task.estimated_minutes


def _schedule_order(task: StoredTask) -> tuple[int, int, float]:
    priority = PRIORITY_ORDER.get(task.priority, 2)
    if task.due_at is None:
        return (priority, 1, 0.0)
    return (priority, 0, task.due_at.timestamp())
