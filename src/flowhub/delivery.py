"""Summary: Fire-and-continue delivery sinks for task lifecycle events.

Importance: Publishes tasks to calendars and logs without making those side effects fatal.
Alternatives: Call calendar APIs inline from the task service.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from flowhub.storage.sqlite_store import StoredTask


logger = logging.getLogger(__name__)

CALENDAR_ALARM_MINUTES = (60, 30, 10)


class DeliverySink(ABC):
    """Summary: Receives task lifecycle events.

    Importance: Lets calendar, email, or push delivery plug in behind one interface.
    Alternatives: Hardcode a single calendar integration.
    """

    name = "sink"

    @abstractmethod
    def task_created(self, task: StoredTask) -> dict[str, Any] | None:
        """Summary: Publish a new task; return metadata to merge into the task, if any."""

    @abstractmethod
    def task_updated(self, task: StoredTask) -> dict[str, Any] | None:
        """Summary: Publish a changed task; return metadata to merge, if any."""

    @abstractmethod
    def task_removed(self, task: StoredTask) -> None:
        """Summary: Withdraw a deleted task."""


class LoggingSink(DeliverySink):
    name = "log"

    def task_created(self, task: StoredTask) -> dict[str, Any] | None:
        logger.info("Task %s created: %s (%s)", task.id, task.title, task.priority)
        return None

    def task_updated(self, task: StoredTask) -> dict[str, Any] | None:
        logger.info("Task %s updated: due %s, status %s", task.id, task.due_at, task.status)
        return None

    def task_removed(self, task: StoredTask) -> None:
        logger.info("Task %s removed", task.id)


class IcsCalendarSink(DeliverySink):
    """Summary: Writes one iCalendar file per scheduled task.

    Importance: Provides calendar delivery without a hosted calendar API.
    Alternatives: Insert events through the Google Calendar API.
    """

    name = "ics"

    def __init__(self, export_dir: Path) -> None:
        self._export_dir = export_dir

    def task_created(self, task: StoredTask) -> dict[str, Any] | None:
        if task.due_at is None:
            return None
        event_id = _event_id(task)
        self._write(task, event_id)
        return {"calendar_event_id": event_id}

    def task_updated(self, task: StoredTask) -> dict[str, Any] | None:
        event_id = task.metadata.get("calendar_event_id")
        if task.due_at is None:
            return None
        if not event_id:
            return self.task_created(task)
        self._write(task, event_id)
        return None

    def task_removed(self, task: StoredTask) -> None:
        event_id = task.metadata.get("calendar_event_id")
        if not event_id:
            return
        path = self._export_dir / f"{event_id}.ics"
        if path.exists():
            path.unlink()

    def _write(self, task: StoredTask, event_id: str) -> None:
        self._export_dir.mkdir(parents=True, exist_ok=True)
        path = self._export_dir / f"{event_id}.ics"
        path.write_text(render_task_event(task, event_id), encoding="utf-8")


class SinkDispatcher:
    """Summary: Fans lifecycle events out to every sink and swallows sink failures.

    Importance: Task creation, update, and completion succeed even if delivery fails.
    Alternatives: Retry delivery in a background queue.
    """

    def __init__(self, sinks: list[DeliverySink] | None = None) -> None:
        self._sinks = list(sinks or [])

    def task_created(self, task: StoredTask) -> dict[str, Any]:
        return self._collect("task_created", task)

    def task_updated(self, task: StoredTask) -> dict[str, Any]:
        return self._collect("task_updated", task)

    def task_removed(self, task: StoredTask) -> None:
        for sink in self._sinks:
            try:
                sink.task_removed(task)
            except Exception:
                logger.exception("Delivery sink %s failed on task_removed for task %s", sink.name, task.id)

    def _collect(self, event: str, task: StoredTask) -> dict[str, Any]:
        updates: dict[str, Any] = {}
        for sink in self._sinks:
            try:
                result = getattr(sink, event)(task)
            except Exception:
                logger.exception("Delivery sink %s failed on %s for task %s", sink.name, event, task.id)
                continue
            if result:
                updates.update(result)
        return updates


def render_task_event(task: StoredTask, event_id: str) -> str:
    """Summary: Render a task as a VEVENT with popup alarms.

    Importance: Calendar clients show the task at its due time with advance reminders.
    Alternatives: Use an iCalendar library.
    """

    start = task.due_at or datetime.now(timezone.utc)
    end = start + timedelta(hours=24)
    description = f"FlowHub Task: {task.description}\\n\\nPriority: {task.priority}\\nStatus: {task.status}"
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//FlowHub//Tasks//EN",
        "BEGIN:VEVENT",
        f"UID:{event_id}",
        f"DTSTAMP:{_ics_time(task.updated_at)}",
        f"DTSTART:{_ics_time(start)}",
        f"DTEND:{_ics_time(end)}",
        f"SUMMARY:{_escape(task.title)}",
        f"DESCRIPTION:{_escape(description)}",
    ]
    for minutes in CALENDAR_ALARM_MINUTES:
        lines.extend(
            [
                "BEGIN:VALARM",
                "ACTION:DISPLAY",
                f"DESCRIPTION:{_escape(task.title)}",
                f"TRIGGER:-PT{minutes}M",
                "END:VALARM",
            ]
        )
    lines.extend(["END:VEVENT", "END:VCALENDAR"])
    return "\r\n".join(lines) + "\r\n"


def _event_id(task: StoredTask) -> str:
    return f"flowhub-task-{task.id}"


def _ics_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _escape(value: str) -> str:
    return value.replace(",", "\\,").replace(";", "\\;").replace("\n", "\\n")
