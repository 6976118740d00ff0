"""Summary: Domain model dataclasses for FlowHub.

Importance: Defines the core entities shared across ingestion, scheduling, and storage.
Alternatives: Use Pydantic models or ORM classes directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


URGENT = "urgent"
IMPORTANT = "important"
NORMAL = "normal"
SKIP = "skip"

PRIORITIES = (URGENT, IMPORTANT, NORMAL)
PRIORITY_ORDER = {URGENT: 0, IMPORTANT: 1, NORMAL: 2}

PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
PAUSED = "paused"

TASK_STATUSES = (PENDING, IN_PROGRESS, COMPLETED, PAUSED)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class User:
    """Summary: Represents an owner of accounts, notifications, and tasks.

    Importance: Anchors data ownership and plan quotas.
    Alternatives: Keep only a single implicit user without records.
    """

    display_name: str
    email: str
    plan_type: str = "free"


@dataclass(frozen=True)
class ItemRef:
    """Summary: Lightweight handle returned by a source listing.

    Importance: Lets the poller dedupe before paying for a full fetch.
    Alternatives: Fetch full items directly from the listing call.
    """

    external_id: str
    thread_id: str | None = None


@dataclass(frozen=True)
class RawItem:
    """Summary: Represents a third-party message fetched from a source.

    Importance: Immutable input to classification and task derivation.
    Alternatives: Pass provider payload dictionaries around directly.
    """

    external_id: str
    sender: str
    sender_email: str
    subject: str
    body: str
    received_at: datetime
    source_app: str = "gmail"

    @property
    def full_content(self) -> str:
        """Subject and body exactly as stored in notification metadata."""
        return f"Subject: {self.subject}\n\n{self.body}"


@dataclass(frozen=True)
class ClassificationResult:
    """Summary: Structured priority and timing output for one item or sub-intent.

    Importance: Single contract between the AI path, the fallback, and the deriver.
    Alternatives: Return loosely typed dictionaries from the AI call.
    """

    priority: str
    title: str
    description: str
    estimated_minutes: int
    due_at: datetime | None = None
    rationale: str = ""
    source: str = "fallback"

    @property
    def actionable(self) -> bool:
        return self.priority != SKIP


@dataclass(frozen=True)
class TaskDraft:
    """Summary: A work item ready to be persisted.

    Importance: Separates derivation from quota-limited persistence.
    Alternatives: Insert tasks directly from the classifier.
    """

    title: str
    description: str
    priority: str
    estimated_minutes: int
    due_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Task:
    """Summary: Represents a work item to be inserted.

    Importance: Carries all fields needed for scheduling and reminders.
    Alternatives: Store tasks as notes or free-form text only.
    """

    title: str
    description: str = ""
    priority: str = NORMAL
    status: str = PENDING
    estimated_minutes: int | None = None
    due_at: datetime | None = None
    source_app: str = "manual"
    source_item_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Notification:
    """Summary: Represents a user-facing notification.

    Importance: Holds ingested items until they are converted to tasks.
    Alternatives: Convert every item into a task immediately.
    """

    title: str
    description: str
    type: str
    source_app: str
    source_item_id: str | None = None
    ai_summary: str | None = None
    actionable_insights: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AccountConnection:
    """Summary: Represents one external mailbox connection.

    Importance: Identifies the account a poller owns and its checkpoint.
    Alternatives: Key pollers only by user ID.
    """

    id: int
    user_id: int
    provider_name: str
    account_email: str
    status: str
    checkpoint: datetime | None


@dataclass(frozen=True)
class AiRequest:
    """Summary: Records an AI request for audit and traceability.

    Importance: Provides visibility into prompts and provider usage.
    Alternatives: Log requests only in observability logs.
    """

    provider: str
    model: str
    prompt: str
    purpose: str
    timestamp: datetime


@dataclass(frozen=True)
class AiResponse:
    """Summary: Records an AI response paired to a request.

    Importance: Enables audit trails and future tuning based on outputs.
    Alternatives: Store only final outputs in the task records.
    """

    request_id: int
    response_text: str
    latency_ms: int
    token_estimate: int
