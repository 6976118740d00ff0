"""Summary: Application services for FlowHub.

Importance: Orchestrates task lifecycle, conversion, quotas, contacts, and account connections.
Alternatives: Put the orchestration directly into API handlers.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from flowhub.classifier import DEFAULT_ESTIMATE, ItemClassifier, extract_title
from flowhub.config import AppConfig
from flowhub.delivery import SinkDispatcher
from flowhub.deriver import TaskDeriver
from flowhub.errors import NotFoundError, QuotaExceededError
from flowhub.ingestion import (
    CONNECTION_ACTIVE,
    CONNECTION_DISCONNECTED,
    IngestionSupervisor,
    to_account,
)
from flowhub.models import (
    COMPLETED,
    IN_PROGRESS,
    NORMAL,
    PAUSED,
    PRIORITIES,
    TASK_STATUSES,
    URGENT,
    RawItem,
    Task,
    TaskDraft,
    User,
    utc_now,
)
from flowhub.reminders import ReminderScheduler
from flowhub.rescheduler import (
    BASE_ESTIMATE_KEY,
    DUE_SET_KEY,
    ReschedulingResult,
    SmartRescheduler,
)
from flowhub.sources import Credential
from flowhub.storage.sqlite_store import (
    SqliteStore,
    StoredConnection,
    StoredNotification,
    StoredTask,
    StoredUser,
)
from flowhub.token_codec import TokenCodec


logger = logging.getLogger(__name__)

DUE_CHANGE_THRESHOLD = timedelta(minutes=1)


@dataclass(frozen=True)
class UserService:
    """Summary: Manages user records and plan assignments.

    Importance: Anchors data ownership and the plan used for AI quotas.
    Alternatives: Use an external identity provider.
    """

    store: SqliteStore

    def create_user(self, display_name: str, email: str, plan_type: str = "free") -> int:
        return self.store.ensure_user(User(display_name=display_name, email=email, plan_type=plan_type))

    def get_user(self, user_id: int) -> StoredUser:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def list_users(self) -> list[StoredUser]:
        return self.store.list_users()

    def set_plan(self, user_id: int, plan_type: str) -> StoredUser:
        self.get_user(user_id)
        self.store.set_user_plan(user_id, plan_type)
        return self.get_user(user_id)


@dataclass
class ConnectionService:
    """Summary: Owns connected accounts and their encoded credentials.

    Importance: Serves as the credential registry pollers read snapshots from.
    Alternatives: Keep tokens only in memory inside each poller.
    """

    store: SqliteStore
    codec: TokenCodec
    supervisor: IngestionSupervisor | None = None
    clock: Callable[[], datetime] = utc_now

    def connect_account(
        self, user_id: int, provider_name: str, account_email: str, credential: Credential
    ) -> StoredConnection:
        """Summary: Store a credential for an account and start polling it.

        Importance: Reconnecting after an auth failure reactivates the same row and checkpoint.
        Alternatives: Create a new connection row on every OAuth callback.
        """

        now = self.clock()
        connection_id = self.store.upsert_connection(
            user_id=user_id,
            provider_name=provider_name,
            account_email=account_email.strip().lower(),
            credential=self.codec.encode_mapping(credential.to_dict()),
            status=CONNECTION_ACTIVE,
            created_at=now,
        )
        connection = self._get(connection_id)
        if connection.checkpoint is None:
            self.store.update_connection_checkpoint(connection_id, now)
            connection = self._get(connection_id)
        if self.supervisor is not None:
            self.supervisor.register(to_account(connection))
        logger.info("Connected %s account %s for user %s", provider_name, account_email, user_id)
        return connection

    def get_credential(self, account_id: int) -> Credential | None:
        connection = self.store.get_connection(account_id)
        if connection is None or not connection.credential:
            return None
        return Credential.from_dict(self.codec.decode_mapping(connection.credential))

    def set_credential(self, account_id: int, credential: Credential) -> None:
        self.store.update_connection_credential(
            account_id, self.codec.encode_mapping(credential.to_dict())
        )
        logger.debug("Stored refreshed credential for account %s", account_id)

    def clear_credential(self, user_id: int, account_id: int) -> None:
        """Summary: Disconnect an account and stop its poller.

        Importance: No tick runs against a credential that was removed.
        Alternatives: Leave the poller running until its next auth failure.
        """

        connection = self._get(account_id)
        if connection.user_id != user_id:
            raise NotFoundError(f"Account {account_id} not found")
        if self.supervisor is not None:
            self.supervisor.stop(account_id)
        self.store.update_connection_credential(account_id, None)
        self.store.update_connection_status(account_id, CONNECTION_DISCONNECTED)
        logger.info("Disconnected account %s", account_id)

    def list_accounts(self, user_id: int) -> list[StoredConnection]:
        return self.store.list_connections(user_id=user_id)

    def _get(self, account_id: int) -> StoredConnection:
        connection = self.store.get_connection(account_id)
        if connection is None:
            raise NotFoundError(f"Account {account_id} not found")
        return connection


@dataclass(frozen=True)
class TaskTransition:
    task: StoredTask
    rescheduling: ReschedulingResult


@dataclass(frozen=True)
class TaskService:
    """Summary: Task lifecycle with reminders, delivery, and rescheduling hooks.

    Importance: Every state change keeps reminders and calendar events consistent.
    Alternatives: Let callers update the store and reminders separately.
    """

    store: SqliteStore
    reminders: ReminderScheduler
    rescheduler: SmartRescheduler
    dispatcher: SinkDispatcher
    clock: Callable[[], datetime] = utc_now

    def create_task(
        self,
        user_id: int,
        title: str,
        description: str = "",
        priority: str = NORMAL,
        estimated_minutes: int | None = None,
        due_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> StoredTask:
        """Summary: Create a manual task and register its reminders.

        Importance: Manual tasks do not count against the AI quota.
        Alternatives: Route manual tasks through the conversion path.
        """

        if not title.strip():
            raise ValueError("Task title is required")
        _check_priority(priority)
        task = Task(
            title=title.strip(),
            description=description,
            priority=priority,
            estimated_minutes=estimated_minutes,
            due_at=due_at,
            metadata=dict(metadata or {}),
        )
        task_id = self.store.add_task(task, user_id, self.clock())
        return self.register_created(task_id)

    def register_created(self, task_id: int) -> StoredTask:
        """Register reminders and delivery for a freshly inserted task."""

        task = self.store.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        self.reminders.schedule_task(task)
        return self._deliver(task, created=True)

    def get_task(self, user_id: int, task_id: int) -> StoredTask:
        task = self.store.get_task(task_id, user_id=user_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    def list_tasks(self, user_id: int, status: str | None = None) -> list[StoredTask]:
        if status is not None and status not in TASK_STATUSES:
            raise ValueError(f"Unknown task status: {status}")
        return self.store.list_tasks(user_id, status=status)

    def update_task(self, user_id: int, task_id: int, **fields: Any) -> StoredTask:
        """Summary: Apply field edits and keep reminders in step with the due time.

        Importance: Reminders are regenerated only when the due time moves by a minute or more.
        Alternatives: Regenerate reminders on every edit.
        """

        current = self.get_task(user_id, task_id)
        if "priority" in fields:
            _check_priority(fields["priority"])
        if "status" in fields and fields["status"] not in TASK_STATUSES:
            raise ValueError(f"Unknown task status: {fields['status']}")
        if "estimated_minutes" in fields and "metadata" not in fields:
            # A user-set estimate becomes the new base for rescheduling.
            metadata = dict(current.metadata)
            metadata.pop(BASE_ESTIMATE_KEY, None)
            fields["metadata"] = metadata
        now = self.clock()
        if "due_at" in fields and _due_changed(current.due_at, fields["due_at"]):
            metadata = dict(fields.get("metadata", current.metadata))
            metadata[DUE_SET_KEY] = now.isoformat()
            fields["metadata"] = metadata
        updated = self.store.update_task(task_id, now, **fields)
        if updated is None:
            raise NotFoundError(f"Task {task_id} not found")
        if updated.status == COMPLETED:
            self.reminders.clear_task(task_id)
        elif "due_at" in fields and _due_changed(current.due_at, updated.due_at):
            self.reminders.reschedule_task(updated)
        return self._deliver(updated, created=False)

    def delete_task(self, user_id: int, task_id: int) -> None:
        task = self.get_task(user_id, task_id)
        self.reminders.clear_task(task_id)
        self.store.delete_task(task_id, user_id)
        self.dispatcher.task_removed(task)
        logger.info("Deleted task %s", task_id)

    def start_task(self, user_id: int, task_id: int) -> TaskTransition:
        task = self.get_task(user_id, task_id)
        now = self.clock()
        fields: dict[str, Any] = {"status": IN_PROGRESS}
        if task.started_at is None:
            fields["started_at"] = now
        updated = self.store.update_task(task_id, now, **fields)
        return TaskTransition(task=updated, rescheduling=self.rescheduler.reschedule(user_id))

    def pause_task(self, user_id: int, task_id: int) -> TaskTransition:
        self.get_task(user_id, task_id)
        updated = self.store.update_task(task_id, self.clock(), status=PAUSED)
        return TaskTransition(task=updated, rescheduling=self.rescheduler.reschedule(user_id))

    def complete_task(
        self, user_id: int, task_id: int, actual_minutes: int | None = None
    ) -> TaskTransition:
        """Summary: Complete a task, record its duration, and rebalance the rest.

        Importance: Completion feeds the accuracy ratio used by the rescheduler.
        Alternatives: Reschedule only on an explicit request.
        """

        task = self.get_task(user_id, task_id)
        now = self.clock()
        started_at = task.started_at or now
        if actual_minutes is None:
            actual_minutes = math.ceil((now - started_at).total_seconds() / 60)
        updated = self.store.update_task(
            task_id,
            now,
            status=COMPLETED,
            started_at=started_at,
            completed_at=now,
            actual_minutes=actual_minutes,
        )
        self.reminders.clear_task(task_id)
        updated = self._deliver(updated, created=False)
        result = self.rescheduler.reschedule(user_id, just_completed_task_id=task_id)
        logger.info("Completed task %s in %s minutes", task_id, actual_minutes)
        return TaskTransition(task=updated, rescheduling=result)

    def reschedule(self, user_id: int) -> ReschedulingResult:
        return self.rescheduler.reschedule(user_id)

    def _deliver(self, task: StoredTask, created: bool) -> StoredTask:
        if created:
            updates = self.dispatcher.task_created(task)
        else:
            updates = self.dispatcher.task_updated(task)
        if not updates:
            return task
        return self.store.update_task(task.id, task.updated_at, metadata={**task.metadata, **updates})


@dataclass(frozen=True)
class UsageStatus:
    current_count: int
    limit: int
    plan_type: str
    within_limit: bool
    month: str


@dataclass(frozen=True)
class UsageService:
    """Summary: Reports monthly AI task usage against the owner's plan.

    Importance: Lets clients show remaining quota before converting.
    Alternatives: Only report the limit when a conversion fails.
    """

    store: SqliteStore
    config: AppConfig
    clock: Callable[[], datetime] = utc_now

    def check_limit(self, user_id: int) -> UsageStatus:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        month = month_key(self.clock())
        limit = self.config.limit_for_plan(user.plan_type)
        current = self.store.get_ai_usage(user_id, month)
        return UsageStatus(
            current_count=current,
            limit=limit,
            plan_type=user.plan_type,
            within_limit=limit == 0 or current < limit,
            month=month,
        )


@dataclass(frozen=True)
class BatchConversion:
    created: dict[int, list[StoredTask]] = field(default_factory=dict)
    errors: dict[int, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ConversionService:
    """Summary: Converts stored notifications into AI-derived tasks.

    Importance: The only path that spends AI quota; each insert reserves quota atomically.
    Alternatives: Create tasks during ingestion without user confirmation.
    """

    store: SqliteStore
    classifier: ItemClassifier
    deriver: TaskDeriver
    tasks: TaskService
    usage: UsageService
    clock: Callable[[], datetime] = utc_now

    def convert_notification(self, user_id: int, notification_id: int) -> list[StoredTask]:
        """Summary: Re-classify a notification's full content and create its tasks.

        Importance: A multi-deadline message becomes several tasks in one call.
        Alternatives: Create one task from the notification title.
        """

        notification = self.store.get_notification(notification_id, user_id=user_id)
        if notification is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        item = _item_from_notification(notification)
        contacts = self.store.list_priority_contacts(user_id)
        is_priority_person = bool(notification.metadata.get("is_priority_person")) or (
            bool(item.sender_email) and item.sender_email in contacts
        )
        results = self.classifier.classify_multi(
            item.subject,
            item.body,
            item.source_app,
            sender=item.sender_email or None,
            priority_contacts=contacts,
            user_id=user_id,
        )
        drafts = self.deriver.derive(item, results, is_priority_person=is_priority_person)
        if not drafts:
            drafts = [self._fallback_draft(item, notification, is_priority_person)]

        status = self.usage.check_limit(user_id)
        now = self.clock()
        created: list[StoredTask] = []
        for draft in drafts:
            task = Task(
                title=draft.title,
                description=draft.description,
                priority=URGENT if is_priority_person else draft.priority,
                estimated_minutes=draft.estimated_minutes,
                due_at=draft.due_at,
                source_app=notification.source_app,
                source_item_id=notification.source_item_id,
                metadata={
                    **draft.metadata,
                    "ai_generated": True,
                    "source_notification_id": notification_id,
                },
            )
            task_id = self.store.create_ai_task_with_limit(
                task, user_id, status.month, status.limit, now
            )
            if task_id is None:
                if created:
                    self.store.dismiss_notification(notification_id)
                current = self.store.get_ai_usage(user_id, status.month)
                logger.warning(
                    "AI task limit reached for user %s (%s/%s)", user_id, current, status.limit
                )
                raise QuotaExceededError(current, status.limit, status.plan_type, created)
            created.append(self.tasks.register_created(task_id))

        self.store.dismiss_notification(notification_id)
        logger.info(
            "Converted notification %s into %s tasks for user %s",
            notification_id,
            len(created),
            user_id,
        )
        return created

    def convert_batch(self, user_id: int, notification_ids: list[int]) -> BatchConversion:
        """Summary: Convert several notifications, collecting per-notification errors.

        Importance: One bad notification does not abort the rest of the batch.
        Alternatives: Fail the whole batch on the first error.
        """

        result = BatchConversion()
        for index, notification_id in enumerate(notification_ids):
            try:
                result.created[notification_id] = self.convert_notification(
                    user_id, notification_id
                )
            except QuotaExceededError as exc:
                if exc.created_tasks:
                    result.created[notification_id] = list(exc.created_tasks)
                result.errors[notification_id] = str(exc)
                for remaining in notification_ids[index + 1 :]:
                    result.errors[remaining] = "AI task limit exceeded"
                break
            except (NotFoundError, ValueError) as exc:
                result.errors[notification_id] = str(exc)
        return result

    def _fallback_draft(
        self, item: RawItem, notification: StoredNotification, is_priority_person: bool
    ) -> TaskDraft:
        parser = self.classifier.fallback.parser
        return TaskDraft(
            title=extract_title(item.subject, item.body, item.source_app),
            description=notification.description,
            priority=URGENT if is_priority_person else NORMAL,
            estimated_minutes=DEFAULT_ESTIMATE,
            due_at=parser.parse(f"{item.subject} {item.body}", self.clock()),
            metadata={
                "source_item_id": item.external_id,
                "is_priority_person": is_priority_person,
                "classification_source": "fallback",
            },
        )


@dataclass(frozen=True)
class PriorityContactService:
    """Summary: Manages the senders whose items are always urgent.

    Importance: Lets users guarantee attention for specific people.
    Alternatives: Infer important senders from reply history.
    """

    store: SqliteStore

    def add_contact(self, user_id: int, email: str, name: str | None = None) -> int:
        if "@" not in email:
            raise ValueError(f"Invalid contact email: {email}")
        return self.store.add_priority_contact(user_id, email, name)

    def list_contacts(self, user_id: int) -> list[str]:
        return self.store.list_priority_contacts(user_id)

    def remove_contact(self, user_id: int, email: str) -> None:
        if not self.store.remove_priority_contact(user_id, email):
            raise NotFoundError(f"Priority contact {email} not found")


@dataclass(frozen=True)
class NotificationService:
    store: SqliteStore

    def list_notifications(
        self, user_id: int, limit: int = 50, include_dismissed: bool = False
    ) -> list[StoredNotification]:
        return self.store.list_notifications(user_id, limit=limit, include_dismissed=include_dismissed)

    def dismiss(self, user_id: int, notification_id: int) -> None:
        if self.store.get_notification(notification_id, user_id=user_id) is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        self.store.dismiss_notification(notification_id)


def month_key(now: datetime) -> str:
    return now.strftime("%Y-%m")


def _check_priority(priority: str) -> None:
    if priority not in PRIORITIES:
        raise ValueError(f"Unknown priority: {priority}")


def _due_changed(before: datetime | None, after: datetime | None) -> bool:
    if before is None or after is None:
        return before != after
    return abs(after - before) >= DUE_CHANGE_THRESHOLD


def _item_from_notification(notification: StoredNotification) -> RawItem:
    """Rebuild the source item from the full content kept in notification metadata."""

    metadata = notification.metadata
    subject = metadata.get("email_subject") or notification.title
    content = metadata.get("full_content") or notification.description
    prefix = f"Subject: {subject}\n\n"
    body = content[len(prefix) :] if content.startswith(prefix) else content
    return RawItem(
        external_id=notification.source_item_id or f"notification-{notification.id}",
        sender=metadata.get("email_from", ""),
        sender_email=(metadata.get("from_email") or "").lower(),
        subject=subject,
        body=body,
        received_at=notification.created_at,
        source_app=notification.source_app,
    )
