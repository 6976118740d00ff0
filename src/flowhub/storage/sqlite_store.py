"""Summary: SQLite storage implementation for FlowHub.

Importance: Provides a local-first persistence layer for tasks, notifications, and quotas.
Alternatives: Use an ORM or an external database immediately.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from flowhub.models import AiRequest, AiResponse, Notification, Task, User


TASK_UPDATABLE_FIELDS = {
    "title",
    "description",
    "priority",
    "status",
    "estimated_minutes",
    "actual_minutes",
    "due_at",
    "started_at",
    "completed_at",
    "metadata",
}


@dataclass(frozen=True)
class StoredUser:
    """Summary: User record with database identifier.

    Importance: Enables per-user data boundaries and plan lookups.
    Alternatives: Keep only a single implicit user without records.
    """

    id: int
    display_name: str
    email: str
    plan_type: str


@dataclass(frozen=True)
class StoredTask:
    """Summary: Task record with database identifier.

    Importance: Carries status, timing, and estimate history for scheduling.
    Alternatives: Store tasks as notes or free-form text only.
    """

    id: int
    user_id: int
    title: str
    description: str
    priority: str
    status: str
    estimated_minutes: int | None
    actual_minutes: int | None
    due_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    source_app: str
    source_item_id: str | None
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class StoredNotification:
    """Summary: Notification record with database identifier.

    Importance: Durable record used for dedup and task conversion.
    Alternatives: Keep notifications only in memory.
    """

    id: int
    user_id: int
    title: str
    description: str
    type: str
    source_app: str
    source_item_id: str | None
    ai_summary: str | None
    actionable_insights: list[str]
    metadata: dict[str, Any]
    dismissed: bool
    created_at: datetime


@dataclass(frozen=True)
class StoredConnection:
    """Summary: Account connection record with database identifier.

    Importance: Holds the encoded credential and checkpoint for a polled account.
    Alternatives: Store connections only in environment configuration.
    """

    id: int
    user_id: int
    provider_name: str
    account_email: str
    status: str
    credential: str | None
    checkpoint: datetime | None
    created_at: datetime


class SqliteStore:
    """Summary: SQLite-backed storage for FlowHub.

    Importance: Enables local-first persistence with minimal dependencies.
    Alternatives: Use Postgres and SQLAlchemy from day one.
    """

    def __init__(self, db_path: str) -> None:
        """Summary: Initialize the storage with a database path.

        Importance: Allows configurable database location per environment.
        Alternatives: Hardcode a default path in the class.
        """

        self._db_path = Path(db_path)

    def initialize(self) -> None:
        """Summary: Create tables if they do not exist.

        Importance: Ensures the database is ready for ingestion and queries.
        Alternatives: Run migrations using a dedicated migration tool.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    display_name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    plan_type TEXT NOT NULL DEFAULT 'free'
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS priority_contacts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    email TEXT NOT NULL,
                    name TEXT,
                    UNIQUE(user_id, email)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS connections (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    provider_name TEXT NOT NULL,
                    account_email TEXT NOT NULL,
                    status TEXT NOT NULL,
                    credential TEXT,
                    checkpoint TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE(user_id, provider_name, account_email)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    type TEXT NOT NULL,
                    source_app TEXT NOT NULL,
                    source_item_id TEXT,
                    ai_summary TEXT,
                    actionable_insights TEXT,
                    metadata TEXT,
                    dismissed INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS notifications_source_item_idx
                ON notifications (user_id, source_item_id)
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    priority TEXT NOT NULL,
                    status TEXT NOT NULL,
                    estimated_minutes INTEGER,
                    actual_minutes INTEGER,
                    due_at TEXT,
                    started_at TEXT,
                    completed_at TEXT,
                    source_app TEXT NOT NULL,
                    source_item_id TEXT,
                    metadata TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS ai_usage (
                    user_id INTEGER NOT NULL,
                    month TEXT NOT NULL,
                    ai_tasks_created INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (user_id, month)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS ai_requests (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER,
                    provider TEXT NOT NULL,
                    model TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    purpose TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS ai_responses (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    request_id INTEGER NOT NULL,
                    response_text TEXT NOT NULL,
                    latency_ms INTEGER NOT NULL,
                    token_estimate INTEGER NOT NULL
                )
                """
            )
            connection.commit()
        self._ensure_column("users", "plan_type", "TEXT NOT NULL DEFAULT 'free'")
        self._ensure_column("notifications", "dismissed", "INTEGER NOT NULL DEFAULT 0")

    def ensure_user(self, user: User) -> int:
        """Summary: Ensure a user exists and return their ID.

        Importance: Provides a stable user record for data ownership.
        Alternatives: Omit user records in single-user mode.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO users (display_name, email, plan_type) VALUES (?, ?, ?)",
                (user.display_name, user.email, user.plan_type),
            )
            if cursor.rowcount:
                user_id = cursor.lastrowid
            else:
                cursor.execute("SELECT id FROM users WHERE email = ?", (user.email,))
                row = cursor.fetchone()
                user_id = int(row[0]) if row else 0
            connection.commit()
        return int(user_id)

    def get_user(self, user_id: int) -> StoredUser | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "SELECT id, display_name, email, plan_type FROM users WHERE id = ?", (user_id,)
            )
            row = cursor.fetchone()
        return StoredUser(*row) if row else None

    def list_users(self) -> list[StoredUser]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("SELECT id, display_name, email, plan_type FROM users ORDER BY id ASC")
            rows = cursor.fetchall()
        return [StoredUser(*row) for row in rows]

    def set_user_plan(self, user_id: int, plan_type: str) -> None:
        with self._connection() as connection:
            connection.execute("UPDATE users SET plan_type = ? WHERE id = ?", (plan_type, user_id))
            connection.commit()

    def add_priority_contact(self, user_id: int, email: str, name: str | None = None) -> int:
        """Summary: Register a sender whose items are always urgent.

        Importance: Backs the priority-contact override in classification.
        Alternatives: Keep VIP lists in configuration files.
        """

        normalized = email.strip().lower()
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO priority_contacts (user_id, email, name) VALUES (?, ?, ?)",
                (user_id, normalized, name),
            )
            if cursor.rowcount:
                contact_id = cursor.lastrowid
            else:
                cursor.execute(
                    "SELECT id FROM priority_contacts WHERE user_id = ? AND email = ?",
                    (user_id, normalized),
                )
                contact_id = cursor.fetchone()[0]
            connection.commit()
        return int(contact_id)

    def list_priority_contacts(self, user_id: int) -> list[str]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "SELECT email FROM priority_contacts WHERE user_id = ? ORDER BY email ASC",
                (user_id,),
            )
            rows = cursor.fetchall()
        return [row[0] for row in rows]

    def remove_priority_contact(self, user_id: int, email: str) -> bool:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "DELETE FROM priority_contacts WHERE user_id = ? AND email = ?",
                (user_id, email.strip().lower()),
            )
            deleted = cursor.rowcount > 0
            connection.commit()
        return deleted

    def upsert_connection(
        self,
        user_id: int,
        provider_name: str,
        account_email: str,
        credential: str | None,
        status: str,
        created_at: datetime,
    ) -> int:
        """Summary: Create or refresh an account connection record.

        Importance: Reconnecting an account reuses its row and checkpoint.
        Alternatives: Create a new row for every OAuth callback.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO connections (
                    user_id, provider_name, account_email, status, credential, checkpoint, created_at
                ) VALUES (?, ?, ?, ?, ?, NULL, ?)
                ON CONFLICT(user_id, provider_name, account_email)
                DO UPDATE SET credential = excluded.credential, status = excluded.status
                """,
                (user_id, provider_name, account_email, status, credential, _to_iso(created_at)),
            )
            cursor.execute(
                """
                SELECT id FROM connections
                WHERE user_id = ? AND provider_name = ? AND account_email = ?
                """,
                (user_id, provider_name, account_email),
            )
            connection_id = cursor.fetchone()[0]
            connection.commit()
        return int(connection_id)

    def get_connection(self, connection_id: int) -> StoredConnection | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT id, user_id, provider_name, account_email, status, credential, checkpoint, created_at
                FROM connections WHERE id = ?
                """,
                (connection_id,),
            )
            row = cursor.fetchone()
        return _connection_from_row(row) if row else None

    def list_connections(
        self, user_id: int | None = None, status: str | None = None
    ) -> list[StoredConnection]:
        """Summary: List account connections, optionally filtered.

        Importance: Drives the API listing and startup recovery of pollers.
        Alternatives: Track connections only in the ingestion supervisor.
        """

        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT id, user_id, provider_name, account_email, status, credential, checkpoint, created_at
                FROM connections {where} ORDER BY id ASC
                """,
                params,
            )
            rows = cursor.fetchall()
        return [_connection_from_row(row) for row in rows]

    def update_connection_credential(self, connection_id: int, credential: str | None) -> None:
        with self._connection() as connection:
            connection.execute(
                "UPDATE connections SET credential = ? WHERE id = ?", (credential, connection_id)
            )
            connection.commit()

    def update_connection_checkpoint(self, connection_id: int, checkpoint: datetime) -> None:
        with self._connection() as connection:
            connection.execute(
                "UPDATE connections SET checkpoint = ? WHERE id = ?",
                (_to_iso(checkpoint), connection_id),
            )
            connection.commit()

    def update_connection_status(self, connection_id: int, status: str) -> None:
        with self._connection() as connection:
            connection.execute(
                "UPDATE connections SET status = ? WHERE id = ?", (status, connection_id)
            )
            connection.commit()

    def create_notification(self, notification: Notification, user_id: int, now: datetime) -> int:
        """Summary: Persist a notification for a user.

        Importance: Records ingested items, reminders, and connection alerts.
        Alternatives: Push notifications without persistence.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            notification_id = self._insert_notification(cursor, notification, user_id, now)
            connection.commit()
        return notification_id

    def create_notification_if_absent(
        self, notification: Notification, user_id: int, now: datetime
    ) -> int | None:
        """Summary: Insert a notification unless one exists for the same source item.

        Importance: Durable dedup check and write happen in one transaction.
        Alternatives: Rely on the in-memory ledger alone.
        """

        with self._connection() as connection:
            connection.isolation_level = None
            cursor = connection.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            try:
                if notification.source_item_id is not None:
                    cursor.execute(
                        "SELECT id FROM notifications WHERE user_id = ? AND source_item_id = ? LIMIT 1",
                        (user_id, notification.source_item_id),
                    )
                    if cursor.fetchone():
                        cursor.execute("ROLLBACK")
                        return None
                notification_id = self._insert_notification(cursor, notification, user_id, now)
                cursor.execute("COMMIT")
            except Exception:
                cursor.execute("ROLLBACK")
                raise
        return notification_id

    def get_notification(
        self, notification_id: int, user_id: int | None = None
    ) -> StoredNotification | None:
        query = f"SELECT {_NOTIFICATION_COLUMNS} FROM notifications WHERE id = ?"
        params: list[Any] = [notification_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(query, params)
            row = cursor.fetchone()
        return _notification_from_row(row) if row else None

    def list_notifications(
        self, user_id: int, limit: int = 50, include_dismissed: bool = False
    ) -> list[StoredNotification]:
        query = f"SELECT {_NOTIFICATION_COLUMNS} FROM notifications WHERE user_id = ?"
        if not include_dismissed:
            query += " AND dismissed = 0"
        query += " ORDER BY id DESC LIMIT ?"
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(query, (user_id, limit))
            rows = cursor.fetchall()
        return [_notification_from_row(row) for row in rows]

    def find_notifications_by_source_item(
        self, user_id: int, source_item_id: str
    ) -> list[StoredNotification]:
        """Summary: Query notifications derived from a given source item.

        Importance: Durable dedup source of truth across process restarts.
        Alternatives: Scan recent notifications and compare metadata.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {_NOTIFICATION_COLUMNS} FROM notifications
                WHERE user_id = ? AND source_item_id = ? ORDER BY id ASC
                """,
                (user_id, source_item_id),
            )
            rows = cursor.fetchall()
        return [_notification_from_row(row) for row in rows]

    def dismiss_notification(self, notification_id: int) -> None:
        with self._connection() as connection:
            connection.execute(
                "UPDATE notifications SET dismissed = 1 WHERE id = ?", (notification_id,)
            )
            connection.commit()

    def add_task(self, task: Task, user_id: int, now: datetime) -> int:
        """Summary: Persist a task for a user.

        Importance: Tracks work items for scheduling and reminders.
        Alternatives: Store tasks in a separate task manager.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            task_id = self._insert_task(cursor, task, user_id, now)
            connection.commit()
        return task_id

    def create_ai_task_with_limit(
        self, task: Task, user_id: int, month: str, limit: int, now: datetime
    ) -> int | None:
        """Summary: Reserve one unit of AI quota and insert the task atomically.

        Importance: Prevents overshooting the plan ceiling under concurrent conversions.
        Alternatives: Check the counter first and insert in a separate step.
        """

        with self._connection() as connection:
            connection.isolation_level = None
            cursor = connection.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            try:
                cursor.execute(
                    "INSERT OR IGNORE INTO ai_usage (user_id, month, ai_tasks_created) VALUES (?, ?, 0)",
                    (user_id, month),
                )
                if limit > 0:
                    cursor.execute(
                        """
                        UPDATE ai_usage SET ai_tasks_created = ai_tasks_created + 1
                        WHERE user_id = ? AND month = ? AND ai_tasks_created < ?
                        """,
                        (user_id, month, limit),
                    )
                else:
                    cursor.execute(
                        """
                        UPDATE ai_usage SET ai_tasks_created = ai_tasks_created + 1
                        WHERE user_id = ? AND month = ?
                        """,
                        (user_id, month),
                    )
                if cursor.rowcount == 0:
                    cursor.execute("ROLLBACK")
                    return None
                task_id = self._insert_task(cursor, task, user_id, now)
                cursor.execute("COMMIT")
            except Exception:
                cursor.execute("ROLLBACK")
                raise
        return task_id

    def get_ai_usage(self, user_id: int, month: str) -> int:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "SELECT ai_tasks_created FROM ai_usage WHERE user_id = ? AND month = ?",
                (user_id, month),
            )
            row = cursor.fetchone()
        return int(row[0]) if row else 0

    def get_task(self, task_id: int, user_id: int | None = None) -> StoredTask | None:
        query = f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = ?"
        params: list[Any] = [task_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(query, params)
            row = cursor.fetchone()
        return _task_from_row(row) if row else None

    def list_tasks(self, user_id: int, status: str | None = None) -> list[StoredTask]:
        """Summary: Retrieve tasks for a user, optionally filtered by status.

        Importance: Feeds the rescheduler, accuracy history, and API listings.
        Alternatives: Query tasks per status with dedicated methods.
        """

        query = f"SELECT {_TASK_COLUMNS} FROM tasks WHERE user_id = ?"
        params: list[Any] = [user_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY id ASC"
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [_task_from_row(row) for row in rows]

    def list_tasks_by_priority(self, priority: str) -> list[StoredTask]:
        """Summary: Retrieve tasks of a priority across all users.

        Importance: Drives the global escalation sweep.
        Alternatives: Sweep each user separately.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"SELECT {_TASK_COLUMNS} FROM tasks WHERE priority = ? ORDER BY id ASC",
                (priority,),
            )
            rows = cursor.fetchall()
        return [_task_from_row(row) for row in rows]

    def update_task(self, task_id: int, now: datetime, **fields: Any) -> StoredTask | None:
        """Summary: Update selected task fields and stamp `updated_at`.

        Importance: Single write path for status changes, rescheduling, and escalation.
        Alternatives: Provide one method per field.
        """

        unknown = set(fields) - TASK_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown task fields: {sorted(unknown)}")
        assignments = [f"{name} = ?" for name in fields]
        values = [_encode_value(value) for value in fields.values()]
        assignments.append("updated_at = ?")
        values.append(_to_iso(now))
        with self._connection() as connection:
            connection.execute(
                f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?",
                (*values, task_id),
            )
            connection.commit()
        return self.get_task(task_id)

    def delete_task(self, task_id: int, user_id: int) -> bool:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("DELETE FROM tasks WHERE id = ? AND user_id = ?", (task_id, user_id))
            deleted = cursor.rowcount > 0
            connection.commit()
        return deleted

    def log_ai_request(self, request: AiRequest, user_id: int | None = None) -> int:
        """Summary: Persist an AI request record.

        Importance: Provides an audit trail for classification prompts.
        Alternatives: Log requests only in observability logs.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO ai_requests (user_id, provider, model, prompt, purpose, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    request.provider,
                    request.model,
                    request.prompt,
                    request.purpose,
                    _to_iso(request.timestamp),
                ),
            )
            request_id = cursor.lastrowid
            connection.commit()
        return int(request_id)

    def log_ai_response(self, response: AiResponse) -> int:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO ai_responses (request_id, response_text, latency_ms, token_estimate)
                VALUES (?, ?, ?, ?)
                """,
                (
                    response.request_id,
                    response.response_text,
                    response.latency_ms,
                    response.token_estimate,
                ),
            )
            response_id = cursor.lastrowid
            connection.commit()
        return int(response_id)

    def count_ai_requests(self, purpose: str | None = None) -> int:
        with self._connection() as connection:
            cursor = connection.cursor()
            if purpose is None:
                cursor.execute("SELECT COUNT(*) FROM ai_requests")
            else:
                cursor.execute("SELECT COUNT(*) FROM ai_requests WHERE purpose = ?", (purpose,))
            return int(cursor.fetchone()[0])

    def _insert_notification(
        self, cursor: sqlite3.Cursor, notification: Notification, user_id: int, now: datetime
    ) -> int:
        cursor.execute(
            """
            INSERT INTO notifications (
                user_id, title, description, type, source_app, source_item_id,
                ai_summary, actionable_insights, metadata, dismissed, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
            """,
            (
                user_id,
                notification.title,
                notification.description,
                notification.type,
                notification.source_app,
                notification.source_item_id,
                notification.ai_summary,
                json.dumps(notification.actionable_insights),
                json.dumps(notification.metadata, default=str),
                _to_iso(now),
            ),
        )
        return int(cursor.lastrowid)

    def _insert_task(self, cursor: sqlite3.Cursor, task: Task, user_id: int, now: datetime) -> int:
        cursor.execute(
            """
            INSERT INTO tasks (
                user_id, title, description, priority, status, estimated_minutes, actual_minutes,
                due_at, started_at, completed_at, source_app, source_item_id, metadata,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, NULL, ?, NULL, NULL, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                task.title,
                task.description,
                task.priority,
                task.status,
                task.estimated_minutes,
                _to_iso(task.due_at),
                task.source_app,
                task.source_item_id,
                json.dumps(task.metadata, default=str),
                _to_iso(now),
                _to_iso(now),
            ),
        )
        return int(cursor.lastrowid)

    def _ensure_column(self, table: str, column: str, definition: str) -> None:
        """Summary: Ensure a column exists in a table.

        Importance: Provides lightweight migration support for new fields.
        Alternatives: Use a migration tool to manage schema changes.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(f"PRAGMA table_info({table})")
            columns = {row[1] for row in cursor.fetchall()}
            if column in columns:
                return
            cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
            connection.commit()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Summary: Context manager for SQLite connections.

        Importance: Ensures connections are closed cleanly after use.
        Alternatives: Keep a single long-lived connection.
        """

        connection = sqlite3.connect(self._db_path, timeout=30)
        try:
            yield connection
        finally:
            connection.close()


_TASK_COLUMNS = (
    "id, user_id, title, description, priority, status, estimated_minutes, actual_minutes, "
    "due_at, started_at, completed_at, source_app, source_item_id, metadata, created_at, updated_at"
)

_NOTIFICATION_COLUMNS = (
    "id, user_id, title, description, type, source_app, source_item_id, ai_summary, "
    "actionable_insights, metadata, dismissed, created_at"
)


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return _to_iso(value)
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    return value


def _task_from_row(row: tuple[Any, ...]) -> StoredTask:
    return StoredTask(
        id=row[0],
        user_id=row[1],
        title=row[2],
        description=row[3] or "",
        priority=row[4],
        status=row[5],
        estimated_minutes=row[6],
        actual_minutes=row[7],
        due_at=_from_iso(row[8]),
        started_at=_from_iso(row[9]),
        completed_at=_from_iso(row[10]),
        source_app=row[11],
        source_item_id=row[12],
        metadata=json.loads(row[13]) if row[13] else {},
        created_at=_from_iso(row[14]),
        updated_at=_from_iso(row[15]),
    )


def _notification_from_row(row: tuple[Any, ...]) -> StoredNotification:
    return StoredNotification(
        id=row[0],
        user_id=row[1],
        title=row[2],
        description=row[3] or "",
        type=row[4],
        source_app=row[5],
        source_item_id=row[6],
        ai_summary=row[7],
        actionable_insights=json.loads(row[8]) if row[8] else [],
        metadata=json.loads(row[9]) if row[9] else {},
        dismissed=bool(row[10]),
        created_at=_from_iso(row[11]),
    )


def _connection_from_row(row: tuple[Any, ...]) -> StoredConnection:
    return StoredConnection(
        id=row[0],
        user_id=row[1],
        provider_name=row[2],
        account_email=row[3],
        status=row[4],
        credential=row[5],
        checkpoint=_from_iso(row[6]),
        created_at=_from_iso(row[7]),
    )


def default_store_path() -> str:
    """Summary: Provide the default database path.

    Importance: Centralizes the default storage location.
    Alternatives: Compute the path based on OS user directories.
    """

    return "flowhub.db"
