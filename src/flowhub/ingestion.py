"""Summary: Per-account polling of message sources into notifications.

Importance: Ties sources, dedup, classification, and derivation into one idempotent loop.
Alternatives: Rely on provider push notifications.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Callable, Protocol

from flowhub.classifier import ItemClassifier
from flowhub.deriver import TaskDeriver
from flowhub.errors import SourceAuthError, SourceError
from flowhub.ledger import DedupLedger
from flowhub.models import (
    PRIORITY_ORDER,
    AccountConnection,
    ClassificationResult,
    ItemRef,
    Notification,
    RawItem,
    TaskDraft,
    utc_now,
)
from flowhub.sources import Credential, MessageSource, is_automated_sender
from flowhub.storage.sqlite_store import SqliteStore, StoredConnection


logger = logging.getLogger(__name__)

CONNECTION_ACTIVE = "active"
CONNECTION_AUTH_FAILED = "auth_failed"
CONNECTION_DISCONNECTED = "disconnected"

ITEM_INSIGHTS = ["Reply to email", "Mark as read", "Archive email"]
RECONNECT_INSIGHTS = ["Reconnect Gmail", "Check authentication"]


class AccountState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    AUTH_FAILED = "auth_failed"
    STOPPED = "stopped"


class CredentialProvider(Protocol):
    def get_credential(self, account_id: int) -> Credential | None: ...

    def set_credential(self, account_id: int, credential: Credential) -> None: ...


class AccountPoller:
    """Summary: Owns one account's checkpoint and runs its poll ticks.

    Importance: One poller per account keeps failures and state isolated.
    Alternatives: Poll every account from one shared loop body.
    """

    def __init__(
        self,
        account: AccountConnection,
        source: MessageSource,
        credentials: CredentialProvider,
        store: SqliteStore,
        classifier: ItemClassifier,
        deriver: TaskDeriver,
        ledger: DedupLedger,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.account = account
        self._source = source
        self._credentials = credentials
        self._store = store
        self._classifier = classifier
        self._deriver = deriver
        self._ledger = ledger
        self._clock = clock
        self._checkpoint = account.checkpoint or clock()
        # Items that failed mid-processing; the checkpoint holds until they succeed.
        self._failed_items: set[str] = set()
        self._state = AccountState.IDLE
        self._cancelled = threading.Event()
        self._tick_lock = threading.Lock()

    @property
    def state(self) -> AccountState:
        return self._state

    @property
    def checkpoint(self) -> datetime:
        return self._checkpoint

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop the poller; an in-flight tick discards its results."""

        self._cancelled.set()
        self._state = AccountState.STOPPED

    def tick(self) -> AccountState:
        """Summary: Run one poll cycle: Idle -> Polling -> Idle or AuthFailed.

        Importance: Refreshes once on auth failure, then gives up and alerts the user.
        Alternatives: Retry authentication on every tick indefinitely.
        """

        if self.cancelled or self._state == AccountState.AUTH_FAILED:
            return self._state
        if not self._tick_lock.acquire(blocking=False):
            logger.debug("Tick already running for account %s", self.account.id)
            return self._state
        try:
            self._state = AccountState.POLLING
            self._run_tick()
        finally:
            if self._state == AccountState.POLLING:
                self._state = AccountState.IDLE
            self._tick_lock.release()
        return self._state

    def _run_tick(self) -> None:
        snapshot = self._credentials.get_credential(self.account.id)
        if snapshot is None:
            self._auth_failed("No stored credential")
            return
        refreshed = False
        try:
            if snapshot.expires_soon(self._clock()):
                snapshot = self._refresh(snapshot)
                refreshed = True
            try:
                self._process(snapshot)
            except SourceAuthError:
                if refreshed:
                    raise
                logger.info("Credential rejected for account %s; refreshing once", self.account.id)
                snapshot = self._refresh(snapshot)
                self._process(snapshot)
        except SourceAuthError as exc:
            self._auth_failed(str(exc))
        except SourceError as exc:
            logger.warning("Poll failed for account %s: %s", self.account.id, exc)

    def _refresh(self, snapshot: Credential) -> Credential:
        fresh = self._source.refresh_credential(snapshot)
        if not self.cancelled:
            self._credentials.set_credential(self.account.id, fresh)
        return fresh

    def _process(self, snapshot: Credential) -> int:
        """Summary: List, dedupe, classify, and persist items with one credential snapshot.

        Importance: Used for both the initial attempt and the post-refresh retry.
        Alternatives: Duplicate the item loop inside the auth retry branch.
        """

        started = self._clock()
        refs = self._source.list_new_items(snapshot, self._checkpoint)
        contacts = set(self._store.list_priority_contacts(self.account.user_id))
        created = 0
        for ref in refs:
            if self.cancelled:
                logger.info("Account %s stopped mid-tick; discarding results", self.account.id)
                return created
            if not self._ledger.should_process(self.account.id, ref.external_id):
                continue
            try:
                if self._process_item(snapshot, ref, contacts):
                    created += 1
            except SourceAuthError:
                raise
            except Exception:
                self._failed_items.add(ref.external_id)
                logger.exception(
                    "Failed to process item %s for account %s", ref.external_id, self.account.id
                )
            else:
                self._failed_items.discard(ref.external_id)
        listed = {ref.external_id for ref in refs}
        if listed & self._failed_items:
            logger.info(
                "Holding checkpoint for account %s until %s failed items succeed",
                self.account.id,
                len(listed & self._failed_items),
            )
        elif refs and not self.cancelled:
            self._checkpoint = started
            self._store.update_connection_checkpoint(self.account.id, started)
        if created:
            logger.info("Account %s: %s new notifications", self.account.id, created)
        return created

    def _process_item(self, snapshot: Credential, ref: ItemRef, contacts: set[str]) -> bool:
        item = self._source.fetch_item(snapshot, ref)
        user_id = self.account.user_id
        if is_automated_sender(item.sender_email):
            logger.info("Skipping automated sender %s", item.sender_email)
            self._ledger.mark(self.account.id, item.external_id)
            return False
        if self._store.find_notifications_by_source_item(user_id, item.external_id):
            logger.debug("Item %s already stored", item.external_id)
            self._ledger.mark(self.account.id, item.external_id)
            return False
        is_priority_person = item.sender_email in contacts
        results = self._classifier.classify_multi(
            item.subject,
            item.body,
            item.source_app,
            sender=item.sender_email,
            priority_contacts=contacts,
            user_id=user_id,
        )
        drafts = self._deriver.derive(item, results, is_priority_person=is_priority_person)
        if not drafts:
            logger.info("Item %s is non-actionable; no notification", item.external_id)
            self._ledger.mark(self.account.id, item.external_id)
            return False
        if self.cancelled:
            return False
        notification = build_item_notification(item, results, drafts, is_priority_person)
        notification_id = self._store.create_notification_if_absent(
            notification, user_id, self._clock()
        )
        self._ledger.mark(self.account.id, item.external_id)
        return notification_id is not None

    def _auth_failed(self, reason: str) -> None:
        logger.warning("Account %s authentication failed: %s", self.account.id, reason)
        self._state = AccountState.AUTH_FAILED
        if self.cancelled:
            return
        self._store.update_connection_status(self.account.id, CONNECTION_AUTH_FAILED)
        self._store.create_notification(
            Notification(
                title="Gmail Connection Lost",
                description=(
                    "Your Gmail connection has expired. Please reconnect your Gmail account "
                    "to continue receiving email notifications."
                ),
                type="important",
                source_app="system",
                ai_summary=f"Connection lost for {self.account.account_email}",
                actionable_insights=list(RECONNECT_INSIGHTS),
                metadata={"account_id": self.account.id, "reason": reason},
            ),
            self.account.user_id,
            self._clock(),
        )


def build_item_notification(
    item: RawItem,
    results: list[ClassificationResult],
    drafts: list[TaskDraft],
    is_priority_person: bool,
) -> Notification:
    """Summary: Build the notification stored for one ingested item.

    Importance: Keeps the full, untruncated content in metadata for later conversion.
    Alternatives: Store only a snippet and refetch on conversion.
    """

    priority = min((draft.priority for draft in drafts), key=lambda p: PRIORITY_ORDER.get(p, 2))
    body = item.body if len(item.body) <= 200 else item.body[:200] + "..."
    rationale = "; ".join(result.rationale for result in results if result.rationale)
    return Notification(
        title=f"New email from {item.sender}",
        description=f"{item.subject}: {body}",
        type=priority,
        source_app=item.source_app,
        source_item_id=item.external_id,
        ai_summary=f"Email from {item.sender} with subject: {item.subject}",
        actionable_insights=list(ITEM_INSIGHTS),
        metadata={
            "full_content": item.full_content,
            "source_item_id": item.external_id,
            "email_subject": item.subject,
            "email_from": item.sender,
            "from_email": item.sender_email,
            "received_at": item.received_at.isoformat(),
            "is_priority_person": is_priority_person,
            "priority_reason": "Priority Contact" if is_priority_person else rationale,
            "drafts": [
                {
                    "title": draft.title,
                    "priority": draft.priority,
                    "estimated_minutes": draft.estimated_minutes,
                    "due_at": draft.due_at.isoformat() if draft.due_at else None,
                }
                for draft in drafts
            ],
        },
    )


def to_account(connection: StoredConnection) -> AccountConnection:
    return AccountConnection(
        id=connection.id,
        user_id=connection.user_id,
        provider_name=connection.provider_name,
        account_email=connection.account_email,
        status=connection.status,
        checkpoint=connection.checkpoint,
    )


class IngestionSupervisor:
    """Summary: Account-keyed registry of pollers and their asyncio loops.

    Importance: Owns poller lifecycles explicitly instead of module-level timer maps.
    Alternatives: Run a cron job per account.
    """

    def __init__(
        self,
        store: SqliteStore,
        credentials: CredentialProvider,
        sources: dict[str, MessageSource],
        classifier: ItemClassifier,
        deriver: TaskDeriver,
        ledger: DedupLedger,
        poll_interval_seconds: float = 15,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._credentials = credentials
        self._sources = sources
        self._classifier = classifier
        self._deriver = deriver
        self._ledger = ledger
        self._poll_interval = poll_interval_seconds
        self._clock = clock
        self._pollers: dict[int, AccountPoller] = {}
        self._tasks: dict[int, asyncio.Task] = {}
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None

    def register(self, account: AccountConnection) -> AccountPoller:
        """Summary: Create (or replace) the poller for an account.

        Importance: Reconnecting an account restarts polling with a fresh poller.
        Alternatives: Mutate the existing poller's credential in place.
        """

        source = self._sources.get(account.provider_name)
        if source is None:
            raise ValueError(f"No message source for provider {account.provider_name}")
        self.stop(account.id)
        poller = AccountPoller(
            account,
            source,
            self._credentials,
            self._store,
            self._classifier,
            self._deriver,
            self._ledger,
            clock=self._clock,
        )
        with self._lock:
            self._pollers[account.id] = poller
        if self._loop is not None and not self._loop.is_closed():
            self._schedule(poller)
        logger.info("Registered poller for account %s (%s)", account.id, account.account_email)
        return poller

    def stop(self, account_id: int) -> None:
        with self._lock:
            poller = self._pollers.pop(account_id, None)
            task = self._tasks.pop(account_id, None)
        if poller is not None:
            poller.cancel()
            logger.info("Stopped poller for account %s", account_id)
        if task is not None and not task.done():
            _cancel_task(task)
        self._ledger.forget_account(account_id)

    async def stop_all(self) -> None:
        with self._lock:
            pollers = list(self._pollers.values())
            tasks = list(self._tasks.values())
            self._pollers.clear()
            self._tasks.clear()
        for poller in pollers:
            poller.cancel()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._loop = None

    def state(self, account_id: int) -> AccountState | None:
        with self._lock:
            poller = self._pollers.get(account_id)
        return poller.state if poller else None

    def poller(self, account_id: int) -> AccountPoller | None:
        with self._lock:
            return self._pollers.get(account_id)

    def tick_now(self, account_id: int) -> AccountState:
        poller = self.poller(account_id)
        if poller is None:
            raise KeyError(f"No poller registered for account {account_id}")
        return poller.tick()

    def recover(self) -> int:
        """Summary: Register every active account with a stored credential.

        Importance: Restores polling after a process restart.
        Alternatives: Require users to reconnect after each deploy.
        """

        count = 0
        for connection in self._store.list_connections(status=CONNECTION_ACTIVE):
            if not connection.credential or connection.provider_name not in self._sources:
                continue
            self.register(to_account(connection))
            count += 1
        logger.info("Recovered %s account connections", count)
        return count

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self.recover()
        with self._lock:
            pollers = [p for id_, p in self._pollers.items() if id_ not in self._tasks]
        for poller in pollers:
            self._spawn(poller)

    def _schedule(self, poller: AccountPoller) -> None:
        loop = self._loop
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._spawn(poller)
        else:
            loop.call_soon_threadsafe(self._spawn, poller)

    def _spawn(self, poller: AccountPoller) -> None:
        if poller.cancelled:
            return
        task = asyncio.get_running_loop().create_task(self._run(poller))
        with self._lock:
            if self._pollers.get(poller.account.id) is poller:
                self._tasks[poller.account.id] = task
                return
        task.cancel()

    async def _run(self, poller: AccountPoller) -> None:
        """Schedule the next tick only after the current one settles."""

        while not poller.cancelled:
            try:
                state = await asyncio.to_thread(poller.tick)
                if state in (AccountState.AUTH_FAILED, AccountState.STOPPED):
                    break
                await asyncio.sleep(self._poll_interval)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Poll loop error for account %s", poller.account.id)
                await asyncio.sleep(self._poll_interval)
        logger.info("Poll loop for account %s exited (%s)", poller.account.id, poller.state.value)


def _cancel_task(task: asyncio.Task) -> None:
    loop = task.get_loop()
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None
    if running is loop:
        task.cancel()
    elif not loop.is_closed():
        loop.call_soon_threadsafe(task.cancel)
