"""Summary: Short-window deduplication ledger for ingested items.

Importance: Stops overlapping polls from processing the same item twice within seconds.
Alternatives: Rely only on the durable notification lookup.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable

from flowhub.models import utc_now


logger = logging.getLogger(__name__)


class DedupLedger:
    """Summary: Per-account map of external item IDs to last-processed time.

    Importance: Fast path ahead of the durable dedup query.
    Alternatives: Share one flat set of item IDs across accounts.
    """

    def __init__(
        self,
        window: timedelta = timedelta(seconds=10),
        gc_after: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._window = window
        self._gc_after = gc_after
        self._clock = clock
        self._entries: dict[int, dict[str, datetime]] = {}
        self._lock = threading.Lock()

    def should_process(self, account_id: int, external_id: str) -> bool:
        """Summary: Atomically check the window and claim the item.

        Importance: Two concurrent callers for the same item get one True.
        Alternatives: Separate check and mark calls with a race between them.
        """

        now = self._clock()
        with self._lock:
            partition = self._entries.setdefault(account_id, {})
            self._collect_partition(partition, now)
            last_seen = partition.get(external_id)
            if last_seen is not None and now - last_seen < self._window:
                logger.debug(
                    "Skipping recently processed item %s for account %s", external_id, account_id
                )
                return False
            partition[external_id] = now
            return True

    def mark(self, account_id: int, external_id: str) -> None:
        """Re-stamp an item once it has been persisted."""

        now = self._clock()
        with self._lock:
            self._entries.setdefault(account_id, {})[external_id] = now

    def forget_account(self, account_id: int) -> None:
        with self._lock:
            self._entries.pop(account_id, None)

    def collect(self) -> int:
        """Summary: Drop entries idle longer than the GC horizon.

        Importance: Keeps the ledger bounded for long-running processes.
        Alternatives: Use an LRU cache with a fixed size.
        """

        now = self._clock()
        removed = 0
        with self._lock:
            for partition in self._entries.values():
                removed += self._collect_partition(partition, now)
        return removed

    def size(self, account_id: int | None = None) -> int:
        with self._lock:
            if account_id is not None:
                return len(self._entries.get(account_id, {}))
            return sum(len(partition) for partition in self._entries.values())

    def _collect_partition(self, partition: dict[str, datetime], now: datetime) -> int:
        stale = [key for key, stamp in partition.items() if now - stamp > self._gc_after]
        for key in stale:
            del partition[key]
        return len(stale)
