"""Summary: Tests for the short-window dedup ledger.

Importance: Overlapping polls must not process the same item twice within the window.
Alternatives: Depend solely on the durable notification lookup.
"""

from __future__ import annotations

import threading
from datetime import timedelta

from flowhub.ledger import DedupLedger


def test_item_suppressed_within_window(clock) -> None:
    """Summary: Verify an item is claimed once and released after the window.

    Importance: The window is what keeps back-to-back ticks from double processing.
    Alternatives: Suppress items forever.
    """

    ledger = DedupLedger(window=timedelta(seconds=10), clock=clock)
    assert ledger.should_process(1, "msg-1")
    clock.advance(seconds=9)
    assert not ledger.should_process(1, "msg-1")
    clock.advance(seconds=2)
    assert ledger.should_process(1, "msg-1")


def test_partitions_are_per_account(clock) -> None:
    ledger = DedupLedger(clock=clock)
    assert ledger.should_process(1, "msg-1")
    assert ledger.should_process(2, "msg-1")
    ledger.forget_account(1)
    assert ledger.size(1) == 0
    assert ledger.size(2) == 1
    assert ledger.should_process(1, "msg-1")


def test_mark_restamps_entry(clock) -> None:
    ledger = DedupLedger(window=timedelta(seconds=10), clock=clock)
    ledger.should_process(1, "msg-1")
    clock.advance(seconds=8)
    ledger.mark(1, "msg-1")
    clock.advance(seconds=8)
    assert not ledger.should_process(1, "msg-1")


def test_collect_drops_stale_entries(clock) -> None:
    ledger = DedupLedger(gc_after=timedelta(hours=1), clock=clock)
    ledger.should_process(1, "old")
    clock.advance(minutes=90)
    ledger.should_process(2, "fresh")
    assert ledger.collect() == 1
    assert ledger.size() == 1


def test_concurrent_claims_yield_one_winner(clock) -> None:
    """Summary: Verify concurrent callers for one item get a single True.

    Importance: Check-and-mark must be atomic across poller threads.
    Alternatives: Serialize all ticks behind one global lock.
    """

    ledger = DedupLedger(clock=clock)
    barrier = threading.Barrier(8)
    results: list[bool] = []
    results_lock = threading.Lock()

    def _claim() -> None:
        barrier.wait()
        claimed = ledger.should_process(1, "msg-1")
        with results_lock:
            results.append(claimed)

    threads = [threading.Thread(target=_claim) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert results.count(True) == 1
