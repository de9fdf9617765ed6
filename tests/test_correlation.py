"""Tests for the process-local correlation tracker.

USE THIS FILE FOR:
- Duplicate dispatch prevention
- Resolution by task id and by operation reference
- Staleness sweeps
- Concurrent access
"""
import datetime
import logging
import threading

import pytest
from asserts import assert_equal, assert_false, assert_true

from shardsync.client import AlreadyTracked, CorrelationEntry, CorrelationTracker

from fixtures import *  # noqa: F401, F403

logger = logging.getLogger(__name__)

NOW = datetime.datetime(2024, 5, 1, 12, 0, tzinfo=datetime.timezone.utc)


def entry_aged(task_id: int, minutes: int, operation_ref: str = None) -> CorrelationEntry:
    return CorrelationEntry(task_id, operation_ref or f'op-{task_id}', NOW - datetime.timedelta(minutes=minutes))


class TestTrack:
    """Test reserving outstanding operations."""

    def test_duplicate_track_is_rejected(self):
        tracker = CorrelationTracker()
        first = CorrelationEntry(42, 'op-a', NOW)
        tracker.track(42, first)

        with pytest.raises(AlreadyTracked):
            tracker.track(42, CorrelationEntry(42, 'op-b', NOW))

        assert_equal(tracker.get(42), first, 'Original entry must be unchanged')
        assert_equal(len(tracker), 1)
        assert_true(tracker.resolve_operation('op-b') is None)

    def test_naive_timestamp_rejected(self):
        tracker = CorrelationTracker()
        with pytest.raises(ValueError):
            tracker.track(1, CorrelationEntry(1, 'op', datetime.datetime(2024, 5, 1)))
        assert_false(1 in tracker)

    def test_in_flight_ids_snapshot(self):
        tracker = CorrelationTracker()
        tracker.track(1, CorrelationEntry(1, None, NOW))
        tracker.track(2, CorrelationEntry(2, 'op-2', NOW))
        ids = tracker.in_flight_ids()
        tracker.resolve(1)
        assert_equal(ids, frozenset({1, 2}))
        assert_equal(tracker.in_flight_ids(), frozenset({2}))

    def test_concurrent_track_admits_one(self):
        tracker = CorrelationTracker()
        winners = []
        barrier = threading.Barrier(8)

        def attempt(n):
            barrier.wait()
            try:
                tracker.track(7, CorrelationEntry(7, f'op-{n}', NOW))
                winners.append(n)
            except AlreadyTracked:
                pass

        threads = [threading.Thread(target=attempt, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert_equal(len(winners), 1)
        assert_equal(tracker.get(7).operation_ref, f'op-{winners[0]}')


class TestResolve:
    """Test resolution of outstanding operations."""

    def test_resolve_is_idempotent(self):
        tracker = CorrelationTracker()
        tracker.track(5, CorrelationEntry(5, 'op-5', NOW))
        assert_equal(tracker.resolve(5).operation_ref, 'op-5')
        assert_true(tracker.resolve(5) is None)
        assert_true(tracker.resolve(99) is None)

    def test_track_after_resolve(self):
        tracker = CorrelationTracker()
        tracker.track(5, CorrelationEntry(5, 'op-5', NOW))
        tracker.resolve(5)
        tracker.track(5, CorrelationEntry(5, 'op-6', NOW))
        assert_equal(tracker.get(5).operation_ref, 'op-6')

    def test_bind_then_resolve_by_operation(self):
        tracker = CorrelationTracker()
        tracker.track(3, CorrelationEntry(3, None, NOW, 'Jane'))
        bound = tracker.bind(3, 'op-3')
        assert_equal(bound.operation_ref, 'op-3')
        assert_equal(bound.subject_summary, 'Jane')

        resolved = tracker.resolve_operation('op-3')
        assert_equal(resolved.task_id, 3)
        assert_false(3 in tracker)
        assert_true(tracker.resolve_operation('op-3') is None)

    def test_bind_after_resolve_returns_none(self):
        tracker = CorrelationTracker()
        tracker.track(3, CorrelationEntry(3, None, NOW))
        tracker.resolve(3)
        assert_true(tracker.bind(3, 'op-3') is None)
        assert_equal(len(tracker), 0)

    def test_resolve_ignores_signal_for_other_operation(self):
        tracker = CorrelationTracker()
        tracker.track(8, CorrelationEntry(8, 'op-new', NOW))
        assert_true(tracker.resolve(8, operation_ref='op-old') is None)
        assert_true(8 in tracker)
        assert_equal(tracker.resolve(8, operation_ref='op-new').operation_ref, 'op-new')


class TestSweep:
    """Test eviction of entries whose completion never arrived."""

    def test_sweep_evicts_entries_older_than_max_age(self):
        tracker = CorrelationTracker()
        for task_id, minutes in [(1, 10), (2, 31), (3, 45)]:
            tracker.track(task_id, entry_aged(task_id, minutes))

        evicted = tracker.sweep(datetime.timedelta(minutes=30), now=NOW)

        assert_equal([e.task_id for e in evicted], [3, 2])
        assert_equal(tracker.in_flight_ids(), frozenset({1}))

    def test_sweep_accepts_seconds(self):
        tracker = CorrelationTracker(clock=lambda: NOW)
        tracker.track(1, entry_aged(1, 2))
        assert_equal(tracker.sweep(60)[0].task_id, 1)

    def test_sweep_clears_operation_index(self):
        tracker = CorrelationTracker()
        tracker.track(2, entry_aged(2, 31))
        tracker.sweep(1800, now=NOW)
        assert_true(tracker.resolve_operation('op-2') is None)

    def test_sweep_with_nothing_stale(self):
        tracker = CorrelationTracker()
        tracker.track(1, entry_aged(1, 5))
        assert_equal(tracker.sweep(1800, now=NOW), [])
        assert_equal(len(tracker), 1)
