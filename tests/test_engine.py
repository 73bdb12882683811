#!/usr/bin/env python3
"""
Tests for MemoryEngine: snapshots, conflicts, retries and watches.
"""

import threading

import pytest

from kvqueue import StoreConfig
from kvqueue.engine import MemoryEngine
from kvqueue.errors import (
    RetryLimitExceededError,
    TransactionConflictError,
    TransactionError,
)


def put(engine, key, value):
    engine.transact(lambda tx: tx.set(key, value))


def get(engine, key):
    return engine.read_transact(lambda tx: tx.get(key))


@pytest.fixture
def engine():
    return MemoryEngine(StoreConfig().with_retry_limit(5))


# ============================================================================
# Basic Operations
# ============================================================================

class TestReadsAndWrites:
    """Test point and range operations."""

    def test_set_get(self, engine):
        put(engine, b"k", b"v")
        assert get(engine, b"k") == b"v"
        assert get(engine, b"missing") is None

    def test_transact_returns_result(self, engine):
        assert engine.transact(lambda tx: 42) == 42

    def test_range_order_and_limit(self, engine):
        for key in [b"c", b"a", b"d", b"b"]:
            put(engine, key, key.upper())

        rows = engine.read_transact(lambda tx: tx.get_range(b"a", b"d"))
        assert rows == [(b"a", b"A"), (b"b", b"B"), (b"c", b"C")]

        rows = engine.read_transact(lambda tx: tx.get_range(b"a", b"z", limit=2))
        assert [k for k, _ in rows] == [b"a", b"b"]

        rows = engine.read_transact(lambda tx: tx.get_range(b"a", b"z", limit=2, reverse=True))
        assert [k for k, _ in rows] == [b"d", b"c"]

    def test_clear_range(self, engine):
        for key in [b"a", b"b", b"c"]:
            put(engine, key, b"1")
        engine.transact(lambda tx: tx.clear_range(b"a", b"c"))
        rows = engine.read_transact(lambda tx: tx.get_range(b"a", b"z"))
        assert rows == [(b"c", b"1")]

    def test_read_your_writes(self, engine):
        put(engine, b"a", b"old")
        put(engine, b"b", b"old")

        def work(tx):
            tx.set(b"a", b"new")
            tx.set(b"c", b"new")
            tx.clear(b"b")
            return tx.get(b"a"), tx.get(b"b"), tx.get_range(b"a", b"z")

        a, b, rows = engine.transact(work)
        assert a == b"new"
        assert b is None
        assert rows == [(b"a", b"new"), (b"c", b"new")]

    def test_closed_transaction(self, engine):
        holder = []
        engine.read_transact(holder.append)
        with pytest.raises(TransactionError):
            holder[0].get(b"k")

    def test_history_pruned_value_stays_readable(self, engine):
        for i in range(200):
            put(engine, b"counter", str(i).encode())
        assert get(engine, b"counter") == b"199"
        assert len(engine._history[b"counter"]) < 200

    def test_cleared_keys_are_dropped(self, engine):
        for i in range(100):
            put(engine, b"tmp%03d" % i, b"x")
            engine.transact(lambda tx: tx.clear(b"tmp%03d" % i))
        assert engine.read_transact(lambda tx: tx.get_range(b"tmp", b"tmq")) == []
        assert len(engine._keys) < 100


# ============================================================================
# Snapshot and Conflict Tests
# ============================================================================

class TestConflicts:
    """Test snapshot isolation and optimistic conflict detection."""

    def test_snapshot_read(self, engine):
        put(engine, b"k", b"v1")

        def reader(tx):
            first = tx.get(b"k")
            put(engine, b"k", b"v2")
            return first, tx.get(b"k")

        assert engine.read_transact(reader) == (b"v1", b"v1")
        assert get(engine, b"k") == b"v2"

    def test_conflict_is_retried(self, engine):
        put(engine, b"k", b"0")
        attempts = []

        def increment(tx):
            attempts.append(1)
            value = int(tx.get(b"k"))
            if len(attempts) == 1:
                # A concurrent writer commits after our read.
                put(engine, b"k", b"10")
            tx.set(b"k", str(value + 1).encode())

        engine.transact(increment)
        assert len(attempts) == 2
        assert get(engine, b"k") == b"11"

    def test_retry_limit(self, engine):
        put(engine, b"k", b"0")

        def always_conflicts(tx):
            tx.get(b"k")
            put(engine, b"k", b"1")
            tx.set(b"other", b"x")

        with pytest.raises(RetryLimitExceededError) as exc_info:
            engine.transact(always_conflicts)
        assert exc_info.value.context["attempts"] == 5
        assert isinstance(exc_info.value.__cause__, TransactionConflictError)

    def test_write_conflict_range(self, engine):
        """A write-conflict range conflicts readers without writing data."""
        attempts = []

        def scanner(tx):
            attempts.append(1)
            tx.get_range(b"q/", b"q0")
            if len(attempts) == 1:
                engine.transact(lambda other: other.add_write_conflict_range(b"q/", b"q0"))
            tx.set(b"marker", b"1")

        engine.transact(scanner)
        assert len(attempts) == 2
        assert engine.read_transact(lambda tx: tx.get_range(b"q/", b"q0")) == []

    def test_read_only_never_conflicts(self, engine):
        attempts = []

        def reader(tx):
            attempts.append(1)
            tx.get(b"k")
            put(engine, b"k", b"changed")

        engine.transact(reader)
        assert len(attempts) == 1

    def test_disjoint_ranges_do_not_conflict(self, engine):
        attempts = []

        def work(tx):
            attempts.append(1)
            tx.get_range(b"a", b"b")
            put(engine, b"x", b"1")
            tx.set(b"a1", b"1")

        engine.transact(work)
        assert len(attempts) == 1

    def test_concurrent_increments(self):
        engine = MemoryEngine(StoreConfig().with_retry_limit(1000))
        put(engine, b"n", b"0")

        def increment(tx):
            tx.set(b"n", str(int(tx.get(b"n")) + 1).encode())

        def worker():
            for _ in range(50):
                engine.transact(increment)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert get(engine, b"n") == b"200"


# ============================================================================
# Watch Tests
# ============================================================================

class TestWatches:
    """Test watch activation, firing and cancellation."""

    def test_fires_on_write(self, engine):
        watch = engine.transact(lambda tx: tx.watch(b"signal"))
        assert not watch.done()
        put(engine, b"signal", b"1")
        assert watch.wait(1.0)
        assert engine.watch_count() == 0

    def test_fires_on_clear(self, engine):
        put(engine, b"signal", b"1")
        watch = engine.transact(lambda tx: tx.watch(b"signal"))
        engine.transact(lambda tx: tx.clear(b"signal"))
        assert watch.wait(1.0)

    def test_other_keys_do_not_fire(self, engine):
        watch = engine.transact(lambda tx: tx.watch(b"signal"))
        put(engine, b"signal2", b"1")
        assert not watch.wait(0.05)

    def test_fires_when_changed_after_snapshot(self, engine):
        def work(tx):
            w = tx.watch(b"signal")
            put(engine, b"signal", b"1")
            return w

        watch = engine.transact(work)
        assert watch.done()

    def test_cancel(self, engine):
        watch = engine.transact(lambda tx: tx.watch(b"signal"))
        assert engine.watch_count() == 1
        watch.cancel()
        watch.cancel()
        assert watch.cancelled()
        assert not watch.wait(0.01)
        assert engine.watch_count() == 0

    def test_aborted_attempt_cancels_watch(self, engine):
        put(engine, b"k", b"0")
        watches = []

        def work(tx):
            watches.append(tx.watch(b"signal"))
            tx.get(b"k")
            if len(watches) == 1:
                put(engine, b"k", b"1")
            tx.set(b"k2", b"x")

        engine.transact(work)
        assert watches[0].cancelled()
        assert not watches[1].cancelled()
        assert engine.watch_count() == 1

    def test_wakes_waiting_thread(self, engine):
        watch = engine.transact(lambda tx: tx.watch(b"signal"))
        timer = threading.Timer(0.05, put, args=(engine, b"signal", b"1"))
        timer.start()
        try:
            assert watch.wait(2.0)
        finally:
            timer.join()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
