#!/usr/bin/env python3
"""
Tests for the delay queue.

Covers publication, claiming, ordering, idle waits, cancellation,
acknowledgement, lost-claim recovery and the background consumer.
"""

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from conftest import QUEUE_COLLECTION, SampleRecord, make_records, sample_factory
from kvqueue import Connection, QueueStats, StoreConfig
from kvqueue.errors import (
    DeadlineExceededError,
    EmptyIDError,
    IncompatibleStoreHandleError,
    InvalidIDError,
    NullRecordError,
    NullStoreHandleError,
    OperationCancelledError,
    QueuePanicError,
    RecordNotFoundError,
    ValidationError,
)


def ids_of(records):
    return [r.record_id() for r in records]


def publish(conn, queue, when, *ids):
    conn.tx(lambda db: queue.pub(db, when, *ids))


# ============================================================================
# Publish and Claim
# ============================================================================

class TestPublishAndClaim:
    """Test the pub/sub round trip."""

    def test_round_trip(self, conn, queue, records):
        publish(conn, queue, None, records[0].id)

        claimed = queue.sub_one(timeout=2)
        assert claimed == records[0]

    def test_publish_records(self, conn, queue, records):
        publish(conn, queue, None, records[0], records[1])
        assert ids_of(queue.sub_list(10, timeout=2)) == [records[0].id, records[1].id]

    def test_due_time_ordering(self, conn, queue, records):
        now = time.time()
        publish(conn, queue, now - 1, records[2].id)
        publish(conn, queue, now - 3, records[5].id)
        publish(conn, queue, now - 2, records[0].id)

        claimed = queue.sub_list(10, timeout=2)
        assert ids_of(claimed) == [records[5].id, records[0].id, records[2].id]

    def test_ties_ordered_by_id(self, conn, queue, records):
        when = time.time() - 1
        publish(conn, queue, when, records[3].id, records[1].id, records[2].id)
        assert ids_of(queue.sub_list(3, timeout=2)) == [records[1].id, records[2].id, records[3].id]

    def test_limit(self, conn, queue, records):
        publish(conn, queue, time.time() - 1, *ids_of(records))

        first = queue.sub_list(4, timeout=2)
        second = queue.sub_list(10, timeout=2)
        assert ids_of(first) == ids_of(records[:4])
        assert ids_of(second) == ids_of(records[4:])

    def test_due_time_types(self, conn, queue, records):
        past = datetime.now(timezone.utc) - timedelta(seconds=5)
        publish(conn, queue, past, records[0].id)
        publish(conn, queue, time.time_ns() - 10**9, records[1].id)
        publish(conn, queue, 0, records[2].id)

        assert len(queue.sub_list(3, timeout=2)) == 3

    def test_not_delivered_before_due(self, conn, queue, records):
        due = time.time() + 0.3
        publish(conn, queue, due, records[0].id)

        claimed = queue.sub_one(timeout=3)
        assert claimed.id == records[0].id
        assert time.time() >= due

    def test_missing_record(self, conn, queue):
        publish(conn, queue, None, b"no-such-record")
        with pytest.raises(RecordNotFoundError):
            queue.sub_one(timeout=2)
        # The claim itself committed.
        assert conn.read_tx(lambda db: queue.check_lost(db, b"no-such-record")) == [True]

    def test_prefixes_are_separate_queues(self, conn, records):
        jobs = conn.queue(QUEUE_COLLECTION, sample_factory, prefix=b"jobs")
        mail = conn.queue(QUEUE_COLLECTION, sample_factory, prefix=b"mail")

        publish(conn, jobs, None, records[0].id)
        publish(conn, mail, None, records[1].id)

        assert ids_of(mail.sub_list(10, timeout=2)) == [records[1].id]
        assert ids_of(jobs.sub_list(10, timeout=2)) == [records[0].id]

    def test_claims_are_durable_across_queue_objects(self, conn, records):
        first = conn.queue(QUEUE_COLLECTION, sample_factory)
        publish(conn, first, None, records[0].id)
        first.sub_one(timeout=2)

        second = conn.queue(QUEUE_COLLECTION, sample_factory)
        assert conn.read_tx(lambda db: second.check_lost(db, records[0].id)) == [True]
        assert second.stat().claimed == 1


# ============================================================================
# Concurrency
# ============================================================================

class TestConcurrentConsumers:
    """Test at-most-one claim per publication."""

    def test_no_double_delivery(self, conn, queue):
        recs = make_records(60, prefix="job")
        conn.tx(lambda db: db.save(*recs))
        publish(conn, queue, time.time() - 1, *ids_of(recs))

        claimed = []
        lock = threading.Lock()

        def consume():
            while True:
                try:
                    batch = queue.sub_list(5, timeout=0.5)
                except DeadlineExceededError:
                    return
                with lock:
                    claimed.extend(ids_of(batch))

        workers = [threading.Thread(target=consume) for _ in range(4)]
        for w in workers:
            w.start()
        for w in workers:
            w.join(timeout=30)

        assert len(claimed) == len(recs)
        assert sorted(claimed) == sorted(ids_of(recs))
        assert queue.stat().pending == 0
        assert queue.stat().claimed == len(recs)

    def test_publisher_and_consumer_threads(self, conn, queue):
        recs = make_records(20, prefix="live")
        conn.tx(lambda db: db.save(*recs))

        def produce():
            for rec in recs:
                publish(conn, queue, None, rec.id)
                time.sleep(0.005)

        producer = threading.Thread(target=produce)
        producer.start()

        claimed = []
        while len(claimed) < len(recs):
            claimed.extend(ids_of(queue.sub_list(20, timeout=5)))
        producer.join()

        assert sorted(claimed) == sorted(ids_of(recs))


# ============================================================================
# Idle Waits
# ============================================================================

class TestIdleWait:
    """Test watch wake-ups and the wait bound."""

    def test_watch_wakes_consumer(self, records):
        """A publish wakes an idle consumer long before the idle bound."""
        conn = Connection(store_id=3, config=StoreConfig().with_punch_size(30))
        conn.tx(lambda db: db.save(*records))
        queue = conn.queue(QUEUE_COLLECTION, sample_factory)

        timer = threading.Timer(0.1, publish, args=(conn, queue, None, records[0].id))
        start = time.monotonic()
        timer.start()
        try:
            claimed = queue.sub_one(timeout=10)
        finally:
            timer.join()

        assert claimed.id == records[0].id
        assert time.monotonic() - start < 5

    def test_future_item_bounds_wait(self, records):
        """An item published before the wait started is picked up when due."""
        conn = Connection(store_id=3, config=StoreConfig().with_punch_size(30))
        conn.tx(lambda db: db.save(*records))
        queue = conn.queue(QUEUE_COLLECTION, sample_factory)

        publish(conn, queue, time.time() + 0.2, records[0].id)
        start = time.monotonic()
        claimed = queue.sub_one(timeout=10)

        assert claimed.id == records[0].id
        assert time.monotonic() - start < 5

    def test_bound_without_pending(self, queue, config):
        assert queue._next_task_distance() == config.punch_size

    def test_bound_capped_by_punch_size(self, conn, queue, config):
        publish(conn, queue, time.time() + 60, b"later")
        assert queue._next_task_distance() == config.punch_size

    def test_bound_tracks_next_due(self):
        conn = Connection(store_id=3, config=StoreConfig().with_punch_size(30))
        queue = conn.queue(QUEUE_COLLECTION, sample_factory)

        publish(conn, queue, time.time() + 1.0, b"soon")
        bound = queue._next_task_distance()
        assert 0.5 < bound <= 1.0 + conn.config.punch_margin

    def test_bound_for_already_due(self):
        conn = Connection(store_id=3, config=StoreConfig().with_punch_size(30))
        queue = conn.queue(QUEUE_COLLECTION, sample_factory)

        publish(conn, queue, time.time() - 5, b"overdue")
        assert queue._next_task_distance() == conn.config.punch_margin


# ============================================================================
# Cancellation
# ============================================================================

class TestCancellation:
    """Test deadlines and cancel events."""

    def test_deadline(self, conn, queue):
        start = time.monotonic()
        with pytest.raises(DeadlineExceededError):
            queue.sub_list(1, timeout=0.3)
        assert time.monotonic() - start < 2
        assert conn.engine.watch_count() == 0

    def test_cancel_event(self, conn, queue):
        cancel = threading.Event()
        timer = threading.Timer(0.1, cancel.set)
        timer.start()
        try:
            with pytest.raises(OperationCancelledError):
                queue.sub_one(cancel=cancel)
        finally:
            timer.join()
        assert conn.engine.watch_count() == 0

    def test_already_cancelled(self, queue):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(OperationCancelledError):
            queue.sub_list(1, cancel=cancel)

    def test_expired_deadline_claims_nothing(self, conn, queue, records):
        publish(conn, queue, None, records[0].id)
        with pytest.raises(DeadlineExceededError):
            queue.sub_list(1, timeout=0)
        assert queue.stat().pending == 1


# ============================================================================
# Acknowledgement and Recovery
# ============================================================================

class TestAckAndLost:
    """Test the claimed set."""

    def test_claim_ack_cycle(self, conn, queue, records):
        publish(conn, queue, None, records[0].id)
        assert queue.stat().pending == 1

        claimed = queue.sub_one(timeout=2)
        assert conn.read_tx(lambda db: queue.check_lost(db, claimed.id)) == [True]
        assert queue.stat().claimed == 1

        conn.tx(lambda db: queue.ack(db, claimed.id))
        assert conn.read_tx(lambda db: queue.check_lost(db, claimed.id)) == [False]
        assert queue.stat().total == 0

    def test_ack_unknown_id(self, conn, queue):
        conn.tx(lambda db: queue.ack(db, b"unknown"))

    def test_check_lost_in_write_tx(self, conn, queue, records):
        publish(conn, queue, None, records[0].id)
        queue.sub_one(timeout=2)
        result = conn.tx(lambda db: queue.check_lost(db, records[0].id, records[1].id))
        assert result == [True, False]

    def test_get_lost(self, conn, queue, records):
        publish(conn, queue, time.time() - 1, *ids_of(records))
        queue.sub_list(10, timeout=2)
        conn.tx(lambda db: queue.ack(db, records[0].id))

        lost = queue.get_lost()
        assert lost == records[1:]
        assert queue.get_lost(limit=2) == records[1:3]

        odd = queue.get_lost(limit=2, filter=lambda r: r.number % 2 == 1)
        assert [r.number for r in odd] == [1, 3]

    def test_requeue_lost(self, conn, queue, records):
        publish(conn, queue, None, records[0].id)
        queue.sub_one(timeout=2)

        moved = conn.tx(lambda db: queue.requeue_lost(db, None, records[0].id, b"never-claimed"))
        assert moved == [records[0].id]
        assert queue.stat().pending == 1
        assert queue.stat().claimed == 0

        assert queue.sub_one(timeout=2).id == records[0].id

    def test_republish_replaces_claim(self, conn, queue, records):
        publish(conn, queue, None, records[0].id)
        queue.sub_one(timeout=2)

        publish(conn, queue, None, records[0].id)
        stats = queue.stat()
        assert stats.pending == 1
        assert stats.claimed == 0

    def test_republish_pending_moves_due_time(self, conn, queue, records):
        now = time.time()
        publish(conn, queue, now - 2, records[0].id)
        publish(conn, queue, now - 1, records[0].id)
        assert queue.stat().pending == 1

        assert ids_of(queue.sub_list(5, timeout=2)) == [records[0].id]
        assert queue.stat() == QueueStats(pending=0, claimed=1)
        assert conn.read_tx(lambda db: queue.check_lost(db, records[0].id)) == [True]

    def test_republish_pending_to_future(self, conn, queue, records):
        publish(conn, queue, None, records[0].id)
        publish(conn, queue, time.time() + 3600, records[0].id)

        with pytest.raises(DeadlineExceededError):
            queue.sub_one(timeout=0.3)
        assert queue.stat() == QueueStats(pending=1, claimed=0)

    def test_requeue_then_republish(self, conn, queue, records):
        publish(conn, queue, None, records[0].id)
        queue.sub_one(timeout=2)
        conn.tx(lambda db: queue.requeue_lost(db, None, records[0].id))
        publish(conn, queue, None, records[0].id)

        assert queue.stat() == QueueStats(pending=1, claimed=0)
        assert queue.sub_one(timeout=2).id == records[0].id
        assert queue.stat() == QueueStats(pending=0, claimed=1)


# ============================================================================
# Validation
# ============================================================================

class TestValidation:
    """Test argument and handle checks."""

    def test_null_handle(self, queue):
        with pytest.raises(NullStoreHandleError):
            queue.pub(None, None, b"x")
        with pytest.raises(NullStoreHandleError):
            queue.ack(None, b"x")
        with pytest.raises(NullStoreHandleError):
            queue.check_lost(None, b"x")

    def test_incompatible_handle(self, conn, queue):
        with pytest.raises(IncompatibleStoreHandleError):
            conn.read_tx(lambda db: queue.pub(db, None, b"x"))
        with pytest.raises(IncompatibleStoreHandleError):
            queue.pub(object(), None, b"x")
        with pytest.raises(IncompatibleStoreHandleError):
            queue.check_lost("db", b"x")

    def test_bad_ids(self, conn, queue):
        with pytest.raises(NullRecordError):
            publish(conn, queue, None, None)
        with pytest.raises(EmptyIDError):
            publish(conn, queue, None, b"")
        with pytest.raises(InvalidIDError):
            publish(conn, queue, None, b"x" * 256)

    def test_bad_id_writes_nothing(self, conn, queue):
        def work(db):
            with pytest.raises(EmptyIDError):
                queue.pub(db, None, b"fine", b"")

        conn.tx(work)
        assert queue.stat().pending == 0

    def test_bad_limit(self, queue):
        with pytest.raises(ValidationError):
            queue.sub_list(0)

    def test_bad_due_time(self, conn, queue):
        with pytest.raises(ValidationError):
            publish(conn, queue, -5, b"x")


# ============================================================================
# Background Consumer
# ============================================================================

class TestSubStream:
    """Test the streaming consumer."""

    def test_stream_delivers_then_times_out(self, conn, queue, records):
        publish(conn, queue, time.time() - 1, *ids_of(records[:3]))

        stream = queue.sub(timeout=0.5)
        received = list(stream)
        errors = list(stream.errors())

        assert received == records[:3]
        assert len(errors) == 1
        assert isinstance(errors[0], DeadlineExceededError)
        assert stream.join(timeout=2)

    def test_stream_cancel(self, conn, queue, records):
        stream = queue.sub()
        publish(conn, queue, None, records[0].id)

        first = next(iter(stream))
        stream.cancel()

        assert first == records[0]
        assert list(stream) == []
        errors = list(stream.errors())
        assert len(errors) == 1
        assert isinstance(errors[0], OperationCancelledError)

    def test_stopped_stream_leaves_claims_lost(self, conn, queue, records):
        """Records claimed but never handed over stay in the lost set."""
        publish(conn, queue, time.time() - 1, *ids_of(records[:3]))

        stream = queue.sub(timeout=0.5)
        first = next(iter(stream))
        assert stream.join(timeout=5)

        assert first == records[0]
        assert queue.stat() == QueueStats(pending=0, claimed=3)
        lost = ids_of(queue.get_lost())
        assert lost == ids_of(records[:3])

        moved = conn.tx(lambda db: queue.requeue_lost(db, None, *lost[1:]))
        assert moved == lost[1:]
        assert ids_of(queue.sub_list(5, timeout=2)) == lost[1:]

    def test_stream_wraps_faults(self, conn, records):
        def broken_factory(record_id):
            if record_id == b"poison":
                raise ValueError("cannot build record")
            return SampleRecord(id=record_id)

        queue = conn.queue(QUEUE_COLLECTION, broken_factory)
        publish(conn, queue, None, b"poison")

        stream = queue.sub(timeout=5)
        assert list(stream) == []
        errors = list(stream.errors())

        assert len(errors) == 1
        assert isinstance(errors[0], QueuePanicError)
        assert isinstance(errors[0].__cause__, ValueError)

    def test_stream_reports_package_errors_as_is(self, conn, queue):
        publish(conn, queue, None, b"missing")

        stream = queue.sub(timeout=5)
        assert list(stream) == []
        errors = list(stream.errors())
        assert len(errors) == 1
        assert isinstance(errors[0], RecordNotFoundError)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
