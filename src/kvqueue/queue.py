# Copyright 2025 Sushanth (https://github.com/sushanthpy)
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Delay Queue

Durable delayed task queue over the transactional key-value engine. Tasks
are record ids published with a due time; consumers claim due ids, process
the records and acknowledge them. Unacknowledged claims stay visible as
"lost" entries and survive a consumer crash.

    conn = Connection(store_id=1)
    queue = conn.queue(collection=100, factory=Task.from_id)

    conn.tx(lambda db: queue.pub(db, None, b"task-1"))
    task = queue.sub_one(timeout=5)
    conn.tx(lambda db: queue.ack(db, task.record_id()))

Keyspace (under ``store-id || collection || prefix``):

    0x00 || be64(due_nanos) || id || len(id)   pending entry
    0x01 || id || len(id)                      claimed entry
    0x02                                       signal, written by every pub
    0x03 || id || len(id)                      be64 due of the pending entry

Features:
- Claims are serialized by a write-conflict range over the due range, so an
  id is delivered to at most one consumer per publication
- Idle consumers block on a watch of the signal key, bounded by the time
  until the earliest pending entry
- Claimed ids are materialized in a separate read transaction
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple, TYPE_CHECKING

from .connection import DB, ReadDB
from .deadline import Deadline
from .engine import Transaction, Watch
from .errors import (
    IncompatibleStoreHandleError,
    NullStoreHandleError,
    QueuePanicError,
    RecordNotFoundError,
    ValidationError,
)
from .keys import (
    CLAIMED,
    DUE,
    PENDING,
    SIGNAL,
    When,
    decode_u64_be,
    encode_u16_be,
    encode_u64_be,
    id_suffix,
    namespace_key,
    now_nanos,
    prefix_end,
    split_id_suffix,
    to_nanos,
)
from .records import Predicate, Record, RecordFactory, as_ids
from .stream import Stream

if TYPE_CHECKING:
    from .connection import Connection

logger = logging.getLogger(__name__)

_NANOS = 1_000_000_000


# ============================================================================
# Queue Statistics
# ============================================================================

@dataclass
class QueueStats:
    """Queue statistics."""
    pending: int = 0
    claimed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.claimed


# ============================================================================
# DelayQueue
# ============================================================================

class DelayQueue:
    """
    Delayed task queue bound to a collection and key prefix.

    Use ``Connection.queue()`` to create one. Records are built from claimed
    ids with ``factory`` and loaded from their own collection; the queue's
    collection only holds queue keys.

    Args:
        conn: Owning connection
        collection: Collection id holding the queue keys
        factory: Builds an empty record from an id
        prefix: Extra key prefix, so several queues can share a collection
    """

    def __init__(
        self,
        conn: 'Connection',
        collection: int,
        factory: RecordFactory,
        prefix: bytes = b"",
    ):
        encode_u16_be(collection)
        if factory is None:
            raise ValidationError("Queue needs a record factory")
        self._conn = conn
        self.collection = collection
        self.prefix = bytes(prefix)
        self._factory = factory
        self._base = namespace_key(conn.store_id, collection, self.prefix)

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    def _key(self, sub: int, *parts: bytes) -> bytes:
        return self._base + bytes([sub]) + b"".join(parts)

    def _pending_key(self, due: int, record_id: bytes) -> bytes:
        return self._key(PENDING, encode_u64_be(due), id_suffix(record_id))

    def _lost_key(self, record_id: bytes) -> bytes:
        return self._key(CLAIMED, id_suffix(record_id))

    def _signal_key(self) -> bytes:
        return self._key(SIGNAL)

    def _due_key(self, record_id: bytes) -> bytes:
        return self._key(DUE, id_suffix(record_id))

    # -------------------------------------------------------------------------
    # Handle checks
    # -------------------------------------------------------------------------

    @staticmethod
    def _writable(db) -> DB:
        if db is None:
            raise NullStoreHandleError()
        if not isinstance(db, DB):
            raise IncompatibleStoreHandleError(db, "DB")
        return db

    @staticmethod
    def _readable(db) -> ReadDB:
        if db is None:
            raise NullStoreHandleError()
        if not isinstance(db, ReadDB):
            raise IncompatibleStoreHandleError(db, "DB or ReadDB")
        return db

    # =========================================================================
    # Publishing
    # =========================================================================

    def pub(self, db: DB, when: When = None, *ids) -> None:
        """
        Schedule ids for delivery at ``when``.

        Runs in the caller's transaction. Ids are validated before anything
        is written. Publishing an id that is already pending moves it to the
        new due time; publishing an id that is currently claimed replaces the
        claim with the new pending entry.

        Args:
            db: Handle from ``Connection.tx``
            when: Due time: None/0 for now, a datetime, float unix seconds
                or int unix nanoseconds
            *ids: Record ids (or records)
        """
        db = self._writable(db)
        record_ids = as_ids(ids)
        due = to_nanos(when)
        if due < 0:
            raise ValidationError(
                "Due time is before the unix epoch",
                context={"when": due},
            )

        for rid in record_ids:
            self._schedule(db.tx, due, rid)

        db.tx.set(self._signal_key(), encode_u64_be(due))
        logger.debug("Published %d ids to queue %d due at %d", len(record_ids), self.collection, due)

    def _schedule(self, tx: Transaction, due: int, record_id: bytes) -> None:
        """Make an id pending at ``due``, dropping its previous pending or claimed entry."""
        index = self._due_key(record_id)
        previous = tx.get(index)
        if previous is not None:
            tx.clear(self._pending_key(decode_u64_be(previous), record_id))
        tx.clear(self._lost_key(record_id))
        tx.set(self._pending_key(due, record_id), b"")
        tx.set(index, encode_u64_be(due))

    # =========================================================================
    # Consuming
    # =========================================================================

    def sub_list(
        self,
        limit: int,
        timeout: Optional[float] = None,
        cancel=None,
    ) -> List[Record]:
        """
        Claim up to ``limit`` due records, blocking until at least one is due.

        Args:
            limit: Maximum records returned (positive)
            timeout: Seconds before DeadlineExceededError (None = no limit)
            cancel: threading.Event that aborts the wait with
                OperationCancelledError

        Returns:
            Claimed records, ordered by due time then id
        """
        if limit < 1:
            raise ValidationError(
                f"Claim limit must be positive, got {limit}",
                context={"limit": limit},
            )
        return self._sub_list(limit, Deadline(timeout, cancel))

    def sub_one(self, timeout: Optional[float] = None, cancel=None) -> Record:
        """Claim a single due record."""
        return self._sub_one(Deadline(timeout, cancel))

    def sub(self, timeout: Optional[float] = None, cancel=None) -> Stream:
        """
        Consume continuously in a background thread.

        The stream yields claimed records one at a time. It ends on
        deadline, cancel or the first error; package errors are reported
        as-is and anything else as QueuePanicError.

        The producer claims the next record while the consumer still holds
        the current one. A record claimed but not handed over when the
        stream stops stays in the lost set only, so call ``get_lost`` (and
        ``requeue_lost``) after stopping a consumer.

        Example:
            stream = queue.sub(timeout=60)
            for task in stream:
                handle(task)
                conn.tx(lambda db: queue.ack(db, task.record_id()))
            for err in stream.errors():
                logger.warning("consumer stopped: %s", err)
        """
        deadline = Deadline(timeout, cancel)

        def produce(emit) -> None:
            while True:
                emit(self._sub_one(deadline))

        return Stream(
            produce,
            deadline,
            wrap=QueuePanicError.wrap,
            name=f"kvqueue-sub-{self.collection}",
        )

    def _sub_one(self, deadline: Deadline) -> Record:
        records = self._sub_list(1, deadline)
        if not records:
            raise RecordNotFoundError()
        return records[0]

    def _sub_list(self, limit: int, deadline: Deadline) -> List[Record]:
        ids: List[bytes] = []
        watch: Optional[Watch] = None

        while not ids:
            if watch is not None:
                self._wait_task(watch, deadline)
                watch = None

            deadline.check()

            ids, watch = self._conn.engine.transact(lambda tx: self._claim(tx, limit))

        logger.debug("Claimed %d ids from queue %d", len(ids), self.collection)
        return self._conn.read_tx(
            lambda db: self._conn.records.load_ids(db.tx, self._factory, ids)
        )

    def _claim(self, tx: Transaction, limit: int) -> Tuple[List[bytes], Optional[Watch]]:
        """Move due entries to the claimed set, or watch the signal key."""
        begin = self._key(PENDING)
        end = self._key(PENDING, encode_u64_be(now_nanos()))

        # Concurrent claimers reading this range must conflict with us.
        tx.add_write_conflict_range(begin, end)

        rows = tx.get_range(begin, end, limit=limit)
        if not rows:
            return [], tx.watch(self._signal_key())

        ids = []
        for key, _ in rows:
            _, rid = split_id_suffix(key)
            tx.set(self._lost_key(rid), b"")
            tx.clear(self._due_key(rid))
            tx.clear(key)
            ids.append(rid)
        return ids, None

    def _wait_task(self, watch: Watch, deadline: Deadline) -> None:
        bound = self._next_task_distance()
        logger.debug("Queue %d idle, waiting up to %.3fs", self.collection, bound)
        if not deadline.wait(watch, bound):
            watch.cancel()

    def _next_task_distance(self) -> float:
        """
        Seconds to wait before the next claim attempt.

        ``min(punch_size, time_until_earliest_due + punch_margin)``; just
        ``punch_size`` when nothing is pending.
        """
        config = self._conn.config
        begin = self._key(PENDING)
        rows = self._conn.engine.read_transact(
            lambda tx: tx.get_range(begin, prefix_end(begin), limit=1)
        )
        if not rows:
            return config.punch_size

        offset = len(begin)
        due = decode_u64_be(rows[0][0][offset:offset + 8])
        wait = max(0, due - now_nanos()) / _NANOS
        return min(config.punch_size, wait + config.punch_margin)

    # =========================================================================
    # Acknowledgement and Recovery
    # =========================================================================

    def ack(self, db: DB, *ids) -> None:
        """Remove ids from the claimed set. Unknown ids are ignored."""
        db = self._writable(db)
        for rid in as_ids(ids):
            db.tx.clear(self._lost_key(rid))

    def check_lost(self, db: ReadDB, *ids) -> List[bool]:
        """Per id, whether it is claimed and not yet acknowledged."""
        db = self._readable(db)
        return [db.tx.get(self._lost_key(rid)) is not None for rid in as_ids(ids)]

    def get_lost(self, limit: int = 0, filter: Optional[Predicate] = None) -> List[Record]:
        """
        Records claimed but not acknowledged, in id order.

        Args:
            limit: Maximum records returned after filtering (0 = unlimited)
            filter: Keep only records for which this returns True
        """
        begin = self._key(CLAIMED)
        end = prefix_end(begin)
        scan_limit = limit if filter is None else 0

        def collect(db: ReadDB) -> List[Record]:
            result = []
            for key, _ in db.tx.get_range(begin, end, limit=scan_limit):
                _, rid = split_id_suffix(key)
                rec = self._factory(rid)
                db.load(rec)
                if filter is not None and not filter(rec):
                    continue
                result.append(rec)
                if 0 < limit <= len(result):
                    break
            return result

        return self._conn.read_tx(collect)

    def requeue_lost(self, db: DB, when: When = None, *ids) -> List[bytes]:
        """
        Move claimed ids back to pending, due at ``when``.

        Ids that are not claimed are skipped.

        Returns:
            The ids that were moved
        """
        db = self._writable(db)
        record_ids = as_ids(ids)
        due = to_nanos(when)

        moved = []
        for rid in record_ids:
            if db.tx.get(self._lost_key(rid)) is None:
                continue
            self._schedule(db.tx, due, rid)
            moved.append(rid)

        if moved:
            db.tx.set(self._signal_key(), encode_u64_be(due))
            logger.info("Requeued %d lost ids on queue %d", len(moved), self.collection)
        return moved

    # =========================================================================
    # Inspection
    # =========================================================================

    def stat(self) -> QueueStats:
        """Pending and claimed counts from one snapshot."""
        pending = self._key(PENDING)
        claimed = self._key(CLAIMED)

        def count(db: ReadDB) -> QueueStats:
            return QueueStats(
                pending=len(db.tx.get_range(pending, prefix_end(pending))),
                claimed=len(db.tx.get_range(claimed, prefix_end(claimed))),
            )

        return self._conn.read_tx(count)

    def __repr__(self) -> str:
        return f"DelayQueue(collection={self.collection}, prefix={self.prefix!r})"
