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
Transactional Store Adapter

The queue and cursor only need a small contract from the key-value engine:

- ``transact(fn)``: run ``fn`` against a mutating transaction, retrying
  automatically when the commit conflicts
- ``read_transact(fn)``: run ``fn`` against a read-only snapshot
- point reads and writes, range reads in key order, range clears
- ``add_write_conflict_range``: mark a range as contended without writing it
- ``watch(key)``: a cancellable future resolved by the next write to ``key``

MemoryEngine implements that contract in process with optimistic MVCC:

    engine = MemoryEngine()
    engine.transact(lambda tx: tx.set(b"k", b"v"))
    value = engine.read_transact(lambda tx: tx.get(b"k"))
"""

from __future__ import annotations

import bisect
import logging
import random
import threading
import time
from abc import ABC, abstractmethod
from collections import Counter
from typing import (
    Callable,
    Dict,
    List,
    Optional,
    Tuple,
    TypeVar,
)

from .config import StoreConfig
from .errors import (
    RetryLimitExceededError,
    TransactionConflictError,
    TransactionError,
)
from .keys import key_successor

logger = logging.getLogger(__name__)

T = TypeVar("T")

KeyValue = Tuple[bytes, bytes]
KeyRange = Tuple[bytes, bytes]

# Commits between history pruning passes.
_GC_INTERVAL = 64


def _overlaps(a: KeyRange, b: KeyRange) -> bool:
    return a[0] < b[1] and b[0] < a[1]


# ============================================================================
# Watch - Key Change Future
# ============================================================================

class Watch:
    """
    Future resolved by the next write to a key.

    A watch becomes active when the transaction that created it commits.
    If that transaction aborts the watch is cancelled.
    """

    def __init__(self, key: bytes):
        self.key = key
        self._event = threading.Event()
        self._cancelled = False
        self._on_cancel: Optional[Callable[['Watch'], None]] = None

    def _fire(self) -> None:
        self._event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the key changes. Returns False on timeout or cancel."""
        return self._event.wait(timeout) and not self._cancelled

    def done(self) -> bool:
        return self._event.is_set()

    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop watching; wakes any waiter. Idempotent."""
        if self._event.is_set():
            return
        self._cancelled = True
        self._event.set()
        if self._on_cancel is not None:
            self._on_cancel(self)

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else ("fired" if self.done() else "pending")
        return f"Watch({self.key!r}, {state})"


# ============================================================================
# Transaction Handles
# ============================================================================

class ReadTransaction:
    """Snapshot-consistent, read-only view of the store."""

    def __init__(self, engine: 'MemoryEngine', read_version: int):
        self._engine = engine
        self.read_version = read_version
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise TransactionError("Transaction is closed")

    def get(self, key: bytes) -> Optional[bytes]:
        """Get a value, or None if absent."""
        self._check_open()
        return self._engine._value_at(key, self.read_version)

    def get_range(
        self,
        begin: bytes,
        end: bytes,
        limit: int = 0,
        reverse: bool = False,
    ) -> List[KeyValue]:
        """
        Key/value pairs in ``[begin, end)``, ascending by key.

        Args:
            begin: Inclusive start key
            end: Exclusive end key
            limit: Maximum rows to return (0 = unlimited)
            reverse: Return rows in descending order (the limit applies
                from the end of the range)
        """
        self._check_open()
        return self._engine._range_at(begin, end, self.read_version, limit, reverse)


class Transaction(ReadTransaction):
    """
    Mutating transaction with read-your-writes.

    Reads record read-conflict ranges; writes and explicit write-conflict
    ranges form the write set checked by concurrent commits.
    """

    def __init__(self, engine: 'MemoryEngine', read_version: int):
        super().__init__(engine, read_version)
        self._ops: List[Tuple[str, bytes, Optional[bytes]]] = []
        self._reads: List[KeyRange] = []
        self._write_ranges: List[KeyRange] = []
        self._watches: List[Watch] = []

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, key: bytes) -> Optional[bytes]:
        self._check_open()
        self._reads.append((key, key_successor(key)))
        for op, first, second in reversed(self._ops):
            if op == "set" and first == key:
                return second
            if op == "clear" and first <= key < second:
                return None
        return self._engine._value_at(key, self.read_version)

    def get_range(
        self,
        begin: bytes,
        end: bytes,
        limit: int = 0,
        reverse: bool = False,
    ) -> List[KeyValue]:
        self._check_open()
        if begin >= end:
            return []
        self._reads.append((begin, end))

        if not self._ops:
            return self._engine._range_at(begin, end, self.read_version, limit, reverse)

        # Overlay own writes on the snapshot, then order and limit.
        rows = dict(self._engine._range_at(begin, end, self.read_version, 0, False))
        for op, first, second in self._ops:
            if op == "set":
                if begin <= first < end:
                    rows[first] = second
            else:
                for key in [k for k in rows if first <= k < second]:
                    del rows[key]

        keys = sorted(rows, reverse=reverse)
        if limit > 0:
            keys = keys[:limit]
        return [(k, rows[k]) for k in keys]

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def set(self, key: bytes, value: bytes) -> None:
        self._check_open()
        self._ops.append(("set", bytes(key), bytes(value or b"")))
        self._write_ranges.append((key, key_successor(key)))

    def clear(self, key: bytes) -> None:
        self.clear_range(key, key_successor(key))

    def clear_range(self, begin: bytes, end: bytes) -> None:
        self._check_open()
        if begin >= end:
            return
        self._ops.append(("clear", bytes(begin), bytes(end)))
        self._write_ranges.append((begin, end))

    def add_write_conflict_range(self, begin: bytes, end: bytes) -> None:
        """Treat ``[begin, end)`` as written for conflict detection."""
        self._check_open()
        if begin < end:
            self._write_ranges.append((begin, end))

    def watch(self, key: bytes) -> Watch:
        """Watch ``key``; the watch activates when this transaction commits."""
        self._check_open()
        w = Watch(bytes(key))
        self._watches.append(w)
        return w

    @property
    def read_only(self) -> bool:
        return not self._ops and not self._write_ranges


# ============================================================================
# Engine Interface
# ============================================================================

class Engine(ABC):
    """Minimal contract the queue and cursor consume."""

    @abstractmethod
    def transact(self, fn: Callable[[Transaction], T]) -> T:
        """Run ``fn`` in a mutating transaction, retrying on conflict."""
        pass

    @abstractmethod
    def read_transact(self, fn: Callable[[ReadTransaction], T]) -> T:
        """Run ``fn`` against a read-only snapshot."""
        pass


# ============================================================================
# MemoryEngine - In-Process Optimistic MVCC Store
# ============================================================================

class MemoryEngine(Engine):
    """
    In-process ordered key-value engine with serializable transactions.

    Each key keeps a short version history so snapshot reads see a
    consistent view. A commit fails with TransactionConflictError when a
    transaction that committed after its read version wrote into any range
    it read. Thread-safe.
    """

    def __init__(self, config: Optional[StoreConfig] = None):
        self._config = config or StoreConfig()
        self._lock = threading.RLock()
        self._version = 0
        self._keys: List[bytes] = []
        self._history: Dict[bytes, List[Tuple[int, Optional[bytes]]]] = {}
        self._commits: List[Tuple[int, List[KeyRange]]] = []
        self._active: Counter = Counter()
        self._watches: Dict[bytes, List[Watch]] = {}
        self._commits_since_gc = 0

    @property
    def version(self) -> int:
        return self._version

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def transact(self, fn: Callable[[Transaction], T]) -> T:
        attempts = 0
        backoff = self._config.retry_backoff

        while True:
            tx = self._begin(Transaction)
            try:
                result = fn(tx)
                self._commit(tx)
                return result
            except TransactionConflictError as exc:
                attempts += 1
                if attempts >= self._config.retry_limit:
                    raise RetryLimitExceededError(attempts) from exc
                logger.debug("Transaction conflict, retry %d in %.4fs", attempts, backoff)
                time.sleep(backoff * random.uniform(0.5, 1.0))
                backoff = min(backoff * 2, self._config.retry_backoff_max)
            finally:
                self._finish(tx)

    def read_transact(self, fn: Callable[[ReadTransaction], T]) -> T:
        tx = self._begin(ReadTransaction)
        try:
            return fn(tx)
        finally:
            self._finish(tx)

    def _begin(self, kind):
        with self._lock:
            tx = kind(self, self._version)
            self._active[tx.read_version] += 1
            return tx

    def _finish(self, tx: ReadTransaction) -> None:
        if tx._closed:
            return
        tx._closed = True
        if isinstance(tx, Transaction):
            # Watches of an uncommitted attempt never activate.
            for w in tx._watches:
                if w._on_cancel is None:
                    w.cancel()
        with self._lock:
            self._active[tx.read_version] -= 1
            if self._active[tx.read_version] <= 0:
                del self._active[tx.read_version]

    def _commit(self, tx: Transaction) -> None:
        with self._lock:
            if not tx.read_only:
                for version, ranges in self._commits:
                    if version <= tx.read_version:
                        continue
                    for written in ranges:
                        if any(_overlaps(written, read) for read in tx._reads):
                            raise TransactionConflictError()

            # Watches whose key changed after our snapshot fire right away.
            immediate = [w for w in tx._watches if self._last_write(w.key) > tx.read_version]

            if not tx.read_only:
                self._version += 1
                version = self._version
                written_keys = self._apply(tx._ops, version)
                self._commits.append((version, list(tx._write_ranges)))
                self._fire_watches(written_keys, tx._ops)
                self._commits_since_gc += 1
                if self._commits_since_gc >= _GC_INTERVAL:
                    self._gc()

            for w in tx._watches:
                w._on_cancel = self._unregister_watch
                if w in immediate:
                    w._fire()
                else:
                    self._watches.setdefault(w.key, []).append(w)

            tx._closed = True
            self._active[tx.read_version] -= 1
            if self._active[tx.read_version] <= 0:
                del self._active[tx.read_version]

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------

    def _apply(self, ops, version: int) -> List[bytes]:
        written = []
        for op, first, second in ops:
            if op == "set":
                if first not in self._history:
                    bisect.insort(self._keys, first)
                    self._history[first] = []
                self._history[first].append((version, second))
                written.append(first)
            else:
                lo = bisect.bisect_left(self._keys, first)
                hi = bisect.bisect_left(self._keys, second)
                for key in self._keys[lo:hi]:
                    history = self._history[key]
                    if history[-1][1] is not None:
                        history.append((version, None))
                        written.append(key)
        return written

    def _value_at(self, key: bytes, version: int) -> Optional[bytes]:
        with self._lock:
            history = self._history.get(key)
            if not history:
                return None
            for ver, value in reversed(history):
                if ver <= version:
                    return value
            return None

    def _range_at(
        self,
        begin: bytes,
        end: bytes,
        version: int,
        limit: int,
        reverse: bool,
    ) -> List[KeyValue]:
        if begin >= end:
            return []
        with self._lock:
            lo = bisect.bisect_left(self._keys, begin)
            hi = bisect.bisect_left(self._keys, end)
            keys = self._keys[lo:hi]
            if reverse:
                keys = reversed(keys)

            rows = []
            for key in keys:
                value = None
                for ver, val in reversed(self._history[key]):
                    if ver <= version:
                        value = val
                        break
                if value is None:
                    continue
                rows.append((key, value))
                if 0 < limit <= len(rows):
                    break
            return rows

    def _last_write(self, key: bytes) -> int:
        history = self._history.get(key)
        return history[-1][0] if history else 0

    def _gc(self) -> None:
        """Drop history no active or future snapshot can see."""
        self._commits_since_gc = 0
        oldest = min(self._active) if self._active else self._version

        self._commits = [(v, r) for v, r in self._commits if v > oldest]

        dead = []
        for key, history in self._history.items():
            # Keep the newest entry visible at `oldest` and everything after it.
            base = 0
            for i, (ver, _) in enumerate(history):
                if ver <= oldest:
                    base = i
            if base:
                del history[:base]
            if len(history) == 1 and history[0][1] is None and history[0][0] <= oldest:
                dead.append(key)

        for key in dead:
            del self._history[key]
            idx = bisect.bisect_left(self._keys, key)
            del self._keys[idx]

    # -------------------------------------------------------------------------
    # Watches
    # -------------------------------------------------------------------------

    def _fire_watches(self, written_keys: List[bytes], ops) -> None:
        if not self._watches:
            return
        touched = set(written_keys)
        # A clear fires watches even on keys that held no value.
        for op, first, second in ops:
            if op == "clear":
                touched.update(k for k in self._watches if first <= k < second)
        for key in touched:
            for w in self._watches.pop(key, []):
                w._fire()

    def _unregister_watch(self, w: Watch) -> None:
        with self._lock:
            watches = self._watches.get(w.key)
            if watches and w in watches:
                watches.remove(w)
                if not watches:
                    del self._watches[w.key]

    def watch_count(self) -> int:
        """Number of registered, unresolved watches."""
        with self._lock:
            return sum(len(ws) for ws in self._watches.values())
