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
Connection and transaction handles.

A Connection binds an engine to one store id. Work happens inside
``conn.tx(fn)`` (mutating, retried on conflict) or ``conn.read_tx(fn)``
(snapshot), where ``fn`` receives a DB or ReadDB handle:

    conn = Connection(store_id=1)
    conn.tx(lambda db: db.save(user))
    conn.read_tx(lambda db: db.load(user))

    queue = conn.queue(collection=10, factory=User.from_id)
    conn.tx(lambda db: queue.pub(db, None, user.record_id()))
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, TypeVar, TYPE_CHECKING

from .config import StoreConfig
from .engine import Engine, MemoryEngine, ReadTransaction, Transaction
from .errors import EmptyIDError
from .keys import encode_u16_be, namespace_key, prefix_end, validate_id
from .records import Predicate, Record, RecordFactory, RecordStore

if TYPE_CHECKING:
    from .cursor import Cursor
    from .queue import DelayQueue

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ReadDB:
    """Read-only handle passed to ``Connection.read_tx`` callbacks."""

    def __init__(self, conn: 'Connection', tx: ReadTransaction):
        self._conn = conn
        self.tx = tx

    @property
    def connection(self) -> 'Connection':
        return self._conn

    def get(self, collection: int, key: bytes) -> Optional[bytes]:
        """Raw value stored under a collection key, or None."""
        return self.tx.get(self._conn.key(collection, key))

    def load(self, *records: Record) -> None:
        self._conn.records.load(self.tx, *records)

    def select(
        self,
        collection: int,
        factory: RecordFactory,
        limit: int = 0,
        gte: Optional[bytes] = None,
        lt: Optional[bytes] = None,
        reverse: bool = False,
        filter: Optional[Predicate] = None,
    ) -> List[Record]:
        return self._conn.records.select(
            self.tx, collection, factory,
            limit=limit, gte=gte, lt=lt, reverse=reverse, filter=filter,
        )


class DB(ReadDB):
    """Mutating handle passed to ``Connection.tx`` callbacks."""

    tx: Transaction

    def put(self, collection: int, key: bytes, value: bytes) -> None:
        self.tx.set(self._conn.key(collection, key), value)

    def delete(self, collection: int, key: bytes) -> None:
        self.tx.clear(self._conn.key(collection, key))

    def save(self, *records: Record) -> None:
        self._conn.records.save(self.tx, *records)

    def drop(self, *records: Record) -> None:
        self._conn.records.drop(self.tx, *records)


class Connection:
    """
    Entry point bound to a store id.

    Args:
        store_id: 16-bit id prefixed to every key of this connection
        engine: Key-value engine (a fresh MemoryEngine by default)
        config: Tunables shared by the engine, record store, queues and cursors
    """

    def __init__(
        self,
        store_id: int,
        engine: Optional[Engine] = None,
        config: Optional[StoreConfig] = None,
    ):
        encode_u16_be(store_id)
        self.store_id = store_id
        self.config = (config or StoreConfig()).validate()
        self.engine = engine if engine is not None else MemoryEngine(self.config)
        self.records = RecordStore(store_id, self.config)

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def tx(self, fn: Callable[[DB], T]) -> T:
        """Run ``fn(db)`` in a mutating transaction, retried on conflict."""
        return self.engine.transact(lambda tx: fn(DB(self, tx)))

    def read_tx(self, fn: Callable[[ReadDB], T]) -> T:
        """Run ``fn(db)`` against a read-only snapshot."""
        return self.engine.read_transact(lambda tx: fn(ReadDB(self, tx)))

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    def key(self, collection: int, *parts: bytes) -> bytes:
        """Namespaced key; at least one part must be non-empty."""
        if not any(parts):
            raise EmptyIDError()
        return namespace_key(self.store_id, collection, *parts)

    def record_key(self, record: Record) -> bytes:
        return self.records.row_key(record.record_type(), validate_id(record.record_id()))

    # -------------------------------------------------------------------------
    # Factories
    # -------------------------------------------------------------------------

    def queue(
        self,
        collection: int,
        factory: RecordFactory,
        prefix: bytes = b"",
    ) -> 'DelayQueue':
        """
        Delay queue keyed under ``collection || prefix``.

        The queue's keys live in ``collection``; records are materialized
        through ``factory`` and loaded from their own collection, so use a
        collection id that holds no records.
        """
        from .queue import DelayQueue
        return DelayQueue(self, collection, factory, prefix)

    def cursor(
        self,
        collection: int,
        factory: RecordFactory,
        start: Optional[bytes] = None,
        page_size: Optional[int] = None,
        stop: Optional[bytes] = None,
    ) -> 'Cursor':
        """Paginated cursor over the records of ``collection``."""
        from .cursor import Cursor
        return Cursor(self, collection, factory, start=start, stop=stop,
                      page_size=self.config.page_size if page_size is None else page_size)

    def clear_db(self) -> None:
        """Delete every key of this store id."""
        begin = encode_u16_be(self.store_id)
        self.engine.transact(lambda tx: tx.clear_range(begin, prefix_end(begin)))
        logger.debug("Cleared store %d", self.store_id)

    def __repr__(self) -> str:
        return f"Connection(store_id={self.store_id})"
