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
Paginated Cursor

Bidirectional paging over the records of one collection. Every call runs in
its own transaction; the cursor only carries the key where the next page
starts, so pages stay stable across independent transactions.

    with conn.cursor(collection=10, factory=User.from_id, page_size=3) as cur:
        first = conn.read_tx(lambda db: cur.next(db))
        third = conn.read_tx(lambda db: cur.next(db, skip=1))
        again = conn.read_tx(lambda db: cur.prev(db, skip=1))

A cursor position can be saved and restored later:

    saved = cur.position.encode()
    cur = Cursor.restore(conn, 10, User.from_id, CursorPosition.decode(saved))
"""

from __future__ import annotations

import logging
import struct
import threading
from dataclasses import dataclass, replace
from enum import IntEnum
from typing import List, Optional, TYPE_CHECKING

from .connection import ReadDB
from .deadline import Deadline
from .engine import ReadTransaction
from .errors import (
    ConfigError,
    CorruptRowError,
    CursorClosedError,
    IncompatibleStoreHandleError,
    NullStoreHandleError,
    ValidationError,
)
from .keys import encode_u16_be, key_successor, namespace_key, prefix_end
from .records import Record, RecordFactory
from .stream import Stream

if TYPE_CHECKING:
    from .connection import Connection

logger = logging.getLogger(__name__)

# direction, empty, after_end, last_count
_POSITION = struct.Struct(">B??I")


class Direction(IntEnum):
    """Direction of the last cursor movement."""
    FORWARD = 0
    BACKWARD = 1


@dataclass
class CursorPosition:
    """
    Serializable cursor state.

    Attributes:
        key: Id the next forward page starts at (relative to the collection)
        direction: Direction of the last movement
        last_count: Size of the last non-empty page
        empty: Set once a page came back short
        after_end: The cursor moved past the end of its range; ``key`` is unused
    """
    key: bytes = b""
    direction: Direction = Direction.FORWARD
    last_count: int = 0
    empty: bool = False
    after_end: bool = False

    def encode(self) -> bytes:
        header = _POSITION.pack(int(self.direction), self.empty, self.after_end, self.last_count)
        return header + self.key

    @classmethod
    def decode(cls, data: bytes) -> 'CursorPosition':
        if len(data) < _POSITION.size:
            raise CorruptRowError(f"Cursor position too short: {len(data)} bytes")
        direction, empty, after_end, last_count = _POSITION.unpack_from(data)
        try:
            direction = Direction(direction)
        except ValueError:
            raise CorruptRowError(f"Unknown cursor direction: {direction}") from None
        return cls(
            key=bytes(data[_POSITION.size:]),
            direction=direction,
            last_count=last_count,
            empty=empty,
            after_end=after_end,
        )


class Cursor:
    """
    Page-by-page reader over ``[start, stop)`` of a collection.

    Args:
        conn: Owning connection
        collection: Collection id of the records
        factory: Builds an empty record from an id
        start: First id included (default: start of the collection)
        stop: First id excluded (default: end of the collection)
        page_size: Records per page (positive)
        position: Saved state to resume from
    """

    def __init__(
        self,
        conn: 'Connection',
        collection: int,
        factory: RecordFactory,
        start: Optional[bytes] = None,
        stop: Optional[bytes] = None,
        page_size: int = 100,
        position: Optional[CursorPosition] = None,
    ):
        if page_size is None or page_size < 1:
            raise ConfigError(
                f"page_size must be positive, got {page_size}",
                context={"page_size": page_size},
            )
        encode_u16_be(collection)

        self._conn = conn
        self.collection = collection
        self.page_size = page_size
        self._factory = factory

        self._base = namespace_key(conn.store_id, collection)
        self._begin = self._base + (start or b"")
        self._end = self._base + stop if stop else prefix_end(self._base)

        if position is None:
            position = CursorPosition(key=start or b"")
        self._pos = replace(position)

        self._lock = threading.Lock()
        self._stream: Optional[Stream] = None
        self._closed = False

    @classmethod
    def restore(
        cls,
        conn: 'Connection',
        collection: int,
        factory: RecordFactory,
        position: CursorPosition,
        start: Optional[bytes] = None,
        stop: Optional[bytes] = None,
        page_size: Optional[int] = None,
    ) -> 'Cursor':
        """Recreate a cursor from a saved position."""
        return cls(
            conn, collection, factory,
            start=start, stop=stop,
            page_size=conn.config.page_size if page_size is None else page_size,
            position=position,
        )

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def empty(self) -> bool:
        return self._pos.empty

    @property
    def position(self) -> CursorPosition:
        """Copy of the current position."""
        return replace(self._pos)

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise CursorClosedError()

    @staticmethod
    def _readable(db) -> ReadDB:
        if db is None:
            raise NullStoreHandleError()
        if not isinstance(db, ReadDB):
            raise IncompatibleStoreHandleError(db, "DB or ReadDB")
        return db

    @staticmethod
    def _check_skip(skip: int) -> None:
        if skip < 0:
            raise ValidationError(f"skip must not be negative, got {skip}", context={"skip": skip})

    def _current(self) -> bytes:
        if self._pos.after_end:
            return self._end
        return min(max(self._base + self._pos.key, self._begin), self._end)

    # =========================================================================
    # Paging
    # =========================================================================

    def next(self, db: ReadDB, skip: int = 0) -> List[Record]:
        """
        Skip ``skip`` pages forward, then load one page.

        Returns an empty list once the cursor is empty and ``skip`` is 0.
        """
        self._check_open()
        db = self._readable(db)
        self._check_skip(skip)
        with self._lock:
            return self._next(db.tx, skip)

    def prev(self, db: ReadDB, skip: int = 0) -> List[Record]:
        """
        Move back ``skip`` pages plus the last page, then load one page.

        ``prev(db)`` reloads the page most recently returned; the cursor
        stops at the start of its range.
        """
        self._check_open()
        db = self._readable(db)
        self._check_skip(skip)
        with self._lock:
            return self._prev(db.tx, skip)

    def _next(self, tx: ReadTransaction, skip: int) -> List[Record]:
        if self._pos.empty and skip == 0:
            return []

        pos = self._current()
        if skip > 0:
            pos = self._seek_forward(tx, pos, skip * self.page_size)
        return self._load_page(tx, pos, Direction.FORWARD)

    def _prev(self, tx: ReadTransaction, skip: int) -> List[Record]:
        pos = self._current()
        pos = self._seek_backward(tx, pos, skip * self.page_size + self._pos.last_count)
        return self._load_page(tx, pos, Direction.BACKWARD)

    def _seek_forward(self, tx: ReadTransaction, pos: bytes, count: int) -> bytes:
        rows = tx.get_range(pos, self._end, limit=count)
        if len(rows) < count:
            return self._end
        return key_successor(rows[-1][0])

    def _seek_backward(self, tx: ReadTransaction, pos: bytes, count: int) -> bytes:
        if count == 0:
            return pos
        rows = tx.get_range(self._begin, pos, limit=count, reverse=True)
        if len(rows) < count:
            return self._begin
        return rows[-1][0]

    def _load_page(self, tx: ReadTransaction, pos: bytes, direction: Direction) -> List[Record]:
        rows = tx.get_range(pos, self._end, limit=self.page_size)
        records = self._materialize(tx, rows)

        offset = len(self._base)
        if rows:
            self._pos = CursorPosition(
                key=key_successor(rows[-1][0])[offset:],
                direction=direction,
                last_count=len(rows),
                empty=len(rows) < self.page_size,
            )
        elif pos >= self._end:
            # Past the end: the next prev steps back one full page.
            self._pos = CursorPosition(
                direction=direction,
                last_count=self.page_size,
                empty=True,
                after_end=True,
            )
        else:
            self._pos = CursorPosition(
                key=pos[offset:],
                direction=direction,
                last_count=self._pos.last_count,
                empty=True,
            )
        logger.debug("Cursor on collection %d loaded %d records", self.collection, len(records))
        return records

    def _materialize(self, tx: ReadTransaction, rows) -> List[Record]:
        offset = len(self._base)
        store = self._conn.records
        return [
            store.materialize(tx, self.collection, self._factory, key[offset:], raw)
            for key, raw in rows
        ]

    # =========================================================================
    # Streaming
    # =========================================================================

    def select(self, timeout: Optional[float] = None, cancel=None) -> Stream:
        """
        Stream every remaining record in a background thread.

        Each page is read in its own transaction. The stream ends when the
        cursor is empty, on deadline or cancel, or on the first error.
        """
        self._check_open()
        if self._stream is not None:
            raise ValidationError("Cursor.select() can only be called once per cursor")

        deadline = Deadline(timeout, cancel)

        def produce(emit) -> None:
            while not self._pos.empty:
                deadline.check()
                with self._lock:
                    page = self._conn.engine.read_transact(lambda tx: self._next(tx, 0))
                for rec in page:
                    emit(rec)

        self._stream = Stream(produce, deadline, name=f"kvqueue-select-{self.collection}")
        return self._stream

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Cancel a running select and refuse further calls. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self._stream is not None:
            self._stream.cancel()
            self._stream.join()
        logger.debug("Cursor on collection %d closed", self.collection)

    def __enter__(self) -> 'Cursor':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"Cursor(collection={self.collection}, page_size={self.page_size}, "
            f"key={self._pos.key!r}, empty={self._pos.empty})"
        )
