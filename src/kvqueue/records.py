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
Record Store

Generic save/load/drop/select of records namespaced per collection.

Row layout:
    key   = store-id || collection || id
    value = flags (1B) || hash (8B) || body

Bodies larger than ``gzip_size`` are gzip-compressed; encoded bodies larger
than ``chunk_size`` are moved to chunk keys under the reserved blob
collection and the row body becomes ``blob_uid (16B) || chunk_count (4B)``.
"""

from __future__ import annotations

import gzip
import hashlib
import struct
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Union

from .config import StoreConfig
from .engine import ReadTransaction, Transaction
from .errors import CorruptRowError, NullRecordError, RecordNotFoundError
from .keys import (
    MAX_COLLECTION,
    encode_u16_be,
    encode_u32_be,
    namespace_key,
    prefix_end,
    validate_id,
)

# Reserved collection for chunked payloads.
BLOB_COLLECTION = MAX_COLLECTION

FLAG_GZIP = 0x01
FLAG_BLOB = 0x02

_HEADER = struct.Struct(">B8s")
_BLOB_REF = struct.Struct(">16sI")


# ============================================================================
# Record Contract
# ============================================================================

class Record(ABC):
    """
    Anything stored in a collection.

    A record owns its id and knows how to turn itself into bytes and back.
    """

    @abstractmethod
    def record_id(self) -> bytes:
        """Stable id, unique within the collection (1..255 bytes)."""
        pass

    @abstractmethod
    def record_type(self) -> int:
        """Collection id (0..0xFFFE)."""
        pass

    @abstractmethod
    def marshal(self) -> bytes:
        pass

    @abstractmethod
    def unmarshal(self, data: bytes) -> None:
        pass


RecordFactory = Callable[[bytes], Record]
Predicate = Callable[[Record], bool]


# ============================================================================
# Row Codec
# ============================================================================

def payload_hash(data: bytes) -> bytes:
    """8-byte digest stored alongside each row."""
    return hashlib.blake2b(data, digest_size=8).digest()


@dataclass
class Row:
    """Decoded row header plus body."""
    flags: int
    digest: bytes
    body: bytes

    @property
    def gzipped(self) -> bool:
        return bool(self.flags & FLAG_GZIP)

    @property
    def blob(self) -> bool:
        return bool(self.flags & FLAG_BLOB)

    def encode(self) -> bytes:
        return _HEADER.pack(self.flags, self.digest) + self.body

    @classmethod
    def decode(cls, data: bytes) -> 'Row':
        if len(data) < _HEADER.size:
            raise CorruptRowError(f"Row too short: {len(data)} bytes")
        flags, digest = _HEADER.unpack_from(data)
        return cls(flags=flags, digest=digest, body=data[_HEADER.size:])


class RecordStore:
    """
    Save/Load/Drop/Select over engine transactions.

    Example:
        store = RecordStore(store_id=1)
        engine.transact(lambda tx: store.save(tx, user))
        engine.read_transact(lambda tx: store.load(tx, user))
    """

    def __init__(self, store_id: int, config: Optional[StoreConfig] = None):
        encode_u16_be(store_id)
        self.store_id = store_id
        self._config = config or StoreConfig()

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    def row_key(self, collection: int, record_id: bytes) -> bytes:
        return namespace_key(self.store_id, collection, record_id)

    def collection_range(
        self,
        collection: int,
        gte: Optional[bytes] = None,
        lt: Optional[bytes] = None,
    ):
        base = namespace_key(self.store_id, collection)
        begin = base + (gte or b"")
        end = base + lt if lt else prefix_end(base)
        return begin, end

    def _blob_prefix(self, collection: int, blob_uid: bytes) -> bytes:
        return namespace_key(self.store_id, BLOB_COLLECTION, encode_u16_be(collection), blob_uid)

    # -------------------------------------------------------------------------
    # Encoding
    # -------------------------------------------------------------------------

    def _encode(self, tx: Transaction, collection: int, payload: bytes) -> bytes:
        flags = 0
        body = payload

        if len(body) > self._config.gzip_size:
            packed = gzip.compress(body)
            if len(packed) < len(body):
                body = packed
                flags |= FLAG_GZIP

        if len(body) > self._config.chunk_size:
            blob_uid = uuid.uuid4().bytes
            prefix = self._blob_prefix(collection, blob_uid)
            size = self._config.chunk_size
            count = 0
            for offset in range(0, len(body), size):
                tx.set(prefix + encode_u32_be(count), body[offset:offset + size])
                count += 1
            body = _BLOB_REF.pack(blob_uid, count)
            flags |= FLAG_BLOB

        return Row(flags=flags, digest=payload_hash(payload), body=body).encode()

    def _decode(self, tx: ReadTransaction, collection: int, record_id: bytes, raw: bytes) -> bytes:
        row = Row.decode(raw)
        body = row.body

        if row.blob:
            blob_uid, count = self._blob_ref(row)
            prefix = self._blob_prefix(collection, blob_uid)
            chunks = tx.get_range(prefix, prefix_end(prefix))
            if len(chunks) != count:
                raise CorruptRowError(
                    f"Row expects {count} chunks, found {len(chunks)}",
                    context={"collection": collection, "id": record_id},
                )
            body = b"".join(value for _, value in chunks)

        if row.gzipped:
            body = gzip.decompress(body)

        if payload_hash(body) != row.digest:
            raise CorruptRowError(
                "Row checksum mismatch",
                context={"collection": collection, "id": record_id},
            )
        return body

    @staticmethod
    def _blob_ref(row: Row):
        if len(row.body) != _BLOB_REF.size:
            raise CorruptRowError(f"Invalid blob reference of {len(row.body)} bytes")
        return _BLOB_REF.unpack(row.body)

    def _drop_blob(self, tx: Transaction, collection: int, raw: Optional[bytes]) -> None:
        if raw is None:
            return
        row = Row.decode(raw)
        if row.blob:
            blob_uid, _ = self._blob_ref(row)
            prefix = self._blob_prefix(collection, blob_uid)
            tx.clear_range(prefix, prefix_end(prefix))

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def save(self, tx: Transaction, *records: Record) -> None:
        """Insert or replace records."""
        keyed = self._keyed(records)
        for rec, key in keyed:
            collection = rec.record_type()
            self._drop_blob(tx, collection, tx.get(key))
            tx.set(key, self._encode(tx, collection, rec.marshal()))

    def load(self, tx: ReadTransaction, *records: Record) -> None:
        """
        Fill records in place from storage.

        Raises:
            RecordNotFoundError: for the first id with no stored row
        """
        keyed = self._keyed(records)
        for rec, key in keyed:
            raw = tx.get(key)
            if raw is None:
                raise RecordNotFoundError(rec.record_type(), rec.record_id())
            rec.unmarshal(self._decode(tx, rec.record_type(), rec.record_id(), raw))

    def drop(self, tx: Transaction, *records: Record) -> None:
        """Delete records and their chunks. Missing rows are ignored."""
        keyed = self._keyed(records)
        for rec, key in keyed:
            self._drop_blob(tx, rec.record_type(), tx.get(key))
            tx.clear(key)

    def load_ids(
        self,
        tx: ReadTransaction,
        factory: RecordFactory,
        ids: Iterable[bytes],
    ) -> List[Record]:
        """Build records from ids with ``factory`` and load them."""
        records = [factory(bytes(rid)) for rid in ids]
        if records:
            self.load(tx, *records)
        return records

    def select(
        self,
        tx: ReadTransaction,
        collection: int,
        factory: RecordFactory,
        limit: int = 0,
        gte: Optional[bytes] = None,
        lt: Optional[bytes] = None,
        reverse: bool = False,
        filter: Optional[Predicate] = None,
    ) -> List[Record]:
        """
        Ordered records of one collection.

        Args:
            tx: Transaction handle
            collection: Collection id
            factory: Builds an empty record from an id
            limit: Maximum records returned after filtering (0 = unlimited)
            gte: Smallest id included
            lt: First id excluded
            reverse: Descending id order
            filter: Keep only records for which this returns True
        """
        begin, end = self.collection_range(collection, gte, lt)
        prefix_len = len(namespace_key(self.store_id, collection))

        # Without a filter the limit can be pushed down to the scan.
        scan_limit = limit if filter is None else 0
        result = []
        for key, raw in tx.get_range(begin, end, limit=scan_limit, reverse=reverse):
            rec = self.materialize(tx, collection, factory, key[prefix_len:], raw)
            if filter is not None and not filter(rec):
                continue
            result.append(rec)
            if 0 < limit <= len(result):
                break
        return result

    def materialize(
        self,
        tx: ReadTransaction,
        collection: int,
        factory: RecordFactory,
        record_id: bytes,
        raw: bytes,
    ) -> Record:
        """Build a record from a row already read by a range scan."""
        rec = factory(bytes(record_id))
        rec.unmarshal(self._decode(tx, collection, record_id, raw))
        return rec

    def _keyed(self, records: Sequence[Optional[Record]]):
        keyed = []
        for rec in records:
            if rec is None:
                raise NullRecordError()
            keyed.append((rec, self.row_key(rec.record_type(), validate_id(rec.record_id()))))
        return keyed


def as_ids(items: Iterable[Union[bytes, Record]]) -> List[bytes]:
    """Accept raw ids or records."""
    ids = []
    for item in items:
        if isinstance(item, Record):
            item = item.record_id()
        ids.append(validate_id(item))
    return ids
