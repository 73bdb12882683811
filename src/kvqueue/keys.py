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
Keyspace codec.

Every key is ``[store-id:2B][collection:2B][parts...]`` and all range scans
rely on plain byte-lexicographic order. Integers are stored big-endian so
that their byte order matches their numeric order.
"""

import struct
import time
from datetime import datetime
from typing import Optional, Tuple, Union

from .errors import EmptyIDError, InvalidIDError, NullRecordError

# Queue sub-namespaces.
PENDING = 0x00
CLAIMED = 0x01
SIGNAL = 0x02
DUE = 0x03

MAX_ID_SIZE = 255
MAX_COLLECTION = 0xFFFF

When = Union[None, int, float, datetime]


# ============================================================================
# Integer Encoding - Big-Endian for Lexicographic Ordering
# ============================================================================

def encode_u64_be(value: int) -> bytes:
    """Encode a u64 as big-endian bytes for lexicographic ordering."""
    return struct.pack('>Q', value)


def decode_u64_be(data: bytes) -> int:
    """Decode a big-endian u64 from bytes."""
    return struct.unpack('>Q', data[:8])[0]


def encode_u16_be(value: int) -> bytes:
    """Encode a u16 (store and collection ids)."""
    if not 0 <= value <= MAX_COLLECTION:
        raise InvalidIDError(f"Value out of u16 range: {value}")
    return struct.pack('>H', value)


def encode_u32_be(value: int) -> bytes:
    return struct.pack('>I', value)


# ============================================================================
# Namespace Keys
# ============================================================================

def namespace_key(store_id: int, collection: int, *parts: bytes) -> bytes:
    """Build ``store-id || collection || parts``."""
    return encode_u16_be(store_id) + encode_u16_be(collection) + b"".join(parts)


def key_successor(key: bytes) -> bytes:
    """Smallest key strictly greater than ``key``."""
    return key + b"\x00"


def prefix_end(prefix: bytes) -> bytes:
    """
    First key after every key that starts with ``prefix``.

    Trailing 0xFF bytes are dropped and the last remaining byte is
    incremented, so ``[prefix, prefix_end(prefix))`` is exactly the set of
    keys with that prefix.
    """
    stripped = prefix.rstrip(b"\xff")
    if not stripped:
        raise ValueError(f"Prefix has no upper bound: {prefix!r}")
    return stripped[:-1] + bytes([stripped[-1] + 1])


def validate_id(record_id: Optional[bytes]) -> bytes:
    """Check that an id can be stored with a one-byte length suffix."""
    if record_id is None:
        raise NullRecordError()
    if not isinstance(record_id, (bytes, bytearray, memoryview)):
        raise InvalidIDError(
            f"Record id must be bytes, got {type(record_id).__name__}",
            context={"type": type(record_id).__name__},
        )
    record_id = bytes(record_id)
    if not record_id:
        raise EmptyIDError()
    if len(record_id) > MAX_ID_SIZE:
        raise InvalidIDError(
            f"Record id is {len(record_id)} bytes, maximum is {MAX_ID_SIZE}",
            remediation="Use ids of 1 to 255 bytes",
            context={"size": len(record_id)},
        )
    return record_id


def id_suffix(record_id: bytes) -> bytes:
    """``id || len(id)``: lets the id be recovered from the key tail."""
    return record_id + bytes([len(record_id)])


def split_id_suffix(key: bytes) -> Tuple[bytes, bytes]:
    """Split a key ending in ``id || len(id)`` into (head, id)."""
    size = key[-1]
    if size == 0 or size + 1 > len(key):
        raise InvalidIDError(f"Key has no id suffix: {key!r}")
    return key[:-1 - size], key[-1 - size:-1]


# ============================================================================
# Timestamps
# ============================================================================

def now_nanos() -> int:
    return time.time_ns()


def to_nanos(when: When) -> int:
    """
    Normalize a due time to unix nanoseconds.

    ``None`` and ``0`` mean now, floats are unix seconds, ints are unix
    nanoseconds and datetimes are converted through their timestamp.
    """
    if when is None or when == 0:
        return now_nanos()
    if isinstance(when, datetime):
        # timestamp() loses sub-microsecond precision; microseconds are exact
        seconds = int(when.timestamp())
        return seconds * 1_000_000_000 + when.microsecond * 1_000
    if isinstance(when, bool):
        raise TypeError("Due time must be a datetime, float or int")
    if isinstance(when, int):
        return when
    if isinstance(when, float):
        return int(when * 1_000_000_000)
    raise TypeError(f"Unsupported due time type: {type(when).__name__}")
