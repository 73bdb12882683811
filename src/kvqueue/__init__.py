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
kvqueue v0.1.0

Delayed task queue and paginated cursor over an ordered, transactional
key-value store.

Architecture:
    Connection  - store id + engine + config, hands out DB/ReadDB handles
    DelayQueue  - pub/sub of record ids with due times, claim and ack
    Cursor      - forward/backward paging over a collection
    MemoryEngine - in-process optimistic MVCC engine with watches

Example:
    from kvqueue import Connection

    conn = Connection(store_id=1)
    conn.tx(lambda db: db.save(task))

    queue = conn.queue(collection=100, factory=Task.from_id)
    conn.tx(lambda db: queue.pub(db, None, task.record_id()))

    claimed = queue.sub_one(timeout=5)
    conn.tx(lambda db: queue.ack(db, claimed.record_id()))
"""

__version__ = "0.1.0"

from .config import StoreConfig
from .connection import DB, Connection, ReadDB
from .cursor import Cursor, CursorPosition, Direction
from .deadline import Deadline
from .engine import Engine, MemoryEngine, ReadTransaction, Transaction, Watch
from .queue import DelayQueue, QueueStats
from .records import Record, RecordFactory, RecordStore
from .stream import Stream

from .errors import (
    KvQueueError,
    ErrorCode,
    NullStoreHandleError,
    IncompatibleStoreHandleError,
    TransactionError,
    TransactionConflictError,
    RetryLimitExceededError,
    OperationCancelledError,
    DeadlineExceededError,
    ValidationError,
    NullRecordError,
    InvalidIDError,
    EmptyIDError,
    ConfigError,
    RecordNotFoundError,
    CorruptRowError,
    QueuePanicError,
    CursorClosedError,
)

__all__ = [
    # Version
    "__version__",

    # Core
    "Connection",
    "DB",
    "ReadDB",
    "StoreConfig",
    "DelayQueue",
    "QueueStats",
    "Cursor",
    "CursorPosition",
    "Direction",
    "Stream",
    "Deadline",

    # Records
    "Record",
    "RecordFactory",
    "RecordStore",

    # Engine
    "Engine",
    "MemoryEngine",
    "Transaction",
    "ReadTransaction",
    "Watch",

    # Errors
    "KvQueueError",
    "ErrorCode",
    "NullStoreHandleError",
    "IncompatibleStoreHandleError",
    "TransactionError",
    "TransactionConflictError",
    "RetryLimitExceededError",
    "OperationCancelledError",
    "DeadlineExceededError",
    "ValidationError",
    "NullRecordError",
    "InvalidIDError",
    "EmptyIDError",
    "ConfigError",
    "RecordNotFoundError",
    "CorruptRowError",
    "QueuePanicError",
    "CursorClosedError",
]
