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
kvqueue Error Types

Error taxonomy with machine-readable codes and remediation hints.

Error Code Ranges:
- 1xxx: Store handle errors
- 2xxx: Transaction errors
- 3xxx: Cancellation / deadline
- 4xxx: Validation errors
- 5xxx: Record errors
- 6xxx: Queue and cursor errors
- 9xxx: Internal errors
"""

from enum import IntEnum
from typing import Optional, Dict, Any


class ErrorCode(IntEnum):
    """Machine-readable error codes."""

    # Store handle errors (1xxx)
    NULL_HANDLE = 1001
    INCOMPATIBLE_HANDLE = 1002

    # Transaction errors (2xxx)
    TRANSACTION_ABORTED = 2001
    TRANSACTION_CONFLICT = 2002
    RETRY_LIMIT_EXCEEDED = 2003

    # Cancellation (3xxx)
    CANCELLED = 3001
    DEADLINE_EXCEEDED = 3002

    # Validation errors (4xxx)
    VALIDATION_ERROR = 4000
    NULL_RECORD = 4001
    INVALID_ID = 4002
    EMPTY_ID = 4003
    INVALID_CONFIG = 4004

    # Record errors (5xxx)
    RECORD_NOT_FOUND = 5001
    CORRUPT_ROW = 5002

    # Queue / cursor errors (6xxx)
    QUEUE_PANIC = 6001
    CURSOR_CLOSED = 6002

    # Internal errors (9xxx)
    INTERNAL_ERROR = 9001


class KvQueueError(Exception):
    """
    Base exception for kvqueue errors.

    All kvqueue exceptions inherit from this class, providing:
    - Machine-readable error codes
    - Human-readable messages
    - Optional remediation hints
    - Optional context data

    Example:
        try:
            queue.sub_one(timeout=5)
        except DeadlineExceededError as e:
            print(f"Error {e.code}: {e.message}")
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        remediation: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.remediation = remediation
        self.context = context or {}

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "remediation": self.remediation,
            "context": self.context,
        }


# ============================================================================
# Store Handle Errors
# ============================================================================

class NullStoreHandleError(KvQueueError):
    """No transaction handle was supplied."""
    code = ErrorCode.NULL_HANDLE

    def __init__(self, message: str = "No transaction handle supplied"):
        super().__init__(
            message,
            remediation="Call the operation inside conn.tx(lambda db: ...) and pass db",
        )


class IncompatibleStoreHandleError(KvQueueError):
    """The handle is not of the kind this operation needs."""
    code = ErrorCode.INCOMPATIBLE_HANDLE

    def __init__(self, handle: Any, expected: str):
        super().__init__(
            f"Incompatible store handle: expected {expected}, got {type(handle).__name__}",
            remediation="Pass the handle received from Connection.tx() (or read_tx() for read-only calls)",
            context={"expected": expected, "actual": type(handle).__name__},
        )


# ============================================================================
# Transaction Errors
# ============================================================================

class TransactionError(KvQueueError):
    """Transaction-related error."""
    code = ErrorCode.TRANSACTION_ABORTED


class TransactionConflictError(TransactionError):
    """Transaction aborted because a concurrent commit wrote into its read set."""
    code = ErrorCode.TRANSACTION_CONFLICT

    def __init__(self, message: str = "Transaction aborted due to conflict"):
        super().__init__(
            message,
            remediation="Retry the transaction. Engine.transact() retries automatically.",
        )


class RetryLimitExceededError(TransactionError):
    """A transaction kept conflicting past the configured retry limit."""
    code = ErrorCode.RETRY_LIMIT_EXCEEDED

    def __init__(self, attempts: int):
        super().__init__(
            f"Transaction gave up after {attempts} conflicting attempts",
            remediation="Reduce contention on the key range or raise StoreConfig.retry_limit",
            context={"attempts": attempts},
        )


# ============================================================================
# Cancellation
# ============================================================================

class OperationCancelledError(KvQueueError):
    """The caller cancelled a blocking operation."""
    code = ErrorCode.CANCELLED

    def __init__(self, message: str = "Operation cancelled"):
        super().__init__(message)


class DeadlineExceededError(KvQueueError):
    """A blocking operation ran past its deadline."""
    code = ErrorCode.DEADLINE_EXCEEDED

    def __init__(self, timeout_seconds: Optional[float] = None):
        message = "Deadline exceeded"
        if timeout_seconds is not None:
            message = f"Deadline exceeded after {timeout_seconds}s"
        super().__init__(
            message,
            remediation="Increase the timeout or publish work before it expires",
            context={"timeout_seconds": timeout_seconds},
        )


# ============================================================================
# Validation Errors
# ============================================================================

class ValidationError(KvQueueError):
    """Base class for argument validation errors."""
    code = ErrorCode.VALIDATION_ERROR


class NullRecordError(ValidationError):
    """A record or id argument was None."""
    code = ErrorCode.NULL_RECORD

    def __init__(self, message: str = "Record or id is None"):
        super().__init__(message)


class InvalidIDError(ValidationError):
    """Record id cannot be encoded into a key."""
    code = ErrorCode.INVALID_ID


class EmptyIDError(InvalidIDError):
    """Record id is empty."""
    code = ErrorCode.EMPTY_ID

    def __init__(self, message: str = "Record id is empty"):
        super().__init__(message, remediation="Use ids of 1 to 255 bytes")


class ConfigError(ValidationError):
    """Invalid configuration value."""
    code = ErrorCode.INVALID_CONFIG


# ============================================================================
# Record Errors
# ============================================================================

class RecordNotFoundError(KvQueueError):
    """Load or claim found nothing."""
    code = ErrorCode.RECORD_NOT_FOUND

    def __init__(self, collection: Optional[int] = None, record_id: Optional[bytes] = None):
        message = "Record not found"
        if record_id is not None:
            message = f"Record not found in collection {collection}: {record_id!r}"
        super().__init__(
            message,
            context={"collection": collection, "id": record_id},
        )


class CorruptRowError(KvQueueError):
    """Stored row does not match its checksum or layout."""
    code = ErrorCode.CORRUPT_ROW


# ============================================================================
# Queue / Cursor Errors
# ============================================================================

class QueuePanicError(KvQueueError):
    """Unexpected fault raised inside a background consumer."""
    code = ErrorCode.QUEUE_PANIC

    @classmethod
    def wrap(cls, exc: BaseException) -> "QueuePanicError":
        """Wrap an arbitrary exception, keeping it as __cause__."""
        err = cls(
            f"Queue consumer fault: {exc!r}",
            context={"exception": type(exc).__name__},
        )
        err.__cause__ = exc
        return err


class CursorClosedError(KvQueueError):
    """Operation on a closed cursor."""
    code = ErrorCode.CURSOR_CLOSED

    def __init__(self):
        super().__init__(
            "Cursor is closed",
            remediation="Create a new cursor with Connection.cursor()",
        )
