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

"""Deadline and cancellation for blocking calls."""

import threading
import time
from typing import Optional

from .errors import DeadlineExceededError, OperationCancelledError

# Slice used when a wait must also notice cancellation.
POLL_INTERVAL = 0.02


class Deadline:
    """
    Optional timeout plus a cancel event.

    Every blocking entry point takes ``timeout`` and ``cancel`` arguments
    and turns them into one Deadline that is checked between store calls
    and while waiting.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.timeout = timeout
        self._expires = None if timeout is None else time.monotonic() + timeout
        self._cancel = cancel if cancel is not None else threading.Event()

    def cancel(self) -> None:
        self._cancel.set()

    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def expired(self) -> bool:
        return self._expires is not None and time.monotonic() >= self._expires

    def done(self) -> bool:
        return self.cancelled() or self.expired()

    def remaining(self) -> Optional[float]:
        """Seconds left, or None without a timeout."""
        if self._expires is None:
            return None
        return max(0.0, self._expires - time.monotonic())

    def check(self) -> None:
        """Raise the matching error once cancelled or expired."""
        if self.cancelled():
            raise OperationCancelledError()
        if self.expired():
            raise DeadlineExceededError(self.timeout)

    def wait(self, event, bound: Optional[float] = None) -> bool:
        """
        Wait for ``event`` (anything with ``wait(timeout)``) for at most
        ``bound`` seconds, returning early on cancel or deadline.

        Returns:
            True if the event fired.
        """
        limit = bound
        remaining = self.remaining()
        if remaining is not None:
            limit = remaining if limit is None else min(limit, remaining)
        stop_at = None if limit is None else time.monotonic() + limit

        while not self.cancelled():
            slice_ = POLL_INTERVAL
            if stop_at is not None:
                left = stop_at - time.monotonic()
                if left <= 0:
                    return False
                slice_ = min(slice_, left)
            if event.wait(slice_):
                return True
        return False
