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
Background Streams

A Stream runs a producer in a daemon thread and exposes two sequences:
the produced items and the errors that ended production.

    stream = queue.sub(timeout=10)
    for record in stream:
        handle(record)
    for err in stream.errors():
        log(err)
"""

import logging
import queue
import threading
from typing import Any, Callable, Iterator, Optional

from .deadline import POLL_INTERVAL, Deadline
from .errors import KvQueueError

logger = logging.getLogger(__name__)

Emit = Callable[[Any], None]


class Stream:
    """
    Items and errors produced by a background thread.

    The producer receives an ``emit`` callable that hands one item to the
    consumer, blocking while the previous item is still unconsumed. ``emit``
    raises the deadline error once the deadline passes or the stream is
    cancelled, which ends the producer.

    Package errors raised by the producer are reported as-is; anything else
    goes through ``wrap`` first (when given).
    """

    def __init__(
        self,
        producer: Callable[[Emit], None],
        deadline: Deadline,
        wrap: Optional[Callable[[BaseException], BaseException]] = None,
        name: str = "kvqueue-stream",
    ):
        self._producer = producer
        self._deadline = deadline
        self._wrap = wrap
        self._items: queue.Queue = queue.Queue(maxsize=1)
        self._errors: queue.Queue = queue.Queue()
        self._finished = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def _emit(self, item: Any) -> None:
        while True:
            self._deadline.check()
            try:
                self._items.put(item, timeout=POLL_INTERVAL)
                return
            except queue.Full:
                continue

    def _run(self) -> None:
        try:
            self._producer(self._emit)
        except KvQueueError as exc:
            self._errors.put(exc)
        except Exception as exc:
            logger.exception("Stream producer %s failed", self._thread.name)
            self._errors.put(self._wrap(exc) if self._wrap is not None else exc)
        finally:
            self._finished.set()
            logger.debug("Stream %s finished", self._thread.name)

    # -------------------------------------------------------------------------
    # Consumer side
    # -------------------------------------------------------------------------

    def records(self) -> Iterator[Any]:
        """Yield items until the producer stops and everything is drained."""
        while True:
            try:
                yield self._items.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                if self._finished.is_set() and self._items.empty():
                    return

    __iter__ = records

    def errors(self) -> Iterator[BaseException]:
        """Yield the errors that ended the stream; blocks until it ends."""
        self._finished.wait()
        while True:
            try:
                yield self._errors.get_nowait()
            except queue.Empty:
                return

    def cancel(self) -> None:
        """Stop the producer; it reports OperationCancelledError."""
        self._deadline.cancel()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the producer thread. Returns True once it has stopped."""
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def finished(self) -> bool:
        return self._finished.is_set()
