"""
Accept Queue

Bounded FIFO between the dial threads (producers) and accept() callers
(consumers). Closing the queue wakes every waiter; producers get
QueueClosedError instead of silently losing the item.
"""

import collections
import logging
import threading
import time
from typing import Callable, Generic, List, Optional, TypeVar

from ..errors import QueueClosedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound on a single wait so cancellation events are observed promptly.
_POLL_INTERVAL = 0.05


class AcceptQueue(Generic[T]):
    """Bounded, closable FIFO queue."""

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError(f"queue capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._items = collections.deque()
        self._cond = threading.Condition()
        self._closed = False
        self._close_error: Optional[BaseException] = None

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def put(
        self,
        item: T,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        on_enqueued: Optional[Callable[[], bool]] = None,
    ) -> bool:
        """Append an item, waiting for room while the queue is full.

        Args:
            item: The item to enqueue.
            timeout: Seconds to wait for room. None waits indefinitely.
            cancel: Event that aborts the wait when set.
            on_enqueued: Called under the queue lock once room is available,
                before the item becomes visible to get(). Must not block.
                Returning False drops the item instead of enqueueing it.

        Returns:
            True if the item was enqueued, False on timeout, cancellation or
            when on_enqueued refused it.

        Raises:
            QueueClosedError: If the queue is closed (before or while waiting).
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._closed:
                    raise QueueClosedError("accept queue is closed")
                if cancel is not None and cancel.is_set():
                    return False
                if len(self._items) < self.capacity:
                    break
                wait = _POLL_INTERVAL
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                    wait = min(wait, remaining)
                self._cond.wait(wait)

            if on_enqueued is not None and not on_enqueued():
                return False
            self._items.append(item)
            self._cond.notify_all()
            return True

    def get(self, timeout: Optional[float] = None) -> T:
        """Pop the oldest item, waiting while the queue is empty.

        Raises:
            QueueClosedError: If the queue was closed; when it was closed with
                an error, that error is raised instead.
            TimeoutError: If ``timeout`` elapsed first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._closed:
                    if self._close_error is not None:
                        # raised again by every later get()
                        raise self._close_error.with_traceback(None)
                    raise QueueClosedError("listener closed")
                if self._items:
                    item = self._items.popleft()
                    self._cond.notify_all()
                    return item
                if deadline is None:
                    self._cond.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise TimeoutError("no stream accepted within timeout")
                    self._cond.wait(remaining)

    def close(self, error: Optional[BaseException] = None) -> List[T]:
        """Close the queue and return the items nobody accepted.

        Idempotent: later calls return an empty list and keep the first error.
        """
        with self._cond:
            if self._closed:
                return []
            self._closed = True
            self._close_error = error
            leftovers = list(self._items)
            self._items.clear()
            self._cond.notify_all()
        if leftovers:
            logger.debug(f"Accept queue closed with {len(leftovers)} pending item(s)")
        return leftovers
