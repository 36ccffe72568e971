"""
Counting semaphore whose waits can be cancelled.

Unlike threading.BoundedSemaphore, a waiter can be woken early by a
cancellation event, so a closing listener never leaves threads parked here.
"""

import threading
import time
from typing import Optional

# Upper bound on a single wait so cancellation is observed promptly.
_POLL_INTERVAL = 0.05


class Semaphore:
    """Allows up to ``size`` concurrent holders."""

    def __init__(self, size: int):
        if size <= 0:
            raise ValueError(f"semaphore size must be positive, got {size}")
        self.size = size
        self._held = 0
        self._cond = threading.Condition()

    @property
    def held(self) -> int:
        with self._cond:
            return self._held

    def acquire(
        self,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> bool:
        """Take a slot, blocking while none is free.

        Args:
            timeout: Seconds to wait. None waits until a slot frees up.
            cancel: Event that aborts the wait when set.

        Returns:
            True if a slot was taken, False on timeout or cancellation.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._held >= self.size:
                if cancel is not None and cancel.is_set():
                    return False
                wait = _POLL_INTERVAL
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                    wait = min(wait, remaining)
                self._cond.wait(wait)
            if cancel is not None and cancel.is_set():
                return False
            self._held += 1
            return True

    def release(self):
        """Free a previously acquired slot."""
        with self._cond:
            if self._held <= 0:
                raise RuntimeError("semaphore released too many times")
            self._held -= 1
            self._cond.notify()

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
