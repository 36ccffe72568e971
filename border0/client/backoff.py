"""
Backoff functions.

A backoff function takes the minimum and maximum wait (seconds) and the
attempt number (starting at zero) and returns how long to wait.
"""

import random
from typing import Callable

Backoff = Callable[[float, float, int], float]


def exponential_backoff(min_wait: float, max_wait: float, attempt: int) -> float:
    """Double the minimum wait on every attempt, capped at the maximum.

    Attempt 0 waits ``min_wait``, attempt 1 twice that, attempt 2 four times
    that, and so on, never exceeding ``max_wait``.
    """
    try:
        wait = min_wait * (2 ** attempt)
    except OverflowError:
        return max_wait
    if wait > max_wait:
        return max_wait
    return wait


def jittered_backoff(min_wait: float, max_wait: float, attempt: int) -> float:
    """Exponential backoff spread uniformly over [0.5x, 1.5x] of the capped value."""
    wait = exponential_backoff(min_wait, max_wait, attempt)
    return random.uniform(0.5 * wait, 1.5 * wait)


def constant_backoff(min_wait: float, max_wait: float, attempt: int) -> float:
    """Always wait the minimum. Mostly useful in tests."""
    return min_wait
