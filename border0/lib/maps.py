"""Dictionary helpers."""

from typing import Dict, Hashable, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V", bound=Hashable)


def reverse(m: Dict[K, V]) -> Dict[V, K]:
    """Swap keys and values.

    Raises:
        ValueError: If two keys map to the same value.
    """
    out: Dict[V, K] = {}
    for key, value in m.items():
        if value in out:
            raise ValueError(f"duplicate value {value!r} for keys {out[value]!r} and {key!r}")
        out[value] = key
    return out


def ensure_not_nil(m: Optional[dict]) -> dict:
    """Return the map itself, or a new empty one when it is None."""
    if m is not None:
        return m
    return {}
