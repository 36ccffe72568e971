"""Small data-shape helpers used across the SDK."""

from . import jsoneq, maps, sem, uuip

__all__ = ["jsoneq", "maps", "sem", "uuip"]
