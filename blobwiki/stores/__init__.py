"""Object store implementations."""

from .memory import MemoryObjectStore

__all__ = ["MemoryObjectStore"]
