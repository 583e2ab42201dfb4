"""Lazily computed values with explicit invalidation."""

import threading
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class Lazy(Generic[T]):
    """
    A value computed on first access and cached until reset().

    Owned by whichever component needs it; never a module-level singleton.
    """

    def __init__(self, factory: Callable[[], T]):
        self._factory = factory
        self._value: Optional[T] = None
        self._loaded = False
        self._lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def get(self) -> T:
        """Return the cached value, computing it first if needed."""
        with self._lock:
            if not self._loaded:
                self._value = self._factory()
                self._loaded = True
            return self._value

    def reset(self) -> None:
        """Drop the cached value so the next get() recomputes it."""
        with self._lock:
            self._value = None
            self._loaded = False
