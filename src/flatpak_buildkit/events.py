"""Minimal observer interface used between the runner, pipeline and manifest manager."""

import threading
from typing import Callable, Generic, List, TypeVar

T = TypeVar("T")


class EventEmitter(Generic[T]):
    """
    Synchronous fan-out to subscribers.

    fire() returns only after every subscriber has run, so state read
    right after a notification reflects what the subscribers wrote.
    """

    def __init__(self, name: str = "event"):
        self.name = name
        self._listeners: List[Callable[[T], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Register a listener. Returns a callable that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def fire(self, payload: T) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(payload)

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)
