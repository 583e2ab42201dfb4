"""Output sink: the line-oriented surface commands and the runner write to.

Raw process output is forwarded verbatim. Operator-facing status and error
lines are bracketed with bold/reset control sequences so they stand apart
from what the subprocess printed.
"""

import logging
import sys
import threading
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, TextIO

import click

from flatpak_buildkit.constants import (
    BOLD_RED,
    BOLD_WHITE,
    RESET_COLOR,
    STATUS_PREFIX,
    SURFACE_READY_TIMEOUT_S,
)
from flatpak_buildkit.events import EventEmitter

logger = logging.getLogger(__name__)

LINE_END = "\r\n"


class OutputSurface(ABC):
    """External display surface an OutputSink feeds."""

    def __init__(self) -> None:
        self.on_close: EventEmitter[None] = EventEmitter("surface-close")

    @abstractmethod
    def open(self, ready: Callable[[], None]) -> None:
        """
        Request the surface to open.

        ready() must be called once the surface accepts writes. It may be
        called later, from another thread.
        """

    @abstractmethod
    def write(self, text: str) -> None:
        """Write text verbatim."""

    def close(self) -> None:
        """Close the surface. Subscribers of on_close are notified."""
        self.on_close.fire(None)


class ConsoleSurface(OutputSurface):
    """Writes to a terminal stream (stdout by default).

    click strips the control sequences when the stream is not a tty.
    """

    def __init__(self, stream: Optional[TextIO] = None):
        super().__init__()
        self._stream = stream

    def open(self, ready: Callable[[], None]) -> None:
        ready()

    def write(self, text: str) -> None:
        click.echo(text, nl=False, file=self._stream or sys.stdout)
        (self._stream or sys.stdout).flush()


class BufferSurface(OutputSurface):
    """Keeps everything written in memory. Optionally becomes ready after a delay."""

    def __init__(self, ready_delay: float = 0.0):
        super().__init__()
        self.ready_delay = ready_delay
        self.open_requests = 0
        self._chunks: List[str] = []
        self._lock = threading.Lock()

    def open(self, ready: Callable[[], None]) -> None:
        self.open_requests += 1
        if self.ready_delay > 0:
            timer = threading.Timer(self.ready_delay, ready)
            timer.daemon = True
            timer.start()
        else:
            ready()

    def write(self, text: str) -> None:
        with self._lock:
            self._chunks.append(text)

    @property
    def text(self) -> str:
        with self._lock:
            return "".join(self._chunks)

    def lines(self) -> List[str]:
        return [line for line in self.text.replace("\r", "").split("\n") if line]


class OutputSink:
    """
    Append-only writer in front of an OutputSurface.

    show() resolves only once the surface reported it is ready. on_close
    fires when the surface goes away, which the runner treats as a
    request to cancel whatever is running.
    """

    def __init__(self, surface: OutputSurface, ready_timeout: float = SURFACE_READY_TIMEOUT_S):
        self._surface = surface
        self._ready_timeout = ready_timeout
        self._ready = threading.Event()
        self._opening = False
        self._disposed = False
        self._lock = threading.Lock()
        self.on_close: EventEmitter[None] = EventEmitter("output-close")
        self._unsubscribe = surface.on_close.subscribe(self._handle_surface_closed)

    @property
    def surface(self) -> OutputSurface:
        return self._surface

    @property
    def is_open(self) -> bool:
        return self._ready.is_set()

    def show(self) -> None:
        """
        Open the surface if needed and wait until it accepts writes.

        Raises:
            RuntimeError: If the sink was disposed.
            TimeoutError: If the surface never became ready.
        """
        with self._lock:
            if self._disposed:
                raise RuntimeError("Output sink is disposed")
            request_open = not self._opening
            self._opening = True
        if request_open:
            self._surface.open(self._ready.set)

        if not self._ready.wait(self._ready_timeout):
            with self._lock:
                self._opening = False
            raise TimeoutError(
                f"Output surface did not become ready within {self._ready_timeout} seconds"
            )

    def append_raw(self, text: str) -> None:
        if not self._ready.is_set():
            self.show()
        self._surface.write(text)

    def append_line(self, text: str) -> None:
        self.append_raw(f"{text}{LINE_END}")

    def append_status_line(self, message: str) -> None:
        self.append_line(f"\r{BOLD_WHITE}{STATUS_PREFIX}{message}{RESET_COLOR}")

    def append_error_line(self, message: str) -> None:
        self.append_line(f"\r{BOLD_RED}{STATUS_PREFIX}{message}{RESET_COLOR}")

    def close(self) -> None:
        """Close the surface as if the operator had closed it."""
        if self._ready.is_set() or self._opening:
            self._surface.close()

    def dispose(self) -> None:
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
        if self._ready.is_set():
            self._surface.close()
        self._unsubscribe()
        self.on_close.clear()

    def _handle_surface_closed(self, _payload: None) -> None:
        with self._lock:
            self._opening = False
        self._ready.clear()
        logger.debug("Output surface closed")
        self.on_close.fire(None)
