"""Wrapper around one spawned OS process.

Output is pushed to a callback as it arrives; exactly one exit event fires
afterwards, once the output pipe is drained. Each process leads its own
process group so that kill() reaches everything it started.
"""

import codecs
import logging
import os
import select
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
POLL_INTERVAL_S = 0.1

# Output still arriving this long after the leader exited is dropped;
# background children may hold the pipe open indefinitely
DRAIN_TIMEOUT_S = 0.5

# Reported when a handle is killed and the OS gives no signal-based code
KILLED_EXIT_CODE = -1


class StreamKind(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    MERGED = "merged"


@dataclass(frozen=True)
class OutputChunk:
    """A piece of decoded process output."""
    stream: StreamKind
    text: str


@dataclass(frozen=True)
class ProcessExit:
    """Terminal event of a process."""
    code: int
    killed: bool = False

    @property
    def success(self) -> bool:
        return self.code == 0 and not self.killed


OutputCallback = Callable[[OutputChunk], None]
ExitCallback = Callable[[ProcessExit], None]


class ProcessHandle:
    """
    Thin handle over a subprocess.Popen with stdout and stderr merged.

    A daemon thread pumps the merged stream to on_output, then waits for
    the process and calls on_exit once.
    """

    def __init__(
        self,
        popen: subprocess.Popen,
        on_output: Optional[OutputCallback] = None,
        on_exit: Optional[ExitCallback] = None,
        name: str = "",
    ):
        self._popen = popen
        self._on_output = on_output
        self._on_exit = on_exit
        self.name = name or str(popen.args)
        self._lock = threading.Lock()
        self._killed = False
        self._exit: Optional[ProcessExit] = None
        self._exited = threading.Event()
        self._pump = threading.Thread(
            target=self._pump_output,
            name=f"process-pump-{popen.pid}",
            daemon=True,
        )

    @property
    def pid(self) -> int:
        return self._popen.pid

    @property
    def exit(self) -> Optional[ProcessExit]:
        return self._exit

    @property
    def has_exited(self) -> bool:
        return self._exited.is_set()

    def start(self) -> "ProcessHandle":
        self._pump.start()
        return self

    def wait(self, timeout: Optional[float] = None) -> Optional[ProcessExit]:
        """Block until the exit event has fired. Returns None on timeout."""
        if not self._exited.wait(timeout):
            return None
        return self._exit

    def kill(self) -> None:
        """Force-kill the process and its process group. No-op once the exit event fired."""
        with self._lock:
            if self._exited.is_set():
                return
            # A leader that already exited keeps its real exit code
            if self._popen.poll() is None:
                self._killed = True
        logger.debug(
            "Killing process group of %s (pid %d)",
            self.name, self._popen.pid,
            extra={"pid": self._popen.pid},
        )
        try:
            os.killpg(self._popen.pid, signal.SIGKILL)
        except ProcessLookupError:
            # The whole group is already gone
            pass

    def _emit_output(self, text: str) -> None:
        if self._on_output is None:
            return
        try:
            self._on_output(OutputChunk(stream=StreamKind.MERGED, text=text))
        except Exception:
            logger.exception("Output listener failed for %s", self.name)

    def _read_chunks(self, fd: int):
        """Yield raw output until EOF, or until the drain window after the leader's exit ends."""
        drain_deadline: Optional[float] = None
        while True:
            if drain_deadline is None and self._popen.poll() is not None:
                drain_deadline = time.monotonic() + DRAIN_TIMEOUT_S
            if drain_deadline is not None and time.monotonic() >= drain_deadline:
                logger.debug("Stopped draining %s; the pipe is held by leftover children", self.name)
                return
            ready, _, _ = select.select([fd], [], [], POLL_INTERVAL_S)
            if not ready:
                continue
            data = os.read(fd, READ_CHUNK_SIZE)
            if not data:
                return
            yield data

    def _pump_output(self) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stream = self._popen.stdout
        try:
            if stream is not None:
                for data in self._read_chunks(stream.fileno()):
                    text = decoder.decode(data)
                    if text:
                        self._emit_output(text)
                tail = decoder.decode(b"", final=True)
                if tail:
                    self._emit_output(tail)
        finally:
            if stream is not None:
                stream.close()

        returncode = self._popen.wait()
        with self._lock:
            killed = self._killed
            if killed and returncode >= 0:
                returncode = KILLED_EXIT_CODE
            self._exit = ProcessExit(code=returncode, killed=killed)
            self._exited.set()

        logger.debug(
            "Process %s exited with code %d",
            self.name, returncode,
            extra={"pid": self._popen.pid},
        )
        if self._on_exit is not None:
            self._on_exit(self._exit)
