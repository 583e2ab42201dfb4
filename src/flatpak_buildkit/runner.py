"""Runner: executes a phase's commands one process at a time.

States: idle (no session) and running (a session whose cursor advances as
each process exits 0). A non-zero exit discards the rest of the session.
Closing the output sink kills the active process and drops the session
without reporting a failure.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from flatpak_buildkit.command import Command, SpawnError
from flatpak_buildkit.events import EventEmitter
from flatpak_buildkit.output import OutputSink
from flatpak_buildkit.phases import Phase
from flatpak_buildkit.process import OutputChunk, ProcessExit, ProcessHandle

logger = logging.getLogger(__name__)


class PhaseOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    QUEUED = "queued"

    @property
    def ok(self) -> bool:
        """Whether a composite sequence may continue after this outcome."""
        return self in (PhaseOutcome.SUCCEEDED, PhaseOutcome.SKIPPED)


class ConcurrentPipelineError(RuntimeError):
    """Raised when a phase is requested while another one is running."""

    def __init__(self, active_phase: Optional[Phase]):
        self.active_phase = active_phase
        name = active_phase.value if active_phase else "unknown"
        super().__init__(
            f"Another pipeline operation is running ({name}). "
            "Wait for it to finish or stop it first."
        )


@dataclass(frozen=True)
class FinishedPhase:
    """Emitted once every command of a phase exited 0."""
    phase: Phase
    restore: bool = False
    complete_build: bool = False


@dataclass(frozen=True)
class PhaseFailure:
    """Emitted when a command of a phase failed to start or exited non-zero."""
    phase: Phase
    command: Command
    message: str
    exit_code: Optional[int] = None


@dataclass
class _Session:
    commands: List[Command]
    phase: Phase
    complete_build: bool = False
    cursor: int = 0
    failed: bool = False
    cancelled: bool = False
    current_process: Optional[ProcessHandle] = None
    history: List[Command] = field(default_factory=list)


# What to announce once the lock is released
_Notice = Tuple[PhaseOutcome, Optional[FinishedPhase], Optional[PhaseFailure]]


class Runner:
    """
    Runs ordered command lists against an OutputSink.

    At most one session, and so at most one OS process, exists at a time.
    execute() on a busy runner appends to the running session instead of
    starting a second one.
    """

    def __init__(self, output: OutputSink):
        self.output = output
        self.failed = False
        self.complete_build = False
        self.on_finished: EventEmitter[FinishedPhase] = EventEmitter("phase-finished")
        self.on_failure: EventEmitter[PhaseFailure] = EventEmitter("phase-failed")
        self.on_output: EventEmitter[OutputChunk] = EventEmitter("process-output")
        self._lock = threading.RLock()
        self._settled_cond = threading.Condition(self._lock)
        self._session: Optional[_Session] = None
        self._settled = True
        self._last_outcome: Optional[PhaseOutcome] = None
        self._unsubscribe_close = output.on_close.subscribe(lambda _: self.close())

    # --- Introspection ---

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._session is not None

    @property
    def active_phase(self) -> Optional[Phase]:
        with self._lock:
            return self._session.phase if self._session else None

    @property
    def last_outcome(self) -> Optional[PhaseOutcome]:
        return self._last_outcome

    def current(self) -> Optional[Command]:
        """The command at the session cursor, used for error attribution."""
        with self._lock:
            session = self._session
            if session is None or session.cursor >= len(session.commands):
                return None
            return session.commands[session.cursor]

    def queued(self) -> List[Command]:
        """Commands of the running session that have not started yet."""
        with self._lock:
            session = self._session
            if session is None:
                return []
            return list(session.commands[session.cursor + 1:])

    # --- Control ---

    def ensure_idle(self) -> None:
        """
        Raises:
            ConcurrentPipelineError: If a session is active.
        """
        with self._lock:
            if self._session is not None:
                raise ConcurrentPipelineError(self._session.phase)

    def execute(self, commands: Iterable[Command], phase: Phase) -> bool:
        """
        Run commands in order, or queue them onto the running session.

        Queued commands run under the running session's phase, after
        everything already queued, and only if all of it succeeds.

        Returns:
            True if a new session started, False if the commands were appended.
        """
        commands = list(commands)
        self.output.show()

        with self._lock:
            if self._session is not None:
                self._session.commands.extend(commands)
                logger.info(
                    "Queued %d command(s) onto running phase %s",
                    len(commands), self._session.phase.value,
                )
                return False

            session = _Session(
                commands=commands,
                phase=phase,
                complete_build=self.complete_build,
            )
            self._session = session
            self.failed = False
            self._settled = False
            logger.info(
                "Starting phase %s with %d command(s)",
                phase.value, len(commands),
                extra={"phase": phase.value},
            )
            try:
                notice = self._spawn_locked(session)
            except Exception:
                self._announce(self._drop_locked(session))
                raise

        if notice is not None:
            self._announce(notice)
        return True

    def wait(self, timeout: Optional[float] = None) -> Optional[PhaseOutcome]:
        """
        Block until the runner is idle and listeners have been notified.

        Returns:
            Outcome of the last session, None if nothing ever ran.

        Raises:
            TimeoutError: If the runner is still busy after timeout seconds.
        """
        with self._settled_cond:
            done = self._settled_cond.wait_for(
                lambda: self._session is None and self._settled,
                timeout=timeout,
            )
            if not done:
                raise TimeoutError(f"Runner still busy after {timeout} seconds")
            return self._last_outcome

    def close(self) -> None:
        """Cancel the running and queued commands."""
        with self._lock:
            session = self._session
            if session is None:
                return
            session.cancelled = True
            handle = session.current_process
        logger.info(
            "Cancelling phase %s",
            session.phase.value,
            extra={"phase": session.phase.value},
        )
        if handle is not None:
            handle.kill()

    def stop(self) -> None:
        self.close()

    def dispose(self) -> None:
        self.close()
        self._unsubscribe_close()

    # --- Session internals ---

    def _spawn_locked(self, session: _Session) -> Optional[_Notice]:
        """Start the command at the cursor, or finish the session. Lock must be held."""
        if session.cursor >= len(session.commands):
            return self._finish_locked(session)

        command = session.commands[session.cursor]
        self.output.append_status_line(command.to_display_string())
        try:
            handle = command.spawn(
                on_output=self._handle_output,
                on_exit=lambda process_exit: self._handle_exit(session, command, process_exit),
            )
        except SpawnError as e:
            return self._fail_locked(session, command, str(e), None)

        session.current_process = handle
        session.history.append(command)
        return None

    def _handle_output(self, chunk: OutputChunk) -> None:
        self.output.append_raw(chunk.text)
        self.on_output.fire(chunk)

    def _handle_exit(self, session: _Session, command: Command, process_exit: ProcessExit) -> None:
        with self._lock:
            if self._session is not session:
                return
            session.current_process = None
            try:
                notice = self._advance_locked(session, command, process_exit)
            except Exception:
                logger.exception(
                    "Phase %s could not continue",
                    session.phase.value,
                    extra={"phase": session.phase.value},
                )
                notice = self._drop_locked(session)

        if notice is not None:
            self._announce(notice)

    def _advance_locked(self, session: _Session, command: Command, process_exit: ProcessExit) -> Optional[_Notice]:
        if session.cancelled or process_exit.killed:
            return self._abort_locked(session)
        if process_exit.code != 0:
            return self._fail_locked(
                session,
                command,
                f"Child process exited with code {process_exit.code}",
                process_exit.code,
            )
        session.cursor += 1
        return self._spawn_locked(session)

    def _drop_locked(self, session: _Session) -> _Notice:
        """Leave the runner idle after an unexpected error, without touching the output."""
        self._session = None
        self.failed = True
        self.complete_build = False
        handle = session.current_process
        if handle is not None:
            handle.kill()
        return PhaseOutcome.FAILED, None, None

    def _finish_locked(self, session: _Session) -> _Notice:
        self._session = None
        self.complete_build = False
        logger.info("Phase %s finished", session.phase.value, extra={"phase": session.phase.value})
        finished = FinishedPhase(
            phase=session.phase,
            restore=False,
            complete_build=session.complete_build,
        )
        return PhaseOutcome.SUCCEEDED, finished, None

    def _fail_locked(
        self,
        session: _Session,
        command: Command,
        message: str,
        exit_code: Optional[int],
    ) -> _Notice:
        self.output.append_error_line(f"ERROR: {message}: {command.to_display_string()}")
        session.failed = True
        self.failed = True
        self._session = None
        self.complete_build = False
        dropped = len(session.commands) - session.cursor - 1
        logger.warning(
            "Phase %s failed at '%s' (%s); %d queued command(s) discarded",
            session.phase.value, command, message, dropped,
        )
        failure = PhaseFailure(
            phase=session.phase,
            command=command,
            message=message,
            exit_code=exit_code,
        )
        return PhaseOutcome.FAILED, None, failure

    def _abort_locked(self, session: _Session) -> _Notice:
        self._session = None
        self.failed = False
        self.complete_build = False
        logger.info(
            "Phase %s cancelled",
            session.phase.value,
            extra={"phase": session.phase.value},
        )
        return PhaseOutcome.CANCELLED, None, None

    def _announce(self, notice: _Notice) -> None:
        outcome, finished, failure = notice
        try:
            if finished is not None:
                self.on_finished.fire(finished)
            if failure is not None:
                self.on_failure.fire(failure)
        finally:
            with self._settled_cond:
                self._last_outcome = outcome
                self._settled = True
                self._settled_cond.notify_all()
