"""External program invocations.

A Command is an immutable description of one program run: what to call,
with which arguments, where, and whether it has to be relayed to the host
through the sandbox-escape wrapper.
"""

import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from flatpak_buildkit.constants import (
    SANDBOX_DISPLAY_ARGS,
    SANDBOX_WRAPPER,
    SANDBOX_WRAPPER_ARGS,
)
from flatpak_buildkit.process import ExitCallback, OutputCallback, ProcessHandle

logger = logging.getLogger(__name__)

SCRIPT_MODE = 0o755


class CommandError(Exception):
    """Raised when a command cannot be run or exits with an error."""

    def __init__(self, command: "Command", message: str, exit_code: Optional[int] = None):
        self.command = command
        self.exit_code = exit_code
        super().__init__(message)


class SpawnError(CommandError):
    """Raised when the OS refuses to start a command's program."""
    pass


@dataclass(frozen=True)
class Command:
    program: str
    args: Tuple[str, ...] = ()
    cwd: Optional[str] = None
    sandboxed: bool = False

    def __post_init__(self):
        # Accept any sequence, store a tuple so the value stays hashable
        object.__setattr__(self, "args", tuple(str(a) for a in self.args))
        if self.cwd is not None:
            object.__setattr__(self, "cwd", str(self.cwd))

    def argv(self) -> List[str]:
        """Argument vector handed to the OS."""
        if self.sandboxed:
            return [SANDBOX_WRAPPER, *SANDBOX_WRAPPER_ARGS, self.program, *self.args]
        return [self.program, *self.args]

    def display_argv(self) -> List[str]:
        """Argument vector as shown to the operator and written to scripts."""
        if self.sandboxed:
            return [SANDBOX_WRAPPER, *SANDBOX_DISPLAY_ARGS, self.program, *self.args]
        return [self.program, *self.args]

    def to_display_string(self) -> str:
        return " ".join(self.display_argv())

    def __str__(self) -> str:
        return self.to_display_string()

    def with_args(self, extra: Sequence[str]) -> "Command":
        """Return a copy with extra arguments appended."""
        return Command(
            program=self.program,
            args=(*self.args, *extra),
            cwd=self.cwd,
            sandboxed=self.sandboxed,
        )

    def materialize_as_script(self, path: Union[str, Path]) -> Path:
        """
        Write this command as an executable POSIX shell script.

        Extra arguments given to the script are forwarded with "$@".

        Raises:
            OSError: If the path is not writable.
        """
        script_path = Path(path)
        content = "\n".join([
            "#!/bin/sh",
            "",
            f'exec {shlex.join(self.display_argv())} "$@"',
            "",
        ])
        script_path.write_text(content)
        script_path.chmod(SCRIPT_MODE)
        logger.debug("Wrote script %s", script_path)
        return script_path

    def spawn(
        self,
        on_output: Optional[OutputCallback] = None,
        on_exit: Optional[ExitCallback] = None,
    ) -> ProcessHandle:
        """
        Start the process with stdout and stderr merged.

        Raises:
            SpawnError: If the executable cannot be found or started.
        """
        argv = self.argv()
        logger.debug("Spawning %s (cwd=%s)", argv, self.cwd)
        try:
            popen = subprocess.Popen(
                argv,
                cwd=self.cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            raise SpawnError(self, f"Failed to start '{self.to_display_string()}': {e}") from e

        return ProcessHandle(popen, on_output=on_output, on_exit=on_exit, name=self.program).start()

    def exec_sync(self, timeout: Optional[float] = None) -> str:
        """
        Run to completion and return stdout.

        Raises:
            SpawnError: If the program cannot be started.
            CommandError: If it exits non-zero or times out.
        """
        try:
            proc = subprocess.run(
                self.argv(),
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandError(self, f"Command timed out after {timeout} seconds: {self}") from e
        except OSError as e:
            raise SpawnError(self, f"Failed to start '{self.to_display_string()}': {e}") from e

        if proc.returncode != 0:
            output = (proc.stdout or "") + (proc.stderr or "")
            raise CommandError(
                self,
                f"Command failed ({proc.returncode}): {self}\n{output}",
                exit_code=proc.returncode,
            )
        return proc.stdout
