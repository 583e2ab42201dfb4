"""Lookups of host tools: Flatpak version, flatpak-builder location, sandbox detection.

Every lookup is cached in a Lazy owned by a HostTools instance. Pass a
HostTools into whatever needs it so tests can substitute their own.
"""

import logging
import re
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from flatpak_buildkit.command import Command, CommandError
from flatpak_buildkit.constants import CONTAINER_ENV_FILE, FLATPAK_INFO_FILE
from flatpak_buildkit.lazy import Lazy

logger = logging.getLogger(__name__)

BUILDER_FLATPAK_ID = "org.flatpak.Builder"
PROBE_TIMEOUT_S = 30


class BuilderNotFoundError(RuntimeError):
    """Raised when neither flatpak-builder nor org.flatpak.Builder is installed."""

    def __init__(self):
        super().__init__(
            "Flatpak builder was not found. Please install either `flatpak-builder` "
            "from your distro repositories or `org.flatpak.Builder` through `flatpak install`"
        )


def _version_key(version: str) -> Tuple[int, ...]:
    return tuple(int(part) for part in re.findall(r"\d+", version))


def version_at_least(version: str, required: str) -> bool:
    """Check if version is newer than or equal to required, comparing numerically."""
    return _version_key(version) >= _version_key(required)


class HostTools:
    """Cached knowledge about the host, each piece resettable."""

    def __init__(
        self,
        sandboxed: Optional[bool] = None,
        flatpak_info_file: str = FLATPAK_INFO_FILE,
        container_env_file: str = CONTAINER_ENV_FILE,
    ):
        self._sandboxed_override = sandboxed
        self._flatpak_info_file = Path(flatpak_info_file)
        self._container_env_file = Path(container_env_file)

        self.sandboxed: Lazy[bool] = Lazy(self._probe_sandboxed)
        self.inside_container: Lazy[bool] = Lazy(self._probe_inside_container)
        self.flatpak_version: Lazy[str] = Lazy(self._probe_flatpak_version)
        self.builder_on_host: Lazy[bool] = Lazy(self._probe_builder_on_host)
        self.builder_as_flatpak: Lazy[bool] = Lazy(self._probe_builder_as_flatpak)
        self.installed_runtimes: Lazy[List[Tuple[str, str]]] = Lazy(
            lambda: self._list_installed("runtime")
        )

    def reset(self) -> None:
        """Invalidate every cached lookup."""
        for lazy in (
            self.sandboxed,
            self.inside_container,
            self.flatpak_version,
            self.builder_on_host,
            self.builder_as_flatpak,
            self.installed_runtimes,
        ):
            lazy.reset()

    # --- Command factories ---

    def command(self, program: str, args: Sequence[str], cwd: Optional[str] = None) -> Command:
        """A command relayed to the host when we run inside a sandbox."""
        return Command(program, tuple(args), cwd=cwd, sandboxed=self.sandboxed.get())

    def flatpak_builder(self, args: Sequence[str], cwd: Optional[str] = None) -> Command:
        """
        A flatpak-builder invocation, using whichever installation exists.

        Raises:
            BuilderNotFoundError: If neither installation is found.
        """
        args = list(args)
        # rofiles-fuse does not work inside toolbox/distrobox style containers
        if self.inside_container.get():
            args.append("--disable-rofiles-fuse")

        if self.builder_on_host.get():
            return self.command("flatpak-builder", args, cwd=cwd)
        if self.builder_as_flatpak.get():
            return self.command("flatpak", ["run", BUILDER_FLATPAK_ID, *args], cwd=cwd)

        # Either may get installed after this error, so probe again next time
        self.builder_on_host.reset()
        self.builder_as_flatpak.reset()
        raise BuilderNotFoundError()

    # --- Probes ---

    def _probe_sandboxed(self) -> bool:
        if self._sandboxed_override is not None:
            return self._sandboxed_override
        return self._flatpak_info_file.exists()

    def _probe_inside_container(self) -> bool:
        inside = self._container_env_file.exists()
        if inside:
            logger.info("Running inside a container")
        return inside

    def _probe_flatpak_version(self) -> str:
        output = self.command("flatpak", ["--version"]).exec_sync(timeout=PROBE_TIMEOUT_S)
        version = output.replace("Flatpak", "").strip()
        logger.info("Flatpak version: '%s'", version)
        return version

    def _probe_version(self, program: str, args: List[str], label: str) -> bool:
        try:
            output = self.command(program, args).exec_sync(timeout=PROBE_TIMEOUT_S)
        except CommandError as e:
            logger.info("%s flatpak-builder not found: %s", label, e)
            return False
        version = output.replace("flatpak-builder", "").strip()
        logger.info("%s flatpak-builder version: %s", label, version)
        return True

    def _probe_builder_on_host(self) -> bool:
        return self._probe_version("flatpak-builder", ["--version"], "host")

    def _probe_builder_as_flatpak(self) -> bool:
        return self._probe_version("flatpak", ["run", BUILDER_FLATPAK_ID, "--version"], "flatpak-installed")

    def _list_installed(self, kind: str) -> List[Tuple[str, str]]:
        """Installed (id, branch) pairs of apps or runtimes."""
        output = self.command(
            "flatpak", ["list", f"--{kind}", "--columns=application,branch"]
        ).exec_sync(timeout=PROBE_TIMEOUT_S)
        entries = []
        for line in output.splitlines():
            parts = line.split()
            if len(parts) >= 2:
                entries.append((parts[0], parts[1]))
        return entries
