"""Flatpak manifest: the build descriptor that turns a phase into commands.

Knows the build-system flavors (autotools, cmake, meson, simple) and the
build directory layout. The pipeline only ever asks it for
commands_for(phase) and to delete its build output.
"""

import logging
import os
import platform
import shlex
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml

from flatpak_buildkit.command import Command
from flatpak_buildkit.constants import (
    BUILD_DIR_NAME,
    BUILD_SYSTEM_BUILD_DIR,
    DEFAULT_APP_ID,
    FINALIZED_REPO_DIR_NAME,
    FORWARDED_ENV_KEYS,
    INSTALL_PREFIX,
    OSTREE_REPO_DIR_NAME,
    REPO_DIR_NAME,
    STATE_DIR_NAME,
)
from flatpak_buildkit.phases import Phase
from flatpak_buildkit.tooling import HostTools, version_at_least

logger = logging.getLogger(__name__)


class ManifestError(ValueError):
    """Raised when a manifest is invalid or cannot be built."""
    pass


# finish-args that flatpak build does not understand
UNSUPPORTED_FINISH_ARGS = ("--metadata", "--require-version")

KNOWN_SDK_EXTENSIONS = ("rust-stable", "rust-nightly", "vala")

# (env var, sandbox defaults, prepend option, append option)
PATH_OVERRIDES = [
    ("PATH", ["/app/bin", "/usr/bin"], "prepend-path", "append-path"),
    ("LD_LIBRARY_PATH", ["/app/lib"], "prepend-ld-library-path", "append-ld-library-path"),
    (
        "PKG_CONFIG_PATH",
        ["/app/lib/pkgconfig", "/app/share/pkgconfig", "/usr/lib/pkgconfig", "/usr/share/pkgconfig"],
        "prepend-pkg-config-path",
        "append-pkg-config-path",
    ),
]


def generate_path_override(
    default_value: Sequence[str],
    prepend_values: Sequence[Optional[str]],
    append_values: Sequence[Optional[str]],
) -> str:
    """Build a PATH-like value from defaults plus prepended and appended entries."""
    output = ":".join(default_value)
    for value in prepend_values:
        if value:
            output = f"{value}:{output}" if output else value
    for value in append_values:
        if value:
            output = f"{output}:{value}" if output else value
    return output


class Manifest:
    """A parsed manifest bound to the workspace it builds in."""

    def __init__(
        self,
        path: Path,
        data: Dict[str, Any],
        workspace: Path,
        tools: Optional[HostTools] = None,
    ):
        self.path = Path(path).resolve()
        self.data = data
        self.workspace = Path(workspace).resolve()
        self.tools = tools or HostTools()

        self.build_dir = self.workspace / BUILD_DIR_NAME
        self.repo_dir = self.build_dir / REPO_DIR_NAME
        self.finalized_repo_dir = self.build_dir / FINALIZED_REPO_DIR_NAME
        self.ostree_repo_dir = self.build_dir / OSTREE_REPO_DIR_NAME
        self.state_dir = self.build_dir / STATE_DIR_NAME

        self.required_version: Optional[str] = None
        for arg in self.data.get("finish-args") or []:
            key, _, value = arg.partition("=")
            if key == "--require-version":
                self.required_version = value
                break

    def __repr__(self) -> str:
        return f"Manifest({self.id()!r}, {str(self.path)!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Manifest):
            return NotImplemented
        return self.path == other.path and self.data == other.data

    def __hash__(self) -> int:
        return hash(self.path)

    # --- Descriptor properties ---

    def id(self) -> str:
        return self.data.get("app-id") or self.data.get("id") or DEFAULT_APP_ID

    def sdk_extensions(self) -> List[str]:
        """Short names of the known SDK extensions this manifest uses."""
        extensions = []
        for raw in self.data.get("sdk-extensions") or []:
            suffix = raw.split(".")[-1]
            if suffix in KNOWN_SDK_EXTENSIONS:
                extensions.append(suffix)
            else:
                logger.warning("SDK extension '%s' was not handled", suffix)
        return extensions

    def module(self) -> Dict[str, Any]:
        """
        The last module, the one being developed.

        A module given as a file name is loaded relative to the manifest.
        """
        modules = self.data.get("modules") or []
        if not modules:
            raise ManifestError(f"Manifest {self.path} has no modules")
        module = modules[-1]
        if isinstance(module, str):
            module_path = self.path.parent / module
            try:
                module = yaml.safe_load(module_path.read_text())
            except (OSError, yaml.YAMLError) as e:
                raise ManifestError(f"Cannot load module file {module_path}: {e}") from e
        if not isinstance(module, dict) or "name" not in module:
            raise ManifestError(f"Last module of {self.path} has no name")
        return module

    def build_options(self) -> Dict[str, Any]:
        return self.data.get("build-options") or {}

    def finish_args(self) -> List[str]:
        return [
            arg for arg in (self.data.get("finish-args") or [])
            if arg.split("=")[0] not in UNSUPPORTED_FINISH_ARGS
        ]

    def build_system_build_dir(self) -> Optional[str]:
        if self.module().get("buildsystem") in ("meson", "cmake", "cmake-ninja"):
            return BUILD_SYSTEM_BUILD_DIR
        return None

    # --- Validation ---

    def check_for_error(self) -> Optional[str]:
        """
        Check the host can build this manifest.

        Returns:
            A message describing the problem, or None if there is none.
        """
        from flatpak_buildkit.manifest_utils import check_for_missing_runtimes

        if self.required_version is not None:
            flatpak_version = self.tools.flatpak_version.get()
            if not version_at_least(flatpak_version, self.required_version):
                return f"Manifest requires {self.required_version} but {flatpak_version} is available."

        missing = check_for_missing_runtimes(self)
        if missing:
            return f"Manifest requires the following but are not installed: {', '.join(missing)}"
        return None

    def ensure_valid(self) -> None:
        """
        Raises:
            ManifestError: If check_for_error() finds a problem.
        """
        error = self.check_for_error()
        if error is not None:
            raise ManifestError(error)

    # --- Phase commands ---

    def commands_for(self, phase: Phase) -> List[Command]:
        """The ordered commands that carry out a phase."""
        if phase == Phase.BUILD_INIT:
            return [self.init_build()]
        if phase == Phase.UPDATE_DEPS:
            return [self.update_dependencies()]
        if phase == Phase.BUILD_DEPS:
            return [self.build_dependencies()]
        if phase == Phase.BUILD_APP:
            return self.build(rebuild=False)
        if phase == Phase.REBUILD:
            return self.build(rebuild=True)
        if phase == Phase.RUN:
            return [self.run()]
        if phase == Phase.EXPORT:
            return self.bundle()
        # Clean is filesystem work, no commands
        return []

    def _command(self, program: str, args: Sequence[str], cwd: Optional[Path] = None) -> Command:
        return self.tools.command(program, args, cwd=str(cwd or self.workspace))

    def init_build(self) -> Command:
        return self._command("flatpak", [
            "build-init",
            str(self.repo_dir),
            self.id(),
            self.data["sdk"],
            self.data["runtime"],
            str(self.data["runtime-version"]),
        ])

    def _builder_args(self, mode_args: List[str]) -> List[str]:
        return [
            "--ccache",
            "--force-clean",
            "--disable-updates",
            *mode_args,
            f"--state-dir={self.state_dir}",
            f"--stop-at={self.module()['name']}",
            str(self.repo_dir),
            str(self.path),
        ]

    def update_dependencies(self) -> Command:
        args = self._builder_args(["--download-only"])
        return self.tools.flatpak_builder(args, cwd=str(self.workspace))

    def build_dependencies(self) -> Command:
        args = self._builder_args([
            "--disable-download",
            "--build-only",
            "--keep-build-dirs",
        ])
        return self.tools.flatpak_builder(args, cwd=str(self.workspace))

    def get_paths(self) -> List[str]:
        """--env overrides for PATH-like variables inside the build sandbox."""
        module_options = self.module().get("build-options") or {}
        manifest_options = self.build_options()
        paths = []
        for env_var, default, prepend_key, append_key in PATH_OVERRIDES:
            value = generate_path_override(
                default,
                [manifest_options.get(prepend_key), module_options.get(prepend_key)],
                [manifest_options.get(append_key), module_options.get(append_key)],
            )
            paths.append(f"--env={env_var}={value}")
        return paths

    def build(self, rebuild: bool) -> List[Command]:
        """Commands that build (or incrementally rebuild) the last module."""
        module = self.module()
        build_env = {
            **(self.build_options().get("env") or {}),
            **((module.get("build-options") or {}).get("env") or {}),
        }
        build_args = [
            "--share=network",
            f"--filesystem={self.workspace}",
            f"--filesystem={self.repo_dir}",
        ]
        for key, value in build_env.items():
            build_args.append(f"--env={key}={value}")
        build_args.extend(self.get_paths())

        config_opts = list(module.get("config-opts") or []) + list(
            self.build_options().get("config-opts") or []
        )

        buildsystem = module.get("buildsystem") or "autotools"
        if buildsystem == "autotools":
            commands = self._autotools_commands(rebuild, build_args, config_opts)
        elif buildsystem in ("cmake", "cmake-ninja"):
            commands = self._cmake_commands(rebuild, build_args, config_opts)
        elif buildsystem == "meson":
            commands = self._meson_commands(rebuild, build_args, config_opts)
        elif buildsystem == "simple":
            commands = self._simple_commands(module["name"], module.get("build-commands") or [], build_args)
        elif buildsystem == "qmake":
            raise ManifestError("Qmake is not implemented yet")
        else:
            raise ManifestError(f"Unknown build system: {buildsystem}")

        commands.extend(
            self._simple_commands(module["name"], module.get("post-install") or [], build_args)
        )
        return commands

    def _flatpak_build(self, build_args: List[str], tool_args: List[str], cwd: Optional[Path] = None) -> Command:
        return self._command("flatpak", ["build", *build_args, str(self.repo_dir), *tool_args], cwd=cwd)

    def _autotools_commands(self, rebuild: bool, build_args: List[str], config_opts: List[str]) -> List[Command]:
        jobs = os.cpu_count() or 1
        commands = []
        if not rebuild:
            commands.append(self._flatpak_build(
                build_args, ["./configure", f"--prefix={INSTALL_PREFIX}", *config_opts]
            ))
        commands.append(self._flatpak_build(build_args, ["make", "-p", "-n", "-s"]))
        commands.append(self._flatpak_build(build_args, ["make", "V=0", f"-j{jobs}", "install"]))
        return commands

    def _cmake_commands(self, rebuild: bool, build_args: List[str], config_opts: List[str]) -> List[Command]:
        build_dir = self.workspace / BUILD_SYSTEM_BUILD_DIR
        build_args = [*build_args, f"--filesystem={build_dir}"]
        commands = []
        if not rebuild:
            commands.append(self._command("mkdir", ["-p", BUILD_SYSTEM_BUILD_DIR]))
            commands.append(self._flatpak_build(
                build_args,
                [
                    "cmake",
                    "-G",
                    "Ninja",
                    "..",
                    ".",
                    "-DCMAKE_EXPORT_COMPILE_COMMANDS=1",
                    "-DCMAKE_BUILD_TYPE=RelWithDebInfo",
                    f"-DCMAKE_INSTALL_PREFIX={INSTALL_PREFIX}",
                    *config_opts,
                ],
                cwd=build_dir,
            ))
        commands.append(self._flatpak_build(build_args, ["ninja"], cwd=build_dir))
        commands.append(self._flatpak_build(build_args, ["ninja", "install"], cwd=build_dir))
        return commands

    def _meson_commands(self, rebuild: bool, build_args: List[str], config_opts: List[str]) -> List[Command]:
        build_dir = self.workspace / BUILD_SYSTEM_BUILD_DIR
        build_args = [*build_args, f"--filesystem={build_dir}"]
        commands = []
        if not rebuild:
            commands.append(self._flatpak_build(
                build_args,
                ["meson", "setup", "--prefix", INSTALL_PREFIX, BUILD_SYSTEM_BUILD_DIR, *config_opts],
            ))
        commands.append(self._flatpak_build(
            build_args, ["meson", "install", "-C", BUILD_SYSTEM_BUILD_DIR]
        ))
        return commands

    def expand_placeholders(self, text: str, module_name: str) -> str:
        replacements = {
            "${FLATPAK_ID}": self.id(),
            "${FLATPAK_ARCH}": platform.machine(),
            "${FLATPAK_DEST}": INSTALL_PREFIX,  # Only applications are supported
            "${FLATPAK_BUILDER_N_JOBS}": str(os.cpu_count() or 1),
            "${FLATPAK_BUILDER_BUILDDIR}": f"/run/build/{module_name}",
        }
        for placeholder, value in replacements.items():
            text = text.replace(placeholder, value)
        return text

    def _simple_commands(self, module_name: str, build_commands: List[str], build_args: List[str]) -> List[Command]:
        commands = []
        for raw in build_commands:
            tool_args = shlex.split(self.expand_placeholders(raw, module_name))
            if tool_args:
                commands.append(self._flatpak_build(build_args, tool_args))
        return commands

    def bundle(self) -> List[Command]:
        """
        Commands that export the built application as a .flatpak bundle.

        Removes any previous finalized repo first.
        """
        shutil.rmtree(self.finalized_repo_dir, ignore_errors=True)
        return [
            self._command("cp", ["-r", str(self.repo_dir), str(self.finalized_repo_dir)]),
            self._command("flatpak", [
                "build-finish",
                *self.finish_args(),
                f"--command={self.data.get('command', '')}",
                str(self.finalized_repo_dir),
            ]),
            self._command("flatpak", [
                "build-export",
                str(self.ostree_repo_dir),
                str(self.finalized_repo_dir),
            ]),
            self._command("flatpak", [
                "build-bundle",
                str(self.ostree_repo_dir),
                f"{self.id()}.flatpak",
                self.id(),
            ]),
        ]

    def run(self) -> Command:
        shell_command = " ".join([self.data.get("command", ""), *(self.data.get("x-run-args") or [])])
        return self.run_in_repo(shell_command, mount_extensions=False)

    def run_in_repo(
        self,
        shell_command: str,
        mount_extensions: bool,
        extra_env: Optional[Dict[str, str]] = None,
    ) -> Command:
        """A `flatpak build` invocation running shell_command inside the built repo."""
        uid = os.geteuid() if hasattr(os, "geteuid") else 1000
        app_id = self.id()
        args = [
            "build",
            "--with-appdir",
            "--allow=devel",
            f"--bind-mount=/run/user/{uid}/doc=/run/user/{uid}/doc/by-app/{app_id}",
            *self.finish_args(),
            "--talk-name=org.freedesktop.portal.*",
            "--talk-name=org.a11y.Bus",
        ]

        env_vars = {key: os.environ[key] for key in FORWARDED_ENV_KEYS if key in os.environ}
        env_vars.update(extra_env or {})
        for key, value in env_vars.items():
            args.append(f"--env={key}={value}")

        if mount_extensions:
            args.extend(self.get_paths())
            # The executable may need network access
            args.append("--share=network")

        args.append(str(self.repo_dir))
        args.extend(shell_command.split())
        return self._command("flatpak", args)

    # --- Filesystem ---

    def ensure_build_dir(self) -> None:
        self.build_dir.mkdir(parents=True, exist_ok=True)

    def delete_build_dirs(self) -> List[Path]:
        """
        Delete the build output and the build system's intermediate dir.

        Returns:
            The directories that were removed.

        Raises:
            OSError: If a directory exists but cannot be removed.
        """
        targets = [self.repo_dir]
        build_system_dir = self.build_system_build_dir()
        if build_system_dir is not None:
            targets.append(self.workspace / build_system_dir)

        removed = []
        for target in targets:
            if target.exists():
                shutil.rmtree(target)
                removed.append(target)
        return removed
