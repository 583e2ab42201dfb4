"""Integration hooks loaded once a build environment is initialized.

Each integration writes wrapper scripts into the build directory that run a
tool inside the build sandbox, so editors and shells can call e.g.
`.flatpak/meson.sh` as if it were the SDK's meson.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from flatpak_buildkit.manifest import Manifest

logger = logging.getLogger(__name__)


@dataclass
class ScriptSpec:
    """Where a program lives in the sandbox and what extra env it needs."""
    binary_path: str = ""
    env: Dict[str, str] = field(default_factory=dict)


class Integration(ABC):
    """Derive from this when needed more control over is_applicable()."""

    name = "integration"

    @abstractmethod
    def is_applicable(self, manifest: Manifest) -> bool:
        """Whether this integration should be loaded for the manifest."""

    @abstractmethod
    def scripts(self, manifest: Manifest) -> Dict[str, ScriptSpec]:
        """Scripts to write, keyed by program name."""

    def script_path(self, manifest: Manifest, program: str) -> Path:
        return manifest.build_dir / f"{program}.sh"

    def load(self, manifest: Manifest) -> List[Path]:
        """
        Write this integration's scripts.

        Raises:
            OSError: If a script cannot be written.
        """
        manifest.ensure_build_dir()
        written = []
        for program, spec in self.scripts(manifest).items():
            command = manifest.run_in_repo(
                f"{spec.binary_path}{program}",
                mount_extensions=True,
                extra_env=spec.env,
            )
            written.append(command.materialize_as_script(self.script_path(manifest, program)))
        return written

    def unload(self, manifest: Manifest) -> List[Path]:
        """Remove this integration's scripts. Missing ones are ignored."""
        removed = []
        for program in self.scripts(manifest):
            path = self.script_path(manifest, program)
            if path.exists():
                path.unlink()
                removed.append(path)
        return removed


class SdkIntegration(Integration):
    """Derive from this when creating an integration that requires a specific SDK extension."""

    associated_sdk_extensions: Sequence[str] = ()

    def is_applicable(self, manifest: Manifest) -> bool:
        extensions = manifest.sdk_extensions()
        return any(ext in extensions for ext in self.associated_sdk_extensions)


class MesonBuild(Integration):
    name = "meson"

    def is_applicable(self, manifest: Manifest) -> bool:
        return manifest.module().get("buildsystem") == "meson"

    def scripts(self, manifest: Manifest) -> Dict[str, ScriptSpec]:
        return {"meson": ScriptSpec("/usr/bin/")}


class RustAnalyzer(SdkIntegration):
    name = "rust-analyzer"
    associated_sdk_extensions = ("rust-stable", "rust-nightly")

    def scripts(self, manifest: Manifest) -> Dict[str, ScriptSpec]:
        cargo_env = {}
        build_system_dir = manifest.build_system_build_dir()
        if build_system_dir is not None:
            cargo_env["CARGO_HOME"] = f"{build_system_dir}/cargo-home"
        return {
            "rust-analyzer": ScriptSpec(),
            "cargo": ScriptSpec(env=cargo_env),
        }


class Vala(SdkIntegration):
    name = "vala"
    associated_sdk_extensions = ("vala",)

    def scripts(self, manifest: Manifest) -> Dict[str, ScriptSpec]:
        return {"vala-language-server": ScriptSpec("/usr/lib/sdk/vala/bin/")}


def default_integrations() -> List[Integration]:
    return [MesonBuild(), RustAnalyzer(), Vala()]


def load_integrations(manifest: Manifest, integrations: Optional[Sequence[Integration]] = None) -> List[Path]:
    """Load every applicable integration. Returns the scripts written."""
    written = []
    for integration in integrations if integrations is not None else default_integrations():
        if integration.is_applicable(manifest):
            written.extend(integration.load(manifest))
            logger.info("Loaded integration %s", integration.name)
    return written


def unload_integrations(manifest: Manifest, integrations: Optional[Sequence[Integration]] = None) -> List[Path]:
    """Unload every applicable integration. Returns the scripts removed."""
    removed = []
    for integration in integrations if integrations is not None else default_integrations():
        if integration.is_applicable(manifest):
            removed.extend(integration.unload(manifest))
            logger.info("Unloaded integration %s", integration.name)
    return removed
