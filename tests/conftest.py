"""Shared fixtures: real runners over in-memory surfaces, manifests on disk."""

import json
from pathlib import Path
from typing import Any, Dict, Optional

import pytest

from flatpak_buildkit.command import Command
from flatpak_buildkit.events import EventEmitter
from flatpak_buildkit.lazy import Lazy
from flatpak_buildkit.manifest_manager import NoActiveManifestError
from flatpak_buildkit.output import BufferSurface, OutputSink
from flatpak_buildkit.runner import Runner
from flatpak_buildkit.tooling import HostTools


def sh(script: str) -> Command:
    """A command running a POSIX shell snippet."""
    return Command("sh", ("-c", script))


def write_manifest(directory: Path, app_id: str = "org.example.App", **overrides: Any) -> Path:
    """Write a minimal JSON manifest named after its app ID."""
    data: Dict[str, Any] = {
        "app-id": app_id,
        "runtime": "org.gnome.Platform",
        "runtime-version": "45",
        "sdk": "org.gnome.Sdk",
        "command": "example-app",
        "finish-args": ["--share=ipc", "--socket=wayland"],
        "modules": [
            {"name": "libdep", "buildsystem": "autotools", "sources": []},
            {"name": "example-app", "buildsystem": "meson", "sources": [{"type": "dir", "path": "."}]},
        ],
    }
    data.update(overrides)
    path = directory / f"{app_id}.json"
    path.write_text(json.dumps(data, indent=2))
    return path


class StubManifestManager:
    """Holds one active manifest and exposes the manager's events."""

    def __init__(self, manifest: Optional[Any] = None):
        self.active = manifest
        self.on_active_manifest_changed = EventEmitter("active-manifest-changed")
        self.on_rebuild_requested = EventEmitter("rebuild-requested")

    def get_active_manifest(self):
        return self.active

    def require_active(self, check_for_error: bool = True):
        if self.active is None:
            raise NoActiveManifestError("No active Flatpak manifest")
        return self.active


@pytest.fixture
def surface():
    return BufferSurface()


@pytest.fixture
def sink(surface):
    return OutputSink(surface, ready_timeout=5)


@pytest.fixture
def runner(sink):
    runner = Runner(sink)
    yield runner
    runner.close()
    runner.wait(timeout=10)


@pytest.fixture
def tools(tmp_path):
    """Host tools that never probe the real host."""
    tools = HostTools(
        sandboxed=False,
        flatpak_info_file=str(tmp_path / "no-flatpak-info"),
        container_env_file=str(tmp_path / "no-containerenv"),
    )
    tools.builder_on_host = Lazy(lambda: True)
    tools.flatpak_version = Lazy(lambda: "1.14.4")
    tools.installed_runtimes = Lazy(lambda: [("org.gnome.Platform", "45"), ("org.gnome.Sdk", "45")])
    return tools
