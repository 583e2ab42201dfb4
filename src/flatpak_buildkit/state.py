"""Persisted pipeline state: progress flags and the active manifest.

Implementations can use different backends:
- InMemoryStateStore: for tests and one-shot runs
- JsonStateStore: a JSON file inside the workspace build directory

OperationMarker records which process is running an operation right now.
"""

import json
import logging
import os
import signal
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

from flatpak_buildkit.constants import BUILD_DIR_NAME, LEGACY_STATE_FILE_NAME

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class StateStoreError(Exception):
    """Raised when persisted state cannot be read or written."""
    pass


@dataclass(frozen=True)
class PipelineProgress:
    """
    Which phases have completed.

    The pipeline only moves flags forward along
    initialized -> dependencies_updated -> dependencies_built -> application_built,
    and clean resets all four together.
    """
    initialized: bool = False
    dependencies_updated: bool = False
    dependencies_built: bool = False
    application_built: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineProgress":
        """
        Build from a stored mapping. Missing keys default to False.

        Raises:
            StateStoreError: If a value is not a boolean or a key is unknown.
        """
        if not isinstance(data, dict):
            raise StateStoreError(f"Expected a mapping for progress, got {type(data).__name__}")
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise StateStoreError(f"Unknown progress keys: {', '.join(sorted(unknown))}")
        values = {}
        for name in known:
            value = data.get(name, False)
            if not isinstance(value, bool):
                raise StateStoreError(f"Progress flag '{name}' must be a boolean, got {value!r}")
            values[name] = value
        return cls(**values)

    @property
    def is_clean(self) -> bool:
        return not any(self.to_dict().values())


class StateStore(ABC):
    """Durable record of pipeline progress and the active manifest."""

    @abstractmethod
    def get_progress(self) -> PipelineProgress:
        pass

    @abstractmethod
    def set_progress(self, progress: PipelineProgress) -> None:
        """Persist progress. Must not return before the write is durable."""
        pass

    @abstractmethod
    def get_active_manifest(self) -> Optional[str]:
        pass

    @abstractmethod
    def set_active_manifest(self, manifest_path: Optional[str]) -> None:
        pass

    def update_progress(self, **changes: bool) -> PipelineProgress:
        """Apply flag changes and persist the result."""
        progress = replace(self.get_progress(), **changes)
        self.set_progress(progress)
        return progress

    def reset_progress(self) -> PipelineProgress:
        progress = PipelineProgress()
        self.set_progress(progress)
        return progress


class InMemoryStateStore(StateStore):
    """Keeps state in memory; everything is lost on exit."""

    def __init__(self, progress: Optional[PipelineProgress] = None, active_manifest: Optional[str] = None):
        self._progress = progress or PipelineProgress()
        self._active_manifest = active_manifest
        self._lock = threading.Lock()

    def get_progress(self) -> PipelineProgress:
        with self._lock:
            return self._progress

    def set_progress(self, progress: PipelineProgress) -> None:
        with self._lock:
            self._progress = progress

    def get_active_manifest(self) -> Optional[str]:
        with self._lock:
            return self._active_manifest

    def set_active_manifest(self, manifest_path: Optional[str]) -> None:
        with self._lock:
            self._active_manifest = manifest_path


class JsonStateStore(StateStore):
    """
    State kept in a JSON file.

    Format:
        {"version": 1, "active_manifest": "/path/or/null",
         "progress": {"initialized": false, ...}}

    Writes go to a temp file in the same directory and are renamed over
    the target, so a crash never leaves a half-written file behind.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._progress: Optional[PipelineProgress] = None
        self._active_manifest: Optional[str] = None

    def _load_locked(self) -> None:
        if self._progress is not None:
            return
        if not self.path.exists():
            self._progress = PipelineProgress()
            self._active_manifest = None
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            raise StateStoreError(f"Cannot read state file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StateStoreError(f"Invalid state file format: {self.path}")

        version = data.get("version", STATE_FORMAT_VERSION)
        if version != STATE_FORMAT_VERSION:
            raise StateStoreError(f"Unsupported state file version {version!r} in {self.path}")

        active = data.get("active_manifest")
        if active is not None and not isinstance(active, str):
            raise StateStoreError(f"Invalid active_manifest in {self.path}: {active!r}")

        self._progress = PipelineProgress.from_dict(data.get("progress", {}))
        self._active_manifest = active

    def _write_locked(self, progress: PipelineProgress, active_manifest: Optional[str]) -> None:
        payload = {
            "version": STATE_FORMAT_VERSION,
            "active_manifest": active_manifest,
            "progress": progress.to_dict(),
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StateStoreError(f"Cannot write state file {self.path}: {e}") from e

        self._progress = progress
        self._active_manifest = active_manifest

    def get_progress(self) -> PipelineProgress:
        with self._lock:
            self._load_locked()
            return self._progress

    def set_progress(self, progress: PipelineProgress) -> None:
        with self._lock:
            self._load_locked()
            self._write_locked(progress, self._active_manifest)

    def get_active_manifest(self) -> Optional[str]:
        with self._lock:
            self._load_locked()
            return self._active_manifest

    def set_active_manifest(self, manifest_path: Optional[str]) -> None:
        with self._lock:
            self._load_locked()
            self._write_locked(self._progress, manifest_path)


class OperationMarker:
    """
    JSON file naming the process that runs a pipeline operation.

    Format:
        {"pid": 1234, "operation": "build"}

    Each CLI invocation runs its phases in-process, so another invocation
    stops them by sending SIGINT to the recorded pid.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def acquire(self, operation: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps({"pid": os.getpid(), "operation": operation}),
            encoding="utf-8",
        )

    def release(self) -> None:
        """Remove the marker if this process wrote it."""
        owner = self._load()
        if owner is not None and owner["pid"] == os.getpid():
            self.path.unlink(missing_ok=True)

    def owner(self) -> Optional[Dict[str, Any]]:
        """
        The live process holding the marker, or None.

        A marker left behind by a process that no longer exists is removed.
        """
        owner = self._load()
        if owner is None:
            return None
        try:
            os.kill(owner["pid"], 0)
        except ProcessLookupError:
            logger.info("Removing stale operation marker of pid %d", owner["pid"])
            self.path.unlink(missing_ok=True)
            return None
        except PermissionError:
            # Alive, owned by another user
            pass
        return owner

    def interrupt(self) -> Optional[Dict[str, Any]]:
        """
        Send SIGINT to the owner.

        Returns:
            The interrupted owner, None if nothing was running.

        Raises:
            PermissionError: If the owner belongs to another user.
        """
        owner = self.owner()
        if owner is None:
            return None
        logger.info("Interrupting %s (pid %d)", owner["operation"], owner["pid"])
        os.kill(owner["pid"], signal.SIGINT)
        return owner

    def _load(self) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Ignoring unreadable operation marker %s: %s", self.path, e)
            return None
        if not isinstance(data, dict) or not isinstance(data.get("pid"), int) or data["pid"] <= 0:
            logger.warning("Ignoring invalid operation marker %s", self.path)
            return None
        return {"pid": data["pid"], "operation": str(data.get("operation") or "unknown")}


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def migrate_legacy_state(workspace: Path, store: StateStore) -> bool:
    """
    Import state from the legacy `.flatpak/pipeline.json` file, then delete it.

    Legacy format:
        {"selectedManifest": {"uri": {"path": "..."}} | null,
         "pipeline": {"initialized": bool,
                      "dependencies": {"updated": bool, "built": bool},
                      "application": {"built": bool}}}

    Returns:
        True if state was migrated.
    """
    legacy_file = Path(workspace) / BUILD_DIR_NAME / LEGACY_STATE_FILE_NAME
    if not legacy_file.exists():
        return False

    try:
        legacy = json.loads(legacy_file.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Failed to read legacy state %s: %s", legacy_file, e)
        return False

    selected = legacy.get("selectedManifest") if isinstance(legacy, dict) else None
    if not selected:
        # Without a selected manifest the old progress means nothing
        return False

    uri = selected.get("uri") if isinstance(selected, dict) else None
    if not isinstance(uri, dict):
        return False
    manifest_path = uri.get("path") or uri.get("fsPath")
    if not manifest_path or not Path(manifest_path).exists():
        return False

    pipeline = _as_dict(legacy.get("pipeline"))
    dependencies = _as_dict(pipeline.get("dependencies"))
    application = _as_dict(pipeline.get("application"))
    progress = PipelineProgress(
        initialized=bool(pipeline.get("initialized", False)),
        dependencies_updated=bool(dependencies.get("updated", False)),
        dependencies_built=bool(dependencies.get("built", False)),
        application_built=bool(application.get("built", False)),
    )

    store.set_active_manifest(str(manifest_path))
    store.set_progress(progress)
    legacy_file.unlink()
    logger.info("Migrated legacy pipeline state from %s", legacy_file)
    return True
