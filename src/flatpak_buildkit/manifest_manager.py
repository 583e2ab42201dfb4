"""Tracks the manifests of a workspace and which one is the active build target."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from flatpak_buildkit.events import EventEmitter
from flatpak_buildkit.manifest import Manifest, ManifestError
from flatpak_buildkit.manifest_utils import find_manifests, parse_manifest
from flatpak_buildkit.state import StateStore
from flatpak_buildkit.tooling import HostTools

logger = logging.getLogger(__name__)


class NoActiveManifestError(ManifestError):
    """Raised when an operation needs an active manifest and none is selected."""
    pass


@dataclass(frozen=True)
class ActiveManifestChange:
    """
    Emitted when the active manifest changes.

    is_last_active is True when the manifest was restored from the state
    store rather than picked now, so persisted progress still applies.
    """
    manifest: Optional[Manifest]
    is_last_active: bool


class ManifestManager:
    """
    Owns manifest discovery and target selection.

    Subscribers of on_active_manifest_changed must stop the runner and
    reset progress before the new target is built.
    """

    def __init__(self, workspace: Path, state_store: StateStore, tools: Optional[HostTools] = None):
        self.workspace = Path(workspace).resolve()
        self.state_store = state_store
        self.tools = tools or HostTools()
        self.on_active_manifest_changed: EventEmitter[ActiveManifestChange] = EventEmitter(
            "active-manifest-changed"
        )
        self.on_rebuild_requested: EventEmitter[Manifest] = EventEmitter("rebuild-requested")
        self._manifests: Optional[Dict[Path, Manifest]] = None
        self._active: Optional[Manifest] = None

    # --- Queries ---

    def get_manifests(self) -> Dict[Path, Manifest]:
        if self._manifests is None:
            logger.info("Looking for potential Flatpak manifests in %s", self.workspace)
            self._manifests = find_manifests(self.workspace, self.tools)
        return self._manifests

    def get_active_manifest(self) -> Optional[Manifest]:
        return self._active

    def require_active(self, check_for_error: bool = True) -> Manifest:
        """
        The active manifest, checked against the host when asked.

        Raises:
            NoActiveManifestError: If nothing is selected.
            ManifestError: If check_for_error is set and the host cannot build it.
        """
        if self._active is None:
            raise NoActiveManifestError(
                "No active Flatpak manifest. Select one with `flatpak-buildkit select <path>`."
            )
        if check_for_error:
            self._active.ensure_valid()
        return self._active

    # --- Selection ---

    def load_last_active(self) -> Optional[Manifest]:
        """
        Restore the persisted active manifest, or auto-select the only one.
        """
        manifests = self.get_manifests()
        stored = self.state_store.get_active_manifest()
        last_path = Path(stored).resolve() if stored else None
        if last_path is not None and not last_path.exists():
            last_path = None

        if last_path is None:
            if len(manifests) == 1:
                only = next(iter(manifests.values()))
                logger.info("Found only one valid manifest. Setting active manifest to %s", only.path)
                self._set_active(only, is_last_active=True)
            return self._active

        last_active = manifests.get(last_path)
        if last_active is None:
            return self._active

        logger.info("Found last active manifest at %s", last_path)
        self._set_active(last_active, is_last_active=True)
        return self._active

    def select(self, path: Path) -> Manifest:
        """
        Make the manifest at path the active one.

        Raises:
            ManifestError: If path is not a known or parseable manifest.
        """
        resolved = Path(path).resolve()
        manifests = self.get_manifests()
        manifest = manifests.get(resolved)
        if manifest is None:
            manifest = parse_manifest(resolved, self.workspace, self.tools)
            if manifest is None:
                raise ManifestError(f"Not a Flatpak manifest: {resolved}")
            manifests[manifest.path] = manifest
        self._set_active(manifest, is_last_active=False)
        return manifest

    def _set_active(self, manifest: Optional[Manifest], is_last_active: bool) -> None:
        if self._active == manifest:
            return

        self._active = manifest
        self.on_active_manifest_changed.fire(ActiveManifestChange(manifest, is_last_active))
        logger.info("Current active manifest: %s", manifest.path if manifest else None)

        self.state_store.set_active_manifest(str(manifest.path) if manifest else None)
        if manifest is not None:
            manifest.ensure_build_dir()

    # --- Change detection ---

    def refresh(self) -> List[Manifest]:
        """
        Rescan the workspace and apply what changed on disk.

        New manifests are added (the first one becomes active), deleted ones
        dropped, and modified ones re-parsed. A change to `modules` or
        `build-options` emits on_rebuild_requested.

        Returns:
            Manifests for which a rebuild was requested.
        """
        known = self.get_manifests()
        current = find_manifests(self.workspace, self.tools)
        rebuild_requested = []

        for path in list(known):
            if path not in current:
                logger.info("Manifest deleted at %s", path)
                self._remove(path)

        for path, updated in current.items():
            old = known.get(path)
            if old is None:
                logger.info("Manifest created at %s", path)
                known[path] = updated
                if len(known) == 1 and self._active is None:
                    logger.info("Found the first valid manifest at %s. Setting it as active.", path)
                    self._set_active(updated, is_last_active=True)
                continue
            if old.data == updated.data:
                continue
            if self._apply_update(old, updated):
                rebuild_requested.append(updated)

        return rebuild_requested

    def update_manifest(self, path: Path) -> bool:
        """
        Re-parse one known manifest after it was modified.

        Returns:
            True if a rebuild was requested.
        """
        resolved = Path(path).resolve()
        old = self.get_manifests().get(resolved)
        if old is None:
            return False
        try:
            updated = parse_manifest(resolved, self.workspace, self.tools)
        except ManifestError as e:
            logger.warning("Failed to parse manifest at %s: %s", resolved, e)
            return False
        if updated is None:
            return False
        return self._apply_update(old, updated)

    def _apply_update(self, old: Manifest, updated: Manifest) -> bool:
        self.get_manifests()[updated.path] = updated
        if self._active is not None and self._active.path == updated.path:
            # Same target, so progress is kept
            self._active = updated

        modules_changed = old.data.get("modules") != updated.data.get("modules")
        options_changed = old.data.get("build-options") != updated.data.get("build-options")
        if modules_changed or options_changed:
            logger.info("Updated manifest has modified modules or build-options. Requesting a rebuild")
            self.on_rebuild_requested.fire(updated)
            return True
        return False

    def _remove(self, path: Path) -> None:
        manifests = self.get_manifests()
        manifests.pop(path, None)
        if self._active is None or self._active.path != path:
            return
        if len(manifests) == 1:
            only = next(iter(manifests.values()))
            logger.info("Found only one valid manifest. Setting active manifest to %s", only.path)
            self._set_active(only, is_last_active=False)
        else:
            self._set_active(None, is_last_active=False)
