"""Build pipeline: guarded phase transitions over persisted progress flags.

Each public operation checks the runner is idle, checks its precondition
against the stored progress, asks the active manifest for the phase's
commands and blocks until the runner reports an outcome. Flags are only
written from the runner's finished notification, before the operation
returns.
"""

import logging
import threading
from typing import Callable, List, Optional, Sequence

from flatpak_buildkit.integrations import Integration, default_integrations, load_integrations, unload_integrations
from flatpak_buildkit.manifest import Manifest
from flatpak_buildkit.manifest_manager import ActiveManifestChange, ManifestManager
from flatpak_buildkit.phases import Phase
from flatpak_buildkit.runner import FinishedPhase, PhaseFailure, PhaseOutcome, Runner
from flatpak_buildkit.state import PipelineProgress, StateStore, StateStoreError

logger = logging.getLogger(__name__)


class BuildPipeline:
    """
    Orchestrates init -> update-deps -> build-deps -> build-app for the active manifest.

    Components are injected so tests can substitute a runner writing to a
    BufferSurface, an InMemoryStateStore and fake manifests.
    """

    def __init__(
        self,
        state_store: StateStore,
        manifest_manager: ManifestManager,
        runner: Runner,
        integrations: Optional[Sequence[Integration]] = None,
        invalidate_dependencies_on_update: bool = True,
    ):
        self.state_store = state_store
        self.manifest_manager = manifest_manager
        self.runner = runner
        self.output = runner.output
        self.integrations = list(integrations) if integrations is not None else default_integrations()
        self.invalidate_dependencies_on_update = invalidate_dependencies_on_update

        self._integrated_manifest: Optional[Manifest] = None
        self._finish_errors: List[StateStoreError] = []
        self._finish_lock = threading.Lock()
        self._subscriptions: List[Callable[[], None]] = [
            runner.on_finished.subscribe(self._handle_finished),
            runner.on_failure.subscribe(self._handle_failure),
            manifest_manager.on_active_manifest_changed.subscribe(self._handle_active_manifest_changed),
            manifest_manager.on_rebuild_requested.subscribe(self._handle_rebuild_requested),
        ]

    @property
    def progress(self) -> PipelineProgress:
        return self.state_store.get_progress()

    # --- Phase operations ---

    def initialize_build(self, queue: bool = False, complete_build: bool = False) -> PhaseOutcome:
        """Create the build environment (flatpak build-init) and load integrations."""
        return self._run_phase(
            Phase.BUILD_INIT,
            lambda p: not p.initialized,
            "Skipped build initialization. Already initialized.",
            queue=queue,
            complete_build=complete_build,
        )

    def update_dependencies(self, queue: bool = False, complete_build: bool = False) -> PhaseOutcome:
        """Download dependency sources. Invalidates built dependencies when configured to."""
        return self._run_phase(
            Phase.UPDATE_DEPS,
            lambda p: p.initialized,
            "Did not run update-deps. Build is not initialized.",
            queue=queue,
            complete_build=complete_build,
        )

    def build_dependencies(self, queue: bool = False, complete_build: bool = False) -> PhaseOutcome:
        return self._run_phase(
            Phase.BUILD_DEPS,
            lambda p: not p.dependencies_built,
            "Skipped build-deps. Dependencies are already built.",
            queue=queue,
            complete_build=complete_build,
        )

    def build_application(self, queue: bool = False) -> PhaseOutcome:
        return self._run_phase(
            Phase.BUILD_APP,
            lambda p: p.dependencies_built and not p.application_built,
            "Skipped build-app. Dependencies are not built or the application is already built.",
            queue=queue,
        )

    def rebuild_application(self, queue: bool = False) -> PhaseOutcome:
        return self._run_phase(
            Phase.REBUILD,
            lambda p: p.application_built,
            "Skipped rebuild. The application was not built.",
            queue=queue,
        )

    def run(self, queue: bool = False) -> PhaseOutcome:
        """Run the built application inside the build sandbox."""
        return self._run_phase(
            Phase.RUN,
            lambda p: p.application_built,
            "Skipped run. The application is not built.",
            queue=queue,
        )

    def export(self, queue: bool = False) -> PhaseOutcome:
        """Export the built application as a .flatpak bundle in the workspace."""
        return self._run_phase(
            Phase.EXPORT,
            lambda p: p.application_built,
            "Skipped export. The application is not built.",
            queue=queue,
        )

    def build(self) -> PhaseOutcome:
        """
        Run every phase still needed, in order, stopping at the first one that is not ok.

        Returns:
            Outcome of the last phase attempted.
        """
        outcome = self.initialize_build(complete_build=True)
        if not outcome.ok:
            return outcome

        if not self.progress.dependencies_updated:
            outcome = self.update_dependencies(complete_build=True)
            if not outcome.ok:
                return outcome

        outcome = self.build_dependencies(complete_build=True)
        if not outcome.ok:
            return outcome

        if self.progress.application_built:
            return self.rebuild_application()
        return self.build_application()

    def clean(self) -> PhaseOutcome:
        """
        Delete the build output and reset every progress flag.

        Raises:
            ConcurrentPipelineError: If a phase is running.
            OSError: If a build directory cannot be removed.
        """
        self.runner.ensure_idle()
        manifest = self.manifest_manager.require_active(check_for_error=False)
        self.output.show()
        for removed in manifest.delete_build_dirs():
            self.output.append_status_line(f"Deleted {removed}")
        self.reset_state()
        self.output.append_status_line("Pipeline state reset")
        return PhaseOutcome.SUCCEEDED

    def stop(self) -> None:
        """Kill the running process and drop queued commands."""
        self.runner.stop()

    def reset_state(self) -> None:
        self.state_store.reset_progress()
        logger.info("Pipeline state reset")

    def ensure_state(self) -> None:
        """
        Re-emit finished notifications for persisted progress.

        Used after a restart so integrations are loaded again without
        running any command.
        """
        progress = self.progress
        restored = [
            (progress.initialized, Phase.BUILD_INIT),
            (progress.dependencies_updated, Phase.UPDATE_DEPS),
            (progress.dependencies_built, Phase.BUILD_DEPS),
            (progress.application_built, Phase.BUILD_APP),
        ]
        for done, phase in restored:
            if done:
                self.runner.on_finished.fire(FinishedPhase(phase=phase, restore=True))

    def dispose(self) -> None:
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []
        self.runner.dispose()
        self.output.dispose()

    # --- Internals ---

    def _run_phase(
        self,
        phase: Phase,
        precondition: Callable[[PipelineProgress], bool],
        skip_message: str,
        queue: bool = False,
        complete_build: bool = False,
    ) -> PhaseOutcome:
        if not (queue and self.runner.is_running):
            self.runner.ensure_idle()

        if not precondition(self.progress):
            logger.info(skip_message)
            return PhaseOutcome.SKIPPED

        manifest = self.manifest_manager.require_active()
        commands = manifest.commands_for(phase)
        logger.info("%s (%d command(s))", phase.title, len(commands))

        self.runner.complete_build = complete_build
        if not self.runner.execute(commands, phase):
            return PhaseOutcome.QUEUED

        outcome = self.runner.wait()
        self._raise_finish_errors()
        return outcome

    def _raise_finish_errors(self) -> None:
        with self._finish_lock:
            errors, self._finish_errors = self._finish_errors, []
        if errors:
            raise errors[0]

    def _handle_finished(self, finished: FinishedPhase) -> None:
        """Apply a finished phase to the progress flags. Runs on the runner's thread."""
        if not finished.restore:
            try:
                self._apply_progress(finished.phase)
            except StateStoreError as e:
                logger.error("Failed to persist progress for %s: %s", finished.phase.value, e)
                with self._finish_lock:
                    self._finish_errors.append(e)
                return

        if finished.phase == Phase.BUILD_INIT:
            self._load_integrations()

    def _apply_progress(self, phase: Phase) -> None:
        if phase == Phase.BUILD_INIT:
            self.state_store.update_progress(initialized=True)
        elif phase == Phase.UPDATE_DEPS:
            if self.invalidate_dependencies_on_update:
                # New dependency sources invalidate the previous dependency build
                self.state_store.update_progress(dependencies_updated=True, dependencies_built=False)
            else:
                self.state_store.update_progress(dependencies_updated=True)
        elif phase == Phase.BUILD_DEPS:
            self.state_store.update_progress(dependencies_built=True)
        elif phase in (Phase.BUILD_APP, Phase.REBUILD):
            self.state_store.update_progress(application_built=True)

    def _handle_failure(self, failure: PhaseFailure) -> None:
        logger.warning(
            "%s failed: %s (%s)", failure.phase.title, failure.message, failure.command
        )

    def _load_integrations(self) -> None:
        manifest = self.manifest_manager.get_active_manifest()
        if manifest is None:
            return
        try:
            load_integrations(manifest, self.integrations)
        except OSError as e:
            logger.warning("Failed to load integrations for %s: %s", manifest.id(), e)
            return
        self._integrated_manifest = manifest

    def _handle_active_manifest_changed(self, change: ActiveManifestChange) -> None:
        if change.is_last_active:
            # Restored target, persisted progress still belongs to it
            return

        if self.runner.is_running:
            self.stop()
            self.runner.wait()
        self.reset_state()

        previous = self._integrated_manifest
        self._integrated_manifest = None
        if previous is not None:
            try:
                unload_integrations(previous, self.integrations)
            except OSError as e:
                logger.warning("Failed to unload integrations for %s: %s", previous.id(), e)

    def _handle_rebuild_requested(self, manifest: Manifest) -> None:
        active = self.manifest_manager.get_active_manifest()
        if active is None or active.path != manifest.path:
            return
        logger.info("Manifest at %s requested a rebuild", manifest.path)
        if self.runner.is_running:
            self.stop()
            self.runner.wait()
        self.clean()
