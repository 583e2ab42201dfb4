"""Tests for BuildPipeline transitions (real runner, fake manifest)."""

from unittest.mock import MagicMock

import pytest

from conftest import StubManifestManager, sh
from flatpak_buildkit.manifest_manager import ActiveManifestChange, NoActiveManifestError
from flatpak_buildkit.phases import Phase
from flatpak_buildkit.pipeline import BuildPipeline
from flatpak_buildkit.runner import ConcurrentPipelineError, PhaseOutcome
from flatpak_buildkit.state import InMemoryStateStore, PipelineProgress, StateStoreError


ALL_DONE = PipelineProgress(
    initialized=True,
    dependencies_updated=True,
    dependencies_built=True,
    application_built=True,
)


class FakeManifest:
    """Hands out shell commands per phase and records what was asked."""

    def __init__(self, tmp_path, commands=None):
        self.path = tmp_path / "org.example.App.json"
        self.commands = commands or {}
        self.requested = []
        self.deleted = 0

    def id(self):
        return "org.example.App"

    def commands_for(self, phase):
        self.requested.append(phase)
        return list(self.commands.get(phase, [sh("true")]))

    def delete_build_dirs(self):
        self.deleted += 1
        return [self.path.parent / ".flatpak" / "repo"]


@pytest.fixture
def manifest(tmp_path):
    return FakeManifest(tmp_path)


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def integration():
    integration = MagicMock()
    integration.name = "fake"
    integration.is_applicable.return_value = True
    integration.load.return_value = []
    integration.unload.return_value = []
    return integration


@pytest.fixture
def manager(manifest):
    return StubManifestManager(manifest)


@pytest.fixture
def pipeline(store, manager, runner, integration):
    return BuildPipeline(store, manager, runner, integrations=[integration])


# =============================================================================
# Single phases
# =============================================================================

class TestPhases:
    """Tests for guarded single-phase operations."""

    def test_initialize_build(self, pipeline, store, manifest, integration):
        """init sets initialized and loads integrations."""
        assert pipeline.initialize_build() == PhaseOutcome.SUCCEEDED
        assert store.get_progress() == PipelineProgress(initialized=True)
        assert manifest.requested == [Phase.BUILD_INIT]
        integration.load.assert_called_once_with(manifest)

    def test_idempotent_skip(self, pipeline, store, manifest):
        """Done phases run nothing and change nothing."""
        store.set_progress(ALL_DONE)

        assert pipeline.initialize_build() == PhaseOutcome.SKIPPED
        assert pipeline.build_dependencies() == PhaseOutcome.SKIPPED
        assert pipeline.build_application() == PhaseOutcome.SKIPPED

        assert manifest.requested == []
        assert pipeline.runner.last_outcome is None
        assert store.get_progress() == ALL_DONE

    def test_update_requires_init(self, pipeline, manifest):
        """update-deps is skipped before init."""
        assert pipeline.update_dependencies() == PhaseOutcome.SKIPPED
        assert manifest.requested == []

    def test_update_invalidates_built_dependencies(self, pipeline, store):
        """New dependency sources clear dependencies_built."""
        store.set_progress(PipelineProgress(initialized=True, dependencies_built=True))
        assert pipeline.update_dependencies() == PhaseOutcome.SUCCEEDED
        assert store.get_progress() == PipelineProgress(initialized=True, dependencies_updated=True)

    def test_update_keeps_built_dependencies_when_disabled(self, store, manager, runner, integration):
        """The invalidation policy can be switched off."""
        pipeline = BuildPipeline(
            store, manager, runner, integrations=[integration],
            invalidate_dependencies_on_update=False,
        )
        store.set_progress(PipelineProgress(initialized=True, dependencies_built=True))
        pipeline.update_dependencies()
        assert store.get_progress().dependencies_built is True

    def test_build_app_requires_dependencies(self, pipeline, manifest):
        """build-app is skipped until dependencies are built."""
        assert pipeline.build_application() == PhaseOutcome.SKIPPED
        assert manifest.requested == []

    def test_rebuild_reaffirms_built(self, pipeline, store):
        """rebuild keeps application_built true."""
        store.set_progress(ALL_DONE)
        assert pipeline.rebuild_application() == PhaseOutcome.SUCCEEDED
        assert store.get_progress() == ALL_DONE

    def test_run_and_export_leave_flags(self, pipeline, store, manifest):
        """run and export never touch progress."""
        store.set_progress(PipelineProgress(dependencies_built=True, application_built=True))
        assert pipeline.run() == PhaseOutcome.SUCCEEDED
        assert pipeline.export() == PhaseOutcome.SUCCEEDED
        assert store.get_progress() == PipelineProgress(dependencies_built=True, application_built=True)
        assert manifest.requested == [Phase.RUN, Phase.EXPORT]

    def test_run_requires_built_app(self, pipeline):
        """run is skipped when nothing is built."""
        assert pipeline.run() == PhaseOutcome.SKIPPED

    def test_failure_leaves_flags(self, tmp_path, store, runner, integration, surface):
        """A failed phase sets no flag and writes an error line."""
        manifest = FakeManifest(tmp_path, {Phase.BUILD_DEPS: [sh("exit 3")]})
        pipeline = BuildPipeline(store, StubManifestManager(manifest), runner, integrations=[integration])

        assert pipeline.build_dependencies() == PhaseOutcome.FAILED
        assert store.get_progress().is_clean
        assert "exited with code 3" in surface.text

    def test_no_active_manifest(self, store, runner, integration):
        """Phases need an active manifest."""
        pipeline = BuildPipeline(store, StubManifestManager(None), runner, integrations=[integration])
        with pytest.raises(NoActiveManifestError):
            pipeline.initialize_build()

    def test_store_failure_propagates(self, manager, runner, integration):
        """A progress write that fails is raised from the operation."""

        class FailingStore(InMemoryStateStore):
            def set_progress(self, progress):
                raise StateStoreError("disk full")

        pipeline = BuildPipeline(FailingStore(), manager, runner, integrations=[integration])
        with pytest.raises(StateStoreError):
            pipeline.initialize_build()


# =============================================================================
# Composite build
# =============================================================================

class TestBuild:
    """Tests for the composite build() sequence."""

    def test_from_clean(self, pipeline, store, manifest):
        """Every phase runs once, in order."""
        assert pipeline.build() == PhaseOutcome.SUCCEEDED
        assert manifest.requested == [
            Phase.BUILD_INIT, Phase.UPDATE_DEPS, Phase.BUILD_DEPS, Phase.BUILD_APP,
        ]
        assert store.get_progress() == ALL_DONE

    def test_aborts_on_failure(self, tmp_path, store, runner, integration):
        """A failing update stops the chain before build-deps."""
        manifest = FakeManifest(tmp_path, {Phase.UPDATE_DEPS: [sh("exit 1")]})
        pipeline = BuildPipeline(store, StubManifestManager(manifest), runner, integrations=[integration])

        assert pipeline.build() == PhaseOutcome.FAILED
        assert manifest.requested == [Phase.BUILD_INIT, Phase.UPDATE_DEPS]
        assert store.get_progress() == PipelineProgress(initialized=True)

    def test_rebuilds_when_built(self, pipeline, store, manifest):
        """With everything done, build() rebuilds the application."""
        store.set_progress(ALL_DONE)
        assert pipeline.build() == PhaseOutcome.SUCCEEDED
        assert manifest.requested == [Phase.REBUILD]

    def test_resumes_after_update(self, pipeline, store, manifest):
        """Only the missing phases run."""
        store.set_progress(PipelineProgress(initialized=True, dependencies_updated=True))
        pipeline.build()
        assert manifest.requested == [Phase.BUILD_DEPS, Phase.BUILD_APP]


# =============================================================================
# Clean and reset
# =============================================================================

class TestClean:
    """Tests for clean and state resets."""

    def test_clean_resets_all_flags(self, pipeline, store, manifest, surface):
        """clean deletes build dirs and clears progress without running commands."""
        store.set_progress(ALL_DONE)

        assert pipeline.clean() == PhaseOutcome.SUCCEEDED

        assert store.get_progress().is_clean
        assert manifest.deleted == 1
        assert manifest.requested == []
        assert pipeline.runner.last_outcome is None
        assert "Pipeline state reset" in surface.text

    def test_clean_propagates_oserror(self, pipeline, manifest):
        """Filesystem errors surface to the caller."""
        manifest.delete_build_dirs = MagicMock(side_effect=PermissionError("denied"))
        with pytest.raises(OSError):
            pipeline.clean()


# =============================================================================
# Concurrency
# =============================================================================

class TestConcurrency:
    """Tests for mutual exclusion at the pipeline level."""

    def test_busy_runner_raises(self, pipeline, store, runner):
        """Operations refuse to start while another phase runs."""
        store.set_progress(ALL_DONE)
        runner.execute([sh("sleep 0.5")], Phase.BUILD_APP)

        with pytest.raises(ConcurrentPipelineError):
            pipeline.run()
        with pytest.raises(ConcurrentPipelineError):
            pipeline.clean()
        # Skippable operations still refuse rather than silently skip
        with pytest.raises(ConcurrentPipelineError):
            pipeline.initialize_build()

        runner.wait(timeout=10)
        assert store.get_progress() == ALL_DONE

    def test_queue_appends_to_running_phase(self, tmp_path, store, runner, integration):
        """queue=True chains onto the running session."""
        log = tmp_path / "log"
        manifest = FakeManifest(tmp_path, {Phase.RUN: [sh(f"echo B >> {log}")]})
        pipeline = BuildPipeline(store, StubManifestManager(manifest), runner, integrations=[integration])
        store.set_progress(ALL_DONE)

        runner.execute([sh(f"sleep 0.3; echo A >> {log}")], Phase.REBUILD)
        assert pipeline.run(queue=True) == PhaseOutcome.QUEUED

        assert runner.wait(timeout=10) == PhaseOutcome.SUCCEEDED
        assert log.read_text().split() == ["A", "B"]

    def test_queue_on_idle_runner_runs_now(self, pipeline, store):
        """queue=True on an idle runner behaves like a normal call."""
        store.set_progress(ALL_DONE)
        assert pipeline.run(queue=True) == PhaseOutcome.SUCCEEDED


# =============================================================================
# Target changes and restore
# =============================================================================

class TestTargetChanges:
    """Tests for reacting to the manifest manager."""

    def test_switch_resets_and_unloads(self, pipeline, store, manager, manifest, integration):
        """A newly picked manifest resets progress and unloads integrations."""
        pipeline.initialize_build()
        manager.on_active_manifest_changed.fire(ActiveManifestChange(manifest, False))

        assert store.get_progress().is_clean
        integration.unload.assert_called_once_with(manifest)

    def test_restored_target_keeps_progress(self, pipeline, store, manager, manifest):
        """A manifest restored from state keeps its progress."""
        store.set_progress(ALL_DONE)
        manager.on_active_manifest_changed.fire(ActiveManifestChange(manifest, True))
        assert store.get_progress() == ALL_DONE

    def test_switch_stops_running_phase(self, pipeline, store, manager, manifest, runner):
        """Switching targets kills whatever is running first."""
        runner.execute([sh("sleep 10")], Phase.BUILD_DEPS)
        manager.on_active_manifest_changed.fire(ActiveManifestChange(manifest, False))
        assert not runner.is_running
        assert runner.last_outcome == PhaseOutcome.CANCELLED

    def test_rebuild_request_cleans(self, pipeline, store, manager, manifest):
        """A rebuild request for the active manifest cleans."""
        store.set_progress(ALL_DONE)
        manager.on_rebuild_requested.fire(manifest)
        assert store.get_progress().is_clean
        assert manifest.deleted == 1

    def test_rebuild_request_for_other_manifest_ignored(self, tmp_path, pipeline, store, manager, manifest):
        """Requests for inactive manifests change nothing."""
        store.set_progress(ALL_DONE)
        other = FakeManifest(tmp_path / "elsewhere")
        manager.on_rebuild_requested.fire(other)
        assert store.get_progress() == ALL_DONE
        assert manifest.deleted == 0

    def test_ensure_state_restores_integrations(self, pipeline, store, runner, integration, manifest):
        """Persisted progress re-emits restore notifications and reloads integrations."""
        finished = []
        runner.on_finished.subscribe(finished.append)
        store.set_progress(PipelineProgress(initialized=True, dependencies_updated=True))

        pipeline.ensure_state()

        assert [(f.phase, f.restore) for f in finished] == [
            (Phase.BUILD_INIT, True),
            (Phase.UPDATE_DEPS, True),
        ]
        integration.load.assert_called_once_with(manifest)
        assert store.get_progress() == PipelineProgress(initialized=True, dependencies_updated=True)
        assert manifest.requested == []

    def test_dispose_unsubscribes(self, pipeline, store, manager, manifest):
        """After dispose, manager events no longer reach the pipeline."""
        store.set_progress(ALL_DONE)
        pipeline.dispose()
        manager.on_rebuild_requested.fire(manifest)
        assert store.get_progress() == ALL_DONE
