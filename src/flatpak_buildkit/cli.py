"""CLI entrypoint for the Flatpak build pipeline."""

from pathlib import Path
from typing import Callable, Optional

import click

from flatpak_buildkit.command import CommandError
from flatpak_buildkit.config import Config, ConfigError, load_config
from flatpak_buildkit.logging_config import configure_logging
from flatpak_buildkit.manifest import ManifestError
from flatpak_buildkit.manifest_manager import ManifestManager
from flatpak_buildkit.output import ConsoleSurface, OutputSink, OutputSurface
from flatpak_buildkit.pipeline import BuildPipeline
from flatpak_buildkit.runner import ConcurrentPipelineError, PhaseOutcome, Runner
from flatpak_buildkit.state import JsonStateStore, OperationMarker, StateStoreError, migrate_legacy_state
from flatpak_buildkit.tooling import BuilderNotFoundError, HostTools

# Exit code used when the operator interrupts a phase
INTERRUPTED_EXIT_CODE = 130

# Errors reported as `Error: <message>` with exit code 1
OPERATION_ERRORS = (
    ConcurrentPipelineError,
    ManifestError,
    CommandError,
    BuilderNotFoundError,
    StateStoreError,
    ConfigError,
    OSError,
)


def open_pipeline(config: Config, surface: Optional[OutputSurface] = None) -> BuildPipeline:
    """
    Wire a pipeline for the configured workspace.

    Restores the last active manifest (or picks the only one) and re-loads
    integrations for the persisted progress.
    """
    store = JsonStateStore(config.state_file)
    migrate_legacy_state(config.workspace, store)

    tools = HostTools(sandboxed=config.sandboxed)
    manager = ManifestManager(config.workspace, store, tools)
    runner = Runner(OutputSink(surface or ConsoleSurface()))
    pipeline = BuildPipeline(
        store,
        manager,
        runner,
        invalidate_dependencies_on_update=config.invalidate_dependencies_on_update,
    )
    manager.load_last_active()
    pipeline.ensure_state()
    return pipeline


def _load_config_or_exit(ctx: click.Context) -> Config:
    try:
        return load_config(ctx.obj.get("workspace"))
    except ConfigError as e:
        click.echo(f"Configuration error:\n{e}", err=True)
        raise SystemExit(1)


def _open_or_exit(ctx: click.Context, config: Optional[Config] = None) -> BuildPipeline:
    config = config or _load_config_or_exit(ctx)
    try:
        return open_pipeline(config)
    except OPERATION_ERRORS as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


def _run_operation(ctx: click.Context, label: str, operation: Callable[[BuildPipeline], PhaseOutcome]) -> None:
    """
    Run one pipeline operation and map its outcome to an exit code.

    The operation marker names this process while it runs, so `stop`
    from another shell can interrupt it.
    """
    config = _load_config_or_exit(ctx)
    pipeline = _open_or_exit(ctx, config)
    marker = OperationMarker(config.operation_marker)
    try:
        marker.acquire(label)
        outcome = operation(pipeline)
    except KeyboardInterrupt:
        pipeline.stop()
        pipeline.runner.wait(timeout=10)
        click.echo(f"\n{label}: interrupted", err=True)
        raise SystemExit(INTERRUPTED_EXIT_CODE)
    except OPERATION_ERRORS as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    finally:
        marker.release()
        pipeline.dispose()

    if outcome == PhaseOutcome.SKIPPED:
        click.echo(f"{label}: nothing to do (see `flatpak-buildkit status`)")
        return
    click.echo(f"{label}: {outcome.value}")
    if outcome == PhaseOutcome.FAILED:
        raise SystemExit(1)
    if outcome == PhaseOutcome.CANCELLED:
        raise SystemExit(INTERRUPTED_EXIT_CODE)


@click.group()
@click.version_option(package_name="flatpak-buildkit")
@click.option(
    "--workspace",
    "-w",
    type=click.Path(file_okay=False),
    default=None,
    help="Workspace root (default: FLATPAK_BUILDKIT_WORKSPACE or the current directory).",
)
@click.option(
    "--log-level",
    default=None,
    help="Log level (default: LOG_LEVEL or INFO).",
)
@click.pass_context
def cli(ctx: click.Context, workspace: Optional[str], log_level: Optional[str]):
    """Build, run and export Flatpak applications from a workspace manifest."""
    configure_logging(log_level)
    ctx.ensure_object(dict)
    ctx.obj["workspace"] = workspace


# --- Pipeline phases ---

@cli.command("init")
@click.pass_context
def init_build(ctx: click.Context):
    """Initialize the build environment (flatpak build-init)."""
    _run_operation(ctx, "init", lambda p: p.initialize_build())


@cli.command("update-deps")
@click.pass_context
def update_deps(ctx: click.Context):
    """Download the sources of every module."""
    _run_operation(ctx, "update-deps", lambda p: p.update_dependencies())


@cli.command("build-deps")
@click.pass_context
def build_deps(ctx: click.Context):
    """Build every module except the application."""
    _run_operation(ctx, "build-deps", lambda p: p.build_dependencies())


@cli.command("build-app")
@click.pass_context
def build_app(ctx: click.Context):
    """Build the application module."""
    _run_operation(ctx, "build-app", lambda p: p.build_application())


@cli.command()
@click.pass_context
def rebuild(ctx: click.Context):
    """Incrementally rebuild the application module."""
    _run_operation(ctx, "rebuild", lambda p: p.rebuild_application())


@cli.command("build")
@click.pass_context
def build_all(ctx: click.Context):
    """Run every phase still needed to get a built application."""
    _run_operation(ctx, "build", lambda p: p.build())


@cli.command("run")
@click.pass_context
def run_app(ctx: click.Context):
    """Run the built application."""
    _run_operation(ctx, "run", lambda p: p.run())


@cli.command()
@click.pass_context
def export(ctx: click.Context):
    """Export the built application as a .flatpak bundle."""
    _run_operation(ctx, "export", lambda p: p.export())


@cli.command()
@click.pass_context
def clean(ctx: click.Context):
    """Delete build output and reset pipeline progress."""
    _run_operation(ctx, "clean", lambda p: p.clean())


@cli.command()
@click.pass_context
def stop(ctx: click.Context):
    """
    Stop the operation another flatpak-buildkit process is running.

    The running process gets SIGINT and cancels its phase as if Ctrl-C
    had been pressed in its terminal.
    """
    config = _load_config_or_exit(ctx)
    marker = OperationMarker(config.operation_marker)
    try:
        owner = marker.interrupt()
    except OSError as e:
        click.echo(f"Error: Cannot stop the running operation: {e}", err=True)
        raise SystemExit(1)
    if owner is None:
        click.echo("No pipeline operation is running.")
        return
    click.echo(f"Stopping {owner['operation']} (pid {owner['pid']})")


# --- Manifests ---

@cli.command()
@click.pass_context
def status(ctx: click.Context):
    """Show the active manifest and pipeline progress."""
    pipeline = _open_or_exit(ctx)
    try:
        manifest = pipeline.manifest_manager.get_active_manifest()
        progress = pipeline.progress
    except StateStoreError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    finally:
        pipeline.dispose()

    if manifest is None:
        click.echo("Active manifest: (none)")
    else:
        click.echo(f"Active manifest: {manifest.id()} ({manifest.path})")
    for name, done in progress.to_dict().items():
        marker = "x" if done else " "
        click.echo(f"  [{marker}] {name}")


@cli.command()
@click.pass_context
def manifests(ctx: click.Context):
    """List the Flatpak manifests found in the workspace."""
    pipeline = _open_or_exit(ctx)
    manager = pipeline.manifest_manager
    found = manager.get_manifests()
    active = manager.get_active_manifest()
    pipeline.dispose()

    if not found:
        click.echo("No Flatpak manifest found in this workspace.")
        return
    for path, manifest in found.items():
        marker = "*" if active is not None and active.path == path else " "
        click.echo(f"{marker} {manifest.id():<40} {path}")


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def select(ctx: click.Context, path: str):
    """Make the manifest at PATH the active build target."""
    pipeline = _open_or_exit(ctx)
    try:
        manifest = pipeline.manifest_manager.select(Path(path))
    except OPERATION_ERRORS as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    finally:
        pipeline.dispose()
    click.echo(f"Active manifest: {manifest.id()} ({manifest.path})")


@cli.command()
@click.pass_context
def refresh(ctx: click.Context):
    """Rescan manifests; a changed module list or build-options cleans the build."""
    pipeline = _open_or_exit(ctx)
    try:
        rebuilds = pipeline.manifest_manager.refresh()
    except OPERATION_ERRORS as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    finally:
        pipeline.dispose()
    for manifest in rebuilds:
        click.echo(f"Rebuild requested: {manifest.path}")
    click.echo(f"Found {len(pipeline.manifest_manager.get_manifests())} manifest(s)")


@cli.command()
@click.argument("name")
@click.argument("shell_command")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False),
    default=None,
    help="Where to write the script (default: <build dir>/<NAME>.sh).",
)
@click.pass_context
def script(ctx: click.Context, name: str, shell_command: str, output: Optional[str]):
    """Write NAME.sh, which runs SHELL_COMMAND inside the built application's sandbox."""
    pipeline = _open_or_exit(ctx)
    try:
        manifest = pipeline.manifest_manager.require_active(check_for_error=False)
        manifest.ensure_build_dir()
        command = manifest.run_in_repo(shell_command, mount_extensions=True)
        target = Path(output) if output else manifest.build_dir / f"{name}.sh"
        written = command.materialize_as_script(target)
    except OPERATION_ERRORS as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    finally:
        pipeline.dispose()
    click.echo(f"Wrote {written}")


@cli.command("check-config")
@click.pass_context
def check_config(ctx: click.Context):
    """Check the configuration resolved from the environment."""
    config = _load_config_or_exit(ctx)
    click.echo("Configuration loaded successfully!")
    click.echo(f"  Workspace: {config.workspace}")
    click.echo(f"  State file: {config.state_file}")
    sandboxed = "auto-detect" if config.sandboxed is None else str(config.sandboxed).lower()
    click.echo(f"  Sandboxed: {sandboxed}")
    click.echo(f"  Invalidate deps on update: {str(config.invalidate_dependencies_on_update).lower()}")


if __name__ == "__main__":
    cli()
