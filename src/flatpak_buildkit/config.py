"""Configuration loading for the build pipeline CLI."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from flatpak_buildkit.constants import (
    BUILD_DIR_NAME,
    ENV_INVALIDATE_DEPS,
    ENV_SANDBOXED,
    ENV_STATE_FILE,
    ENV_WORKSPACE,
    OPERATION_MARKER_NAME,
    STATE_FILE_NAME,
)


TRUE_VALUES = ("1", "true", "yes", "on")
FALSE_VALUES = ("0", "false", "no", "off")


@dataclass
class Config:
    """Workspace and pipeline settings resolved from the environment."""

    workspace: Path
    state_file: Path
    sandboxed: Optional[bool] = None  # None means auto-detect
    invalidate_dependencies_on_update: bool = True

    @property
    def build_dir(self) -> Path:
        return self.workspace / BUILD_DIR_NAME

    @property
    def operation_marker(self) -> Path:
        return self.build_dir / OPERATION_MARKER_NAME


class ConfigError(Exception):
    """Raised when configuration values are invalid."""
    pass


def _parse_bool(name: str, raw: Optional[str]) -> Optional[bool]:
    """Parse a boolean-ish environment value, None when unset."""
    if raw is None or raw.strip() == "":
        return None
    value = raw.strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    raise ConfigError(
        f"Invalid value for {name}: {raw!r}\n"
        f"Expected one of: {', '.join(TRUE_VALUES + FALSE_VALUES)}"
    )


def load_config(workspace: Optional[str] = None) -> Config:
    """
    Load configuration from environment variables.

    Args:
        workspace: Workspace root. Overrides FLATPAK_BUILDKIT_WORKSPACE when given.

    Returns:
        Config object with resolved paths.

    Raises:
        ConfigError: If a variable holds an invalid value or the workspace is missing.
    """
    load_dotenv()

    raw_workspace = workspace or os.environ.get(ENV_WORKSPACE) or os.getcwd()
    workspace_path = Path(raw_workspace).expanduser().resolve()
    if not workspace_path.is_dir():
        raise ConfigError(f"Workspace directory does not exist: {workspace_path}")

    raw_state_file = os.environ.get(ENV_STATE_FILE)
    if raw_state_file:
        state_file = Path(raw_state_file).expanduser()
        if not state_file.is_absolute():
            state_file = workspace_path / state_file
    else:
        state_file = workspace_path / BUILD_DIR_NAME / STATE_FILE_NAME

    sandboxed = _parse_bool(ENV_SANDBOXED, os.environ.get(ENV_SANDBOXED))
    invalidate = _parse_bool(ENV_INVALIDATE_DEPS, os.environ.get(ENV_INVALIDATE_DEPS))

    return Config(
        workspace=workspace_path,
        state_file=state_file,
        sandboxed=sandboxed,
        invalidate_dependencies_on_update=True if invalidate is None else invalidate,
    )
