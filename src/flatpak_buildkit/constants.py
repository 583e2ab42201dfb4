"""Constants for the flatpak build pipeline."""

import os

# Sandbox-escape wrapper used when running inside a Flatpak sandbox
SANDBOX_WRAPPER = "flatpak-spawn"
SANDBOX_WRAPPER_ARGS = ["--host", "--watch-bus", "--env=TERM=xterm-256color"]

# Only these wrapper args show up in display strings and scripts
SANDBOX_DISPLAY_ARGS = ["--host"]

# Files whose presence tells us where we are running
FLATPAK_INFO_FILE = "/.flatpak-info"
CONTAINER_ENV_FILE = "/run/.containerenv"

# Build layout, relative to the workspace
BUILD_DIR_NAME = ".flatpak"
REPO_DIR_NAME = "repo"
FINALIZED_REPO_DIR_NAME = "finalized-repo"
OSTREE_REPO_DIR_NAME = "ostree-repo"
STATE_DIR_NAME = "flatpak-builder"
STATE_FILE_NAME = "buildkit-state.json"
OPERATION_MARKER_NAME = "buildkit-operation.json"
LEGACY_STATE_FILE_NAME = "pipeline.json"

# Intermediate build dir used by meson and cmake
BUILD_SYSTEM_BUILD_DIR = "_build"

DEFAULT_APP_ID = "org.flatpak.Test"
INSTALL_PREFIX = "/app"

# Host environment variables forwarded into `flatpak build` for run/shell commands
FORWARDED_ENV_KEYS = [
    "COLORTERM",
    "DESKTOP_SESSION",
    "LANG",
    "WAYLAND_DISPLAY",
    "XDG_CURRENT_DESKTOP",
    "XDG_SEAT",
    "XDG_SESSION_DESKTOP",
    "XDG_SESSION_ID",
    "XDG_SESSION_TYPE",
    "XDG_VTNR",
    "AT_SPI_BUS_ADDRESS",
]

# Directories never searched for manifests
MANIFEST_EXCLUDED_DIRS = {
    "target",
    ".vscode",
    ".flatpak-builder",
    "flatpak_app",
    ".flatpak",
    "_build",
    ".github",
    ".git",
}
MANIFEST_SUFFIXES = (".json", ".yaml", ".yml")
MANIFEST_SEARCH_LIMIT = 1000

# Terminal styling for operator-facing lines
RESET_COLOR = "\x1b[0m"
BOLD_WHITE = "\x1b[1;37m"
BOLD_RED = "\x1b[1;31m"
STATUS_PREFIX = ">>> "

# Environment variable names read by config.load_config
ENV_WORKSPACE = "FLATPAK_BUILDKIT_WORKSPACE"
ENV_STATE_FILE = "FLATPAK_BUILDKIT_STATE_FILE"
ENV_SANDBOXED = "FLATPAK_BUILDKIT_SANDBOXED"
ENV_INVALIDATE_DEPS = "FLATPAK_BUILDKIT_INVALIDATE_DEPS_ON_UPDATE"

# How long OutputSink.show() waits for a surface to become ready
SURFACE_READY_TIMEOUT_S = float(os.getenv("FLATPAK_BUILDKIT_SURFACE_TIMEOUT_S", "10"))
