"""Build pipeline phases."""

from enum import Enum


class Phase(str, Enum):
    BUILD_INIT = "build-init"
    UPDATE_DEPS = "update-deps"
    BUILD_DEPS = "build-deps"
    BUILD_APP = "build-app"
    REBUILD = "rebuild"
    RUN = "run"
    EXPORT = "export"
    CLEAN = "clean"

    @property
    def title(self) -> str:
        return PHASE_TITLES[self]

    @property
    def affects_progress(self) -> bool:
        """Whether finishing this phase changes persisted progress."""
        return self not in (Phase.RUN, Phase.EXPORT)


PHASE_TITLES = {
    Phase.BUILD_INIT: "Initializing build environment",
    Phase.UPDATE_DEPS: "Updating application dependencies",
    Phase.BUILD_DEPS: "Building application dependencies",
    Phase.BUILD_APP: "Building application",
    Phase.REBUILD: "Rebuilding application",
    Phase.RUN: "Running application",
    Phase.EXPORT: "Exporting bundle",
    Phase.CLEAN: "Cleaning build environment",
}
