"""Tests for integration wrapper scripts."""

import json
import os

from conftest import write_manifest
from flatpak_buildkit.integrations import (
    MesonBuild,
    RustAnalyzer,
    Vala,
    load_integrations,
    unload_integrations,
)
from flatpak_buildkit.manifest import Manifest

RUST = "org.freedesktop.Sdk.Extension.rust-stable"
VALA = "org.freedesktop.Sdk.Extension.vala"


def _manifest(tmp_path, tools, **overrides):
    path = write_manifest(tmp_path, **overrides)
    return Manifest(path, json.loads(path.read_text()), tmp_path, tools)


class TestApplicability:
    """Tests for which integrations apply to a manifest."""

    def test_meson_by_buildsystem(self, tmp_path, tools):
        """MesonBuild applies to meson modules only."""
        assert MesonBuild().is_applicable(_manifest(tmp_path, tools))
        simple = _manifest(tmp_path, tools, modules=[{"name": "app", "buildsystem": "simple"}])
        assert not MesonBuild().is_applicable(simple)

    def test_sdk_extensions(self, tmp_path, tools):
        """Rust and Vala apply when their SDK extension is used."""
        manifest = _manifest(tmp_path, tools, **{"sdk-extensions": [RUST]})
        assert RustAnalyzer().is_applicable(manifest)
        assert not Vala().is_applicable(manifest)


class TestScripts:
    """Tests for writing and removing scripts."""

    def test_meson_script(self, tmp_path, tools):
        """meson.sh runs the SDK's meson inside the built repo."""
        manifest = _manifest(tmp_path, tools)
        (script,) = MesonBuild().load(manifest)

        assert script == manifest.build_dir / "meson.sh"
        assert os.access(script, os.X_OK)
        content = script.read_text()
        assert content.startswith("#!/bin/sh\n")
        assert "/usr/bin/meson" in content
        assert str(manifest.repo_dir) in content

    def test_rust_scripts_set_cargo_home(self, tmp_path, tools):
        """cargo.sh gets CARGO_HOME inside the build system dir."""
        manifest = _manifest(tmp_path, tools, **{"sdk-extensions": [RUST]})
        written = RustAnalyzer().load(manifest)

        names = sorted(p.name for p in written)
        assert names == ["cargo.sh", "rust-analyzer.sh"]
        cargo = (manifest.build_dir / "cargo.sh").read_text()
        assert "--env=CARGO_HOME=_build/cargo-home" in cargo

    def test_vala_script(self, tmp_path, tools):
        """The Vala language server comes from the SDK extension."""
        manifest = _manifest(tmp_path, tools, **{"sdk-extensions": [VALA]})
        (script,) = Vala().load(manifest)
        assert "/usr/lib/sdk/vala/bin/vala-language-server" in script.read_text()

    def test_unload_removes_scripts(self, tmp_path, tools):
        """unload deletes what load wrote and ignores missing files."""
        manifest = _manifest(tmp_path, tools)
        integration = MesonBuild()
        integration.load(manifest)

        assert integration.unload(manifest) == [manifest.build_dir / "meson.sh"]
        assert integration.unload(manifest) == []

    def test_load_all_applicable(self, tmp_path, tools):
        """load_integrations writes scripts for applicable integrations only."""
        manifest = _manifest(tmp_path, tools, **{"sdk-extensions": [VALA]})
        written = load_integrations(manifest)

        assert sorted(p.name for p in written) == ["meson.sh", "vala-language-server.sh"]
        removed = unload_integrations(manifest)
        assert sorted(p.name for p in removed) == ["meson.sh", "vala-language-server.sh"]
