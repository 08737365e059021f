# tests/test_manifest.py
"""
Tests for plugin.toml loading and plugin root scanning.
"""

from pathlib import Path

import pytest
import semver

from plugin_depot.exceptions import ManifestError
from plugin_depot.manifest import (
    DEFAULT_RUNTIME_VERSION,
    MANIFEST_NAME,
    load_manifest,
    parse_manifest,
    render_manifest_template,
    scan_plugin_root,
)
from plugin_depot.protocol import LocationKind

VALID_MANIFEST = """
name = "HDR"
version = "1.2.0"
beta = true
skyline_version = "0.2.0"

[[files]]
filename = "libhdr.nro"
install_location = { kind = "AbsolutePath", path = "sd:/plugins/libhdr.nro" }

[[folders]]
root_name = "assets"
install_root_location = { AbsolutePath = "sd:/mods/assets" }

[metadata]
name = "HDR"
description = "Competitive overhaul"
images = ["preview.png"]
changelog = "CHANGELOG.md"
"""


class TestParseManifest:
    def test_full_manifest(self):
        manifest = parse_manifest(VALID_MANIFEST, directory=Path("/srv/plugins/hdr"))
        assert manifest.name == "HDR"
        assert manifest.version == semver.Version(1, 2, 0)
        assert manifest.beta is True
        assert manifest.skyline_version == semver.Version(0, 2, 0)
        assert manifest.files[0].filename == Path("libhdr.nro")
        assert manifest.files[0].install_location.kind == LocationKind.ABSOLUTE_PATH
        assert manifest.folders[0].install_root_location.path == "sd:/mods/assets"
        assert manifest.metadata.images == [Path("preview.png")]
        assert manifest.resolve(Path("libhdr.nro")) == Path("/srv/plugins/hdr/libhdr.nro")

    def test_defaults(self):
        manifest = parse_manifest('name = "Foo"\nversion = "1.0.0"\nfiles = []\n')
        assert manifest.beta is False
        assert str(manifest.skyline_version) == DEFAULT_RUNTIME_VERSION
        assert manifest.folders == []
        assert manifest.metadata is None

    def test_invalid_runtime_version_falls_back(self):
        manifest = parse_manifest(
            'name = "Foo"\nversion = "1.0.0"\nskyline_version = "latest"\nfiles = []\n'
        )
        assert str(manifest.skyline_version) == DEFAULT_RUNTIME_VERSION

    def test_bad_version_rejected(self):
        with pytest.raises(ManifestError):
            parse_manifest('name = "Foo"\nversion = "one"\nfiles = []\n')

    def test_malformed_toml_rejected(self):
        with pytest.raises(ManifestError, match="Malformed"):
            parse_manifest('name = "Foo\nversion = ')

    def test_missing_files_rejected(self):
        with pytest.raises(ManifestError):
            parse_manifest('name = "Foo"\nversion = "1.0.0"\n')

    def test_template_parses(self):
        manifest = parse_manifest(render_manifest_template("HDR", "0.1.0"))
        assert manifest.name == "HDR"
        assert manifest.version == semver.Version(0, 1, 0)
        assert manifest.files[0].filename == Path("libhdr.nro")


class TestLoadManifest:
    def test_missing_manifest(self, tmp_path):
        with pytest.raises(ManifestError, match=MANIFEST_NAME):
            load_manifest(tmp_path)

    def test_directory_attached(self, make_plugin):
        plugin_dir = make_plugin("foo")
        manifest = load_manifest(plugin_dir)
        assert manifest.directory == plugin_dir


class TestScanPluginRoot:
    def test_name_order(self, make_plugin, plugin_root):
        make_plugin("b_plugin", name="Beta")
        make_plugin("a_plugin", name="Alpha")
        names = [m.name for m in scan_plugin_root(plugin_root)]
        assert names == ["Alpha", "Beta"]

    def test_bad_directory_skipped(self, make_plugin, plugin_root):
        """One broken plugin never blocks the others."""
        make_plugin("good", name="Good")
        bad = plugin_root / "bad"
        bad.mkdir()
        (bad / MANIFEST_NAME).write_text('name = "Bad"\nversion = "nope"\nfiles = []\n')
        (plugin_root / "empty").mkdir()

        names = [m.name for m in scan_plugin_root(plugin_root)]
        assert names == ["Good"]

    def test_stray_files_ignored(self, make_plugin, plugin_root):
        make_plugin("foo")
        (plugin_root / "README.txt").write_text("not a plugin")
        assert len(scan_plugin_root(plugin_root)) == 1

    def test_missing_root_created(self, tmp_path):
        root = tmp_path / "does" / "not" / "exist"
        assert scan_plugin_root(root) == []
        assert root.is_dir()
