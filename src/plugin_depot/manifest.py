# src/plugin_depot/manifest.py
"""
Plugin Manifest Loader.

Every plugin lives in its own directory under the plugin root and is described
by a plugin.toml:

    name = "HDR"
    version = "1.2.0"
    beta = false                      # optional
    skyline_version = "0.2.0"         # optional minimum runtime version

    [[files]]
    filename = "libhdr.nro"
    install_location = { kind = "AbsolutePath", path = "sd:/atmosphere/contents/01006A800016E000/romfs/skyline/plugins/libhdr.nro" }

    [[folders]]                       # optional, packaged into one archive
    root_name = "hdr-assets"
    install_root_location = { AbsolutePath = "sd:/ultimate/mods/hdr-assets" }

    [metadata]                        # optional
    name = "HDR"
    description = "..."
    images = ["preview.png"]
    changelog = "CHANGELOG.md"

One bad plugin directory never blocks the others: scan_plugin_root() logs and
skips directories whose manifest fails to load.
"""

import logging
import tomllib
from pathlib import Path
from typing import List, Optional

import semver
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from plugin_depot.exceptions import ManifestError
from plugin_depot.protocol import InstallLocation

logger = logging.getLogger(__name__)

MANIFEST_NAME = "plugin.toml"
DEFAULT_RUNTIME_VERSION = "0.0.0"


class PluginFile(BaseModel):
    """A single file shipped as-is."""

    install_location: InstallLocation
    filename: Path


class PluginFolder(BaseModel):
    """A folder bundle, shipped as one archive and extracted on the client."""

    install_root_location: InstallLocation
    root_name: Path


class ManifestMetadata(BaseModel):
    name: Optional[str] = None
    images: Optional[List[Path]] = None
    description: Optional[str] = None
    changelog: Optional[Path] = None


class PluginManifest(BaseModel):
    """Parsed plugin.toml"""

    name: str
    version: semver.Version
    beta: bool = False
    skyline_version: semver.Version = Field(
        default_factory=lambda: semver.Version.parse(DEFAULT_RUNTIME_VERSION)
    )
    files: List[PluginFile]
    folders: List[PluginFolder] = Field(default_factory=list)
    metadata: Optional[ManifestMetadata] = None

    # Attached by load_manifest(); relative filenames resolve against it
    directory: Optional[Path] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @field_validator("version", mode="before")
    @classmethod
    def _parse_version(cls, value):
        if isinstance(value, semver.Version):
            return value
        if not isinstance(value, str):
            raise ValueError("version must be a semver string")
        try:
            return semver.Version.parse(value)
        except ValueError:
            raise ValueError(f"Failed to parse version {value!r}")

    @field_validator("skyline_version", mode="before")
    @classmethod
    def _parse_runtime_version(cls, value):
        # An unparsable minimum runtime version falls back to the default
        if isinstance(value, semver.Version):
            return value
        try:
            return semver.Version.parse(str(value))
        except ValueError:
            logger.warning(
                f"Ignoring invalid skyline_version {value!r}, "
                f"using {DEFAULT_RUNTIME_VERSION}"
            )
            return semver.Version.parse(DEFAULT_RUNTIME_VERSION)

    def resolve(self, path: Path) -> Path:
        """Resolve a manifest-relative path against the plugin directory."""
        if path.is_absolute() or self.directory is None:
            return path
        return self.directory / path


def parse_manifest(text: str, directory: Optional[Path] = None) -> PluginManifest:
    """
    Parse plugin.toml content.

    Raises:
        ManifestError: If the TOML is malformed or fails validation
    """
    try:
        raw = tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise ManifestError(f"Malformed manifest: {e}")

    try:
        manifest = PluginManifest.model_validate(raw)
    except ValidationError as e:
        raise ManifestError(f"Invalid manifest: {e}")

    manifest.directory = directory
    return manifest


def load_manifest(plugin_dir: Path) -> PluginManifest:
    """
    Load the manifest of one plugin directory.

    Raises:
        ManifestError: If plugin.toml is missing, unreadable, or invalid
    """
    manifest_path = Path(plugin_dir) / MANIFEST_NAME
    if not manifest_path.is_file():
        raise ManifestError(f"No {MANIFEST_NAME} in {plugin_dir}")

    try:
        text = manifest_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ManifestError(f"Failed to read {manifest_path}: {e}")

    try:
        return parse_manifest(text, directory=Path(plugin_dir))
    except ManifestError as e:
        raise ManifestError(f"{manifest_path}: {e}")


def scan_plugin_root(root: Path) -> List[PluginManifest]:
    """
    Load every plugin directory under `root`, in name order.

    Non-directory entries are ignored. Directories that fail to load are
    logged and skipped. A missing root is created and yields no plugins.
    """
    root = Path(root)
    if not root.exists():
        root.mkdir(parents=True, exist_ok=True)
        logger.info(f"Created plugin root {root}")
        return []

    manifests = []
    for entry in sorted(root.iterdir(), key=lambda p: p.name):
        if not entry.is_dir():
            continue
        try:
            manifests.append(load_manifest(entry))
        except ManifestError as e:
            logger.error(f"Skipping plugin directory {entry.name}: {e}")

    logger.info(f"Found {len(manifests)} plugin manifests in {root}")
    return manifests


def render_manifest_template(name: str, version: str) -> str:
    """Starter plugin.toml used by `plugin-depot scaffold`."""
    return f'''name = "{name}"
version = "{version}"
beta = false

[[files]]
filename = "lib{name.lower()}.nro"
install_location = {{ kind = "AbsolutePath", path = "sd:/atmosphere/contents/01006A800016E000/romfs/skyline/plugins/lib{name.lower()}.nro" }}

# [[folders]]
# root_name = "assets"
# install_root_location = {{ kind = "AbsolutePath", path = "sd:/ultimate/mods/{name}" }}

[metadata]
name = "{name}"
description = ""
'''
