# src/plugin_depot/catalog.py
"""
Plugin Catalog: immutable generations of everything the depot serves.

A generation is built synchronously from the plugin root:

    scan_plugin_root()  ->  load_plugins()  ->  build_catalog()

and published with CatalogStore.swap(), a single reference assignment.
Request handlers and transfer workers read `store.current` once and keep that
reference for their whole lifetime, so a swap never pulls bytes out from under
an in-flight download. The old generation is released when its last reader
finishes.

Flat table order (slots) is deterministic:
    for each plugin (directory name order):
        declared files, bundle archives, metadata images, changelog

Download indices carry the generation fingerprint in their upper 32 bits.
An index issued by a different generation never resolves.
"""

import hashlib
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

import semver

from plugin_depot.exceptions import ArchiveError, CatalogLookupError, ManifestError
from plugin_depot.manifest import PluginManifest, scan_plugin_root
from plugin_depot.protocol import (
    CheckUpdateRequest,
    InstallLocation,
    MetadataRequest,
    MetadataResponse,
    ResponseCode,
    UpdateFile,
    UpdateResponse,
    decode_download_index,
    encode_download_index,
)
from plugin_depot.services.archive import package_folder

logger = logging.getLogger(__name__)


# --- Loading ---


@dataclass(frozen=True)
class LoadedPlugin:
    """A manifest together with every byte it references."""

    manifest: PluginManifest
    files: Tuple[Tuple[InstallLocation, bytes], ...]
    images: Tuple[bytes, ...] = ()
    changelog: Optional[bytes] = None


def load_plugin(manifest: PluginManifest) -> LoadedPlugin:
    """
    Read declared files, package folder bundles, and read metadata assets.

    Raises:
        ManifestError: If a declared file cannot be read
        ArchiveError: If a folder bundle cannot be packaged
    """
    files = []
    for plugin_file in manifest.files:
        path = manifest.resolve(plugin_file.filename)
        try:
            files.append((plugin_file.install_location, path.read_bytes()))
        except OSError as e:
            raise ManifestError(f"{manifest.name}: cannot read {path}: {e}")

    for folder in manifest.folders:
        bundle = package_folder(
            manifest.directory or Path.cwd(),
            folder.root_name,
            folder.install_root_location,
        )
        files.append((bundle.install_location, bundle.data))

    images: List[bytes] = []
    changelog = None
    if manifest.metadata:
        for image in manifest.metadata.images or []:
            image_path = manifest.resolve(image)
            try:
                images.append(image_path.read_bytes())
            except OSError as e:
                logger.warning(f"{manifest.name}: missing metadata image {image_path}: {e}")
                images.append(b"")

        if manifest.metadata.changelog:
            changelog_path = manifest.resolve(manifest.metadata.changelog)
            try:
                changelog = changelog_path.read_bytes()
            except OSError as e:
                logger.warning(f"{manifest.name}: missing changelog {changelog_path}: {e}")

    return LoadedPlugin(
        manifest=manifest,
        files=tuple(files),
        images=tuple(images),
        changelog=changelog,
    )


def load_plugins(manifests: List[PluginManifest]) -> List[LoadedPlugin]:
    """Load every manifest; a plugin that fails is logged and skipped."""
    loaded = []
    for manifest in manifests:
        try:
            loaded.append(load_plugin(manifest))
        except (ManifestError, ArchiveError) as e:
            logger.error(f"Skipping plugin {manifest.name}: {e}")
    return loaded


# --- Generation ---


@dataclass(frozen=True)
class CatalogFile:
    """One immutable blob of a generation."""

    slot: int
    download_index: int
    data: bytes
    install_location: Optional[InstallLocation] = None

    @property
    def size(self) -> int:
        return len(self.data)

    def to_update_file(self) -> UpdateFile:
        return UpdateFile(
            size=self.size,
            download_index=self.download_index,
            install_location=self.install_location,
        )


@dataclass(frozen=True)
class CatalogEntry:
    name: str
    version: semver.Version
    beta: bool
    skyline_version: semver.Version
    files: Tuple[CatalogFile, ...]
    metadata: MetadataResponse
    metadata_files: Tuple[CatalogFile, ...] = ()


@dataclass(frozen=True)
class Catalog:
    entries: Tuple[CatalogEntry, ...]
    table: Tuple[CatalogFile, ...]
    fingerprint: int
    built_at: float = field(default_factory=time.time)

    @classmethod
    def empty(cls) -> "Catalog":
        return build_catalog([])

    def __len__(self) -> int:
        return len(self.table)

    def resolve(self, name: str, beta: bool = False) -> Optional[CatalogEntry]:
        """
        Highest-versioned entry named `name`.

        Beta entries are only eligible when `beta` is True.
        """
        candidates = [
            entry
            for entry in self.entries
            if entry.name == name and (beta or not entry.beta)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda entry: entry.version)

    def get_file(self, download_index: int) -> CatalogFile:
        """
        Blob addressed by a download index.

        Raises:
            CatalogLookupError: If the index is out of range or was issued by
                another generation
        """
        fingerprint, slot = decode_download_index(download_index)
        if fingerprint != self.fingerprint:
            raise CatalogLookupError(
                f"Stale download index {download_index} "
                f"(generation {fingerprint:08x}, current {self.fingerprint:08x})"
            )
        if slot >= len(self.table):
            raise CatalogLookupError(
                f"Download index {download_index} beyond table of {len(self.table)}"
            )
        return self.table[slot]

    def lookup(self, download_index: int) -> Optional[CatalogFile]:
        try:
            return self.get_file(download_index)
        except CatalogLookupError:
            return None

    def check_update(self, request: CheckUpdateRequest) -> UpdateResponse:
        entry = self.resolve(request.plugin_name, bool(request.beta))
        if entry is None:
            return UpdateResponse.plugin_not_found()

        try:
            current = semver.Version.parse(request.plugin_version)
        except ValueError:
            return UpdateResponse.invalid_request()

        if entry.version <= current:
            return UpdateResponse.no_update()

        return UpdateResponse(
            code=ResponseCode.UPDATE,
            update_plugin=True,
            plugin_name=request.plugin_name,
            new_plugin_version=str(entry.version),
            required_runtime_version=str(entry.skyline_version),
            required_files=[f.to_update_file() for f in entry.files],
        )

    def metadata_for(self, request: MetadataRequest) -> MetadataResponse:
        entry = self.resolve(request.plugin_name, bool(request.beta))
        if entry is None:
            return MetadataResponse.not_found()
        return entry.metadata


def _fingerprint(plugins: List[LoadedPlugin]) -> int:
    """32-bit content fingerprint of a generation."""
    digest = hashlib.sha256()
    for plugin in plugins:
        m = plugin.manifest
        digest.update(f"{m.name}\0{m.version}\0{m.beta}\0{m.skyline_version}\0".encode("utf-8"))
        for location, data in plugin.files:
            digest.update(location.model_dump_json().encode("utf-8"))
            digest.update(hashlib.sha256(data).digest())
        for image in plugin.images:
            digest.update(hashlib.sha256(image).digest())
        if plugin.changelog is not None:
            digest.update(hashlib.sha256(plugin.changelog).digest())
        if m.metadata:
            digest.update(m.metadata.model_dump_json().encode("utf-8"))
    return int.from_bytes(digest.digest()[:4], "big")


def build_catalog(plugins: List[LoadedPlugin]) -> Catalog:
    """Assemble loaded plugins into one immutable generation."""
    fingerprint = _fingerprint(plugins)
    table: List[CatalogFile] = []

    def add(data: bytes, location: Optional[InstallLocation] = None) -> CatalogFile:
        slot = len(table)
        catalog_file = CatalogFile(
            slot=slot,
            download_index=encode_download_index(fingerprint, slot),
            data=data,
            install_location=location,
        )
        table.append(catalog_file)
        return catalog_file

    entries = []
    for plugin in plugins:
        m = plugin.manifest
        files = tuple(add(data, location) for location, data in plugin.files)

        images_index = encode_download_index(fingerprint, len(table))
        image_files = tuple(add(image) for image in plugin.images)
        changelog_file = add(plugin.changelog) if plugin.changelog is not None else None

        metadata = MetadataResponse(
            name=m.metadata.name if m.metadata else None,
            description=m.metadata.description if m.metadata else None,
            images_index=images_index,
            image_count=len(image_files),
            changelog_index=changelog_file.download_index if changelog_file else None,
        )

        entries.append(
            CatalogEntry(
                name=m.name,
                version=m.version,
                beta=m.beta,
                skyline_version=m.skyline_version,
                files=files,
                metadata=metadata,
                metadata_files=image_files + ((changelog_file,) if changelog_file else ()),
            )
        )

    return Catalog(entries=tuple(entries), table=tuple(table), fingerprint=fingerprint)


def build_catalog_from_root(plugin_root: Path) -> Catalog:
    """Scan, load and build a generation from a plugin root directory."""
    return build_catalog(load_plugins(scan_plugin_root(plugin_root)))


class CatalogStore:
    """
    Holds the generation currently being served.

    Readers take `store.current` once per request; writers publish a whole new
    generation with swap(). Generations are immutable, so no lock is needed.
    """

    def __init__(self, catalog: Optional[Catalog] = None):
        self._current = catalog if catalog is not None else Catalog.empty()

    @property
    def current(self) -> Catalog:
        return self._current

    def swap(self, catalog: Catalog) -> Catalog:
        """Publish `catalog` and return the generation it replaced."""
        previous = self._current
        self._current = catalog
        return previous

    def rebuild(self, plugin_root: Path) -> Catalog:
        """Build a fresh generation from disk and publish it."""
        started = time.perf_counter()
        catalog = build_catalog_from_root(plugin_root)
        self.swap(catalog)
        elapsed = time.perf_counter() - started
        total_bytes = sum(f.size for f in catalog.table)
        logger.info(
            f"Catalog generation {catalog.fingerprint:08x}: "
            f"{len(catalog.entries)} plugins, {len(catalog.table)} files, "
            f"{total_bytes} bytes ({elapsed:.2f}s)"
        )
        return catalog
