# src/plugin_depot/services/archive.py
"""
Folder bundle packaging.

A folder bundle is a directory of assets that ships as a single zip archive
instead of file by file. The archive is built in memory, saved next to the
bundle folder (the watcher ignores *.zip so this never retriggers a rebuild),
and served as one synthetic catalog file whose install location is the
bundle's install root with ".zip" appended.

Archives are byte-deterministic: members are written in sorted depth-first
order with a fixed timestamp, so an unchanged folder always packages to the
same bytes.
"""
import io
import logging
import os
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, Tuple
from zipfile import BadZipFile, ZIP_DEFLATED, ZipFile, ZipInfo

from plugin_depot.exceptions import ArchiveError
from plugin_depot.protocol import InstallLocation
from plugin_depot.services.paths import append_suffix, relative_to_root, safe_relative

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".zip"

# Earliest timestamp the zip format can store
_FIXED_DATE_TIME = (1980, 1, 1, 0, 0, 0)


@dataclass(frozen=True)
class PackagedBundle:
    install_location: InstallLocation
    data: bytes
    archive_path: Path
    file_count: int


def walk_files(root: Path, exclude: Iterable[Path] = ()) -> Iterator[Path]:
    """Yield every file under `root`, depth-first, in sorted order, minus `exclude`."""
    skipped = {Path(p).resolve() for p in exclude}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for filename in sorted(filenames):
            file_path = Path(dirpath) / filename
            if skipped and file_path.resolve() in skipped:
                continue
            yield file_path


def build_archive(root: Path, exclude: Iterable[Path] = ()) -> Tuple[bytes, int]:
    """
    Zip every file under `root` using root-relative member names.

    Files listed in `exclude` are left out of the archive.

    Returns:
        Tuple of (archive bytes, number of files)

    Raises:
        ArchiveError: If the folder is missing or a file cannot be read
    """
    root = Path(root)
    if not root.is_dir():
        raise ArchiveError(f"Bundle folder not found: {root}")

    buffer = io.BytesIO()
    count = 0
    try:
        with ZipFile(buffer, "w", compression=ZIP_DEFLATED) as zf:
            for file_path in walk_files(root, exclude):
                member = relative_to_root(file_path, root).as_posix()
                info = ZipInfo(member, date_time=_FIXED_DATE_TIME)
                info.compress_type = ZIP_DEFLATED
                info.external_attr = 0o644 << 16
                zf.writestr(info, file_path.read_bytes())
                count += 1
    except OSError as e:
        raise ArchiveError(f"Failed to package {root}: {e}")

    return buffer.getvalue(), count


def bundle_location(install_root: InstallLocation) -> InstallLocation:
    """Install location of a bundle archive: the install root plus ".zip"."""
    return install_root.model_copy(
        update={"path": append_suffix(install_root.path, ARCHIVE_SUFFIX)}
    )


def package_folder(plugin_dir: Path, root_name: Path, install_root: InstallLocation) -> PackagedBundle:
    """
    Package one folder bundle of a plugin.

    Raises:
        ArchiveError: If the bundle cannot be read or the archive cannot be written
    """
    plugin_dir = Path(plugin_dir)
    bundle_root = Path(root_name) if Path(root_name).is_absolute() else plugin_dir / root_name

    archive_path = plugin_dir / f"{bundle_root.resolve().name}{ARCHIVE_SUFFIX}"
    # The archive lands inside the bundle when root_name is "." or an ancestor
    data, count = build_archive(bundle_root, exclude=(archive_path,))

    try:
        # Skip the write when nothing changed so the file mtime stays put
        if not archive_path.is_file() or archive_path.read_bytes() != data:
            archive_path.write_bytes(data)
    except OSError as e:
        raise ArchiveError(f"Failed to write archive {archive_path}: {e}")

    logger.info(f"Packaged {count} files from {bundle_root.resolve().name} into {archive_path.name}")

    return PackagedBundle(
        install_location=bundle_location(install_root),
        data=data,
        archive_path=archive_path,
        file_count=count,
    )


def extract_archive(data: bytes) -> List[Tuple[str, bytes]]:
    """
    Read every file member of an archive.

    Returns:
        List of (relative POSIX path, bytes), in archive order

    Raises:
        ArchiveError: If the archive is corrupt or a member escapes its root
    """
    members = []
    try:
        with ZipFile(io.BytesIO(data)) as zf:
            for info in zf.infolist():
                if info.is_dir():
                    continue
                try:
                    name = safe_relative(info.filename).as_posix()
                except ValueError as e:
                    raise ArchiveError(str(e))
                members.append((name, zf.read(info)))
    except (BadZipFile, zlib.error, EOFError) as e:
        raise ArchiveError(f"Corrupt archive: {e}")

    return members
