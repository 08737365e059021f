# src/plugin_depot/services/__init__.py
"""
Filesystem helpers: folder bundle packaging and path-segment operations.
"""

from plugin_depot.services.archive import (
    ARCHIVE_SUFFIX,
    PackagedBundle,
    build_archive,
    extract_archive,
    package_folder,
)
from plugin_depot.services.paths import reroot, relative_to_root, strip_suffix

__all__ = [
    "ARCHIVE_SUFFIX",
    "PackagedBundle",
    "build_archive",
    "extract_archive",
    "package_folder",
    "reroot",
    "relative_to_root",
    "strip_suffix",
]
