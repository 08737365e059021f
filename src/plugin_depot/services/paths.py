# src/plugin_depot/services/paths.py
"""
Path-segment helpers shared by the packager, the watcher and the client.

Install locations look like "sd:/ultimate/mods/foo.zip": a drive-style first
segment followed by POSIX segments. These helpers operate on path segments
rather than raw substrings.
"""
from pathlib import Path, PurePath, PurePosixPath
from typing import Optional, Union

PathLike = Union[str, PurePath]


def has_suffix(path: PathLike, suffix: str) -> bool:
    """True if the final segment of `path` ends with `suffix` (case-insensitive)."""
    name = PurePosixPath(str(path).replace("\\", "/")).name
    return bool(name) and name.lower().endswith(suffix.lower()) and len(name) > len(suffix)


def strip_suffix(path: PathLike, suffix: str) -> Optional[str]:
    """
    Remove `suffix` from the final segment of `path`.

    Returns None when the path does not carry the suffix.

        >>> strip_suffix("sd:/mods/HDR.zip", ".zip")
        'sd:/mods/HDR'
    """
    text = str(path)
    if not has_suffix(text, suffix):
        return None
    return text[: len(text) - len(suffix)]


def append_suffix(path: PathLike, suffix: str) -> str:
    """Append `suffix` to the final segment, leaving the rest untouched."""
    return f"{str(path).rstrip('/')}{suffix}"


def relative_to_root(path: PathLike, root: PathLike) -> PurePosixPath:
    """
    Path of `path` relative to `root`, as POSIX segments.

    Raises:
        ValueError: If `path` is not inside `root`.
    """
    rel = PurePath(path).relative_to(PurePath(root))
    return PurePosixPath(*rel.parts)


def safe_relative(name: str) -> PurePosixPath:
    """
    Validate an archive member name and return it as a relative POSIX path.

    Raises:
        ValueError: If the name is absolute or escapes its root.
    """
    candidate = PurePosixPath(name.replace("\\", "/"))
    if candidate.is_absolute() or not candidate.parts:
        raise ValueError(f"Unsafe archive member name: {name!r}")
    if any(part == ".." for part in candidate.parts) or candidate.parts[0].endswith(":"):
        raise ValueError(f"Unsafe archive member name: {name!r}")
    return candidate


def reroot(path: PathLike, root: PathLike) -> Path:
    """
    Map an install path onto a local directory.

    The anchor ("/", "C:\\") or a drive-style first segment ("sd:") is dropped
    and the remaining segments are joined onto `root`.

        >>> reroot("sd:/mods/a.nro", "/tmp/sd")
        PosixPath('/tmp/sd/mods/a.nro')
    """
    pure = PurePosixPath(str(path).replace("\\", "/"))
    parts = list(pure.parts)
    if pure.anchor:
        parts = parts[1:]
    elif parts and parts[0].endswith(":"):
        parts = parts[1:]
    if any(part == ".." for part in parts):
        raise ValueError(f"Install path escapes its root: {path}")
    return Path(root).joinpath(*parts)
