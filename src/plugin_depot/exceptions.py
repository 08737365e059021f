# src/plugin_depot/exceptions.py
"""
Error hierarchy for Plugin Depot.

Every failure is local to one plugin, one connection or one update attempt.
The server loop logs these and keeps serving; the client aborts the current
pipeline.
"""


class DepotError(Exception):
    """Base class for all Plugin Depot errors."""
    pass


class ManifestError(DepotError):
    """Raised when a plugin.toml is missing, malformed, or has a bad version."""
    pass


class ArchiveError(DepotError):
    """Raised when a folder bundle cannot be packaged or an archive cannot be read."""
    pass


class ProtocolError(DepotError):
    """Raised when a control-plane message cannot be decoded."""
    pass


class CatalogLookupError(DepotError, LookupError):
    """Raised when a plugin or download index is not in the current catalog."""
    pass


class TransportError(DepotError):
    """Raised on connect/read/write failures."""
    pass


class InstallError(DepotError):
    """Raised when the installer fails to persist a downloaded file."""
    pass
