# src/plugin_depot/client/__init__.py
"""
Update client and the Installer capability it is parameterized by.
"""

from plugin_depot.client.installer import (
    Installer,
    FileSystemInstaller,
    InteractiveInstaller,
    DryRunInstaller,
)
from plugin_depot.client.updater import (
    UpdateClient,
    UpdateOutcome,
    UpdateState,
    check_update,
    custom_check_update,
    get_metadata,
    get_update_info,
    install_update,
)

__all__ = [
    # Installers
    "Installer",
    "FileSystemInstaller",
    "InteractiveInstaller",
    "DryRunInstaller",
    # Client
    "UpdateClient",
    "UpdateOutcome",
    "UpdateState",
    "check_update",
    "custom_check_update",
    "get_metadata",
    "get_update_info",
    "install_update",
]
