# src/plugin_depot/server/__init__.py
"""
Update server: the poll loop plus the control-plane and data-plane handlers.
"""

from plugin_depot.server.depot import DepotServer, run_server
from plugin_depot.server.handlers import handle_control, handle_download

__all__ = [
    "DepotServer",
    "run_server",
    "handle_control",
    "handle_download",
]
