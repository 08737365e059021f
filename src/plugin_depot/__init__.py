# src/plugin_depot/__init__.py
"""
Plugin Depot: local-network plugin update server and client.

- catalog: immutable, hot-swappable generations of hosted plugins
- server: control-plane (update negotiation) and data-plane (byte streaming) ports
- client: check -> confirm -> download -> install, parameterized by an Installer
"""

__version__ = "0.1.0"
