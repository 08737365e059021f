"""
Pytest fixtures and configuration for Plugin Depot tests.
"""
from pathlib import Path
from typing import Dict, Optional

import pytest

from plugin_depot.catalog import CatalogStore
from plugin_depot.config import ServerConfig
from plugin_depot.server.depot import DepotServer


def write_plugin(
    root: Path,
    dirname: str,
    name: str = "Foo",
    version: str = "1.0.0",
    beta: Optional[bool] = None,
    files: Optional[Dict[str, bytes]] = None,
    folders: Optional[Dict[str, Dict[str, bytes]]] = None,
    images: Optional[Dict[str, bytes]] = None,
    changelog: Optional[str] = None,
    description: Optional[str] = None,
) -> Path:
    """
    Create a plugin directory with a plugin.toml and its files.

    files:   {relative filename: bytes}, installed to sd:/plugins/<name>/<filename>
    folders: {bundle folder name: {relative path: bytes}}, installed under sd:/mods/<folder>
    """
    plugin_dir = root / dirname
    plugin_dir.mkdir(parents=True, exist_ok=True)
    files = files if files is not None else {f"lib{name.lower()}.nro": b"\x7fNRO" + name.encode()}

    lines = [f'name = "{name}"', f'version = "{version}"']
    if beta is not None:
        lines.append(f"beta = {'true' if beta else 'false'}")

    for filename, data in files.items():
        (plugin_dir / filename).parent.mkdir(parents=True, exist_ok=True)
        (plugin_dir / filename).write_bytes(data)
        lines += [
            "",
            "[[files]]",
            f'filename = "{filename}"',
            f'install_location = {{ kind = "AbsolutePath", path = "sd:/plugins/{name}/{filename}" }}',
        ]
    if not files:
        lines.insert(2, "files = []")

    for folder, contents in (folders or {}).items():
        for rel, data in contents.items():
            target = plugin_dir / folder / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        lines += [
            "",
            "[[folders]]",
            f'root_name = "{folder}"',
            f'install_root_location = {{ AbsolutePath = "sd:/mods/{folder}" }}',
        ]

    if images is not None or changelog is not None or description is not None:
        lines += ["", "[metadata]", f'name = "{name} Display"']
        if description is not None:
            lines.append(f'description = "{description}"')
        if images:
            for filename, data in images.items():
                (plugin_dir / filename).write_bytes(data)
            names = ", ".join(f'"{n}"' for n in images)
            lines.append(f"images = [{names}]")
        if changelog is not None:
            (plugin_dir / "CHANGELOG.md").write_text(changelog, encoding="utf-8")
            lines.append('changelog = "CHANGELOG.md"')

    (plugin_dir / "plugin.toml").write_text("\n".join(lines) + "\n", encoding="utf-8")
    return plugin_dir


@pytest.fixture(scope="function")
def plugin_root(tmp_path):
    """Empty plugin root directory."""
    root = tmp_path / "plugins"
    root.mkdir()
    return root


@pytest.fixture(scope="function")
def make_plugin(plugin_root):
    """write_plugin() bound to the plugin_root fixture."""

    def _make(dirname: str, **kwargs) -> Path:
        return write_plugin(plugin_root, dirname, **kwargs)

    return _make


@pytest.fixture(scope="function")
def server_config(plugin_root):
    """Loopback config on ephemeral ports, no watcher."""
    return ServerConfig(
        host="127.0.0.1",
        port=0,
        plugins_dir=plugin_root,
        watch=False,
        poll_interval=0.01,
        socket_timeout=5.0,
        max_transfer_workers=4,
    )


@pytest.fixture(scope="function")
def running_server(server_config):
    """
    Factory fixture: start a DepotServer on a background thread.

    Plugins must be written to plugin_root before calling it.
    """
    servers = []

    def _start(store: Optional[CatalogStore] = None) -> DepotServer:
        server = DepotServer(server_config, store=store)
        thread = server.serve_in_thread()
        servers.append((server, thread))
        return server

    yield _start

    for server, thread in servers:
        server.stop()
        thread.join(timeout=5)
        server.close()
