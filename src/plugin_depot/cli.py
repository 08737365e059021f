# src/plugin_depot/cli.py
"""
plugin-depot command line.

Usage:
    plugin-depot serve --plugins-dir plugins
    plugin-depot check 192.168.1.10 HDR 1.1.0 --install-root ./sd --yes
    plugin-depot info 192.168.1.10 HDR 1.1.0 --beta
    plugin-depot metadata 192.168.1.10 HDR
    plugin-depot scaffold plugins/HDR --name HDR --version 0.1.0
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from plugin_depot.client.installer import DryRunInstaller, FileSystemInstaller, InteractiveInstaller
from plugin_depot.client.updater import UpdateClient, UpdateState
from plugin_depot.config import AppSettings, settings
from plugin_depot.exceptions import ProtocolError, TransportError
from plugin_depot.logging_setup import setup_logging
from plugin_depot.manifest import MANIFEST_NAME, render_manifest_template
from plugin_depot.server.depot import run_server

logger = logging.getLogger(__name__)


def build_parser(app_settings: AppSettings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="plugin-depot",
        description="Serve and fetch plugin updates over a local network",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the update server")
    serve.add_argument("--plugins-dir", type=Path, default=app_settings.server.plugins_dir)
    serve.add_argument("--host", default=app_settings.server.host)
    serve.add_argument(
        "--port",
        type=int,
        default=app_settings.server.port,
        help=f"Control-plane port; data plane is PORT + 1 (default: {app_settings.server.port})",
    )
    serve.add_argument("--no-watch", action="store_true", help="Disable hot reload")

    def add_client_args(p: argparse.ArgumentParser, with_version: bool = True):
        p.add_argument("host", help="Update server address")
        p.add_argument("name", help="Plugin name")
        if with_version:
            p.add_argument("version", help="Currently installed version")
        p.add_argument("--beta", action="store_true", help="Allow beta versions")
        p.add_argument("--port", type=int, default=app_settings.client.port)
        p.add_argument("--data-port", type=int, default=None,
                       help="Data-plane port (default: PORT + 1)")
        p.add_argument("--timeout", type=float, default=app_settings.client.timeout)

    check = sub.add_parser("check", help="Check for an update and install it")
    add_client_args(check)
    check.add_argument("--install-root", type=Path, default=None,
                       help="Map install paths under this directory")
    mode = check.add_mutually_exclusive_group()
    mode.add_argument("--yes", "-y", action="store_true", help="Install without asking")
    mode.add_argument("--dry-run", action="store_true", help="Download but do not write files")

    info = sub.add_parser("info", help="Print the server's update response")
    add_client_args(info)

    metadata = sub.add_parser("metadata", help="Print a plugin's metadata")
    add_client_args(metadata, with_version=False)

    scaffold = sub.add_parser("scaffold", help=f"Write a starter {MANIFEST_NAME}")
    scaffold.add_argument("directory", type=Path)
    scaffold.add_argument("--name", required=True)
    scaffold.add_argument("--version", default="0.1.0")
    scaffold.add_argument("--force", action="store_true", help="Overwrite an existing manifest")

    return parser


def cmd_serve(args, app_settings: AppSettings) -> int:
    config = app_settings.server.model_copy(
        update={
            "plugins_dir": args.plugins_dir,
            "host": args.host,
            "port": args.port,
            "watch": app_settings.server.watch and not args.no_watch,
        }
    )
    run_server(config)
    return 0


def cmd_check(args) -> int:
    if args.dry_run:
        installer = DryRunInstaller()
    elif args.yes:
        installer = FileSystemInstaller(root=args.install_root)
    else:
        installer = InteractiveInstaller(root=args.install_root)

    client = UpdateClient(
        args.host,
        port=args.port,
        data_port=args.data_port,
        installer=installer,
        timeout=args.timeout,
    )
    outcome = client.check_update(args.name, args.version, beta=args.beta)

    print(f"{args.name}: {outcome.state.name}")
    if isinstance(installer, DryRunInstaller):
        for path, data in installer.installed:
            print(f"  would install {len(data)} bytes to {path}")
    else:
        for path in outcome.installed:
            print(f"  installed {path}")

    if outcome.state in (UpdateState.SUCCEEDED, UpdateState.NO_UPDATE, UpdateState.DECLINED):
        return 0
    return 1


def cmd_info(args) -> int:
    client = UpdateClient(
        args.host, port=args.port, data_port=args.data_port, timeout=args.timeout
    )
    try:
        response = client.request_update(args.name, args.version, args.beta)
    except (TransportError, ProtocolError) as e:
        logger.error(f"Request failed: {e}")
        return 1
    print(response.model_dump_json(indent=2))
    return 0


def cmd_metadata(args) -> int:
    client = UpdateClient(
        args.host, port=args.port, data_port=args.data_port, timeout=args.timeout
    )
    try:
        response = client.fetch_metadata(args.name, args.beta)
    except (TransportError, ProtocolError) as e:
        logger.error(f"Request failed: {e}")
        return 1
    print(response.model_dump_json(indent=2))
    return 0 if response.found else 1


def cmd_scaffold(args) -> int:
    manifest_path = args.directory / MANIFEST_NAME
    if manifest_path.exists() and not args.force:
        logger.error(f"{manifest_path} already exists (use --force to overwrite)")
        return 1
    args.directory.mkdir(parents=True, exist_ok=True)
    manifest_path.write_text(render_manifest_template(args.name, args.version), encoding="utf-8")
    print(f"Wrote {manifest_path}")
    return 0


def main(argv: Optional[List[str]] = None, app_settings: Optional[AppSettings] = None) -> int:
    """CLI entry point for plugin-depot."""
    app_settings = app_settings if app_settings is not None else settings
    args = build_parser(app_settings).parse_args(argv)
    setup_logging(app_settings, level="DEBUG" if args.verbose else None)

    try:
        if args.command == "serve":
            return cmd_serve(args, app_settings)
        if args.command == "check":
            return cmd_check(args)
        if args.command == "info":
            return cmd_info(args)
        if args.command == "metadata":
            return cmd_metadata(args)
        return cmd_scaffold(args)
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
