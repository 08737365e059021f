# src/plugin_depot/client/installer.py
"""
Installer capability for the update client.

The client never touches the target filesystem itself. It asks an Installer
two things:
- should_update(response): proceed with this offer? (may prompt a human)
- install_file(path, data): persist these bytes at this install path

Implementations:
- FileSystemInstaller: writes files, optionally re-rooted under a local dir
- InteractiveInstaller: FileSystemInstaller that asks for confirmation first
- DryRunInstaller: headless, records what would be installed in memory
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path, PurePath
from typing import Callable, List, Optional, Tuple

from plugin_depot.protocol import UpdateResponse
from plugin_depot.services.paths import reroot

logger = logging.getLogger(__name__)


class Installer(ABC):
    """An installer for use with UpdateClient / custom_check_update."""

    @abstractmethod
    def should_update(self, response: UpdateResponse) -> bool:
        ...

    @abstractmethod
    def install_file(self, path: PurePath, data: bytes) -> bool:
        """Persist `data` at `path`. Returns False on failure."""
        ...


class FileSystemInstaller(Installer):
    """
    Writes downloaded files to disk, creating parent directories as needed.

    Args:
        root: If set, install paths are mapped under this directory
            ("sd:/mods/a.nro" -> root/mods/a.nro). Otherwise paths are used as-is.
        auto_accept: Answer for should_update()
    """

    def __init__(self, root: Optional[Path] = None, auto_accept: bool = True):
        self.root = Path(root) if root is not None else None
        self.auto_accept = auto_accept

    def should_update(self, response: UpdateResponse) -> bool:
        return self.auto_accept

    def target_path(self, path: PurePath) -> Path:
        if self.root is None:
            return Path(path)
        return reroot(path, self.root)

    def install_file(self, path: PurePath, data: bytes) -> bool:
        try:
            target = self.target_path(path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except (OSError, ValueError) as e:
            logger.error(f"[updater] Error writing file {path}: {e}")
            return False
        logger.info(f"Installed {len(data)} bytes to {target}")
        return True


class InteractiveInstaller(FileSystemInstaller):
    """FileSystemInstaller that asks before downloading anything."""

    def __init__(
        self,
        root: Optional[Path] = None,
        prompt: Callable[[str], str] = input,
    ):
        super().__init__(root=root, auto_accept=False)
        self.prompt = prompt

    def should_update(self, response: UpdateResponse) -> bool:
        question = (
            f"An update for {response.plugin_name} has been found "
            f"(version {response.new_plugin_version}).\n"
            f"Would you like to download it? [y/N] "
        )
        try:
            answer = self.prompt(question)
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")


class DryRunInstaller(Installer):
    """
    Headless installer: accepts (or declines) every offer and records the
    files it was asked to install instead of writing them.
    """

    def __init__(self, accept: bool = True, fail_on: Optional[Callable[[PurePath], bool]] = None):
        self.accept = accept
        self.fail_on = fail_on
        self.offers: List[UpdateResponse] = []
        self.installed: List[Tuple[PurePath, bytes]] = []

    def should_update(self, response: UpdateResponse) -> bool:
        self.offers.append(response)
        return self.accept

    def install_file(self, path: PurePath, data: bytes) -> bool:
        if self.fail_on and self.fail_on(path):
            logger.info(f"Dry run: refusing {path}")
            return False
        logger.info(f"Dry run: would install {len(data)} bytes to {path}")
        self.installed.append((path, data))
        return True

    @property
    def installed_paths(self) -> List[str]:
        return [str(path) for path, _ in self.installed]
