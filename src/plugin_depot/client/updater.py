# src/plugin_depot/client/updater.py
"""
Update client.

Drives one plugin's update against a depot server:

    IDLE -> REQUEST_SENT -> NO_UPDATE | INVALID_REQUEST | PLUGIN_NOT_FOUND | OFFERED
    OFFERED -> DECLINED                      (installer said no)
    OFFERED -> DOWNLOADING -> SUCCEEDED | FAILED

Files are downloaded one at a time, in the order the server listed them. The
first download/install failure stops the pipeline; files installed before it
stay installed (there is no rollback, the plugin may be left half-updated).

Archives (*.zip) are installed as-is and then extracted, member by member,
through the same installer into a sibling directory named after the archive
without its extension.

Usage:
    client = UpdateClient("192.168.1.10", installer=FileSystemInstaller())
    outcome = client.check_update("HDR", "1.1.0", beta=False)
    if outcome.succeeded:
        ...
"""

import logging
import socket
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import PurePosixPath
from typing import List, Optional

from plugin_depot.client.installer import FileSystemInstaller, Installer
from plugin_depot.config import DEFAULT_PORT
from plugin_depot.exceptions import ArchiveError, InstallError, ProtocolError, TransportError
from plugin_depot.protocol import (
    CheckUpdateRequest,
    LocationKind,
    MetadataRequest,
    MetadataResponse,
    ResponseCode,
    UpdateFile,
    UpdateResponse,
    decode_metadata_response,
    decode_update_response,
    encode_message,
    pack_index,
)
from plugin_depot.services.archive import ARCHIVE_SUFFIX, extract_archive
from plugin_depot.services.paths import has_suffix, strip_suffix

logger = logging.getLogger(__name__)


class UpdateState(Enum):
    IDLE = auto()
    REQUEST_SENT = auto()
    NO_UPDATE = auto()
    INVALID_REQUEST = auto()
    PLUGIN_NOT_FOUND = auto()
    OFFERED = auto()
    DECLINED = auto()
    DOWNLOADING = auto()
    SUCCEEDED = auto()
    FAILED = auto()


_STATE_FOR_CODE = {
    ResponseCode.NO_UPDATE: UpdateState.NO_UPDATE,
    ResponseCode.INVALID_REQUEST: UpdateState.INVALID_REQUEST,
    ResponseCode.PLUGIN_NOT_FOUND: UpdateState.PLUGIN_NOT_FOUND,
    ResponseCode.UPDATE: UpdateState.OFFERED,
}


@dataclass
class UpdateOutcome:
    """Result of one check_update() run."""

    state: UpdateState
    response: Optional[UpdateResponse] = None
    installed: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state == UpdateState.SUCCEEDED


def install_path(update_file: UpdateFile) -> PurePosixPath:
    location = update_file.install_location
    if location.kind != LocationKind.ABSOLUTE_PATH:
        raise InstallError(f"Unsupported install location: {location.kind}")
    return PurePosixPath(location.path)


class UpdateClient:
    """
    Network peer for one depot server.

    Args:
        host: Server address
        port: Control-plane port (data plane is port + 1 unless data_port is set)
        installer: Installer capability; defaults to FileSystemInstaller()
        timeout: Socket timeout in seconds (None blocks forever)
    """

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_PORT,
        installer: Optional[Installer] = None,
        timeout: Optional[float] = 30.0,
        data_port: Optional[int] = None,
    ):
        self.host = host
        self.port = port
        self.data_port = data_port if data_port is not None else port + 1
        self.installer = installer if installer is not None else FileSystemInstaller()
        self.timeout = timeout
        self.state = UpdateState.IDLE

    # --- Transport ---

    def _connect(self, port: int) -> socket.socket:
        try:
            return socket.create_connection((self.host, port), timeout=self.timeout)
        except OSError as e:
            raise TransportError(f"Failed to connect to {self.host}:{port}: {e}")

    @staticmethod
    def _read_to_end(sock: socket.socket) -> bytes:
        chunks = []
        try:
            while True:
                chunk = sock.recv(65536)
                if not chunk:
                    break
                chunks.append(chunk)
        except OSError as e:
            raise TransportError(f"Read failed: {e}")
        return b"".join(chunks)

    def _exchange(self, message) -> bytes:
        """Send one control-plane message, return the whole reply."""
        with self._connect(self.port) as sock:
            try:
                sock.sendall(encode_message(message))
            except OSError as e:
                raise TransportError(f"Failed to send request: {e}")
            return self._read_to_end(sock)

    def download(self, download_index: int) -> bytes:
        """
        Fetch one blob from the data plane. An unknown index yields b"".

        Raises:
            TransportError: On connect/read/write failure
        """
        with self._connect(self.data_port) as sock:
            try:
                sock.sendall(pack_index(download_index))
            except OSError as e:
                raise TransportError(f"Failed to send index: {e}")
            return self._read_to_end(sock)

    # --- Control Plane ---

    def request_update(self, name: str, version: str, beta: bool = False) -> UpdateResponse:
        """
        Ask the server whether `name` at `version` has an update.

        Raises:
            TransportError: If the server cannot be reached
            ProtocolError: If the reply cannot be decoded
        """
        request = CheckUpdateRequest(plugin_name=name, plugin_version=version, beta=beta)
        self.state = UpdateState.REQUEST_SENT
        reply = self._exchange(request)
        return decode_update_response(reply)

    def fetch_metadata(self, name: str, beta: bool = False) -> MetadataResponse:
        request = MetadataRequest(plugin_name=name, beta=beta)
        reply = self._exchange(request)
        try:
            return decode_metadata_response(reply)
        except ProtocolError:
            # The server answers undecodable requests with an UpdateResponse
            response = decode_update_response(reply)
            raise ProtocolError(f"Server rejected metadata request: {response.code}")

    # --- Install Pipeline ---

    def _install(self, path: PurePosixPath, data: bytes):
        if not self.installer.install_file(path, data):
            raise InstallError(f"Installer failed for {path}")

    def _extract(self, path: PurePosixPath, data: bytes) -> List[str]:
        target_dir = PurePosixPath(strip_suffix(str(path), ARCHIVE_SUFFIX))
        logger.info(f"Extracting archive {path} to {target_dir}")
        installed = []
        for member, member_data in extract_archive(data):
            member_path = target_dir / member
            self._install(member_path, member_data)
            installed.append(str(member_path))
        logger.info(f"Archive extracted to {target_dir} ({len(installed)} files)")
        return installed

    def install(self, response: UpdateResponse, installed: Optional[List[str]] = None) -> bool:
        """
        Download and install every file of an Update response, in order.

        Returns:
            True if every file (and every archive member) installed
        """
        installed = installed if installed is not None else []
        self.state = UpdateState.DOWNLOADING
        try:
            for update_file in response.required_files:
                path = install_path(update_file)
                data = self.download(update_file.download_index)
                if len(data) != update_file.size:
                    raise TransportError(
                        f"Downloaded {len(data)} bytes for {path}, expected {update_file.size}"
                    )
                logger.info(f"Downloaded file: {path}")

                self._install(path, data)
                installed.append(str(path))

                if has_suffix(str(path), ARCHIVE_SUFFIX):
                    installed.extend(self._extract(path, data))
        except (TransportError, InstallError, ArchiveError) as e:
            logger.error(f"[updater] {e}")
            self.state = UpdateState.FAILED
            return False

        logger.info("[updater] finished updating plugin.")
        self.state = UpdateState.SUCCEEDED
        return True

    def check_update(self, name: str, version: str, beta: bool = False) -> UpdateOutcome:
        """Run the whole check -> confirm -> download -> install flow."""
        self.state = UpdateState.IDLE
        try:
            response = self.request_update(name, version, beta)
        except TransportError as e:
            logger.error(f"[{name} updater] Failed to connect to update server {self.host}: {e}")
            self.state = UpdateState.FAILED
            return UpdateOutcome(self.state, error=str(e))
        except ProtocolError as e:
            logger.error(f"[{name} updater] Failed to parse update server response: {e}")
            self.state = UpdateState.FAILED
            return UpdateOutcome(self.state, error=str(e))

        self.state = _STATE_FOR_CODE[response.code]
        if self.state == UpdateState.NO_UPDATE:
            logger.info(f"[{name} updater] {name} {version} is up to date")
            return UpdateOutcome(self.state, response)
        if self.state == UpdateState.INVALID_REQUEST:
            logger.warning(f"[{name} updater] Failed to send a valid request to the server")
            return UpdateOutcome(self.state, response)
        if self.state == UpdateState.PLUGIN_NOT_FOUND:
            logger.warning(f"Plugin '{name}' could not be found on the update server")
            return UpdateOutcome(self.state, response)

        if not self.installer.should_update(response):
            self.state = UpdateState.DECLINED
            return UpdateOutcome(self.state, response)

        installed: List[str] = []
        if not self.install(response, installed):
            logger.error(
                f"[{name} updater] Failed to install update, files may be left in a broken state."
            )
            return UpdateOutcome(self.state, response, installed, error="install failed")
        return UpdateOutcome(self.state, response, installed)


# --- Convenience API ---


def custom_check_update(
    host: str,
    name: str,
    version: str,
    allow_beta: bool,
    installer: Installer,
    port: int = DEFAULT_PORT,
    timeout: Optional[float] = 30.0,
) -> bool:
    """Install an update with a custom installer. True if an update was installed."""
    client = UpdateClient(host, port=port, installer=installer, timeout=timeout)
    return client.check_update(name, version, allow_beta).succeeded


def check_update(host: str, name: str, version: str, allow_beta: bool = False, port: int = DEFAULT_PORT) -> bool:
    """
    Install an update using the default installer.

    Args:
        host: Address of the server
        name: Name of the plugin to update
        version: Current version of the plugin
        allow_beta: Allow beta versions to be offered
    """
    return custom_check_update(host, name, version, allow_beta, FileSystemInstaller(), port=port)


def get_update_info(
    host: str, name: str, version: str, allow_beta: bool = False, port: int = DEFAULT_PORT
) -> Optional[UpdateResponse]:
    """Ask for an update without installing anything. None on any failure."""
    try:
        return UpdateClient(host, port=port).request_update(name, version, allow_beta)
    except (TransportError, ProtocolError) as e:
        logger.warning(f"[{name} updater] {e}")
        return None


def install_update(
    host: str, info: UpdateResponse, installer: Optional[Installer] = None, port: int = DEFAULT_PORT
) -> bool:
    """Install a response previously obtained with get_update_info()."""
    return UpdateClient(host, port=port, installer=installer).install(info)


def get_metadata(host: str, name: str, allow_beta: bool = False, port: int = DEFAULT_PORT) -> Optional[MetadataResponse]:
    try:
        return UpdateClient(host, port=port).fetch_metadata(name, allow_beta)
    except (TransportError, ProtocolError) as e:
        logger.warning(f"[{name} updater] {e}")
        return None
