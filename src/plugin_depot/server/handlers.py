# src/plugin_depot/server/handlers.py
"""
Per-connection handlers for the two depot ports.

Both handlers own the socket they are given and always close it. Neither ever
raises: every failure is local to its connection and is logged.
"""

import logging
import socket
from typing import Union

from pydantic import BaseModel

from plugin_depot.catalog import Catalog
from plugin_depot.exceptions import CatalogLookupError, ProtocolError, TransportError
from plugin_depot.protocol import (
    INDEX_SIZE,
    CheckUpdateRequest,
    MetadataRequest,
    UpdateResponse,
    decode_request,
    encode_message,
    unpack_index,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUEST_BYTES = 64 * 1024

# Bounds on discarding whatever the peer still sends before close
DRAIN_TIMEOUT = 0.25
DRAIN_LIMIT = 64 * 1024


def recv_exact(conn: socket.socket, size: int) -> bytes:
    """
    Receive exactly `size` bytes.

    Raises:
        TransportError: If the peer closes early or the read fails
    """
    data = bytearray()
    try:
        while len(data) < size:
            chunk = conn.recv(size - len(data))
            if not chunk:
                raise TransportError(f"Connection closed after {len(data)} of {size} bytes")
            data.extend(chunk)
    except OSError as e:
        raise TransportError(f"Read failed: {e}")
    return bytes(data)


def read_line(conn: socket.socket, max_bytes: int = DEFAULT_MAX_REQUEST_BYTES) -> bytes:
    """
    Read up to the first newline (exclusive), EOF, or `max_bytes`.

    Raises:
        TransportError: If the read fails
    """
    buffer = bytearray()
    try:
        while len(buffer) < max_bytes:
            chunk = conn.recv(min(4096, max_bytes - len(buffer)))
            if not chunk:
                break
            buffer.extend(chunk)
            if b"\n" in chunk:
                break
    except OSError as e:
        raise TransportError(f"Read failed: {e}")
    line, _, _ = bytes(buffer).partition(b"\n")
    return line


def close_connection(conn: socket.socket):
    """
    Half-close, drain the read side, then close.

    Closing with unread bytes queued makes the kernel send RST, which can
    discard a reply the peer has not read yet. The drain is bounded by
    DRAIN_LIMIT bytes and DRAIN_TIMEOUT of silence.
    """
    try:
        conn.shutdown(socket.SHUT_WR)
        conn.settimeout(DRAIN_TIMEOUT)
        drained = 0
        while drained < DRAIN_LIMIT:
            chunk = conn.recv(4096)
            if not chunk:
                break
            drained += len(chunk)
    except OSError:
        pass
    try:
        conn.close()
    except OSError as e:
        logger.debug(f"Error closing socket: {e}")


def dispatch_request(
    catalog: Catalog, request: Union[CheckUpdateRequest, MetadataRequest]
) -> BaseModel:
    """Answer one decoded control-plane request against `catalog`."""
    if isinstance(request, CheckUpdateRequest):
        response = catalog.check_update(request)
        logger.info(
            f"Update check {request.plugin_name} {request.plugin_version} "
            f"(beta={bool(request.beta)}): {response.code}"
        )
        return response

    response = catalog.metadata_for(request)
    logger.info(
        f"Metadata {request.plugin_name} (beta={bool(request.beta)}): "
        f"{'found' if response.found else 'not found'}"
    )
    return response


def handle_control(
    conn: socket.socket,
    catalog: Catalog,
    max_request_bytes: int = DEFAULT_MAX_REQUEST_BYTES,
) -> None:
    """
    Serve one control-plane connection: one request line in, one reply line
    out, then close.
    """
    try:
        try:
            line = read_line(conn, max_request_bytes)
        except TransportError as e:
            logger.warning(f"Control connection dropped: {e}")
            return

        try:
            request = decode_request(line)
        except ProtocolError as e:
            logger.info(f"Invalid request: {e}")
            response = UpdateResponse.invalid_request()
        else:
            response = dispatch_request(catalog, request)

        try:
            conn.sendall(encode_message(response))
        except OSError as e:
            logger.warning(f"Failed to send reply: {e}")
    except Exception as e:
        logger.error(f"Control handler error: {e}", exc_info=True)
    finally:
        close_connection(conn)


def handle_download(conn: socket.socket, catalog: Catalog) -> int:
    """
    Serve one data-plane connection: read an 8-byte index, stream the blob,
    close. Unknown or stale indices close with zero bytes.

    Returns:
        Number of payload bytes sent
    """
    sent = 0
    try:
        index = unpack_index(recv_exact(conn, INDEX_SIZE))
        catalog_file = catalog.get_file(index)
        conn.sendall(catalog_file.data)
        sent = catalog_file.size
        logger.debug(f"Sent {sent} bytes for index {index}")
    except CatalogLookupError as e:
        logger.info(f"Download refused: {e}")
    except (TransportError, ProtocolError) as e:
        logger.warning(f"Failed to read index: {e}")
    except OSError as e:
        logger.warning(f"Transfer aborted: {e}")
    except Exception as e:
        logger.error(f"Download handler error: {e}", exc_info=True)
    finally:
        close_connection(conn)
    return sent
