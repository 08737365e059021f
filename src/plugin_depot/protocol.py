# src/plugin_depot/protocol.py
"""
Plugin Depot Wire Protocol: Control Plane + Data Plane.

Control Plane (port P):
    One newline-terminated JSON document per connection in each direction.
    Client -> Server: a Request (discriminated on "kind").
    Server -> Client: an UpdateResponse or a MetadataResponse, then close.

Data Plane (port P + 1):
    Client -> Server: exactly 8 bytes, big-endian unsigned download index.
    Server -> Client: the raw blob for that index, then close.
    Unknown or stale index: immediate close, zero bytes.

Download index layout (64 bits):
    [FINGERPRINT:32][SLOT:32]
    SLOT is the dense position in one catalog generation's flat table.
    FINGERPRINT identifies the generation that issued the index.
"""

import struct
from enum import StrEnum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from plugin_depot.exceptions import ProtocolError

# Data-plane request: exactly one unsigned 64-bit integer
INDEX_FORMAT = "!Q"
INDEX_SIZE = 8

SLOT_BITS = 32
SLOT_MASK = (1 << SLOT_BITS) - 1
FINGERPRINT_MASK = (1 << 32) - 1


# --- Data Plane ---


def encode_download_index(fingerprint: int, slot: int) -> int:
    """Combine a generation fingerprint and a table slot into a download index."""
    if not 0 <= slot <= SLOT_MASK:
        raise ValueError(f"Slot out of range: {slot}")
    return ((fingerprint & FINGERPRINT_MASK) << SLOT_BITS) | slot


def decode_download_index(index: int) -> tuple[int, int]:
    """
    Split a download index.

    Returns:
        Tuple of (fingerprint, slot)
    """
    return (index >> SLOT_BITS) & FINGERPRINT_MASK, index & SLOT_MASK


def pack_index(index: int) -> bytes:
    """Pack a download index into its 8-byte wire form."""
    return struct.pack(INDEX_FORMAT, index)


def unpack_index(data: bytes) -> int:
    """
    Unpack an 8-byte download index.

    Raises:
        ProtocolError: If data is not exactly 8 bytes
    """
    if len(data) != INDEX_SIZE:
        raise ProtocolError(f"Index must be {INDEX_SIZE} bytes, got {len(data)}")
    return struct.unpack(INDEX_FORMAT, data)[0]


# --- Shared Models ---


class LocationKind(StrEnum):
    """Install location variants. New variants are added here."""

    ABSOLUTE_PATH = "AbsolutePath"


class InstallLocation(BaseModel):
    """
    Where a downloaded file is installed on the client.

    Canonical form: {"kind": "AbsolutePath", "path": "sd:/..."}
    The externally tagged form {"AbsolutePath": "sd:/..."} is accepted on input.
    """

    kind: LocationKind
    path: str

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _accept_tagged_form(cls, data: Any) -> Any:
        if isinstance(data, dict) and "kind" not in data and len(data) == 1:
            (tag, payload), = data.items()
            return {"kind": tag, "path": payload}
        return data

    @classmethod
    def absolute(cls, path: str) -> "InstallLocation":
        return cls(kind=LocationKind.ABSOLUTE_PATH, path=path)


class ResponseCode(StrEnum):
    NO_UPDATE = "NoUpdate"
    UPDATE = "Update"
    INVALID_REQUEST = "InvalidRequest"
    PLUGIN_NOT_FOUND = "PluginNotFound"


# --- Requests (Client -> Server) ---


class CheckUpdateRequest(BaseModel):
    """'I am running plugin X at version V. Is there something newer?'"""

    kind: Literal["Update"] = "Update"
    plugin_name: str
    plugin_version: str
    beta: Optional[bool] = None
    options: Optional[dict[str, Any]] = None


class MetadataRequest(BaseModel):
    """'Describe the current release of plugin X.'"""

    kind: Literal["Metadata"] = "Metadata"
    plugin_name: str
    beta: Optional[bool] = None
    options: Optional[dict[str, Any]] = None


Request = Annotated[
    Union[CheckUpdateRequest, MetadataRequest],
    Field(discriminator="kind"),
]

_REQUEST_ADAPTER: TypeAdapter = TypeAdapter(Request)


# --- Responses (Server -> Client) ---


class UpdateFile(BaseModel):
    """One file the client must download: how big, which index, where it goes."""

    size: int
    download_index: int
    install_location: InstallLocation


class UpdateResponse(BaseModel):
    code: ResponseCode
    update_plugin: bool = False
    plugin_name: str = ""
    new_plugin_version: Optional[str] = None
    required_runtime_version: Optional[str] = None
    required_files: list[UpdateFile] = Field(default_factory=list)

    @classmethod
    def no_update(cls) -> "UpdateResponse":
        return cls(code=ResponseCode.NO_UPDATE)

    @classmethod
    def invalid_request(cls) -> "UpdateResponse":
        return cls(code=ResponseCode.INVALID_REQUEST)

    @classmethod
    def plugin_not_found(cls) -> "UpdateResponse":
        return cls(code=ResponseCode.PLUGIN_NOT_FOUND)


class MetadataResponse(BaseModel):
    """
    Metadata summary for one plugin.

    Images occupy download indices images_index .. images_index + image_count - 1.
    found=False is the explicit not-found reply.
    """

    found: bool = True
    name: Optional[str] = None
    description: Optional[str] = None
    images_index: int = 0
    image_count: int = 0
    changelog_index: Optional[int] = None

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def not_found(cls) -> "MetadataResponse":
        return cls(found=False)


# --- Encoding / Decoding ---


def encode_message(message: BaseModel) -> bytes:
    """Serialize a control-plane message as one JSON line."""
    return message.model_dump_json().encode("utf-8") + b"\n"


def decode_request(data: Union[bytes, str]) -> Union[CheckUpdateRequest, MetadataRequest]:
    """
    Decode one control-plane request line.

    Raises:
        ProtocolError: If the line is not a valid request
    """
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Request is not UTF-8: {e}")
    data = data.strip()
    if not data:
        raise ProtocolError("Empty request")
    try:
        return _REQUEST_ADAPTER.validate_json(data)
    except ValidationError as e:
        raise ProtocolError(f"Failed to decode request: {e}")


def _decode_reply(model: type[BaseModel], data: Union[bytes, str]) -> Any:
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    try:
        return model.model_validate_json(data.strip())
    except ValidationError as e:
        raise ProtocolError(f"Failed to decode {model.__name__}: {e}")


def decode_update_response(data: Union[bytes, str]) -> UpdateResponse:
    return _decode_reply(UpdateResponse, data)


def decode_metadata_response(data: Union[bytes, str]) -> MetadataResponse:
    return _decode_reply(MetadataResponse, data)
