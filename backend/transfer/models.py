"""Pydantic models for the transfer protocol and its wire messages."""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from errors import ProtocolViolation


class SenderState(str, Enum):
    IDLE = "idle"
    ANNOUNCED = "announced"
    AWAITING_INIT_ACK = "awaiting_init_ack"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"


class ReceiverState(str, Enum):
    IDLE = "idle"
    INITIATED = "initiated"
    RECEIVING = "receiving"
    COMPLETE = "complete"
    ERROR = "error"


class TransferDirection(str, Enum):
    SENDING = "sending"
    RECEIVING = "receiving"


class TransferInfo(BaseModel):
    """Snapshot of a single file transfer, handed to event callbacks."""
    transfer_id: str | None = None
    passcode: str
    file_name: str
    file_size: int
    media_type: str
    total_chunks: int
    direction: TransferDirection
    state: str
    chunks_done: int = 0
    progress_percent: int = 0
    error_message: str | None = None


# --- Wire protocol messages ---

class MessageType(str, Enum):
    SET_PASSCODE = "SET_PASSCODE"
    PASSCODE_SET = "PASSCODE_SET"
    NEW_USER_CONNECTED = "NEW_USER_CONNECTED"
    USER_DISCONNECTED = "USER_DISCONNECTED"
    TRANSFER_FILE = "TRANSFER_FILE"
    FILE_TRANSFER_INIT = "FILE_TRANSFER_INIT"
    FILE_TRANSFER_INIT_RECEIVED = "FILE_TRANSFER_INIT_RECEIVED"
    FILE_CHUNK = "FILE_CHUNK"
    FILE_CHUNK_RECEIVED = "FILE_CHUNK_RECEIVED"
    FILE_CHUNK_ACK = "FILE_CHUNK_ACK"
    TRANSFER_RESET = "TRANSFER_RESET"
    ERROR = "ERROR"


class WireMessage(BaseModel):
    """Base for every frame: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class SetPasscode(WireMessage):
    type: Literal["SET_PASSCODE"] = "SET_PASSCODE"
    passcode: str


class PasscodeSet(WireMessage):
    type: Literal["PASSCODE_SET"] = "PASSCODE_SET"
    passcode: str
    state: str


class NewUserConnected(WireMessage):
    type: Literal["NEW_USER_CONNECTED"] = "NEW_USER_CONNECTED"
    passcode: str | None = None


class UserDisconnected(WireMessage):
    type: Literal["USER_DISCONNECTED"] = "USER_DISCONNECTED"
    passcode: str | None = None


class TransferFile(WireMessage):
    """Announcement of a file the sender is about to stream."""
    type: Literal["TRANSFER_FILE"] = "TRANSFER_FILE"
    target_passcode: str
    file_name: str
    file_size: int = Field(ge=0)
    file_type: str = ""
    total_chunks: int = Field(ge=0)
    sha256: str | None = None
    ack_window: int | None = Field(default=None, ge=1)


class FileTransferInit(WireMessage):
    """The announcement as delivered to the receiver by the relay."""
    type: Literal["FILE_TRANSFER_INIT"] = "FILE_TRANSFER_INIT"
    target_passcode: str | None = None
    file_name: str
    file_size: int = Field(ge=0)
    file_type: str = ""
    total_chunks: int = Field(ge=0)
    sha256: str | None = None
    ack_window: int | None = Field(default=None, ge=1)
    transfer_id: str | None = None


class FileTransferInitReceived(WireMessage):
    type: Literal["FILE_TRANSFER_INIT_RECEIVED"] = "FILE_TRANSFER_INIT_RECEIVED"
    transfer_id: str


class FileChunk(WireMessage):
    type: Literal["FILE_CHUNK"] = "FILE_CHUNK"
    target_passcode: str
    transfer_id: str
    chunk_number: int = Field(ge=0)
    chunk_data: str


class FileChunkReceived(WireMessage):
    type: Literal["FILE_CHUNK_RECEIVED"] = "FILE_CHUNK_RECEIVED"
    transfer_id: str
    chunk_number: int = Field(ge=0)
    chunk_data: str


class FileChunkAck(WireMessage):
    type: Literal["FILE_CHUNK_ACK"] = "FILE_CHUNK_ACK"
    transfer_id: str
    chunk_number: int = Field(ge=0)


class TransferReset(WireMessage):
    type: Literal["TRANSFER_RESET"] = "TRANSFER_RESET"
    transfer_id: str | None = None


class ErrorMessage(WireMessage):
    type: Literal["ERROR"] = "ERROR"
    message: str
    code: str | None = None
    transfer_id: str | None = None


Message = Annotated[
    Union[
        SetPasscode,
        PasscodeSet,
        NewUserConnected,
        UserDisconnected,
        TransferFile,
        FileTransferInit,
        FileTransferInitReceived,
        FileChunk,
        FileChunkReceived,
        FileChunkAck,
        TransferReset,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

_message_adapter = TypeAdapter(Message)


def parse_message(data: dict) -> WireMessage:
    """
    Validate a decoded JSON frame into its message model.

    Raises:
        ProtocolViolation: if the frame has an unknown type or bad fields.
    """
    try:
        return _message_adapter.validate_python(data)
    except ValidationError as e:
        kind = data.get("type", "untyped") if isinstance(data, dict) else "non-object"
        raise ProtocolViolation(
            f"Malformed {kind} frame: {e.error_count()} validation error(s)"
        ) from e


def decode_frame(raw: str | bytes) -> dict:
    """Parse one text frame into a JSON object."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolViolation(f"Frame is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolViolation(f"Frame is a JSON {type(data).__name__}, not an object")
    return data


# --- State machine results ---

@dataclass
class Step:
    """
    Outcome of one state-machine operation.

    The machines never touch a connection; the caller sends ``outbound`` in
    order and reports ``progress``/``error``/``delivery`` to its listeners.
    """
    state: str
    outbound: list[WireMessage] = field(default_factory=list)
    progress: int | None = None
    error: Exception | None = None
    delivery: "Delivery | None" = None


@dataclass(frozen=True)
class Delivery:
    """A validated file ready for the deliver callback."""
    transfer_id: str
    file_name: str
    media_type: str
    payload: bytes
