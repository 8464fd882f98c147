"""Engine websocket wire protocol.

Binary frames only:
- Byte 0: message type
- Bytes 1+: payload

Types: 0x00 handshake, 0x01 Opus audio, 0x02 UTF-8 text, 0x03 control,
0x04 JSON metadata, 0x05 error text, 0x06 ping.

Decoding never raises: corrupt frames map to ``Unknown`` or ``Metadata(None)``
so that a single bad frame cannot end a call.
"""

import json
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional, Union

import structlog

logger = structlog.get_logger(__name__)


class MessageType(IntEnum):
    """Message type identifiers (first byte of every frame)."""

    HANDSHAKE = 0x00
    AUDIO = 0x01
    TEXT = 0x02
    CONTROL = 0x03
    METADATA = 0x04
    ERROR = 0x05
    PING = 0x06


class ControlAction(IntEnum):
    """Control message action codes."""

    START = 0x00
    END_TURN = 0x01
    PAUSE = 0x02
    RESTART = 0x03


# Wire names of control actions, as exposed in decoded messages
CONTROL_ACTION_NAMES: dict[int, str] = {
    ControlAction.START: "start",
    ControlAction.END_TURN: "endTurn",
    ControlAction.PAUSE: "pause",
    ControlAction.RESTART: "restart",
}

UNKNOWN_ACTION = "unknown"


@dataclass(frozen=True)
class Handshake:
    """Server confirmed the connection is ready."""


@dataclass(frozen=True)
class Audio:
    """Opus packet."""

    data: bytes


@dataclass(frozen=True)
class Text:
    """Text token or transcript fragment."""

    text: str


@dataclass(frozen=True)
class Control:
    action: str


@dataclass(frozen=True)
class Metadata:
    """Decoded JSON metadata; None when the payload was not valid JSON."""

    data: Optional[Any]


@dataclass(frozen=True)
class Error:
    message: str


@dataclass(frozen=True)
class Ping:
    pass


@dataclass(frozen=True)
class Unknown:
    """Unrecognized type byte (-1 for an empty frame)."""

    code: int


EngineMessage = Union[Handshake, Audio, Text, Control, Metadata, Error, Ping, Unknown]


def _frame(message_type: MessageType, payload: bytes = b"") -> bytes:
    return bytes((message_type,)) + payload


def encode_audio(opus_data: bytes) -> bytes:
    """Encode an Opus packet for sending to the engine.

    Args:
        opus_data: Opus encoded audio packet

    Returns:
        Frame ready to send over the websocket
    """
    return _frame(MessageType.AUDIO, bytes(opus_data))


def encode_text(text: str) -> bytes:
    """Encode a text message (prompts, injected user text)."""
    return _frame(MessageType.TEXT, text.encode("utf-8"))


def encode_control(action: Union[ControlAction, str]) -> bytes:
    """Encode a control message.

    Args:
        action: ControlAction or its wire name ("start", "endTurn", ...)

    Raises:
        ValueError: If the action name is unknown
    """
    if isinstance(action, str):
        codes = {name: code for code, name in CONTROL_ACTION_NAMES.items()}
        if action not in codes:
            raise ValueError(f"Unknown control action: {action}")
        code = codes[action]
    else:
        code = int(action)
    return _frame(MessageType.CONTROL, bytes((code,)))


def encode_handshake() -> bytes:
    return _frame(MessageType.HANDSHAKE)


def encode_ping() -> bytes:
    return _frame(MessageType.PING)


def decode_control_action(code: Optional[int]) -> str:
    if code is None:
        return UNKNOWN_ACTION
    return CONTROL_ACTION_NAMES.get(code, UNKNOWN_ACTION)


def decode_message(data: bytes) -> EngineMessage:
    """Decode a frame received from the engine.

    Args:
        data: Raw binary frame

    Returns:
        Decoded message
    """
    if len(data) == 0:
        return Unknown(code=-1)

    code = data[0]
    payload = bytes(data[1:])

    try:
        message_type = MessageType(code)
    except ValueError:
        return Unknown(code=code)

    match message_type:
        case MessageType.HANDSHAKE:
            return Handshake()
        case MessageType.AUDIO:
            return Audio(data=payload)
        case MessageType.TEXT:
            return Text(text=payload.decode("utf-8", errors="replace"))
        case MessageType.CONTROL:
            return Control(action=decode_control_action(payload[0] if payload else None))
        case MessageType.METADATA:
            try:
                return Metadata(data=json.loads(payload.decode("utf-8")))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                logger.debug("Malformed metadata payload", error=str(e), size=len(payload))
                return Metadata(data=None)
        case MessageType.ERROR:
            return Error(message=payload.decode("utf-8", errors="replace"))
        case MessageType.PING:
            return Ping()
