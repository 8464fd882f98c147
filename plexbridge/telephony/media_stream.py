"""Telephony media stream leg.

The telephony provider connects over a websocket and exchanges JSON events:

- ``connected``: socket established
- ``start``: stream metadata (streamSid, callSid, media format)
- ``media``: base64 mu-law audio at 8kHz
- ``stop``: stream finished
- ``dtmf``: keypad digit
- ``mark``: playback marker echoed back by the provider

Outbound messages are ``media``, ``mark`` and ``clear``.
"""

import base64
import binascii
import json
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Optional, Union

import numpy as np
import structlog

from plexbridge.core.audio_frame import AudioFrame
from plexbridge.core.constants import AudioConstants
from plexbridge.core.errors import ProtocolError, StateError
from plexbridge.core.events import EventRegistry
from plexbridge.utils.codec import MuLawCodec


class TelephonyEventType(Enum):
    """Events emitted by the telephony leg handler."""

    CONNECTED = auto()
    START = auto()
    AUDIO = auto()
    STOP = auto()
    DTMF = auto()
    MARK = auto()
    ERROR = auto()


@dataclass(frozen=True)
class Connected:
    protocol: Optional[str] = None


@dataclass(frozen=True)
class Start:
    """Stream started; identifiers are valid until Stop."""

    stream_sid: str
    call_sid: Optional[str]
    account_sid: Optional[str] = None
    tracks: tuple[str, ...] = ()
    media_format: dict = field(default_factory=dict)
    custom_parameters: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Media:
    frame: AudioFrame
    timestamp_ms: int
    track: Optional[str] = None
    chunk: Optional[str] = None


@dataclass(frozen=True)
class Stop:
    call_sid: Optional[str] = None


@dataclass(frozen=True)
class Dtmf:
    digit: str


@dataclass(frozen=True)
class Mark:
    name: str


TelephonyEvent = Union[Connected, Start, Media, Stop, Dtmf, Mark]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _parse_timestamp(value: Any) -> int:
    """Media timestamp in ms, falling back to wall-clock time."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return _now_ms()


class TelephonyLegHandler:
    """Parses provider events and builds outbound messages for one stream."""

    def __init__(self) -> None:
        self._events: EventRegistry[TelephonyEventType] = EventRegistry("telephony")
        self._stream_sid: Optional[str] = None
        self._call_sid: Optional[str] = None
        self._media_format: Optional[dict] = None
        self._media_sequence = 0
        self._logger = structlog.get_logger(__name__)

    @property
    def stream_sid(self) -> Optional[str]:
        return self._stream_sid

    @property
    def call_sid(self) -> Optional[str]:
        return self._call_sid

    @property
    def media_format(self) -> Optional[dict]:
        return self._media_format

    @property
    def media_sequence(self) -> int:
        """Number of media messages created for the current stream."""
        return self._media_sequence

    @property
    def is_active(self) -> bool:
        return self._stream_sid is not None

    def on(self, event: TelephonyEventType, listener: Callable[..., Any]) -> None:
        self._events.on(event, listener)

    def off(self, event: TelephonyEventType, listener: Callable[..., Any]) -> None:
        self._events.off(event, listener)

    def handle_raw(self, text: Union[str, bytes]) -> Optional[TelephonyEvent]:
        """Decode a websocket text frame and handle it.

        Returns:
            Parsed event, or None if ignored or malformed
        """
        try:
            message = json.loads(text)
        except (ValueError, TypeError) as e:
            self._report(ProtocolError(f"Invalid JSON from telephony leg: {e}"))
            return None
        return self.handle_event(message)

    def handle_event(self, message: Any) -> Optional[TelephonyEvent]:
        """Handle one decoded provider message and notify listeners.

        Args:
            message: Decoded JSON object

        Returns:
            Parsed event, or None if the event is unknown or malformed
        """
        if not isinstance(message, dict) or not isinstance(message.get("event"), str):
            self._report(ProtocolError("Telephony message has no event field"))
            return None

        try:
            event = self._parse(message)
        except ProtocolError as e:
            self._report(e)
            return None

        match event:
            case Connected():
                self._logger.info("Telephony stream connected", protocol=event.protocol)
                self._events.emit(TelephonyEventType.CONNECTED)
            case Start():
                self._stream_sid = event.stream_sid
                self._call_sid = event.call_sid
                self._media_format = event.media_format
                self._media_sequence = 0
                self._logger.info(
                    "Telephony stream started",
                    stream_sid=event.stream_sid,
                    call_sid=event.call_sid,
                    media_format=event.media_format
                )
                self._events.emit(TelephonyEventType.START, event.stream_sid, event.call_sid)
            case Media():
                self._events.emit(TelephonyEventType.AUDIO, event.frame, event.timestamp_ms)
            case Stop():
                self._logger.info("Telephony stream stopped", stream_sid=self._stream_sid)
                self._events.emit(TelephonyEventType.STOP)
                self._stream_sid = None
                self._call_sid = None
            case Dtmf():
                self._events.emit(TelephonyEventType.DTMF, event.digit)
            case Mark():
                self._events.emit(TelephonyEventType.MARK, event.name)
            case None:
                self._logger.debug("Ignoring telephony event", telephony_event=message["event"])

        return event

    def create_audio_message(self, samples: np.ndarray) -> str:
        """Build an outbound media message.

        Args:
            samples: Float32 samples at 8kHz

        Returns:
            JSON text frame

        Raises:
            StateError: If no stream is active
        """
        stream_sid = self._require_stream()
        payload = base64.b64encode(MuLawCodec.encode_array(samples)).decode("ascii")
        self._media_sequence += 1
        return json.dumps({
            "event": "media",
            "streamSid": stream_sid,
            "media": {"payload": payload},
        })

    def create_mark_message(self, name: str) -> str:
        """Build a mark message to track playback position."""
        stream_sid = self._require_stream()
        return json.dumps({
            "event": "mark",
            "streamSid": stream_sid,
            "mark": {"name": name},
        })

    def create_clear_message(self) -> str:
        """Build a clear message that flushes the provider's playback buffer."""
        stream_sid = self._require_stream()
        return json.dumps({"event": "clear", "streamSid": stream_sid})

    def reset(self) -> None:
        self._stream_sid = None
        self._call_sid = None
        self._media_format = None
        self._media_sequence = 0

    def _require_stream(self) -> str:
        if self._stream_sid is None:
            raise StateError("Stream not started")
        return self._stream_sid

    def _report(self, error: ProtocolError) -> None:
        self._logger.warning("Malformed telephony message", error=str(error))
        self._events.emit(TelephonyEventType.ERROR, error)

    def _parse(self, message: dict) -> Optional[TelephonyEvent]:
        """Map a provider message to a typed event (None for unknown events).

        Raises:
            ProtocolError: If a known event is missing required fields
        """
        match message["event"]:
            case "connected":
                return Connected(protocol=message.get("protocol"))
            case "start":
                start = _section(message, "start")
                stream_sid = start.get("streamSid") or message.get("streamSid")
                if not isinstance(stream_sid, str) or not stream_sid:
                    raise ProtocolError("Start event has no streamSid")
                return Start(
                    stream_sid=stream_sid,
                    call_sid=start.get("callSid"),
                    account_sid=start.get("accountSid"),
                    tracks=tuple(start.get("tracks") or ()),
                    media_format=dict(start.get("mediaFormat") or {}),
                    custom_parameters=dict(start.get("customParameters") or {})
                )
            case "media":
                media = _section(message, "media")
                payload = media.get("payload")
                if not isinstance(payload, str):
                    raise ProtocolError("Media event has no payload")
                try:
                    ulaw = base64.b64decode(payload, validate=True)
                except (binascii.Error, ValueError) as e:
                    raise ProtocolError(f"Invalid base64 media payload: {e}") from e
                frame = AudioFrame(
                    MuLawCodec.decode_bytes(ulaw),
                    AudioConstants.TELEPHONY_SAMPLE_RATE
                )
                return Media(
                    frame=frame,
                    timestamp_ms=_parse_timestamp(media.get("timestamp")),
                    track=media.get("track"),
                    chunk=media.get("chunk")
                )
            case "stop":
                stop = message.get("stop")
                call_sid = stop.get("callSid") if isinstance(stop, dict) else None
                return Stop(call_sid=call_sid)
            case "dtmf":
                digit = _section(message, "dtmf").get("digit")
                if not isinstance(digit, str) or not digit:
                    raise ProtocolError("DTMF event has no digit")
                return Dtmf(digit=digit)
            case "mark":
                name = _section(message, "mark").get("name")
                if not isinstance(name, str):
                    raise ProtocolError("Mark event has no name")
                return Mark(name=name)
            case _:
                return None


def _section(message: dict, key: str) -> dict:
    section = message.get(key)
    if not isinstance(section, dict):
        raise ProtocolError(f"{message['event']} event has no '{key}' object")
    return section
