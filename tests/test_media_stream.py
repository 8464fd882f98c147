"""Tests for the telephony media stream handler."""

import base64
import json
from unittest.mock import patch

import numpy as np
import pytest

from plexbridge.core.audio_frame import AudioFrame
from plexbridge.core.errors import ProtocolError, StateError
from plexbridge.telephony.media_stream import (
    Dtmf,
    Mark,
    Media,
    Start,
    Stop,
    TelephonyEventType,
    TelephonyLegHandler,
)
from tests.mock_engine import media_message, start_message, stop_message


@pytest.fixture
def handler() -> TelephonyLegHandler:
    return TelephonyLegHandler()


def _record(handler: TelephonyLegHandler, event: TelephonyEventType) -> list:
    calls: list = []
    handler.on(event, lambda *args: calls.append(args))
    return calls


class TestInboundEvents:
    """Test parsing of provider events."""

    def test_connected(self, handler: TelephonyLegHandler) -> None:
        """Test connected notification."""
        calls = _record(handler, TelephonyEventType.CONNECTED)

        handler.handle_event({"event": "connected", "protocol": "Call", "version": "1.0.0"})

        assert calls == [()]
        assert not handler.is_active

    def test_start_captures_identifiers(self, handler: TelephonyLegHandler) -> None:
        """Test that start activates the stream."""
        calls = _record(handler, TelephonyEventType.START)

        event = handler.handle_event(start_message("MZ1", "CA1"))

        assert isinstance(event, Start)
        assert calls == [("MZ1", "CA1")]
        assert handler.is_active
        assert handler.stream_sid == "MZ1"
        assert handler.call_sid == "CA1"
        assert handler.media_format == {"encoding": "audio/x-mulaw", "sampleRate": 8000, "channels": 1}

    def test_media_decodes_audio(self, handler: TelephonyLegHandler, tone_8k: np.ndarray) -> None:
        """Test mu-law payload decoding to an 8kHz frame."""
        calls = _record(handler, TelephonyEventType.AUDIO)

        event = handler.handle_event(media_message(tone_8k, timestamp="1234"))

        assert isinstance(event, Media)
        frame, timestamp = calls[0]
        assert isinstance(frame, AudioFrame)
        assert frame.sample_rate == 8000
        assert len(frame) == 160
        assert timestamp == 1234
        assert np.max(np.abs(frame.samples - tone_8k)) < 0.02

    def test_media_frame_is_read_only(self, handler: TelephonyLegHandler) -> None:
        """Test that delivered samples cannot be modified."""
        event = handler.handle_event(media_message())

        with pytest.raises(ValueError):
            event.frame.samples[0] = 1.0

    def test_media_timestamp_falls_back_to_clock(self, handler: TelephonyLegHandler) -> None:
        """Test unparsable and missing timestamps."""
        calls = _record(handler, TelephonyEventType.AUDIO)

        with patch("plexbridge.telephony.media_stream.time.time", return_value=1700000000.5):
            handler.handle_event(media_message(timestamp="not-a-number"))
            handler.handle_event(media_message(timestamp=None))

        assert [ts for _, ts in calls] == [1700000000500, 1700000000500]

    def test_stop_clears_identifiers(self, handler: TelephonyLegHandler) -> None:
        """Test that stop notifies before clearing state."""
        seen = []
        handler.on(TelephonyEventType.STOP, lambda: seen.append(handler.stream_sid))
        handler.handle_event(start_message())

        event = handler.handle_event(stop_message())

        assert isinstance(event, Stop)
        assert seen == ["MZ123"]
        assert not handler.is_active
        assert handler.call_sid is None

    def test_dtmf_and_mark(self, handler: TelephonyLegHandler) -> None:
        """Test keypad and playback mark events."""
        digits = _record(handler, TelephonyEventType.DTMF)
        marks = _record(handler, TelephonyEventType.MARK)

        assert handler.handle_event({"event": "dtmf", "dtmf": {"track": "inbound_track", "digit": "5"}}) == Dtmf("5")
        assert handler.handle_event({"event": "mark", "mark": {"name": "greeting-done"}}) == Mark("greeting-done")

        assert digits == [("5",)]
        assert marks == [("greeting-done",)]

    def test_unknown_event_is_ignored(self, handler: TelephonyLegHandler) -> None:
        """Test that unknown events produce neither result nor error."""
        errors = _record(handler, TelephonyEventType.ERROR)

        assert handler.handle_event({"event": "heartbeat"}) is None
        assert errors == []


class TestMalformedEvents:
    """Test protocol error reporting."""

    def test_bad_base64(self, handler: TelephonyLegHandler) -> None:
        """Test invalid media payload."""
        errors = _record(handler, TelephonyEventType.ERROR)

        result = handler.handle_event({"event": "media", "media": {"payload": "***not base64***"}})

        assert result is None
        assert isinstance(errors[0][0], ProtocolError)

    def test_missing_fields(self, handler: TelephonyLegHandler) -> None:
        """Test known events without their required objects."""
        errors = _record(handler, TelephonyEventType.ERROR)

        assert handler.handle_event({"event": "start"}) is None
        assert handler.handle_event({"event": "media", "media": {}}) is None
        assert handler.handle_event({"event": "dtmf", "dtmf": {}}) is None
        assert handler.handle_event({"no_event": True}) is None

        assert len(errors) == 4
        assert not handler.is_active

    def test_invalid_json(self, handler: TelephonyLegHandler) -> None:
        """Test raw frames that are not JSON."""
        errors = _record(handler, TelephonyEventType.ERROR)

        assert handler.handle_raw("{truncated") is None
        assert isinstance(errors[0][0], ProtocolError)

    def test_raw_frame(self, handler: TelephonyLegHandler) -> None:
        """Test raw JSON text handling."""
        event = handler.handle_raw(json.dumps(start_message()))
        assert isinstance(event, Start)


class TestOutboundMessages:
    """Test messages sent to the provider."""

    def test_guard_without_stream(self, handler: TelephonyLegHandler) -> None:
        """Test that every builder requires an active stream."""
        with pytest.raises(StateError, match="Stream not started"):
            handler.create_audio_message(np.zeros(160, dtype=np.float32))
        with pytest.raises(StateError, match="Stream not started"):
            handler.create_mark_message("m1")
        with pytest.raises(StateError, match="Stream not started"):
            handler.create_clear_message()

    def test_audio_message(self, handler: TelephonyLegHandler) -> None:
        """Test media message layout and sequence counter."""
        handler.handle_event(start_message("MZ9"))

        message = json.loads(handler.create_audio_message(np.zeros(160, dtype=np.float32)))

        assert message["event"] == "media"
        assert message["streamSid"] == "MZ9"
        assert base64.b64decode(message["media"]["payload"]) == b"\xff" * 160
        assert handler.media_sequence == 1

    def test_mark_and_clear(self, handler: TelephonyLegHandler) -> None:
        """Test mark and clear messages."""
        handler.handle_event(start_message("MZ9"))

        assert json.loads(handler.create_mark_message("end")) == {
            "event": "mark", "streamSid": "MZ9", "mark": {"name": "end"}
        }
        assert json.loads(handler.create_clear_message()) == {"event": "clear", "streamSid": "MZ9"}

    def test_reset(self, handler: TelephonyLegHandler) -> None:
        """Test that reset deactivates the stream."""
        handler.handle_event(start_message())
        handler.create_audio_message(np.zeros(160, dtype=np.float32))

        handler.reset()

        assert not handler.is_active
        assert handler.media_sequence == 0
        assert handler.media_format is None
