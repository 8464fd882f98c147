"""Tests for the bridge session pipeline."""

import numpy as np
import pytest

from plexbridge.ai.duplex_base import EngineSettings, ReconnectPolicy
from plexbridge.bridge.session import BridgeSession, SessionEventType, SessionState
from plexbridge.core.audio_frame import AudioFrame
from plexbridge.core.errors import EngineConnectionError, SessionClosedError, StateError
from tests.mock_engine import FakeCodec, FakeConnector, ManualScheduler, settle


def _record(session: BridgeSession, event: SessionEventType) -> list:
    calls: list = []
    session.on(event, lambda *args: calls.append(args))
    return calls


class TestLifecycle:
    """Test session start and end."""

    @pytest.mark.asyncio
    async def test_start_emits_ready(self, session: BridgeSession) -> None:
        """Test that start waits for the engine and goes active."""
        ready = _record(session, SessionEventType.READY)

        await session.start_session()

        assert session.state is SessionState.ACTIVE
        assert session.active
        assert ready == [()]
        assert session.client.connected

    @pytest.mark.asyncio
    async def test_start_twice(self, session: BridgeSession) -> None:
        """Test that a running session refuses another start."""
        await session.start_session()

        with pytest.raises(StateError, match="Session already active"):
            await session.start_session()

    @pytest.mark.asyncio
    async def test_invalid_rates(self, session: BridgeSession) -> None:
        """Test sample rate validation."""
        with pytest.raises(ValueError):
            await session.start_session(input_rate=0)
        assert session.state is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_connect_failure_returns_to_idle(
        self,
        engine_settings: EngineSettings,
        codec: FakeCodec
    ) -> None:
        """Test that a failed start releases everything."""
        connector = FakeConnector()
        connector.fail_next()
        session = BridgeSession(
            engine_settings,
            policy=ReconnectPolicy(enabled=False),
            codec_factory=lambda: codec,
            connector=connector,
            scheduler=ManualScheduler()
        )

        with pytest.raises(EngineConnectionError):
            await session.start_session()

        assert session.state is SessionState.IDLE
        assert session.client is None
        assert codec.closed

    @pytest.mark.asyncio
    async def test_end_is_idempotent(self, session: BridgeSession, codec: FakeCodec) -> None:
        """Test that ended fires once and resources are released."""
        ended = _record(session, SessionEventType.ENDED)
        await session.start_session()
        client = session.client

        await session.end_session()
        await session.end_session()

        assert session.state is SessionState.CLOSED
        assert ended == [()]
        assert codec.closed
        assert not client.connected

    @pytest.mark.asyncio
    async def test_closed_session_refuses_work(self, session: BridgeSession) -> None:
        """Test operations after the session ended."""
        await session.start_session()
        await session.end_session()

        with pytest.raises(SessionClosedError):
            await session.send_audio(np.zeros(160, dtype=np.float32))
        with pytest.raises(SessionClosedError):
            await session.start_session()

    @pytest.mark.asyncio
    async def test_end_before_start(self, session: BridgeSession) -> None:
        """Test ending a session that never started."""
        await session.end_session()

        assert session.state is SessionState.CLOSED
        await session.wait_closed()


class TestUplink:
    """Test caller audio toward the engine."""

    @pytest.mark.asyncio
    async def test_send_before_start(self, session: BridgeSession) -> None:
        """Test that audio is refused until the session is active."""
        with pytest.raises(StateError, match="Session not active"):
            await session.send_audio(np.zeros(160, dtype=np.float32))

    @pytest.mark.asyncio
    async def test_frames_at_engine_rate(
        self,
        session: BridgeSession,
        connector: FakeConnector,
        codec: FakeCodec,
        tone_8k: np.ndarray
    ) -> None:
        """Test that four 20ms chunks make one 80ms engine frame."""
        await session.start_session()

        for _ in range(3):
            await session.send_audio(tone_8k)
        assert codec.encoded == []

        await session.send_audio(tone_8k)

        assert len(codec.encoded) == 1
        assert codec.encoded[0].size == 1920
        assert connector.latest.sent == [b"\x01opus\x07\x80"]
        assert session.get_stats()["frames_sent"] == 1

    @pytest.mark.asyncio
    async def test_encode_failure_is_isolated(
        self,
        session: BridgeSession,
        connector: FakeConnector,
        codec: FakeCodec
    ) -> None:
        """Test that a failed encode drops one frame and the session continues."""
        await session.start_session()
        codec.fail_encode = True

        await session.send_audio(np.zeros(640, dtype=np.float32))

        assert session.active
        assert session.get_stats()["encode_errors"] == 1
        assert connector.latest.sent == []

        codec.fail_encode = False
        await session.send_audio(np.zeros(640, dtype=np.float32))
        assert len(connector.latest.sent) == 1

    @pytest.mark.asyncio
    async def test_frames_dropped_while_reconnecting(
        self,
        session: BridgeSession,
        connector: FakeConnector
    ) -> None:
        """Test that audio during an engine outage is counted and dropped."""
        disconnected = _record(session, SessionEventType.DISCONNECTED)
        await session.start_session()

        connector.latest.drop("restart")
        await settle()
        await session.send_audio(np.zeros(640, dtype=np.float32))

        assert disconnected == [("restart",)]
        assert session.active
        assert session.get_stats()["frames_dropped"] == 1

    @pytest.mark.asyncio
    async def test_send_text(self, session: BridgeSession, connector: FakeConnector) -> None:
        """Test text passthrough to the engine."""
        await session.start_session()

        await session.send_text("hello")

        assert connector.latest.sent == [b"\x02hello"]


class TestDownlink:
    """Test engine audio toward the caller."""

    @pytest.mark.asyncio
    async def test_audio_in_telephony_chunks(
        self,
        session: BridgeSession,
        connector: FakeConnector
    ) -> None:
        """Test that one engine packet becomes four 20ms chunks at 8kHz."""
        frames = _record(session, SessionEventType.AUDIO)
        await session.start_session()

        connector.latest.send_engine_audio(b"packet")
        await settle()

        assert len(frames) == 1
        frame = frames[0][0]
        assert isinstance(frame, AudioFrame)
        assert frame.sample_rate == 8000
        assert len(frame) == 640
        assert len(frame) % 160 == 0
        assert np.allclose(frame.samples, 0.25)

    @pytest.mark.asyncio
    async def test_partial_chunk_is_held(
        self,
        engine_settings: EngineSettings,
        connector: FakeConnector,
        scheduler: ManualScheduler
    ) -> None:
        """Test that samples short of a chunk wait for the next packet."""
        session = BridgeSession(
            engine_settings,
            codec_factory=lambda: FakeCodec(decoded_samples=240),
            connector=connector,
            scheduler=scheduler
        )
        frames = _record(session, SessionEventType.AUDIO)
        await session.start_session()

        connector.latest.send_engine_audio(b"first")
        await settle()
        assert frames == []

        connector.latest.send_engine_audio(b"second")
        await settle()
        assert [len(f) for (f,) in frames] == [160]

        await session.end_session()

    @pytest.mark.asyncio
    async def test_decode_failure_is_isolated(
        self,
        session: BridgeSession,
        connector: FakeConnector
    ) -> None:
        """Test that a corrupt packet is counted and later packets still play."""
        frames = _record(session, SessionEventType.AUDIO)
        await session.start_session()

        connector.latest.send_engine_audio(b"corrupt")
        connector.latest.send_engine_audio(b"good")
        await settle()

        assert session.get_stats()["decode_errors"] == 1
        assert len(frames) == 1

    @pytest.mark.asyncio
    async def test_engine_text_event(self, session: BridgeSession, connector: FakeConnector) -> None:
        """Test that engine text is forwarded."""
        texts = _record(session, SessionEventType.TEXT)
        await session.start_session()

        connector.latest.send_engine_text("Hi there")
        await settle()

        assert texts == [("Hi there",)]


class TestEngineFailure:
    """Test session reaction to engine leg loss."""

    @pytest.mark.asyncio
    async def test_exhausted_reconnect_ends_session(
        self,
        session: BridgeSession,
        connector: FakeConnector,
        scheduler: ManualScheduler
    ) -> None:
        """Test that a terminal engine error ends the session."""
        errors = _record(session, SessionEventType.ERROR)
        ended = _record(session, SessionEventType.ENDED)
        await session.start_session()

        connector.fail_next(10)
        connector.latest.drop()
        await settle()
        for _ in range(3):
            scheduler.fire_next()
            await settle()

        assert isinstance(errors[0][0], EngineConnectionError)
        assert session.state is SessionState.CLOSED
        assert ended == [()]

    @pytest.mark.asyncio
    async def test_disconnect_without_reconnect_ends_session(
        self,
        engine_settings: EngineSettings,
        connector: FakeConnector,
        codec: FakeCodec
    ) -> None:
        """Test that losing the engine ends the session when reconnect is off."""
        session = BridgeSession(
            engine_settings,
            policy=ReconnectPolicy(enabled=False),
            codec_factory=lambda: codec,
            connector=connector,
            scheduler=ManualScheduler()
        )
        ended = _record(session, SessionEventType.ENDED)
        await session.start_session()

        connector.latest.drop()
        await settle()

        assert session.state is SessionState.CLOSED
        assert ended == [()]

    @pytest.mark.asyncio
    async def test_reconnect_keeps_session(
        self,
        session: BridgeSession,
        connector: FakeConnector,
        scheduler: ManualScheduler
    ) -> None:
        """Test that a recovered engine leg resumes the same session."""
        await session.start_session()

        connector.latest.drop()
        await settle()
        scheduler.fire_next()
        await settle()

        assert session.active
        assert session.client.connected

        await session.send_audio(np.zeros(640, dtype=np.float32))
        assert connector.latest.sent == [b"\x01opus\x07\x80"]
