"""Bridge session: one engine leg for one call.

Uplink: float PCM at ``input_rate`` -> resample to 24kHz -> 80ms frames ->
Opus -> engine. Downlink: engine Opus -> PCM 24kHz -> resample to
``output_rate`` -> 20ms multiples -> ``audio`` event.
"""

import asyncio
from enum import Enum, auto
from typing import Any, Callable, Optional

import numpy as np
import structlog

from plexbridge.ai.duplex_base import Connector, EngineEventType, EngineSettings, ReconnectPolicy
from plexbridge.ai.engine_client import EngineLegClient
from plexbridge.core.audio_frame import AudioFrame
from plexbridge.core.constants import AudioConstants
from plexbridge.core.errors import EngineConnectionError, SessionClosedError, StateError
from plexbridge.core.events import EventRegistry
from plexbridge.core.resampler import StreamResampler, create_resampler, resample
from plexbridge.core.ring_buffer import FrameBuffer, create_engine_buffer
from plexbridge.core.scheduler import Scheduler
from plexbridge.utils.opus import AudioCodec

CodecFactory = Callable[[], AudioCodec]


class SessionState(Enum):
    IDLE = auto()
    CONNECTING = auto()
    READY = auto()
    ACTIVE = auto()
    ENDING = auto()
    CLOSED = auto()


class SessionEventType(Enum):
    """Events emitted by a bridge session."""

    READY = auto()
    AUDIO = auto()          # AudioFrame at output_rate
    TEXT = auto()
    ERROR = auto()
    DISCONNECTED = auto()   # engine leg lost, reconnect may follow
    ENDED = auto()


def default_reconnect_policy() -> ReconnectPolicy:
    """Generous budget: the engine may take minutes to load its model."""
    return ReconnectPolicy(enabled=True, max_attempts=30, base_delay=2.0)


def _opus_codec() -> AudioCodec:
    from plexbridge.utils.opus import OpusCodec

    return OpusCodec(AudioConstants.ENGINE_SAMPLE_RATE)


class BridgeSession:
    """Owns the engine leg, codec and per-direction buffers for one call."""

    def __init__(
        self,
        settings: EngineSettings,
        *,
        policy: Optional[ReconnectPolicy] = None,
        codec_factory: Optional[CodecFactory] = None,
        connector: Optional[Connector] = None,
        scheduler: Optional[Scheduler] = None,
        resampler_quality: str = "linear"
    ) -> None:
        """Initialize bridge session.

        Args:
            settings: Engine endpoint and prompts
            policy: Engine reconnect policy (30 attempts, 2s base by default)
            codec_factory: Builds the perceptual codec (Opus by default)
            connector: Engine transport factory, for tests
            scheduler: Reconnect timer source, for tests
            resampler_quality: Downlink resampler ("linear" or a soxr recipe)
        """
        self._settings = settings
        self._policy = policy or default_reconnect_policy()
        self._codec_factory: CodecFactory = codec_factory or _opus_codec
        self._connector = connector
        self._scheduler = scheduler
        self._resampler_quality = resampler_quality

        self._events: EventRegistry[SessionEventType] = EventRegistry("session")
        self._state = SessionState.IDLE
        self._closed = asyncio.Event()
        self._end_task: Optional[asyncio.Task[None]] = None

        self._input_rate = AudioConstants.TELEPHONY_SAMPLE_RATE
        self._output_rate = AudioConstants.TELEPHONY_SAMPLE_RATE
        self._client: Optional[EngineLegClient] = None
        self._codec: Optional[AudioCodec] = None
        self._uplink_buffer: Optional[FrameBuffer] = None
        self._downlink_buffer: Optional[FrameBuffer] = None
        self._downlink_resampler: Optional[StreamResampler] = None

        # Statistics
        self._frames_sent = 0
        self._frames_dropped = 0
        self._encode_errors = 0
        self._packets_received = 0
        self._decode_errors = 0
        self._audio_frames_emitted = 0

        self._logger = structlog.get_logger(__name__)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def active(self) -> bool:
        return self._state is SessionState.ACTIVE

    @property
    def client(self) -> Optional[EngineLegClient]:
        return self._client

    def on(self, event: SessionEventType, listener: Callable[..., Any]) -> None:
        self._events.on(event, listener)

    def off(self, event: SessionEventType, listener: Callable[..., Any]) -> None:
        self._events.off(event, listener)

    def bind_log_context(self, **context: Any) -> None:
        """Attach call identifiers to every subsequent log line."""
        self._logger = self._logger.bind(**context)

    async def start_session(
        self,
        input_rate: int = AudioConstants.TELEPHONY_SAMPLE_RATE,
        output_rate: int = AudioConstants.TELEPHONY_SAMPLE_RATE
    ) -> None:
        """Build the pipeline and connect the engine leg.

        Args:
            input_rate: Sample rate of audio passed to ``send_audio``
            output_rate: Sample rate of emitted ``audio`` frames

        Raises:
            StateError: If the session is already running
            SessionClosedError: If the session has ended
            EngineConnectionError: If the engine could not be reached
        """
        if self._state is SessionState.CLOSED:
            raise SessionClosedError("Session is closed")
        if self._state is not SessionState.IDLE:
            raise StateError("Session already active")
        if input_rate <= 0 or output_rate <= 0:
            raise ValueError(f"Invalid sample rates: {input_rate} -> {output_rate}")

        self._state = SessionState.CONNECTING
        self._input_rate = input_rate
        self._output_rate = output_rate

        try:
            self._uplink_buffer = create_engine_buffer()
            chunk_size = output_rate * AudioConstants.TELEPHONY_CHUNK_MS // 1000
            self._downlink_buffer = FrameBuffer(chunk_size, AudioConstants.DOWNLINK_MAX_FRAMES)
            self._downlink_resampler = create_resampler(
                AudioConstants.ENGINE_SAMPLE_RATE,
                output_rate,
                self._resampler_quality
            )
            self._codec = self._codec_factory()

            self._client = EngineLegClient(
                self._settings,
                self._policy,
                connector=self._connector,
                scheduler=self._scheduler
            )
            self._wire_client(self._client)

            self._logger.info(
                "Starting bridge session",
                engine_url=self._settings.url,
                input_rate=input_rate,
                output_rate=output_rate
            )
            await self._client.connect()

        except (Exception, asyncio.CancelledError) as e:
            self._logger.error("Bridge session failed to start", error=str(e))
            await self._release()
            if self._state is SessionState.CONNECTING or self._state is SessionState.READY:
                self._state = SessionState.IDLE
            raise

        if self._state is not SessionState.CONNECTING and self._state is not SessionState.READY:
            # Ended while connecting
            raise SessionClosedError("Session ended during start")

        self._state = SessionState.ACTIVE
        self._logger.info("Bridge session active")
        self._events.emit(SessionEventType.READY)

    async def send_audio(self, samples: np.ndarray) -> None:
        """Feed caller audio toward the engine.

        Args:
            samples: Float32 samples at ``input_rate``

        Raises:
            StateError: If the session is not active
            SessionClosedError: If the session has ended
        """
        if self._state is SessionState.CLOSED:
            raise SessionClosedError("Session is closed")
        if self._state is not SessionState.ACTIVE:
            raise StateError("Session not active")

        data = np.asarray(samples, dtype=np.float32)
        if self._input_rate != AudioConstants.ENGINE_SAMPLE_RATE:
            data = resample(data, self._input_rate, AudioConstants.ENGINE_SAMPLE_RATE)

        self._uplink_buffer.push(data)

        for frame in self._uplink_buffer.read_all_frames():
            if self._state is not SessionState.ACTIVE:
                break

            try:
                packet = self._codec.encode(frame)
            except Exception as e:
                self._encode_errors += 1
                self._logger.error("Failed to encode engine frame", error=str(e))
                continue

            try:
                await self._client.send_audio(packet)
            except StateError:
                # Engine leg is reconnecting
                self._frames_dropped += 1
                if self._frames_dropped % AudioConstants.LOG_INTERVAL_FRAMES == 1:
                    self._logger.warning(
                        "Dropping uplink frames while engine is unavailable",
                        dropped=self._frames_dropped
                    )
                continue

            self._frames_sent += 1

    async def send_text(self, text: str) -> None:
        """Send a text message to the engine.

        Raises:
            StateError: If the session or the engine leg is not ready
        """
        if self._state is not SessionState.ACTIVE:
            raise StateError("Session not active")
        await self._client.send_text(text)

    async def end_session(self) -> None:
        """End the session and release its resources. Idempotent."""
        if self._state is SessionState.CLOSED:
            return
        if self._state is SessionState.ENDING:
            await self._closed.wait()
            return

        self._state = SessionState.ENDING
        self._logger.info("Ending bridge session")

        try:
            await self._release()
        finally:
            self._state = SessionState.CLOSED
            self._closed.set()
            self._logger.info("Bridge session ended", **self._counters())
            self._events.emit(SessionEventType.ENDED)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def get_stats(self) -> dict:
        stats = {"state": self._state.name, **self._counters()}
        if self._uplink_buffer is not None:
            stats["uplink_dropped_samples"] = self._uplink_buffer.dropped_samples
        if self._downlink_buffer is not None:
            stats["downlink_dropped_samples"] = self._downlink_buffer.dropped_samples
        if self._client is not None:
            stats["engine"] = self._client.get_stats()
        return stats

    def _counters(self) -> dict:
        return {
            "frames_sent": self._frames_sent,
            "frames_dropped": self._frames_dropped,
            "encode_errors": self._encode_errors,
            "packets_received": self._packets_received,
            "decode_errors": self._decode_errors,
            "audio_frames_emitted": self._audio_frames_emitted,
        }

    def _wire_client(self, client: EngineLegClient) -> None:
        client.on(EngineEventType.READY, self._on_engine_ready)
        client.on(EngineEventType.AUDIO, self._on_engine_audio)
        client.on(EngineEventType.TEXT, self._on_engine_text)
        client.on(EngineEventType.ERROR, self._on_engine_error)
        client.on(EngineEventType.DISCONNECTED, self._on_engine_disconnected)

    def _on_engine_ready(self) -> None:
        if self._state is SessionState.CONNECTING:
            self._state = SessionState.READY
        elif self._state is SessionState.ACTIVE:
            # Stale partial frame from before the drop
            self._uplink_buffer.clear()
            self._logger.info("Engine leg reconnected")

    def _on_engine_audio(self, packet: bytes) -> None:
        if self._state is not SessionState.ACTIVE:
            return

        self._packets_received += 1
        try:
            pcm = self._codec.decode(packet)
        except Exception as e:
            self._decode_errors += 1
            self._logger.error("Failed to decode engine audio", error=str(e), size=len(packet))
            return

        pcm = self._downlink_resampler.process(pcm)
        self._downlink_buffer.push(pcm)
        frames = self._downlink_buffer.read_all_frames()
        if not frames:
            return

        self._audio_frames_emitted += 1
        self._events.emit(SessionEventType.AUDIO, AudioFrame(np.concatenate(frames), self._output_rate))

    def _on_engine_text(self, text: str) -> None:
        self._logger.debug("Engine text", text=text)
        self._events.emit(SessionEventType.TEXT, text)

    def _on_engine_error(self, error: Exception) -> None:
        self._events.emit(SessionEventType.ERROR, error)

        if isinstance(error, EngineConnectionError) and self._state is SessionState.ACTIVE:
            self._logger.error("Engine leg failed permanently", error=str(error))
            self._end_task = asyncio.create_task(self.end_session(), name="session-end")

    def _on_engine_disconnected(self, reason: str) -> None:
        if self._state is not SessionState.ACTIVE:
            return

        self._events.emit(SessionEventType.DISCONNECTED, reason)
        if not self._policy.enabled:
            self._end_task = asyncio.create_task(self.end_session(), name="session-end")

    async def _release(self) -> None:
        """Close the engine leg and codec; clear buffers."""
        client, self._client = self._client, None
        if client is not None:
            try:
                await client.close()
            except Exception as e:
                self._logger.warning("Error closing engine leg", error=str(e))

        codec, self._codec = self._codec, None
        if codec is not None:
            try:
                codec.close()
            except Exception as e:
                self._logger.warning("Error releasing codec", error=str(e))

        if self._uplink_buffer is not None:
            self._uplink_buffer.clear()
        if self._downlink_buffer is not None:
            self._downlink_buffer.clear()
        if self._downlink_resampler is not None:
            self._downlink_resampler.reset()
