"""Engine websocket client.

Full-duplex speech-to-speech engine leg:

1. WebSocket connection with voice/text prompts in the query string
2. Wait for the handshake frame before any audio is accepted
3. Opus audio and text frames in both directions (see ``protocol``)
4. Bounded reconnect with backoff, before and after the handshake

State machine:
    DISCONNECTED -> CONNECTING -> AWAITING_HANDSHAKE -> READY -> CLOSING
"""

import asyncio
import ssl
from typing import Any, Callable, Optional, Union, assert_never

import structlog
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from plexbridge.ai.duplex_base import (
    ClientState,
    Connector,
    EngineEventType,
    EngineSettings,
    EngineTransport,
    ReconnectPolicy,
)
from plexbridge.ai.protocol import (
    Audio,
    Control,
    ControlAction,
    Error,
    Handshake,
    Metadata,
    Ping,
    Text,
    Unknown,
    decode_message,
    encode_audio,
    encode_control,
    encode_text,
)
from plexbridge.core.errors import EngineConnectionError, EngineError, StateError
from plexbridge.core.events import EventRegistry
from plexbridge.core.scheduler import LoopScheduler, ScheduledRetry, Scheduler, TimerHandle


class EngineLegClient:
    """Engine client with handshake gating and bounded reconnect."""

    OPEN_TIMEOUT = 10.0

    def __init__(
        self,
        settings: EngineSettings,
        policy: Optional[ReconnectPolicy] = None,
        *,
        connector: Optional[Connector] = None,
        scheduler: Optional[Scheduler] = None
    ) -> None:
        """Initialize engine client.

        Args:
            settings: Engine URL and prompts
            policy: Reconnect policy (disabled by default)
            connector: Opens the transport for a URL (websockets by default)
            scheduler: Timer source for backoff and the handshake deadline
                (event loop by default)
        """
        self._settings = settings
        self._policy = policy or ReconnectPolicy()
        self._connector: Connector = connector or self._open_websocket
        self._scheduler: Scheduler = scheduler or LoopScheduler()
        self._events: EventRegistry[EngineEventType] = EventRegistry("engine")

        self._state = ClientState.DISCONNECTED
        self._ws: Optional[EngineTransport] = None
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._handshake_deadline: Optional[TimerHandle] = None
        self._handshake_expired = False

        # Reconnect bookkeeping: one connect flow, at most one pending retry
        self._connect_future: Optional[asyncio.Future[None]] = None
        self._retry: Optional[ScheduledRetry] = None
        self._reconnect_attempts = 0
        self._should_reconnect = True
        self._flow_phase = "connect"

        # Stats
        self._audio_frames_sent = 0
        self._audio_packets_received = 0
        self._connections_opened = 0

        self._logger = structlog.get_logger(__name__).bind(engine_url=settings.url)

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def connected(self) -> bool:
        """True when the handshake has been observed on an open socket."""
        return self._state is ClientState.READY and self._ws is not None

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def pending_retry(self) -> Optional[ScheduledRetry]:
        return self._retry

    @property
    def policy(self) -> ReconnectPolicy:
        return self._policy

    def build_url(self) -> str:
        return self._settings.build_url()

    def on(self, event: EngineEventType, listener: Callable[..., Any]) -> None:
        """Register an event listener."""
        self._events.on(event, listener)

    def off(self, event: EngineEventType, listener: Callable[..., Any]) -> None:
        self._events.off(event, listener)

    async def connect(self) -> None:
        """Connect and wait for the engine handshake.

        Raises:
            EngineConnectionError: If the connection closes before the handshake
                and no retries remain
        """
        if self._state is ClientState.READY:
            return

        if self._connect_future is not None and not self._connect_future.done():
            # A connect (or background reconnect) is already in flight
            await asyncio.shield(self._connect_future)
            return

        self._should_reconnect = True
        self._reconnect_attempts = 0
        self._flow_phase = "connect"
        self._connect_future = asyncio.get_running_loop().create_future()
        self._open_socket()

        try:
            await self._connect_future
        except asyncio.CancelledError:
            self._cancel_retry()
            raise

    async def close(self) -> None:
        """Close the connection and disable reconnects.

        Resolves once the reader has observed the close. Safe to call in any
        state, including after a previous close.
        """
        self._should_reconnect = False
        self._cancel_retry()

        reader = self._reader_task
        if reader is None or reader.done():
            self._state = ClientState.DISCONNECTED
            self._fail_flow(EngineConnectionError(
                "Connection closed by client",
                attempts=self._reconnect_attempts
            ))
            return

        self._state = ClientState.CLOSING

        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                self._logger.warning("Error closing engine socket", error=str(e))
        else:
            # Still opening the socket
            reader.cancel()

        if reader is not asyncio.current_task():
            await asyncio.wait({reader})

        self._state = ClientState.DISCONNECTED
        self._logger.info(
            "Engine client closed",
            audio_frames_sent=self._audio_frames_sent,
            audio_packets_received=self._audio_packets_received
        )

    async def send_audio(self, opus_data: bytes) -> None:
        """Send one Opus packet to the engine.

        Args:
            opus_data: Opus encoded audio packet

        Raises:
            StateError: If the handshake has not been observed
        """
        await self._send(encode_audio(opus_data))

        self._audio_frames_sent += 1
        if self._audio_frames_sent % 50 == 0:
            self._logger.debug("Sent audio frames to engine", count=self._audio_frames_sent)

    async def send_text(self, text: str) -> None:
        """Send a text message to the engine.

        Raises:
            StateError: If the handshake has not been observed
        """
        await self._send(encode_text(text))

    async def send_control(self, action: Union[ControlAction, str]) -> None:
        await self._send(encode_control(action))

    def get_stats(self) -> dict:
        return {
            "state": self._state.name,
            "audio_frames_sent": self._audio_frames_sent,
            "audio_packets_received": self._audio_packets_received,
            "connections_opened": self._connections_opened,
            "reconnect_attempts": self._reconnect_attempts,
        }

    async def _send(self, frame: bytes) -> None:
        ws = self._ws
        if self._state is not ClientState.READY or ws is None:
            raise StateError("Client is not connected")
        try:
            await ws.send(frame)
        except ConnectionClosed as e:
            raise StateError("Client is not connected") from e

    async def _open_websocket(self, url: str) -> EngineTransport:
        """Default connector: websockets client, TLS verification per settings."""
        ssl_context: Optional[ssl.SSLContext] = None
        if url.startswith("wss://"):
            ssl_context = ssl.create_default_context()
            if not self._settings.verify_ssl:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

        return await ws_connect(
            url,
            ssl=ssl_context,
            open_timeout=self.OPEN_TIMEOUT,
            max_size=None
        )

    def _open_socket(self) -> None:
        self._state = ClientState.CONNECTING
        self._reader_task = asyncio.create_task(
            self._run_socket(),
            name="engine-reader"
        )

    async def _run_socket(self) -> None:
        """Open the transport and pump frames until it closes."""
        reason = "Connection closed"
        ws: Optional[EngineTransport] = None
        try:
            try:
                ws = self._ws = await self._connector(self.build_url())
            except Exception as e:
                reason = f"Connection failed: {e}"
                self._logger.warning(
                    "Engine connection attempt failed",
                    error=str(e),
                    attempt=self._reconnect_attempts
                )
                return

            self._connections_opened += 1
            self._state = ClientState.AWAITING_HANDSHAKE
            self._logger.info("Engine socket open, waiting for handshake")
            self._arm_handshake_deadline()
            self._events.emit(EngineEventType.CONNECTED)

            try:
                async for data in ws:
                    self._handle_frame(data)
            except asyncio.CancelledError:
                if not self._handshake_expired:
                    raise
                asyncio.current_task().uncancel()
                reason = f"Handshake timeout after {self._settings.handshake_timeout}s"
            except ConnectionClosed as e:
                reason = str(e)
            except Exception as e:
                reason = f"Receive error: {e}"
                self._logger.error("Engine receive error", error=str(e), exc_info=True)
                self._events.emit(EngineEventType.ERROR, e)
            else:
                close_reason = getattr(ws, "close_reason", None)
                close_code = getattr(ws, "close_code", None)
                if close_reason:
                    reason = close_reason
                elif close_code is not None:
                    reason = f"Code: {close_code}"
        finally:
            self._disarm_handshake_deadline()
            self._ws = None
            if ws is not None:
                await self._close_transport(ws)
            self._handle_close(reason)

    async def _close_transport(self, ws: EngineTransport) -> None:
        try:
            await ws.close()
        except Exception as e:
            self._logger.warning("Error closing engine socket", error=str(e))

    def _arm_handshake_deadline(self) -> None:
        self._handshake_expired = False
        timeout = self._settings.handshake_timeout
        if timeout is None:
            return
        reader = asyncio.current_task()
        self._handshake_deadline = self._scheduler.call_later(
            timeout,
            lambda: self._expire_handshake(reader)
        )

    def _disarm_handshake_deadline(self) -> None:
        if self._handshake_deadline is not None:
            self._handshake_deadline.cancel()
            self._handshake_deadline = None

    def _expire_handshake(self, reader: Optional[asyncio.Task]) -> None:
        if (
            self._state is not ClientState.AWAITING_HANDSHAKE
            or reader is None
            or reader is not self._reader_task
            or reader.done()
        ):
            return
        self._handshake_deadline = None
        self._handshake_expired = True
        self._logger.warning(
            "No engine handshake before deadline",
            timeout=self._settings.handshake_timeout,
            attempt=self._reconnect_attempts
        )
        reader.cancel()

    def _handle_frame(self, data: Union[bytes, str]) -> None:
        if isinstance(data, str):
            self._logger.warning("Ignoring text frame from engine", size=len(data))
            return

        message = decode_message(data)
        self._events.emit(EngineEventType.MESSAGE, message)

        match message:
            case Handshake():
                self._on_handshake()
            case Audio(data=payload):
                self._audio_packets_received += 1
                self._events.emit(EngineEventType.AUDIO, payload)
            case Text(text=text):
                self._events.emit(EngineEventType.TEXT, text)
            case Control(action=action):
                self._logger.debug("Engine control", action=action)
                self._events.emit(EngineEventType.CONTROL, action)
            case Metadata(data=metadata):
                self._events.emit(EngineEventType.METADATA, metadata)
            case Error(message=error_message):
                self._logger.warning("Engine reported error", message=error_message)
                self._events.emit(EngineEventType.ERROR, EngineError(error_message))
            case Ping():
                self._logger.debug("Engine ping")
            case Unknown(code=code):
                self._logger.warning("Unknown engine message type", code=code, size=len(data))
            case _:
                assert_never(message)

    def _on_handshake(self) -> None:
        if self._state is ClientState.READY:
            self._logger.debug("Duplicate handshake ignored")
            return

        self._disarm_handshake_deadline()
        self._state = ClientState.READY
        self._reconnect_attempts = 0
        self._logger.info("Engine handshake received")
        self._events.emit(EngineEventType.READY)

        flow = self._connect_future
        if flow is not None and not flow.done():
            flow.set_result(None)

    def _handle_close(self, reason: str) -> None:
        """Single entry point for every socket termination."""
        was_ready = self._state is ClientState.READY
        closing = self._state is ClientState.CLOSING or not self._should_reconnect
        self._state = ClientState.DISCONNECTED

        if closing:
            self._fail_flow(EngineConnectionError(
                f"Connection closed before handshake: {reason}",
                attempts=self._reconnect_attempts
            ))
            return

        if was_ready:
            self._logger.warning("Engine disconnected", reason=reason)
            self._events.emit(EngineEventType.DISCONNECTED, reason)

            if not self._policy.enabled:
                return
            if self._reconnect_attempts >= self._policy.max_attempts:
                self._events.emit(EngineEventType.ERROR, EngineConnectionError(
                    "Max reconnection attempts reached",
                    attempts=self._reconnect_attempts
                ))
                return
            if self._retry is not None:
                return

            self._reconnect_attempts += 1
            self._flow_phase = "reconnect"
            self._connect_future = self._background_flow()
            self._schedule_retry(self._policy.reconnect_delay(self._reconnect_attempts))
            return

        # Closed before the handshake
        flow = self._connect_future
        if flow is None or flow.done():
            return

        if self._retry is not None:
            return

        if self._policy.enabled and self._reconnect_attempts < self._policy.max_attempts:
            self._reconnect_attempts += 1
            if self._flow_phase == "reconnect":
                delay = self._policy.reconnect_delay(self._reconnect_attempts)
            else:
                delay = self._policy.connect_delay(self._reconnect_attempts)
            self._schedule_retry(delay)
        elif self._flow_phase == "reconnect":
            self._fail_flow(EngineConnectionError(
                f"Max reconnection attempts reached: {reason}",
                attempts=self._reconnect_attempts
            ))
        else:
            self._fail_flow(EngineConnectionError(
                f"Failed to connect after {self._reconnect_attempts} attempts: {reason}",
                attempts=self._reconnect_attempts
            ))

    def _schedule_retry(self, delay: float) -> None:
        retry = ScheduledRetry(attempt=self._reconnect_attempts, delay=delay, phase=self._flow_phase)
        self._logger.info(
            "Scheduling engine reconnect",
            phase=retry.phase,
            delay=delay,
            attempt=retry.attempt,
            max_attempts=self._policy.max_attempts
        )
        retry.handle = self._scheduler.call_later(delay, lambda: self._fire_retry(retry))
        self._retry = retry

    def _fire_retry(self, retry: ScheduledRetry) -> None:
        if retry.cancelled or self._retry is not retry:
            return
        self._retry = None
        if not self._should_reconnect:
            return
        self._open_socket()

    def _cancel_retry(self) -> None:
        if self._retry is not None:
            self._retry.cancel()
            self._retry = None

    def _background_flow(self) -> asyncio.Future[None]:
        """Connect flow with no awaiting caller; failure becomes an error event."""
        flow: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        flow.add_done_callback(self._on_background_flow_done)
        return flow

    def _on_background_flow_done(self, flow: asyncio.Future[None]) -> None:
        if flow.cancelled():
            return
        error = flow.exception()
        if error is not None and self._should_reconnect:
            self._logger.error("Engine reconnect failed", error=str(error))
            self._events.emit(EngineEventType.ERROR, error)

    def _fail_flow(self, error: EngineConnectionError) -> None:
        flow = self._connect_future
        if flow is not None and not flow.done():
            flow.set_exception(error)
