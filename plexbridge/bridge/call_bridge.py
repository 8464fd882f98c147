"""Call bridge between one telephony media stream and one bridge session.

Bridges the provider websocket (JSON, mu-law 8kHz) with a BridgeSession
(engine leg) using TaskGroup.
"""

import asyncio
from typing import AsyncIterator, Callable, Optional, Protocol, Union

import structlog
from fastapi import WebSocketDisconnect

from plexbridge.bridge.session import BridgeSession, SessionEventType
from plexbridge.core.audio_frame import AudioFrame
from plexbridge.core.constants import AudioConstants
from plexbridge.core.errors import StateError
from plexbridge.core.ring_buffer import StreamBuffer
from plexbridge.telephony.media_stream import Dtmf, Mark, Media, Start, Stop, TelephonyLegHandler

SessionFactory = Callable[[], BridgeSession]


class TelephonySocket(Protocol):
    """Websocket connection from the telephony provider."""

    async def send(self, message: str) -> None:
        ...

    async def close(self) -> None:
        ...

    def __aiter__(self) -> AsyncIterator[Union[str, bytes]]:
        ...


class CallBridge:
    """Bridge one telephony websocket and one BridgeSession using TaskGroup.

    Data flow:
    - Uplink: telephony JSON -> mu-law decode -> BridgeSession -> engine
    - Downlink: engine -> BridgeSession -> mu-law encode -> telephony JSON
    """

    DOWNLINK_CAPACITY = 500

    def __init__(
        self,
        websocket: TelephonySocket,
        session_factory: SessionFactory,
        downlink_capacity: int = DOWNLINK_CAPACITY
    ) -> None:
        """Initialize call bridge.

        Args:
            websocket: Provider websocket for this call
            session_factory: Creates the BridgeSession when the stream starts
            downlink_capacity: Outbound media messages buffered before dropping
        """
        self._ws = websocket
        self._session_factory = session_factory
        self._handler = TelephonyLegHandler()
        self._downlink: StreamBuffer[str] = StreamBuffer(downlink_capacity)

        self._session: Optional[BridgeSession] = None
        self._start_task: Optional[asyncio.Task[None]] = None
        self._close_task: Optional[asyncio.Task[None]] = None
        self._closing = False

        # Statistics
        self._uplink_chunks = 0
        self._uplink_dropped = 0
        self._downlink_messages = 0
        self._downlink_dropped = 0

        self._logger = structlog.get_logger(__name__)

    @property
    def handler(self) -> TelephonyLegHandler:
        return self._handler

    @property
    def session(self) -> Optional[BridgeSession]:
        return self._session

    def get_stats(self) -> dict:
        return {
            "uplink_chunks": self._uplink_chunks,
            "uplink_dropped": self._uplink_dropped,
            "downlink_messages": self._downlink_messages,
            "downlink_dropped": self._downlink_dropped,
        }

    async def run(self) -> None:
        """Run both directions until the call ends."""
        self._logger.info("CallBridge starting")

        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._uplink_task(), name="callbridge-uplink")
                tg.create_task(self._downlink_task(), name="callbridge-downlink")

        except* Exception as eg:
            self._logger.error("CallBridge TaskGroup exceptions", count=len(eg.exceptions))
            for exc in eg.exceptions:
                self._logger.error(f"Exception: {type(exc).__name__}: {exc}", exc_info=exc)
        finally:
            await self._shutdown()
            self._logger.info("CallBridge stopped", **self.get_stats())

    async def _uplink_task(self) -> None:
        """Uplink: telephony events -> BridgeSession.

        Ends on Stop or when the provider closes the socket.
        """
        try:
            async for raw in self._ws:
                event = self._handler.handle_raw(raw)

                match event:
                    case Start():
                        self._on_start(event)
                    case Media():
                        await self._forward_audio(event)
                    case Stop():
                        break
                    case Dtmf(digit=digit):
                        self._logger.info("DTMF received", digit=digit)
                    case Mark(name=name):
                        self._logger.debug("Playback mark reached", mark=name)

        except WebSocketDisconnect as e:
            self._logger.info("Telephony socket closed", code=e.code, reason=e.reason)
        finally:
            self._closing = True
            await self._end_session()
            await self._downlink.close()

    async def _downlink_task(self) -> None:
        """Downlink: queued media messages -> telephony socket."""
        while True:
            message = await self._downlink.receive()
            if message is None:
                break

            try:
                await self._ws.send(message)
            except WebSocketDisconnect:
                self._logger.info("Telephony socket closed during send")
                break

            self._downlink_messages += 1
            if self._downlink_messages % AudioConstants.LOG_INTERVAL_STATS == 0:
                self._logger.debug("CallBridge downlink stats", messages=self._downlink_messages)

    def _on_start(self, event: Start) -> None:
        if self._session is not None:
            self._logger.warning("Ignoring second stream start", stream_sid=event.stream_sid)
            return

        self._logger = self._logger.bind(stream_sid=event.stream_sid, call_sid=event.call_sid)

        session = self._session_factory()
        session.bind_log_context(stream_sid=event.stream_sid, call_sid=event.call_sid)
        session.on(SessionEventType.AUDIO, self._on_session_audio)
        session.on(SessionEventType.TEXT, self._on_session_text)
        session.on(SessionEventType.ERROR, self._on_session_error)
        session.on(SessionEventType.ENDED, self._on_session_ended)
        self._session = session

        # Engine connect may take a while; keep reading the stream meanwhile
        self._start_task = asyncio.create_task(self._start_session(session), name="callbridge-start")

    async def _start_session(self, session: BridgeSession) -> None:
        try:
            await session.start_session(
                input_rate=AudioConstants.TELEPHONY_SAMPLE_RATE,
                output_rate=AudioConstants.TELEPHONY_SAMPLE_RATE
            )
        except Exception as e:
            if self._closing:
                self._logger.debug("Session start aborted by hangup", error=str(e))
                return
            self._logger.error("Could not start bridge session", error=str(e))
            self._close_telephony()

    async def _forward_audio(self, event: Media) -> None:
        session = self._session
        if session is None or not session.active:
            self._uplink_dropped += 1
            return

        try:
            await session.send_audio(event.frame.samples)
        except StateError:
            self._uplink_dropped += 1
            return

        self._uplink_chunks += 1

    def _on_session_audio(self, frame: AudioFrame) -> None:
        if not self._handler.is_active:
            return

        message = self._handler.create_audio_message(frame.samples)
        try:
            self._downlink.send_nowait(message)
        except asyncio.QueueFull:
            self._downlink_dropped += 1

    def _on_session_text(self, text: str) -> None:
        self._logger.info("Engine text", text=text)

    def _on_session_error(self, error: Exception) -> None:
        self._logger.warning("Bridge session error", error=str(error), error_type=type(error).__name__)

    def _on_session_ended(self) -> None:
        if not self._closing:
            self._logger.info("Session ended, hanging up telephony stream")
            self._close_telephony()

    def _close_telephony(self) -> None:
        if self._close_task is None:
            self._close_task = asyncio.create_task(self._ws.close(), name="callbridge-close")

    async def _end_session(self) -> None:
        if self._session is not None:
            await self._session.end_session()
        if self._start_task is not None:
            await asyncio.wait({self._start_task})

    async def _shutdown(self) -> None:
        self._closing = True
        await self._end_session()
        await self._downlink.close()
        if self._close_task is not None:
            await asyncio.wait({self._close_task})
