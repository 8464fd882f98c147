"""Bridge server.

A FastAPI app answers the provider's HTTP webhooks and accepts the media
stream websockets:

- ``GET /health``: JSON liveness check
- ``GET|POST /twiml``: TwiML pointing the call at ``/media-stream``
- ``/media-stream``: websocket, one CallBridge per connection
"""

import asyncio
from datetime import datetime, timezone
from typing import AsyncIterator, Mapping, Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from plexbridge import __version__
from plexbridge.bridge.call_bridge import CallBridge, SessionFactory
from plexbridge.bridge.session import BridgeSession
from plexbridge.config import AppConfig
from plexbridge.core.prompt_config import PromptConfig
from plexbridge.telephony.twiml import generate_stream_twiml

MEDIA_STREAM_PATH = "/media-stream"


def media_stream_url(headers: Mapping[str, str]) -> str:
    """Websocket URL of the media stream endpoint as seen by the provider."""
    host = headers.get("host", "localhost:3000")
    protocol = headers.get("x-forwarded-proto", "http")
    ws_protocol = "wss" if protocol == "https" else "ws"
    return f"{ws_protocol}://{host}{MEDIA_STREAM_PATH}"


class MediaStreamSocket:
    """Starlette websocket seen through the telephony socket interface.

    Send failures on a gone peer surface as ``WebSocketDisconnect``.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    @property
    def open(self) -> bool:
        return (
            self._websocket.application_state is WebSocketState.CONNECTED
            and self._websocket.client_state is WebSocketState.CONNECTED
        )

    async def send(self, message: str) -> None:
        if not self.open:
            raise WebSocketDisconnect(code=1006)
        try:
            await self._websocket.send_text(message)
        except OSError as e:
            raise WebSocketDisconnect(code=1006, reason=str(e)) from e

    async def close(self) -> None:
        if self.open:
            await self._websocket.close()

    def __aiter__(self) -> AsyncIterator[str]:
        # Ends when the provider disconnects
        return self._websocket.iter_text()


class BridgeServer:
    """Webhook and media stream app creating one CallBridge per call."""

    def __init__(
        self,
        app_config: AppConfig,
        session_factory: Optional[SessionFactory] = None
    ) -> None:
        """Initialize server.

        Args:
            app_config: Application configuration
            session_factory: Overrides BridgeSession construction, for tests

        Raises:
            FileNotFoundError: If the configured prompt file is missing
            ValueError: If the configured prompt file is invalid
        """
        self._config = app_config
        self._logger = structlog.get_logger(__name__)

        self._prompt = PromptConfig.from_yaml_or_none(app_config.engine.prompt_file)
        self._session_factory = session_factory or self._create_session
        self._active_calls = 0

        self.app = FastAPI(title="plexbridge", version=__version__)
        self.app.add_api_route("/health", self.health, methods=["GET"])
        self.app.add_api_route("/twiml", self.twiml, methods=["GET", "POST"])
        self.app.add_api_websocket_route(MEDIA_STREAM_PATH, self.media_stream)

    @property
    def active_calls(self) -> int:
        return self._active_calls

    def _create_session(self) -> BridgeSession:
        engine = self._config.engine
        settings = engine.settings(self._prompt.text_prompt if self._prompt else None)
        if self._prompt and self._prompt.voice_prompt:
            settings.voice_prompt = self._prompt.voice_prompt

        return BridgeSession(
            settings,
            policy=engine.reconnect_policy(),
            resampler_quality=self._config.audio.resampler_quality
        )

    async def health(self) -> dict:
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "active_calls": self._active_calls,
        }

    async def twiml(self, request: Request) -> Response:
        """Voice webhook; the provider may use either GET or POST."""
        ws_url = media_stream_url(request.headers)
        self._logger.info("Generating TwiML", ws_url=ws_url, method=request.method)
        twiml = generate_stream_twiml(ws_url, self._config.server.welcome_message)
        return Response(content=twiml, media_type="text/xml")

    async def media_stream(self, websocket: WebSocket) -> None:
        """Run a CallBridge for one media stream websocket."""
        await websocket.accept()
        self._active_calls += 1
        self._logger.info("New media stream connection", remote=str(websocket.client))
        socket = MediaStreamSocket(websocket)
        try:
            bridge = CallBridge(socket, self._session_factory)
            await bridge.run()
        finally:
            self._active_calls -= 1
            await socket.close()

    async def serve_forever(self) -> None:
        """Serve until uvicorn receives SIGINT/SIGTERM."""
        host = self._config.server.host
        port = self._config.server.port

        server = uvicorn.Server(uvicorn.Config(
            self.app,
            host=host,
            port=port,
            log_config=None,
            access_log=False,
            timeout_graceful_shutdown=10
        ))
        self._logger.info(
            "Server listening",
            url=f"http://{host}:{port}",
            twiml_endpoint=f"http://{host}:{port}/twiml",
            engine_url=self._config.engine.url
        )
        await server.serve()


async def run_server(app_config: AppConfig) -> None:
    server = BridgeServer(app_config)
    try:
        await server.serve_forever()
    except asyncio.CancelledError:
        structlog.get_logger(__name__).info("Server shutting down")
        raise
    structlog.get_logger(__name__).info("Server stopped")
