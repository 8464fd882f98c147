"""Shared test fixtures and configuration."""

from typing import AsyncGenerator

import numpy as np
import pytest
import pytest_asyncio

from plexbridge.ai.duplex_base import EngineSettings, ReconnectPolicy
from plexbridge.ai.engine_client import EngineLegClient
from plexbridge.bridge.session import BridgeSession
from plexbridge.core.ring_buffer import StreamBuffer
from tests.mock_engine import FakeCodec, FakeConnector, ManualScheduler


@pytest.fixture
def engine_settings() -> EngineSettings:
    return EngineSettings(
        url="ws://engine.test:8998/api/chat",
        voice_prompt="NATF2.pt",
        text_prompt="You enjoy having a good conversation.",
        handshake_timeout=None
    )


@pytest.fixture
def connector() -> FakeConnector:
    """Connector whose engines answer with a handshake."""
    return FakeConnector(auto_handshake=True)


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def codec() -> FakeCodec:
    return FakeCodec()


@pytest.fixture
def tone_8k() -> np.ndarray:
    """20ms of a 440Hz tone at 8kHz (160 samples)."""
    t = np.arange(160) / 8000
    return (0.5 * np.sin(2 * np.pi * 440 * t)).astype(np.float32)


@pytest_asyncio.fixture
async def engine_client(
    engine_settings: EngineSettings,
    connector: FakeConnector,
    scheduler: ManualScheduler
) -> AsyncGenerator[EngineLegClient, None]:
    """Engine client with reconnects enabled (3 attempts, 1s base)."""
    client = EngineLegClient(
        engine_settings,
        ReconnectPolicy(enabled=True, max_attempts=3, base_delay=1.0),
        connector=connector,
        scheduler=scheduler
    )
    yield client
    await client.close()


@pytest_asyncio.fixture
async def session(
    engine_settings: EngineSettings,
    connector: FakeConnector,
    scheduler: ManualScheduler,
    codec: FakeCodec
) -> AsyncGenerator[BridgeSession, None]:
    """Bridge session wired to fakes (3 reconnect attempts, 1s base)."""
    bridge_session = BridgeSession(
        engine_settings,
        policy=ReconnectPolicy(enabled=True, max_attempts=3, base_delay=1.0),
        codec_factory=lambda: codec,
        connector=connector,
        scheduler=scheduler
    )
    yield bridge_session
    await bridge_session.end_session()


@pytest_asyncio.fixture
async def stream_buffer() -> AsyncGenerator[StreamBuffer, None]:
    """Create stream buffer for testing."""
    buffer = StreamBuffer(capacity=10)
    yield buffer
    await buffer.close()
