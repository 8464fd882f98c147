#!/usr/bin/env python3
"""Mock speech engine for local end-to-end testing.

Sends the handshake, a text message and five seconds of a 440Hz tone as Opus
packets, then echoes received audio back.

Usage:
    python examples/mock_engine_server.py
    ENGINE_URL=ws://localhost:8998/api/chat python -m plexbridge.main
"""

import asyncio
from urllib.parse import parse_qs, urlsplit

import numpy as np
import structlog
from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from plexbridge.ai.protocol import MessageType, Text, decode_message, encode_audio, encode_handshake, encode_text
from plexbridge.core.constants import AudioConstants
from plexbridge.utils.opus import OpusCodec

logger = structlog.get_logger("mock_engine")

PORT = 8998
TONE_HZ = 440.0
TONE_SECONDS = 5.0


def generate_tone_frame(phase: float, frequency: float = TONE_HZ) -> tuple[np.ndarray, float]:
    """One 80ms frame of a sine tone at 0.5 amplitude.

    Returns:
        Tuple of (samples, next phase)
    """
    step = 2 * np.pi * frequency / AudioConstants.ENGINE_SAMPLE_RATE
    phases = phase + step * np.arange(AudioConstants.ENGINE_FRAME_SIZE)
    frame = (0.5 * np.sin(phases)).astype(np.float32)
    return frame, phase + step * AudioConstants.ENGINE_FRAME_SIZE


async def stream_tone(connection: ServerConnection, codec: OpusCodec) -> None:
    await asyncio.sleep(1.0)
    await connection.send(encode_text(f"Testing audio pipeline. Sending {TONE_SECONDS:.0f} seconds of 440Hz tone."))

    packets = int(TONE_SECONDS * 1000 / AudioConstants.ENGINE_FRAME_MS)
    phase = 0.0
    for _ in range(packets):
        frame, phase = generate_tone_frame(phase)
        await connection.send(encode_audio(codec.encode(frame)))
        await asyncio.sleep(AudioConstants.ENGINE_FRAME_MS / 1000)

    logger.info("Finished sending audio test")
    await connection.send(encode_text("Audio test complete."))


async def handle_client(connection: ServerConnection) -> None:
    params = parse_qs(urlsplit(connection.request.path).query)
    logger.info(
        "Client connected",
        voice_prompt=params.get("voice_prompt", [None])[0],
        text_prompt=params.get("text_prompt", [None])[0]
    )

    codec = OpusCodec()
    await connection.send(encode_handshake())
    sender = asyncio.create_task(stream_tone(connection, codec))

    try:
        async for data in connection:
            if isinstance(data, str) or not data:
                continue
            if data[0] == MessageType.AUDIO:
                # Echo back for latency testing
                await connection.send(data)
            else:
                message = decode_message(data)
                if isinstance(message, Text):
                    logger.info("User said", text=message.text)
                    if "hello" in message.text.lower():
                        await connection.send(encode_text("Hello there! I am a mock engine."))
    except ConnectionClosed:
        pass
    finally:
        sender.cancel()
        codec.close()
        logger.info("Client disconnected")


async def main() -> None:
    async with serve(handle_client, "0.0.0.0", PORT) as server:
        logger.info("Mock engine running", url=f"ws://localhost:{PORT}/api/chat")
        await server.serve_forever()


if __name__ == "__main__":
    asyncio.run(main())
