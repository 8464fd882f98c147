"""Opus codec for the engine leg.

The engine exchanges Opus packets at 24kHz mono. Inside the bridge audio is
float32 in [-1, 1]; conversion to int16 happens here.
"""

from typing import Optional, Protocol

import numpy as np
import opuslib
import opuslib.api.decoder
import opuslib.api.encoder
import structlog

from plexbridge.core.constants import AudioConstants
from plexbridge.core.errors import CodecError
from plexbridge.utils.codec import float32_to_int16, int16_to_float32


class AudioCodec(Protocol):
    """Perceptual codec interface used by the bridge session."""

    def encode(self, pcm: np.ndarray) -> bytes:
        ...

    def decode(self, packet: bytes) -> np.ndarray:
        ...

    def close(self) -> None:
        ...


class OpusCodec:
    """Opus encoder/decoder pair (VOIP application)."""

    # Largest Opus frame (120ms) at the engine rate
    MAX_DECODE_SAMPLES = 2880

    def __init__(
        self,
        sample_rate: int = AudioConstants.ENGINE_SAMPLE_RATE,
        channels: int = 1
    ) -> None:
        """Initialize encoder and decoder state.

        Args:
            sample_rate: Opus sample rate
            channels: Number of channels

        Raises:
            CodecError: If libopus rejects the configuration
        """
        self._sample_rate = sample_rate
        self._channels = channels
        self._logger = structlog.get_logger(__name__)

        try:
            self._encoder: Optional[opuslib.Encoder] = opuslib.Encoder(
                sample_rate, channels, opuslib.APPLICATION_VOIP
            )
            self._decoder: Optional[opuslib.Decoder] = opuslib.Decoder(sample_rate, channels)
        except opuslib.OpusError as e:
            raise CodecError(f"Failed to create Opus codec: {e}") from e

        self._logger.debug("Opus codec created", sample_rate=sample_rate, channels=channels)

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def closed(self) -> bool:
        return self._encoder is None

    def encode(self, pcm: np.ndarray) -> bytes:
        """Encode one frame of float samples.

        Args:
            pcm: Float32 samples; length must be a valid Opus frame size

        Returns:
            Opus packet

        Raises:
            CodecError: If the codec is closed or encoding fails
        """
        if self._encoder is None:
            raise CodecError("Opus codec is closed")

        pcm16 = float32_to_int16(pcm)
        frame_size = pcm16.size // self._channels
        try:
            return self._encoder.encode(pcm16.tobytes(), frame_size)
        except opuslib.OpusError as e:
            raise CodecError(f"Opus encode failed: {e}") from e

    def decode(self, packet: bytes) -> np.ndarray:
        """Decode one Opus packet.

        Args:
            packet: Opus packet

        Returns:
            Float32 samples

        Raises:
            CodecError: If the codec is closed or the packet is invalid
        """
        if self._decoder is None:
            raise CodecError("Opus codec is closed")

        try:
            pcm_bytes = self._decoder.decode(bytes(packet), self.MAX_DECODE_SAMPLES)
        except opuslib.OpusError as e:
            raise CodecError(f"Opus decode failed: {e}") from e

        return int16_to_float32(np.frombuffer(pcm_bytes, dtype=np.int16))

    def close(self) -> None:
        """Release encoder and decoder state. Idempotent."""
        encoder, self._encoder = self._encoder, None
        decoder, self._decoder = self._decoder, None

        # Frees libopus state now; the wrappers skip destroy once the attribute is gone
        if encoder is not None:
            opuslib.api.encoder.destroy(encoder.encoder_state)
            del encoder.encoder_state
        if decoder is not None:
            opuslib.api.decoder.destroy(decoder.decoder_state)
            del decoder.decoder_state

        if encoder is not None or decoder is not None:
            self._logger.debug("Opus codec closed")
