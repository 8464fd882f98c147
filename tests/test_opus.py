"""Tests for the Opus codec wrapper."""

from typing import Iterator
from unittest.mock import patch

import numpy as np
import opuslib.api.decoder
import opuslib.api.encoder
import pytest

from plexbridge.core.errors import CodecError
from plexbridge.utils.opus import OpusCodec


@pytest.fixture
def opus() -> Iterator[OpusCodec]:
    codec = OpusCodec()
    yield codec
    codec.close()


class TestOpusCodec:
    """Test Opus encode and decode at the engine rate."""

    def test_engine_frame(self, opus: OpusCodec) -> None:
        """Test that an 80ms engine frame decodes to 1920 samples."""
        t = np.arange(1920) / 24000
        tone = (0.3 * np.sin(2 * np.pi * 440 * t)).astype(np.float32)

        packet = opus.encode(tone)
        decoded = opus.decode(packet)

        assert isinstance(packet, bytes)
        assert 0 < len(packet) < 1920
        assert decoded.dtype == np.float32
        assert decoded.size == 1920
        assert np.max(np.abs(decoded)) <= 1.0

    def test_silence(self, opus: OpusCodec) -> None:
        """Test 20ms of silence."""
        decoded = opus.decode(opus.encode(np.zeros(480, dtype=np.float32)))

        assert decoded.size == 480
        assert np.max(np.abs(decoded)) < 0.01

    def test_invalid_frame_size(self, opus: OpusCodec) -> None:
        """Test that libopus errors surface as CodecError."""
        with pytest.raises(CodecError, match="encode failed"):
            opus.encode(np.zeros(100, dtype=np.float32))

    def test_closed_codec(self) -> None:
        """Test use after close."""
        codec = OpusCodec()
        codec.close()
        codec.close()

        assert codec.closed
        with pytest.raises(CodecError, match="closed"):
            codec.encode(np.zeros(480, dtype=np.float32))
        with pytest.raises(CodecError, match="closed"):
            codec.decode(b"\x00")

    def test_close_frees_native_state(self) -> None:
        """Test that close destroys the libopus encoder and decoder exactly once."""
        codec = OpusCodec()
        encoder = codec._encoder
        decoder = codec._decoder

        with patch.object(
            opuslib.api.encoder, "destroy", wraps=opuslib.api.encoder.destroy
        ) as destroy_encoder, patch.object(
            opuslib.api.decoder, "destroy", wraps=opuslib.api.decoder.destroy
        ) as destroy_decoder:
            codec.close()
            codec.close()

        destroy_encoder.assert_called_once()
        destroy_decoder.assert_called_once()
        assert not hasattr(encoder, "encoder_state")
        assert not hasattr(decoder, "decoder_state")
