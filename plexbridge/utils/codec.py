"""Audio codec for mu-law <-> normalized float PCM conversion.

The telephony leg carries G.711 mu-law bytes; everything inside the bridge
works on float32 samples in [-1, 1].
"""

from typing import Optional

import numpy as np

from plexbridge.core.constants import AudioConstants


class MuLawCodec:
    """G.711 mu-law codec with vectorized operations."""

    # mu-law constants
    ULAW_MAX = 32635  # Clip level for linear magnitude
    ULAW_BIAS = 0x84  # Bias for linear code

    _decode_table: Optional[np.ndarray] = None

    @staticmethod
    def encode(sample: float) -> int:
        """Encode one normalized sample to a mu-law byte.

        Args:
            sample: Sample in [-1, 1] (clamped if outside)

        Returns:
            mu-law code (0-255)
        """
        return MuLawCodec._encode_pcm16(MuLawCodec._quantize(sample))

    @staticmethod
    def decode(code: int) -> float:
        """Decode one mu-law byte to a normalized sample.

        Args:
            code: mu-law code (0-255)

        Returns:
            Sample in [-1, 1)
        """
        table = MuLawCodec.decode_table()
        return float(table[code & 0xFF]) / AudioConstants.PCM16_SCALE

    @staticmethod
    def encode_array(samples: np.ndarray) -> bytes:
        """Encode normalized samples to mu-law bytes.

        Args:
            samples: Float samples in [-1, 1]

        Returns:
            mu-law encoded audio data
        """
        samples = np.asarray(samples, dtype=np.float64)
        if samples.size == 0:
            return b""

        clamped = np.clip(samples, -1.0, 1.0) * AudioConstants.PCM16_MAX
        # Round half away from zero
        pcm = (np.sign(clamped) * np.floor(np.abs(clamped) + 0.5)).astype(np.int32)

        sign = np.where(pcm < 0, 0x80, 0).astype(np.int32)
        magnitude = np.minimum(np.abs(pcm), MuLawCodec.ULAW_MAX) + MuLawCodec.ULAW_BIAS

        # Segment: highest set bit above bit 7 of the biased magnitude
        exponent = np.zeros_like(magnitude)
        for exp in range(8):
            exponent = np.where(magnitude >= (1 << (exp + 7)), exp, exponent)

        mantissa = (magnitude >> (exponent + 3)) & 0x0F
        ulaw = ~(sign | (exponent << 4) | mantissa) & 0xFF
        return ulaw.astype(np.uint8).tobytes()

    @staticmethod
    def decode_bytes(ulaw_data: bytes) -> np.ndarray:
        """Decode mu-law bytes to normalized float32 samples.

        Args:
            ulaw_data: mu-law encoded audio data

        Returns:
            Float32 samples in [-1, 1)
        """
        table = MuLawCodec.decode_table()
        ulaw_array = np.frombuffer(ulaw_data, dtype=np.uint8)
        return (table[ulaw_array] / AudioConstants.PCM16_SCALE).astype(np.float32)

    @staticmethod
    def decode_table() -> np.ndarray:
        """256-entry mu-law to PCM16 table, built on first use."""
        if MuLawCodec._decode_table is None:
            MuLawCodec._decode_table = MuLawCodec._create_ulaw_table()
        return MuLawCodec._decode_table

    @staticmethod
    def _create_ulaw_table() -> np.ndarray:
        """Create mu-law to PCM16 lookup table."""
        table = np.zeros(256, dtype=np.int16)
        for i in range(256):
            # Complement to obtain normal u-law value
            ulaw = ~i & 0xFF

            sign = ulaw & 0x80
            exponent = (ulaw >> 4) & 0x07
            mantissa = ulaw & 0x0F

            sample = mantissa << (exponent + 3)
            sample += MuLawCodec.ULAW_BIAS << exponent
            sample -= MuLawCodec.ULAW_BIAS

            if sign:
                sample = -sample

            table[i] = sample

        table.setflags(write=False)
        return table

    @staticmethod
    def _quantize(sample: float) -> int:
        """Quantize a normalized sample to PCM16, rounding half away from zero."""
        clamped = max(-1.0, min(1.0, float(sample))) * AudioConstants.PCM16_MAX
        magnitude = int(abs(clamped) + 0.5)
        return -magnitude if clamped < 0 else magnitude

    @staticmethod
    def _encode_pcm16(sample: int) -> int:
        """Encode a single PCM16 sample to mu-law."""
        if sample < 0:
            sign = 0x80
            sample = -sample
        else:
            sign = 0

        # Clip, then bias
        if sample > MuLawCodec.ULAW_MAX:
            sample = MuLawCodec.ULAW_MAX
        sample += MuLawCodec.ULAW_BIAS

        exponent = 7
        mask = 0x4000
        while (sample & mask) == 0 and exponent > 0:
            exponent -= 1
            mask >>= 1

        mantissa = (sample >> (exponent + 3)) & 0x0F

        return ~(sign | (exponent << 4) | mantissa) & 0xFF


def pcm_to_mulaw(pcm: np.ndarray) -> bytes:
    """Convert float PCM in [-1, 1] to mu-law bytes."""
    return MuLawCodec.encode_array(pcm)


def mulaw_to_pcm(data: bytes) -> np.ndarray:
    """Convert mu-law bytes to float32 PCM in [-1, 1)."""
    return MuLawCodec.decode_bytes(data)


def float32_to_int16(samples: np.ndarray) -> np.ndarray:
    """Convert float PCM to int16 PCM (clamped, rounded)."""
    clamped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return np.round(clamped * AudioConstants.PCM16_MAX).astype(np.int16)


def int16_to_float32(samples: np.ndarray) -> np.ndarray:
    """Convert int16 PCM to float32 PCM in [-1, 1)."""
    return (np.asarray(samples, dtype=np.int16) / AudioConstants.PCM16_SCALE).astype(np.float32)
