"""Audio resampler for sample rate conversion.

Two linear-interpolation variants:
- ``resample()``: stateless, for self-contained chunks
- ``StreamingResampler``: keeps the fractional read phase between chunks

Phase is tracked as an integer numerator over ``target_rate`` so that chunk
lengths stay exact (160 samples @ 8kHz always become 480 @ 24kHz).

``SoxrStreamResampler`` offers the same streaming interface on top of soxr for
deployments that prefer band-limited resampling over low latency.
"""

from typing import Protocol

import numpy as np
import soxr


class StreamResampler(Protocol):
    """Common interface of streaming resamplers."""

    @property
    def source_rate(self) -> int:
        ...

    @property
    def target_rate(self) -> int:
        ...

    def process(self, samples: np.ndarray) -> np.ndarray:
        ...

    def reset(self) -> None:
        ...


def _validate_rates(source_rate: int, target_rate: int) -> None:
    if source_rate <= 0:
        raise ValueError(f"Source rate must be positive, got {source_rate}")
    if target_rate <= 0:
        raise ValueError(f"Target rate must be positive, got {target_rate}")


def output_length(input_length: int, source_rate: int, target_rate: int) -> int:
    """Number of output samples for ``input_length`` inputs: ceil(n * to / from)."""
    return -(-input_length * target_rate // source_rate)


def _interpolate(
    samples: np.ndarray,
    source_rate: int,
    target_rate: int,
    phase: int
) -> tuple[np.ndarray, int]:
    """Linear interpolation starting at input position ``phase / target_rate``.

    Returns:
        Tuple of (output samples, phase numerator carried to the next chunk)
    """
    n = samples.size
    length = output_length(n, source_rate, target_rate)

    # Position of output k in input samples = (phase + k * source_rate) / target_rate
    numerators = phase + np.arange(length, dtype=np.int64) * source_rate
    indices = numerators // target_rate
    valid = indices < n
    numerators = numerators[valid]
    indices = indices[valid]

    fraction = (numerators - indices * target_rate).astype(np.float64) / target_rate
    next_indices = np.minimum(indices + 1, n - 1)

    current = samples[indices].astype(np.float64)
    following = samples[next_indices].astype(np.float64)
    output = (current + (following - current) * fraction).astype(np.float32)

    # Read position of the next output, relative to the start of the next chunk
    carried = phase + indices.size * source_rate - n * target_rate
    return output, carried


def resample(samples: np.ndarray, from_rate: int, to_rate: int) -> np.ndarray:
    """Resample a self-contained chunk using linear interpolation.

    Args:
        samples: Float samples at ``from_rate``
        from_rate: Source sample rate in Hz
        to_rate: Target sample rate in Hz

    Returns:
        Float32 samples at ``to_rate``; the input itself when rates match

    Examples:
        # 20ms telephony chunk -> engine rate
        pcm_24k = resample(pcm_8k, 8000, 24000)   # 160 -> 480 samples
    """
    _validate_rates(from_rate, to_rate)
    if from_rate == to_rate:
        return samples

    samples = np.asarray(samples, dtype=np.float32)
    if samples.size == 0:
        return np.zeros(0, dtype=np.float32)

    output, _ = _interpolate(samples, from_rate, to_rate, 0)
    return output


class StreamingResampler:
    """Linear resampler that carries its fractional phase across chunks."""

    def __init__(self, source_rate: int, target_rate: int) -> None:
        """Initialize resampler.

        Args:
            source_rate: Source sample rate in Hz
            target_rate: Target sample rate in Hz

        Raises:
            ValueError: If rates are invalid
        """
        _validate_rates(source_rate, target_rate)
        self._source_rate = source_rate
        self._target_rate = target_rate
        self._phase = 0

    @property
    def source_rate(self) -> int:
        """Source sample rate."""
        return self._source_rate

    @property
    def target_rate(self) -> int:
        """Target sample rate."""
        return self._target_rate

    @property
    def ratio(self) -> float:
        """Resampling ratio (source/target), i.e. input samples per output sample."""
        return self._source_rate / self._target_rate

    @property
    def phase(self) -> float:
        """Read position carried into the next chunk, in input samples."""
        return self._phase / self._target_rate

    def process(self, samples: np.ndarray) -> np.ndarray:
        if self._source_rate == self._target_rate:
            return samples

        samples = np.asarray(samples, dtype=np.float32)
        if samples.size == 0:
            return np.zeros(0, dtype=np.float32)

        output, self._phase = _interpolate(
            samples, self._source_rate, self._target_rate, self._phase
        )
        return output

    def reset(self) -> None:
        """Clear the carried phase for a fresh session."""
        self._phase = 0


class SoxrStreamResampler:
    """High-quality streaming resampler backed by soxr."""

    _QUALITIES = ("QQ", "LQ", "MQ", "HQ", "VHQ")

    def __init__(self, source_rate: int, target_rate: int, quality: str = "HQ") -> None:
        """Initialize resampler.

        Args:
            source_rate: Source sample rate in Hz
            target_rate: Target sample rate in Hz
            quality: soxr quality recipe ("QQ", "LQ", "MQ", "HQ", "VHQ")

        Raises:
            ValueError: If rates or quality are invalid
        """
        _validate_rates(source_rate, target_rate)
        if quality not in self._QUALITIES:
            raise ValueError(f"Unsupported soxr quality: {quality}")

        self._source_rate = source_rate
        self._target_rate = target_rate
        self._quality = quality
        self._stream = self._create_stream()

    @property
    def source_rate(self) -> int:
        return self._source_rate

    @property
    def target_rate(self) -> int:
        return self._target_rate

    def _create_stream(self) -> soxr.ResampleStream:
        return soxr.ResampleStream(
            self._source_rate,
            self._target_rate,
            1,
            dtype="float32",
            quality=self._quality
        )

    def process(self, samples: np.ndarray) -> np.ndarray:
        if self._source_rate == self._target_rate:
            return samples

        samples = np.asarray(samples, dtype=np.float32)
        if samples.size == 0:
            return np.zeros(0, dtype=np.float32)

        return self._stream.resample_chunk(samples)

    def reset(self) -> None:
        self._stream.clear()


def create_resampler(
    source_rate: int,
    target_rate: int,
    quality: str = "linear"
) -> StreamResampler:
    """Factory function to create the configured streaming resampler.

    Args:
        source_rate: Source sample rate
        target_rate: Target sample rate
        quality: "linear" or a soxr quality recipe ("LQ", "MQ", "HQ", "VHQ")

    Returns:
        Resampler instance
    """
    if quality == "linear":
        return StreamingResampler(source_rate, target_rate)
    return SoxrStreamResampler(source_rate, target_rate, quality=quality)
