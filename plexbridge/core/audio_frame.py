"""Immutable audio frame passed between the legs and the session."""

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class AudioFrame:
    """Normalized float32 samples tagged with their sample rate.

    The sample array is copied on construction and made read-only.
    """

    samples: np.ndarray
    sample_rate: int

    def __post_init__(self) -> None:
        if self.sample_rate <= 0:
            raise ValueError(f"Sample rate must be positive, got {self.sample_rate}")
        samples = np.array(self.samples, dtype=np.float32, copy=True).reshape(-1)
        samples.setflags(write=False)
        object.__setattr__(self, "samples", samples)

    def __len__(self) -> int:
        return self.samples.size

    @property
    def duration_ms(self) -> float:
        return self.samples.size * 1000.0 / self.sample_rate
