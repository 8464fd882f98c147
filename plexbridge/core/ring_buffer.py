"""Sample accumulation buffers.

The engine processes audio in 80ms frames at 24kHz (1920 samples) while the
telephony leg delivers 20ms chunks at 8kHz (160 samples). ``FrameBuffer``
accumulates samples until a full frame is available. ``StreamBuffer`` is the
asyncio channel that feeds a leg's writer task.
"""

import asyncio
from typing import Generic, Optional, TypeVar

import numpy as np

from plexbridge.core.constants import AudioConstants

T = TypeVar("T")


class FrameBuffer:
    """Bounded FIFO of float samples read back in fixed-size frames.

    Overflow drops the oldest samples: bounded memory takes priority over
    zero audio loss under sustained overload.
    """

    def __init__(self, frame_size: int, max_frames: int = AudioConstants.DEFAULT_MAX_FRAMES) -> None:
        """Initialize frame buffer.

        Args:
            frame_size: Number of samples per output frame
            max_frames: Maximum number of frames held at once

        Raises:
            ValueError: If frame_size or max_frames is <= 0
        """
        if frame_size <= 0:
            raise ValueError(f"Frame size must be positive, got {frame_size}")
        if max_frames <= 0:
            raise ValueError(f"Max frames must be positive, got {max_frames}")

        self._frame_size = frame_size
        self._max_frames = max_frames
        self._buffer = np.zeros(frame_size * max_frames, dtype=np.float32)
        self._write_position = 0
        self._dropped_samples = 0

    @property
    def frame_size(self) -> int:
        """Samples per frame."""
        return self._frame_size

    @property
    def max_frames(self) -> int:
        return self._max_frames

    @property
    def capacity(self) -> int:
        """Maximum number of buffered samples."""
        return self._buffer.size

    @property
    def dropped_samples(self) -> int:
        """Total samples discarded by overflow since creation."""
        return self._dropped_samples

    def push(self, samples: np.ndarray) -> int:
        """Append samples, dropping the oldest ones on overflow.

        Args:
            samples: Float samples to append

        Returns:
            Number of samples dropped to make room
        """
        samples = np.asarray(samples, dtype=np.float32)
        if samples.size == 0:
            return 0

        dropped = 0
        capacity = self._buffer.size

        if samples.size >= capacity:
            # Chunk alone fills the buffer: keep only its newest samples
            dropped = self._write_position + samples.size - capacity
            self._buffer[:] = samples[-capacity:]
            self._write_position = capacity
            self._dropped_samples += dropped
            return dropped

        overflow = self._write_position + samples.size - capacity
        if overflow > 0:
            # Shift to make room (drop oldest samples)
            self._buffer[: self._write_position - overflow] = self._buffer[overflow:self._write_position]
            self._write_position -= overflow
            dropped = overflow

        self._buffer[self._write_position:self._write_position + samples.size] = samples
        self._write_position += samples.size
        self._dropped_samples += dropped
        return dropped

    def has_frame(self) -> bool:
        """Check if at least one complete frame is buffered."""
        return self._write_position >= self._frame_size

    def frame_count(self) -> int:
        """Number of complete frames available."""
        return self._write_position // self._frame_size

    def sample_count(self) -> int:
        """Number of samples currently buffered."""
        return self._write_position

    def read_frame(self) -> Optional[np.ndarray]:
        """Read one frame (removes it from the buffer).

        Returns:
            Frame of exactly ``frame_size`` samples, or None if not enough data
        """
        if not self.has_frame():
            return None

        frame = self._buffer[:self._frame_size].copy()

        remaining = self._write_position - self._frame_size
        self._buffer[:remaining] = self._buffer[self._frame_size:self._write_position]
        self._write_position = remaining

        return frame

    def read_all_frames(self) -> list[np.ndarray]:
        """Read every complete frame currently buffered."""
        frames = []
        frame = self.read_frame()
        while frame is not None:
            frames.append(frame)
            frame = self.read_frame()
        return frames

    def peek(self, count: Optional[int] = None) -> np.ndarray:
        """Copy of the oldest ``count`` buffered samples (all if None), non-destructive."""
        length = self._write_position if count is None else min(max(count, 0), self._write_position)
        return self._buffer[:length].copy()

    def clear(self) -> int:
        """Clear all samples.

        Returns:
            Number of samples cleared
        """
        count = self._write_position
        self._write_position = 0
        return count

    def fill_level(self) -> float:
        """Buffer fill level as a percentage (0-100)."""
        return (self._write_position / self._buffer.size) * 100


def create_engine_buffer(max_frames: int = AudioConstants.DEFAULT_MAX_FRAMES) -> FrameBuffer:
    """Buffer for engine frame accumulation (80ms @ 24kHz = 1920 samples)."""
    return FrameBuffer(AudioConstants.ENGINE_FRAME_SIZE, max_frames)


def create_telephony_buffer(max_frames: int = AudioConstants.DEFAULT_MAX_FRAMES) -> FrameBuffer:
    """Buffer for telephony output chunks (20ms @ 8kHz = 160 samples)."""
    return FrameBuffer(AudioConstants.TELEPHONY_CHUNK_SIZE, max_frames)


class StreamBuffer(Generic[T]):
    """Asyncio Queue-based buffer for async communication.

    ``close()`` discards queued items and wakes a pending ``receive()``,
    which then returns None.
    """

    def __init__(self, capacity: int) -> None:
        """Initialize stream buffer.

        Args:
            capacity: Maximum number of items to buffer
        """
        self._queue: asyncio.Queue[Optional[T]] = asyncio.Queue(maxsize=capacity)
        self._capacity = capacity
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    def send_nowait(self, item: T) -> None:
        """Send item without waiting.

        Args:
            item: Data to send

        Raises:
            asyncio.QueueFull: If buffer is full
        """
        if self._closed:
            return
        self._queue.put_nowait(item)

    async def send(self, item: T) -> None:
        """Send item, waiting if necessary.

        Args:
            item: Data to send
        """
        if self._closed:
            return
        await self._queue.put(item)

    async def receive(self) -> Optional[T]:
        """Receive item, waiting if necessary.

        Returns:
            Received data, or None once the buffer is closed
        """
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def receive_nowait(self) -> T:
        """Receive item without waiting.

        Returns:
            Received data

        Raises:
            asyncio.QueueEmpty: If buffer is empty or closed
        """
        item = self._queue.get_nowait()
        if item is None:
            raise asyncio.QueueEmpty
        return item

    async def close(self) -> None:
        """Close the buffer and wake any waiting receiver."""
        if self._closed:
            return
        self._closed = True
        # Clear queue
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        # Wake-up marker for a blocked receive()
        self._queue.put_nowait(None)
