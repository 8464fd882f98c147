"""Tests for frame and stream buffers."""

import asyncio

import numpy as np
import pytest

from plexbridge.core.ring_buffer import (
    FrameBuffer,
    StreamBuffer,
    create_engine_buffer,
    create_telephony_buffer,
)


class TestFrameBuffer:
    """Test frame accumulation."""

    def test_basic_operations(self) -> None:
        """Test push and read of whole frames."""
        buffer = FrameBuffer(frame_size=4, max_frames=3)

        assert not buffer.has_frame()
        assert buffer.read_frame() is None

        buffer.push(np.array([1, 2, 3], dtype=np.float32))
        assert not buffer.has_frame()
        assert buffer.sample_count() == 3

        buffer.push(np.array([4, 5], dtype=np.float32))
        assert buffer.has_frame()
        assert buffer.frame_count() == 1

        frame = buffer.read_frame()
        assert frame.tolist() == [1, 2, 3, 4]
        assert buffer.sample_count() == 1
        assert buffer.peek().tolist() == [5]

    def test_read_frame_returns_copy(self) -> None:
        """Test that later pushes do not alter a returned frame."""
        buffer = FrameBuffer(frame_size=2, max_frames=2)
        buffer.push(np.array([1, 2], dtype=np.float32))

        frame = buffer.read_frame()
        buffer.push(np.array([9, 9], dtype=np.float32))

        assert frame.tolist() == [1, 2]

    def test_overflow_drops_oldest(self) -> None:
        """Test that capacity is never exceeded."""
        buffer = FrameBuffer(frame_size=2, max_frames=2)
        buffer.push(np.array([1, 2, 3], dtype=np.float32))

        dropped = buffer.push(np.array([4, 5], dtype=np.float32))

        assert dropped == 1
        assert buffer.sample_count() == buffer.capacity == 4
        assert buffer.peek().tolist() == [2, 3, 4, 5]
        assert buffer.dropped_samples == 1

    def test_chunk_larger_than_capacity(self) -> None:
        """Test that an oversized chunk keeps only its newest samples."""
        buffer = FrameBuffer(frame_size=2, max_frames=2)
        buffer.push(np.array([1], dtype=np.float32))

        dropped = buffer.push(np.arange(10, 16, dtype=np.float32))

        assert dropped == 3
        assert buffer.peek().tolist() == [12, 13, 14, 15]

    def test_read_all_frames(self) -> None:
        """Test draining every complete frame."""
        buffer = FrameBuffer(frame_size=3, max_frames=4)
        buffer.push(np.arange(8, dtype=np.float32))

        frames = buffer.read_all_frames()

        assert [f.tolist() for f in frames] == [[0, 1, 2], [3, 4, 5]]
        assert buffer.sample_count() == 2

    def test_peek_is_non_destructive(self) -> None:
        """Test peek with and without a count."""
        buffer = FrameBuffer(frame_size=4, max_frames=2)
        buffer.push(np.array([1, 2, 3], dtype=np.float32))

        assert buffer.peek(2).tolist() == [1, 2]
        assert buffer.peek(10).tolist() == [1, 2, 3]
        assert buffer.sample_count() == 3

    def test_clear_and_fill_level(self) -> None:
        """Test clear count and fill level percentage."""
        buffer = FrameBuffer(frame_size=5, max_frames=4)
        assert buffer.fill_level() == 0.0

        buffer.push(np.zeros(10, dtype=np.float32))
        assert buffer.fill_level() == 50.0

        assert buffer.clear() == 10
        assert buffer.sample_count() == 0

    def test_empty_push(self) -> None:
        """Test that empty input is a no-op."""
        buffer = FrameBuffer(frame_size=4)
        assert buffer.push(np.zeros(0, dtype=np.float32)) == 0
        assert buffer.sample_count() == 0

    def test_invalid_parameters(self) -> None:
        """Test validation of sizes."""
        with pytest.raises(ValueError, match="Frame size"):
            FrameBuffer(frame_size=0)

        with pytest.raises(ValueError, match="Max frames"):
            FrameBuffer(frame_size=160, max_frames=0)

    def test_factories(self) -> None:
        """Test engine and telephony frame sizes."""
        engine = create_engine_buffer()
        telephony = create_telephony_buffer()

        assert engine.frame_size == 1920
        assert engine.capacity == 1920 * 10
        assert telephony.frame_size == 160


class TestStreamBuffer:
    """Test stream buffer functionality."""

    @pytest.mark.asyncio
    async def test_basic_streaming(self, stream_buffer: StreamBuffer) -> None:
        """Test basic send/receive operations."""
        await stream_buffer.send("media-1")

        assert await stream_buffer.receive() == "media-1"

    @pytest.mark.asyncio
    async def test_nowait_operations(self, stream_buffer: StreamBuffer) -> None:
        """Test non-blocking operations."""
        with pytest.raises(asyncio.QueueEmpty):
            stream_buffer.receive_nowait()

        stream_buffer.send_nowait("media-1")
        assert stream_buffer.receive_nowait() == "media-1"

    @pytest.mark.asyncio
    async def test_buffer_capacity(self) -> None:
        """Test buffer capacity limits."""
        buffer = StreamBuffer(capacity=2)

        buffer.send_nowait("a")
        buffer.send_nowait("b")

        with pytest.raises(asyncio.QueueFull):
            buffer.send_nowait("c")

        await buffer.close()

    @pytest.mark.asyncio
    async def test_close_wakes_receiver(self) -> None:
        """Test that close unblocks a waiting receive with None."""
        buffer = StreamBuffer(capacity=4)
        receiver = asyncio.create_task(buffer.receive())
        await asyncio.sleep(0)

        await buffer.close()

        assert await asyncio.wait_for(receiver, timeout=1.0) is None
        assert buffer.closed
        assert await buffer.receive() is None

    @pytest.mark.asyncio
    async def test_send_after_close_is_ignored(self) -> None:
        """Test that a closed buffer discards items."""
        buffer = StreamBuffer(capacity=4)
        buffer.send_nowait("queued")
        await buffer.close()

        buffer.send_nowait("late")
        await buffer.send("later")

        assert await buffer.receive() is None

    @pytest.mark.asyncio
    async def test_producer_consumer(self, stream_buffer: StreamBuffer) -> None:
        """Test producer/consumer pattern."""
        messages = [f"message_{i}" for i in range(10)]
        received = []

        async def producer() -> None:
            for msg in messages:
                await stream_buffer.send(msg)

        async def consumer() -> None:
            for _ in range(len(messages)):
                received.append(await stream_buffer.receive())

        async with asyncio.TaskGroup() as tg:
            tg.create_task(producer())
            tg.create_task(consumer())

        assert received == messages
