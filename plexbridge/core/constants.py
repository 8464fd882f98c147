"""Audio processing constants."""


class AudioConstants:
    """Audio format constants for the telephony and engine legs."""

    # Sample rates
    TELEPHONY_SAMPLE_RATE = 8000  # mu-law @ 8kHz from the media stream
    ENGINE_SAMPLE_RATE = 24000    # Opus @ 24kHz on the engine leg

    # Frame timing
    TELEPHONY_CHUNK_MS = 20  # 20ms media chunks
    ENGINE_FRAME_MS = 80     # 80ms engine processing frames

    # Frame sizes (samples)
    TELEPHONY_CHUNK_SIZE = 160   # (8000 * 20) / 1000
    ENGINE_FRAME_SIZE = 1920     # (24000 * 80) / 1000

    # Buffering
    DEFAULT_MAX_FRAMES = 10
    DOWNLINK_MAX_FRAMES = 50  # 1s of telephony audio

    # PCM16 normalization
    PCM16_MAX = 32767
    PCM16_SCALE = 32768.0

    # Logging intervals
    LOG_INTERVAL_FRAMES = 50   # Log every 50 frames
    LOG_INTERVAL_STATS = 100
