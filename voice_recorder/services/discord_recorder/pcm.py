# -------------------------------------------------------------- #
# PCM Format
# -------------------------------------------------------------- #


class DiscordRecorderConstants:
    """Raw audio format of a decoded Discord voice stream, plus output settings."""

    # Set by Discord's Opus stream; ffmpeg is told the same values
    DISCORD_SAMPLE_RATE = 48000
    DISCORD_BITS_PER_SAMPLE = 16
    DISCORD_CHANNELS = 2
    FFMPEG_INPUT_FORMAT = "s16le"

    BYTES_PER_SAMPLE = DISCORD_BITS_PER_SAMPLE // 8
    BYTES_PER_MS = DISCORD_SAMPLE_RATE // 1000 * DISCORD_CHANNELS * BYTES_PER_SAMPLE  # 192

    # One Opus packet = 20ms = 960 samples per channel = 3840 bytes
    FRAME_MS = 20
    SAMPLES_PER_FRAME = DISCORD_SAMPLE_RATE // 1000 * FRAME_MS
    FRAME_BYTES = BYTES_PER_MS * FRAME_MS

    STAGING_EXTENSION = "pcm"
    OUTPUT_EXTENSION = "mp3"
    MP3_BITRATE = "128k"


# -------------------------------------------------------------- #
# PCM Utility Functions
# -------------------------------------------------------------- #


def calculate_pcm_duration_ms(num_bytes: int) -> int:
    """
    Whole milliseconds of Discord PCM in num_bytes.

    Example:
        >>> calculate_pcm_duration_ms(192_000)
        1000
    """
    return num_bytes // DiscordRecorderConstants.BYTES_PER_MS


def frame_aligned_length(num_bytes: int) -> int:
    """
    Largest number of bytes <= num_bytes that holds only whole 20ms frames.

    Example:
        >>> frame_aligned_length(3840 * 2 + 100)
        7680
    """
    return num_bytes - num_bytes % DiscordRecorderConstants.FRAME_BYTES
