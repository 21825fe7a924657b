# -------------------------------------------------------------- #
# PCM Utility Functions
# -------------------------------------------------------------- #

# Discord voice audio after Opus decoding: 48 kHz, 16-bit signed, stereo
DISCORD_SAMPLE_RATE = 48000
DISCORD_BITS_PER_SAMPLE = 16
DISCORD_CHANNELS = 2


def calculate_pcm_duration_ms(
    num_bytes: int,
    sample_rate: int = DISCORD_SAMPLE_RATE,
    bits_per_sample: int = DISCORD_BITS_PER_SAMPLE,
    channels: int = DISCORD_CHANNELS,
) -> int:
    """
    Calculate the duration in milliseconds for a given number of PCM bytes.

    Example:
        >>> calculate_pcm_duration_ms(192000)  # 1 second of Discord PCM
        1000
    """
    bytes_per_sample = bits_per_sample // 8
    bytes_per_second = sample_rate * bytes_per_sample * channels
    bytes_per_ms = bytes_per_second / 1000
    return int(num_bytes / bytes_per_ms)


def calculate_pcm_bytes(
    duration_ms: int,
    sample_rate: int = DISCORD_SAMPLE_RATE,
    bits_per_sample: int = DISCORD_BITS_PER_SAMPLE,
    channels: int = DISCORD_CHANNELS,
) -> int:
    """
    Calculate the number of PCM bytes for a given duration.

    Example:
        >>> calculate_pcm_bytes(1000)  # 1 second of Discord PCM
        192000
    """
    bytes_per_sample = bits_per_sample // 8
    bytes_per_second = sample_rate * bytes_per_sample * channels
    bytes_per_ms = bytes_per_second / 1000
    return int(duration_ms * bytes_per_ms)
