import math
import re
import uuid
from datetime import datetime
from zoneinfo import ZoneInfo

# -------------------------------------------------------------- #
# Constants
# -------------------------------------------------------------- #


# Discord hard limit for a single message body
DISCORD_MESSAGE_CHARACTER_LIMIT = 2000

# ~4 characters per token for the summarizer models we run
CHARACTERS_PER_TOKEN = 4

JOB_UUID_LENGTH = 16

# whisper.cpp emits these for silent or near-silent audio
_TRANSCRIPTION_ARTIFACTS = re.compile(r'\s*\[BLANK_AUDIO\]\s*|""')

_USER_MENTION = re.compile(r"^<@!?(\d+)>$")


# -------------------------------------------------------------- #
# Generators
# -------------------------------------------------------------- #


def generate_variable_char_uuid(length: int) -> str:
    """Generate a unique identifier of specified length."""
    if length <= 0 or length > 32:
        raise ValueError("Length must be between 1 and 32")
    return uuid.uuid4().hex[:length]


def generate_16_char_uuid() -> str:
    """Generate a unique 16-character identifier."""
    return generate_variable_char_uuid(JOB_UUID_LENGTH)


# -------------------------------------------------------------- #
# Util Functions
# -------------------------------------------------------------- #


def get_current_timestamp_est() -> datetime:
    """Get the current EST timestamp."""
    return datetime.now(ZoneInfo("America/New_York"))


def estimate_tokens(text: str | None) -> int:
    """
    Estimate the number of language-model tokens in a string.

    Uses the characters/4 heuristic, rounded up so short strings never count
    as zero. Empty or missing text is 0.
    """
    if not text:
        return 0
    return math.ceil(len(text) / CHARACTERS_PER_TOKEN)


def clean_transcription(text: str | None) -> str:
    """Strip known whisper artifacts ([BLANK_AUDIO] markers, empty quote pairs)."""
    if not text:
        return ""
    return _TRANSCRIPTION_ARTIFACTS.sub("", text)


def extract_user_id(mention: str | None) -> str | None:
    """
    Extract the numeric Discord user id from a mention string.

    Handles both ``<@123>`` and nickname ``<@!123>`` mentions.

    Returns:
        The id as a string, or None if the value is not a mention
    """
    if not mention:
        return None
    match = _USER_MENTION.match(mention.strip())
    return match.group(1) if match else None


def split_message(text: str, limit: int = DISCORD_MESSAGE_CHARACTER_LIMIT) -> list[str]:
    """
    Split text into parts no longer than ``limit`` characters.

    Prefers line boundaries, then word boundaries, and only cuts inside a word
    when a single word is longer than the limit.

    Args:
        text: The text to split
        limit: Maximum characters per part

    Returns:
        List of parts in order (empty list for empty text)
    """
    if limit <= 0:
        raise ValueError("limit must be positive")

    parts: list[str] = []
    remaining = text.strip()

    while len(remaining) > limit:
        cut = remaining.rfind("\n", 0, limit + 1)
        if cut <= 0:
            cut = remaining.rfind(" ", 0, limit + 1)
        if cut <= 0:
            cut = limit

        part = remaining[:cut].rstrip()
        if part:
            parts.append(part)
        remaining = remaining[cut:].lstrip()

    if remaining:
        parts.append(remaining)

    return parts


def format_duration(ms: int | float) -> str:
    """Format a millisecond duration as ``HH:MM:SS:mmm`` (e.g. 65000 -> 00:01:05:000)."""
    if not isinstance(ms, (int, float)) or ms < 0:
        return "00:00:00:000"

    ms = int(ms)
    hours = ms // 3_600_000
    minutes = (ms % 3_600_000) // 60_000
    seconds = (ms % 60_000) // 1000
    milliseconds = ms % 1000

    return f"{hours:02d}:{minutes:02d}:{seconds:02d}:{milliseconds:03d}"
