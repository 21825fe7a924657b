"""
In-memory stand-ins for the platform adapters and the decode stage.

Sessions only talk to Discord through OutputChannel and VoiceConnection, so
these fakes let the full pause/stop/revise flow run without a bot.
"""

import asyncio
import itertools
from unittest.mock import AsyncMock

import pytest

from noteify.services.discord.output_channel import Attachment, OutputChannel
from noteify.services.discord.voice_connection import VoiceConnection

_message_ids = itertools.count(1000)


class FakeAuthor:
    def __init__(self, user_id: int, bot: bool = False):
        self.id = user_id
        self.bot = bot


class FakeMessage:
    def __init__(self, content: str | None = None, author_id: int = 0, bot: bool = False):
        self.id = next(_message_ids)
        self.content = content
        self.author = FakeAuthor(author_id, bot)
        self.attachment: Attachment | None = None


class FakeOutputChannel(OutputChannel):
    """Records everything sent; ``collect`` replays ``incoming`` then ends."""

    def __init__(self, channel_id: int = 555, block_collect: bool = False):
        self._id = channel_id
        self.sent: list[FakeMessage] = []
        self.typing_count = 0
        self.threads: list[tuple[FakeMessage, str, int, "FakeOutputChannel"]] = []
        self.reactions: list[tuple[FakeMessage, str]] = []
        self.incoming: list[FakeMessage] = []
        self.block_collect = block_collect
        self.fail_sends = False

    @property
    def id(self) -> int:
        return self._id

    async def send(self, content=None, attachment=None):
        if self.fail_sends:
            raise RuntimeError("Missing Permissions")
        message = FakeMessage(content, author_id=1)
        message.attachment = attachment
        self.sent.append(message)
        return message

    async def send_typing(self) -> None:
        self.typing_count += 1

    async def start_thread(self, message, name, auto_archive_minutes=1440):
        thread = FakeOutputChannel(channel_id=self._id + 1)
        self.threads.append((message, name, auto_archive_minutes, thread))
        return thread

    async def react(self, message, emoji) -> None:
        self.reactions.append((message, emoji))

    async def collect(self, predicate, timeout):
        if self.block_collect:
            await asyncio.Event().wait()
        for message in self.incoming:
            if predicate(message):
                yield message

    @property
    def texts(self) -> list[str | None]:
        return [message.content for message in self.sent]


class FakeVoiceConnection(VoiceConnection):
    def __init__(self, channel_id: int = 444, guild_id: int = 111):
        self._channel_id = channel_id
        self._guild_id = guild_id
        self.joins = 0
        self.leaves = 0
        self.fail_join = False
        self.connected = False

    @property
    def channel_id(self) -> int:
        return self._channel_id

    @property
    def guild_id(self) -> int | None:
        return self._guild_id

    async def join(self) -> None:
        self.joins += 1
        if self.fail_join:
            raise RuntimeError("Already connected to a voice channel")
        self.connected = True

    async def leave(self) -> None:
        self.leaves += 1
        self.connected = False


class FakeDecodeStage:
    """The WAV buffer is a fixed header plus every PCM byte written."""

    def __init__(self, speaker_id: int, fail_on_finish: bool = False):
        self.speaker_id = speaker_id
        self.fail_on_finish = fail_on_finish
        self.started = False
        self.aborted = False
        self.data = bytearray()

    async def start(self) -> None:
        self.started = True

    async def write(self, data: bytes) -> None:
        self.data.extend(data)

    async def finish(self) -> bytes:
        if self.fail_on_finish:
            raise RuntimeError("ffmpeg exited with code 1")
        return b"RIFF" + bytes(self.data)

    async def abort(self) -> None:
        self.aborted = True


# -------------------------------------------------------------- #
# Fixtures
# -------------------------------------------------------------- #


@pytest.fixture
def output_channel() -> FakeOutputChannel:
    return FakeOutputChannel()


@pytest.fixture
def voice() -> FakeVoiceConnection:
    return FakeVoiceConnection()


@pytest.fixture
def decode_failures() -> set[int]:
    """Speaker ids whose decode stages fail on finish."""
    return set()


@pytest.fixture
def stages() -> list[FakeDecodeStage]:
    return []


@pytest.fixture
def stage_factory(stages, decode_failures):
    def factory(speaker_id: int) -> FakeDecodeStage:
        stage = FakeDecodeStage(speaker_id, fail_on_finish=speaker_id in decode_failures)
        stages.append(stage)
        return stage

    return factory


@pytest.fixture
def mock_ollama_manager() -> AsyncMock:
    """Ollama request manager whose ``complete`` returns a canned summary."""
    manager = AsyncMock()
    manager.complete = AsyncMock(return_value="- The party entered the dungeon")
    return manager


@pytest.fixture
def make_message():
    return FakeMessage
