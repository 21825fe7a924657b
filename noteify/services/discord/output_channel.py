"""
Output channel adapters.

Sessions talk to the chat platform only through ``OutputChannel``: sending
text and attachments, typing indicators, threads, reactions and a time-boxed
message collector. ``DiscordOutputChannel`` implements it on top of Pycord.
"""

import asyncio
import io
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

import discord

logger = logging.getLogger(__name__)


@dataclass
class Attachment:
    """An in-memory file to upload alongside a message."""

    filename: str
    data: bytes

    @classmethod
    def from_text(cls, filename: str, text: str) -> "Attachment":
        return cls(filename=filename, data=text.encode("utf-8"))


# -------------------------------------------------------------- #
# Output Channel Interface
# -------------------------------------------------------------- #


class OutputChannel(ABC):
    """Where a session posts summaries and listens for revision requests."""

    @property
    @abstractmethod
    def id(self) -> int:
        pass

    @abstractmethod
    async def send(self, content: str | None = None, attachment: Attachment | None = None) -> Any:
        """Post a message and return the platform message."""
        pass

    @abstractmethod
    async def send_typing(self) -> None:
        pass

    @abstractmethod
    async def start_thread(
        self, message: Any, name: str, auto_archive_minutes: int = 1440
    ) -> "OutputChannel":
        """Open a thread on a message this channel sent."""
        pass

    @abstractmethod
    async def react(self, message: Any, emoji: str) -> None:
        pass

    @abstractmethod
    def collect(
        self, predicate: Callable[[Any], bool], timeout: float
    ) -> AsyncIterator[Any]:
        """
        Yield incoming messages that match ``predicate`` until ``timeout``
        seconds after the call. Messages that arrive while the consumer is busy
        are buffered and yielded in order.
        """
        pass


# -------------------------------------------------------------- #
# Discord Output Channel
# -------------------------------------------------------------- #


class DiscordOutputChannel(OutputChannel):
    """OutputChannel backed by a Pycord text channel or thread."""

    def __init__(self, channel: "discord.abc.Messageable", bot: "discord.Bot"):
        self.channel = channel
        self.bot = bot

    @property
    def id(self) -> int:
        return self.channel.id

    async def send(self, content: str | None = None, attachment: Attachment | None = None):
        kwargs: dict[str, Any] = {}
        if content:
            kwargs["content"] = content
        if attachment is not None:
            kwargs["file"] = discord.File(io.BytesIO(attachment.data), filename=attachment.filename)
        return await self.channel.send(**kwargs)

    async def send_typing(self) -> None:
        await self.channel.trigger_typing()

    async def start_thread(
        self, message: "discord.Message", name: str, auto_archive_minutes: int = 1440
    ) -> "DiscordOutputChannel":
        thread = await message.create_thread(name=name, auto_archive_duration=auto_archive_minutes)
        return DiscordOutputChannel(thread, self.bot)

    async def react(self, message: "discord.Message", emoji: str) -> None:
        await message.add_reaction(emoji)

    async def collect(
        self, predicate: Callable[["discord.Message"], bool], timeout: float
    ) -> AsyncIterator["discord.Message"]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        inbox: asyncio.Queue[discord.Message] = asyncio.Queue()

        async def on_message(message: discord.Message) -> None:
            if message.channel.id != self.channel.id:
                return
            try:
                if predicate(message):
                    inbox.put_nowait(message)
            except Exception as e:
                logger.error(f"[DiscordOutputChannel] Collector predicate failed: {e}")

        self.bot.add_listener(on_message, "on_message")
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return
                try:
                    message = await asyncio.wait_for(inbox.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    return
                yield message
        finally:
            self.bot.remove_listener(on_message, "on_message")
