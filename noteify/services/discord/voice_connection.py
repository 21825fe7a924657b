import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import discord

from noteify.services.voice_capture.sink import CaptureSink

if TYPE_CHECKING:
    from noteify.services.session.registry import SessionRegistry

logger = logging.getLogger(__name__)

# -------------------------------------------------------------- #
# Voice Connection Interface
# -------------------------------------------------------------- #


class VoiceConnection(ABC):
    """Joins a voice channel and streams received audio into the registry."""

    @property
    @abstractmethod
    def channel_id(self) -> int:
        pass

    @property
    @abstractmethod
    def guild_id(self) -> int | None:
        pass

    @abstractmethod
    async def join(self) -> None:
        """Connect (or reconnect) and start receiving audio."""
        pass

    @abstractmethod
    async def leave(self) -> None:
        """Stop receiving audio and disconnect."""
        pass


# -------------------------------------------------------------- #
# Discord Voice Connection
# -------------------------------------------------------------- #


class DiscordVoiceConnection(VoiceConnection):
    """
    Pycord voice connection for one session.

    The bot holds one voice client per guild; joining reuses or moves an
    existing client instead of opening a second one.
    """

    def __init__(self, channel: "discord.VoiceChannel", registry: "SessionRegistry"):
        self.channel = channel
        self.registry = registry
        self.voice_client: discord.VoiceClient | None = None
        self._sink: CaptureSink | None = None

    @property
    def channel_id(self) -> int:
        return self.channel.id

    @property
    def guild_id(self) -> int | None:
        return self.channel.guild.id if self.channel.guild else None

    async def join(self) -> None:
        existing = self.channel.guild.voice_client if self.channel.guild else None

        if existing is not None and existing.is_connected():
            if existing.channel.id != self.channel.id:
                await existing.move_to(self.channel)
            self.voice_client = existing
        else:
            self.voice_client = await self.channel.connect()

        if self.voice_client.recording:
            self.voice_client.stop_recording()

        self._sink = CaptureSink(self.registry, asyncio.get_running_loop())
        # sync_start=False keeps the event loop from blocking on the first packet
        self.voice_client.start_recording(self._sink, self._on_recording_finished, sync_start=False)
        logger.info(f"[DiscordVoiceConnection] Listening in voice channel {self.channel.id}")

    async def leave(self) -> None:
        if self.voice_client is None:
            return

        try:
            if self.voice_client.recording:
                self.voice_client.stop_recording()
        finally:
            await self.voice_client.disconnect(force=True)
            self.voice_client = None
            logger.info(f"[DiscordVoiceConnection] Left voice channel {self.channel.id}")

    async def _on_recording_finished(self, sink: CaptureSink, *_args) -> None:
        logger.debug(
            f"[DiscordVoiceConnection] Recording finished in {self.channel.id} "
            f"({sink.packets_forwarded} packets forwarded)"
        )
