import asyncio
import logging
from typing import TYPE_CHECKING

import discord

if TYPE_CHECKING:
    from noteify.services.session.registry import SessionRegistry

logger = logging.getLogger(__name__)

# -------------------------------------------------------------- #
# Capture Sink
# -------------------------------------------------------------- #


class CaptureSink(discord.sinks.Sink):
    """
    Pycord sink that forwards every decoded PCM packet to the session registry.

    ``write`` runs on the voice client's decoder thread, so packets are handed
    to the event loop with ``call_soon_threadsafe`` instead of being buffered
    in ``audio_data`` like the stock sinks do.
    """

    def __init__(self, registry: "SessionRegistry", loop: asyncio.AbstractEventLoop):
        super().__init__()
        self.finished = False
        self.registry = registry
        self.loop = loop
        self.packets_forwarded = 0

    def write(self, data: bytes, user) -> None:
        if self.finished or not data:
            return
        try:
            self.loop.call_soon_threadsafe(self.registry.dispatch_audio, int(user), bytes(data))
            self.packets_forwarded += 1
        except RuntimeError:
            # Loop already closed during shutdown
            self.finished = True

    def cleanup(self) -> None:
        self.finished = True
        logger.debug(f"[CaptureSink] Finished after forwarding {self.packets_forwarded} packets")
