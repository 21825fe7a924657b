"""
Summary coordinator.

Drives the summarizer model for a session:
- ``summarize``: one model call over the full chat log
- ``post_split``: post long text as numbered parts within Discord's limit
- ``run_revision_window``: the owner-only, time-boxed revision loop after stop
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

from noteify.services.summary.prompts import (
    PART_FOOTER_TEMPLATE,
    REVISION_FAILED_MESSAGE,
    REVISION_LOCKED_MESSAGE,
)
from noteify.utils import DISCORD_MESSAGE_CHARACTER_LIMIT, split_message

if TYPE_CHECKING:
    from noteify.services.discord.output_channel import OutputChannel
    from noteify.services.manager import BaseAsyncLoggingService
    from noteify.services.ollama_request_manager.manager import OllamaRequestManager


class RevisableSession(Protocol):
    """The parts of a session the revision loop reads and writes."""

    session_id: int

    def chat_messages(self) -> list[dict[str, str]]: ...

    def add_revision_request(self, content: str) -> None: ...

    def add_revision_reply(self, content: str) -> None: ...


# -------------------------------------------------------------- #
# Summary Coordinator
# -------------------------------------------------------------- #


class SummaryCoordinator:
    REVISION_ACK_EMOJI = "🔄"

    def __init__(
        self,
        ollama_request_manager: "OllamaRequestManager",
        logging_service: "BaseAsyncLoggingService",
        message_limit: int = DISCORD_MESSAGE_CHARACTER_LIMIT,
    ):
        self.ollama_request_manager = ollama_request_manager
        self.logging_service = logging_service
        self.message_limit = message_limit

    # -------------------------------------------------------------- #
    # Summaries
    # -------------------------------------------------------------- #

    async def summarize(self, messages: list[dict[str, str]]) -> str:
        """
        Ask the model to summarize the chat log.

        Raises:
            RuntimeError: If the model call fails or the reply is blank
        """
        await self.logging_service.info(
            f"[SummaryCoordinator] Summarizing {len(messages)} chat log message(s)"
        )
        summary = await self.ollama_request_manager.complete(messages)
        if not summary or not summary.strip():
            raise RuntimeError("the model returned an empty summary")
        return summary

    async def post_split(self, channel: "OutputChannel", text: str) -> list[Any]:
        """
        Post text as ``(Part i/n)`` messages, each within the message limit
        including its footer.

        Returns:
            The sent messages, in order
        """
        reserve = len(PART_FOOTER_TEMPLATE.format(index=999, total=999))
        parts = split_message(text, self.message_limit - reserve)

        sent = []
        for index, part in enumerate(parts, start=1):
            footer = PART_FOOTER_TEMPLATE.format(index=index, total=len(parts))
            sent.append(await channel.send(part + footer))
        return sent

    # -------------------------------------------------------------- #
    # Revision Window
    # -------------------------------------------------------------- #

    async def run_revision_window(
        self,
        channel: "OutputChannel",
        session: RevisableSession,
        duration_seconds: float,
    ) -> int:
        """
        Accept revision requests from the session owner until the window closes.

        Each request is handled to completion before the next one is read, so
        there is never more than one model call in flight for the session.

        Returns:
            Number of revision requests handled
        """
        owner_id = session.session_id

        def from_owner(message) -> bool:
            return not message.author.bot and message.author.id == owner_id

        handled = 0
        async for message in channel.collect(from_owner, duration_seconds):
            handled += 1
            await self._handle_revision_request(channel, session, message)

        try:
            await channel.send(REVISION_LOCKED_MESSAGE)
        except Exception as e:
            await self.logging_service.error(
                f"[SummaryCoordinator] Could not post locked notice for session {owner_id}: {e}"
            )

        await self.logging_service.info(
            f"[SummaryCoordinator] Revision window for session {owner_id} closed "
            f"after {handled} request(s)"
        )
        return handled

    async def _handle_revision_request(
        self, channel: "OutputChannel", session: RevisableSession, message
    ) -> None:
        try:
            await channel.react(message, self.REVISION_ACK_EMOJI)
            await channel.send_typing()
        except Exception as e:
            await self.logging_service.warning(
                f"[SummaryCoordinator] Could not acknowledge revision request: {e}"
            )

        session.add_revision_request(message.content)
        await self.logging_service.debug(
            f"[SummaryCoordinator] Session {session.session_id} asked: {message.content}"
        )

        try:
            reply = await self.ollama_request_manager.complete(session.chat_messages())
        except Exception as e:
            await self.logging_service.error(
                f"[SummaryCoordinator] Revision failed for session {session.session_id}: {e}"
            )
            try:
                await channel.send(REVISION_FAILED_MESSAGE.format(error=e))
            except Exception as send_error:
                await self.logging_service.error(
                    f"[SummaryCoordinator] Could not report revision failure: {send_error}"
                )
            return

        try:
            await self.post_split(channel, reply)
        except Exception as e:
            await self.logging_service.error(
                f"[SummaryCoordinator] Could not post revision for session {session.session_id}: {e}"
            )

        session.add_revision_reply(reply)
