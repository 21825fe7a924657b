"""
Session state machine.

One SessionState per live session, keyed by the owner's user id:

    UNINITIALIZED --start--> ACTIVE <--pause/unpause--> PAUSED
    ACTIVE | PAUSED --stop--> REVIEWING --window expires--> CLOSED

The session owns its chat log, token budget, utterance capture and
transcription queue. Only the command paths in this module mutate the chat
log; transcript lines arrive through ``append_transcript`` from the queue
worker.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import os
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from noteify.services.discord.output_channel import Attachment
from noteify.services.session.chat_log import ASSISTANT, SYSTEM, USER, ChatLog, ChatMessage
from noteify.services.summary.prompts import (
    INITIAL_PROMPT,
    PAUSE_SUMMARY_MESSAGE,
    REPLY_PROMPT,
    REVISION_OPEN_MESSAGE,
    SUMMARY_FAILED_MESSAGE,
    THREAD_NAME_TEMPLATE,
    TOKEN_LIMIT_MESSAGE,
    TOKEN_WARNING_MESSAGE,
    TRANSCRIPT_FILENAME_TEMPLATE,
)
from noteify.services.transcription_queue.manager import TranscriptionQueue
from noteify.services.voice_capture.capture import (
    CaptureConstants,
    CapturedUtterance,
    DecodeStage,
    UtteranceCaptureManager,
)
from noteify.utils import estimate_tokens, get_current_timestamp_est

if TYPE_CHECKING:
    from noteify.server.services import WhisperServerHandler
    from noteify.services.discord.output_channel import OutputChannel
    from noteify.services.discord.voice_connection import VoiceConnection
    from noteify.services.manager import BaseAsyncLoggingService
    from noteify.services.session.registry import SessionRegistry
    from noteify.services.summary.coordinator import SummaryCoordinator

# -------------------------------------------------------------- #
# Configuration Constants
# -------------------------------------------------------------- #


def _optional_float(value: str | None) -> float | None:
    return float(value) if value else None


class SessionConstants:
    """Configuration constants for live sessions."""

    # Context budget of the summarizer model, in estimated tokens
    MAX_TOKEN_LIMIT = int(os.getenv("NOTEIFY_MAX_TOKEN_LIMIT", "40000"))
    TOKEN_WARNING_RATIO = 0.75
    TOKEN_LIMIT_RATIO = 0.85

    # None waits for the transcription queue as long as it takes
    DRAIN_TIMEOUT_SECONDS = _optional_float(os.getenv("NOTEIFY_DRAIN_TIMEOUT_SECONDS"))

    REVISION_WINDOW_SECONDS = 30 * 60
    THREAD_AUTO_ARCHIVE_MINUTES = 1440

    OWNER_DISPLAY_NAME = "GM"


class SessionStatus(enum.Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    PAUSED = "paused"
    REVIEWING = "reviewing"
    CLOSED = "closed"


class SessionTransitionError(RuntimeError):
    """Raised when a lifecycle operation is not valid in the session's current state."""


TokenLimitPolicy = Callable[["SessionState"], Awaitable[None]]


# -------------------------------------------------------------- #
# Session State
# -------------------------------------------------------------- #


class SessionState:
    """A single owner's capture, transcript and summary lifecycle."""

    def __init__(
        self,
        session_id: int,
        voice: "VoiceConnection",
        output_channel: "OutputChannel",
        participants: dict[int, str],
        registry: "SessionRegistry",
        transcriber: "WhisperServerHandler",
        summarizer: "SummaryCoordinator",
        stage_factory: Callable[[int], DecodeStage],
        logging_service: "BaseAsyncLoggingService",
        max_token_limit: int = SessionConstants.MAX_TOKEN_LIMIT,
        drain_timeout_seconds: float | None = SessionConstants.DRAIN_TIMEOUT_SECONDS,
        revision_window_seconds: float = SessionConstants.REVISION_WINDOW_SECONDS,
        silence_duration_ms: int = CaptureConstants.SILENCE_DURATION_MS,
        token_limit_policy: TokenLimitPolicy | None = None,
    ):
        self.session_id = session_id
        self.voice = voice
        self.output_channel = output_channel
        self.participants = dict(participants)
        self.participants[session_id] = SessionConstants.OWNER_DISPLAY_NAME
        self.registry = registry
        self.summarizer = summarizer
        self.logging_service = logging_service

        self.max_token_limit = max_token_limit
        self.drain_timeout_seconds = drain_timeout_seconds
        self.revision_window_seconds = revision_window_seconds
        self.token_limit_policy = token_limit_policy

        self.status = SessionStatus.UNINITIALIZED
        self.created_at = get_current_timestamp_est()
        self.last_activity_at = self.created_at

        self.chat_log = ChatLog(INITIAL_PROMPT)
        self.queue = TranscriptionQueue(
            session_id=session_id,
            transcriber=transcriber,
            target=self,
            logging_service=logging_service,
        )
        self.capture = UtteranceCaptureManager(
            session_id=session_id,
            stage_factory=stage_factory,
            on_utterance=self._on_utterance,
            logging_service=logging_service,
            silence_duration_ms=silence_duration_ms,
        )
        self.capture.set_participants(self.participants)

        self.thread: OutputChannel | None = None
        self._listening = False
        self._transition_lock = asyncio.Lock()
        self._warned_epoch: int | None = None
        self._limit_reported_epoch: int | None = None
        self._revision_task: asyncio.Task | None = None
        self._policy_task: asyncio.Task | None = None
        self._closed_event = asyncio.Event()

    # -------------------------------------------------------------- #
    # Properties
    # -------------------------------------------------------------- #

    @property
    def voice_channel_id(self) -> int:
        return self.voice.channel_id

    @property
    def guild_id(self) -> int | None:
        return self.voice.guild_id

    @property
    def output_channel_id(self) -> int:
        return self.output_channel.id

    @property
    def token_count(self) -> int:
        return self.chat_log.token_count

    def is_open(self) -> bool:
        return self.status not in (SessionStatus.UNINITIALIZED, SessionStatus.CLOSED)

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    # -------------------------------------------------------------- #
    # Lifecycle
    # -------------------------------------------------------------- #

    async def start(self) -> None:
        """UNINITIALIZED -> ACTIVE: register, join voice and start listening."""
        async with self._transition("start", {SessionStatus.UNINITIALIZED}):
            self.registry.register(self)
            self.status = SessionStatus.ACTIVE
            await self._begin_listening()

            await self.logging_service.info(
                f"[Session {self.session_id}] Started in voice channel {self.voice_channel_id} "
                f"with participants: {', '.join(self.participants.values())}"
            )

    async def pause(self) -> None:
        """ACTIVE -> PAUSED: drain, summarize and start a new chat log epoch."""
        async with self._transition("pause", {SessionStatus.ACTIVE}):
            self.status = SessionStatus.PAUSED
            await self._end_listening()
            await self._drain()

            await self.logging_service.info(
                f"[Session {self.session_id}] Paused. Summarizing {len(self.chat_log)} message(s)"
            )

            transcript = self._transcript_attachment()
            summary = await self._summarize()
            if summary is None:
                return

            await self._post_summary(summary)
            await self._send(PAUSE_SUMMARY_MESSAGE, attachment=transcript)

            self.chat_log.reset(
                [ChatMessage(SYSTEM, INITIAL_PROMPT), ChatMessage(ASSISTANT, summary)],
                token_count=estimate_tokens(summary),
            )
            self._touch()

    async def unpause(self) -> None:
        """PAUSED -> ACTIVE: rejoin the same voice channel and resume listening."""
        async with self._transition("unpause", {SessionStatus.PAUSED}):
            self.status = SessionStatus.ACTIVE
            await self._begin_listening()
            self._touch()

            await self.logging_service.info(f"[Session {self.session_id}] Resumed")

    async def stop(self, open_revision_window: bool = True) -> None:
        """
        ACTIVE | PAUSED -> REVIEWING: final summary, transcript and revision thread.

        The revision window runs in the background; the session closes when it
        expires. Without a window it closes at once. If the summary fails the
        transcript is still posted before the session closes.
        """
        async with self._transition("stop", {SessionStatus.ACTIVE, SessionStatus.PAUSED}):
            self.status = SessionStatus.REVIEWING
            await self._end_listening()
            await self._drain()

            await self.logging_service.info(
                f"[Session {self.session_id}] Stopped. Summarizing {len(self.chat_log)} message(s)"
            )

            transcript = self._transcript_attachment()
            summary = await self._summarize()
            if summary is None:
                await self._send(attachment=transcript)
                await self._close()
                return

            await self._post_summary(summary)
            attachment_message = await self._send(attachment=transcript)

            self.chat_log.append(ASSISTANT, summary)
            self.chat_log.append(SYSTEM, REPLY_PROMPT)
            self._touch()

            if not open_revision_window:
                await self._close()
                return

            self.thread = await self._open_revision_thread(attachment_message)
            self._revision_task = asyncio.create_task(self._run_revision_window(self.thread))

    async def close(self) -> None:
        """Force the session closed, cutting any revision window short."""
        if self.status is SessionStatus.CLOSED:
            return

        for task in (self._revision_task, self._policy_task):
            if task and not task.done() and task is not asyncio.current_task():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        if self.status is not SessionStatus.CLOSED:
            await self._end_listening(flush=False)
            await self._close()

    # -------------------------------------------------------------- #
    # Audio & Transcript Input
    # -------------------------------------------------------------- #

    def on_audio(self, speaker_id: int, pcm: bytes) -> None:
        """Route one PCM packet from the voice sink."""
        if self.status is not SessionStatus.ACTIVE:
            return
        self.capture.on_audio(speaker_id, pcm)

    async def append_transcript(self, speaker_id: int, text: str) -> None:
        """Append one transcript line as a user message and check the token budget."""
        name = self.participants.get(speaker_id, str(speaker_id))
        self.chat_log.append(USER, f"<{name}>{text}</{name}>")
        self._touch()
        await self._check_token_budget()

    # -------------------------------------------------------------- #
    # Revision Hooks
    # -------------------------------------------------------------- #

    def chat_messages(self) -> list[dict[str, str]]:
        return self.chat_log.as_messages()

    def add_revision_request(self, content: str) -> None:
        self.chat_log.append(USER, content)
        self._touch()

    def add_revision_reply(self, content: str) -> None:
        self.chat_log.append(ASSISTANT, content)
        self._touch()

    # -------------------------------------------------------------- #
    # Status
    # -------------------------------------------------------------- #

    def get_status(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "guild_id": self.guild_id,
            "voice_channel_id": self.voice_channel_id,
            "output_channel_id": self.output_channel_id,
            "participants": dict(self.participants),
            "chat_log_messages": len(self.chat_log),
            "token_count": self.token_count,
            "max_token_limit": self.max_token_limit,
            "epoch": self.chat_log.epoch,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "capture": self.capture.get_statistics(),
            "queue": self.queue.get_statistics(),
        }

    # -------------------------------------------------------------- #
    # Private Methods
    # -------------------------------------------------------------- #

    @contextlib.asynccontextmanager
    async def _transition(self, operation: str, allowed: set[SessionStatus]):
        if self._transition_lock.locked():
            raise SessionTransitionError(
                f"Can't {operation} right now, the session is still finishing another command"
            )
        if self.status not in allowed:
            raise SessionTransitionError(
                f"Can't {operation} a session that is {self.status.value}"
            )
        async with self._transition_lock:
            yield

    async def _begin_listening(self) -> None:
        for speaker_id in self.participants:
            self.registry.route(speaker_id, self)
        self.capture.open()
        self._listening = True

        try:
            await self.voice.join()
        except Exception as e:
            await self.logging_service.error(
                f"[Session {self.session_id}] Could not join voice channel {self.voice_channel_id}: {e}"
            )

    async def _end_listening(self, flush: bool = True) -> None:
        if not self._listening:
            return
        self._listening = False

        self.registry.unroute_all(self)
        try:
            await self.voice.leave()
        except Exception as e:
            await self.logging_service.error(
                f"[Session {self.session_id}] Could not leave voice channel cleanly: {e}"
            )
        await self.capture.close_all(flush=flush)

    async def _drain(self) -> None:
        await self.queue.wait_until_idle(self.drain_timeout_seconds)
        await self.logging_service.debug(
            f"[Session {self.session_id}] Transcription queue drained: {self.queue.get_statistics()}"
        )

    async def _on_utterance(self, utterance: CapturedUtterance) -> None:
        await self.queue.enqueue(
            speaker_id=utterance.speaker_id,
            buffer=utterance.buffer,
            utterance_start=utterance.started_at,
            utterance_end=utterance.ended_at,
        )

    async def _summarize(self) -> str | None:
        """Run the summarizer over the chat log. On failure report it and return None."""
        try:
            await self.output_channel.send_typing()
        except Exception as e:
            await self.logging_service.warning(
                f"[Session {self.session_id}] Could not send typing indicator: {e}"
            )

        try:
            return await self.summarizer.summarize(self.chat_log.as_messages())
        except Exception as e:
            await self.logging_service.error(
                f"[Session {self.session_id}] Summarization failed: {e}"
            )
            await self._send(SUMMARY_FAILED_MESSAGE.format(error=e))
            return None

    async def _post_summary(self, summary: str) -> None:
        try:
            await self.summarizer.post_split(self.output_channel, summary)
        except Exception as e:
            await self.logging_service.error(
                f"[Session {self.session_id}] Could not post summary: {e}"
            )

    async def _send(self, content: str | None = None, attachment: Attachment | None = None):
        try:
            return await self.output_channel.send(content, attachment=attachment)
        except Exception as e:
            await self.logging_service.error(
                f"[Session {self.session_id}] Could not send to channel {self.output_channel_id}: {e}"
            )
            return None

    def _transcript_attachment(self) -> Attachment:
        date = get_current_timestamp_est().strftime("%Y-%m-%d")
        return Attachment.from_text(
            TRANSCRIPT_FILENAME_TEMPLATE.format(date=date), self.chat_log.build_transcript()
        )

    async def _check_token_budget(self) -> None:
        if self.status is not SessionStatus.ACTIVE:
            return

        count = self.chat_log.token_count
        epoch = self.chat_log.epoch
        warning_at = self.max_token_limit * SessionConstants.TOKEN_WARNING_RATIO
        limit_at = self.max_token_limit * SessionConstants.TOKEN_LIMIT_RATIO

        if warning_at <= count <= limit_at:
            if self._warned_epoch == epoch:
                return
            self._warned_epoch = epoch
            await self.logging_service.warning(
                f"[Session {self.session_id}] Token budget at {count}/{self.max_token_limit}"
            )
            await self._send(TOKEN_WARNING_MESSAGE)

        elif count > limit_at:
            if self._limit_reported_epoch == epoch:
                return
            self._limit_reported_epoch = epoch
            await self.logging_service.warning(
                f"[Session {self.session_id}] Token budget exceeded "
                f"{SessionConstants.TOKEN_LIMIT_RATIO:.0%}: {count}/{self.max_token_limit}"
            )
            await self._send(TOKEN_LIMIT_MESSAGE)

            if self.token_limit_policy is not None:
                # Off the queue worker; the hook may pause or stop, which drains the queue
                self._policy_task = asyncio.create_task(self._run_token_limit_policy())

    async def _run_token_limit_policy(self) -> None:
        try:
            await self.token_limit_policy(self)
        except Exception as e:
            await self.logging_service.error(
                f"[Session {self.session_id}] Token limit policy failed: {e}"
            )

    async def _open_revision_thread(self, attachment_message) -> "OutputChannel":
        date = get_current_timestamp_est().strftime("%Y-%m-%d")
        thread = self.output_channel
        if attachment_message is not None:
            try:
                thread = await self.output_channel.start_thread(
                    attachment_message,
                    THREAD_NAME_TEMPLATE.format(date=date),
                    SessionConstants.THREAD_AUTO_ARCHIVE_MINUTES,
                )
            except Exception as e:
                await self.logging_service.error(
                    f"[Session {self.session_id}] Could not open revision thread, "
                    f"using the session channel: {e}"
                )

        try:
            await thread.send(
                REVISION_OPEN_MESSAGE.format(minutes=int(self.revision_window_seconds // 60))
            )
        except Exception as e:
            await self.logging_service.error(
                f"[Session {self.session_id}] Could not announce revision window: {e}"
            )
        return thread

    async def _run_revision_window(self, thread: "OutputChannel") -> None:
        try:
            await self.summarizer.run_revision_window(
                thread, self, self.revision_window_seconds
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self.logging_service.error(
                f"[Session {self.session_id}] Revision window ended with an error: {e}"
            )
        finally:
            if self.status is not SessionStatus.CLOSED:
                await self._close()

    async def _close(self) -> None:
        self.status = SessionStatus.CLOSED
        self.registry.unregister(self)
        await self.queue.close()
        self._closed_event.set()
        await self.logging_service.info(
            f"[Session {self.session_id}] Closed after {self.chat_log.epoch + 1} epoch(s)"
        )

    def _touch(self) -> None:
        self.last_activity_at = get_current_timestamp_est()
