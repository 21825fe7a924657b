"""
Session Manager Service.

Owns the process-wide SessionRegistry and maps owner commands onto the
owner's SessionState:
- One open session per owner (a session stays open through its revision window)
- Refuses new sessions once shutdown has started
- Stops every session on close
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from noteify.context import Context
    from noteify.services.discord.output_channel import OutputChannel
    from noteify.services.discord.voice_connection import VoiceConnection
    from noteify.services.manager import ServicesManager

from noteify.services.manager import BaseSessionManagerService
from noteify.services.session.registry import SessionRegistry
from noteify.services.session.state import (
    SessionConstants,
    SessionState,
    SessionStatus,
    SessionTransitionError,
    TokenLimitPolicy,
)
from noteify.services.summary.coordinator import SummaryCoordinator
from noteify.services.voice_capture.capture import CaptureConstants


class SessionManagerService(BaseSessionManagerService):
    """Service for managing live voice sessions."""

    def __init__(
        self,
        context: Context,
        max_token_limit: int = SessionConstants.MAX_TOKEN_LIMIT,
        drain_timeout_seconds: float | None = SessionConstants.DRAIN_TIMEOUT_SECONDS,
        revision_window_seconds: float = SessionConstants.REVISION_WINDOW_SECONDS,
        silence_duration_ms: int = CaptureConstants.SILENCE_DURATION_MS,
        token_limit_policy: TokenLimitPolicy | None = None,
    ):
        super().__init__(context)

        self.registry = SessionRegistry()
        self.summarizer: SummaryCoordinator | None = None

        self.max_token_limit = max_token_limit
        self.drain_timeout_seconds = drain_timeout_seconds
        self.revision_window_seconds = revision_window_seconds
        self.silence_duration_ms = silence_duration_ms
        self.token_limit_policy = token_limit_policy

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services: ServicesManager) -> None:
        await super().on_start(services)

        if self.services.ollama_request_manager is None:
            raise RuntimeError("SessionManagerService requires an Ollama request manager")

        self.summarizer = SummaryCoordinator(
            ollama_request_manager=self.services.ollama_request_manager,
            logging_service=self.services.logging_service,
        )
        await self.services.logging_service.info(
            f"Session Manager started (token limit: {self.max_token_limit}, "
            f"drain timeout: {self.drain_timeout_seconds or 'none'})"
        )

    async def on_close(self) -> None:
        """Stop every open session. Sessions under review are closed immediately."""
        for session in list(self.registry):
            try:
                if session.status in (SessionStatus.ACTIVE, SessionStatus.PAUSED):
                    await session.stop(open_revision_window=False)
                else:
                    await session.close()
            except Exception as e:
                await self.services.logging_service.error(
                    f"Failed to stop session {session.session_id} during shutdown: {e}"
                )
                await session.close()

        await self.services.logging_service.info("Session Manager stopped")

    # -------------------------------------------------------------- #
    # Session Commands
    # -------------------------------------------------------------- #

    async def start_session(
        self,
        owner_id: int,
        voice: VoiceConnection,
        output_channel: OutputChannel,
        participants: dict[int, str],
    ) -> SessionState:
        """
        Create, register and start a session for the owner.

        Raises:
            SessionTransitionError: If the owner already has an open session
                                    or the bot is shutting down
        """
        if self.context.is_shutting_down():
            raise SessionTransitionError("I'm shutting down and can't start new sessions")

        existing = self.registry.get(owner_id)
        if existing is not None:
            raise SessionTransitionError(
                f"You already have a session that is {existing.status.value}. "
                "Stop it (or wait for its revision window to close) first."
            )

        session = SessionState(
            session_id=owner_id,
            voice=voice,
            output_channel=output_channel,
            participants=participants,
            registry=self.registry,
            transcriber=self.server.whisper_server_client,
            summarizer=self.summarizer,
            stage_factory=self.services.ffmpeg_service_manager.create_decode_stage,
            logging_service=self.services.logging_service,
            max_token_limit=self.max_token_limit,
            drain_timeout_seconds=self.drain_timeout_seconds,
            revision_window_seconds=self.revision_window_seconds,
            silence_duration_ms=self.silence_duration_ms,
            token_limit_policy=self.token_limit_policy,
        )
        await session.start()
        return session

    async def pause_session(self, owner_id: int) -> SessionState:
        session = self._require_session(owner_id)
        await session.pause()
        return session

    async def unpause_session(self, owner_id: int) -> SessionState:
        session = self._require_session(owner_id)
        await session.unpause()
        return session

    async def stop_session(self, owner_id: int) -> SessionState:
        session = self._require_session(owner_id)
        await session.stop()
        return session

    # -------------------------------------------------------------- #
    # Lookup
    # -------------------------------------------------------------- #

    def get_session(self, owner_id: int) -> SessionState | None:
        return self.registry.get(owner_id)

    def list_sessions(self) -> list[dict]:
        return [session.get_status() for session in self.registry]

    def _require_session(self, owner_id: int) -> SessionState:
        session = self.registry.get(owner_id)
        if session is None:
            raise SessionTransitionError("You don't have a session running")
        return session
