from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from noteify.context import Context


# -------------------------------------------------------------- #
# Services Manager Class
# -------------------------------------------------------------- #


class ServicesManager:
    """Manager for handling multiple service instances."""

    def __init__(
        self,
        context: Context,
        logging_service: BaseAsyncLoggingService,
        ffmpeg_service_manager: BaseFFmpegServiceManager,
        ollama_request_manager: Any | None = None,
        session_manager: BaseSessionManagerService | None = None,
    ):
        self.context = context
        self.server = context.server_manager

        self.logging_service = logging_service

        # Audio conversion
        self.ffmpeg_service_manager = ffmpeg_service_manager

        # Language model
        self.ollama_request_manager = ollama_request_manager

        # Live voice sessions
        self.session_manager = session_manager

    async def initialize_all(self) -> None:
        """Initialize all service managers."""

        # Logging
        await self.logging_service.on_start(self)

        # Audio conversion
        await self.ffmpeg_service_manager.on_start(self)

        # Ollama request manager
        if self.ollama_request_manager:
            await self.ollama_request_manager.on_start(self)

        # Sessions depend on everything above
        if self.session_manager:
            await self.session_manager.on_start(self)

    async def shutdown_all(self, timeout: float = 60.0) -> None:
        """
        Gracefully shutdown all service managers, waiting for ongoing work to complete.

        This method ensures that:
        1. No new sessions are accepted
        2. Active sessions are stopped and their queues drained
        3. Model and audio services are closed
        4. Server connections are closed
        5. All logs are flushed

        Args:
            timeout: Maximum time in seconds to wait for services to shutdown (default: 60s)
        """
        import asyncio

        await self.logging_service.info("=" * 60)
        await self.logging_service.info("Starting graceful shutdown of all services...")

        if self.context:
            self.context.mark_shutdown_started()
            await self.logging_service.info("✓ Shutdown flag set - no new sessions will start")

        try:
            # Phase 1: Stop live sessions (drains their transcription queues)
            await self.logging_service.info("Phase 1: Stopping active voice sessions...")
            if self.session_manager:
                await asyncio.wait_for(self.session_manager.on_close(), timeout=timeout * 0.6)
                await self.logging_service.info("✓ All voice sessions stopped")

            # Phase 2: Close Ollama request manager
            await self.logging_service.info("Phase 2: Closing Ollama request manager...")
            if self.ollama_request_manager:
                await asyncio.wait_for(
                    self.ollama_request_manager.on_close(), timeout=timeout * 0.1
                )
                await self.logging_service.info("✓ Ollama request manager closed")

            # Phase 3: Stop FFmpeg decode stages
            await self.logging_service.info("Phase 3: Stopping FFmpeg service...")
            await asyncio.wait_for(self.ffmpeg_service_manager.on_close(), timeout=timeout * 0.1)
            await self.logging_service.info("✓ FFmpeg service stopped")

            # Phase 4: Disconnect from all servers (Whisper)
            await self.logging_service.info("Phase 4: Disconnecting from all servers...")
            if self.context and self.context.server_manager:
                await self.context.server_manager.disconnect_all()
                await self.logging_service.info("✓ All servers disconnected")

            await self.logging_service.info("✓ Graceful shutdown completed successfully")
            await self.logging_service.info("=" * 60)

        except asyncio.TimeoutError:
            await self.logging_service.error(
                f"⚠️  Shutdown timeout exceeded ({timeout}s) - forcing shutdown"
            )
        except Exception as e:
            await self.logging_service.error(f"⚠️  Error during shutdown: {e}")

        # Phase 5: Always flush and close logging (even if there were errors)
        try:
            await asyncio.wait_for(self.logging_service.on_close(), timeout=5.0)
        except asyncio.TimeoutError:
            pass


# -------------------------------------------------------------- #
# Base Service Manager Class
# -------------------------------------------------------------- #


class Manager(ABC):
    """Base class for all manager services."""

    def __init__(self, context: Context):
        self.context = context
        self.server = context.server_manager
        self.services = None

        # check if server has been initialized
        if self.server is not None and not self.server.is_initialized:
            raise RuntimeError(
                "ServerManager must be initialized before creating Manager instances."
            )

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services: ServicesManager) -> None:
        """Actions to perform on manager start."""
        self.services = services

    async def on_close(self) -> None:
        """Actions to perform on manager close."""
        pass


# -------------------------------------------------------------- #
# Specialized Manager Classes
# -------------------------------------------------------------- #


class BaseAsyncLoggingService(Manager):
    """Specialized manager for asynchronous logging services."""

    def __init__(self, context):
        super().__init__(context)

    @abstractmethod
    async def log(self, message: str, level: str = "INFO") -> None:
        """Log a message asynchronously."""
        pass

    @abstractmethod
    async def debug(self, message: str) -> None:
        """Log a debug message asynchronously."""
        pass

    @abstractmethod
    async def info(self, message: str) -> None:
        """Log an info message asynchronously."""
        pass

    @abstractmethod
    async def warning(self, message: str) -> None:
        """Log a warning message asynchronously."""
        pass

    @abstractmethod
    async def error(self, message: str) -> None:
        """Log an error message asynchronously."""
        pass

    @abstractmethod
    async def critical(self, message: str) -> None:
        """Log a critical message asynchronously."""
        pass


class BaseFFmpegServiceManager(Manager):
    """Specialized manager for FFmpeg services."""

    def __init__(self, context):
        super().__init__(context)

    @abstractmethod
    def get_ffmpeg_path(self) -> str:
        """Get the FFmpeg executable path."""
        pass

    @abstractmethod
    def create_decode_stage(self, speaker_id: int) -> Any:
        """Create a per-speaker PCM -> 16 kHz mono WAV decode stage."""
        pass


class BaseSessionManagerService(Manager):
    """Specialized manager for live voice sessions."""

    def __init__(self, context):
        super().__init__(context)

    @abstractmethod
    async def start_session(
        self,
        owner_id: int,
        voice: Any,  # VoiceConnection
        output_channel: Any,  # OutputChannel
        participants: dict[int, str],
    ) -> Any:
        """Create and start a new session for the owner."""
        pass

    @abstractmethod
    async def pause_session(self, owner_id: int) -> Any:
        """Pause the owner's session."""
        pass

    @abstractmethod
    async def unpause_session(self, owner_id: int) -> Any:
        """Resume the owner's paused session."""
        pass

    @abstractmethod
    async def stop_session(self, owner_id: int) -> Any:
        """Stop the owner's session and open the revision window."""
        pass
