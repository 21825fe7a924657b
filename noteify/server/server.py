"""
Server service handlers for external services.

This module provides the manager that owns connections to the external
servers the bot depends on.
"""

import logging
from typing import TYPE_CHECKING

from noteify.server.services import BaseServerHandler, WhisperServerHandler

if TYPE_CHECKING:
    from noteify.context import Context

logger = logging.getLogger(__name__)

# -------------------------------------------------------------- #
# Server Manager
# -------------------------------------------------------------- #


class ServerManager:
    """Manager for handling multiple server instances."""

    def __init__(
        self,
        context: "Context",
        whisper_server_client: WhisperServerHandler,
    ):
        self.context = context
        self._initialized = False
        self._whisper_server_client = whisper_server_client

        self._servers: dict[str, BaseServerHandler] = {
            "whisper_server": whisper_server_client,
        }

    # ------------------------------------------------------ #
    # Server Management
    # ------------------------------------------------------ #

    async def connect_all(self) -> None:
        """Connect to all servers."""
        logger.info("=" * 60)
        logger.info("[ServerManager] Connecting all servers...")

        for server in self._servers.values():
            logger.info(f"[ServerManager] Connecting to '{server.name}' server...")
            await server.connect()
            logger.info(f"[ServerManager] Executing startup actions for '{server.name}' server...")
            await server.on_startup()
            logger.info(f"[ServerManager] '{server.name}' server is ready.")

        self._initialized = True
        logger.info("[ServerManager] All servers connected successfully.")
        logger.info("=" * 60)

    async def disconnect_all(self) -> None:
        """Disconnect from all servers."""
        logger.info("=" * 60)
        logger.info("[ServerManager] Disconnecting all servers...")

        for server in self._servers.values():
            await server.on_close()
            await server.disconnect()
            logger.info(f"[ServerManager] '{server.name}' server disconnected.")

        self._initialized = False
        logger.info("[ServerManager] All servers disconnected successfully.")
        logger.info("=" * 60)

    async def health_check_all(self) -> dict[str, bool]:
        """
        Check health of all registered servers.

        Returns:
            Dictionary mapping server names to health status
        """
        results = {}
        for name, server in self._servers.items():
            results[name] = await server.health_check()
        return results

    # ------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------ #

    @property
    def whisper_server_client(self) -> WhisperServerHandler:
        """Get the Whisper server client."""
        return self._whisper_server_client

    @property
    def is_initialized(self) -> bool:
        """Check if the server manager is initialized."""
        return self._initialized
