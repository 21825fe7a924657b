import os
from typing import TYPE_CHECKING

from dotenv import load_dotenv

if TYPE_CHECKING:
    from noteify.context import Context

from noteify.constructor import ServerManagerType
from noteify.server.common import whisper_server
from noteify.server.server import ServerManager
from noteify.server.services import WhisperServerHandler

load_dotenv(dotenv_path=".env.local")

# -------------------------------------------------------------- #
# Constructor for Dynamic Creation of Server Manager
# -------------------------------------------------------------- #


def load_whisper_server_client() -> WhisperServerHandler:
    """Load and return the Whisper server client from the environment."""
    endpoint = os.getenv("WHISPER_ENDPOINT")

    if not endpoint:
        host = os.getenv("WHISPER_HOST", "127.0.0.1")
        port = int(os.getenv("WHISPER_PORT", "8080"))
        endpoint = f"http://{host}:{port}"

    return whisper_server.construct_whisper_server_client(endpoint=endpoint)


def construct_server_manager(client_type: ServerManagerType, context: "Context") -> ServerManager:
    """Construct and return a ServerManager instance for the given environment."""

    if client_type in (ServerManagerType.DEVELOPMENT, ServerManagerType.PRODUCTION):
        return ServerManager(context=context, whisper_server_client=load_whisper_server_client())
    elif client_type == ServerManagerType.TESTING:
        from noteify.server.testing.whisper_server import MockWhisperServerClient

        return ServerManager(context=context, whisper_server_client=MockWhisperServerClient())

    raise ValueError(f"Unsupported ServerManagerType: {client_type}")
