from abc import ABC, abstractmethod

# -------------------------------------------------------------- #
# Base Server Handler
# -------------------------------------------------------------- #


class BaseServerHandler(ABC):
    """Abstract base class for all server handlers."""

    def __init__(self, name: str):
        self.name = name
        self._connected = False

    # -------------------------------------------------------------- #
    # Handler Methods
    # -------------------------------------------------------------- #

    async def on_startup(self) -> None:
        """Actions to perform on server startup."""
        pass

    async def on_close(self) -> None:
        """Actions to perform on server close."""
        pass

    # -------------------------------------------------------------- #
    # Abstract Methods
    # -------------------------------------------------------------- #

    @abstractmethod
    async def connect(self) -> None:
        """Establish connection to the server."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection to the server."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the server is healthy and responding."""
        pass

    @property
    def is_connected(self) -> bool:
        """Check if currently connected to the server."""
        return self._connected


# -------------------------------------------------------------- #
# Whisper Server Handler
# -------------------------------------------------------------- #


class WhisperServerHandler(BaseServerHandler):
    """Speech-to-text server handler."""

    def __init__(self, name: str, endpoint: str):
        super().__init__(name)
        self.endpoint = endpoint

    @abstractmethod
    async def transcribe(self, wav_bytes: bytes) -> str:
        """
        Transcribe a single in-memory WAV utterance.

        Args:
            wav_bytes: Complete WAV file contents (16 kHz mono)

        Returns:
            Raw transcribed text as returned by the server

        Raises:
            RuntimeError: If the server is unreachable or rejects the request
        """
        pass
