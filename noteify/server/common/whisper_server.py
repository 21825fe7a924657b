"""Whisper server client implementation."""

import json
import logging

import aiohttp

from noteify.server.services import WhisperServerHandler

logger = logging.getLogger(__name__)


class WhisperServerClient(WhisperServerHandler):
    """Client for a whisper.cpp server."""

    def __init__(
        self,
        name: str = "whisper_server",
        endpoint: str = "http://127.0.0.1:8080",
        temperature: str = "0.0",
        temperature_inc: str = "0.2",
        request_timeout_seconds: float | None = None,
    ):
        """
        Initialize Whisper server client.

        Args:
            name: Name of the client
            endpoint: Whisper server endpoint URL
            temperature: Sampling temperature sent with every request
            temperature_inc: Temperature fallback increment sent with every request
            request_timeout_seconds: Total per-request timeout (None waits forever)
        """
        super().__init__(name, endpoint.rstrip("/"))
        self.temperature = temperature
        self.temperature_inc = temperature_inc
        self.request_timeout_seconds = request_timeout_seconds
        self.session: aiohttp.ClientSession | None = None

    # -------------------------------------------------------------- #
    # Server Management
    # -------------------------------------------------------------- #

    async def connect(self) -> None:
        """Open the HTTP session and check the server is reachable."""
        timeout = aiohttp.ClientTimeout(total=self.request_timeout_seconds)
        self.session = aiohttp.ClientSession(timeout=timeout)
        self._connected = True

        # whisper.cpp builds without /health still serve /inference
        if await self.health_check():
            logger.info(f"Connected to Whisper server at {self.endpoint}")
        else:
            logger.warning(
                f"Whisper server at {self.endpoint} did not answer the health check; "
                "transcriptions will fail until it is reachable"
            )

    async def disconnect(self) -> None:
        """Close connection to Whisper server."""
        if self.session:
            await self.session.close()
            self.session = None
        self._connected = False
        logger.info("Disconnected from Whisper server")

    async def health_check(self) -> bool:
        """Check if Whisper server is healthy."""
        try:
            if not self.session:
                return False

            async with self.session.get(f"{self.endpoint}/health") as response:
                return response.status == 200
        except Exception as e:
            logger.error(f"Whisper server health check failed: {e}")
            return False

    # -------------------------------------------------------------- #
    # Transcription
    # -------------------------------------------------------------- #

    async def transcribe(self, wav_bytes: bytes) -> str:
        """
        POST a WAV buffer to ``/inference`` and return the transcribed text.

        Args:
            wav_bytes: Complete WAV file contents

        Returns:
            The ``text`` field of the JSON response (not cleaned)

        Raises:
            RuntimeError: On a missing session or a non-200 response
        """
        if not self.session:
            raise RuntimeError("Not connected to Whisper server")

        data = aiohttp.FormData()
        data.add_field("file", wav_bytes, filename="voiceStream.wav", content_type="audio/wav")
        data.add_field("temperature", self.temperature)
        data.add_field("temperature_inc", self.temperature_inc)
        data.add_field("response_format", "json")

        async with self.session.post(f"{self.endpoint}/inference", data=data) as response:
            body = await response.text()

            if response.status != 200:
                try:
                    error_text = json.loads(body).get("error", body)
                except (json.JSONDecodeError, AttributeError):
                    error_text = body
                raise RuntimeError(f"Whisper failed with code {response.status}: {error_text}")

            result = json.loads(body)
            return result.get("text", "")


def construct_whisper_server_client(
    endpoint: str = "http://127.0.0.1:8080",
) -> WhisperServerClient:
    """
    Construct and return a Whisper server client.

    Args:
        endpoint: Whisper server endpoint URL

    Returns:
        Configured WhisperServerClient instance
    """
    return WhisperServerClient(name="whisper_server", endpoint=endpoint)
