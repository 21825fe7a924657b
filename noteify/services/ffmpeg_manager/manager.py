import asyncio
import subprocess
from contextlib import suppress
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from noteify.context import Context

from noteify.services.manager import BaseFFmpegServiceManager

# -------------------------------------------------------------- #
# FFmpeg Constants
# -------------------------------------------------------------- #


class FFmpegConstants:
    """Audio formats on both sides of the decode stage."""

    # Input: what py-cord hands the sink after Opus decoding
    INPUT_FORMAT = "s16le"
    INPUT_SAMPLE_RATE = 48000
    INPUT_CHANNELS = 2

    # Output: what whisper.cpp expects
    OUTPUT_FORMAT = "wav"
    OUTPUT_SAMPLE_RATE = 16000
    OUTPUT_CHANNELS = 1

    READ_CHUNK_BYTES = 64 * 1024
    FINISH_TIMEOUT_SECONDS = 10.0


class DecodeStageError(RuntimeError):
    """Raised when an FFmpeg decode stage cannot start or exits abnormally."""


# -------------------------------------------------------------- #
# FFmpeg Handler
# -------------------------------------------------------------- #


class FFmpegHandler:
    def __init__(self, ffmpeg_service_manager: BaseFFmpegServiceManager, ffmpeg_path: str):
        self.ffmpeg_service_manager = ffmpeg_service_manager
        self.ffmpeg_path = ffmpeg_path

    # -------------------------------------------------------------- #
    # FFmpeg Management Methods
    # -------------------------------------------------------------- #

    async def validate_ffmpeg(self) -> bool:
        """Validate that FFmpeg is installed and accessible."""
        try:
            loop = asyncio.get_event_loop()
            result = await asyncio.wait_for(
                loop.run_in_executor(
                    None,
                    lambda: subprocess.run(
                        [self.ffmpeg_path, "-version"],
                        capture_output=True,
                        timeout=5,
                        text=True,
                    ),
                ),
                timeout=6.0,  # Slightly longer than subprocess timeout
            )
            return result.returncode == 0
        except (OSError, subprocess.SubprocessError, asyncio.TimeoutError):
            return False

    def build_wav_decode_command(self) -> list[str]:
        """
        Build the FFmpeg command that turns raw Discord PCM on stdin into a
        16 kHz mono WAV file on stdout.
        """
        # Format options MUST come BEFORE -i for raw input
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel",
            "error",
            "-f",
            FFmpegConstants.INPUT_FORMAT,
            "-ar",
            str(FFmpegConstants.INPUT_SAMPLE_RATE),
            "-ac",
            str(FFmpegConstants.INPUT_CHANNELS),
            "-i",
            "-",
            "-f",
            FFmpegConstants.OUTPUT_FORMAT,
            "-ar",
            str(FFmpegConstants.OUTPUT_SAMPLE_RATE),
            "-ac",
            str(FFmpegConstants.OUTPUT_CHANNELS),
            "pipe:1",
        ]

    def create_decode_stage(self, speaker_id: int) -> "FFmpegDecodeStage":
        return FFmpegDecodeStage(self, speaker_id)


# -------------------------------------------------------------- #
# FFmpeg Decode Stage
# -------------------------------------------------------------- #


class FFmpegDecodeStage:
    """
    One speaker's streaming PCM -> WAV conversion.

    Raw PCM is written to the FFmpeg process's stdin as it arrives; a reader
    task accumulates the WAV bytes from stdout. ``finish()`` closes stdin and
    returns the complete WAV buffer. ``abort()`` kills the process and discards
    the output.
    """

    def __init__(self, ffmpeg_handler: FFmpegHandler, speaker_id: int):
        self.ffmpeg_handler = ffmpeg_handler
        self.speaker_id = speaker_id

        self.subprocess: asyncio.subprocess.Process | None = None
        self._chunks: list[bytes] = []
        self._stderr: bytes = b""
        self._stdout_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._is_running = False
        self._bytes_processed = 0

    # -------------------------------------------------------------- #
    # Streaming Methods
    # -------------------------------------------------------------- #

    async def start(self) -> None:
        """Spawn the FFmpeg process and begin collecting its output."""
        if self._is_running:
            return

        cmd = self.ffmpeg_handler.build_wav_decode_command()
        try:
            self.subprocess = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, OSError) as e:
            raise DecodeStageError(f"Could not start FFmpeg: {e}") from e

        self._is_running = True
        self._stdout_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())

    async def write(self, data: bytes) -> None:
        """Push PCM bytes into the FFmpeg input stream."""
        if not self._is_running or self.subprocess is None or self.subprocess.stdin is None:
            raise DecodeStageError("Decode stage is not running")

        try:
            self.subprocess.stdin.write(data)
            await self.subprocess.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise DecodeStageError(f"FFmpeg input closed unexpectedly: {e}") from e

        self._bytes_processed += len(data)

    async def finish(self) -> bytes:
        """
        Close the input stream and wait for FFmpeg to flush.

        Returns:
            The complete WAV output (may be header-only if no audio was written)

        Raises:
            DecodeStageError: If FFmpeg exits with a non-zero code or hangs
        """
        if self.subprocess is None:
            raise DecodeStageError("Decode stage was never started")

        try:
            if self.subprocess.stdin and not self.subprocess.stdin.is_closing():
                self.subprocess.stdin.close()

            await asyncio.wait_for(
                asyncio.gather(self._stdout_task, self._stderr_task),
                timeout=FFmpegConstants.FINISH_TIMEOUT_SECONDS,
            )
            returncode = await asyncio.wait_for(
                self.subprocess.wait(), timeout=FFmpegConstants.FINISH_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError as e:
            await self.abort()
            raise DecodeStageError("FFmpeg did not exit in time") from e
        finally:
            self._is_running = False

        if returncode != 0:
            stderr = self._stderr.decode("utf-8", errors="replace").strip()
            raise DecodeStageError(f"FFmpeg exited with code {returncode}: {stderr}")

        return b"".join(self._chunks)

    async def abort(self) -> None:
        """Kill the FFmpeg process and drop anything it produced."""
        self._is_running = False

        if self.subprocess is not None and self.subprocess.returncode is None:
            with suppress(ProcessLookupError):
                self.subprocess.kill()
            with suppress(Exception):
                await self.subprocess.wait()

        for task in (self._stdout_task, self._stderr_task):
            if task and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

        self._chunks = []

    def get_stream_status(self) -> dict:
        """
        Get the current status of the FFmpeg stream.

        Returns:
            Dictionary with status information including bytes processed
        """
        return {
            "speaker_id": self.speaker_id,
            "running": self._is_running,
            "pid": self.subprocess.pid if self.subprocess else None,
            "returncode": self.subprocess.returncode if self.subprocess else None,
            "bytes_processed": self._bytes_processed,
            "bytes_output": sum(len(chunk) for chunk in self._chunks),
        }

    # -------------------------------------------------------------- #
    # Private Methods
    # -------------------------------------------------------------- #

    async def _read_stdout(self) -> None:
        while True:
            chunk = await self.subprocess.stdout.read(FFmpegConstants.READ_CHUNK_BYTES)
            if not chunk:
                break
            self._chunks.append(chunk)

    async def _read_stderr(self) -> None:
        self._stderr = await self.subprocess.stderr.read()


# -------------------------------------------------------------- #
# FFmpeg Manager Service
# -------------------------------------------------------------- #


class FFmpegManagerService(BaseFFmpegServiceManager):
    """Service for managing FFmpeg decode stages."""

    def __init__(self, context: "Context", ffmpeg_path: str):
        super().__init__(context)

        self.ffmpeg_path = ffmpeg_path
        self.handler = FFmpegHandler(self, ffmpeg_path)
        self.is_valid = False

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services):
        await super().on_start(services)
        await self.services.logging_service.info("FFmpegManagerService initialized")

        # Validate FFmpeg installation
        self.is_valid = await self.handler.validate_ffmpeg()
        if self.is_valid:
            await self.services.logging_service.info(
                f"FFmpeg validated at path: {self.ffmpeg_path}"
            )
        else:
            await self.services.logging_service.warning(
                f"FFmpeg validation failed at path: {self.ffmpeg_path}"
            )

        return True

    async def on_close(self):
        await self.services.logging_service.info("FFmpegManagerService stopped")
        return True

    # -------------------------------------------------------------- #
    # FFmpeg Management Methods
    # -------------------------------------------------------------- #

    def get_ffmpeg_path(self) -> str:
        """Get the FFmpeg executable path."""
        return self.ffmpeg_path

    def create_decode_stage(self, speaker_id: int) -> FFmpegDecodeStage:
        """Create an unstarted decode stage for one speaker's utterance."""
        return self.handler.create_decode_stage(speaker_id)
