"""
Unit tests for the FFmpeg manager.

Tests cover:
- The PCM -> WAV decode command
- FFmpeg validation
- Decode stage misuse errors
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from noteify.services.ffmpeg_manager.manager import (
    DecodeStageError,
    FFmpegDecodeStage,
    FFmpegHandler,
    FFmpegManagerService,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def ffmpeg_manager(mock_context):
    return FFmpegManagerService(context=mock_context, ffmpeg_path="ffmpeg")


# -------------------------------------------------------------- #
# Command Building
# -------------------------------------------------------------- #


def test_decode_command_reads_discord_pcm_and_writes_whisper_wav(ffmpeg_manager):
    cmd = ffmpeg_manager.handler.build_wav_decode_command()

    assert cmd[0] == "ffmpeg"
    input_index = cmd.index("-i")
    # raw input format must precede -i
    assert cmd[1:input_index] == [
        "-hide_banner",
        "-loglevel",
        "error",
        "-f",
        "s16le",
        "-ar",
        "48000",
        "-ac",
        "2",
    ]
    assert cmd[input_index + 1] == "-"
    assert cmd[input_index + 2 :] == ["-f", "wav", "-ar", "16000", "-ac", "1", "pipe:1"]


def test_create_decode_stage(ffmpeg_manager):
    stage = ffmpeg_manager.create_decode_stage(42)

    assert isinstance(stage, FFmpegDecodeStage)
    assert stage.speaker_id == 42
    assert stage.get_stream_status()["running"] is False


# -------------------------------------------------------------- #
# Validation
# -------------------------------------------------------------- #


class TestValidation:
    async def test_missing_binary_is_invalid(self, mock_context, mock_services):
        manager = FFmpegManagerService(
            context=mock_context, ffmpeg_path="/definitely/not/ffmpeg"
        )

        await manager.on_start(mock_services)

        assert manager.is_valid is False
        mock_services.logging_service.warning.assert_awaited()

    async def test_valid_binary(self, ffmpeg_manager, mock_services):
        completed = MagicMock(returncode=0)
        with patch(
            "noteify.services.ffmpeg_manager.manager.subprocess.run", return_value=completed
        ):
            await ffmpeg_manager.on_start(mock_services)

        assert ffmpeg_manager.is_valid is True
        assert ffmpeg_manager.get_ffmpeg_path() == "ffmpeg"


# -------------------------------------------------------------- #
# Decode Stage
# -------------------------------------------------------------- #


class TestDecodeStage:
    async def test_write_before_start_raises(self):
        stage = FFmpegHandler(MagicMock(), "ffmpeg").create_decode_stage(1)
        with pytest.raises(DecodeStageError):
            await stage.write(b"\x00\x00")

    async def test_finish_before_start_raises(self):
        stage = FFmpegHandler(MagicMock(), "ffmpeg").create_decode_stage(1)
        with pytest.raises(DecodeStageError):
            await stage.finish()

    async def test_start_with_missing_binary_raises(self):
        stage = FFmpegHandler(MagicMock(), "/definitely/not/ffmpeg").create_decode_stage(1)
        with pytest.raises(DecodeStageError):
            await stage.start()

    async def test_abort_is_idempotent(self):
        stage = FFmpegHandler(MagicMock(), "ffmpeg").create_decode_stage(1)
        await stage.abort()
        await stage.abort()
        assert stage.get_stream_status()["bytes_output"] == 0

    async def test_nonzero_exit_raises(self):
        stage = FFmpegHandler(MagicMock(), "ffmpeg").create_decode_stage(1)

        process = MagicMock()
        process.stdin = MagicMock()
        process.stdin.is_closing.return_value = False
        process.stdout.read = AsyncMock(return_value=b"")
        process.stderr.read = AsyncMock(return_value=b"Invalid data found")
        process.wait = AsyncMock(return_value=1)
        process.returncode = 1

        with patch(
            "noteify.services.ffmpeg_manager.manager.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process),
        ):
            await stage.start()

        with pytest.raises(DecodeStageError, match="Invalid data found"):
            await stage.finish()
        process.stdin.close.assert_called_once()

    async def test_finish_returns_stdout(self):
        stage = FFmpegHandler(MagicMock(), "ffmpeg").create_decode_stage(1)

        process = MagicMock()
        process.stdin = MagicMock()
        process.stdin.is_closing.return_value = False
        process.stdin.drain = AsyncMock()
        process.stdout.read = AsyncMock(side_effect=[b"RIFF", b"data", b""])
        process.stderr.read = AsyncMock(return_value=b"")
        process.wait = AsyncMock(return_value=0)

        with patch(
            "noteify.services.ffmpeg_manager.manager.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process),
        ):
            await stage.start()

        await stage.write(b"\x01\x02")
        assert await stage.finish() == b"RIFFdata"
        process.stdin.write.assert_called_once_with(b"\x01\x02")
