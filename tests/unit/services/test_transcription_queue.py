"""
Unit tests for the per-session transcription queue.

Tests cover:
- Transcript lines appended in enqueue order
- Whisper artifacts and blank results dropped
- Failed transcriptions dropped without retry
- Draining with and without a timeout
"""

import asyncio
from datetime import timedelta

import pytest

from noteify.services.common.job import JobStatus
from noteify.services.transcription_queue.manager import TranscriptionQueue, UtteranceJob
from noteify.utils import get_current_timestamp_est

pytestmark = pytest.mark.unit


class RecordingTarget:
    def __init__(self):
        self.lines: list[tuple[int, str]] = []

    async def append_transcript(self, speaker_id: int, text: str) -> None:
        self.lines.append((speaker_id, text))


@pytest.fixture
def target():
    return RecordingTarget()


@pytest.fixture
async def queue(test_whisper_client, target, mock_logging_service):
    transcription_queue = TranscriptionQueue(
        session_id=1,
        transcriber=test_whisper_client,
        target=target,
        logging_service=mock_logging_service,
    )
    yield transcription_queue
    await transcription_queue.close()


async def enqueue(queue: TranscriptionQueue, speaker_id: int, buffer: bytes):
    end = get_current_timestamp_est()
    return await queue.enqueue(speaker_id, buffer, end - timedelta(seconds=2), end)


# -------------------------------------------------------------- #
# Ordering
# -------------------------------------------------------------- #


class TestOrdering:
    async def test_lines_follow_enqueue_order(self, queue, target, test_whisper_client):
        # The first utterance is the slowest to transcribe
        test_whisper_client.set_transcription(b"one", " I open the door", delay=0.05)
        test_whisper_client.set_transcription(b"two", " It creaks")
        test_whisper_client.set_transcription(b"three", " Roll for perception")

        await enqueue(queue, 1, b"one")
        await enqueue(queue, 2, b"two")
        await enqueue(queue, 1, b"three")

        assert await queue.wait_until_idle()
        assert target.lines == [
            (1, "I open the door"),
            (2, "It creaks"),
            (1, "Roll for perception"),
        ]
        assert queue.get_statistics()["total_appended"] == 3


# -------------------------------------------------------------- #
# Dropping
# -------------------------------------------------------------- #


class TestDropping:
    async def test_empty_buffer_is_not_queued(self, queue, test_whisper_client):
        assert await enqueue(queue, 1, b"") is None
        assert test_whisper_client.calls == []

    async def test_blank_audio_is_dropped(self, queue, target, test_whisper_client):
        test_whisper_client.set_transcription(b"silence", " [BLANK_AUDIO]")

        job = await enqueue(queue, 1, b"silence")
        await queue.wait_until_idle()

        assert target.lines == []
        assert job.metadata["dropped"] == "blank"
        assert queue.get_statistics()["total_dropped"] == 1

    async def test_failure_is_dropped_and_not_retried(self, queue, target, test_whisper_client):
        test_whisper_client.fail_on(b"bad")
        test_whisper_client.set_transcription(b"good", "Still here")

        await enqueue(queue, 1, b"bad")
        await enqueue(queue, 1, b"good")
        await queue.wait_until_idle()

        assert target.lines == [(1, "Still here")]
        assert test_whisper_client.calls.count(b"bad") == 1
        stats = queue.get_statistics()
        assert stats["total_failed"] == 1
        assert stats["total_dropped"] == 1

    async def test_buffer_released_after_transcription(self, queue, test_whisper_client):
        test_whisper_client.set_transcription(b"audio", "hello")

        job = await enqueue(queue, 1, b"audio")
        await queue.wait_until_idle()

        assert job.buffer == b""
        assert job.transcript == "hello"


# -------------------------------------------------------------- #
# Draining
# -------------------------------------------------------------- #


class TestDraining:
    async def test_idle_queue_drains_immediately(self, queue):
        assert await queue.wait_until_idle(timeout=1)
        assert queue.is_idle()

    async def test_drain_timeout_abandons_pending_jobs(
        self, queue, target, test_whisper_client, mock_logging_service
    ):
        test_whisper_client.set_transcription(b"slow", "late line", delay=0.3)

        in_flight = await enqueue(queue, 1, b"slow")
        queued = await enqueue(queue, 2, b"next")

        assert await queue.wait_until_idle(timeout=0.05) is False
        await asyncio.sleep(0.4)

        assert target.lines == []
        assert in_flight.status is JobStatus.CANCELLED
        assert queued.status is JobStatus.CANCELLED
        assert queued.buffer == b""
        assert queue.is_idle()
        assert queue.get_statistics()["total_dropped"] == 2
        mock_logging_service.warning.assert_awaited()

    async def test_jobs_after_timeout_still_run(self, queue, target, test_whisper_client):
        test_whisper_client.set_transcription(b"slow", "late line", delay=0.3)
        await enqueue(queue, 1, b"slow")
        assert await queue.wait_until_idle(timeout=0.05) is False

        test_whisper_client.set_transcription(b"fresh", " on time")
        await enqueue(queue, 3, b"fresh")

        assert await queue.wait_until_idle(timeout=1)
        assert target.lines == [(3, "on time")]


def test_utterance_job_duration():
    end = get_current_timestamp_est()
    job = UtteranceJob(
        job_id="x", utterance_start=end - timedelta(milliseconds=1500), utterance_end=end
    )
    assert job.duration_ms == 1500
    assert UtteranceJob(job_id="y").duration_ms == 0
