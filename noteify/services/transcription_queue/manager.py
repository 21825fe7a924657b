"""
Transcription Queue.

Each live session owns one TranscriptionQueue. Finished utterances are
queued as UtteranceJobs and processed strictly one at a time, in arrival
order, so transcript lines reach the chat log in the order speech finished:
- A job sends its WAV buffer to the whisper server
- Whisper artifacts are stripped from the result
- Non-blank text is appended to the session's transcript
- Failures and blank results drop the job; nothing is retried
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from noteify.server.services import WhisperServerHandler
    from noteify.services.manager import BaseAsyncLoggingService

from noteify.services.common.job import Job, JobQueue
from noteify.utils import clean_transcription, format_duration, generate_16_char_uuid


class TranscriptTarget(Protocol):
    """Receives transcript lines produced by the queue."""

    async def append_transcript(self, speaker_id: int, text: str) -> None: ...


@dataclass
class UtteranceJob(Job):
    """
    A job representing the transcription of one finished utterance.

    Attributes:
        speaker_id: Platform user id of the speaker
        session_id: Owner id of the session the utterance belongs to
        utterance_start: When the speaker started talking
        utterance_end: When the speaker stopped talking
        buffer: Complete 16 kHz mono WAV contents
        transcriber: Whisper server client
        target: Session that receives the transcript line
    """

    speaker_id: int = 0
    session_id: int = 0
    utterance_start: datetime | None = None
    utterance_end: datetime | None = None
    buffer: bytes = b""
    transcriber: "WhisperServerHandler" = None  # type: ignore
    target: TranscriptTarget = None  # type: ignore
    transcript: str | None = None

    # -------------------------------------------------------------- #
    # Job Execution
    # -------------------------------------------------------------- #

    async def execute(self) -> None:
        """
        Transcribe the buffer and hand any non-blank text to the session.

        Raises:
            RuntimeError: If the whisper server fails
        """
        raw = await self.transcriber.transcribe(self.buffer)
        text = clean_transcription(raw).strip()

        if not text:
            self.metadata["dropped"] = "blank"
            return

        self.transcript = text
        await self.target.append_transcript(self.speaker_id, text)

    async def release(self) -> None:
        self.buffer = b""

    @property
    def duration_ms(self) -> int:
        if self.utterance_start is None or self.utterance_end is None:
            return 0
        return max(0, int((self.utterance_end - self.utterance_start).total_seconds() * 1000))


# -------------------------------------------------------------- #
# Transcription Queue
# -------------------------------------------------------------- #


class TranscriptionQueue:
    """Single-worker FIFO of UtteranceJobs for one session."""

    def __init__(
        self,
        session_id: int,
        transcriber: "WhisperServerHandler",
        target: TranscriptTarget,
        logging_service: "BaseAsyncLoggingService",
    ):
        self.session_id = session_id
        self.transcriber = transcriber
        self.target = target
        self.logging_service = logging_service

        self._job_queue = JobQueue[UtteranceJob](
            on_job_started=self._on_job_started,
            on_job_complete=self._on_job_complete,
            on_job_failed=self._on_job_failed,
        )
        self._total_dropped = 0
        self._total_appended = 0

    # -------------------------------------------------------------- #
    # Public API
    # -------------------------------------------------------------- #

    async def enqueue(
        self,
        speaker_id: int,
        buffer: bytes,
        utterance_start: datetime,
        utterance_end: datetime,
    ) -> UtteranceJob | None:
        """
        Queue one finished utterance for transcription.

        Returns:
            The queued job, or None if the buffer was empty
        """
        if not buffer:
            return None

        job = UtteranceJob(
            job_id=generate_16_char_uuid(),
            speaker_id=speaker_id,
            session_id=self.session_id,
            utterance_start=utterance_start,
            utterance_end=utterance_end,
            buffer=buffer,
            transcriber=self.transcriber,
            target=self.target,
        )
        await self._job_queue.add_job(job)
        return job

    async def wait_until_idle(self, timeout: float | None = None) -> bool:
        """
        Wait until nothing is queued and nothing is being transcribed.

        If the timeout expires first, the in-flight job is cancelled and every
        queued job is dropped, so no late transcript reaches the session. Jobs
        enqueued afterwards start a fresh worker.

        Args:
            timeout: Seconds to wait, or None to wait as long as it takes

        Returns:
            True if the queue drained, False if the timeout expired first
        """
        try:
            await asyncio.wait_for(self._job_queue.wait_until_empty(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            abandoned = self._job_queue.get_queue_size() + (
                1 if self._job_queue.get_current_job() else 0
            )
            await self._job_queue.stop(wait_for_completion=False)
            self._total_dropped += abandoned
            await self.logging_service.warning(
                f"[TranscriptionQueue] Session {self.session_id}: drain timed out after "
                f"{timeout}s, abandoned {abandoned} job(s)"
            )
            return False

    async def close(self) -> None:
        """Stop the worker, discarding anything still queued."""
        await self._job_queue.stop(wait_for_completion=False)

    def is_idle(self) -> bool:
        return self._job_queue.is_idle()

    def get_statistics(self) -> dict[str, Any]:
        stats = self._job_queue.get_statistics()
        stats["total_appended"] = self._total_appended
        stats["total_dropped"] = self._total_dropped
        return stats

    # -------------------------------------------------------------- #
    # Job Callbacks
    # -------------------------------------------------------------- #

    async def _on_job_started(self, job: UtteranceJob) -> None:
        await self.logging_service.debug(
            f"[TranscriptionQueue] Transcribing {format_duration(job.duration_ms)} from speaker "
            f"{job.speaker_id} (job {job.job_id}, {len(job.buffer)} bytes)"
        )

    async def _on_job_complete(self, job: UtteranceJob) -> None:
        if job.transcript is None:
            self._total_dropped += 1
            await self.logging_service.debug(
                f"[TranscriptionQueue] Job {job.job_id}: blank transcription, dropped"
            )
            return

        self._total_appended += 1
        await self.logging_service.debug(
            f"[TranscriptionQueue] Job {job.job_id}: speaker {job.speaker_id} said: {job.transcript}"
        )

    async def _on_job_failed(self, job: UtteranceJob) -> None:
        self._total_dropped += 1
        await self.logging_service.error(
            f"[TranscriptionQueue] Job {job.job_id} for speaker {job.speaker_id} failed, "
            f"dropped: {job.error_message}"
        )
