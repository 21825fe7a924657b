"""
Per-speaker utterance capture.

Each speaking participant gets one ActiveStream. The stream feeds raw PCM into
its own decode stage and closes itself after a stretch of silence, handing the
finished WAV buffer to the session as a CapturedUtterance.

State machine of a stream:

    CAPTURING --(silence timeout | flush)--> FINALIZING --> CLOSED
    CAPTURING --(error | cancel)----------------------------> CLOSED

Audio that arrives for a speaker whose stream has stopped capturing starts a
new stream right away; the finishing stream completes on its own.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol

from noteify.services.voice_capture.pcm import calculate_pcm_duration_ms
from noteify.utils import format_duration, get_current_timestamp_est

if TYPE_CHECKING:
    from noteify.services.manager import BaseAsyncLoggingService

logger = logging.getLogger(__name__)

# -------------------------------------------------------------- #
# Configuration Constants
# -------------------------------------------------------------- #


class CaptureConstants:
    """Configuration constants for utterance capture."""

    # A speaker's utterance ends after this much time with no audio
    SILENCE_DURATION_MS = 500


# -------------------------------------------------------------- #
# Types
# -------------------------------------------------------------- #


class StreamState(enum.Enum):
    CAPTURING = "capturing"
    FINALIZING = "finalizing"
    CLOSED = "closed"


class DecodeStage(Protocol):
    """Anything that turns a stream of raw PCM writes into one WAV buffer."""

    async def start(self) -> None: ...

    async def write(self, data: bytes) -> None: ...

    async def finish(self) -> bytes: ...

    async def abort(self) -> None: ...


@dataclass
class CapturedUtterance:
    """A finished, non-empty utterance ready for transcription."""

    speaker_id: int
    started_at: datetime
    ended_at: datetime
    buffer: bytes
    pcm_bytes: int = 0

    @property
    def duration_ms(self) -> int:
        return int((self.ended_at - self.started_at).total_seconds() * 1000)


UtteranceCallback = Callable[[CapturedUtterance], Awaitable[None]]


# -------------------------------------------------------------- #
# Active Stream
# -------------------------------------------------------------- #


class ActiveStream:
    """One speaker's in-progress utterance."""

    _FLUSH = None  # inbox sentinel: finalize now instead of waiting for silence

    def __init__(
        self,
        speaker_id: int,
        stage: DecodeStage,
        on_utterance: UtteranceCallback,
        on_released: Callable[["ActiveStream"], None],
        logging_service: "BaseAsyncLoggingService",
        silence_duration_ms: int = CaptureConstants.SILENCE_DURATION_MS,
    ):
        self.speaker_id = speaker_id
        self.stage = stage
        self.state = StreamState.CAPTURING
        self.started_at = get_current_timestamp_est()
        self.silence_duration_ms = silence_duration_ms

        self._on_utterance = on_utterance
        self._on_released = on_released
        self._logging_service = logging_service

        self._inbox: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._pcm_bytes = 0

    # -------------------------------------------------------------- #
    # Lifecycle
    # -------------------------------------------------------------- #

    def start(self) -> None:
        """Spawn the stream's task. Must be called from the event loop."""
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    def feed(self, pcm: bytes) -> bool:
        """
        Queue PCM for the decode stage.

        Returns:
            False if the stream is no longer capturing (the audio is dropped)
        """
        if self.state is not StreamState.CAPTURING:
            return False
        self._inbox.put_nowait(pcm)
        return True

    def request_flush(self) -> None:
        """Finalize as soon as already-queued audio is written."""
        if self.state is StreamState.CAPTURING:
            self._inbox.put_nowait(self._FLUSH)

    async def cancel(self) -> None:
        """Tear the stream down without producing an utterance."""
        if self._task and not self._task.done():
            self._task.cancel()
        await self.wait_closed()
        # A task cancelled before its first step never reaches its own cleanup
        await self.stage.abort()
        self._release()

    async def wait_closed(self) -> None:
        if self._task is None:
            return
        await asyncio.gather(self._task, return_exceptions=True)

    @property
    def pcm_bytes(self) -> int:
        return self._pcm_bytes

    # -------------------------------------------------------------- #
    # Private Methods
    # -------------------------------------------------------------- #

    async def _run(self) -> None:
        utterance: CapturedUtterance | None = None
        try:
            await self.stage.start()

            flushed = await self._pump()

            self.state = StreamState.FINALIZING
            ended_at = get_current_timestamp_est()
            if not flushed:
                ended_at -= timedelta(milliseconds=self.silence_duration_ms)

            buffer = await self.stage.finish()
            if buffer and self._pcm_bytes > 0:
                utterance = CapturedUtterance(
                    speaker_id=self.speaker_id,
                    started_at=self.started_at,
                    ended_at=max(ended_at, self.started_at),
                    buffer=buffer,
                    pcm_bytes=self._pcm_bytes,
                )

        except asyncio.CancelledError:
            await self.stage.abort()
            self._release()
            raise
        except Exception as e:
            await self._logging_service.error(
                f"[Capture] Stream for speaker {self.speaker_id} failed: "
                f"{type(e).__name__}: {str(e)}"
            )
            await self.stage.abort()

        try:
            if utterance is not None:
                await self._logging_service.debug(
                    f"[Capture] Utterance from speaker {self.speaker_id} finished: "
                    f"{format_duration(calculate_pcm_duration_ms(utterance.pcm_bytes))} of audio, "
                    f"{len(utterance.buffer)} WAV bytes"
                )
                await self._on_utterance(utterance)
        except Exception as e:
            await self._logging_service.error(
                f"[Capture] Could not hand off utterance from speaker {self.speaker_id}: {str(e)}"
            )
        finally:
            self._release()

    async def _pump(self) -> bool:
        """
        Move audio from the inbox into the decode stage until silence or flush.

        Returns:
            True if the stream was flushed, False if it timed out on silence
        """
        timeout = self.silence_duration_ms / 1000
        while True:
            try:
                pcm = await asyncio.wait_for(self._inbox.get(), timeout=timeout)
            except asyncio.TimeoutError:
                return False

            if pcm is self._FLUSH:
                # Write whatever is still queued behind the flush marker
                while not self._inbox.empty():
                    pending = self._inbox.get_nowait()
                    if pending is not self._FLUSH:
                        await self._write(pending)
                return True

            await self._write(pcm)

    async def _write(self, pcm: bytes) -> None:
        await self.stage.write(pcm)
        self._pcm_bytes += len(pcm)

    def _release(self) -> None:
        if self.state is StreamState.CLOSED:
            return
        self.state = StreamState.CLOSED
        self._on_released(self)


# -------------------------------------------------------------- #
# Utterance Capture Manager
# -------------------------------------------------------------- #


class UtteranceCaptureManager:
    """
    Owns the ActiveStreams of one session.

    Audio callbacks arrive on the event loop (the voice sink hops threads with
    ``call_soon_threadsafe``), so the stream table needs no locking.
    """

    def __init__(
        self,
        session_id: int,
        stage_factory: Callable[[int], DecodeStage],
        on_utterance: UtteranceCallback,
        logging_service: "BaseAsyncLoggingService",
        silence_duration_ms: int = CaptureConstants.SILENCE_DURATION_MS,
    ):
        self.session_id = session_id
        self.stage_factory = stage_factory
        self.on_utterance = on_utterance
        self.logging_service = logging_service
        self.silence_duration_ms = silence_duration_ms

        self._streams: dict[int, ActiveStream] = {}
        # Streams replaced while still finalizing, kept until they release
        self._finishing: set[ActiveStream] = set()
        self._participants: set[int] = set()
        self._accepting = False

        # Statistics
        self._streams_started = 0
        self._packets_dropped = 0

    # -------------------------------------------------------------- #
    # Configuration
    # -------------------------------------------------------------- #

    def set_participants(self, participant_ids) -> None:
        self._participants = {int(pid) for pid in participant_ids}

    def open(self) -> None:
        """Start accepting new utterances."""
        self._accepting = True

    @property
    def is_accepting(self) -> bool:
        return self._accepting

    # -------------------------------------------------------------- #
    # Audio Events
    # -------------------------------------------------------------- #

    def on_speech_start(self, speaker_id: int) -> ActiveStream | None:
        """
        Begin capturing a speaker's utterance.

        No-op (returns None) when the speaker is not a participant, capture is
        closed, or the speaker already has a stream.
        """
        if not self._accepting or speaker_id not in self._participants:
            return None
        if speaker_id in self._streams:
            return None

        stage = self.stage_factory(speaker_id)
        stream = ActiveStream(
            speaker_id=speaker_id,
            stage=stage,
            on_utterance=self.on_utterance,
            on_released=self._release_stream,
            logging_service=self.logging_service,
            silence_duration_ms=self.silence_duration_ms,
        )
        self._streams[speaker_id] = stream
        self._streams_started += 1
        stream.start()

        logger.debug(f"[Capture] Session {self.session_id}: speaker {speaker_id} started talking")
        return stream

    def on_audio(self, speaker_id: int, pcm: bytes) -> bool:
        """
        Route one PCM packet. A packet from a speaker with no stream starts one.

        Returns:
            True if the packet was accepted by a capturing stream
        """
        if not pcm:
            return False

        stream = self._streams.get(speaker_id)
        if stream is not None and stream.state is not StreamState.CAPTURING:
            self._finishing.add(self._streams.pop(speaker_id))
            stream = None
        if stream is None:
            stream = self.on_speech_start(speaker_id)
            if stream is None:
                return False

        if not stream.feed(pcm):
            self._packets_dropped += 1
            return False
        return True

    # -------------------------------------------------------------- #
    # Teardown
    # -------------------------------------------------------------- #

    async def close_all(self, flush: bool = True) -> None:
        """
        Stop accepting audio and release every stream.

        Args:
            flush: If True, capturing streams finalize immediately so their
                   audio still becomes utterances. If False, they are discarded.
        """
        self._accepting = False
        streams = list(self._streams.values()) + list(self._finishing)

        for stream in streams:
            if flush:
                stream.request_flush()
            else:
                await stream.cancel()

        for stream in streams:
            await stream.wait_closed()

        self._streams.clear()
        self._finishing.clear()

        if streams:
            await self.logging_service.debug(
                f"[Capture] Session {self.session_id}: closed {len(streams)} stream(s) "
                f"({'flushed' if flush else 'discarded'})"
            )

    # -------------------------------------------------------------- #
    # Status
    # -------------------------------------------------------------- #

    def get_stream(self, speaker_id: int) -> ActiveStream | None:
        return self._streams.get(speaker_id)

    def active_stream_count(self) -> int:
        return len(self._streams)

    def get_statistics(self) -> dict[str, Any]:
        return {
            "active_streams": len(self._streams),
            "streams_started": self._streams_started,
            "packets_dropped": self._packets_dropped,
            "accepting": self._accepting,
        }

    def _release_stream(self, stream: ActiveStream) -> None:
        self._finishing.discard(stream)
        if self._streams.get(stream.speaker_id) is stream:
            del self._streams[stream.speaker_id]
