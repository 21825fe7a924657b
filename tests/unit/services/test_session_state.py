"""
Unit tests for the session state machine.

Tests cover:
- Start, pause, unpause and stop transitions
- Audio capture through transcription into the chat log
- Pause summaries and chat log epochs
- Stop summaries, the revision thread and closing
- Token budget warnings
- Rejected and overlapping commands
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from noteify.services.session.registry import SessionRegistry
from noteify.services.session.state import (
    SessionState,
    SessionStatus,
    SessionTransitionError,
)
from noteify.services.summary.coordinator import SummaryCoordinator
from noteify.services.summary.prompts import (
    INITIAL_PROMPT,
    PAUSE_SUMMARY_MESSAGE,
    REPLY_PROMPT,
    REVISION_LOCKED_MESSAGE,
    REVISION_OPEN_MESSAGE,
    TOKEN_LIMIT_MESSAGE,
    TOKEN_WARNING_MESSAGE,
)
from noteify.utils import estimate_tokens

pytestmark = pytest.mark.unit

OWNER = 10
ALICE = 20
BOB = 30
SUMMARY = "- The party entered the dungeon"

# -------------------------------------------------------------- #
# Fixtures
# -------------------------------------------------------------- #


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def summarizer(mock_ollama_manager, mock_logging_service):
    return SummaryCoordinator(mock_ollama_manager, mock_logging_service)


@pytest.fixture
async def make_session(
    voice,
    output_channel,
    registry,
    test_whisper_client,
    summarizer,
    stage_factory,
    mock_logging_service,
):
    created = []

    def factory(**overrides) -> SessionState:
        params = dict(
            session_id=OWNER,
            voice=voice,
            output_channel=output_channel,
            participants={ALICE: "Alice", BOB: "Bob"},
            registry=registry,
            transcriber=test_whisper_client,
            summarizer=summarizer,
            stage_factory=stage_factory,
            logging_service=mock_logging_service,
            drain_timeout_seconds=5,
            revision_window_seconds=60,
            silence_duration_ms=60_000,
        )
        params.update(overrides)
        session = SessionState(**params)
        created.append(session)
        return session

    yield factory

    for session in created:
        await session.close()


@pytest.fixture
async def active_session(make_session):
    session = make_session()
    await session.start()
    return session


# -------------------------------------------------------------- #
# Start
# -------------------------------------------------------------- #


class TestStart:
    async def test_start_registers_and_listens(self, active_session, registry, voice):
        assert active_session.status is SessionStatus.ACTIVE
        assert registry.get(OWNER) is active_session
        assert voice.joins == 1
        assert registry.routed_speakers(active_session) == {OWNER, ALICE, BOB}
        assert active_session.capture.is_accepting

    async def test_owner_is_a_participant_named_gm(self, active_session):
        assert active_session.participants[OWNER] == "GM"

    async def test_start_twice_is_rejected(self, active_session):
        with pytest.raises(SessionTransitionError):
            await active_session.start()

    async def test_join_failure_is_logged_not_raised(
        self, make_session, voice, mock_logging_service
    ):
        voice.fail_join = True
        session = make_session()

        await session.start()

        assert session.status is SessionStatus.ACTIVE
        mock_logging_service.error.assert_awaited()

    async def test_initial_chat_log(self, active_session):
        assert active_session.chat_messages() == [{"role": "system", "content": INITIAL_PROMPT}]
        assert active_session.token_count == 0


# -------------------------------------------------------------- #
# Transcript Lines
# -------------------------------------------------------------- #


class TestTranscript:
    async def test_lines_are_wrapped_in_speaker_name(self, active_session):
        await active_session.append_transcript(ALICE, "I search the chest")
        await active_session.append_transcript(OWNER, "Roll for it")

        assert active_session.chat_messages()[1:] == [
            {"role": "user", "content": "<Alice>I search the chest</Alice>"},
            {"role": "user", "content": "<GM>Roll for it</GM>"},
        ]

    async def test_unknown_speaker_uses_id(self, active_session):
        await active_session.append_transcript(99, "hello")
        assert active_session.chat_messages()[-1]["content"] == "<99>hello</99>"

    async def test_token_count_grows(self, active_session):
        await active_session.append_transcript(ALICE, "abcd")
        assert active_session.token_count == estimate_tokens("<Alice>abcd</Alice>")


# -------------------------------------------------------------- #
# Pause / Unpause
# -------------------------------------------------------------- #


class TestPause:
    async def test_audio_is_transcribed_before_summary(
        self, active_session, test_whisper_client, mock_ollama_manager, output_channel
    ):
        test_whisper_client.set_transcription(b"RIFF\x01\x02", " I search the chest")

        active_session.on_audio(ALICE, b"\x01\x02")
        await active_session.pause()

        sent_log = mock_ollama_manager.complete.await_args.args[0]
        assert sent_log[1] == {"role": "user", "content": "<Alice>I search the chest</Alice>"}

        transcript_message = output_channel.sent[-1]
        assert transcript_message.content == PAUSE_SUMMARY_MESSAGE
        assert transcript_message.attachment.filename.startswith("TRANSCRIPT-")
        assert transcript_message.attachment.data == b"<Alice>I search the chest</Alice>"

    async def test_pause_posts_summary_and_starts_new_epoch(
        self, active_session, output_channel, voice, registry
    ):
        await active_session.append_transcript(ALICE, "I open the door")

        await active_session.pause()

        assert active_session.status is SessionStatus.PAUSED
        assert output_channel.texts[0] == f"{SUMMARY} \n\n-# (Part 1/1)"
        assert output_channel.typing_count >= 1
        assert active_session.chat_messages() == [
            {"role": "system", "content": INITIAL_PROMPT},
            {"role": "assistant", "content": SUMMARY},
        ]
        assert active_session.token_count == estimate_tokens(SUMMARY)
        assert active_session.chat_log.epoch == 1
        assert voice.leaves == 1
        assert registry.lookup(ALICE) is None

    async def test_failed_summary_keeps_log(
        self, active_session, output_channel, mock_ollama_manager
    ):
        mock_ollama_manager.complete.side_effect = RuntimeError("model offline")
        await active_session.append_transcript(ALICE, "I open the door")

        await active_session.pause()

        assert active_session.status is SessionStatus.PAUSED
        assert len(output_channel.sent) == 1
        assert "model offline" in output_channel.texts[0]
        assert len(active_session.chat_log) == 2
        assert active_session.chat_log.epoch == 0

    async def test_blank_summary_keeps_log(
        self, active_session, output_channel, mock_ollama_manager
    ):
        mock_ollama_manager.complete.return_value = "   "
        await active_session.append_transcript(ALICE, "I open the door")

        await active_session.pause()

        assert active_session.status is SessionStatus.PAUSED
        assert "empty summary" in output_channel.texts[0]
        assert active_session.chat_messages()[1] == {
            "role": "user",
            "content": "<Alice>I open the door</Alice>",
        }
        assert active_session.chat_log.epoch == 0

    async def test_late_transcription_is_abandoned_after_drain_timeout(
        self, make_session, test_whisper_client
    ):
        session = make_session(drain_timeout_seconds=0.05)
        await session.start()
        test_whisper_client.set_transcription(b"RIFF\x01\x02", " late line", delay=0.3)

        session.on_audio(ALICE, b"\x01\x02")
        await session.pause()
        await asyncio.sleep(0.4)

        assert session.chat_messages() == [
            {"role": "system", "content": INITIAL_PROMPT},
            {"role": "assistant", "content": SUMMARY},
        ]
        assert session.token_count == estimate_tokens(SUMMARY)
        assert session.queue.is_idle()

    async def test_audio_is_ignored_while_paused(self, active_session, stages):
        await active_session.pause()

        active_session.on_audio(ALICE, b"\x01\x02")

        assert active_session.capture.active_stream_count() == 0
        assert stages == []

    async def test_unpause_resumes_listening(self, active_session, voice, registry):
        await active_session.pause()
        await active_session.unpause()

        assert active_session.status is SessionStatus.ACTIVE
        assert voice.joins == 2
        assert registry.lookup(ALICE) is active_session

        active_session.on_audio(ALICE, b"\x01\x02")
        assert active_session.capture.active_stream_count() == 1

    async def test_pause_when_paused_is_rejected(self, active_session):
        await active_session.pause()
        with pytest.raises(SessionTransitionError):
            await active_session.pause()

    async def test_unpause_when_active_is_rejected(self, active_session):
        with pytest.raises(SessionTransitionError):
            await active_session.unpause()


# -------------------------------------------------------------- #
# Stop
# -------------------------------------------------------------- #


class TestStop:
    async def test_stop_runs_revision_window_then_closes(
        self, active_session, output_channel, mock_ollama_manager, registry, make_message
    ):
        mock_ollama_manager.complete.side_effect = [SUMMARY, "- Now with a dragon"]
        await active_session.append_transcript(ALICE, "I open the door")

        await active_session.stop()

        assert active_session.status is SessionStatus.REVIEWING
        summary_message, attachment_message = output_channel.sent
        assert summary_message.content == f"{SUMMARY} \n\n-# (Part 1/1)"
        assert attachment_message.content is None
        assert attachment_message.attachment.data == b"<Alice>I open the door</Alice>"

        thread_parent, thread_name, archive_minutes, thread = output_channel.threads[0]
        assert thread_parent is attachment_message
        assert thread_name.startswith("Session Summary Discussion - ")
        assert archive_minutes == 1440

        thread.incoming = [make_message("Add the dragon", author_id=OWNER)]
        await asyncio.wait_for(active_session.wait_closed(), timeout=5)

        assert thread.texts == [
            REVISION_OPEN_MESSAGE.format(minutes=1),
            "- Now with a dragon \n\n-# (Part 1/1)",
            REVISION_LOCKED_MESSAGE,
        ]
        assert [m["role"] for m in active_session.chat_messages()] == [
            "system",
            "user",
            "assistant",
            "system",
            "user",
            "assistant",
        ]
        assert active_session.chat_messages()[3]["content"] == REPLY_PROMPT
        assert active_session.status is SessionStatus.CLOSED
        assert OWNER not in registry

    async def test_stop_from_paused(self, active_session):
        await active_session.pause()
        await active_session.stop(open_revision_window=False)
        assert active_session.status is SessionStatus.CLOSED

    async def test_stop_without_window_closes_at_once(
        self, active_session, output_channel, registry
    ):
        await active_session.stop(open_revision_window=False)

        assert active_session.status is SessionStatus.CLOSED
        assert output_channel.threads == []
        assert OWNER not in registry
        assert len(registry.routed_speakers(active_session)) == 0

    async def test_failed_summary_closes_session(
        self, active_session, output_channel, mock_ollama_manager
    ):
        mock_ollama_manager.complete.side_effect = RuntimeError("model offline")
        await active_session.append_transcript(ALICE, "I open the door")

        await active_session.stop()

        assert active_session.status is SessionStatus.CLOSED
        failure_message, transcript_message = output_channel.sent
        assert "model offline" in failure_message.content
        assert transcript_message.attachment.data == b"<Alice>I open the door</Alice>"
        assert output_channel.threads == []

    async def test_thread_failure_falls_back_to_channel_and_close_cuts_window(
        self, active_session, output_channel, mock_logging_service
    ):
        output_channel.start_thread = AsyncMock(side_effect=RuntimeError("Missing Permissions"))
        output_channel.block_collect = True

        await active_session.stop()
        await asyncio.sleep(0.01)

        assert active_session.status is SessionStatus.REVIEWING
        assert output_channel.texts[-1] == REVISION_OPEN_MESSAGE.format(minutes=1)
        mock_logging_service.error.assert_awaited()

        await active_session.close()

        assert active_session.status is SessionStatus.CLOSED

    async def test_commands_rejected_while_reviewing(self, active_session):
        await active_session.stop()
        assert active_session.status is SessionStatus.REVIEWING

        with pytest.raises(SessionTransitionError):
            await active_session.pause()
        with pytest.raises(SessionTransitionError):
            await active_session.stop()


# -------------------------------------------------------------- #
# Token Budget
# -------------------------------------------------------------- #


class TestTokenBudget:
    async def test_warning_then_limit_each_once(self, make_session, output_channel):
        policy = AsyncMock()
        session = make_session(max_token_limit=100, token_limit_policy=policy)
        await session.start()

        # "<Alice>" + 289 chars + "</Alice>" = 304 chars = 76 tokens
        await session.append_transcript(ALICE, "x" * 289)
        assert output_channel.texts == [TOKEN_WARNING_MESSAGE]

        # 81 tokens, still inside the warning band
        await session.append_transcript(ALICE, "hi")
        assert output_channel.texts == [TOKEN_WARNING_MESSAGE]

        # 95 tokens
        await session.append_transcript(ALICE, "x" * 40)
        assert output_channel.texts == [TOKEN_WARNING_MESSAGE, TOKEN_LIMIT_MESSAGE]
        await asyncio.sleep(0.01)
        policy.assert_awaited_once_with(session)

        await session.append_transcript(ALICE, "again")
        assert output_channel.texts == [TOKEN_WARNING_MESSAGE, TOKEN_LIMIT_MESSAGE]
        await asyncio.sleep(0.01)
        policy.assert_awaited_once()

    async def test_pausing_policy_runs_after_the_transcription_job(
        self, make_session, output_channel, test_whisper_client
    ):
        async def pause_policy(session):
            await session.pause()

        session = make_session(
            max_token_limit=10, token_limit_policy=pause_policy, silence_duration_ms=50
        )
        await session.start()
        test_whisper_client.set_transcription(b"RIFF\x01\x02", " " + "x" * 100)

        session.on_audio(ALICE, b"\x01\x02")
        for _ in range(200):
            if session.chat_log.epoch == 1:
                break
            await asyncio.sleep(0.01)

        assert session.status is SessionStatus.PAUSED
        assert session.chat_log.epoch == 1
        assert session.queue.is_idle()
        assert TOKEN_LIMIT_MESSAGE in output_channel.texts
        assert output_channel.texts[-1] == PAUSE_SUMMARY_MESSAGE

    async def test_below_warning_is_silent(self, make_session, output_channel):
        session = make_session(max_token_limit=100)
        await session.start()

        await session.append_transcript(ALICE, "x" * 100)

        assert output_channel.sent == []


# -------------------------------------------------------------- #
# Overlapping Commands
# -------------------------------------------------------------- #


async def test_command_during_slow_summary_is_rejected(active_session, mock_ollama_manager):
    gate = asyncio.Event()

    async def slow_complete(_messages):
        await gate.wait()
        return SUMMARY

    mock_ollama_manager.complete.side_effect = slow_complete

    pause = asyncio.create_task(active_session.pause())
    await asyncio.sleep(0.05)

    with pytest.raises(SessionTransitionError, match="still finishing"):
        await active_session.stop()

    gate.set()
    await pause
    assert active_session.status is SessionStatus.PAUSED


async def test_get_status(active_session):
    status = active_session.get_status()

    assert status["session_id"] == OWNER
    assert status["status"] == "active"
    assert status["voice_channel_id"] == 444
    assert status["participants"] == {ALICE: "Alice", BOB: "Bob", OWNER: "GM"}
    assert status["token_count"] == 0
