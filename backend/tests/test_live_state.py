from __future__ import annotations

import re

from glotti.live.state import (
    AI_TERMINATORS,
    USER_TERMINATORS,
    LiveSessionState,
    Phase,
    Substate,
    TranscriptBuffer,
)
from glotti.schemas import MetricSnapshot


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def build_state(clock: FakeClock | None = None) -> LiveSessionState:
    return LiveSessionState(
        session_id="session-1",
        mode="pitch_perfect",
        user_id="user-123",
        voice_name="Kore",
        clock=clock or FakeClock(),
    )


def test_user_buffer_flushes_on_sentence_punctuation() -> None:
    buffer = TranscriptBuffer(10, USER_TERMINATORS)

    assert buffer.feed("We are building") is None
    assert buffer.feed(" a payments API.") == "We are building a payments API."
    assert buffer.text == ""


def test_user_buffer_flushes_on_word_threshold() -> None:
    buffer = TranscriptBuffer(10, USER_TERMINATORS)

    assert buffer.feed("one two three four five ") is None
    flushed = buffer.feed("six seven eight nine ten")

    assert flushed == "one two three four five six seven eight nine ten"


def test_ai_buffer_also_flushes_on_colon_and_quote() -> None:
    buffer = TranscriptBuffer(15, AI_TERMINATORS)

    assert buffer.feed("Here is my question:") == "Here is my question:"
    assert buffer.feed('She said "no"') == 'She said "no"'


def test_user_buffer_ignores_colon() -> None:
    buffer = TranscriptBuffer(10, USER_TERMINATORS)

    assert buffer.feed("The plan:") is None


def test_drain_returns_none_for_whitespace() -> None:
    buffer = TranscriptBuffer(10, re.compile(r"[.]$"))
    buffer.feed("   ")

    assert buffer.drain() is None


def test_first_turn_complete_activates_session() -> None:
    state = build_state()
    state.on_upstream_opened()

    assert state.phase == Phase.AWAITING_UPSTREAM_READY
    assert state.on_turn_complete() is True
    assert state.phase == Phase.ACTIVE
    assert state.substate == Substate.LISTENING
    assert state.on_turn_complete() is False


def test_audio_before_activation_is_relayed_without_substate() -> None:
    state = build_state()
    state.on_upstream_opened()

    assert state.on_ai_audio() is True
    assert state.substate is None


def test_interrupted_audio_is_dropped_until_grace_elapses() -> None:
    state = build_state()
    state.on_upstream_opened()
    state.on_turn_complete()

    assert state.on_ai_audio() is True
    assert state.substate == Substate.AI_SPEAKING

    state.on_interrupted()
    assert state.substate == Substate.INTERRUPTED
    assert state.on_ai_audio() is False

    state.on_grace_elapsed()
    assert state.substate == Substate.LISTENING
    assert state.on_ai_audio() is True


def test_begin_ending_only_once() -> None:
    state = build_state()
    state.on_upstream_opened()

    assert state.begin_ending() is True
    assert state.begin_ending() is False
    assert state.phase == Phase.ENDING
    assert state.relaying is False


def test_upstream_loss_is_reported_once() -> None:
    state = build_state()
    state.on_upstream_opened()
    state.on_turn_complete()

    assert state.on_upstream_lost() is True
    assert state.on_upstream_lost() is False
    assert state.relaying is False


def test_upstream_loss_during_ending_is_silent() -> None:
    state = build_state()
    state.on_upstream_opened()
    state.begin_ending()

    assert state.on_upstream_lost() is False


def test_transcript_timestamps_use_elapsed_seconds() -> None:
    clock = FakeClock(100.0)
    state = build_state(clock)

    clock.now = 102.4
    first = state.on_user_transcription("Hello there.")
    clock.now = 107.6
    second = state.on_ai_transcription("Tell me about the market.")

    assert first is not None and first.timestamp == 2
    assert second is not None and second.timestamp == 8
    assert [entry.role for entry in state.transcript] == ["user", "ai"]


def test_flush_pending_drains_user_then_ai() -> None:
    state = build_state()
    state.on_user_transcription("so the idea is")
    state.on_ai_transcription("go on and")

    flushed = state.flush_pending()

    assert [(entry.role, entry.text) for entry in flushed] == [
        ("user", "so the idea is"),
        ("ai", "go on and"),
    ]
    assert state.flush_pending() == []


def test_to_record_copies_session_data() -> None:
    state = build_state()
    state.original_session_id = "previous-session"
    state.on_user_transcription("We sell shovels.")
    state.record_metrics(MetricSnapshot(words_per_minute=120))

    record = state.to_record(None)
    state.on_user_transcription("More text.")

    assert record.id == "session-1"
    assert record.user_id == "user-123"
    assert record.voice_name == "Kore"
    assert record.original_session_id == "previous-session"
    assert len(record.transcript) == 1
    assert record.metrics[0].words_per_minute == 120
