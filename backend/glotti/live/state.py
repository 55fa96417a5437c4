"""Backend state machine for Glotti live sessions.

Everything here is synchronous: the orchestrator calls these methods
between awaits, so state changes for one session never interleave.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import monotonic
from typing import Callable

from ..schemas import MetricSnapshot, SessionRecord, SessionReport, TranscriptEntry


class Phase(str, enum.Enum):
    INITIALIZING = "INITIALIZING"
    AWAITING_UPSTREAM_READY = "AWAITING_UPSTREAM_READY"
    ACTIVE = "ACTIVE"
    ENDING = "ENDING"
    CLOSED = "CLOSED"


class Substate(str, enum.Enum):
    AI_SPEAKING = "AI_SPEAKING"
    LISTENING = "LISTENING"
    INTERRUPTED = "INTERRUPTED"


USER_TERMINATORS = re.compile(r"[.?!]$")
AI_TERMINATORS = re.compile(r"[.?!:\"]$")


@dataclass
class TranscriptBuffer:
    """Accumulates streamed transcription fragments for one speaker."""

    max_words: int
    terminators: re.Pattern[str]
    text: str = ""

    def feed(self, fragment: str) -> str | None:
        """Append a fragment; return the flushed sentence if it is complete."""
        self.text += fragment
        trimmed = self.text.strip()
        if not trimmed:
            return None
        if self.terminators.search(trimmed) or len(trimmed.split()) >= self.max_words:
            return self.drain()
        return None

    def drain(self) -> str | None:
        flushed = self.text.strip()
        self.text = ""
        return flushed or None


@dataclass
class LiveSessionState:
    """Tracks one session from accept to close."""

    session_id: str
    mode: str
    user_id: str
    voice_name: str = "AI Coach"
    original_session_id: str | None = None
    user_flush_words: int = 10
    ai_flush_words: int = 15
    clock: Callable[[], float] = monotonic
    phase: Phase = Phase.INITIALIZING
    substate: Substate | None = None
    upstream_open: bool = False
    disconnect_notified: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    transcript: list[TranscriptEntry] = field(default_factory=list)
    metrics_history: list[MetricSnapshot] = field(default_factory=list)
    user_buffer: TranscriptBuffer = field(init=False)
    ai_buffer: TranscriptBuffer = field(init=False)
    _started_clock: float = field(init=False)

    def __post_init__(self) -> None:
        self.user_buffer = TranscriptBuffer(self.user_flush_words, USER_TERMINATORS)
        self.ai_buffer = TranscriptBuffer(self.ai_flush_words, AI_TERMINATORS)
        self._started_clock = self.clock()

    # -- timing ---------------------------------------------------------

    def elapsed_seconds(self) -> int:
        return max(int(round(self.clock() - self._started_clock)), 0)

    # -- phase transitions ----------------------------------------------

    @property
    def is_ending(self) -> bool:
        return self.phase in (Phase.ENDING, Phase.CLOSED)

    @property
    def relaying(self) -> bool:
        """Whether media may still flow in either direction."""
        return self.upstream_open and self.phase in (Phase.AWAITING_UPSTREAM_READY, Phase.ACTIVE)

    def on_upstream_opened(self) -> None:
        self.upstream_open = True
        self.phase = Phase.AWAITING_UPSTREAM_READY

    def on_upstream_lost(self) -> bool:
        """Mark the upstream gone; True if the client should be told."""
        self.upstream_open = False
        if self.is_ending or self.disconnect_notified:
            return False
        self.disconnect_notified = True
        return True

    def on_turn_complete(self) -> bool:
        """Returns True on the first turn boundary, which activates the session."""
        became_active = self.phase == Phase.AWAITING_UPSTREAM_READY
        if became_active:
            self.phase = Phase.ACTIVE
        if self.phase == Phase.ACTIVE:
            self.substate = Substate.LISTENING
        return became_active

    def on_ai_audio(self) -> bool:
        """Whether an upstream audio chunk should be relayed to the client."""
        if not self.relaying or self.substate == Substate.INTERRUPTED:
            return False
        if self.phase == Phase.ACTIVE:
            self.substate = Substate.AI_SPEAKING
        return True

    def on_interrupted(self) -> None:
        if self.phase == Phase.ACTIVE:
            self.substate = Substate.INTERRUPTED

    def on_grace_elapsed(self) -> None:
        if self.phase == Phase.ACTIVE and self.substate == Substate.INTERRUPTED:
            self.substate = Substate.LISTENING

    def begin_ending(self) -> bool:
        if self.is_ending:
            return False
        self.phase = Phase.ENDING
        self.substate = None
        return True

    def close(self) -> None:
        self.phase = Phase.CLOSED
        self.substate = None
        self.upstream_open = False

    # -- transcript -----------------------------------------------------

    def _append(self, role: str, text: str) -> TranscriptEntry:
        entry = TranscriptEntry(role=role, text=text, timestamp=self.elapsed_seconds())
        self.transcript.append(entry)
        return entry

    def on_user_transcription(self, fragment: str) -> TranscriptEntry | None:
        flushed = self.user_buffer.feed(fragment)
        return self._append("user", flushed) if flushed else None

    def on_ai_transcription(self, fragment: str) -> TranscriptEntry | None:
        flushed = self.ai_buffer.feed(fragment)
        return self._append("ai", flushed) if flushed else None

    def flush_pending(self) -> list[TranscriptEntry]:
        """Drain both buffers into the transcript (user first)."""
        entries = []
        for role, buffer in (("user", self.user_buffer), ("ai", self.ai_buffer)):
            flushed = buffer.drain()
            if flushed:
                entries.append(self._append(role, flushed))
        return entries

    def user_text(self) -> str:
        return " ".join(entry.text for entry in self.transcript if entry.role == "user")

    def ai_text(self) -> str:
        return " ".join(entry.text for entry in self.transcript if entry.role == "ai")

    def record_metrics(self, snapshot: MetricSnapshot) -> None:
        self.metrics_history.append(snapshot)

    # -- persistence ----------------------------------------------------

    def to_record(self, report: SessionReport | None) -> SessionRecord:
        """Snapshot the session by value for the store."""
        record = SessionRecord(
            id=self.session_id,
            user_id=self.user_id,
            mode=self.mode,
            started_at=self.started_at,
            transcript=list(self.transcript),
            metrics=list(self.metrics_history),
            report=report,
            voice_name=self.voice_name,
            original_session_id=self.original_session_id,
        )
        return record.model_copy(deep=True)
