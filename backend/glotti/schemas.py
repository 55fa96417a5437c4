"""Pydantic schemas for session data, metrics and reports.

These models describe everything that crosses a boundary: metric
snapshots pushed to the browser during a session, the final report,
the persisted session record, and the summaries served by the REST
API.  Transcript entries and metric snapshots are frozen because a
session only ever appends them.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field


def _round_number(value: Any) -> Any:
    if isinstance(value, float):
        return int(round(value))
    return value


RoundedInt = Annotated[int, BeforeValidator(_round_number)]
Score = Annotated[int, BeforeValidator(_round_number), Field(ge=1, le=10)]


class TranscriptEntry(BaseModel):
    """One flushed utterance, timestamped in seconds since session start."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "ai"]
    text: str
    timestamp: int = Field(..., ge=0)


class MetricSnapshot(BaseModel):
    """Cumulative rollup of everything the user has said so far."""

    model_config = ConfigDict(frozen=True)

    filler_words: dict[str, int] = Field(default_factory=dict)
    words_per_minute: int = 0
    tone: str = "neutral"
    key_phrases: list[str] = Field(default_factory=list)
    improvement_hint: str = ""
    timestamp: int = 0
    talk_ratio: int = 0
    clarity_score: int = 0


class CategoryScore(BaseModel):
    score: Score
    feedback: str


class ReportMetrics(BaseModel):
    total_filler_words: int = 0
    avg_words_per_minute: int = 0
    dominant_tone: str = "unknown"
    interruption_recovery_avg_ms: RoundedInt = 0
    avg_talk_ratio: int = 0
    avg_clarity_score: int = 0


class KeyMoment(BaseModel):
    timestamp: str
    type: Literal["strength", "weakness"]
    note: str


class SocialShareTexts(BaseModel):
    performance_card_summary: str
    linkedin_template: str
    twitter_template: str
    facebook_template: str


class ReportPayload(BaseModel):
    """Shape the report model is asked to return, before mode checks."""

    overall_score: Score
    categories: dict[str, CategoryScore]
    metrics: ReportMetrics = Field(default_factory=ReportMetrics)
    key_moments: list[KeyMoment] = Field(default_factory=list)
    improvement_tips: list[str]
    social_share_texts: SocialShareTexts
    extra: dict[str, Any] = Field(default_factory=dict)


class SessionReport(ReportPayload):
    """Terminal report attached to a session."""

    session_id: str
    mode: str
    duration_seconds: int = 0
    display_metrics: list[str] = Field(default_factory=list)
    voice_name: str = "AI Coach"
    degraded: bool = False


class SessionRecord(BaseModel):
    """The persisted form of one conversational session."""

    id: str
    user_id: str
    mode: str
    started_at: datetime
    transcript: list[TranscriptEntry] = Field(default_factory=list)
    metrics: list[MetricSnapshot] = Field(default_factory=list)
    report: Optional[SessionReport] = None
    voice_name: str = "AI Coach"
    original_session_id: Optional[str] = None


class SessionSummary(BaseModel):
    """Lightweight listing entry for the sessions dashboard."""

    id: str
    mode: str
    started_at: datetime
    duration_seconds: int = 0
    overall_score: int = 0
    preview_text: str = ""
    voice_name: str = "AI Coach"

    @classmethod
    def from_record(cls, record: SessionRecord) -> "SessionSummary":
        report = record.report
        return cls(
            id=record.id,
            mode=record.mode,
            started_at=record.started_at,
            duration_seconds=report.duration_seconds if report else 0,
            overall_score=report.overall_score if report else 0,
            preview_text=report.social_share_texts.performance_card_summary if report else "",
            voice_name=record.voice_name or "AI Coach",
        )


class SharedSessionView(BaseModel):
    """Sanitized session served to holders of a share key."""

    id: str
    mode: str
    started_at: datetime
    report: Optional[SessionReport] = None
    metrics: list[MetricSnapshot] = Field(default_factory=list)
    voice_name: str = "AI Coach"
    transcript: Optional[list[TranscriptEntry]] = None
