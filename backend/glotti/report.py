"""Post-session report generation.

One prompt is built from the full dialogue, the aggregated speech
metrics and the mode's rubric; one model call produces the JSON report,
which is cleaned, validated against the base report shape plus the
mode's ``extra`` schema, and returned.  Any failure along the way
yields a degraded report with the same shape instead of an exception.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Sequence

from google.genai import types
from pydantic import ValidationError

from .llm import parse_json_object, response_text
from .modes import ModeSpec, UnknownModeError, get_mode
from .schemas import (
    CategoryScore,
    MetricSnapshot,
    ReportMetrics,
    ReportPayload,
    SessionReport,
    SocialShareTexts,
    TranscriptEntry,
)


logger = logging.getLogger("glotti")

REPORT_SYSTEM_INSTRUCTIONS = (
    "You are a performance evaluation expert. Generate detailed, structured performance reports evaluating "
    "users in training sessions. Always evaluate the USER's performance, not the AI partner. "
    "Return ONLY valid JSON matching the requested schema."
)

NEUTRAL_SCORE = 5


class ReportValidationError(ValueError):
    """The model's report does not match the mode's configured shape."""


@dataclass(frozen=True)
class MetricsAggregate:
    total_filler_words: int
    avg_words_per_minute: int
    dominant_tone: str
    avg_talk_ratio: int
    avg_clarity_score: int


def aggregate_metrics(metrics_history: Sequence[MetricSnapshot]) -> MetricsAggregate:
    """Roll cumulative snapshots up into report-level numbers.

    Snapshots are cumulative, so filler totals come from the latest one
    rather than a sum across all of them.
    """
    if not metrics_history:
        return MetricsAggregate(0, 0, "unknown", 0, 0)
    count = len(metrics_history)
    latest = metrics_history[-1]
    tones = Counter(snapshot.tone for snapshot in metrics_history)
    return MetricsAggregate(
        total_filler_words=sum(latest.filler_words.values()),
        avg_words_per_minute=round(sum(s.words_per_minute for s in metrics_history) / count),
        dominant_tone=tones.most_common(1)[0][0],
        avg_talk_ratio=round(sum(s.talk_ratio for s in metrics_history) / count),
        avg_clarity_score=round(sum(s.clarity_score for s in metrics_history) / count),
    )


def format_timestamp(seconds: int) -> str:
    minutes, secs = divmod(max(int(seconds), 0), 60)
    return f"{minutes:02d}:{secs:02d}"


def dialogue_script(transcript: Sequence[TranscriptEntry]) -> str:
    if not transcript:
        return "(No dialogue recorded during this session)"
    lines = []
    for entry in transcript:
        prefix = "[User]" if entry.role == "user" else "[AI Partner]"
        lines.append(f"[{format_timestamp(entry.timestamp)}] {prefix}: {entry.text}")
    return "\n".join(lines)


def build_report_prompt(
    spec: ModeSpec,
    transcript: Sequence[TranscriptEntry],
    metrics_history: Sequence[MetricSnapshot],
    duration_seconds: int,
) -> str:
    aggregate = aggregate_metrics(metrics_history)
    user_turns = sum(1 for entry in transcript if entry.role == "user")

    rubric = "\n".join(
        f"- {key} ({category.label}): {category.description}" for key, category in spec.categories.items()
    )
    categories_shape = ",\n".join(
        f'    "{key}": {{"score": <1-10>, "feedback": "<2-3 sentences about the USER>"}}'
        for key in spec.categories
    )
    extra_shape = ",\n".join(f"    {line}" for line in spec.extra_schema_lines())

    return f"""
{spec.report_intro}

IMPORTANT: Evaluate the USER's performance ONLY, NOT the AI partner.
The transcript below is a chronological script of the conversation. Lines starting
with [User] are what the person being trained said. Lines starting with [AI Partner]
are what the AI persona said. Use the [AI Partner] lines only as context to judge how
well the user responded to pressure or questions.

If the user did not speak or said very little, score them LOW (1-3) and provide
constructive feedback encouraging them to participate.

MODE: {spec.name}
DURATION: {duration_seconds} seconds

=== FULL SESSION DIALOGUE SCRIPT ===
{dialogue_script(transcript)}

USER'S AGGREGATED METRICS:
- Total filler words used by user: {aggregate.total_filler_words}
- Average words per minute: {aggregate.avg_words_per_minute}
- Average talk ratio (% of words spoken by the user): {aggregate.avg_talk_ratio}
- Average clarity score (0-100): {aggregate.avg_clarity_score}
- Dominant tone: {aggregate.dominant_tone}
- Total times user spoke: {user_turns}

EVALUATION CATEGORIES:
{rubric}

Return a JSON object with exactly this structure:
{{
  "overall_score": <number 1-10>,
  "categories": {{
{categories_shape}
  }},
  "metrics": {{
    "total_filler_words": {aggregate.total_filler_words},
    "avg_words_per_minute": {aggregate.avg_words_per_minute},
    "dominant_tone": "{aggregate.dominant_tone}",
    "interruption_recovery_avg_ms": <estimated number>,
    "avg_talk_ratio": {aggregate.avg_talk_ratio},
    "avg_clarity_score": {aggregate.avg_clarity_score}
  }},
  "key_moments": [
    {{"timestamp": "<mm:ss>", "type": "strength" | "weakness", "note": "<the USER's moment, referencing the dialogue>"}}
  ],
  "improvement_tips": ["<tip 1>", "<tip 2>", "<tip 3>"],
  "social_share_texts": {{
    "performance_card_summary": "<one upbeat sentence summarizing the result>",
    "linkedin_template": "<a short professional post about the session>",
    "twitter_template": "<a post under 280 characters>",
    "facebook_template": "<a friendly post about the session>"
  }},
  "extra": {{
{extra_shape}
  }}
}}

Return ONLY the JSON object, no markdown fences or explanation.
""".strip()


def validate_report_payload(spec: ModeSpec, payload: dict[str, Any]) -> ReportPayload:
    """Validate the model's JSON against the base shape and the mode schema."""
    parsed = ReportPayload.model_validate(payload)
    missing = [key for key in spec.categories if key not in parsed.categories]
    if missing:
        raise ReportValidationError(f"Missing categories: {', '.join(missing)}")
    categories = {key: parsed.categories[key] for key in spec.categories}
    extra = spec.validate_extra(parsed.extra)
    return parsed.model_copy(update={"categories": categories, "extra": extra})


def fallback_report(
    session_id: str,
    spec: ModeSpec | None,
    duration_seconds: int,
    *,
    mode: str = "",
    voice_name: str = "AI Coach",
) -> SessionReport:
    """A complete report with neutral scores, used when generation fails.

    Without a ``spec`` (unknown mode) the categories and ``extra`` are empty.
    """
    feedback = "We couldn't analyze this part of the session. Try another session to get detailed feedback."
    return SessionReport(
        session_id=session_id,
        mode=spec.name if spec is not None else mode,
        duration_seconds=duration_seconds,
        overall_score=NEUTRAL_SCORE,
        categories=(
            {key: CategoryScore(score=NEUTRAL_SCORE, feedback=feedback) for key in spec.categories}
            if spec is not None
            else {}
        ),
        metrics=ReportMetrics(),
        key_moments=[],
        improvement_tips=["Report generation was unavailable for this session. Please try again."],
        social_share_texts=SocialShareTexts(
            performance_card_summary="I just completed an AI-powered speaking session.",
            linkedin_template="I just practiced my speaking skills with an AI training partner.",
            twitter_template="Just finished an AI speaking practice session.",
            facebook_template="I just finished a speaking practice session with an AI partner!",
        ),
        extra=spec.empty_extra() if spec is not None else {},
        display_metrics=list(spec.display_metrics) if spec is not None else [],
        voice_name=voice_name,
        degraded=True,
    )


class ReportSynthesizer:
    """Generates the terminal report for a session with one model call."""

    def __init__(self, client: Any, *, model_id: str = "gemini-2.5-flash") -> None:
        self._client = client
        self.model_id = model_id

    async def generate(
        self,
        session_id: str,
        mode: str,
        transcript: Sequence[TranscriptEntry],
        metrics_history: Sequence[MetricSnapshot],
        duration_seconds: int,
        *,
        voice_name: str = "AI Coach",
    ) -> SessionReport:
        try:
            spec = get_mode(mode)
        except UnknownModeError as exc:
            logger.warning("[%s] Cannot build a report: %s", session_id, exc)
            return fallback_report(session_id, None, duration_seconds, mode=mode, voice_name=voice_name)

        try:
            prompt = build_report_prompt(spec, transcript, metrics_history, duration_seconds)
            logger.info(
                "[%s] Report prompt length: %s chars, transcript entries: %s",
                session_id,
                len(prompt),
                len(transcript),
            )
            response = await self._client.aio.models.generate_content(
                model=self.model_id,
                contents=prompt,
                config=types.GenerateContentConfig(
                    system_instruction=f"{REPORT_SYSTEM_INSTRUCTIONS} {spec.report_intro}",
                    response_mime_type="application/json",
                ),
            )
            payload = validate_report_payload(spec, parse_json_object(response_text(response)))
        except (ValueError, ValidationError) as exc:
            logger.warning("[%s] Report response rejected: %s", session_id, exc)
            return fallback_report(session_id, spec, duration_seconds, voice_name=voice_name)
        except Exception as exc:
            logger.exception("[%s] Report generation failed: %s", session_id, exc)
            return fallback_report(session_id, spec, duration_seconds, voice_name=voice_name)

        aggregate = aggregate_metrics(metrics_history)
        metrics = ReportMetrics(
            total_filler_words=aggregate.total_filler_words,
            avg_words_per_minute=aggregate.avg_words_per_minute,
            dominant_tone=aggregate.dominant_tone,
            interruption_recovery_avg_ms=max(payload.metrics.interruption_recovery_avg_ms, 0),
            avg_talk_ratio=aggregate.avg_talk_ratio,
            avg_clarity_score=aggregate.avg_clarity_score,
        )
        return SessionReport(
            **payload.model_dump(exclude={"metrics"}),
            metrics=metrics,
            session_id=session_id,
            mode=spec.name,
            duration_seconds=duration_seconds,
            display_metrics=list(spec.display_metrics),
            voice_name=voice_name,
        )
