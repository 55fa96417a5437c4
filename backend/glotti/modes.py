"""Scenario registry for Glotti sessions.

Every mode is one flat ``ModeSpec`` entry: the persona instructions the
live model runs with, the evaluator framing and category rubric used
for the post-session report, the metric keys the report highlights,
and a pydantic model describing the mode-specific ``extra`` fields.
"""

from __future__ import annotations

import typing
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field


class UnknownModeError(ValueError):
    """Raised when a connection asks for a mode that is not registered."""


@dataclass(frozen=True)
class Category:
    label: str
    description: str


class TriggerMoment(BaseModel):
    timestamp: str
    reason: str


class Fallacy(BaseModel):
    name: str
    timestamp: str
    quote: str


class PitchPerfectExtra(BaseModel):
    weakest_link: str = Field(description="The single part of the pitch that would kill the deal (string).")
    strongest_asset: str = Field(description="The best part of the pitch: Founder, Tech, or Market (string).")
    specific_fixes: list[str] = Field(
        description="Array of 3 strings: specific actionable changes for the deck or script."
    )


class EmpathyTrainerExtra(BaseModel):
    trigger_moments: list[TriggerMoment] = Field(
        description=(
            'An array of objects: { "timestamp": string, "reason": string }. '
            "Moments where the user triggered an escalation."
        )
    )
    golden_phrases: list[str] = Field(
        description="An array of strings: the single best things the user said that helped the situation."
    )
    better_alternatives: list[str] = Field(
        description="An array of strings: specific phrasing improvements for their weak moments."
    )


class VeritalkExtra(BaseModel):
    fallacies_detected: list[Fallacy] = Field(
        description=(
            'An array of objects: { "name": string (fallacy name), "timestamp": string (mm:ss), '
            '"quote": string (the user\'s words) }. Empty array if none found.'
        )
    )
    missed_counter_arguments: list[str] = Field(
        description="An array of strings: arguments the user should have anticipated or addressed but did not."
    )
    strongest_moment: str = Field(
        description="A string describing the user's single strongest argumentative moment, with timestamp and a short quote."
    )
    weakest_moment: str = Field(
        description="A string describing the user's single weakest argumentative moment, with timestamp and a short quote."
    )


class ImpromptuExtra(BaseModel):
    assigned_topic: str = Field(
        description="The exact topic assigned to the user at the start of the session (taken from the AI's opening message)."
    )
    best_moment_quote: str = Field(
        description="A short string quoting or describing the user's strongest 10-15 seconds of speech verbatim."
    )
    next_challenge: str = Field(
        description="One specific, actionable skill for the user to focus on in their next impromptu session (string)."
    )
    silence_gaps_seconds: float = Field(
        description="An estimated number: total seconds the user spent in silence or clearly struggling to find words."
    )


@dataclass(frozen=True)
class ModeSpec:
    """Runtime configuration for one scenario."""

    name: str
    persona: str
    report_intro: str
    categories: dict[str, Category]
    display_metrics: tuple[str, ...]
    extra_model: type[BaseModel]

    def validate_extra(self, payload: Any) -> dict[str, Any]:
        return self.extra_model.model_validate(payload).model_dump()

    def empty_extra(self) -> dict[str, Any]:
        """Build an ``extra`` object of the right shape with blank values."""
        values: dict[str, Any] = {}
        for name, field in self.extra_model.model_fields.items():
            annotation = field.annotation
            if typing.get_origin(annotation) is list:
                values[name] = []
            elif annotation in (int, float):
                values[name] = 0
            else:
                values[name] = ""
        return self.validate_extra(values)

    def extra_schema_lines(self) -> list[str]:
        return [
            f'"{name}": {field.description or "string"}'
            for name, field in self.extra_model.model_fields.items()
        ]


BEGIN_TRIGGER = "Hello! Let's begin the scenario."

MODES: dict[str, ModeSpec] = {
    "pitch_perfect": ModeSpec(
        name="pitch_perfect",
        persona="""
You are Victoria, a partner at a top-tier venture capital firm, taking a short pitch meeting.
Open by introducing yourself in one sentence and asking the founder what they are building.
Be skeptical, data-driven and time-constrained. Interrupt vague answers and buzzwords.
Push on the problem, market size, unit economics (CAC, LTV), competition and the team.
Keep every reply under three sentences. Never break character or coach the founder directly.
""".strip(),
        report_intro=(
            "You are a Tier-1 Venture Capitalist evaluating a startup pitch. You are skeptical, data-driven, "
            "and time-constrained. Your job is to decide if this is investable. Be blunt."
        ),
        categories={
            "investment_potential": Category(
                label="Pass/Invest Verdict",
                description=(
                    "Would you take a second meeting? Rate 1-10 (1=Hard Pass, 10=Term Sheet). Explain why "
                    'based on the "Weakest Link" and "Strongest Asset".'
                ),
            ),
            "problem_clarity": Category(
                label="Problem Clarity",
                description=(
                    "Did the user make a clear, urgent, and credible case for the problem? Did they avoid buzzwords?"
                ),
            ),
            "market_articulation": Category(
                label="Market Reality",
                description="Did they know their numbers (CAC, LTV, TAM)? Did they admit competition exists?",
            ),
            "handling_pressure": Category(
                label="Q&A Performance",
                description="Did the founder answer directly or dodge? Did they handle interruptions well?",
            ),
        },
        display_metrics=(
            "total_filler_words",
            "avg_words_per_minute",
            "avg_talk_ratio",
            "interruption_recovery_avg_ms",
            "dominant_tone",
        ),
        extra_model=PitchPerfectExtra,
    ),
    "empathy_trainer": ModeSpec(
        name="empathy_trainer",
        persona="""
You are Jordan, a customer whose order arrived broken for the second time, calling support.
Open the call upset and describe the problem in one or two sentences.
Escalate when the user is dismissive, uses policy language, or jumps to solutions before listening.
Calm down gradually only when you feel genuinely heard and validated.
Keep replies short and emotional. Never break character.
""".strip(),
        report_intro=(
            "You are a conflict resolution expert evaluating the user's performance in a high-tension scenario. "
            "Focus on emotional intelligence, effective validation, and de-escalation skills. "
            "Be strict about dismissive language."
        ),
        categories={
            "empathy_connection": Category(
                label="Empathy Score",
                description=(
                    "Did the user genuinely connect (validating feelings) or just use scripted corporate speak? "
                    "Rate 1-10."
                ),
            ),
            "de_escalation_skill": Category(
                label="De-escalation",
                description='Did the user lower the tension? Did they avoid the "Fix-It" trap (solving before listening)?',
            ),
            "active_listening": Category(
                label="Active Listening",
                description='Did the user listen without interrupting? Did they avoid the "But" trap ("I hear you, but...")?',
            ),
            "language_quality": Category(
                label="Language Precision",
                description=(
                    "Did the user avoid trigger words (calm down, policy, procedure) and use warm, human language?"
                ),
            ),
        },
        display_metrics=("avg_talk_ratio", "dominant_tone", "total_filler_words", "avg_words_per_minute"),
        extra_model=EmpathyTrainerExtra,
    ),
    "veritalk": ModeSpec(
        name="veritalk",
        persona="""
You are Sam, a sharp debate opponent. Open by proposing a contested motion and stating your side in two sentences,
then ask the user to argue the opposite position.
Challenge weak evidence, name logical fallacies when you hear them, and interrupt rambling.
Concede good points briefly, then press on. Keep replies under four sentences. Never break character.
""".strip(),
        report_intro=(
            "You are a debate coach and logician evaluating the user's argumentative performance. Focus on the "
            "quality of reasoning, evidence, and resilience under intellectual pressure. Reference specific "
            "exchanges from the transcript."
        ),
        categories={
            "argument_coherence": Category(
                label="Argument Coherence",
                description=(
                    "Was the user's main thesis clear? Did they defend it consistently throughout the session "
                    "without contradicting themselves?"
                ),
            ),
            "evidence_quality": Category(
                label="Evidence Quality",
                description=(
                    "Did the user support their claims with specific facts, statistics, examples, or credible "
                    "sources? Or did they rely on vague assertions?"
                ),
            ),
            "logical_soundness": Category(
                label="Logical Soundness",
                description=(
                    "Did the user reason without logical fallacies? Look for: straw man, ad hominem, false "
                    "equivalence, appeal to authority, circular reasoning."
                ),
            ),
            "interruption_recovery": Category(
                label="Interruption Recovery",
                description=(
                    "When challenged or interrupted, how quickly and effectively did the user regain composure "
                    "and return to their argument?"
                ),
            ),
        },
        display_metrics=(
            "interruption_recovery_avg_ms",
            "avg_words_per_minute",
            "dominant_tone",
            "avg_clarity_score",
        ),
        extra_model=VeritalkExtra,
    ),
    "impromptu": ModeSpec(
        name="impromptu",
        persona="""
You are Riley, an energetic improv and impromptu speaking partner.
Open by giving the user one unexpected, specific topic and ask them to speak on it for about a minute.
While they speak, stay quiet apart from brief encouragement. When they finish, react in one sentence
and ask one follow-up question that pushes them to extend the idea. Never break character.
""".strip(),
        report_intro=(
            "You are an impromptu speaking and improv coach evaluating the user's ability to speak clearly and "
            "coherently on an unexpected topic with no preparation time. Focus on structure, spontaneous "
            "creativity, and composure."
        ),
        categories={
            "topic_adherence": Category(
                label="Topic Adherence",
                description=(
                    "Did the user stay on the assigned topic throughout? Did their response feel relevant to the "
                    "prompt they were given?"
                ),
            ),
            "structure": Category(
                label="Speech Structure",
                description=(
                    "Did the response have a recognizable arc: a clear opening, a developed body, and a close? "
                    "Or did it trail off or meander?"
                ),
            ),
            "confidence": Category(
                label="Confidence & Presence",
                description=(
                    "Did the user sound assured and in control? How did they handle silences, hesitations, and "
                    "unexpected moments?"
                ),
            ),
            "originality": Category(
                label="Originality",
                description=(
                    "Did the user bring a fresh angle, memorable metaphors, or surprising examples? Or did they "
                    "resort to the most obvious interpretation?"
                ),
            ),
        },
        display_metrics=("total_filler_words", "avg_words_per_minute", "dominant_tone"),
        extra_model=ImpromptuExtra,
    ),
}


def get_mode(name: str | None) -> ModeSpec:
    """Return the registered mode, raising ``UnknownModeError`` otherwise."""
    spec = MODES.get((name or "").strip())
    if spec is None:
        raise UnknownModeError(f"Invalid mode: {name}")
    return spec
