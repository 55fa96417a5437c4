"""Heuristic speech metrics computed inline from the user's transcript."""

from __future__ import annotations

import re

from ..schemas import MetricSnapshot


FILLER_WORDS = (
    "um",
    "uh",
    "like",
    "you know",
    "basically",
    "actually",
    "so",
    "right",
    "well",
    "i mean",
)

_FILLER_PATTERNS = {
    filler: re.compile(rf"\b{re.escape(filler)}\b", re.IGNORECASE) for filler in FILLER_WORDS
}
_WORD_RE = re.compile(r"[a-z0-9']+")

MIN_ELAPSED_MINUTES = 0.1
PACE_CHECK_AFTER_SECONDS = 30
SLOW_WPM = 100
FAST_WPM = 170


def _words(text: str) -> list[str]:
    return text.split()


def count_fillers(text: str) -> dict[str, int]:
    counts: dict[str, int] = {}
    for filler, pattern in _FILLER_PATTERNS.items():
        matches = len(pattern.findall(text))
        if matches:
            counts[filler] = matches
    return counts


def classify_tone(text: str, word_count: int) -> str:
    lower = text.lower()
    if "!" in lower or "confident" in lower or "sure" in lower:
        return "confident"
    if "?" in lower and word_count < 10:
        return "uncertain"
    if "sorry" in lower or "maybe" in lower:
        return "nervous"
    return "neutral"


def talk_ratio(user_words: int, ai_words: int) -> int:
    total = user_words + ai_words
    if total == 0:
        return 0
    return round(user_words / total * 100)


def clarity_score(text: str) -> int:
    tokens = _WORD_RE.findall(text.lower())
    if not tokens:
        return 0
    return round(len(set(tokens)) / len(tokens) * 100)


def _improvement_hint(fillers: dict[str, int], wpm: int, elapsed_seconds: float) -> str:
    if fillers:
        return f'Try reducing filler words like "{next(iter(fillers))}"'
    if elapsed_seconds >= PACE_CHECK_AFTER_SECONDS:
        if wpm > FAST_WPM:
            return "Slow down a little so your key points land."
        if wpm < SLOW_WPM:
            return "Pick up the pace slightly to keep your listener engaged."
    return ""


def extract_metrics(
    user_text: str,
    elapsed_seconds: float,
    *,
    ai_text: str = "",
    timestamp_ms: int = 0,
) -> MetricSnapshot:
    """Recompute a cumulative snapshot from all user speech so far.

    The function keeps no state: the same inputs always produce the
    same snapshot.  ``timestamp_ms`` is stamped onto the snapshot as
    given so callers decide which clock to use.
    """
    words = _words(user_text)
    word_count = len(words)
    minutes = max(elapsed_seconds / 60, MIN_ELAPSED_MINUTES)
    wpm = round(word_count / minutes)
    fillers = count_fillers(user_text)

    return MetricSnapshot(
        filler_words=fillers,
        words_per_minute=wpm,
        tone=classify_tone(user_text, word_count),
        key_phrases=[],
        improvement_hint=_improvement_hint(fillers, wpm, elapsed_seconds),
        timestamp=timestamp_ms,
        talk_ratio=talk_ratio(word_count, len(_words(ai_text))),
        clarity_score=clarity_score(user_text),
    )
