"""Rate-limited background tone classification for live sessions."""

from __future__ import annotations

import asyncio
import logging
import re
from time import monotonic
from typing import Any, Callable

from google.genai import types

from ..llm import parse_json_object, response_text


logger = logging.getLogger("glotti")

TONE_INSTRUCTIONS = """
You are a speech tone analyzer. Analyze text from a user in a speech training session.
Return a JSON object with two fields:
- "tone": exactly one word describing the emotional tone (e.g., Confident, Nervous, Defensive, Excited, Thoughtful, Frustrated)
- "hint": a very short, one-sentence actionable training hint. Empty string if no hint needed.
Return ONLY the JSON object.
""".strip()


class ToneAnalyzer:
    """Classifies accumulated user speech at most once per interval.

    ``try_analyze`` never blocks: it either returns ``None`` or the
    background task it spawned.  The latest successful result is read
    through ``tone`` and ``hint``; failures leave them unchanged.
    """

    def __init__(
        self,
        client: Any,
        *,
        session_id: str,
        model_id: str = "gemini-2.5-flash",
        interval_seconds: float = 15.0,
        min_words: int = 20,
        text_limit: int = 1000,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._client = client
        self.session_id = session_id
        self.model_id = model_id
        self.interval_seconds = interval_seconds
        self.min_words = min_words
        self.text_limit = text_limit
        self._clock = clock
        self._last_check = clock()
        self._task: asyncio.Task[None] | None = None
        self.tone = "Neutral"
        self.hint = ""
        self.has_result = False

    def try_analyze(self, user_text: str) -> asyncio.Task[None] | None:
        now = self._clock()
        if now - self._last_check <= self.interval_seconds:
            return None
        if len(user_text.split()) <= self.min_words:
            return None
        if self._task is not None and not self._task.done():
            return None
        self._last_check = now
        self._task = asyncio.create_task(self._analyze(user_text[-self.text_limit :]))
        return self._task

    async def aclose(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _analyze(self, text: str) -> None:
        try:
            response = await self._client.aio.models.generate_content(
                model=self.model_id,
                contents=f'Analyze this text:\n\n"{text}"',
                config=types.GenerateContentConfig(
                    system_instruction=TONE_INSTRUCTIONS,
                    response_mime_type="application/json",
                    temperature=0.2,
                ),
            )
            payload = parse_json_object(response_text(response))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[%s] Tone analysis failed: %s", self.session_id, exc)
            return

        tone = re.sub(r"[^A-Za-z]", "", str(payload.get("tone") or ""))
        if not tone:
            logger.debug("[%s] Tone analysis returned no tone", self.session_id)
            return
        self.tone = tone
        self.hint = str(payload.get("hint") or "")
        self.has_result = True
        logger.info("[%s] Tone updated: %s", self.session_id, tone)
