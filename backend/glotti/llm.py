"""Helpers for single-turn Gemini calls (reports and tone checks)."""

from __future__ import annotations

import json
import re
from typing import Any

from google import genai

from .settings import Settings


_FENCE_RE = re.compile(r"```(?:json)?\s*\n?", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def create_genai_client(settings: Settings) -> genai.Client:
    """Build an API-key or Vertex AI client from settings."""
    if settings.use_vertex:
        if not settings.project_id:
            raise RuntimeError(
                "Google Cloud project id is unavailable. Set GLOTTI_PROJECT_ID or GOOGLE_CLOUD_PROJECT."
            )
        return genai.Client(vertexai=True, project=settings.project_id, location=settings.location)
    if not settings.api_key:
        raise RuntimeError("Gemini API key is unavailable. Set GEMINI_API_KEY or GLOTTI_API_KEY.")
    return genai.Client(api_key=settings.api_key)


def clean_json_text(text: str) -> str:
    """Strip markdown fences and trailing commas from model JSON output."""
    cleaned = _FENCE_RE.sub("", text or "").strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        cleaned = cleaned[start : end + 1]
    return _TRAILING_COMMA_RE.sub(r"\1", cleaned)


def parse_json_object(text: str) -> dict[str, Any]:
    payload = json.loads(clean_json_text(text))
    if not isinstance(payload, dict):
        raise ValueError("Model response is not a JSON object")
    return payload


def response_text(response: Any) -> str:
    text = getattr(response, "text", None)
    return str(text) if text else ""
