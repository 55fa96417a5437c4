"""Typed events decoded from the Gemini Live upstream socket.

The Live API multiplexes setup acknowledgements, transcription
fragments, audio chunks, interruptions, turn boundaries and tool calls
over one channel.  ``decode_upstream_frame`` turns each raw frame into
a list of the small frozen dataclasses below so the orchestrator can
dispatch on them with ``match``.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Union


logger = logging.getLogger("glotti")


@dataclass(frozen=True)
class SetupComplete:
    pass


@dataclass(frozen=True)
class InputTranscription:
    text: str


@dataclass(frozen=True)
class OutputTranscription:
    text: str


@dataclass(frozen=True)
class AudioChunk:
    data: bytes
    mime: str = "audio/pcm;rate=24000"


@dataclass(frozen=True)
class ModelText:
    text: str


@dataclass(frozen=True)
class Interrupted:
    pass


@dataclass(frozen=True)
class TurnComplete:
    pass


@dataclass(frozen=True)
class ToolCall:
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GoAway:
    time_left: str = ""


@dataclass(frozen=True)
class UpstreamError:
    message: str


@dataclass(frozen=True)
class UpstreamClosed:
    code: int = 1006
    reason: str = ""


UpstreamEvent = Union[
    SetupComplete,
    InputTranscription,
    OutputTranscription,
    AudioChunk,
    ModelText,
    Interrupted,
    TurnComplete,
    ToolCall,
    GoAway,
    UpstreamError,
    UpstreamClosed,
]


def _read_field(payload: dict[str, Any], snake_name: str) -> Any:
    """Read either snake_case or lowerCamelCase from a dict."""
    if snake_name in payload:
        return payload[snake_name]
    parts = snake_name.split("_")
    camel_name = parts[0] + "".join(part.capitalize() for part in parts[1:])
    return payload.get(camel_name)


def _transcription_text(container: dict[str, Any], snake_name: str) -> str | None:
    transcription = _read_field(container, snake_name)
    if not isinstance(transcription, dict):
        return None
    text = _read_field(transcription, "text")
    return str(text) if text else None


def _server_content_events(content: dict[str, Any]) -> list[UpstreamEvent]:
    events: list[UpstreamEvent] = []
    if _read_field(content, "interrupted"):
        events.append(Interrupted())

    user_text = _transcription_text(content, "input_transcription")
    if user_text:
        events.append(InputTranscription(user_text))
    ai_text = _transcription_text(content, "output_transcription")
    if ai_text:
        events.append(OutputTranscription(ai_text))

    model_turn = _read_field(content, "model_turn")
    if isinstance(model_turn, dict):
        for part in _read_field(model_turn, "parts") or []:
            if not isinstance(part, dict):
                continue
            if part.get("text"):
                events.append(ModelText(str(part["text"])))
            inline_data = _read_field(part, "inline_data")
            if not isinstance(inline_data, dict) or not inline_data.get("data"):
                continue
            try:
                audio = base64.b64decode(inline_data["data"])
            except (binascii.Error, ValueError):
                logger.warning("Skipping undecodable inline audio from Live API")
                continue
            mime = _read_field(inline_data, "mime_type") or "audio/pcm;rate=24000"
            events.append(AudioChunk(audio, str(mime)))

    if _read_field(content, "turn_complete"):
        events.append(TurnComplete())
    return events


def parse_upstream_message(payload: dict[str, Any]) -> list[UpstreamEvent]:
    """Translate one decoded Live API JSON message into events."""
    events: list[UpstreamEvent] = []
    if _read_field(payload, "setup_complete") is not None:
        events.append(SetupComplete())

    go_away = _read_field(payload, "go_away")
    if go_away is not None:
        time_left = _read_field(go_away, "time_left") if isinstance(go_away, dict) else ""
        events.append(GoAway(str(time_left or "")))

    tool_call = _read_field(payload, "tool_call")
    if isinstance(tool_call, dict):
        events.append(ToolCall(tool_call))

    server_content = _read_field(payload, "server_content")
    if isinstance(server_content, dict):
        events.extend(_server_content_events(server_content))

    # Some API versions send transcriptions at the top level.
    user_text = _transcription_text(payload, "input_transcription")
    if user_text:
        events.append(InputTranscription(user_text))
    ai_text = _transcription_text(payload, "output_transcription")
    if ai_text:
        events.append(OutputTranscription(ai_text))
    return events


def decode_upstream_frame(raw: str | bytes) -> list[UpstreamEvent]:
    """Decode one websocket frame; non-JSON binary frames are raw audio."""
    if isinstance(raw, bytes):
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return [AudioChunk(raw)]
        if not isinstance(payload, dict):
            return [AudioChunk(raw)]
    else:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Skipping non-JSON Live API frame")
            return []
    if not isinstance(payload, dict):
        logger.warning("Skipping non-object Live API frame")
        return []
    return parse_upstream_message(payload)
