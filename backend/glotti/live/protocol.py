"""Message protocol for the Glotti client WebSocket.

Text frames carry JSON objects with a ``type`` field.  Binary frames
from the client carry media: a JSON header line such as
``{"type": "audio"}`` terminated by ``\\n``, followed by the raw bytes
(16 kHz PCM for audio, JPEG for video).  Binary frames from the server
are raw 24 kHz PCM audio with no header.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any


# Types of events sent by the client
CLIENT_END_SESSION = "end_session"

MEDIA_AUDIO = "audio"
MEDIA_VIDEO = "video"

# Types of events sent by the server
SERVER_SESSION_STARTED = "session_started"
SERVER_INTERRUPTED = "interrupted"
SERVER_METRICS = "metrics"
SERVER_COACHING_CUE = "coaching_cue"
SERVER_TURN_COMPLETE = "turn_complete"
SERVER_REPORT = "report"
SERVER_ERROR = "error"
SERVER_AI_DISCONNECTED = "ai_disconnected"

USER_CUE_PREFIX = "[User]: "


class MalformedFrame(ValueError):
    """A client binary frame could not be split into header and payload."""


@dataclass(frozen=True)
class MediaFrame:
    """A decoded client media frame."""

    kind: str
    payload: bytes


def parse_media_frame(data: bytes) -> MediaFrame:
    newline = data.find(b"\n")
    if newline == -1:
        raise MalformedFrame("no JSON header found")
    try:
        header = json.loads(data[:newline].decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedFrame("bad JSON header") from exc
    if not isinstance(header, dict):
        raise MalformedFrame("header is not a JSON object")
    kind = header.get("type")
    if kind not in (MEDIA_AUDIO, MEDIA_VIDEO):
        raise MalformedFrame(f"unsupported media type: {kind!r}")
    return MediaFrame(kind=kind, payload=data[newline + 1 :])


def encode_media_frame(kind: str, payload: bytes) -> bytes:
    """Build a client media frame; used by tests and tooling."""
    return json.dumps({"type": kind}).encode("utf-8") + b"\n" + payload


def parse_command(text: str) -> dict[str, Any]:
    message = json.loads(text)
    if not isinstance(message, dict):
        raise ValueError("Messages must be JSON objects")
    return message


def session_started(session_id: str, mode: str) -> dict[str, Any]:
    return {"type": SERVER_SESSION_STARTED, "sessionId": session_id, "mode": mode}


def interrupted() -> dict[str, Any]:
    return {"type": SERVER_INTERRUPTED}


def metrics(data: dict[str, Any]) -> dict[str, Any]:
    return {"type": SERVER_METRICS, "data": data}


def coaching_cue(text: str, timestamp: int) -> dict[str, Any]:
    return {"type": SERVER_COACHING_CUE, "text": text, "timestamp": timestamp}


def turn_complete(*, capture: bool = False) -> dict[str, Any]:
    message: dict[str, Any] = {"type": SERVER_TURN_COMPLETE}
    if capture:
        message["capture"] = True
    return message


def report(data: dict[str, Any]) -> dict[str, Any]:
    return {"type": SERVER_REPORT, "data": data}


def error(message: str) -> dict[str, Any]:
    return {"type": SERVER_ERROR, "message": message}


def ai_disconnected(message: str) -> dict[str, Any]:
    return {"type": SERVER_AI_DISCONNECTED, "message": message}
