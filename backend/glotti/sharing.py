"""Share keys for read-only report links.

A share key is ``sha256(session_id + user_id)`` truncated to a fixed
number of hex characters.  Appending the ``full_transcript`` marker
before hashing yields a second key that also unlocks the transcript.
Keys never expire.
"""

from __future__ import annotations

import hashlib
import hmac

from .schemas import SessionRecord, SharedSessionView


FULL_TRANSCRIPT_MARKER = "full_transcript"
DEFAULT_KEY_LENGTH = 24


def derive_share_key(
    session_id: str,
    user_id: str,
    *,
    include_transcript: bool = False,
    length: int = DEFAULT_KEY_LENGTH,
) -> str:
    material = session_id + user_id + (FULL_TRANSCRIPT_MARKER if include_transcript else "")
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:length]


def match_share_key(record: SessionRecord, key: str, *, length: int = DEFAULT_KEY_LENGTH) -> bool | None:
    """Check a presented key against a record.

    Returns ``None`` when the key is invalid, otherwise whether it
    grants access to the full transcript.
    """
    for include_transcript in (True, False):
        expected = derive_share_key(
            record.id,
            record.user_id,
            include_transcript=include_transcript,
            length=length,
        )
        if hmac.compare_digest(expected.encode("utf-8"), key.encode("utf-8")):
            return include_transcript
    return None


def shared_view(record: SessionRecord, *, include_transcript: bool) -> SharedSessionView:
    """Strip owner identity (and the transcript unless unlocked)."""
    return SharedSessionView(
        id=record.id,
        mode=record.mode,
        started_at=record.started_at,
        report=record.report,
        metrics=list(record.metrics),
        voice_name=record.voice_name,
        transcript=list(record.transcript) if include_transcript else None,
    )
