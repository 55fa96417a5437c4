from typing import Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query

from .schemas import SessionRecord, SessionSummary, SharedSessionView
from .settings import settings
from .sharing import derive_share_key, match_share_key, shared_view
from .store import SessionStore, get_session_store


router = APIRouter(prefix="/api/sessions", tags=["sessions"])


async def _get_session(store: SessionStore, session_id: str) -> SessionRecord:
    record = await store.get(session_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return record


async def _get_owned_session(store: SessionStore, session_id: str, user_id: str) -> SessionRecord:
    record = await _get_session(store, session_id)
    if record.user_id != user_id:
        raise HTTPException(status_code=403, detail="Not authorised to access this session")
    return record


@router.get("", response_model=list[SessionSummary])
async def list_sessions(
    user_id: Optional[str] = Query(None, alias="userId"),
    store: SessionStore = Depends(get_session_store),
) -> list[SessionSummary]:
    """List session summaries for a user, newest first."""
    if not user_id:
        raise HTTPException(status_code=400, detail="userId query param is required")
    return await store.list_by_user(user_id)


@router.get("/{session_id}", response_model=None)
async def get_session(
    session_id: str,
    user_id: Optional[str] = Query(None, alias="userId"),
    key: Optional[str] = Query(None),
    store: SessionStore = Depends(get_session_store),
) -> Union[SessionRecord, SharedSessionView]:
    """Fetch one session.

    The owner passes `userId` and receives the full record.  Anyone
    holding a share key passes `key` instead and receives a sanitized
    view without the owner's identity; the transcript is included only
    when the key was generated with the full-transcript marker.
    """
    if key:
        record = await _get_session(store, session_id)
        include_transcript = match_share_key(record, key, length=settings.share_key_length)
        if include_transcript is None:
            raise HTTPException(status_code=403, detail="Invalid share key")
        return shared_view(record, include_transcript=include_transcript)
    if not user_id:
        raise HTTPException(status_code=403, detail="userId or key required")
    return await _get_owned_session(store, session_id, user_id)


@router.get("/{session_id}/share-key")
async def get_share_key(
    session_id: str,
    user_id: str = Query(..., alias="userId"),
    full_transcript: bool = Query(False, alias="fullTranscript"),
    store: SessionStore = Depends(get_session_store),
) -> dict[str, str]:
    """Return the share key for a session the caller owns."""
    record = await _get_owned_session(store, session_id, user_id)
    return {
        "key": derive_share_key(
            record.id,
            record.user_id,
            include_transcript=full_transcript,
            length=settings.share_key_length,
        )
    }
