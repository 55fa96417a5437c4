"""Main FastAPI application entry point."""

from __future__ import annotations

import logging
from functools import lru_cache

from fastapi import FastAPI, WebSocket

from .live import protocol
from .live.bridge import GeminiLiveBridge
from .live.orchestrator import ANONYMOUS_USER, SessionOrchestrator
from .live.tone import ToneAnalyzer
from .llm import create_genai_client
from .modes import UnknownModeError, get_mode
from .report import ReportSynthesizer
from .sessions import router as sessions_router
from .settings import settings
from .store import get_session_store


logger = logging.getLogger("glotti")

app = FastAPI(title="Glotti Backend", version="0.1.0")
app.include_router(sessions_router)


@lru_cache(maxsize=1)
def get_genai_client():
    """Shared google-genai client for report and tone calls."""
    return create_genai_client(settings)


@lru_cache(maxsize=1)
def get_reporter() -> ReportSynthesizer:
    return ReportSynthesizer(get_genai_client(), model_id=settings.report_model_id)


def make_tone_analyzer(session_id: str) -> ToneAnalyzer:
    return ToneAnalyzer(
        get_genai_client(),
        session_id=session_id,
        model_id=settings.tone_model_id,
        interval_seconds=settings.tone_check_interval_seconds,
        min_words=settings.tone_min_words,
        text_limit=settings.tone_text_limit,
    )


async def init_storage() -> None:
    if settings.store_backend != "database":
        return
    from .db import init_db

    await init_db()


@app.on_event("startup")
async def startup_event() -> None:
    """Configure logging and create the sessions table if needed."""
    logger.setLevel(settings.log_level.upper())
    await init_storage()
    logger.info(
        "Glotti backend started; live model=%s; store=%s; vertex=%s",
        settings.live_model_id,
        settings.store_backend,
        settings.use_vertex,
    )


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health endpoint to confirm the service is up."""
    return {"status": "ok"}


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket) -> None:
    """Run one coaching session over the client websocket."""
    await ws.accept()

    mode = ws.query_params.get("mode", "").strip()
    user_id = ws.query_params.get("userId", "").strip() or ANONYMOUS_USER
    original_session_id = ws.query_params.get("originalSessionId", "").strip() or None

    try:
        get_mode(mode)
    except UnknownModeError as exc:
        logger.warning("Rejecting connection: %s", exc)
        await ws.send_json(protocol.error(str(exc)))
        await ws.close(code=1008)
        return

    try:
        reporter = get_reporter()
    except RuntimeError as exc:
        logger.error("Cannot start session: %s", exc)
        await ws.send_json(protocol.error("Failed to connect to AI. Check your API key."))
        await ws.close(code=1011)
        return

    orchestrator = SessionOrchestrator(
        ws,
        mode=mode,
        user_id=user_id,
        original_session_id=original_session_id,
        settings=settings,
        bridge_factory=GeminiLiveBridge,
        reporter=reporter,
        store=get_session_store(),
        tone_factory=make_tone_analyzer,
    )
    await orchestrator.run()
