"""Durable storage for finished sessions.

The orchestrator and the REST API depend only on the ``SessionStore``
protocol.  ``FileSessionStore`` keeps every session in one JSON file
for local development; ``DatabaseSessionStore`` writes to PostgreSQL
through SQLAlchemy for production deployments.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import select

from .models import SessionRow
from .schemas import SessionRecord, SessionSummary
from .settings import Settings, settings


logger = logging.getLogger("glotti")

LIST_LIMIT = 50


class SessionStore(Protocol):
    async def save(self, record: SessionRecord) -> None: ...

    async def get(self, session_id: str) -> SessionRecord | None: ...

    async def list_by_user(self, user_id: str) -> list[SessionSummary]: ...


def _sort_summaries(summaries: list[SessionSummary]) -> list[SessionSummary]:
    return sorted(summaries, key=lambda summary: summary.started_at, reverse=True)


class FileSessionStore:
    """Single JSON file keyed by session id, rewritten atomically on save."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read(self) -> dict[str, Any]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable session file %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)

    async def _load(self) -> dict[str, SessionRecord]:
        data = await asyncio.to_thread(self._read)
        records: dict[str, SessionRecord] = {}
        for session_id, payload in data.items():
            try:
                records[session_id] = SessionRecord.model_validate(payload)
            except ValueError as exc:
                logger.warning("Skipping malformed session %s in %s: %s", session_id, self.path, exc)
        return records

    async def save(self, record: SessionRecord) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            data[record.id] = record.model_dump(mode="json")
            await asyncio.to_thread(self._write, data)
        logger.info("Session %s saved to %s", record.id, self.path)

    async def get(self, session_id: str) -> SessionRecord | None:
        records = await self._load()
        return records.get(session_id)

    async def list_by_user(self, user_id: str) -> list[SessionSummary]:
        records = await self._load()
        summaries = [
            SessionSummary.from_record(record) for record in records.values() if record.user_id == user_id
        ]
        return _sort_summaries(summaries)


def _to_row(record: SessionRecord) -> SessionRow:
    payload = record.model_dump(mode="json")
    report = record.report
    return SessionRow(
        id=record.id,
        user_id=record.user_id,
        mode=record.mode,
        started_at=record.started_at,
        voice_name=record.voice_name,
        original_session_id=record.original_session_id,
        duration_seconds=report.duration_seconds if report else 0,
        overall_score=report.overall_score if report else 0,
        transcript=payload["transcript"],
        metrics=payload["metrics"],
        report=payload["report"],
    )


def _from_row(row: SessionRow) -> SessionRecord:
    return SessionRecord.model_validate(
        {
            "id": row.id,
            "user_id": row.user_id,
            "mode": row.mode,
            "started_at": row.started_at,
            "transcript": row.transcript or [],
            "metrics": row.metrics or [],
            "report": row.report,
            "voice_name": row.voice_name,
            "original_session_id": row.original_session_id,
        }
    )


def _summary_from_row(row: SessionRow) -> SessionSummary:
    report = row.report or {}
    share_texts = report.get("social_share_texts") or {}
    return SessionSummary(
        id=row.id,
        mode=row.mode,
        started_at=row.started_at,
        duration_seconds=row.duration_seconds or 0,
        overall_score=row.overall_score or 0,
        preview_text=share_texts.get("performance_card_summary", ""),
        voice_name=row.voice_name or "AI Coach",
    )


class DatabaseSessionStore:
    """PostgreSQL-backed store using an async SQLAlchemy sessionmaker."""

    def __init__(self, sessionmaker: Any) -> None:
        self._sessionmaker = sessionmaker

    async def save(self, record: SessionRecord) -> None:
        async with self._sessionmaker() as db:
            await db.merge(_to_row(record))
            await db.commit()
        logger.info("Session %s saved to database", record.id)

    async def get(self, session_id: str) -> SessionRecord | None:
        async with self._sessionmaker() as db:
            row = await db.get(SessionRow, session_id)
        if row is None:
            return None
        return _from_row(row)

    async def list_by_user(self, user_id: str) -> list[SessionSummary]:
        async with self._sessionmaker() as db:
            result = await db.execute(
                select(SessionRow)
                .where(SessionRow.user_id == user_id)
                .order_by(SessionRow.started_at.desc())
                .limit(LIST_LIMIT)
            )
            rows = result.scalars().all()
        return [_summary_from_row(row) for row in rows]


def create_store(config: Settings) -> SessionStore:
    """Pick the configured store backend."""
    if config.store_backend == "database":
        from .db import AsyncSessionLocal

        logger.info("Using PostgreSQL session store")
        return DatabaseSessionStore(AsyncSessionLocal)
    logger.info("Using file-based session store at %s", config.sessions_file)
    return FileSessionStore(config.sessions_file)


@lru_cache(maxsize=1)
def get_session_store() -> SessionStore:
    """FastAPI dependency returning the process-wide store."""
    return create_store(settings)
