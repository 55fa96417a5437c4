"""SQLAlchemy models for the Glotti application.

One row per finished conversational session.  The transcript, metric
snapshots and report are stored as JSON documents exactly as the
pydantic schemas serialize them; the scalar columns duplicated from
the report (score, duration) keep the per-user listing query cheap.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class SessionRow(Base):
    """Represents a single persisted session.

    The `id` is the session identifier generated when the websocket
    connection was accepted.  The `user_id` is the caller-supplied
    identifier used for partitioning and share keys.  `report` is null
    only for sessions saved before a report could be attached.
    """

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    mode: Mapped[str] = mapped_column(String(32), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    voice_name: Mapped[str] = mapped_column(String(32), nullable=False, default="AI Coach")
    original_session_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    duration_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    overall_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    transcript: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    metrics: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    report: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
