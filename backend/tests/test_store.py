from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

pytest.importorskip("sqlalchemy")

from glotti.models import SessionRow
from glotti.modes import get_mode
from glotti.report import fallback_report
from glotti.schemas import MetricSnapshot, SessionRecord, TranscriptEntry
from glotti.store import DatabaseSessionStore, FileSessionStore


START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def build_record(
    session_id: str = "session-1",
    *,
    user_id: str = "user-123",
    mode: str = "pitch_perfect",
    started_at: datetime = START,
    with_report: bool = True,
) -> SessionRecord:
    report = fallback_report(session_id, get_mode(mode), 61, voice_name="Charon") if with_report else None
    return SessionRecord(
        id=session_id,
        user_id=user_id,
        mode=mode,
        started_at=started_at,
        transcript=[TranscriptEntry(role="user", text="Hello.", timestamp=2)],
        metrics=[MetricSnapshot(filler_words={"um": 2}, words_per_minute=110)],
        report=report,
        voice_name="Charon",
    )


@pytest.mark.asyncio
async def test_file_store_round_trips_records(tmp_path) -> None:
    store = FileSessionStore(tmp_path / "sessions.json")
    record = build_record()

    await store.save(record)

    assert await store.get("session-1") == record
    assert await store.get("missing") is None


@pytest.mark.asyncio
async def test_file_store_save_overwrites_by_id(tmp_path) -> None:
    store = FileSessionStore(tmp_path / "sessions.json")
    await store.save(build_record(with_report=False))

    await store.save(build_record())

    stored = await store.get("session-1")
    assert stored is not None and stored.report is not None
    assert json.loads((tmp_path / "sessions.json").read_text()).keys() == {"session-1"}


@pytest.mark.asyncio
async def test_file_store_lists_user_sessions_newest_first(tmp_path) -> None:
    store = FileSessionStore(tmp_path / "sessions.json")
    await store.save(build_record("old", started_at=START))
    await store.save(build_record("new", started_at=START + timedelta(hours=1)))
    await store.save(build_record("other", user_id="someone-else"))

    summaries = await store.list_by_user("user-123")

    assert [summary.id for summary in summaries] == ["new", "old"]
    assert summaries[0].duration_seconds == 61
    assert summaries[0].overall_score == 5
    assert summaries[0].voice_name == "Charon"
    assert summaries[0].preview_text


@pytest.mark.asyncio
async def test_file_store_skips_malformed_entries(tmp_path) -> None:
    path = tmp_path / "sessions.json"
    store = FileSessionStore(path)
    await store.save(build_record())
    data = json.loads(path.read_text())
    data["broken"] = {"id": "broken"}
    path.write_text(json.dumps(data))

    assert await store.get("broken") is None
    assert len(await store.list_by_user("user-123")) == 1


@pytest.mark.asyncio
async def test_file_store_treats_missing_file_as_empty(tmp_path) -> None:
    store = FileSessionStore(tmp_path / "nested" / "sessions.json")

    assert await store.list_by_user("user-123") == []


class FakeScalarList:
    def __init__(self, values: list[SessionRow]) -> None:
        self._values = values

    def all(self) -> list[SessionRow]:
        return self._values


class FakeResult:
    def __init__(self, values: list[SessionRow]) -> None:
        self._values = values

    def scalars(self) -> FakeScalarList:
        return FakeScalarList(self._values)


class FakeDB:
    def __init__(self, rows: dict[str, SessionRow] | None = None) -> None:
        self.rows = rows or {}
        self.merged: list[SessionRow] = []
        self.executed = []
        self.commit_calls = 0

    async def __aenter__(self) -> "FakeDB":
        return self

    async def __aexit__(self, *_exc) -> None:
        return None

    async def merge(self, row: SessionRow) -> SessionRow:
        self.merged.append(row)
        self.rows[row.id] = row
        return row

    async def commit(self) -> None:
        self.commit_calls += 1

    async def get(self, _model, key: str) -> SessionRow | None:
        return self.rows.get(key)

    async def execute(self, statement) -> FakeResult:
        self.executed.append(statement)
        return FakeResult(list(self.rows.values()))


@pytest.mark.asyncio
async def test_database_store_merges_and_commits() -> None:
    db = FakeDB()
    store = DatabaseSessionStore(lambda: db)

    await store.save(build_record())

    assert db.commit_calls == 1
    row = db.merged[0]
    assert row.id == "session-1"
    assert row.overall_score == 5
    assert row.duration_seconds == 61
    assert row.transcript == [{"role": "user", "text": "Hello.", "timestamp": 2}]
    assert row.report["degraded"] is True


@pytest.mark.asyncio
async def test_database_store_reads_back_records_and_summaries() -> None:
    db = FakeDB()
    store = DatabaseSessionStore(lambda: db)
    record = build_record()
    await store.save(record)

    assert await store.get("session-1") == record
    assert await store.get("missing") is None

    summaries = await store.list_by_user("user-123")
    assert [summary.id for summary in summaries] == ["session-1"]
    assert summaries[0].preview_text == record.report.social_share_texts.performance_card_summary
    assert len(db.executed) == 1
