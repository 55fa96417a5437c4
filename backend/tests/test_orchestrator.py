from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import pytest

pytest.importorskip("google.genai")

from glotti.live.events import (
    AudioChunk,
    InputTranscription,
    Interrupted,
    OutputTranscription,
    SetupComplete,
    TurnComplete,
    UpstreamClosed,
)
from glotti.live.orchestrator import SessionOrchestrator
from glotti.live.protocol import encode_media_frame
from glotti.live.state import Phase, Substate
from glotti.modes import BEGIN_TRIGGER, get_mode
from glotti.report import fallback_report
from glotti.schemas import SessionRecord
from glotti.settings import Settings


class FakeWebSocket:
    def __init__(self) -> None:
        self.incoming: asyncio.Queue[dict] = asyncio.Queue()
        self.sent: list[Any] = []
        self.close_code: int | None = None

    async def receive(self) -> dict:
        return await self.incoming.get()

    async def send_json(self, payload: dict) -> None:
        if self.close_code is not None:
            raise RuntimeError("websocket already closed")
        self.sent.append(payload)

    async def send_bytes(self, data: bytes) -> None:
        if self.close_code is not None:
            raise RuntimeError("websocket already closed")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.close_code = code
        await self.incoming.put({"type": "websocket.disconnect", "code": code})

    def client_text(self, payload: dict) -> None:
        self.incoming.put_nowait({"type": "websocket.receive", "text": json.dumps(payload)})

    def client_bytes(self, data: bytes) -> None:
        self.incoming.put_nowait({"type": "websocket.receive", "bytes": data})

    def client_disconnect(self) -> None:
        self.incoming.put_nowait({"type": "websocket.disconnect", "code": 1001})

    def json_messages(self, message_type: str | None = None) -> list[dict]:
        messages = [item for item in self.sent if isinstance(item, dict)]
        if message_type is None:
            return messages
        return [item for item in messages if item["type"] == message_type]

    async def wait_for(self, message_type: str, count: int = 1, timeout: float = 2.0) -> list[dict]:
        await wait_until(lambda: len(self.json_messages(message_type)) >= count, timeout)
        return self.json_messages(message_type)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


class FakeBridge:
    def __init__(self, *, fail_connect: bool = False, **kwargs) -> None:
        self.kwargs = kwargs
        self.fail_connect = fail_connect
        self.sent_audio: list[bytes] = []
        self.sent_video: list[bytes] = []
        self.sent_text: list[str] = []
        self.close_calls = 0
        self._events: asyncio.Queue = asyncio.Queue()

    async def connect(self) -> None:
        if self.fail_connect:
            raise ConnectionRefusedError("upstream refused")

    async def close(self) -> None:
        self.close_calls += 1
        await self._events.put(None)

    async def send_audio(self, payload: bytes) -> None:
        self.sent_audio.append(payload)

    async def send_video(self, payload: bytes) -> None:
        self.sent_video.append(payload)

    async def send_text(self, text: str, *, role: str = "user") -> None:
        self.sent_text.append(text)

    def push(self, *events) -> None:
        for event in events:
            self._events.put_nowait(event)

    async def receive(self):
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event


class FakeReporter:
    def __init__(self) -> None:
        self.calls: list[dict] = []

    async def generate(self, session_id, mode, transcript, metrics_history, duration_seconds, *, voice_name):
        self.calls.append(
            {
                "session_id": session_id,
                "mode": mode,
                "transcript": list(transcript),
                "metrics": list(metrics_history),
                "duration_seconds": duration_seconds,
                "voice_name": voice_name,
            }
        )
        await asyncio.sleep(0)
        return fallback_report(session_id, get_mode(mode), duration_seconds, voice_name=voice_name)


class FakeStore:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.saved: list[SessionRecord] = []

    async def save(self, record: SessionRecord) -> None:
        if self.fail:
            raise OSError("disk full")
        self.saved.append(record)

    async def get(self, session_id):
        return None

    async def list_by_user(self, user_id):
        return []


class FakeTone:
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.tone = "Calm"
        self.hint = "Nice and steady"
        self.has_result = True
        self.analyzed: list[str] = []
        self.closed = False

    def try_analyze(self, user_text: str):
        self.analyzed.append(user_text)
        return None

    async def aclose(self) -> None:
        self.closed = True


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class Harness:
    def __init__(self, mode: str = "pitch_perfect", *, fail_connect: bool = False, store_fails: bool = False, **overrides):
        self.ws = FakeWebSocket()
        self.reporter = FakeReporter()
        self.store = FakeStore(fail=store_fails)
        self.bridges: list[FakeBridge] = []
        self.tones: list[FakeTone] = []
        self.clock = overrides.pop("clock", FakeClock())
        use_tone = overrides.pop("use_tone", False)
        config = {
            "api_key": "test-key",
            "session_max_seconds": 60.0,
            "interrupt_grace_seconds": 0.02,
        }
        config.update(overrides)
        self.settings = Settings(**config)

        def bridge_factory(**kwargs) -> FakeBridge:
            bridge = FakeBridge(fail_connect=fail_connect, **kwargs)
            self.bridges.append(bridge)
            return bridge

        def tone_factory(session_id: str) -> FakeTone:
            tone = FakeTone(session_id)
            self.tones.append(tone)
            return tone

        self.orchestrator = SessionOrchestrator(
            self.ws,
            mode=mode,
            user_id="user-123",
            original_session_id="earlier-session",
            settings=self.settings,
            bridge_factory=bridge_factory,
            reporter=self.reporter,
            store=self.store,
            tone_factory=tone_factory if use_tone else None,
            clock=self.clock,
        )
        self.task: asyncio.Task | None = None

    @property
    def bridge(self) -> FakeBridge:
        return self.bridges[0]

    async def start(self, *, activate: bool = True) -> None:
        self.task = asyncio.create_task(self.orchestrator.run())
        await self.ws.wait_for("session_started")
        if activate:
            self.bridge.push(SetupComplete(), TurnComplete())
            await self.ws.wait_for("turn_complete")

    async def end(self) -> None:
        self.ws.client_text({"type": "end_session"})
        await self.finish()

    async def finish(self) -> None:
        assert self.task is not None
        await asyncio.wait_for(self.task, timeout=2.0)


@pytest.mark.asyncio
async def test_invalid_mode_sends_error_and_never_opens_upstream() -> None:
    harness = Harness(mode="karaoke")

    await asyncio.wait_for(harness.orchestrator.run(), timeout=2.0)

    assert harness.ws.json_messages() == [{"type": "error", "message": "Invalid mode: karaoke"}]
    assert harness.ws.close_code == 1008
    assert harness.bridges == []
    assert harness.store.saved == []


@pytest.mark.asyncio
async def test_upstream_connect_failure_sends_error_and_closes() -> None:
    harness = Harness(fail_connect=True)

    await asyncio.wait_for(harness.orchestrator.run(), timeout=2.0)

    messages = harness.ws.json_messages()
    assert [message["type"] for message in messages] == ["error"]
    assert "Failed to connect" in messages[0]["message"]
    assert harness.ws.close_code == 1011
    assert harness.orchestrator.state.phase == Phase.CLOSED


@pytest.mark.asyncio
async def test_pitch_perfect_session_end_to_end() -> None:
    harness = Harness()
    await harness.start(activate=False)

    started = harness.ws.json_messages("session_started")[0]
    assert started["mode"] == "pitch_perfect"
    assert started["sessionId"] == harness.orchestrator.session_id
    bridge = harness.bridge
    assert bridge.kwargs["system_prompt"] == get_mode("pitch_perfect").persona
    assert bridge.kwargs["voice_name"] in harness.settings.voices

    bridge.push(SetupComplete(), AudioChunk(b"\x01\x02"), OutputTranscription("Hi, I'm Victoria. What are you building?"))
    bridge.push(TurnComplete())
    turn = (await harness.ws.wait_for("turn_complete"))[0]
    assert turn == {"type": "turn_complete", "capture": True}
    assert bridge.sent_text == [BEGIN_TRIGGER]
    assert b"\x01\x02" in harness.ws.sent

    harness.ws.client_bytes(encode_media_frame("audio", b"pcm-chunk"))
    harness.ws.client_bytes(encode_media_frame("video", b"jpeg-frame"))
    await wait_until(lambda: bridge.sent_audio and bridge.sent_video)
    assert bridge.sent_audio == [b"pcm-chunk"]
    assert bridge.sent_video == [b"jpeg-frame"]

    bridge.push(InputTranscription("Um, we help bakeries"), InputTranscription(" sell more bread."))
    metrics = (await harness.ws.wait_for("metrics"))[0]["data"]
    assert metrics["filler_words"] == {"um": 1}
    assert metrics["timestamp"] > 0

    await harness.end()

    cues = [message["text"] for message in harness.ws.json_messages("coaching_cue")]
    assert cues == [
        "Hi, I'm Victoria. What are you building?",
        "[User]: Um, we help bakeries sell more bread.",
    ]
    report = harness.ws.json_messages("report")[0]["data"]
    assert report["mode"] == "pitch_perfect"
    assert set(report["categories"]) == set(get_mode("pitch_perfect").categories)
    assert 1 <= report["overall_score"] <= 10
    assert set(report["extra"]) == {"weakest_link", "strongest_asset", "specific_fixes"}
    assert harness.ws.sent[-1] == harness.ws.json_messages("report")[0]
    assert harness.ws.close_code == 1000
    assert bridge.close_calls >= 1

    saved = harness.store.saved[0]
    assert saved.id == harness.orchestrator.session_id
    assert saved.user_id == "user-123"
    assert saved.original_session_id == "earlier-session"
    assert [entry.role for entry in saved.transcript] == ["ai", "user"]
    assert saved.report is not None
    assert harness.orchestrator.state.phase == Phase.CLOSED


@pytest.mark.asyncio
async def test_transcript_timestamps_never_decrease_per_role() -> None:
    clock = FakeClock()
    harness = Harness(clock=clock)
    await harness.start()

    for step, fragment in enumerate(["First point.", "Second point.", "Third point."]):
        clock.now += 3 + step
        harness.bridge.push(InputTranscription(fragment), OutputTranscription(f"Reply {step}."))
        await harness.ws.wait_for("coaching_cue", count=2 * (step + 1))

    await harness.end()

    transcript = harness.store.saved[0].transcript
    for role in ("user", "ai"):
        stamps = [entry.timestamp for entry in transcript if entry.role == role]
        assert len(stamps) == 3
        assert stamps == sorted(stamps)
    assert transcript[0].timestamp == 3


@pytest.mark.asyncio
async def test_end_session_is_idempotent() -> None:
    harness = Harness()
    await harness.start()

    await asyncio.gather(
        harness.orchestrator.request_end("client"),
        harness.orchestrator.request_end("time_limit"),
    )
    await harness.orchestrator.request_end("client")
    await harness.finish()

    assert len(harness.reporter.calls) == 1
    assert len(harness.store.saved) == 1
    assert len(harness.ws.json_messages("report")) == 1


@pytest.mark.asyncio
async def test_pending_fragments_are_flushed_before_the_report() -> None:
    harness = Harness()
    await harness.start()

    harness.bridge.push(InputTranscription("and one more thing"))
    await wait_until(lambda: harness.orchestrator.state.user_buffer.text != "")
    await harness.end()

    transcript = harness.reporter.calls[0]["transcript"]
    assert transcript[-1].text == "and one more thing"


@pytest.mark.asyncio
async def test_malformed_binary_frame_is_dropped() -> None:
    harness = Harness()
    await harness.start()

    harness.ws.client_bytes(b"no header here")
    harness.ws.client_bytes(b'{"type": "hologram"}\nxyz')
    harness.ws.client_bytes(encode_media_frame("audio", b"good"))
    await wait_until(lambda: harness.bridge.sent_audio)

    assert harness.bridge.sent_audio == [b"good"]
    assert harness.orchestrator.state.phase == Phase.ACTIVE
    assert harness.ws.json_messages("error") == []

    await harness.end()
    assert len(harness.ws.json_messages("report")) == 1


@pytest.mark.asyncio
async def test_unknown_command_is_answered_with_error() -> None:
    harness = Harness()
    await harness.start()

    harness.ws.client_text({"type": "dance"})
    errors = await harness.ws.wait_for("error")

    assert "dance" in errors[0]["message"]
    await harness.end()


@pytest.mark.asyncio
async def test_upstream_drop_notifies_client_exactly_once() -> None:
    harness = Harness()
    await harness.start()

    harness.bridge.push(OutputTranscription("So tell me about"), UpstreamClosed(1011, "boom"), UpstreamClosed(1011, "boom"))
    await harness.ws.wait_for("ai_disconnected")
    await asyncio.sleep(0.01)

    disconnects = harness.ws.json_messages("ai_disconnected")
    assert disconnects == [{"type": "ai_disconnected", "message": "AI connection interrupted"}]
    assert harness.ws.json_messages("coaching_cue")[-1]["text"] == "So tell me about"
    assert harness.ws.close_code is None

    harness.ws.client_bytes(encode_media_frame("audio", b"late"))
    await harness.end()

    assert harness.bridge.sent_audio == []
    assert len(harness.ws.json_messages("report")) == 1


@pytest.mark.asyncio
async def test_clean_upstream_close_reports_session_completed() -> None:
    harness = Harness()
    await harness.start()

    harness.bridge.push(UpstreamClosed(1000, ""))
    messages = await harness.ws.wait_for("ai_disconnected")

    assert messages[0]["message"] == "Session completed"
    await harness.end()


@pytest.mark.asyncio
async def test_barge_in_drops_stale_audio_until_grace_elapses() -> None:
    harness = Harness(interrupt_grace_seconds=0.05)
    await harness.start()

    harness.bridge.push(AudioChunk(b"before"), Interrupted(), AudioChunk(b"stale"))
    await harness.ws.wait_for("interrupted")
    await asyncio.sleep(0.01)

    relayed = [item for item in harness.ws.sent if isinstance(item, bytes)]
    assert relayed == [b"before"]
    interrupted_at = harness.ws.sent.index({"type": "interrupted"})
    assert harness.ws.sent.index(b"before") < interrupted_at

    await asyncio.sleep(0.1)
    assert harness.orchestrator.state.substate == Substate.LISTENING
    harness.bridge.push(AudioChunk(b"fresh"))
    await wait_until(lambda: b"fresh" in harness.ws.sent)
    assert b"stale" not in harness.ws.sent

    await harness.end()


@pytest.mark.asyncio
async def test_duration_ceiling_ends_the_session() -> None:
    harness = Harness(session_max_seconds=0.05)
    await harness.start()

    await harness.finish()

    assert len(harness.ws.json_messages("report")) == 1
    assert len(harness.store.saved) == 1
    assert harness.ws.close_code == 1000


@pytest.mark.asyncio
async def test_client_disconnect_persists_nothing() -> None:
    harness = Harness(use_tone=True)
    await harness.start()

    harness.ws.client_disconnect()
    await harness.finish()

    assert harness.reporter.calls == []
    assert harness.store.saved == []
    assert harness.bridge.close_calls == 1
    assert harness.tones[0].closed is True
    assert harness.orchestrator.state.phase == Phase.CLOSED


@pytest.mark.asyncio
async def test_persistence_failure_still_delivers_report() -> None:
    harness = Harness(store_fails=True)
    await harness.start()

    await harness.end()

    assert len(harness.ws.json_messages("report")) == 1
    assert harness.ws.close_code == 1000


@pytest.mark.asyncio
async def test_tone_result_overrides_heuristic_tone() -> None:
    harness = Harness(use_tone=True)
    await harness.start()

    harness.bridge.push(InputTranscription("We are growing fast."))
    metrics = (await harness.ws.wait_for("metrics"))[0]["data"]

    assert metrics["tone"] == "Calm"
    assert metrics["improvement_hint"] == "Nice and steady"
    assert harness.tones[0].analyzed == ["We are growing fast."]
    await harness.end()


@pytest.mark.asyncio
async def test_unflushed_user_words_reach_the_final_metrics() -> None:
    harness = Harness()
    await harness.start()

    harness.bridge.push(InputTranscription("Um so we sell"))
    await wait_until(lambda: harness.orchestrator.state.user_buffer.text != "")
    await harness.end()

    metrics = harness.reporter.calls[0]["metrics"]
    assert len(metrics) == 1
    assert metrics[-1].filler_words == {"um": 1, "so": 1}
    assert harness.ws.json_messages("metrics") == []
    assert harness.ws.json_messages("coaching_cue") == []


@pytest.mark.asyncio
async def test_upstream_drop_flushes_pending_user_words_with_metrics() -> None:
    harness = Harness()
    await harness.start()

    harness.bridge.push(InputTranscription("well the margins"), UpstreamClosed(1011, "boom"))
    await harness.ws.wait_for("ai_disconnected")

    cues = [message["text"] for message in harness.ws.json_messages("coaching_cue")]
    assert cues == ["[User]: well the margins"]
    metrics = harness.ws.json_messages("metrics")
    assert metrics[-1]["data"]["filler_words"] == {"well": 1}
    assert len(harness.orchestrator.state.metrics_history) == 1

    await harness.end()
