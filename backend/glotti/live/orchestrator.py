"""Per-connection session orchestration.

``SessionOrchestrator`` owns one browser websocket end to end: it opens
the upstream Live session, relays media both ways, assembles the
transcript and live metrics, and on termination generates the report,
persists the session and delivers the report before closing.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import random
import time
import uuid
from typing import Any, Callable

from ..modes import BEGIN_TRIGGER, UnknownModeError, get_mode
from ..report import ReportSynthesizer
from ..settings import Settings
from ..store import SessionStore
from . import protocol
from .events import (
    AudioChunk,
    GoAway,
    InputTranscription,
    Interrupted,
    ModelText,
    OutputTranscription,
    SetupComplete,
    ToolCall,
    TurnComplete,
    UpstreamClosed,
    UpstreamError,
    UpstreamEvent,
)
from .metrics import extract_metrics
from .state import LiveSessionState, Phase
from .tone import ToneAnalyzer


logger = logging.getLogger("glotti")

ANONYMOUS_USER = "anonymous"
REASON_CLIENT = "client"
REASON_TIME_LIMIT = "time_limit"


class SessionOrchestrator:
    """Protocol state machine for a single client connection."""

    def __init__(
        self,
        ws: Any,
        *,
        mode: str,
        user_id: str,
        settings: Settings,
        bridge_factory: Callable[..., Any],
        reporter: ReportSynthesizer,
        store: SessionStore,
        tone_factory: Callable[[str], ToneAnalyzer] | None = None,
        original_session_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ws = ws
        self.requested_mode = mode
        self.user_id = user_id or ANONYMOUS_USER
        self.original_session_id = original_session_id
        self.settings = settings
        self._bridge_factory = bridge_factory
        self._reporter = reporter
        self._store = store
        self._tone_factory = tone_factory
        self._clock = clock

        self.session_id = str(uuid.uuid4())
        self.state: LiveSessionState | None = None
        self.bridge: Any | None = None
        self.tone: ToneAnalyzer | None = None
        self._client_open = True
        self._upstream_task: asyncio.Task[None] | None = None
        self._deadline_task: asyncio.Task[None] | None = None
        self._grace_task: asyncio.Task[None] | None = None
        self._end_task: asyncio.Task[None] | None = None
        self._upstream_closed = False
        self._audio_in = 0

    # -- lifecycle --------------------------------------------------------

    async def run(self) -> None:
        """Drive the session until the client leaves or the report is sent."""
        try:
            spec = get_mode(self.requested_mode)
        except UnknownModeError as exc:
            logger.warning("Rejecting connection: %s", exc)
            await self._send_json(protocol.error(str(exc)))
            await self._close_client(code=1008)
            return

        voice_name = random.choice(self.settings.voices)
        self.state = LiveSessionState(
            session_id=self.session_id,
            mode=spec.name,
            user_id=self.user_id,
            voice_name=voice_name,
            original_session_id=self.original_session_id,
            user_flush_words=self.settings.user_flush_words,
            ai_flush_words=self.settings.ai_flush_words,
            clock=self._clock,
        )
        logger.info("New session %s [%s] for user %s, voice %s", self.session_id, spec.name, self.user_id, voice_name)

        self.bridge = self._bridge_factory(
            model_id=self.settings.live_model_id,
            system_prompt=spec.persona,
            voice_name=voice_name,
            api_key=self.settings.api_key,
            use_vertex=self.settings.use_vertex,
            project_id=self.settings.project_id,
            location=self.settings.location,
            setup_timeout=self.settings.upstream_setup_timeout_seconds,
            session_key=self.session_id,
        )
        try:
            await self.bridge.connect()
        except Exception as exc:
            logger.exception("[%s] Failed to connect to the Live API: %s", self.session_id, exc)
            self.state.close()
            await self._send_json(protocol.error("Failed to connect to AI. Check your API key."))
            await self._close_client(code=1011)
            return

        self.state.on_upstream_opened()
        if self._tone_factory is not None:
            self.tone = self._tone_factory(self.session_id)
        await self._send_json(protocol.session_started(self.session_id, spec.name))
        self._upstream_task = asyncio.create_task(self._pump_upstream())

        try:
            await self._pump_client()
        except Exception as exc:
            logger.exception("[%s] Unexpected error in client loop: %s", self.session_id, exc)
        finally:
            if self._end_task is not None:
                try:
                    await self._end_task
                except Exception as exc:
                    logger.exception("[%s] Session finish failed: %s", self.session_id, exc)
            else:
                logger.info("[%s] Client left without ending the session", self.session_id)
            await self._shutdown()

    async def request_end(self, reason: str = REASON_CLIENT) -> None:
        """Start the ENDING sequence once; later calls wait for the same run."""
        if self._end_task is None:
            if self.state is None or not self.state.begin_ending():
                return
            self._end_task = asyncio.create_task(self._finish(reason))
        await asyncio.shield(self._end_task)

    async def _finish(self, reason: str) -> None:
        state = self.state
        if state is None:
            return
        duration = state.elapsed_seconds()
        logger.info(
            "[%s] Session ending (%s): duration %ss, %s transcript entries",
            self.session_id,
            reason,
            duration,
            len(state.transcript),
        )
        self._cancel_timer(self._deadline_task)
        self._cancel_timer(self._grace_task)
        await self._close_upstream()
        for entry in state.flush_pending():
            if entry.role == "user":
                await self._on_user_entry(entry.text, entry.timestamp, notify=False)

        report = await self._reporter.generate(
            self.session_id,
            state.mode,
            list(state.transcript),
            list(state.metrics_history),
            duration,
            voice_name=state.voice_name,
        )
        logger.info("[%s] Report ready: overall_score=%s", self.session_id, report.overall_score)

        try:
            await self._store.save(state.to_record(report))
        except Exception as exc:
            logger.exception("[%s] Failed to persist session: %s", self.session_id, exc)

        await self._send_json(protocol.report(report.model_dump(mode="json")))
        state.close()
        await self._close_client()

    async def _shutdown(self) -> None:
        for task in (self._deadline_task, self._grace_task):
            self._cancel_timer(task)
        await self._close_upstream()
        if self._upstream_task is not None:
            self._upstream_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._upstream_task
        if self.tone is not None:
            await self.tone.aclose()
        if self.state is not None:
            self.state.close()
        await self._close_client()

    async def _close_upstream(self) -> None:
        if self._upstream_closed or self.bridge is None:
            return
        self._upstream_closed = True
        if self.state is not None:
            self.state.upstream_open = False
        try:
            await self.bridge.close()
        except Exception as exc:
            logger.warning("[%s] Error closing the Live API session: %s", self.session_id, exc)

    def _cancel_timer(self, task: asyncio.Task[None] | None) -> None:
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    # -- client side ------------------------------------------------------

    async def _pump_client(self) -> None:
        while True:
            message = await self.ws.receive()
            if message.get("type") == "websocket.disconnect":
                self._client_open = False
                return
            if message.get("bytes") is not None:
                await self._on_client_media(message["bytes"])
            elif message.get("text") is not None:
                await self._on_client_text(message["text"])
            if self._end_task is not None:
                await self._end_task
                return

    async def _on_client_text(self, text: str) -> None:
        try:
            command = protocol.parse_command(text)
        except ValueError:
            logger.warning("[%s] Dropping malformed client command", self.session_id)
            return
        command_type = str(command.get("type", "")).strip()
        logger.info("[%s] Client command: %s", self.session_id, command_type)
        if command_type == protocol.CLIENT_END_SESSION:
            await self.request_end(REASON_CLIENT)
        else:
            await self._send_json(protocol.error(f"Unsupported message type: {command_type}"))

    async def _on_client_media(self, data: bytes) -> None:
        state = self.state
        if state is None or not state.relaying:
            return
        try:
            frame = protocol.parse_media_frame(data)
        except protocol.MalformedFrame as exc:
            logger.warning("[%s] Invalid binary payload: %s", self.session_id, exc)
            return
        try:
            if frame.kind == protocol.MEDIA_AUDIO:
                self._audio_in += 1
                if self._audio_in <= 3 or self._audio_in % 100 == 0:
                    logger.debug("[%s] Audio #%s: %s bytes", self.session_id, self._audio_in, len(frame.payload))
                await self.bridge.send_audio(frame.payload)
            else:
                await self.bridge.send_video(frame.payload)
        except Exception as exc:
            logger.warning("[%s] Failed to forward %s to the Live API: %s", self.session_id, frame.kind, exc)

    # -- upstream side ----------------------------------------------------

    async def _pump_upstream(self) -> None:
        try:
            async for event in self.bridge.receive():
                try:
                    await self._on_upstream_event(event)
                except Exception as exc:
                    logger.exception("[%s] Error processing Live API event: %s", self.session_id, exc)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("[%s] Live API stream failed: %s", self.session_id, exc)
            await self._on_upstream_event(UpstreamClosed(1011, str(exc)))

    async def _on_upstream_event(self, event: UpstreamEvent) -> None:
        state = self.state
        if state is None:
            return
        match event:
            case SetupComplete():
                logger.info("[%s] Live API setup complete, sending opening trigger", self.session_id)
                try:
                    await self.bridge.send_text(BEGIN_TRIGGER)
                except Exception as exc:
                    logger.warning("[%s] Failed to send opening trigger: %s", self.session_id, exc)
            case AudioChunk(data=data):
                if state.on_ai_audio():
                    await self._send_bytes(data)
            case Interrupted():
                if state.is_ending:
                    return
                logger.info("[%s] Interrupted (barge-in)", self.session_id)
                state.on_interrupted()
                await self._send_json(protocol.interrupted())
                self._cancel_timer(self._grace_task)
                self._grace_task = asyncio.create_task(self._resume_listening())
            case TurnComplete():
                if state.is_ending:
                    return
                became_active = state.on_turn_complete()
                if became_active:
                    logger.info("[%s] Opening turn finished, session active", self.session_id)
                    self._deadline_task = asyncio.create_task(self._enforce_time_limit())
                await self._send_json(protocol.turn_complete(capture=became_active))
            case InputTranscription(text=text):
                if state.is_ending:
                    return
                entry = state.on_user_transcription(text)
                if entry is not None:
                    await self._on_user_entry(entry.text, entry.timestamp)
            case OutputTranscription(text=text):
                if state.is_ending:
                    return
                entry = state.on_ai_transcription(text)
                if entry is not None:
                    await self._send_json(protocol.coaching_cue(entry.text, entry.timestamp))
            case ModelText(text=text):
                logger.debug("[%s] Model text part: %s", self.session_id, text[:100])
            case ToolCall(payload=payload):
                logger.info("[%s] Ignoring tool call: %s", self.session_id, json.dumps(payload)[:200])
            case GoAway(time_left=time_left):
                logger.warning("[%s] Live API requested disconnect (time left %s)", self.session_id, time_left)
            case UpstreamError(message=message):
                logger.warning("[%s] %s", self.session_id, message)
                if not state.is_ending:
                    await self._send_json(protocol.error("AI session error"))
            case UpstreamClosed(code=code, reason=reason):
                await self._on_upstream_closed(code, reason)

    async def _on_user_entry(self, text: str, timestamp: int, *, notify: bool = True) -> None:
        """Record a metrics snapshot for a flushed user sentence.

        With ``notify`` off (while ending) nothing is sent to the client
        and no tone check is started.
        """
        state = self.state
        if state is None:
            return
        logger.info("[%s] User: %r", self.session_id, text[:100])
        if notify:
            await self._send_json(protocol.coaching_cue(f"{protocol.USER_CUE_PREFIX}{text}", timestamp))

        user_text = state.user_text()
        snapshot = extract_metrics(
            user_text,
            timestamp,
            ai_text=state.ai_text(),
            timestamp_ms=int(time.time() * 1000),
        )
        if self.tone is not None and self.tone.has_result:
            snapshot = snapshot.model_copy(
                update={
                    "tone": self.tone.tone,
                    "improvement_hint": self.tone.hint or snapshot.improvement_hint,
                }
            )
        state.record_metrics(snapshot)
        if not notify:
            return
        await self._send_json(protocol.metrics(snapshot.model_dump(mode="json")))
        if self.tone is not None:
            self.tone.try_analyze(user_text)

    async def _on_upstream_closed(self, code: int, reason: str) -> None:
        state = self.state
        if state is None:
            return
        logger.info("[%s] Live API connection closed (code %s, reason %r)", self.session_id, code, reason)
        if state.is_ending:
            return
        for entry in state.flush_pending():
            if entry.role == "user":
                await self._on_user_entry(entry.text, entry.timestamp)
            else:
                await self._send_json(protocol.coaching_cue(entry.text, entry.timestamp))
        if state.on_upstream_lost():
            message = "Session completed" if code == 1000 else "AI connection interrupted"
            await self._send_json(protocol.ai_disconnected(message))

    # -- timers -----------------------------------------------------------

    async def _resume_listening(self) -> None:
        await asyncio.sleep(self.settings.interrupt_grace_seconds)
        if self.state is not None:
            self.state.on_grace_elapsed()

    async def _enforce_time_limit(self) -> None:
        await asyncio.sleep(self.settings.session_max_seconds)
        if self.state is None or self.state.phase != Phase.ACTIVE:
            return
        logger.info("[%s] Session time limit reached", self.session_id)
        await self.request_end(REASON_TIME_LIMIT)

    # -- transport helpers ------------------------------------------------

    async def _send_json(self, payload: dict[str, Any]) -> None:
        if not self._client_open:
            return
        try:
            await self.ws.send_json(payload)
        except Exception as exc:
            self._client_open = False
            logger.debug("[%s] Client send failed: %s", self.session_id, exc)

    async def _send_bytes(self, data: bytes) -> None:
        if not self._client_open:
            return
        try:
            await self.ws.send_bytes(data)
        except Exception as exc:
            self._client_open = False
            logger.debug("[%s] Client send failed: %s", self.session_id, exc)

    async def _close_client(self, code: int = 1000) -> None:
        if not self._client_open:
            return
        self._client_open = False
        with contextlib.suppress(RuntimeError):
            await self.ws.close(code=code)
