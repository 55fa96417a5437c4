"""Gemini Live bridge for Glotti.

Opens one Live API websocket per session, either against the Gemini
Developer API with an API key or against Vertex AI with Application
Default Credentials, and exposes the upstream traffic as an async
iterator of typed events (see ``events.py``).
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from time import monotonic
from typing import Any, AsyncIterator
from urllib.parse import urlencode

import websockets
from google.auth import default as google_auth_default
from google.auth.transport.requests import Request
from websockets.exceptions import ConnectionClosed

from .events import SetupComplete, UpstreamClosed, UpstreamError, UpstreamEvent, decode_upstream_frame


logger = logging.getLogger("glotti")

LIVE_API_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
VERTEX_LIVE_API_PATH = "/ws/google.cloud.aiplatform.v1beta1.LlmBidiService/BidiGenerateContent"
GEMINI_LIVE_API_URL = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)
INPUT_AUDIO_MIME = "audio/pcm;rate=16000"
VIDEO_MIN_INTERVAL_SECONDS = 1.0


class GeminiLiveBridge:
    """Bidirectional bridge to one Gemini Live session."""

    def __init__(
        self,
        *,
        model_id: str,
        system_prompt: str,
        voice_name: str,
        api_key: str = "",
        use_vertex: bool = False,
        project_id: str = "",
        location: str = "us-central1",
        setup_timeout: float = 10.0,
        session_key: str = "",
    ) -> None:
        self.model_id = model_id
        self.system_prompt = system_prompt
        self.voice_name = voice_name
        self.api_key = api_key
        self.use_vertex = use_vertex
        self.project_id = project_id
        self.location = location
        self.setup_timeout = setup_timeout
        self.session_key = session_key

        self._credentials = None
        self._auth_request: Request | None = None
        self._upstream: Any | None = None
        self._events: asyncio.Queue[UpstreamEvent | None] = asyncio.Queue()
        self._reader_task: asyncio.Task[None] | None = None
        self._closed = False
        self._sentinel_enqueued = False
        self._last_video_sent_at = 0.0

    async def connect(self) -> None:
        """Open the socket, send setup and wait for the handshake."""
        self._closed = False
        self._sentinel_enqueued = False
        self._events = asyncio.Queue()
        uri, headers = await self._endpoint()
        try:
            self._upstream = await websockets.connect(
                uri,
                additional_headers=headers,
                ping_interval=20,
                ping_timeout=20,
                max_size=16 * 1024 * 1024,
            )
            await self._send_json(self._setup_message())
            await self._await_setup_complete()
        except Exception:
            await self._force_close_upstream()
            raise
        self._reader_task = asyncio.create_task(self._reader_loop())

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._force_close_upstream()
        self._enqueue_sentinel()

    async def send_audio(self, pcm16k_bytes: bytes) -> None:
        await self._send_realtime(
            "audio",
            {"mime_type": INPUT_AUDIO_MIME, "data": base64.b64encode(pcm16k_bytes).decode("ascii")},
        )

    async def send_video(self, jpeg_bytes: bytes) -> None:
        if monotonic() - self._last_video_sent_at < VIDEO_MIN_INTERVAL_SECONDS:
            return
        self._last_video_sent_at = monotonic()
        await self._send_realtime(
            "video",
            {"mime_type": "image/jpeg", "data": base64.b64encode(jpeg_bytes).decode("ascii")},
        )

    async def send_text(self, text: str, *, role: str = "user") -> None:
        if not text.strip():
            return
        await self._send_json(
            {
                "client_content": {
                    "turns": [{"role": role, "parts": [{"text": text}]}],
                    "turn_complete": True,
                }
            }
        )

    async def receive(self) -> AsyncIterator[UpstreamEvent]:
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def _endpoint(self) -> tuple[str, dict[str, str]]:
        if self.use_vertex:
            token = await self._get_access_token()
            host = f"{self.location}-aiplatform.googleapis.com"
            return f"wss://{host}{VERTEX_LIVE_API_PATH}", {"Authorization": f"Bearer {token}"}
        if not self.api_key:
            raise RuntimeError("Gemini API key is unavailable. Set GEMINI_API_KEY or GLOTTI_API_KEY.")
        return f"{GEMINI_LIVE_API_URL}?{urlencode({'key': self.api_key})}", {}

    async def _await_setup_complete(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.setup_timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError("Live API setup timed out")
            raw_message = await asyncio.wait_for(self._upstream.recv(), timeout=remaining)
            events = decode_upstream_frame(raw_message)
            for event in events:
                self._events.put_nowait(event)
            if any(isinstance(event, SetupComplete) for event in events):
                return

    async def _reader_loop(self) -> None:
        close_code, close_reason = 1006, ""
        try:
            while self._upstream is not None:
                raw_message = await self._upstream.recv()
                for event in decode_upstream_frame(raw_message):
                    self._events.put_nowait(event)
        except ConnectionClosed as exc:
            if exc.rcvd is not None:
                close_code, close_reason = exc.rcvd.code, exc.rcvd.reason
            logger.info(
                "[%s] Live API websocket closed (code %s, reason %r)",
                self.session_key,
                close_code,
                close_reason,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pragma: no cover - exercised via integration
            logger.exception("[%s] Live API reader failed: %s", self.session_key, exc)
            self._events.put_nowait(UpstreamError(f"Live API error: {exc}"))
        finally:
            if not self._closed:
                self._events.put_nowait(UpstreamClosed(close_code, close_reason))
            self._enqueue_sentinel()

    async def _send_realtime(self, kind: str, blob: dict[str, Any]) -> None:
        await self._send_json({"realtime_input": {kind: blob}})

    async def _send_json(self, payload: dict[str, Any]) -> None:
        if self._upstream is None or self._closed:
            raise RuntimeError("GeminiLiveBridge is not connected")
        await self._upstream.send(json.dumps(payload))

    async def _get_access_token(self) -> str:
        if self._credentials is None:
            credentials, detected_project_id = await asyncio.to_thread(
                google_auth_default,
                scopes=[LIVE_API_SCOPE],
            )
            self._credentials = credentials
            self._auth_request = Request()
            if not self.project_id:
                self.project_id = detected_project_id or ""
        if not self.project_id:
            raise RuntimeError(
                "Google Cloud project id is unavailable. Set GLOTTI_PROJECT_ID or GOOGLE_CLOUD_PROJECT."
            )
        await asyncio.to_thread(self._credentials.refresh, self._auth_request)
        if not self._credentials.token:
            raise RuntimeError("Unable to acquire an access token for Vertex AI")
        return str(self._credentials.token)

    def _model_name(self) -> str:
        if self.use_vertex:
            return (
                f"projects/{self.project_id}/locations/{self.location}/"
                f"publishers/google/models/{self.model_id}"
            )
        return f"models/{self.model_id}"

    def _setup_message(self) -> dict[str, Any]:
        return {
            "setup": {
                "model": self._model_name(),
                "generation_config": {
                    "response_modalities": ["AUDIO"],
                    "speech_config": {
                        "voice_config": {"prebuilt_voice_config": {"voice_name": self.voice_name}},
                    },
                },
                "system_instruction": {
                    "parts": [{"text": self.system_prompt}],
                },
                "input_audio_transcription": {},
                "output_audio_transcription": {},
            }
        }

    async def _force_close_upstream(self) -> None:
        reader_task = self._reader_task
        self._reader_task = None
        if reader_task is not None and reader_task is not asyncio.current_task():
            reader_task.cancel()
            try:
                await reader_task
            except asyncio.CancelledError:
                pass
        upstream = self._upstream
        self._upstream = None
        if upstream is not None:
            await upstream.close()

    def _enqueue_sentinel(self) -> None:
        if self._sentinel_enqueued:
            return
        self._sentinel_enqueued = True
        self._events.put_nowait(None)
