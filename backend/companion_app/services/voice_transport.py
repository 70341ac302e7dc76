from __future__ import annotations

import asyncio
import base64
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol
from urllib.parse import urlencode

import httpx
import websockets

from companion_app.core.config import settings
from companion_app.core.telemetry import log_event, timed_step


MessageCallback = Callable[[str, str], Awaitable[None]]


class VoiceConnectionError(Exception):
    """The voice conversation could not be established."""


@dataclass(frozen=True)
class VoiceSessionConfig:
    agent_id: str
    connection_type: str = "websocket"

    @classmethod
    def from_settings(cls) -> "VoiceSessionConfig":
        return cls(
            agent_id=settings.ELEVENLABS_AGENT_ID,
            connection_type=settings.ELEVENLABS_CONNECTION_TYPE,
        )


class ConversationHandle(Protocol):
    @property
    def conversation_id(self) -> Optional[str]: ...

    async def set_muted(self, muted: bool) -> None: ...

    async def send_audio(self, chunk: bytes) -> None: ...

    async def end_session(self) -> None: ...


class VoiceTransport(Protocol):
    async def start_session(
        self,
        config: VoiceSessionConfig,
        on_message: MessageCallback,
    ) -> ConversationHandle: ...


class ElevenLabsConversation:
    """One ElevenLabs conversational-agent websocket session."""

    def __init__(
        self,
        config: VoiceSessionConfig,
        on_message: MessageCallback,
        *,
        api_key: str | None = None,
        ws_url: str | None = None,
        ready_timeout_seconds: float | None = None,
    ) -> None:
        self._config = config
        self._on_message = on_message
        self._api_key = (api_key if api_key is not None else settings.ELEVENLABS_API_KEY).strip()
        self._ws_url = ws_url or settings.ELEVENLABS_WS_URL
        self._ready_timeout = (
            ready_timeout_seconds
            if ready_timeout_seconds is not None
            else settings.ELEVENLABS_CONNECT_TIMEOUT_SECONDS
        )

        self._ws: Any = None
        self._receive_task: Optional[asyncio.Task[None]] = None
        self._ready = asyncio.Event()
        self._closed = False
        self._muted = False
        self._conversation_id: Optional[str] = None

        self._audio_chunks_sent = 0
        self._audio_chunks_dropped = 0
        self._messages_received = 0
        self._started_at: Optional[float] = None

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    @property
    def is_muted(self) -> bool:
        return self._muted

    async def _resolve_url(self) -> str:
        if not self._api_key:
            return f"{self._ws_url}?{urlencode({'agent_id': self._config.agent_id})}"
        # Private agents need a short-lived signed URL.
        signed_endpoint = f"{settings.ELEVENLABS_API_BASE_URL.rstrip('/')}/v1/convai/conversation/get_signed_url"
        async with httpx.AsyncClient(timeout=httpx.Timeout(self._ready_timeout, connect=3.0)) as client:
            resp = await client.get(
                signed_endpoint,
                params={"agent_id": self._config.agent_id},
                headers={"xi-api-key": self._api_key},
            )
            resp.raise_for_status()
            return str(resp.json()["signed_url"])

    async def start(self) -> None:
        if self._config.connection_type != "websocket":
            raise VoiceConnectionError(f"unsupported connection type: {self._config.connection_type}")

        self._started_at = time.perf_counter()
        with timed_step("voice", "connect", details={"agent_id": self._config.agent_id}):
            try:
                url = await self._resolve_url()
                self._ws = await websockets.connect(url)
            except Exception as exc:
                self._closed = True
                raise VoiceConnectionError(f"{type(exc).__name__}: {exc}") from exc

            self._receive_task = asyncio.create_task(self._receive_loop())
            try:
                await asyncio.wait_for(self._ready.wait(), timeout=self._ready_timeout)
            except asyncio.TimeoutError:
                log_event(
                    "voice",
                    "start_timeout",
                    status="warning",
                    details={"reason": "no_conversation_metadata", "timeout_s": self._ready_timeout},
                )
                await self.end_session()
                raise VoiceConnectionError("conversation did not become ready")
            if self._closed:
                raise VoiceConnectionError("connection closed during setup")

    async def set_muted(self, muted: bool) -> None:
        self._muted = bool(muted)
        log_event("voice", "set_muted", call_id=self._conversation_id, details={"muted": self._muted})

    async def send_audio(self, chunk: bytes) -> None:
        if self._closed or self._ws is None or not chunk:
            return
        if self._muted:
            self._audio_chunks_dropped += 1
            return
        await self._ws.send(json.dumps({"user_audio_chunk": base64.b64encode(chunk).decode("ascii")}))
        self._audio_chunks_sent += 1
        log_event("voice", "audio_chunk", call_id=self._conversation_id, details={"bytes": len(chunk)})

    async def end_session(self) -> None:
        if self._closed and self._ws is None:
            return
        self._closed = True
        if self._receive_task is not None and self._receive_task is not asyncio.current_task():
            self._receive_task.cancel()
        self._receive_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None

        log_event(
            "voice",
            "session_stopped",
            call_id=self._conversation_id,
            duration_ms=(time.perf_counter() - self._started_at) * 1000.0 if self._started_at else None,
            details={
                "audio_chunks_sent": self._audio_chunks_sent,
                "audio_chunks_dropped": self._audio_chunks_dropped,
                "messages_received": self._messages_received,
            },
        )

    async def _receive_loop(self) -> None:
        if self._ws is None:
            return
        try:
            async for raw in self._ws:
                if not isinstance(raw, str):
                    continue
                try:
                    payload = json.loads(raw)
                except ValueError:
                    continue
                self._messages_received += 1
                await self.handle_event(payload)
        except asyncio.CancelledError:
            return
        except Exception as exc:
            log_event(
                "voice",
                "receive_error",
                status="error",
                call_id=self._conversation_id,
                details={"error": f"{type(exc).__name__}: {exc}", "messages_received": self._messages_received},
            )
        finally:
            self._closed = True
            # Unblock start() if the socket died before the metadata arrived.
            self._ready.set()

    async def handle_event(self, payload: Dict[str, Any]) -> None:
        event_type = payload.get("type")

        if event_type == "conversation_initiation_metadata":
            metadata = payload.get("conversation_initiation_metadata_event") or {}
            self._conversation_id = metadata.get("conversation_id") or self._conversation_id
            self._ready.set()
            log_event("voice", "conversation_ready", call_id=self._conversation_id)
            return

        if event_type == "user_transcript":
            text = ((payload.get("user_transcription_event") or {}).get("user_transcript") or "").strip()
            if text:
                await self._on_message("user", text)
            return

        if event_type == "agent_response":
            text = ((payload.get("agent_response_event") or {}).get("agent_response") or "").strip()
            if text:
                await self._on_message("assistant", text)
            return

        if event_type == "ping":
            event_id = (payload.get("ping_event") or {}).get("event_id")
            if self._ws is not None and not self._closed:
                await self._ws.send(json.dumps({"type": "pong", "event_id": event_id}))
            return

        if event_type in {"audio", "interruption", "agent_response_correction", "vad_score"}:
            return

        log_event(
            "voice",
            "unhandled_event",
            call_id=self._conversation_id,
            details={"event_type": event_type},
        )


class ElevenLabsTransport:
    """Default transport: one ElevenLabs websocket per started session."""

    async def start_session(
        self,
        config: VoiceSessionConfig,
        on_message: MessageCallback,
    ) -> ElevenLabsConversation:
        conversation = ElevenLabsConversation(config, on_message)
        await conversation.start()
        return conversation
