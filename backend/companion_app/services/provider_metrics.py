from __future__ import annotations

import time
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from companion_app.core.config import settings
from companion_app.core.telemetry import log_event


class MetricsUnavailable(Exception):
    """The provider's own analytics for a call could not be fetched."""


class ElevenLabsMetricsClient:
    """Reads conversation analytics from the ElevenLabs conversational-AI API."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._api_key = (api_key if api_key is not None else settings.ELEVENLABS_API_KEY).strip()
        self._base_url = (base_url or settings.ELEVENLABS_API_BASE_URL).rstrip("/")
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.METRICS_FETCH_TIMEOUT_SECONDS

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    def conversation_url(self, call_id: str) -> str:
        return f"{self._base_url}/v1/convai/conversations/{quote(call_id, safe='')}"

    async def fetch(self, call_id: str) -> Dict[str, Any]:
        if not self.enabled:
            raise MetricsUnavailable("ELEVENLABS_API_KEY is not configured")
        if not call_id:
            raise MetricsUnavailable("call id is required")

        headers = {
            "xi-api-key": self._api_key,
            "Content-Type": "application/json",
        }
        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, connect=min(self._timeout, 3.0)),
                headers=headers,
            ) as client:
                resp = await client.get(self.conversation_url(call_id))
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as exc:
            log_event(
                "metrics",
                "fetch_http_error",
                status="warning",
                call_id=call_id,
                duration_ms=(time.perf_counter() - started) * 1000.0,
                details={
                    "status_code": exc.response.status_code,
                    "response": exc.response.text[:300],
                },
            )
            raise MetricsUnavailable(f"ElevenLabs API error: {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise MetricsUnavailable(f"{type(exc).__name__}: {exc}") from exc

        if not isinstance(data, dict):
            raise MetricsUnavailable("unexpected response payload")
        log_event(
            "metrics",
            "fetch_conversation",
            call_id=call_id,
            duration_ms=(time.perf_counter() - started) * 1000.0,
            details={"fields": len(data)},
        )
        return data


def summarize_provider_metrics(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Pick the few provider fields worth recording next to an evaluation."""
    if not payload:
        return {}
    metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}
    analysis = payload.get("analysis") if isinstance(payload.get("analysis"), dict) else {}
    transcript = payload.get("transcript") if isinstance(payload.get("transcript"), list) else []
    return {
        "status": payload.get("status"),
        "call_duration_secs": metadata.get("call_duration_secs"),
        "call_successful": analysis.get("call_successful"),
        "provider_transcript_turns": len(transcript),
    }
