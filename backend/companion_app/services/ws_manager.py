from __future__ import annotations

import json
from typing import Any, Dict, List

from fastapi import WebSocket

from companion_app.core.telemetry import log_event


def channel_for(scope: str, companion_id: str) -> str:
    return f"{scope}:{companion_id}"


class ConnectionManager:
    """Fan-out of session events to every UI socket watching one channel."""

    def __init__(self) -> None:
        self._active_connections: Dict[str, List[WebSocket]] = {}

    def peer_count(self, channel: str) -> int:
        return len(self._active_connections.get(channel, []))

    async def connect(self, channel: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self._active_connections.setdefault(channel, []).append(websocket)
        log_event("websocket", "client_connected", details={"channel": channel, "peer_count": self.peer_count(channel)})

    def disconnect(self, channel: str, websocket: WebSocket) -> None:
        connections = self._active_connections.get(channel)
        if connections is None:
            return
        if websocket in connections:
            connections.remove(websocket)
        if not connections:
            self._active_connections.pop(channel, None)
        log_event(
            "websocket",
            "client_disconnected",
            details={"channel": channel, "remaining_peers": len(connections)},
        )

    async def broadcast(self, channel: str, event: Dict[str, Any]) -> None:
        connections = self._active_connections.get(channel, [])
        if not connections:
            return
        payload = json.dumps(event, default=str)
        failed = 0
        for connection in list(connections):
            try:
                await connection.send_text(payload)
            except Exception:
                failed += 1
                self.disconnect(channel, connection)
        if failed:
            log_event(
                "websocket",
                "broadcast_failures",
                status="warning",
                details={"channel": channel, "failed": failed, "event_type": event.get("type", "unknown")},
            )
