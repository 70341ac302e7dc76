from __future__ import annotations

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from companion_app.core.telemetry import log_event
from companion_app.models.schemas import SessionEvent
from companion_app.services.identity import identity_from_request
from companion_app.services.session_manager import ControllerRegistry
from companion_app.services.ws_manager import ConnectionManager, channel_for


def get_routes(connection_manager: ConnectionManager, registry: ControllerRegistry):
    router = APIRouter(tags=["websocket"])

    @router.websocket("/ws/session/{companion_id}")
    async def session_feed(websocket: WebSocket, companion_id: str):
        identity = identity_from_request(websocket)
        channel = channel_for(identity.scope, companion_id)
        await connection_manager.connect(channel, websocket)

        controller = registry.get(identity.user_id, companion_id)
        if controller is not None:
            event = SessionEvent(type="session_state", data=controller.snapshot().model_dump(mode="json"))
            await websocket.send_json(event.model_dump(mode="json"))

        frames_forwarded = 0
        try:
            while True:
                message = await websocket.receive()
                if message.get("type") == "websocket.disconnect":
                    break
                chunk = message.get("bytes")
                if not chunk:
                    continue
                # Microphone audio goes to whichever call is active right now.
                controller = registry.get(identity.user_id, companion_id)
                if controller is not None:
                    await controller.send_audio(chunk)
                    frames_forwarded += 1
        except WebSocketDisconnect:
            pass
        except Exception as exc:
            log_event(
                "ws",
                "consume_error",
                status="error",
                companion_id=companion_id,
                details={"error": f"{type(exc).__name__}: {exc}", "frames_forwarded": frames_forwarded},
            )
            raise
        finally:
            connection_manager.disconnect(channel, websocket)
            log_event(
                "ws",
                "consume_end",
                companion_id=companion_id,
                details={"frames_forwarded": frames_forwarded},
            )

    return router
