from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from companion_app.core.telemetry import log_event, timed_step
from companion_app.models.schemas import CompanionProfile, ControllerSnapshot, MuteResponse, SessionActionResponse
from companion_app.services.identity import identity_from_request
from companion_app.services.session_controller import SessionController
from companion_app.services.session_manager import ControllerRegistry
from companion_app.services.session_persistence import PersistenceError
from companion_app.services.supabase_store import SessionStore, StoreError


def get_routes(store: SessionStore, registry: ControllerRegistry):
    router = APIRouter(prefix="/api/companions", tags=["sessions"])

    async def _controller(companion_id: str, request: Request) -> SessionController:
        identity = identity_from_request(request)
        existing = registry.get(identity.user_id, companion_id)
        if existing is not None:
            return existing
        try:
            row = store.get_companion(companion_id)
        except StoreError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        if row is None:
            raise HTTPException(status_code=404, detail="Companion not found")
        return await registry.get_or_create(identity.user_id, CompanionProfile.model_validate(row))

    @router.post("/{companion_id}/session/start", response_model=SessionActionResponse)
    async def start_session(companion_id: str, request: Request):
        with timed_step("api", "start_session", companion_id=companion_id):
            controller = await _controller(companion_id, request)
            if controller.state in {"connecting", "active"}:
                raise HTTPException(status_code=409, detail=f"Session already {controller.state}")

            started = await controller.start_call()
            if not started and controller.state in {"connecting", "active"}:
                raise HTTPException(status_code=409, detail=f"Session already {controller.state}")
            return SessionActionResponse(
                ok=started,
                message="Session started" if started else "Voice connection failed",
                session=controller.snapshot(),
            )

    @router.post("/{companion_id}/session/mute", response_model=MuteResponse)
    async def toggle_mute(companion_id: str, request: Request):
        with timed_step("api", "toggle_mute", companion_id=companion_id):
            controller = await _controller(companion_id, request)
            was_active = controller.state == "active"
            muted = await controller.toggle_mute()
            return MuteResponse(ok=was_active, is_muted=muted, session=controller.snapshot())

    @router.post("/{companion_id}/session/end", response_model=SessionActionResponse)
    async def end_session(companion_id: str, request: Request):
        with timed_step("api", "end_session", companion_id=companion_id):
            controller = await _controller(companion_id, request)
            if controller.state != "active":
                return SessionActionResponse(ok=False, message="No active session", session=controller.snapshot())
            try:
                record = await controller.end_call()
            except PersistenceError as exc:
                log_event(
                    "api",
                    "end_session_not_saved",
                    status="error",
                    companion_id=companion_id,
                    details={"error": str(exc)},
                )
                body = SessionActionResponse(
                    ok=False,
                    message="Session ended but could not be saved",
                    session=controller.snapshot(),
                )
                return JSONResponse(status_code=502, content=body.model_dump(mode="json"))
            message = "Session saved" if record is not None else "Session ended (not saved: signed out)"
            return SessionActionResponse(ok=True, message=message, session=controller.snapshot())

    @router.get("/{companion_id}/session", response_model=ControllerSnapshot)
    async def get_session(companion_id: str, request: Request):
        with timed_step("api", "get_session", companion_id=companion_id):
            controller = await _controller(companion_id, request)
            return controller.snapshot()

    return router
