from __future__ import annotations

from fastapi import APIRouter

from companion_app.core.telemetry import get_metric_events, summarize_events, timed_step


def get_routes():
    router = APIRouter(prefix="/api/telemetry", tags=["telemetry"])

    @router.get("/recent")
    async def recent_events(
        limit: int = 200,
        component: str | None = None,
        action: str | None = None,
        call_id: str | None = None,
        companion_id: str | None = None,
    ):
        filters = {"component": component, "action": action, "call_id": call_id, "companion_id": companion_id}
        with timed_step("telemetry", "recent_events", details={"limit": limit, **filters}):
            events = get_metric_events(limit=limit, **filters)
            return {"count": len(events), "events": events}

    @router.get("/summary")
    async def summary(
        limit: int = 1000,
        component: str | None = None,
        action: str | None = None,
        call_id: str | None = None,
        companion_id: str | None = None,
    ):
        filters = {"component": component, "action": action, "call_id": call_id, "companion_id": companion_id}
        with timed_step("telemetry", "summary", details={"limit": limit, **filters}):
            return summarize_events(limit=limit, **filters)

    return router
