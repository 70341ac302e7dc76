from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from companion_app.core.config import settings
from companion_app.core.telemetry import timed_step
from companion_app.models.schemas import CompanionSessionSummary
from companion_app.services.cache import CacheService
from companion_app.services.identity import identity_from_request
from companion_app.services.session_persistence import SUMMARY_CACHE_NAMESPACE, SessionPersistence
from companion_app.services.supabase_store import SessionStore, StoreError


def get_routes(store: SessionStore, persistence: SessionPersistence, cache: CacheService | None = None):
    router = APIRouter(prefix="/api/companions", tags=["companions"])
    local_cache = cache

    @router.get("", response_model=List[CompanionSessionSummary])
    async def list_companions(
        request: Request,
        limit: int = Query(default=10, ge=1, le=100),
        page: int = Query(default=1, ge=1),
        subject: Optional[str] = None,
        topic: Optional[str] = None,
    ):
        identity = identity_from_request(request)
        with timed_step(
            "api",
            "list_companions",
            details={"limit": limit, "page": page, "subject": subject, "topic": topic},
        ) as step:
            cache_key = None
            if local_cache is not None:
                cache_key = local_cache.key(
                    SUMMARY_CACHE_NAMESPACE,
                    identity.scope,
                    "list",
                    limit,
                    page,
                    f"subject={subject or ''}",
                    f"topic={topic or ''}",
                )
                cached = await local_cache.get_json(cache_key)
                if cached is not None:
                    step["cache"] = "hit"
                    return [CompanionSessionSummary(**row) for row in cached]

            try:
                rows = store.list_companions(limit=limit, page=page, subject=subject, topic=topic)
            except StoreError as exc:
                raise HTTPException(status_code=502, detail=str(exc)) from exc

            summaries = persistence.enrich(rows, identity.user_id)
            if local_cache is not None and cache_key is not None:
                await local_cache.set_json(
                    cache_key,
                    [summary.model_dump(mode="json") for summary in summaries],
                    ttl_seconds=settings.CACHE_SUMMARY_TTL_SECONDS,
                )
            step["count"] = len(summaries)
            return summaries

    @router.get("/recent", response_model=List[CompanionSessionSummary])
    async def recent_sessions(request: Request, limit: int = Query(default=10, ge=1, le=50)):
        identity = identity_from_request(request)
        with timed_step("api", "recent_sessions", details={"limit": limit}):
            return persistence.recent_sessions(identity.user_id, limit=limit)

    return router
