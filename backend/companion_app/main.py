from __future__ import annotations

import time
import uuid
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from companion_app.core.config import settings
from companion_app.core.telemetry import configure_logging, log_event, timed_step
from companion_app.models.schemas import CompanionProfile, SessionEvent
from companion_app.routes import companions as companion_routes
from companion_app.routes import sessions as session_routes
from companion_app.routes import telemetry as telemetry_routes
from companion_app.routes import ws as ws_routes
from companion_app.services.cache import CacheService
from companion_app.services.evaluation_scorer import MetricsClient, SessionEvaluator
from companion_app.services.identity import StaticIdentity
from companion_app.services.provider_metrics import ElevenLabsMetricsClient
from companion_app.services.session_controller import SessionController
from companion_app.services.session_manager import ControllerRegistry
from companion_app.services.session_persistence import SessionPersistence
from companion_app.services.supabase_store import SessionStore
from companion_app.services.voice_transport import ElevenLabsTransport, VoiceTransport
from companion_app.services.ws_manager import ConnectionManager, channel_for


def create_app(
    *,
    store: Optional[SessionStore] = None,
    transport: Optional[VoiceTransport] = None,
    metrics_client: Optional[MetricsClient] = None,
    evaluator: Optional[SessionEvaluator] = None,
    registry: Optional[ControllerRegistry] = None,
    ws_manager: Optional[ConnectionManager] = None,
    cache: Optional[CacheService] = None,
    data_root: str | Path | None = None,
    allowed_origins: Optional[List[str]] = None,
) -> FastAPI:
    """Create the FastAPI app with injectable dependencies.

    Tests pass fakes for the store, transport and metrics client; production
    builds the Supabase, ElevenLabs and Redis adapters from settings.
    """

    if data_root is not None:
        settings.DATA_ROOT = Path(data_root)

    configure_logging()

    local_store = store or SessionStore()
    local_transport = transport or ElevenLabsTransport()
    local_evaluator = evaluator or SessionEvaluator(metrics_client or ElevenLabsMetricsClient())
    local_ws_manager = ws_manager or ConnectionManager()
    local_cache = cache or CacheService(
        redis_url=settings.REDIS_URL,
        enabled=settings.CACHE_ENABLED,
        default_ttl_seconds=settings.CACHE_DEFAULT_TTL_SECONDS,
        key_prefix=settings.CACHE_KEY_PREFIX,
    )
    local_persistence = SessionPersistence(local_store, cache=local_cache)

    def build_controller(user_id: Optional[str], companion: CompanionProfile) -> SessionController:
        identity = StaticIdentity(user_id)
        channel = channel_for(identity.scope, companion.id)

        async def publish(event: SessionEvent) -> None:
            await local_ws_manager.broadcast(channel, event.model_dump(mode="json"))

        return SessionController(
            companion,
            transport=local_transport,
            evaluator=local_evaluator,
            persistence=local_persistence,
            identity=identity,
            listener=publish,
        )

    local_registry = registry if registry is not None else ControllerRegistry(build_controller)

    app = FastAPI(title="Companion Sessions")
    app.state.store = local_store
    app.state.persistence = local_persistence
    app.state.registry = local_registry
    app.state.ws_manager = local_ws_manager
    app.state.cache = local_cache

    app.include_router(companion_routes.get_routes(local_store, local_persistence, local_cache))
    app.include_router(session_routes.get_routes(local_store, local_registry))
    app.include_router(ws_routes.get_routes(local_ws_manager, local_registry))
    app.include_router(telemetry_routes.get_routes())

    cors_origins = list(allowed_origins or settings.ALLOWED_ORIGINS) or ["*"]
    # Wildcard origins cannot be combined with credentials.
    allow_credentials = not (len(cors_origins) == 1 and cors_origins[0] == "*")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_request_timing(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id
        path = request.url.path
        started = time.perf_counter()
        outcome = {
            "request_id": request_id,
            "client_ip": request.client.host if request.client else None,
            "query_params_count": len(request.query_params),
        }
        try:
            response = await call_next(request)
        except Exception as exc:
            outcome["status_code"] = 500
            outcome["error"] = f"{type(exc).__name__}: {exc}"
            raise
        else:
            outcome["status_code"] = response.status_code
            response.headers["x-request-id"] = request_id
            return response
        finally:
            status_code = outcome.get("status_code", 500)
            if path not in settings.LOG_SKIP_REQUEST_PATHS or status_code >= 400:
                if "error" in outcome:
                    status = "error"
                else:
                    status = "warning" if status_code >= 500 else "ok"
                log_event(
                    "http",
                    f"{request.method} {path}",
                    status=status,
                    duration_ms=(time.perf_counter() - started) * 1000.0,
                    details=outcome,
                )

    @app.get("/health")
    async def health() -> dict:
        with timed_step("http", "healthcheck"):
            return {"status": "ok"}

    @app.on_event("startup")
    async def startup_telemetry() -> None:
        log_event(
            "system",
            "startup",
            details={
                "listen": f"{settings.APP_HOST}:{settings.APP_PORT}",
                "supabase_configured": settings.supabase_configured,
                "elevenlabs_agent_id": settings.ELEVENLABS_AGENT_ID,
                "elevenlabs_api_key_set": bool(settings.ELEVENLABS_API_KEY),
                "metrics_fetch_timeout_s": settings.METRICS_FETCH_TIMEOUT_SECONDS,
                "cache_enabled": settings.CACHE_ENABLED,
                "log_level": settings.LOG_LEVEL,
            },
        )

    @app.on_event("shutdown")
    async def dispose_controllers() -> None:
        await local_registry.dispose_all()

    return app


app = create_app()
