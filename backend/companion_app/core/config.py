from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv


_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
if _ENV_PATH.exists():
    load_dotenv(dotenv_path=_ENV_PATH)
else:  # fallback when launched from inside backend/
    load_dotenv()


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_flag(name: str, default: str = "false") -> bool:
    return (os.getenv(name, default) or default).strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    DATA_ROOT = Path(os.getenv("COMPANION_DATA_ROOT", "data"))

    APP_HOST = os.getenv("HOST", "0.0.0.0")
    APP_PORT = _env_int("PORT", 3001)

    ALLOWED_ORIGINS = [
        origin.strip()
        for origin in os.getenv("ALLOWED_ORIGINS", "*").split(",")
        if origin.strip()
    ]

    # Supabase (session_history + companions tables)
    SUPABASE_URL = os.getenv("SUPABASE_URL", "").strip()
    SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "").strip()
    SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY", "").strip()
    SUPABASE_SESSION_HISTORY_TABLE = os.getenv("SUPABASE_SESSION_HISTORY_TABLE", "session_history")
    SUPABASE_COMPANIONS_TABLE = os.getenv("SUPABASE_COMPANIONS_TABLE", "companions")

    # ElevenLabs conversational agent
    ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY", "").strip()
    # The literal is the agent the product shipped with; deployments override it.
    ELEVENLABS_AGENT_ID = (
        os.getenv("ELEVENLABS_AGENT_ID", "").strip()
        or os.getenv("NEXT_PUBLIC_ELEVENLABS_AGENT_ID", "").strip()
        or "agent_1201k38p1ktse719v80971j3g4cm"
    )
    ELEVENLABS_CONNECTION_TYPE = (os.getenv("ELEVENLABS_CONNECTION_TYPE", "websocket") or "websocket").strip().lower()
    ELEVENLABS_API_BASE_URL = os.getenv("ELEVENLABS_API_BASE_URL", "https://api.elevenlabs.io")
    ELEVENLABS_WS_URL = os.getenv(
        "ELEVENLABS_WS_URL",
        "wss://api.elevenlabs.io/v1/convai/conversation",
    )
    ELEVENLABS_CONNECT_TIMEOUT_SECONDS = _env_float("ELEVENLABS_CONNECT_TIMEOUT_SECONDS", 8.0)

    # Evaluation pipeline
    METRICS_FETCH_TIMEOUT_SECONDS = _env_float("METRICS_FETCH_TIMEOUT_SECONDS", 5.0)
    # Duration is a proxy: constant seconds per transcript message, not wall-clock time.
    ANALYSIS_SECONDS_PER_MESSAGE = _env_int("ANALYSIS_SECONDS_PER_MESSAGE", 45)
    FALLBACK_SECONDS_PER_MESSAGE = _env_int("FALLBACK_SECONDS_PER_MESSAGE", 30)
    EVALUATION_COMPLETE_DISPLAY_SECONDS = _env_float("EVALUATION_COMPLETE_DISPLAY_SECONDS", 3.0)

    # Logging controls
    LOG_LEVEL = (os.getenv("LOG_LEVEL", "INFO") or "INFO").upper()
    if LOG_LEVEL not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
        LOG_LEVEL = "INFO"
    LOG_NOISY_EVENTS_EVERY_N = max(0, _env_int("LOG_NOISY_EVENTS_EVERY_N", 120))
    LOG_PRETTY = (
        (os.getenv("LOG_PRETTY", "true") or "true").strip().lower() not in {"0", "false", "no", "off"}
    )
    _log_color = (os.getenv("LOG_COLOR", "auto") or "auto").strip().lower()
    if _log_color in {"1", "true", "yes", "on", "always"}:
        LOG_COLOR = True
    elif _log_color in {"0", "false", "no", "off", "never"}:
        LOG_COLOR = False
    else:
        LOG_COLOR = None

    LOG_NOISY_ACTIONS = tuple(
        action.strip()
        for action in os.getenv("LOG_NOISY_ACTIONS", "transcript_message,audio_chunk").split(",")
        if action.strip()
    ) or ("transcript_message", "audio_chunk")

    LOG_SKIP_REQUEST_PATHS = tuple(
        path.strip()
        for path in os.getenv("LOG_SKIP_REQUEST_PATHS", "/health").split(",")
        if path.strip()
    )

    # Redis / caching of companion summaries
    REDIS_URL = os.getenv("REDIS_URL", "").strip()
    CACHE_ENABLED = _env_flag("CACHE_ENABLED")
    CACHE_DEFAULT_TTL_SECONDS = _env_int("CACHE_DEFAULT_TTL_SECONDS", 300)
    CACHE_SUMMARY_TTL_SECONDS = _env_int("CACHE_SUMMARY_TTL_SECONDS", 120)
    CACHE_KEY_PREFIX = os.getenv("CACHE_KEY_PREFIX", "companion")

    @property
    def supabase_key(self) -> str:
        # service_role bypasses RLS; anon key is the browser-grade fallback
        return self.SUPABASE_SERVICE_ROLE_KEY or self.SUPABASE_ANON_KEY

    @property
    def supabase_configured(self) -> bool:
        return bool(self.SUPABASE_URL and self.supabase_key)


settings = Settings()
