from __future__ import annotations

import hashlib
import json
from typing import Any, Optional

import redis.asyncio as redis_asyncio

from companion_app.core.config import settings
from companion_app.core.telemetry import log_event


class CacheService:
    """Redis JSON cache for read models; any Redis problem reads as a miss."""

    def __init__(
        self,
        *,
        redis_url: str | None = None,
        enabled: bool = False,
        default_ttl_seconds: int = 300,
        key_prefix: str = "companion",
    ) -> None:
        self._enabled = bool(enabled)
        self._redis_url = (redis_url or settings.REDIS_URL or "").strip()
        self._ttl = default_ttl_seconds
        self._key_prefix = key_prefix
        self._client = None
        self._usable = False

        if self._enabled and self._redis_url:
            try:
                self._client = redis_asyncio.from_url(self._redis_url, decode_responses=True)
            except Exception as exc:
                self._report("init_error", exc)
                self._client = None
                self._enabled = False

    @property
    def enabled(self) -> bool:
        return bool(self._enabled and self._client is not None)

    def key(self, namespace: str, scope: object, *parts: object) -> str:
        """``prefix:namespace:scope:digest``; the scope segment stays readable for invalidation."""
        normalized = ":".join(str(part) for part in parts if part is not None)
        digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()
        return f"{self._key_prefix}:{namespace}:{scope}:{digest}"

    def _report(self, action: str, exc: Exception, **details: Any) -> None:
        log_event(
            "cache",
            action,
            status="warning",
            details={"error": f"{type(exc).__name__}: {exc}", **details},
        )

    async def ping(self) -> bool:
        if not self.enabled:
            return False
        if self._usable:
            return True
        try:
            await self._client.ping()  # type: ignore[union-attr]
        except Exception as exc:
            self._report("ping_failed", exc)
            return False
        self._usable = True
        return True

    async def get_json(self, cache_key: str) -> Optional[Any]:
        if not await self.ping():
            return None
        try:
            raw = await self._client.get(cache_key)  # type: ignore[union-attr]
            return None if raw is None else json.loads(raw)
        except Exception as exc:
            self._report("get_json_failed", exc, key=cache_key)
            return None

    async def set_json(self, cache_key: str, value: Any, *, ttl_seconds: int | None = None) -> bool:
        if not await self.ping():
            return False
        try:
            await self._client.set(  # type: ignore[union-attr]
                cache_key,
                json.dumps(value, default=str),
                ex=int(ttl_seconds or self._ttl),
            )
        except Exception as exc:
            self._report("set_json_failed", exc, key=cache_key)
            return False
        return True

    async def invalidate_scope(self, namespace: str, scope: object) -> int:
        """Delete every key written under ``namespace`` for ``scope``."""
        if not await self.ping():
            return 0
        pattern = f"{self._key_prefix}:{namespace}:{scope}:*"
        try:
            keys = [key async for key in self._client.scan_iter(match=pattern)]  # type: ignore[union-attr]
            if not keys:
                return 0
            return int(await self._client.delete(*keys))  # type: ignore[union-attr]
        except Exception as exc:
            self._report("invalidate_failed", exc, pattern=pattern)
            return 0
