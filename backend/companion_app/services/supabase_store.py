from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from supabase import create_client

from companion_app.core.config import settings
from companion_app.core.telemetry import timed_step


SESSION_SUMMARY_COLUMNS = (
    "id,companion_id,user_id,created_at,score,summary,duration,"
    "engagement_score,comprehension_score,participation_score"
)


class StoreError(Exception):
    """A Supabase read or write failed."""


class SessionStore:
    """Supabase-backed access to the session_history and companions tables."""

    def __init__(
        self,
        client: Any = None,
        *,
        sessions_table: str | None = None,
        companions_table: str | None = None,
    ) -> None:
        self._client = client
        self._sessions_table = sessions_table or settings.SUPABASE_SESSION_HISTORY_TABLE
        self._companions_table = companions_table or settings.SUPABASE_COMPANIONS_TABLE

    @property
    def sessions_table(self) -> str:
        return self._sessions_table

    def _table(self, name: str) -> Any:
        if self._client is None:
            # Built on first use so the app can boot without Supabase credentials.
            if not settings.supabase_configured:
                raise StoreError("Supabase is not configured (SUPABASE_URL / key missing)")
            self._client = create_client(settings.SUPABASE_URL, settings.supabase_key)
        return self._client.table(name)

    def _execute(self, query: Any, *, action: str) -> List[Dict[str, Any]]:
        try:
            result = query.execute()
        except Exception as exc:
            raise StoreError(f"{action} failed: {type(exc).__name__}: {exc}") from exc
        rows = getattr(result, "data", None) or []
        return [row for row in rows if isinstance(row, dict)]

    # ------------------------------------------------------------------ #
    #  session_history table                                               #
    # ------------------------------------------------------------------ #

    def insert_session(self, row: Dict[str, Any]) -> Dict[str, Any]:
        with timed_step(
            "storage",
            "insert_session",
            companion_id=row.get("companion_id"),
            details={"columns": sorted(row)},
        ):
            rows = self._execute(
                self._table(self._sessions_table).insert(row),
                action="insert_session",
            )
            # PostgREST may answer with return=minimal; echo what was written.
            return rows[0] if rows else dict(row)

    def select_sessions(
        self,
        user_id: str,
        *,
        companion_ids: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        columns: str = SESSION_SUMMARY_COLUMNS,
    ) -> List[Dict[str, Any]]:
        with timed_step(
            "storage",
            "select_sessions",
            details={"companions": len(companion_ids) if companion_ids is not None else None, "limit": limit},
        ):
            query = self._table(self._sessions_table).select(columns).eq("user_id", user_id)
            if companion_ids is not None:
                query = query.in_("companion_id", list(companion_ids))
            query = query.order("created_at", desc=True)
            if limit is not None:
                query = query.limit(limit)
            return self._execute(query, action="select_sessions")

    # ------------------------------------------------------------------ #
    #  companions table (read-only here)                                  #
    # ------------------------------------------------------------------ #

    def get_companion(self, companion_id: str) -> Optional[Dict[str, Any]]:
        with timed_step("storage", "get_companion", companion_id=companion_id):
            rows = self._execute(
                self._table(self._companions_table).select("*").eq("id", companion_id),
                action="get_companion",
            )
            return rows[0] if rows else None

    def list_companions(
        self,
        *,
        limit: int = 10,
        page: int = 1,
        subject: Optional[str] = None,
        topic: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        with timed_step(
            "storage",
            "list_companions",
            details={"limit": limit, "page": page, "subject": subject, "topic": topic},
        ):
            query = self._table(self._companions_table).select("*")
            if subject:
                query = query.ilike("subject", f"%{subject}%")
            if topic:
                query = query.or_(f"topic.ilike.%{topic}%,name.ilike.%{topic}%")
            start = (max(page, 1) - 1) * limit
            query = query.range(start, start + limit - 1)
            return self._execute(query, action="list_companions")

    def list_companions_by_ids(self, companion_ids: Sequence[str]) -> List[Dict[str, Any]]:
        if not companion_ids:
            return []
        with timed_step("storage", "list_companions_by_ids", details={"count": len(companion_ids)}):
            return self._execute(
                self._table(self._companions_table).select("*").in_("id", list(companion_ids)),
                action="list_companions_by_ids",
            )
