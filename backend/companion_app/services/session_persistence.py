from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from companion_app.core.telemetry import log_event, timed_step
from companion_app.models.schemas import (
    CompanionProfile,
    CompanionSessionSummary,
    SessionEvaluation,
    SessionRecord,
)
from companion_app.services.cache import CacheService
from companion_app.services.supabase_store import SessionStore, StoreError


SUMMARY_CACHE_NAMESPACE = "summaries"


class PersistenceError(Exception):
    """Both the full and the minimal session insert failed."""


@dataclass(frozen=True)
class InsertAttempt:
    name: str
    transform: Callable[[Dict[str, Any]], Dict[str, Any]]


def _minimal_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    return {"companion_id": row["companion_id"], "user_id": row["user_id"]}


# Full row first, then exactly one degraded retry.
INSERT_ATTEMPTS = (
    InsertAttempt("full", dict),
    InsertAttempt("minimal", _minimal_payload),
)


def build_session_row(
    companion_id: str,
    user_id: str,
    call_id: Optional[str] = None,
    evaluation: Optional[SessionEvaluation] = None,
) -> Dict[str, Any]:
    row: Dict[str, Any] = {"companion_id": companion_id, "user_id": user_id}
    if call_id:
        row["vapi_call_id"] = call_id
    if evaluation is not None:
        row.update(
            {
                "score": evaluation.score,
                "summary": evaluation.summary,
                "duration": evaluation.metrics.duration_seconds,
                "engagement_score": evaluation.metrics.engagement,
                "comprehension_score": evaluation.metrics.comprehension,
                "participation_score": evaluation.metrics.participation,
                "insights": list(evaluation.insights),
                "evaluated_at": datetime.now(timezone.utc).isoformat(),
            }
        )
    return row


def _parse_created_at(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def latest_per_companion(rows: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Most recent row per companion_id.

    Rows normally arrive newest-first; a later row only replaces the kept one
    when its created_at is strictly newer, so ties keep the first seen.
    Insertion order of the result follows first appearance.
    """
    latest: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        companion_id = row.get("companion_id")
        if not companion_id:
            continue
        current = latest.get(companion_id)
        if current is None:
            latest[companion_id] = row
            continue
        current_at = _parse_created_at(current.get("created_at"))
        candidate_at = _parse_created_at(row.get("created_at"))
        if candidate_at is not None and (current_at is None or candidate_at > current_at):
            latest[companion_id] = row
    return latest


def _summary_for(companion: CompanionProfile, session: Optional[Dict[str, Any]]) -> CompanionSessionSummary:
    base = companion.model_dump()
    if session is None:
        return CompanionSessionSummary(**base)
    created_at = _parse_created_at(session.get("created_at"))
    return CompanionSessionSummary(
        **base,
        last_session_date=created_at.date().isoformat() if created_at else None,
        last_session_score=session.get("score"),
        last_session_summary=session.get("summary"),
    )


def _as_profiles(companions: Sequence[CompanionProfile | Dict[str, Any]]) -> List[CompanionProfile]:
    return [c if isinstance(c, CompanionProfile) else CompanionProfile.model_validate(c) for c in companions]


class SessionPersistence:
    """Writes session records and folds stored rows into per-companion summaries."""

    def __init__(self, store: SessionStore, *, cache: Optional[CacheService] = None) -> None:
        self._store = store
        self._cache = cache

    async def persist(
        self,
        companion_id: str,
        user_id: Optional[str],
        call_id: Optional[str] = None,
        evaluation: Optional[SessionEvaluation] = None,
    ) -> Optional[SessionRecord]:
        if not user_id:
            log_event(
                "persistence",
                "persist_skipped_unauthenticated",
                call_id=call_id,
                companion_id=companion_id,
                details={"has_evaluation": evaluation is not None},
            )
            return None

        row = build_session_row(companion_id, user_id, call_id, evaluation)
        errors: List[str] = []
        for attempt in INSERT_ATTEMPTS:
            payload = attempt.transform(row)
            try:
                stored = self._store.insert_session(payload)
            except StoreError as exc:
                errors.append(f"{attempt.name}: {exc}")
                log_event(
                    "persistence",
                    f"insert_{attempt.name}_failed",
                    status="warning",
                    call_id=call_id,
                    companion_id=companion_id,
                    details={"error": str(exc)},
                )
                continue

            log_event(
                "persistence",
                "session_saved",
                call_id=call_id,
                companion_id=companion_id,
                details={"attempt": attempt.name, "has_evaluation": "score" in payload},
            )
            if self._cache is not None:
                await self._cache.invalidate_scope(SUMMARY_CACHE_NAMESPACE, user_id)
            return SessionRecord.model_validate({**payload, **stored})

        log_event(
            "persistence",
            "session_save_failed",
            status="error",
            call_id=call_id,
            companion_id=companion_id,
            details={"errors": errors},
        )
        raise PersistenceError("; ".join(errors))

    def enrich(
        self,
        companions: Sequence[CompanionProfile | Dict[str, Any]],
        user_id: Optional[str] = None,
    ) -> List[CompanionSessionSummary]:
        profiles = _as_profiles(companions)
        if not profiles:
            return []
        if not user_id:
            return [_summary_for(profile, None) for profile in profiles]

        with timed_step("persistence", "enrich", details={"companions": len(profiles)}) as step:
            try:
                rows = self._store.select_sessions(user_id, companion_ids=[p.id for p in profiles])
            except StoreError as exc:
                step["degraded"] = True
                log_event(
                    "persistence",
                    "enrich_query_failed",
                    status="warning",
                    details={"error": str(exc)},
                )
                return [_summary_for(profile, None) for profile in profiles]

            latest = latest_per_companion(rows)
            step["matched"] = len(latest)
            return [_summary_for(profile, latest.get(profile.id)) for profile in profiles]

    def recent_sessions(self, user_id: Optional[str], limit: int = 10) -> List[CompanionSessionSummary]:
        """Companions the user talked to most recently, newest first, one entry each."""
        if not user_id:
            return []
        with timed_step("persistence", "recent_sessions", details={"limit": limit}):
            try:
                rows = self._store.select_sessions(user_id, limit=limit)
                latest = latest_per_companion(rows)
                catalog = {
                    str(row.get("id")): row
                    for row in self._store.list_companions_by_ids(list(latest))
                }
            except StoreError as exc:
                log_event(
                    "persistence",
                    "recent_sessions_failed",
                    status="warning",
                    details={"error": str(exc)},
                )
                return []

        summaries: List[CompanionSessionSummary] = []
        for companion_id, session in latest.items():
            companion = catalog.get(companion_id)
            if companion is None:
                continue
            summaries.append(_summary_for(CompanionProfile.model_validate(companion), session))
        return summaries
