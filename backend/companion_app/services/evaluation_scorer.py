from __future__ import annotations

import asyncio
import math
import random
from typing import Any, Dict, List, Optional, Protocol, Sequence

from companion_app.core.config import settings
from companion_app.core.telemetry import log_event, timed_step
from companion_app.models.schemas import (
    CompanionProfile,
    ConversationAnalysis,
    ConversationMessage,
    EvaluationMetrics,
    SessionEvaluation,
)
from companion_app.services.conversation_analyzer import analyze
from companion_app.services.provider_metrics import MetricsUnavailable, summarize_provider_metrics


SCORE_FLOOR = 60
SCORE_CEILING = 100
MAX_INSIGHTS = 3

FALLBACK_SCORE_RANGE = (70, 89)
FALLBACK_INSIGHTS = (
    "Active participation throughout the session",
    "Good grasp of the subject matter",
    "Engaged with the learning material",
)


class MetricsClient(Protocol):
    async def fetch(self, call_id: str) -> Dict[str, Any]: ...


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(value: float, lower: int, upper: int) -> int:
    return max(lower, min(upper, _round_half_up(value)))


def engagement_score(analysis: ConversationAnalysis) -> int:
    raw = (
        analysis.engagement_keyword_hits * 10
        + analysis.question_count * 15
        + min(20, analysis.user_messages * 4)
    )
    return _clamp(raw, 0, 100)


def comprehension_score(analysis: ConversationAnalysis, engagement: int) -> int:
    raw = 20  # base
    if analysis.average_response_length > 3:
        raw += 25
    if analysis.user_messages > 3:
        raw += 25
    raw += 30 if engagement > 50 else 20
    return _clamp(raw, 0, 100)


def participation_raw(analysis: ConversationAnalysis) -> float:
    """Unrounded participation; the duration term can be fractional."""
    raw = analysis.user_messages * 8 + min(30.0, analysis.estimated_duration_seconds / 6) + 10
    return max(0.0, min(100.0, float(raw)))


def participation_score(analysis: ConversationAnalysis) -> int:
    return _clamp(participation_raw(analysis), 0, 100)


def overall_score(engagement: float, comprehension: float, participation: float) -> int:
    """Weighted blend, floored at 60 so a completed session never reads as failing.

    Inputs are blended unrounded; only the result is rounded.
    """
    weighted = engagement * 0.4 + comprehension * 0.35 + participation * 0.25
    return _clamp(weighted, SCORE_FLOOR, SCORE_CEILING)


def generate_insights(analysis: ConversationAnalysis, score: int, subject: str) -> List[str]:
    insights: List[str] = []

    if analysis.user_messages > 8:
        insights.append("Excellent active participation throughout the session")
    elif analysis.user_messages > 4:
        insights.append("Good level of engagement with the material")
    else:
        insights.append("Consider more active participation in future sessions")

    if analysis.question_count > 2:
        insights.append("Great curiosity shown through thoughtful questions")

    if analysis.average_response_length > 5:
        insights.append("Detailed responses demonstrate deep thinking")

    if score >= 85:
        insights.append(f"Exceptional understanding of {subject} concepts")
    elif score >= 70:
        insights.append(f"Solid grasp of {subject} fundamentals")
    else:
        insights.append(f"Opportunity to strengthen {subject} knowledge base")

    if analysis.estimated_duration_seconds > 300:
        insights.append("Maintained focus for extended learning session")

    return insights[:MAX_INSIGHTS]


def generate_summary(analysis: ConversationAnalysis, score: int, topic: str) -> str:
    if score >= 85:
        performance = "excellent"
    elif score >= 70:
        performance = "good"
    else:
        performance = "developing"

    if analysis.user_messages > 6:
        engagement_level = "high"
    elif analysis.user_messages > 3:
        engagement_level = "moderate"
    else:
        engagement_level = "basic"

    minutes = _round_half_up(analysis.estimated_duration_seconds / 60)
    return (
        f"Completed {topic} discussion with {performance} performance. "
        f"Demonstrated {engagement_level} engagement through {analysis.user_messages} interactions. "
        f"Session duration: {minutes} minutes."
    )


def score(
    analysis: ConversationAnalysis,
    companion: CompanionProfile,
    external_metrics: Optional[Dict[str, Any]] = None,
) -> SessionEvaluation:
    """Primary scoring path.

    ``external_metrics`` is accepted as context only; the local formulas decide
    every number in the result.
    """
    engagement = engagement_score(analysis)
    comprehension = comprehension_score(analysis, engagement)
    participation = participation_raw(analysis)
    overall = overall_score(engagement, comprehension, participation)

    if external_metrics:
        log_event(
            "evaluation",
            "provider_metrics_attached",
            companion_id=companion.id,
            details=summarize_provider_metrics(external_metrics),
        )

    return SessionEvaluation(
        score=overall,
        summary=generate_summary(analysis, overall, companion.topic),
        metrics=EvaluationMetrics(
            engagement=engagement,
            comprehension=comprehension,
            participation=participation_score(analysis),
            duration_seconds=analysis.estimated_duration_seconds,
        ),
        insights=generate_insights(analysis, overall, companion.subject),
    )


def fallback_evaluation(
    message_count: int,
    companion: CompanionProfile,
    *,
    rng: Optional[random.Random] = None,
) -> SessionEvaluation:
    """Bounded substitute used when the transcript cannot be analyzed."""
    rng = rng or random.Random()
    return SessionEvaluation(
        score=rng.randint(*FALLBACK_SCORE_RANGE),
        summary=f"Completed {companion.topic} discussion with good engagement",
        metrics=EvaluationMetrics(
            engagement=75,
            comprehension=80,
            participation=85,
            duration_seconds=max(0, message_count) * settings.FALLBACK_SECONDS_PER_MESSAGE,
        ),
        insights=list(FALLBACK_INSIGHTS),
        fallback=True,
    )


class SessionEvaluator:
    """Runs analyze -> provider metrics (best effort) -> score for one finished call."""

    def __init__(
        self,
        metrics_client: Optional[MetricsClient] = None,
        *,
        metrics_timeout_seconds: Optional[float] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._metrics = metrics_client
        self._metrics_timeout = (
            metrics_timeout_seconds
            if metrics_timeout_seconds is not None
            else settings.METRICS_FETCH_TIMEOUT_SECONDS
        )
        self._rng = rng or random.Random()

    async def fetch_external_metrics(self, call_id: str) -> Optional[Dict[str, Any]]:
        if self._metrics is None or not call_id:
            return None
        try:
            return await asyncio.wait_for(self._metrics.fetch(call_id), timeout=self._metrics_timeout)
        except asyncio.TimeoutError:
            reason = f"timed out after {self._metrics_timeout}s"
        except MetricsUnavailable as exc:
            reason = str(exc)
        except Exception as exc:
            reason = f"{type(exc).__name__}: {exc}"
        log_event(
            "evaluation",
            "metrics_unavailable",
            status="warning",
            call_id=call_id,
            details={"reason": reason},
        )
        return None

    async def evaluate(
        self,
        call_id: str,
        messages: Sequence[ConversationMessage],
        companion: CompanionProfile,
    ) -> SessionEvaluation:
        with timed_step(
            "evaluation",
            "evaluate_session",
            call_id=call_id,
            companion_id=companion.id,
            details={"messages": len(messages)},
        ) as step:
            if not messages:
                step["path"] = "fallback"
                return self._fallback(call_id, companion, len(messages), reason="empty_transcript")
            try:
                analysis = analyze(messages)
                external = await self.fetch_external_metrics(call_id)
                evaluation = score(analysis, companion, external)
            except Exception as exc:
                step["path"] = "fallback"
                return self._fallback(
                    call_id,
                    companion,
                    len(messages),
                    reason=f"{type(exc).__name__}: {exc}",
                )
            step["path"] = "primary"
            step["score"] = evaluation.score
            return evaluation

    def _fallback(
        self,
        call_id: str,
        companion: CompanionProfile,
        message_count: int,
        *,
        reason: str,
    ) -> SessionEvaluation:
        log_event(
            "evaluation",
            "analysis_fallback",
            status="warning",
            call_id=call_id,
            companion_id=companion.id,
            details={"reason": reason, "messages": message_count},
        )
        return fallback_evaluation(message_count, companion, rng=self._rng)
