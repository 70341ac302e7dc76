from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


MessageRole = Literal["user", "assistant"]
LifecycleState = Literal["idle", "connecting", "active", "finished"]


class ConversationMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: MessageRole
    content: str = ""


class ConversationAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_messages: int = 0
    user_messages: int = 0
    assistant_messages: int = 0
    average_response_length: float = 0.0
    engagement_keyword_hits: int = 0
    question_count: int = 0
    estimated_duration_seconds: int = 0


class EvaluationMetrics(BaseModel):
    engagement: int = Field(ge=0, le=100)
    comprehension: int = Field(ge=0, le=100)
    participation: int = Field(ge=0, le=100)
    duration_seconds: int = Field(ge=0)


class SessionEvaluation(BaseModel):
    score: int = Field(ge=60, le=100)
    summary: str
    metrics: EvaluationMetrics
    insights: List[str] = Field(default_factory=list, max_length=3)
    fallback: bool = False


class CompanionProfile(BaseModel):
    """A tutor persona from the companion catalog."""

    model_config = ConfigDict(extra="allow")

    id: str
    name: str = ""
    subject: str = ""
    topic: str = ""
    voice: Optional[str] = None
    style: Optional[str] = None
    duration: Optional[int] = None
    author: Optional[str] = None


class SessionRecord(BaseModel):
    """One row of the session_history table."""

    model_config = ConfigDict(extra="ignore")

    # bigint identity or uuid, depending on how the table was created
    id: Optional[Union[int, str]] = None
    companion_id: str
    user_id: str
    vapi_call_id: Optional[str] = None
    score: Optional[int] = None
    summary: Optional[str] = None
    duration: Optional[int] = None
    engagement_score: Optional[int] = None
    comprehension_score: Optional[int] = None
    participation_score: Optional[int] = None
    insights: Optional[List[str]] = None
    evaluated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def has_evaluation(self) -> bool:
        return self.score is not None


class CompanionSessionSummary(CompanionProfile):
    last_session_date: Optional[str] = None
    last_session_score: Optional[int] = None
    last_session_summary: Optional[str] = None


class ControllerSnapshot(BaseModel):
    companion_id: str
    state: LifecycleState
    is_muted: bool = False
    is_evaluating: bool = False
    evaluation_complete: bool = False
    call_id: Optional[str] = None
    transcript: List[ConversationMessage] = Field(default_factory=list)
    last_record: Optional[SessionRecord] = None
    last_evaluation: Optional[SessionEvaluation] = None


class SessionActionResponse(BaseModel):
    ok: bool
    message: str
    session: ControllerSnapshot


class MuteResponse(BaseModel):
    ok: bool
    is_muted: bool
    session: ControllerSnapshot


class SessionEvent(BaseModel):
    type: Literal["session_state", "transcript_update", "evaluation_ready"]
    data: Dict[str, Any]
    timestamp: datetime = Field(default_factory=datetime.utcnow)
