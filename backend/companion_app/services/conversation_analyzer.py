from __future__ import annotations

from typing import Iterable, Optional, Sequence, Union

from companion_app.core.config import settings
from companion_app.models.schemas import ConversationAnalysis, ConversationMessage


# Affirmation, negation, question stems and enthusiasm.
ENGAGEMENT_KEYWORDS = (
    "yes",
    "no",
    "why",
    "how",
    "what",
    "when",
    "where",
    "really",
    "interesting",
    "cool",
    "wow",
)

MessageLike = Union[ConversationMessage, dict]


def _coerce(message: MessageLike) -> ConversationMessage:
    if isinstance(message, ConversationMessage):
        return message
    return ConversationMessage(role=message.get("role"), content=message.get("content") or "")


def count_engagement_keywords(content: str, keywords: Iterable[str] = ENGAGEMENT_KEYWORDS) -> int:
    """Number of distinct keywords appearing anywhere in ``content``.

    Matching is a case-insensitive substring test, so "know" also counts "no".
    """
    lowered = (content or "").lower()
    return sum(1 for keyword in keywords if keyword in lowered)


def analyze(
    messages: Sequence[MessageLike],
    *,
    seconds_per_message: Optional[int] = None,
) -> ConversationAnalysis:
    """Turn a transcript into counts used by the scorer.

    ``estimated_duration_seconds`` is a proxy (constant x message count), not
    measured wall-clock time.
    """
    transcript = [_coerce(message) for message in messages]
    user_turns = [m for m in transcript if m.role == "user"]
    assistant_turns = [m for m in transcript if m.role == "assistant"]

    total_words = sum(len(m.content.split()) for m in user_turns)
    average_length = total_words / len(user_turns) if user_turns else 0.0

    per_message = settings.ANALYSIS_SECONDS_PER_MESSAGE if seconds_per_message is None else seconds_per_message

    return ConversationAnalysis(
        total_messages=len(transcript),
        user_messages=len(user_turns),
        assistant_messages=len(assistant_turns),
        average_response_length=average_length,
        engagement_keyword_hits=sum(count_engagement_keywords(m.content) for m in user_turns),
        question_count=sum(1 for m in user_turns if "?" in m.content),
        estimated_duration_seconds=len(transcript) * per_message,
    )
