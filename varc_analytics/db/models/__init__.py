# SQLAlchemy models
from .analytics import UserAnalytics
from .base import Base, JSONType, new_id
from .practice import (
    Passage,
    PracticeSession,
    Question,
    QuestionAttempt,
)
from .proficiency import (
    UserMetricProficiency,
    UserProficiencySignals,
)

__all__ = [
    # Base
    "Base",
    "JSONType",
    "new_id",
    # Practice (read-mostly, owned by the platform)
    "PracticeSession",
    "Passage",
    "Question",
    "QuestionAttempt",
    # Proficiency (owned by analytics)
    "UserMetricProficiency",
    "UserProficiencySignals",
    # Engagement (owned by analytics)
    "UserAnalytics",
]
