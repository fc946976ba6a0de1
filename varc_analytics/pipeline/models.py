"""
Value types passed between pipeline phases.

Everything here is in-memory only. Durable rows live in
``varc_analytics.db.models``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

from varc_analytics.core.dimensions import DimensionType, Trend


@dataclass(frozen=True)
class Attempt:
    """One answered question joined with its question and passage metadata."""

    attempt_id: str
    question_id: str
    passage_id: str | None
    question_type: str
    genre: str | None
    correct: bool
    time_spent_seconds: float
    reasoning_node_ids: tuple[str, ...] = ()
    difficulty: str | None = None

    # Diagnostic context (only the annotator reads these)
    question_text: str | None = None
    options: Any = None
    correct_answer: Any = None
    user_answer: Any = None
    confidence_level: int | None = None
    jumbled_sentences: Any = None


@dataclass
class SessionLoadResult:
    """Output of the session loader."""

    session_id: str
    user_id: str
    attempts: list[Attempt] = field(default_factory=list)
    already_processed: bool = False
    completed_at: datetime | None = None
    time_spent_seconds: int | None = None

    @property
    def is_empty(self) -> bool:
        return not self.attempts


# ========================================
# Surface statistics
# ========================================


@dataclass(frozen=True)
class DimensionStats:
    """Per-session statistics for one dimension key."""

    attempts: int
    correct: int
    accuracy: float
    avg_time: float
    score_0_100: int


@dataclass
class SurfaceStats:
    """Per dimension type, ``dimension_key -> DimensionStats``."""

    core_metric: dict[str, DimensionStats] = field(default_factory=dict)
    genre: dict[str, DimensionStats] = field(default_factory=dict)
    question_type: dict[str, DimensionStats] = field(default_factory=dict)
    reasoning_step: dict[str, DimensionStats] = field(default_factory=dict)

    def for_type(self, dimension_type: DimensionType) -> dict[str, DimensionStats]:
        return getattr(self, dimension_type.value)

    def items(self):
        """Yield ``(dimension_type, key, stats)`` in a stable order."""
        for dimension_type in DimensionType:
            for key, stats in sorted(self.for_type(dimension_type).items()):
                yield dimension_type, key, stats

    @property
    def dimension_count(self) -> int:
        return sum(len(self.for_type(t)) for t in DimensionType)

    def summary(self) -> dict[str, int]:
        return {t.value: len(self.for_type(t)) for t in DimensionType}


# ========================================
# Diagnostics
# ========================================


@dataclass(frozen=True)
class AttemptDiagnosis:
    """Qualitative explanation of one incorrect attempt."""

    attempt_id: str
    failure_tags: tuple[str, ...] = ()
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "failure_tags": list(self.failure_tags),
            "description": self.description,
        }


# ========================================
# Proficiency
# ========================================


@dataclass(frozen=True)
class ProficiencyRecord:
    """Snapshot of a stored proficiency row, detached from the ORM session."""

    user_id: str
    dimension_type: DimensionType
    dimension_key: str
    proficiency_score: int
    confidence_score: float
    total_attempts: int
    correct_attempts: int
    last_session_id: str | None = None
    trend: Trend | None = None
    updated_at: datetime | None = None
    speed_vs_accuracy_data: tuple[dict[str, Any], ...] = ()

    @classmethod
    def from_row(cls, row: Any) -> ProficiencyRecord:
        return cls(
            user_id=row.user_id,
            dimension_type=DimensionType(row.dimension_type),
            dimension_key=row.dimension_key,
            proficiency_score=row.proficiency_score,
            confidence_score=row.confidence_score,
            total_attempts=row.total_attempts,
            correct_attempts=row.correct_attempts,
            last_session_id=row.last_session_id,
            trend=Trend(row.trend) if row.trend else None,
            updated_at=row.updated_at,
            speed_vs_accuracy_data=tuple(row.speed_vs_accuracy_data or ()),
        )


@dataclass(frozen=True)
class ProficiencyDelta:
    """A planned write for one dimension, computed before touching the store."""

    dimension_type: DimensionType
    dimension_key: str
    old_score: int
    new_score: int
    confidence: float
    total_attempts: int
    correct_attempts: int
    trend: Trend
    # last_session_id read when planning; the write is conditional on it
    expected_last_session_id: str | None
    is_new: bool
    speed_vs_accuracy_data: list[dict[str, Any]] | None = None

    @property
    def label(self) -> str:
        return f"{self.dimension_type.value}:{self.dimension_key}"


@dataclass
class ProficiencyUpdateSummary:
    """Counts reported by the proficiency updater."""

    updated: int = 0
    created: int = 0
    skipped: int = 0
    conflicts: int = 0
    failed: int = 0
    failed_dimensions: list[str] = field(default_factory=list)
    conflicted_dimensions: list[str] = field(default_factory=list)


@dataclass
class ProficiencySignal:
    """Per-user rollup written to ``user_proficiency_signals``."""

    user_id: str
    genre_strengths: dict[str, int] = field(default_factory=dict)
    inference_skill: int | None = None
    tone_analysis_skill: int | None = None
    main_idea_skill: int | None = None
    detail_comprehension_skill: int | None = None
    overall_score: float | None = None
    recommended_difficulty: str | None = None
    weak_topics: list[str] = field(default_factory=list)
    weak_question_types: list[str] = field(default_factory=list)
    data_points_count: int = 0

    def to_columns(self) -> dict[str, Any]:
        """Column values for the signals upsert (excluding timestamps)."""
        return {
            "user_id": self.user_id,
            "genre_strengths": self.genre_strengths,
            "inference_skill": self.inference_skill,
            "tone_analysis_skill": self.tone_analysis_skill,
            "main_idea_skill": self.main_idea_skill,
            "detail_comprehension_skill": self.detail_comprehension_skill,
            "overall_score": self.overall_score,
            "recommended_difficulty": self.recommended_difficulty,
            "weak_topics": self.weak_topics,
            "weak_question_types": self.weak_question_types,
            "data_points_count": self.data_points_count,
        }


# ========================================
# User analytics
# ========================================


@dataclass
class UserAnalyticsUpdate:
    """The ``user_analytics`` row after merging one session."""

    user_id: str
    last_active_date: date
    last_streak_date: date | None
    is_active_day: bool
    minutes_practiced: int
    questions_attempted: int
    questions_correct: int
    accuracy_percentage: float
    current_streak: int
    longest_streak: int
    points_earned_today: int
    total_points: int
    genre_performance: dict[str, int] = field(default_factory=dict)
    question_type_performance: dict[str, int] = field(default_factory=dict)
    difficulty_performance: dict[str, dict[str, Any]] = field(default_factory=dict)
    reading_speed_wpm: int | None = None
    # Points awarded for this session alone
    points_earned: int = 0

    def to_columns(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "last_active_date": self.last_active_date,
            "last_streak_date": self.last_streak_date,
            "is_active_day": self.is_active_day,
            "minutes_practiced": self.minutes_practiced,
            "questions_attempted": self.questions_attempted,
            "questions_correct": self.questions_correct,
            "accuracy_percentage": self.accuracy_percentage,
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "points_earned_today": self.points_earned_today,
            "total_points": self.total_points,
            "genre_performance": self.genre_performance,
            "question_type_performance": self.question_type_performance,
            "difficulty_performance": self.difficulty_performance,
            "reading_speed_wpm": self.reading_speed_wpm,
        }


# ========================================
# Orchestrator results
# ========================================


class AnalysisOutcome(str, Enum):
    """How an analyze call ended."""

    ANALYSED = "analysed"
    ALREADY_PROCESSED = "already_processed"
    EMPTY = "empty"


@dataclass
class SessionStats:
    """Counts reported for an analysed session."""

    attempts: int = 0
    correct: int = 0
    dimensions: dict[str, int] = field(default_factory=dict)
    dimensions_updated: int = 0
    dimensions_created: int = 0
    dimensions_skipped: int = 0
    dimensions_conflicted: int = 0
    dimensions_failed: int = 0
    diagnostics: int = 0
    diagnostics_stored: bool = False
    reading_speed_wpm: int | None = None
    points_earned: int = 0
    current_streak: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "correct": self.correct,
            "dimensions": dict(self.dimensions),
            "dimensions_updated": self.dimensions_updated,
            "dimensions_created": self.dimensions_created,
            "dimensions_skipped": self.dimensions_skipped,
            "dimensions_conflicted": self.dimensions_conflicted,
            "dimensions_failed": self.dimensions_failed,
            "diagnostics": self.diagnostics,
            "diagnostics_stored": self.diagnostics_stored,
            "reading_speed_wpm": self.reading_speed_wpm,
            "points_earned": self.points_earned,
            "current_streak": self.current_streak,
        }


@dataclass
class AnalyticsResult:
    """Result of analysing one session."""

    session_id: str
    user_id: str
    success: bool
    outcome: AnalysisOutcome
    stats: SessionStats | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "success": self.success,
            "outcome": self.outcome.value,
            "stats": self.stats.to_dict() if self.stats else None,
            "message": self.message,
        }


@dataclass
class BatchAnalyticsResult:
    """Aggregated result of a pending-session sweep for one user."""

    user_id: str
    results: list[AnalyticsResult] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def sessions_found(self) -> int:
        return len(self.results) + len(self.errors)

    @property
    def sessions_analysed(self) -> int:
        return sum(1 for r in self.results if r.outcome != AnalysisOutcome.ALREADY_PROCESSED)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "success": self.success,
            "sessions_found": self.sessions_found,
            "sessions_analysed": self.sessions_analysed,
            "results": [r.to_dict() for r in self.results],
            "errors": dict(self.errors),
        }
