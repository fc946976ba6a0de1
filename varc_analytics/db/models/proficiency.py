"""
Proficiency models.

- user_metric_proficiency: durable per-user, per-dimension skill estimate
- user_proficiency_signals: denormalized per-user rollup, overwritten each run
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONType, new_id


class UserMetricProficiency(Base):
    """
    One row per (user, dimension_type, dimension_key).

    Created on first observation of a dimension, mutated only by the
    proficiency updater, never deleted.
    """

    __tablename__ = "user_metric_proficiency"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    dimension_type: Mapped[str] = mapped_column(
        Text, nullable=False
    )  # 'core_metric', 'genre', 'question_type', 'reasoning_step'
    dimension_key: Mapped[str] = mapped_column(Text, nullable=False)

    proficiency_score: Mapped[int] = mapped_column(Integer, nullable=False)  # 0-100
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)  # 0-1
    total_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    correct_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_session_id: Mapped[str | None] = mapped_column(String(36))
    trend: Mapped[str | None] = mapped_column(Text)  # 'improving', 'declining', 'stagnant'

    # reading_speed_wpm only: [{"date", "wpm", "accuracy", "sessions_count"}], one entry per day
    speed_vs_accuracy_data: Mapped[list[dict] | None] = mapped_column(JSONType)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("user_id", "dimension_type", "dimension_key", name="uq_user_dimension"),
        CheckConstraint("proficiency_score BETWEEN 0 AND 100", name="ck_proficiency_score_range"),
        CheckConstraint("confidence_score BETWEEN 0 AND 1", name="ck_confidence_score_range"),
        Index("idx_proficiency_user_type", "user_id", "dimension_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserMetricProficiency user={self.user_id} {self.dimension_type}:{self.dimension_key} "
            f"score={self.proficiency_score} conf={self.confidence_score}>"
        )


class UserProficiencySignals(Base):
    """Per-user personalisation summary derived from all proficiency rows."""

    __tablename__ = "user_proficiency_signals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)

    genre_strengths: Mapped[dict[str, int] | None] = mapped_column(JSONType)

    # Named skill views of selected core metrics
    inference_skill: Mapped[int | None] = mapped_column(Integer)
    tone_analysis_skill: Mapped[int | None] = mapped_column(Integer)
    main_idea_skill: Mapped[int | None] = mapped_column(Integer)
    detail_comprehension_skill: Mapped[int | None] = mapped_column(Integer)

    overall_score: Mapped[float | None] = mapped_column(Float)
    recommended_difficulty: Mapped[str | None] = mapped_column(Text)  # 'easy', 'medium', 'hard'
    weak_topics: Mapped[list[str] | None] = mapped_column(JSONType)
    weak_question_types: Mapped[list[str] | None] = mapped_column(JSONType)
    data_points_count: Mapped[int] = mapped_column(Integer, default=0)

    calculated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<UserProficiencySignals user={self.user_id} overall={self.overall_score} "
            f"difficulty={self.recommended_difficulty}>"
        )
