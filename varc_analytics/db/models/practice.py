"""
Practice session models.

These tables are owned by the practice platform. The analytics service only
reads them, except for ``practice_sessions.is_analysed`` and
``practice_sessions.session_data`` which it writes once per session.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONType, new_id


class PracticeSession(Base):
    """A practice-test session taken by one user."""

    __tablename__ = "practice_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    session_type: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(
        Text, default="in_progress"
    )  # 'in_progress', 'paused', 'completed', 'abandoned'
    is_analysed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Free-form session metadata; analytics diagnostics live under "varc_analytics"
    session_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType)

    time_spent_seconds: Mapped[int | None] = mapped_column(Integer)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_practice_sessions_pending", "user_id", "is_analysed", "status"),
    )

    def __repr__(self) -> str:
        return f"<PracticeSession {self.id} user={self.user_id} status={self.status} analysed={self.is_analysed}>"


class Passage(Base):
    """Reading passage. Analytics reads its genre and word count."""

    __tablename__ = "passages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    title: Mapped[str | None] = mapped_column(Text)
    genre: Mapped[str | None] = mapped_column(Text)
    word_count: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())


class Question(Base):
    """Question metadata. ``tags`` holds reasoning node ids."""

    __tablename__ = "questions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    passage_id: Mapped[str | None] = mapped_column(ForeignKey("passages.id", ondelete="SET NULL"))
    question_type: Mapped[str] = mapped_column(Text, nullable=False)
    question_text: Mapped[str | None] = mapped_column(Text)
    options: Mapped[Any | None] = mapped_column(JSONType)
    # Sentence list for para_jumble questions
    jumbled_sentences: Mapped[Any | None] = mapped_column(JSONType)
    correct_answer: Mapped[Any | None] = mapped_column(JSONType)
    difficulty: Mapped[str | None] = mapped_column(Text)
    tags: Mapped[list[str] | None] = mapped_column(JSONType, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())


class QuestionAttempt(Base):
    """One answered question within a session. Immutable once written."""

    __tablename__ = "question_attempts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("practice_sessions.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    # No FK: a dangling question_id must be detectable as a data integrity fault
    question_id: Mapped[str] = mapped_column(String(36), nullable=False)
    passage_id: Mapped[str | None] = mapped_column(String(36))
    user_answer: Mapped[Any | None] = mapped_column(JSONType)
    is_correct: Mapped[bool] = mapped_column(Boolean, nullable=False)
    time_spent_seconds: Mapped[float] = mapped_column(Float, default=0)
    confidence_level: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())

    __table_args__ = (
        Index("idx_question_attempts_session", "session_id", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<QuestionAttempt {self.id} question={self.question_id} correct={self.is_correct}>"
