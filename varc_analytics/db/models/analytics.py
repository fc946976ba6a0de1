"""
User analytics model.

- user_analytics: one row per user with cumulative practice totals, the
  current day's activity, streaks, points and performance maps
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import Boolean, CheckConstraint, Date, DateTime, Float, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONType, new_id


class UserAnalytics(Base):
    """
    Per-user engagement summary, merged with every analysed session.

    ``points_earned_today`` and ``is_active_day`` describe ``last_active_date``;
    every other counter is cumulative.
    """

    __tablename__ = "user_analytics"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)

    minutes_practiced: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    questions_attempted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    questions_correct: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    accuracy_percentage: Mapped[float] = mapped_column(Float, default=0, nullable=False)  # 0-100, 2 decimals

    # Daily activity
    last_active_date: Mapped[date | None] = mapped_column(Date)
    # Most recent day that met the activity threshold; the current streak ends here
    last_streak_date: Mapped[date | None] = mapped_column(Date)
    is_active_day: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    current_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    longest_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    points_earned_today: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Performance maps
    genre_performance: Mapped[dict[str, int] | None] = mapped_column(JSONType)
    question_type_performance: Mapped[dict[str, int] | None] = mapped_column(JSONType)
    difficulty_performance: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    reading_speed_wpm: Mapped[int | None] = mapped_column(Integer)  # latest session

    # Session last merged in; writes are conditional on it
    last_session_id: Mapped[str | None] = mapped_column(String(36))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )

    __table_args__ = (CheckConstraint("current_streak <= longest_streak", name="ck_streak_bounds"),)

    def __repr__(self) -> str:
        return (
            f"<UserAnalytics user={self.user_id} streak={self.current_streak} "
            f"points={self.total_points} last_active={self.last_active_date}>"
        )
