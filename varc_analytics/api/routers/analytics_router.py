"""
Analytics API Router.

Endpoints for the session analytics pipeline:
- Analyse one completed session
- Sweep a user's pending sessions
- Read proficiency records, the personalisation signal and practice activity
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from varc_analytics.core.dimensions import DimensionType
from varc_analytics.core.errors import (
    AnalyticsError,
    DataIntegrityError,
    InvalidSessionStateError,
    SessionNotFoundError,
    TransientStoreError,
)
from varc_analytics.db.database import get_async_session
from varc_analytics.pipeline.orchestrator import AnalyticsOrchestrator
from varc_analytics.pipeline.proficiency_updater import list_proficiency_records
from varc_analytics.pipeline.signal_rollup import get_signal
from varc_analytics.pipeline.user_analytics import get_user_analytics

router = APIRouter()


# ========================================
# Request/Response Models
# ========================================


class AnalyzeSessionRequest(BaseModel):
    """Request model for analysing a session."""

    user_id: str = Field(..., min_length=1, description="Owner of the session")


class AnalyzeSessionResponse(BaseModel):
    """Response model for a session analysis."""

    session_id: str
    user_id: str
    success: bool
    outcome: str
    stats: dict[str, Any] | None = None
    message: str | None = None


class PendingSweepResponse(BaseModel):
    """Response model for a pending-session sweep."""

    user_id: str
    success: bool
    sessions_found: int
    sessions_analysed: int
    results: list[AnalyzeSessionResponse]
    errors: dict[str, str]


class ProficiencyRecordResponse(BaseModel):
    """Response model for one proficiency record."""

    dimension_type: str
    dimension_key: str
    proficiency_score: int
    confidence_score: float
    total_attempts: int
    correct_attempts: int
    trend: str | None
    last_session_id: str | None
    updated_at: datetime | None


class SignalResponse(BaseModel):
    """Response model for a user's proficiency signal."""

    user_id: str
    genre_strengths: dict[str, int]
    inference_skill: int | None
    tone_analysis_skill: int | None
    main_idea_skill: int | None
    detail_comprehension_skill: int | None
    overall_score: float | None
    recommended_difficulty: str | None
    weak_topics: list[str]
    weak_question_types: list[str]
    data_points_count: int
    calculated_at: datetime | None


class ActivityResponse(BaseModel):
    """Response model for a user's practice activity."""

    user_id: str
    last_active_date: date | None
    is_active_day: bool
    current_streak: int
    longest_streak: int
    points_earned_today: int
    total_points: int
    minutes_practiced: int
    questions_attempted: int
    questions_correct: int
    accuracy_percentage: float
    reading_speed_wpm: int | None
    genre_performance: dict[str, int]
    question_type_performance: dict[str, int]
    difficulty_performance: dict[str, dict[str, Any]]


# ========================================
# Dependencies
# ========================================


def get_orchestrator(request: Request) -> AnalyticsOrchestrator:
    """Orchestrator built once by the application lifespan."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Analytics orchestrator not initialised")
    return orchestrator


_STATUS_BY_ERROR: list[tuple[type[AnalyticsError], int]] = [
    (SessionNotFoundError, 404),
    (InvalidSessionStateError, 409),
    (DataIntegrityError, 500),
    (TransientStoreError, 503),
]


def _to_http_error(exc: AnalyticsError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


# ========================================
# Analysis Endpoints
# ========================================


@router.post(
    "/sessions/{session_id}/analyze",
    response_model=AnalyzeSessionResponse,
    summary="Analyse a completed session",
)
async def analyze_session(
    session_id: str,
    request: AnalyzeSessionRequest,
    orchestrator: AnalyticsOrchestrator = Depends(get_orchestrator),
) -> AnalyzeSessionResponse:
    """
    Run the analytics pipeline for one completed session.

    Re-invoking on an analysed session is a no-op with outcome
    ``already_processed``.
    """
    try:
        result = await orchestrator.analyze_session(session_id, request.user_id)
    except AnalyticsError as exc:
        logger.warning(f"Analysis of session {session_id} failed: {type(exc).__name__}: {exc}")
        raise _to_http_error(exc)

    return AnalyzeSessionResponse(**result.to_dict())


@router.post(
    "/users/{user_id}/analyze-pending",
    response_model=PendingSweepResponse,
    summary="Analyse all pending sessions of a user",
)
async def analyze_pending(
    user_id: str,
    limit: int | None = Query(None, ge=1, le=500, description="Maximum sessions to process"),
    orchestrator: AnalyticsOrchestrator = Depends(get_orchestrator),
) -> PendingSweepResponse:
    """Analyse every completed, unanalysed session of a user, oldest first."""
    try:
        batch = await orchestrator.analyze_pending_sessions(user_id, limit=limit)
    except AnalyticsError as exc:
        logger.warning(f"Pending sweep for user {user_id} failed: {exc}")
        raise _to_http_error(exc)

    return PendingSweepResponse(**batch.to_dict())


# ========================================
# Read Endpoints
# ========================================


@router.get(
    "/users/{user_id}/proficiency",
    response_model=list[ProficiencyRecordResponse],
    summary="List proficiency records",
)
async def get_proficiency(
    user_id: str,
    dimension_type: DimensionType | None = Query(None, description="Filter by dimension type"),
    db: AsyncSession = Depends(get_async_session),
) -> list[ProficiencyRecordResponse]:
    """Get a user's proficiency records, optionally for one dimension type."""
    records = await list_proficiency_records(db, user_id, dimension_type)
    return [
        ProficiencyRecordResponse(
            dimension_type=r.dimension_type.value,
            dimension_key=r.dimension_key,
            proficiency_score=r.proficiency_score,
            confidence_score=r.confidence_score,
            total_attempts=r.total_attempts,
            correct_attempts=r.correct_attempts,
            trend=r.trend.value if r.trend else None,
            last_session_id=r.last_session_id,
            updated_at=r.updated_at,
        )
        for r in records
    ]


@router.get(
    "/users/{user_id}/signals",
    response_model=SignalResponse,
    summary="Get proficiency signal",
)
async def get_signals(
    user_id: str,
    db: AsyncSession = Depends(get_async_session),
) -> SignalResponse:
    """Get the personalisation signal computed by the last analysis run."""
    row = await get_signal(db, user_id)
    if row is None:
        raise HTTPException(status_code=404, detail=f"No signals for user {user_id}")

    return SignalResponse(
        user_id=row.user_id,
        genre_strengths=row.genre_strengths or {},
        inference_skill=row.inference_skill,
        tone_analysis_skill=row.tone_analysis_skill,
        main_idea_skill=row.main_idea_skill,
        detail_comprehension_skill=row.detail_comprehension_skill,
        overall_score=row.overall_score,
        recommended_difficulty=row.recommended_difficulty,
        weak_topics=row.weak_topics or [],
        weak_question_types=row.weak_question_types or [],
        data_points_count=row.data_points_count or 0,
        calculated_at=row.calculated_at,
    )


@router.get(
    "/users/{user_id}/activity",
    response_model=ActivityResponse,
    summary="Get practice activity",
)
async def get_activity(
    user_id: str,
    db: AsyncSession = Depends(get_async_session),
) -> ActivityResponse:
    """Get practice totals, streaks, points and performance maps."""
    row = await get_user_analytics(db, user_id)
    if row is None:
        raise HTTPException(status_code=404, detail=f"No activity for user {user_id}")

    return ActivityResponse(
        user_id=row.user_id,
        last_active_date=row.last_active_date,
        is_active_day=row.is_active_day,
        current_streak=row.current_streak,
        longest_streak=row.longest_streak,
        points_earned_today=row.points_earned_today,
        total_points=row.total_points,
        minutes_practiced=row.minutes_practiced,
        questions_attempted=row.questions_attempted,
        questions_correct=row.questions_correct,
        accuracy_percentage=row.accuracy_percentage,
        reading_speed_wpm=row.reading_speed_wpm,
        genre_performance=row.genre_performance or {},
        question_type_performance=row.question_type_performance or {},
        difficulty_performance=row.difficulty_performance or {},
    )
