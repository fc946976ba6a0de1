"""
Signal rollup.

Summarises all of a user's proficiency records into one
``user_proficiency_signals`` row used to personalise content. The row is
fully recomputed and overwritten on every run.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from varc_analytics.core.dimensions import Difficulty, DimensionType
from varc_analytics.db.models import UserProficiencySignals, new_id
from varc_analytics.db.upsert import dialect_insert
from varc_analytics.pipeline.models import ProficiencyRecord, ProficiencySignal
from varc_analytics.pipeline.proficiency_updater import list_proficiency_records

# Core metric -> named skill column
SKILL_COLUMNS = {
    "inference_accuracy": "inference_skill",
    "tone_and_intent_sensitivity": "tone_analysis_skill",
    "detail_vs_structure_balance": "main_idea_skill",
    "evidence_evaluation": "detail_comprehension_skill",
}

WEAK_LIST_SIZE = 3
HARD_THRESHOLD = 75
MEDIUM_THRESHOLD = 50


def recommend_difficulty(overall_score: float | None) -> Difficulty | None:
    """hard at 75 and above, medium from 50, easy below; None without data."""
    if overall_score is None:
        return None
    if overall_score >= HARD_THRESHOLD:
        return Difficulty.HARD
    if overall_score >= MEDIUM_THRESHOLD:
        return Difficulty.MEDIUM
    return Difficulty.EASY


def _weakest(records: list[ProficiencyRecord]) -> list[str]:
    ranked = sorted(records, key=lambda r: (r.proficiency_score, r.dimension_key))
    return [r.dimension_key for r in ranked[:WEAK_LIST_SIZE]]


def build_signal(user_id: str, records: Iterable[ProficiencyRecord]) -> ProficiencySignal:
    """
    Build the rollup for one user from their proficiency records.

    Args:
        user_id: User the records belong to
        records: All of the user's proficiency records

    Returns:
        ProficiencySignal (nothing is persisted here)
    """
    records = list(records)
    by_type: dict[DimensionType, list[ProficiencyRecord]] = {t: [] for t in DimensionType}
    for record in records:
        by_type[record.dimension_type].append(record)

    genres = by_type[DimensionType.GENRE]
    core_metrics = by_type[DimensionType.CORE_METRIC]

    signal = ProficiencySignal(
        user_id=user_id,
        genre_strengths={r.dimension_key: r.proficiency_score for r in sorted(genres, key=lambda r: r.dimension_key)},
        weak_topics=_weakest(genres),
        weak_question_types=_weakest(by_type[DimensionType.QUESTION_TYPE]),
        data_points_count=len(records),
    )

    for record in core_metrics:
        column = SKILL_COLUMNS.get(record.dimension_key)
        if column is not None:
            setattr(signal, column, record.proficiency_score)

    if core_metrics:
        signal.overall_score = sum(r.proficiency_score for r in core_metrics) / len(core_metrics)

    difficulty = recommend_difficulty(signal.overall_score)
    signal.recommended_difficulty = difficulty.value if difficulty else None

    return signal


async def get_signal(db: AsyncSession, user_id: str) -> UserProficiencySignals | None:
    """Fetch the stored signal row for a user."""
    stmt = (
        select(UserProficiencySignals)
        .where(UserProficiencySignals.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def rollup_signals(db: AsyncSession, user_id: str) -> ProficiencySignal:
    """
    Recompute and upsert the user's signal row.

    Runs inside the caller's transaction; every column is replaced.
    """
    records = await list_proficiency_records(db, user_id)
    signal = build_signal(user_id, records)

    now = datetime.now(timezone.utc)
    columns = signal.to_columns()
    replace = {k: v for k, v in columns.items() if k != "user_id"}

    stmt = dialect_insert(db, UserProficiencySignals).values(id=new_id(), calculated_at=now, **columns)
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id"],
        set_={**replace, "calculated_at": now, "updated_at": func.now()},
    )
    await db.execute(stmt)

    logger.info(
        f"Signals for user {user_id}: overall={signal.overall_score}, "
        f"difficulty={signal.recommended_difficulty}, {signal.data_points_count} data points"
    )
    return signal
