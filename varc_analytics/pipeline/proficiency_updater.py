"""
Proficiency updater.

Blends a session's surface statistics into the user's durable proficiency
records. Updates are planned in memory first, then applied one dimension at
a time, each inside its own SAVEPOINT so a failing dimension is skipped
without losing the others.

Every write is a compare-and-swap upsert on ``last_session_id``: it only
lands if the row still carries the value seen while planning. A dimension
that loses the race is re-read and re-planned on top of the winning write;
if it keeps losing, the update raises TransientStoreError so the whole
transaction rolls back and the session can be retried.
"""

from __future__ import annotations

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from varc_analytics.core.dimensions import DimensionType
from varc_analytics.core.errors import TransientStoreError
from varc_analytics.core.scoring import (
    DEFAULT_PROFICIENCY,
    calculate_confidence,
    calculate_new_proficiency,
    calculate_trend,
)
from varc_analytics.db.models import UserMetricProficiency, new_id
from varc_analytics.db.upsert import dialect_insert
from varc_analytics.pipeline.models import (
    ProficiencyDelta,
    ProficiencyRecord,
    ProficiencyUpdateSummary,
    SurfaceStats,
)

RecordKey = tuple[DimensionType, str]

# Re-plan rounds for dimensions that lose a compare-and-swap
MAX_REPLANS = 3


def plan_update(
    session_id: str,
    surface_stats: SurfaceStats,
    existing: dict[RecordKey, ProficiencyRecord],
) -> list[ProficiencyDelta]:
    """
    Compute the new state of every dimension touched by a session.

    Dimensions whose record already carries ``session_id`` as
    ``last_session_id`` are left out, which makes re-applying a session a
    no-op.

    Args:
        session_id: Session being applied
        surface_stats: Session-local statistics
        existing: Current records keyed by (dimension_type, dimension_key)

    Returns:
        One delta per dimension to write, in a stable order
    """
    deltas: list[ProficiencyDelta] = []

    for dimension_type, key, stats in surface_stats.items():
        record = existing.get((dimension_type, key))

        if record is not None and record.last_session_id == session_id:
            continue

        if record is None:
            total_attempts = stats.attempts
            correct_attempts = stats.correct
            old_score = DEFAULT_PROFICIENCY
        else:
            total_attempts = record.total_attempts + stats.attempts
            correct_attempts = record.correct_attempts + stats.correct
            old_score = record.proficiency_score

        confidence = calculate_confidence(total_attempts)
        new_score = calculate_new_proficiency(old_score, stats.score_0_100, confidence)

        deltas.append(
            ProficiencyDelta(
                dimension_type=dimension_type,
                dimension_key=key,
                old_score=old_score,
                new_score=new_score,
                confidence=confidence,
                total_attempts=total_attempts,
                correct_attempts=correct_attempts,
                trend=calculate_trend(old_score, new_score),
                expected_last_session_id=record.last_session_id if record else None,
                is_new=record is None,
            )
        )

    return deltas


async def list_proficiency_records(
    db: AsyncSession,
    user_id: str,
    dimension_type: DimensionType | None = None,
) -> list[ProficiencyRecord]:
    """Read a user's proficiency records, optionally for one dimension type."""
    stmt = select(UserMetricProficiency).where(UserMetricProficiency.user_id == user_id)
    if dimension_type is not None:
        stmt = stmt.where(UserMetricProficiency.dimension_type == dimension_type.value)
    stmt = stmt.order_by(UserMetricProficiency.dimension_type, UserMetricProficiency.dimension_key)

    # Rows may have been rewritten by Core upserts in this same session
    rows = (await db.execute(stmt.execution_options(populate_existing=True))).scalars().all()
    return [ProficiencyRecord.from_row(row) for row in rows]


class ProficiencyUpdater:
    """Apply session statistics to ``user_metric_proficiency``."""

    def __init__(self, db: AsyncSession, max_replans: int = MAX_REPLANS):
        self.db = db
        self.max_replans = max_replans

    async def update(self, user_id: str, session_id: str, surface_stats: SurfaceStats) -> ProficiencyUpdateSummary:
        """
        Load, plan and apply updates for every dimension in ``surface_stats``.

        Dimensions that lose a compare-and-swap are re-read and re-planned
        against the row that won, up to ``max_replans`` times. Must run inside
        the caller's transaction; nothing here commits.

        Raises:
            TransientStoreError: A dimension kept changing underneath us. The
                caller must roll back so the session stays unanalysed.
        """
        summary = ProficiencyUpdateSummary()
        pending: set[str] | None = None

        for round_number in range(self.max_replans + 1):
            records = await list_proficiency_records(self.db, user_id)
            existing = {(r.dimension_type, r.dimension_key): r for r in records}

            deltas = plan_update(session_id, surface_stats, existing)
            if pending is None:
                summary.skipped = surface_stats.dimension_count - len(deltas)
            else:
                # Dimensions written in an earlier round now carry session_id and drop out
                deltas = [d for d in deltas if d.label in pending]

            result = await self.apply(user_id, session_id, deltas)
            summary.updated += result.updated
            summary.created += result.created
            summary.failed += result.failed
            summary.failed_dimensions.extend(result.failed_dimensions)
            summary.conflicts += result.conflicts

            if not result.conflicted_dimensions:
                break

            pending = set(result.conflicted_dimensions)
            logger.info(
                f"Re-planning {len(pending)} conflicted dimension(s) for user {user_id} "
                f"(round {round_number + 1}/{self.max_replans})"
            )
        else:
            raise TransientStoreError(
                f"Proficiency for user {user_id} kept changing concurrently: {', '.join(sorted(pending))}"
            )

        logger.info(
            f"Proficiency update for user {user_id}: {summary.updated} updated, {summary.created} created, "
            f"{summary.skipped} skipped, {summary.conflicts} conflicts resolved, {summary.failed} failed"
        )
        return summary

    async def apply(self, user_id: str, session_id: str, deltas: list[ProficiencyDelta]) -> ProficiencyUpdateSummary:
        """Write planned deltas, one savepoint per dimension."""
        summary = ProficiencyUpdateSummary()

        for delta in deltas:
            label = delta.label
            try:
                async with self.db.begin_nested():
                    applied = await self._upsert(user_id, session_id, delta)
            except SQLAlchemyError as e:
                logger.error(f"Failed to update proficiency {label} for user {user_id}: {e}")
                summary.failed += 1
                summary.failed_dimensions.append(label)
                continue

            if not applied:
                logger.warning(
                    f"Proficiency {label} for user {user_id} changed concurrently "
                    f"(expected last_session_id={delta.expected_last_session_id}), not applied"
                )
                summary.conflicts += 1
                summary.conflicted_dimensions.append(label)
            elif delta.is_new:
                summary.created += 1
            else:
                summary.updated += 1

            logger.debug(f"{label}: {delta.old_score} -> {delta.new_score} ({delta.trend.value})")

        return summary

    async def _upsert(self, user_id: str, session_id: str, delta: ProficiencyDelta) -> bool:
        table = UserMetricProficiency.__table__
        values = {
            "proficiency_score": delta.new_score,
            "confidence_score": delta.confidence,
            "total_attempts": delta.total_attempts,
            "correct_attempts": delta.correct_attempts,
            "last_session_id": session_id,
            "trend": delta.trend.value,
        }
        if delta.speed_vs_accuracy_data is not None:
            values["speed_vs_accuracy_data"] = delta.speed_vs_accuracy_data

        if delta.expected_last_session_id is None:
            unchanged = table.c.last_session_id.is_(None)
        else:
            unchanged = table.c.last_session_id == delta.expected_last_session_id

        stmt = dialect_insert(self.db, UserMetricProficiency).values(
            id=new_id(),
            user_id=user_id,
            dimension_type=delta.dimension_type.value,
            dimension_key=delta.dimension_key,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "dimension_type", "dimension_key"],
            set_={**values, "updated_at": func.now()},
            where=unchanged,
        ).returning(table.c.id)

        result = await self.db.execute(stmt)
        return result.scalar_one_or_none() is not None
