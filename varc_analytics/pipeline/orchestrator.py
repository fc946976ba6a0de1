"""
Analytics orchestrator.

Runs the session pipeline end to end:

    A. load session (read transaction)
    B. surface statistics (pure)
    C. diagnostics (no transaction, deadline-bounded, best-effort)
    D. proficiency update and reading speed  \
    E. signal rollup                          |
    F. user analytics                          > one write transaction
    G. mark analysed                          /

The session is marked analysed in the same transaction as the proficiency
writes, so a crash before commit leaves it unanalysed and safe to retry.
Runs for the same user are serialised in-process by a lock and across
processes by a transaction-scoped advisory lock on PostgreSQL. The
compare-and-swap upserts re-plan any dimension that still loses a race, or
roll the whole transaction back.
"""

from __future__ import annotations

import asyncio
import weakref
from datetime import datetime, timezone

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from varc_analytics.core.errors import AnalyticsError, SessionNotFoundError, TransientStoreError
from varc_analytics.db.database import async_session_scope
from varc_analytics.db.models import PracticeSession
from varc_analytics.pipeline.diagnostics import Annotator, NullAnnotator, run_diagnostics
from varc_analytics.pipeline.models import (
    AnalysisOutcome,
    AnalyticsResult,
    AttemptDiagnosis,
    BatchAnalyticsResult,
    SessionStats,
)
from varc_analytics.pipeline.proficiency_updater import ProficiencyUpdater
from varc_analytics.pipeline.session_loader import COMPLETED_STATUS, SessionLoader
from varc_analytics.pipeline.signal_rollup import rollup_signals
from varc_analytics.pipeline.stats_aggregator import compute_surface_stats
from varc_analytics.pipeline.user_analytics import UserAnalyticsUpdater
from varc_analytics.taxonomy import NodeMetricMap

# Key under practice_sessions.session_data holding this service's output
SESSION_DATA_KEY = "varc_analytics"


class _SessionAlreadyAnalysed(Exception):
    """Another run analysed the session first; roll back and report a no-op."""


class AnalyticsOrchestrator:
    """Sequence the pipeline phases for one session at a time."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        node_metric_map: NodeMetricMap,
        annotator: Annotator | None = None,
        diagnostics_timeout: float = 30.0,
        pending_batch_limit: int = 50,
    ):
        """
        Initialize the orchestrator.

        Args:
            session_factory: Async session factory for the analytics store
            node_metric_map: Node -> metric mapping used for this process
            annotator: Diagnosis backend (NullAnnotator if omitted)
            diagnostics_timeout: Deadline in seconds for the diagnostics phase
            pending_batch_limit: Maximum sessions per pending sweep
        """
        self.session_factory = session_factory
        self.node_metric_map = node_metric_map
        self.annotator = annotator or NullAnnotator()
        self.diagnostics_timeout = diagnostics_timeout
        self.pending_batch_limit = pending_batch_limit
        self._user_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    # ========================================
    # Single session
    # ========================================

    async def analyze_session(self, session_id: str, user_id: str) -> AnalyticsResult:
        """
        Analyse one completed session.

        Returns:
            AnalyticsResult with outcome ``analysed``, ``empty`` or
            ``already_processed``

        Raises:
            SessionNotFoundError: Session missing or owned by another user
            InvalidSessionStateError: Session not completed
            DataIntegrityError: Attempt references a missing question
            TransientStoreError: Store failure; the session stays unanalysed
        """
        lock = self._lock_for(user_id)
        async with lock:
            try:
                return await self._run(session_id, user_id)
            except SQLAlchemyError as e:
                logger.error(f"Store failure while analysing session {session_id}: {e}")
                raise TransientStoreError(f"Store failure while analysing session {session_id}: {e}") from e

    async def _run(self, session_id: str, user_id: str) -> AnalyticsResult:
        logger.info(f"Analysing session {session_id} for user {user_id}")

        # Phase A
        async with async_session_scope(self.session_factory) as db:
            loaded = await SessionLoader(db).load(session_id, user_id)

        if loaded.already_processed:
            return self._already_processed(session_id, user_id)

        if loaded.is_empty:
            try:
                async with async_session_scope(self.session_factory) as db:
                    await self._lock_session_row(db, session_id, user_id)
                    await self._mark_analysed(db, session_id)
            except _SessionAlreadyAnalysed:
                return self._already_processed(session_id, user_id)
            logger.info(f"Session {session_id} has no attempts, marked analysed")
            return AnalyticsResult(
                session_id=session_id,
                user_id=user_id,
                success=True,
                outcome=AnalysisOutcome.EMPTY,
                stats=SessionStats(),
                message="No attempts to analyse",
            )

        # Phase B
        surface_stats = compute_surface_stats(loaded.attempts, self.node_metric_map)
        stats = SessionStats(
            attempts=len(loaded.attempts),
            correct=sum(1 for a in loaded.attempts if a.correct),
            dimensions=surface_stats.summary(),
        )
        logger.info(f"Surface stats for session {session_id}: {stats.dimensions}")

        # Phase C, outside any transaction
        diagnoses = await run_diagnostics(self.annotator, loaded.attempts, self.diagnostics_timeout)
        stats.diagnostics = len(diagnoses)

        # Phases D-G
        try:
            async with async_session_scope(self.session_factory) as db:
                row = await self._lock_session_row(db, session_id, user_id)
                await self._lock_user(db, user_id)
                stats.diagnostics_stored = await self._store_diagnostics(db, row, diagnoses)

                summary = await ProficiencyUpdater(db).update(user_id, session_id, surface_stats)
                stats.dimensions_updated = summary.updated
                stats.dimensions_created = summary.created
                stats.dimensions_skipped = summary.skipped
                stats.dimensions_conflicted = summary.conflicts
                stats.dimensions_failed = summary.failed

                analytics_updater = UserAnalyticsUpdater(db)
                stats.reading_speed_wpm = await analytics_updater.update_reading_speed(user_id, session_id, loaded)

                await rollup_signals(db, user_id)

                analytics = await analytics_updater.update(user_id, session_id, loaded, stats.reading_speed_wpm)
                stats.points_earned = analytics.points_earned
                stats.current_streak = analytics.current_streak

                await self._mark_analysed(db, session_id)
        except _SessionAlreadyAnalysed:
            return self._already_processed(session_id, user_id)

        message = None
        if stats.dimensions_failed:
            message = f"{stats.dimensions_failed} dimension(s) failed to update"

        logger.info(
            f"Session {session_id} analysed: {stats.attempts} attempts, "
            f"{stats.dimensions_updated + stats.dimensions_created} dimensions written"
        )
        return AnalyticsResult(
            session_id=session_id,
            user_id=user_id,
            success=True,
            outcome=AnalysisOutcome.ANALYSED,
            stats=stats,
            message=message,
        )

    def _already_processed(self, session_id: str, user_id: str) -> AnalyticsResult:
        logger.info(f"Session {session_id} already analysed, skipping")
        return AnalyticsResult(
            session_id=session_id,
            user_id=user_id,
            success=True,
            outcome=AnalysisOutcome.ALREADY_PROCESSED,
            message="Session already analysed",
        )

    async def _lock_session_row(self, db: AsyncSession, session_id: str, user_id: str) -> PracticeSession:
        """Re-read the session row under a row lock (ignored on SQLite)."""
        stmt = (
            select(PracticeSession)
            .where(PracticeSession.id == session_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        row = (await db.execute(stmt)).scalar_one_or_none()
        if row is None or row.user_id != user_id:
            raise SessionNotFoundError(session_id, user_id)
        if row.is_analysed:
            raise _SessionAlreadyAnalysed(session_id)
        return row

    async def _lock_user(self, db: AsyncSession, user_id: str) -> None:
        """Serialise write transactions for one user across processes (PostgreSQL only)."""
        if db.get_bind().dialect.name != "postgresql":
            return
        await db.execute(select(func.pg_advisory_xact_lock(func.hashtext(user_id))))

    async def _store_diagnostics(
        self,
        db: AsyncSession,
        row: PracticeSession,
        diagnoses: list[AttemptDiagnosis],
    ) -> bool:
        """Merge diagnostics into the session's metadata. Failure is logged, not raised."""
        if not diagnoses:
            return False

        session_data = dict(row.session_data or {})
        session_data[SESSION_DATA_KEY] = {
            "version": self.node_metric_map.version,
            "analyzed_at": datetime.now(timezone.utc).isoformat(),
            "diagnostics": [d.to_dict() for d in diagnoses],
        }

        try:
            async with db.begin_nested():
                await db.execute(
                    update(PracticeSession)
                    .where(PracticeSession.id == row.id)
                    .values(session_data=session_data)
                    .execution_options(synchronize_session=False)
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to store diagnostics for session {row.id}: {e}")
            return False

        logger.info(f"Stored {len(diagnoses)} diagnostics for session {row.id}")
        return True

    async def _mark_analysed(self, db: AsyncSession, session_id: str) -> None:
        """Flip ``is_analysed`` exactly once."""
        result = await db.execute(
            update(PracticeSession)
            .where(PracticeSession.id == session_id, PracticeSession.is_analysed.is_(False))
            .values(is_analysed=True)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise _SessionAlreadyAnalysed(session_id)

    # ========================================
    # Pending sweep
    # ========================================

    async def find_pending_sessions(self, user_id: str, limit: int | None = None) -> list[str]:
        """Ids of completed, unanalysed sessions for a user, oldest first."""
        stmt = (
            select(PracticeSession.id)
            .where(
                PracticeSession.user_id == user_id,
                PracticeSession.status == COMPLETED_STATUS,
                PracticeSession.is_analysed.is_(False),
            )
            .order_by(
                PracticeSession.completed_at.asc().nulls_last(),
                PracticeSession.created_at,
                PracticeSession.id,
            )
            .limit(limit or self.pending_batch_limit)
        )
        try:
            async with async_session_scope(self.session_factory) as db:
                return list((await db.execute(stmt)).scalars().all())
        except SQLAlchemyError as e:
            raise TransientStoreError(f"Failed to list pending sessions for user {user_id}: {e}") from e

    async def analyze_pending_sessions(self, user_id: str, limit: int | None = None) -> BatchAnalyticsResult:
        """
        Analyse every pending session of a user, oldest first.

        A failing session is logged and recorded in ``errors``; the sweep
        continues with the next one.
        """
        session_ids = await self.find_pending_sessions(user_id, limit)
        batch = BatchAnalyticsResult(user_id=user_id)

        if not session_ids:
            logger.info(f"No pending sessions for user {user_id}")
            return batch

        logger.info(f"Found {len(session_ids)} pending sessions for user {user_id}")

        for session_id in session_ids:
            try:
                batch.results.append(await self.analyze_session(session_id, user_id))
            except AnalyticsError as e:
                logger.error(f"Session {session_id} failed: {type(e).__name__}: {e}")
                batch.errors[session_id] = str(e)

        logger.info(
            f"Pending sweep for user {user_id}: {batch.sessions_analysed} analysed, {len(batch.errors)} failed"
        )
        return batch
