"""
Integration tests for the analytics pipeline against SQLite.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from varc_analytics.core.dimensions import DimensionType, Trend
from varc_analytics.core.errors import (
    DataIntegrityError,
    InvalidSessionStateError,
    SessionNotFoundError,
    TransientStoreError,
)
from varc_analytics.db.models import PracticeSession, UserMetricProficiency
from varc_analytics.pipeline import orchestrator as orchestrator_module
from varc_analytics.pipeline import proficiency_updater as proficiency_updater_module
from varc_analytics.pipeline.models import AnalysisOutcome, AttemptDiagnosis, ProficiencyDelta
from varc_analytics.pipeline.orchestrator import AnalyticsOrchestrator
from varc_analytics.pipeline.proficiency_updater import ProficiencyUpdater, list_proficiency_records
from varc_analytics.pipeline.signal_rollup import get_signal
from varc_analytics.pipeline.user_analytics import READING_SPEED_KEY, get_user_analytics

USER = "user-0001"
DAY_ONE = datetime(2026, 2, 2, 8, 30, tzinfo=timezone.utc)


class StubAnnotator:
    """Diagnose every attempt it is given with one fixed tag."""

    def __init__(self):
        self.calls = 0

    async def annotate(self, attempts):
        self.calls += 1
        return [AttemptDiagnosis(a.attempt_id, ("scope_shift",), "Answered a narrower question") for a in attempts]


@pytest_asyncio.fixture
async def orchestrator(session_factory, node_metric_map):
    return AnalyticsOrchestrator(session_factory, node_metric_map, diagnostics_timeout=2)


async def _records(session_factory, user_id=USER):
    async with session_factory() as db:
        return {(r.dimension_type, r.dimension_key): r for r in await list_proficiency_records(db, user_id)}


async def _session_row(session_factory, session_id):
    async with session_factory() as db:
        return (await db.execute(select(PracticeSession).where(PracticeSession.id == session_id))).scalar_one()


class TestAnalyzeSession:
    """End-to-end runs of analyze_session."""

    @pytest.mark.asyncio
    async def test_first_session_all_correct(self, orchestrator, seed, session_factory):
        """10 correct fiction attempts on a new user: fiction 50 -> 60, improving."""
        passage_id = await seed.passage("fiction", word_count=1736)
        question_id = await seed.question("rc_question", tags=["n-infer"], passage_id=passage_id)
        session_id = await seed.session(USER, answers=[(question_id, True)] * 10)

        result = await orchestrator.analyze_session(session_id, USER)

        assert result.success is True
        assert result.outcome == AnalysisOutcome.ANALYSED
        assert result.stats.attempts == 10
        assert result.stats.dimensions_failed == 0
        # 1736 passage words + 10 x 12 question words over 495 seconds
        assert result.stats.reading_speed_wpm == 225
        assert result.stats.points_earned == 10
        assert result.stats.current_streak == 1

        records = await _records(session_factory)
        fiction = records[(DimensionType.GENRE, "fiction")]
        assert fiction.proficiency_score == 60
        assert fiction.confidence_score == 1.0
        assert fiction.trend == Trend.IMPROVING
        assert fiction.total_attempts == 10
        assert fiction.correct_attempts == 10
        assert fiction.last_session_id == session_id
        assert (DimensionType.CORE_METRIC, "inference_accuracy") in records
        assert (DimensionType.REASONING_STEP, "n-infer") in records
        assert (DimensionType.QUESTION_TYPE, "rc_question") in records
        reading_speed = records[(DimensionType.CORE_METRIC, READING_SPEED_KEY)]
        assert reading_speed.proficiency_score == 50
        assert reading_speed.total_attempts == 1
        assert [e["wpm"] for e in reading_speed.speed_vs_accuracy_data] == [225]

        row = await _session_row(session_factory, session_id)
        assert row.is_analysed is True

        async with session_factory() as db:
            signal = await get_signal(db, USER)
        assert signal.genre_strengths == {"fiction": 60}
        assert signal.inference_skill == 60
        # inference_accuracy 60, reading_speed_wpm 50
        assert signal.overall_score == 55.0
        assert signal.recommended_difficulty == "medium"
        assert signal.data_points_count == len(records)

        async with session_factory() as db:
            analytics = await get_user_analytics(db, USER)
        assert analytics.questions_attempted == 10
        assert analytics.accuracy_percentage == 100.0
        assert analytics.minutes_practiced == 8
        assert analytics.current_streak == 1
        assert analytics.total_points == 10
        assert analytics.genre_performance == {"fiction": 60}
        assert analytics.reading_speed_wpm == 225
        assert analytics.last_session_id == session_id

    @pytest.mark.asyncio
    async def test_second_session_declines(self, orchestrator, seed, session_factory):
        """Old 60 with 9 attempts, one miss: 60 -> 48, declining, total 10."""
        passage_id = await seed.passage("fiction")
        question_id = await seed.question(passage_id=passage_id)

        async with session_factory() as db:
            db.add(
                UserMetricProficiency(
                    user_id=USER,
                    dimension_type="genre",
                    dimension_key="fiction",
                    proficiency_score=60,
                    confidence_score=1.0,
                    total_attempts=9,
                    correct_attempts=7,
                    last_session_id="earlier-session",
                    trend="stagnant",
                )
            )
            await db.commit()

        session_id = await seed.session(USER, answers=[(question_id, False)])
        result = await orchestrator.analyze_session(session_id, USER)

        fiction = (await _records(session_factory))[(DimensionType.GENRE, "fiction")]
        assert result.stats.dimensions_updated >= 1
        assert fiction.proficiency_score == 48
        assert fiction.trend == Trend.DECLINING
        assert fiction.total_attempts == 10
        assert fiction.correct_attempts == 7

    @pytest.mark.asyncio
    async def test_empty_session_marked_analysed(self, orchestrator, seed, session_factory):
        session_id = await seed.session(USER, answers=[])

        result = await orchestrator.analyze_session(session_id, USER)

        assert result.outcome == AnalysisOutcome.EMPTY
        assert (await _session_row(session_factory, session_id)).is_analysed is True
        assert await _records(session_factory) == {}
        async with session_factory() as db:
            assert await get_user_analytics(db, USER) is None

    @pytest.mark.asyncio
    async def test_reinvocation_is_noop(self, orchestrator, seed, session_factory):
        question_id = await seed.question(tags=["n-shared"], passage_id=await seed.passage("science"))
        session_id = await seed.session(USER, answers=[(question_id, True), (question_id, False)])

        await orchestrator.analyze_session(session_id, USER)
        before = await _records(session_factory)

        result = await orchestrator.analyze_session(session_id, USER)

        assert result.success is True
        assert result.outcome == AnalysisOutcome.ALREADY_PROCESSED
        after = await _records(session_factory)
        assert {k: (r.proficiency_score, r.total_attempts) for k, r in after.items()} == {
            k: (r.proficiency_score, r.total_attempts) for k, r in before.items()
        }

    @pytest.mark.asyncio
    async def test_concurrent_runs_same_session(self, orchestrator, seed, session_factory):
        question_id = await seed.question(passage_id=await seed.passage("history"))
        session_id = await seed.session(USER, answers=[(question_id, True)] * 3)

        results = await asyncio.gather(
            orchestrator.analyze_session(session_id, USER),
            orchestrator.analyze_session(session_id, USER),
        )

        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes == ["already_processed", "analysed"]
        history = (await _records(session_factory))[(DimensionType.GENRE, "history")]
        assert history.total_attempts == 3

    @pytest.mark.asyncio
    async def test_concurrent_runs_different_sessions(self, orchestrator, seed, session_factory):
        """Two sessions of one user analysed concurrently end up applied one after the other."""
        question_id = await seed.question(passage_id=await seed.passage("fiction"))
        first = await seed.session(USER, answers=[(question_id, True)] * 5)
        second = await seed.session(USER, answers=[(question_id, False)] * 5)

        results = await asyncio.gather(
            orchestrator.analyze_session(first, USER),
            orchestrator.analyze_session(second, USER),
        )

        assert [r.outcome for r in results] == [AnalysisOutcome.ANALYSED, AnalysisOutcome.ANALYSED]
        fiction = (await _records(session_factory))[(DimensionType.GENRE, "fiction")]
        assert fiction.total_attempts == 10
        assert fiction.correct_attempts == 5
        # first then second: 50 -> 57 -> 46; second then first: 50 -> 43 -> 54
        expected = 46 if fiction.last_session_id == second else 54
        assert fiction.proficiency_score == expected

        async with session_factory() as db:
            analytics = await get_user_analytics(db, USER)
        assert analytics.questions_attempted == 10
        assert analytics.questions_correct == 5
        assert analytics.last_session_id == fiction.last_session_id


class TestAnalyzeSessionErrors:
    """Fatal errors leave the session unanalysed."""

    @pytest.mark.asyncio
    async def test_missing_session(self, orchestrator):
        with pytest.raises(SessionNotFoundError):
            await orchestrator.analyze_session("no-such-session", USER)

    @pytest.mark.asyncio
    async def test_other_users_session(self, orchestrator, seed):
        session_id = await seed.session("someone-else", answers=[])

        with pytest.raises(SessionNotFoundError):
            await orchestrator.analyze_session(session_id, USER)

    @pytest.mark.asyncio
    async def test_session_not_completed(self, orchestrator, seed, session_factory):
        question_id = await seed.question()
        session_id = await seed.session(USER, status="in_progress", answers=[(question_id, True)])

        with pytest.raises(InvalidSessionStateError):
            await orchestrator.analyze_session(session_id, USER)
        assert (await _session_row(session_factory, session_id)).is_analysed is False

    @pytest.mark.asyncio
    async def test_missing_question(self, orchestrator, seed, session_factory):
        question_id = await seed.question()
        session_id = await seed.session(USER, answers=[(question_id, True), ("deleted-question", False)])

        with pytest.raises(DataIntegrityError) as exc_info:
            await orchestrator.analyze_session(session_id, USER)

        assert exc_info.value.question_id == "deleted-question"
        assert (await _session_row(session_factory, session_id)).is_analysed is False
        assert await _records(session_factory) == {}

    @pytest.mark.asyncio
    async def test_store_failure_is_transient(self, orchestrator, seed, session_factory, monkeypatch):
        question_id = await seed.question(passage_id=await seed.passage("fiction"))
        session_id = await seed.session(USER, answers=[(question_id, True)])

        async def failing_rollup(db, user_id):
            raise OperationalError("UPSERT user_proficiency_signals", {}, Exception("database is locked"))

        monkeypatch.setattr(orchestrator_module, "rollup_signals", failing_rollup)

        with pytest.raises(TransientStoreError):
            await orchestrator.analyze_session(session_id, USER)

        # Whole write transaction rolled back; safe to retry
        assert (await _session_row(session_factory, session_id)).is_analysed is False
        assert await _records(session_factory) == {}


class TestPartialFailures:
    """Per-dimension failures and lost races."""

    @pytest.mark.asyncio
    async def test_failing_dimension_skipped(self, orchestrator, seed, session_factory, monkeypatch):
        question_id = await seed.question(tags=["n-tone"], passage_id=await seed.passage("fiction"))
        session_id = await seed.session(USER, answers=[(question_id, True), (question_id, False)])

        original_upsert = ProficiencyUpdater._upsert

        async def flaky_upsert(self, user_id, session_id, delta):
            if delta.dimension_key == "fiction":
                raise OperationalError("INSERT user_metric_proficiency", {}, Exception("constraint failed"))
            return await original_upsert(self, user_id, session_id, delta)

        monkeypatch.setattr(ProficiencyUpdater, "_upsert", flaky_upsert)

        result = await orchestrator.analyze_session(session_id, USER)

        assert result.success is True
        assert result.stats.dimensions_failed == 1
        assert "1 dimension(s) failed" in result.message
        records = await _records(session_factory)
        assert (DimensionType.GENRE, "fiction") not in records
        assert (DimensionType.CORE_METRIC, "tone_and_intent_sensitivity") in records
        assert (await _session_row(session_factory, session_id)).is_analysed is True

    @pytest.mark.asyncio
    async def test_compare_and_swap_conflict(self, session_factory):
        async with session_factory() as db:
            db.add(
                UserMetricProficiency(
                    user_id=USER,
                    dimension_type="genre",
                    dimension_key="poetry",
                    proficiency_score=70,
                    confidence_score=1.0,
                    total_attempts=12,
                    correct_attempts=9,
                    last_session_id="session-b",
                )
            )
            await db.commit()

        stale = ProficiencyDelta(
            dimension_type=DimensionType.GENRE,
            dimension_key="poetry",
            old_score=70,
            new_score=10,
            confidence=1.0,
            total_attempts=13,
            correct_attempts=9,
            trend=Trend.DECLINING,
            expected_last_session_id="session-a",
            is_new=False,
        )

        async with session_factory() as db:
            summary = await ProficiencyUpdater(db).apply(USER, "session-c", [stale])
            await db.commit()

        assert summary.conflicts == 1
        assert summary.updated == 0
        poetry = (await _records(session_factory))[(DimensionType.GENRE, "poetry")]
        assert poetry.proficiency_score == 70
        assert poetry.last_session_id == "session-b"

    @pytest.mark.asyncio
    async def test_lost_race_is_replanned(self, session_factory, node_metric_map, seed, monkeypatch):
        """B plans from a read taken before A committed; its losing writes are re-planned on top of A."""
        question_id = await seed.question(passage_id=await seed.passage("fiction"))
        first = await seed.session(USER, answers=[(question_id, True)] * 5)
        second = await seed.session(USER, answers=[(question_id, False)] * 5)

        async with session_factory() as db:
            snapshot = await list_proficiency_records(db, USER)

        await AnalyticsOrchestrator(session_factory, node_metric_map).analyze_session(first, USER)

        reads = {"n": 0}

        async def stale_once(db, user_id, dimension_type=None):
            reads["n"] += 1
            if reads["n"] == 1:
                return snapshot
            return await list_proficiency_records(db, user_id, dimension_type)

        monkeypatch.setattr(proficiency_updater_module, "list_proficiency_records", stale_once)

        result = await AnalyticsOrchestrator(session_factory, node_metric_map).analyze_session(second, USER)

        assert result.outcome == AnalysisOutcome.ANALYSED
        assert result.stats.dimensions_conflicted >= 1
        assert (await _session_row(session_factory, second)).is_analysed is True
        fiction = (await _records(session_factory))[(DimensionType.GENRE, "fiction")]
        # 50 -> 57 after the first session, 57 -> 46 after the second
        assert fiction.total_attempts == 10
        assert fiction.correct_attempts == 5
        assert fiction.proficiency_score == 46
        assert fiction.last_session_id == second

    @pytest.mark.asyncio
    async def test_persistent_conflict_leaves_session_unanalysed(
        self, session_factory, node_metric_map, seed, monkeypatch
    ):
        question_id = await seed.question(passage_id=await seed.passage("fiction"))
        first = await seed.session(USER, answers=[(question_id, True)] * 5)
        second = await seed.session(USER, answers=[(question_id, False)] * 5)

        orchestrator = AnalyticsOrchestrator(session_factory, node_metric_map)
        await orchestrator.analyze_session(first, USER)

        async def always_stale(db, user_id, dimension_type=None):
            return []

        monkeypatch.setattr(proficiency_updater_module, "list_proficiency_records", always_stale)

        with pytest.raises(TransientStoreError):
            await orchestrator.analyze_session(second, USER)

        assert (await _session_row(session_factory, second)).is_analysed is False
        fiction = (await _records(session_factory))[(DimensionType.GENRE, "fiction")]
        assert fiction.total_attempts == 5
        assert fiction.last_session_id == first
        async with session_factory() as db:
            assert (await get_user_analytics(db, USER)).last_session_id == first

        # Retried once the store settles, the session's evidence lands
        monkeypatch.setattr(proficiency_updater_module, "list_proficiency_records", list_proficiency_records)
        result = await orchestrator.analyze_session(second, USER)

        assert result.outcome == AnalysisOutcome.ANALYSED
        fiction = (await _records(session_factory))[(DimensionType.GENRE, "fiction")]
        assert fiction.total_attempts == 10
        assert fiction.proficiency_score == 46


class TestDiagnostics:
    """Diagnostics are stored in session metadata, never in proficiency."""

    @pytest.mark.asyncio
    async def test_diagnostics_persisted(self, session_factory, node_metric_map, seed):
        annotator = StubAnnotator()
        orchestrator = AnalyticsOrchestrator(session_factory, node_metric_map, annotator=annotator)
        question_id = await seed.question(passage_id=await seed.passage("fiction"))
        session_id = await seed.session(
            USER,
            answers=[(question_id, True), (question_id, False)],
            session_data={"source": "mock_test"},
        )

        result = await orchestrator.analyze_session(session_id, USER)

        assert result.stats.diagnostics == 1
        assert result.stats.diagnostics_stored is True
        row = await _session_row(session_factory, session_id)
        assert row.session_data["source"] == "mock_test"
        stored = row.session_data["varc_analytics"]
        assert stored["version"] == "test"
        assert stored["analyzed_at"]
        assert stored["diagnostics"][0]["failure_tags"] == ["scope_shift"]

    @pytest.mark.asyncio
    async def test_no_incorrect_attempts_no_diagnostics(self, session_factory, node_metric_map, seed):
        annotator = StubAnnotator()
        orchestrator = AnalyticsOrchestrator(session_factory, node_metric_map, annotator=annotator)
        question_id = await seed.question()
        session_id = await seed.session(USER, answers=[(question_id, True)])

        result = await orchestrator.analyze_session(session_id, USER)

        assert annotator.calls == 0
        assert result.stats.diagnostics_stored is False
        assert (await _session_row(session_factory, session_id)).session_data is None


class TestPendingSweep:
    """Tests for analyze_pending_sessions."""

    @pytest.mark.asyncio
    async def test_sweeps_oldest_first(self, orchestrator, seed, session_factory):
        question_id = await seed.question(passage_id=await seed.passage("fiction"))
        first = await seed.session(USER, answers=[(question_id, True)])
        second = await seed.session(USER, answers=[(question_id, False)])
        await seed.session(USER, status="in_progress", answers=[(question_id, True)])
        await seed.session(USER, is_analysed=True, answers=[(question_id, True)])
        await seed.session("someone-else", answers=[(question_id, True)])

        batch = await orchestrator.analyze_pending_sessions(USER)

        assert batch.success is True
        assert [r.session_id for r in batch.results] == [first, second]
        assert batch.sessions_analysed == 2
        fiction = (await _records(session_factory))[(DimensionType.GENRE, "fiction")]
        assert fiction.total_attempts == 2
        assert fiction.last_session_id == second

    @pytest.mark.asyncio
    async def test_continues_past_failures(self, orchestrator, seed, session_factory):
        question_id = await seed.question()
        broken = await seed.session(USER, answers=[("deleted-question", True)])
        good = await seed.session(USER, answers=[(question_id, True)])

        batch = await orchestrator.analyze_pending_sessions(USER)

        assert batch.success is False
        assert list(batch.errors) == [broken]
        assert [r.session_id for r in batch.results] == [good]
        assert (await _session_row(session_factory, good)).is_analysed is True
        assert (await _session_row(session_factory, broken)).is_analysed is False

    @pytest.mark.asyncio
    async def test_respects_limit(self, orchestrator, seed):
        question_id = await seed.question()
        for _ in range(3):
            await seed.session(USER, answers=[(question_id, True)])

        batch = await orchestrator.analyze_pending_sessions(USER, limit=2)

        assert batch.sessions_found == 2


class TestUserAnalytics:
    """Daily merge, streaks and points across sessions."""

    @pytest.mark.asyncio
    async def test_streak_builds_across_days(self, orchestrator, seed, session_factory):
        question_id = await seed.question(difficulty="medium")
        day_two = DAY_ONE + timedelta(days=1)

        first = await seed.session(
            USER, answers=[(question_id, True)] * 3, time_spent_seconds=400, completed_at=DAY_ONE
        )
        result = await orchestrator.analyze_session(first, USER)
        assert result.stats.current_streak == 1
        assert result.stats.points_earned == 3

        # 200 seconds alone does not make day two active; the streak is not broken yet
        second = await seed.session(
            USER, answers=[(question_id, True)] * 2, time_spent_seconds=200, completed_at=day_two
        )
        await orchestrator.analyze_session(second, USER)
        async with session_factory() as db:
            analytics = await get_user_analytics(db, USER)
        assert analytics.is_active_day is False
        assert analytics.current_streak == 1
        assert analytics.points_earned_today == 2

        third = await seed.session(
            USER,
            answers=[(question_id, True)] * 2,
            time_spent_seconds=200,
            completed_at=day_two + timedelta(hours=1),
        )
        result = await orchestrator.analyze_session(third, USER)

        async with session_factory() as db:
            analytics = await get_user_analytics(db, USER)
        assert analytics.is_active_day is True
        assert analytics.current_streak == 2
        assert analytics.longest_streak == 2
        # 2 correct x 1.1 streak bonus, floored
        assert result.stats.points_earned == 2
        assert analytics.points_earned_today == 4
        assert analytics.total_points == 7
        # 7 + 3 + 3 minutes
        assert analytics.minutes_practiced == 13
        assert analytics.questions_attempted == 7
        assert analytics.questions_correct == 7
        assert analytics.accuracy_percentage == 100.0
        assert analytics.last_active_date == day_two.date()
        assert analytics.difficulty_performance == {"medium": {"attempted": 7, "correct": 7, "accuracy": 100.0}}

    @pytest.mark.asyncio
    async def test_missed_day_resets_streak(self, orchestrator, seed, session_factory):
        question_id = await seed.question()

        for offset in (0, 1, 3):
            session_id = await seed.session(
                USER,
                answers=[(question_id, True)],
                time_spent_seconds=600,
                completed_at=DAY_ONE + timedelta(days=offset),
            )
            await orchestrator.analyze_session(session_id, USER)

        async with session_factory() as db:
            analytics = await get_user_analytics(db, USER)
        assert analytics.current_streak == 1
        assert analytics.longest_streak == 2
        assert analytics.last_streak_date == (DAY_ONE + timedelta(days=3)).date()

    @pytest.mark.asyncio
    async def test_reading_speed_blends_across_sessions(self, orchestrator, seed, session_factory):
        """Second measurement moves the score 30% of the way to the new reading."""
        fast = await seed.passage("science", word_count=3450)
        slow = await seed.passage("history", word_count=0)
        fast_question = await seed.question(passage_id=fast)
        slow_question = await seed.question(passage_id=slow)

        # 3450 + 12 words over 45 seconds: clamped to 400 wpm, score 100
        first = await seed.session(USER, answers=[(fast_question, True, fast)])
        # 12 words over 45 seconds: clamped to 50 wpm, score 0
        second = await seed.session(USER, answers=[(slow_question, True, slow)])

        assert (await orchestrator.analyze_session(first, USER)).stats.reading_speed_wpm == 400
        assert (await orchestrator.analyze_session(second, USER)).stats.reading_speed_wpm == 50

        reading_speed = (await _records(session_factory))[(DimensionType.CORE_METRIC, READING_SPEED_KEY)]
        assert reading_speed.proficiency_score == 70
        assert reading_speed.total_attempts == 2
        assert reading_speed.trend == Trend.DECLINING
        assert reading_speed.last_session_id == second
        async with session_factory() as db:
            assert (await get_user_analytics(db, USER)).reading_speed_wpm == 50
