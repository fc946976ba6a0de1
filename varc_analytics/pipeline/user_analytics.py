"""
User analytics.

Merges an analysed session into the user's engagement summary
(``user_analytics``) and measures reading speed:

- reading speed: words read (passages, question stems, options, jumbled
  sentences) over time spent, clamped to [50, 400] wpm, stored as the
  ``reading_speed_wpm`` core metric with a per-day speed/accuracy history
- daily merge: cumulative minutes, attempts, correct answers and weighted
  accuracy; points for the day reset when the day changes
- streaks: a day counts once the user practised at least five minutes that
  day; consecutive counting days extend the streak
- performance maps: current genre and question type proficiency plus
  cumulative accuracy per question difficulty

Everything runs inside the orchestrator's write transaction.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Sequence
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from varc_analytics.core.dimensions import DimensionType
from varc_analytics.core.errors import TransientStoreError
from varc_analytics.core.scoring import SCORE_MAX, SCORE_MIN, calculate_trend, round_half_up
from varc_analytics.db.models import Passage, PracticeSession, UserAnalytics, new_id
from varc_analytics.db.upsert import dialect_insert
from varc_analytics.pipeline.models import (
    Attempt,
    ProficiencyDelta,
    ProficiencyRecord,
    SessionLoadResult,
    UserAnalyticsUpdate,
)
from varc_analytics.pipeline.proficiency_updater import ProficiencyUpdater, list_proficiency_records
from varc_analytics.pipeline.session_loader import COMPLETED_STATUS

# Reading speed
READING_SPEED_KEY = "reading_speed_wpm"
WPM_FLOOR = 50
WPM_CEILING = 400
READING_SPEED_ALPHA = 0.3
READING_SPEED_CONFIDENCE = 0.8
SPEED_HISTORY_DAYS = 60

# Streaks and points
MINIMUM_ACTIVE_SECONDS = 300
STREAK_BONUSES = ((30, 1.50), (10, 1.25), (2, 1.10))

_TAG_RE = re.compile(r"<[^>]*>")
_MAX_NESTING = 6


# ========================================
# Reading speed
# ========================================


def count_words(text: str) -> int:
    """Count whitespace separated words, ignoring HTML tags."""
    return len(_TAG_RE.sub(" ", text).split())


def _collect_strings(value: Any, depth: int = 0) -> list[str]:
    if value is None or isinstance(value, (bool, int, float)):
        return []
    if isinstance(value, str):
        return [value]
    if depth >= _MAX_NESTING:
        return []
    if isinstance(value, dict):
        value = value.values()
    if isinstance(value, Iterable):
        return [s for item in value for s in _collect_strings(item, depth + 1)]
    return []


def count_words_in(value: Any) -> int:
    """Count words in every string nested inside lists and dicts."""
    return sum(count_words(part) for part in _collect_strings(value))


def calculate_reading_speed_wpm(attempts: Sequence[Attempt], passage_word_counts: dict[str, int]) -> int | None:
    """
    Estimate reading speed for a session.

    Each distinct passage is counted once; question stems, options and
    jumbled sentences are counted per attempt.

    Args:
        attempts: Session attempts
        passage_word_counts: ``passage_id -> word_count``

    Returns:
        Words per minute clamped to [WPM_FLOOR, WPM_CEILING], or None when
        there is no time or no text to measure
    """
    total_seconds = sum(a.time_spent_seconds for a in attempts)
    if total_seconds <= 0:
        return None

    passage_ids = {a.passage_id for a in attempts if a.passage_id}
    words = sum(passage_word_counts.get(pid, 0) for pid in passage_ids)

    for attempt in attempts:
        if attempt.question_text:
            words += count_words(attempt.question_text)
        words += count_words_in(attempt.options)
        words += count_words_in(attempt.jumbled_sentences)

    if words == 0:
        return None

    wpm = round_half_up(words / (total_seconds / 60))
    return max(WPM_FLOOR, min(WPM_CEILING, wpm))


def normalise_reading_speed(wpm: int) -> int:
    """Map WPM_FLOOR..WPM_CEILING onto a 0-100 score."""
    score = round_half_up((wpm - WPM_FLOOR) / (WPM_CEILING - WPM_FLOOR) * 100)
    return max(SCORE_MIN, min(SCORE_MAX, score))


def _round2(value: float) -> float:
    return round_half_up(value * 100) / 100


def merge_speed_history(
    history: Iterable[dict[str, Any]],
    day: date,
    wpm: int,
    accuracy: float,
) -> list[dict[str, Any]]:
    """
    Fold one session into the per-day speed/accuracy history.

    Entries are session-weighted daily averages, sorted by date and capped at
    the most recent SPEED_HISTORY_DAYS days.
    """
    totals: dict[str, list[float]] = {}
    for entry in history:
        count = entry.get("sessions_count", 1)
        bucket = totals.setdefault(entry["date"], [0.0, 0.0, 0])
        bucket[0] += entry["wpm"] * count
        bucket[1] += entry["accuracy"] * count
        bucket[2] += count

    bucket = totals.setdefault(day.isoformat(), [0.0, 0.0, 0])
    bucket[0] += wpm
    bucket[1] += accuracy
    bucket[2] += 1

    merged = [
        {
            "date": key,
            "wpm": round_half_up(total_wpm / count),
            "accuracy": _round2(total_accuracy / count),
            "sessions_count": count,
        }
        for key, (total_wpm, total_accuracy, count) in sorted(totals.items())
    ]
    return merged[-SPEED_HISTORY_DAYS:]


def plan_reading_speed(
    session_id: str,
    wpm: int,
    accuracy: float,
    day: date,
    record: ProficiencyRecord | None,
) -> ProficiencyDelta | None:
    """
    Plan the ``reading_speed_wpm`` core metric write for a session.

    The first measurement is taken as is; later ones are blended in with
    READING_SPEED_ALPHA. ``total_attempts`` counts measured sessions.

    Returns:
        The delta, or None when this session was already applied
    """
    if record is not None and record.last_session_id == session_id:
        return None

    normalised = normalise_reading_speed(wpm)
    if record is None:
        old_score = normalised
        new_score = normalised
    else:
        old_score = record.proficiency_score
        new_score = round_half_up(old_score * (1 - READING_SPEED_ALPHA) + normalised * READING_SPEED_ALPHA)

    return ProficiencyDelta(
        dimension_type=DimensionType.CORE_METRIC,
        dimension_key=READING_SPEED_KEY,
        old_score=old_score,
        new_score=new_score,
        confidence=READING_SPEED_CONFIDENCE,
        total_attempts=(record.total_attempts if record else 0) + 1,
        correct_attempts=record.correct_attempts if record else 0,
        trend=calculate_trend(old_score, new_score),
        expected_last_session_id=record.last_session_id if record else None,
        is_new=record is None,
        speed_vs_accuracy_data=merge_speed_history(
            record.speed_vs_accuracy_data if record else (), day, wpm, accuracy
        ),
    )


# ========================================
# Daily merge, streaks and points
# ========================================


def streak_bonus_multiplier(current_streak: int) -> float:
    """Points multiplier for the streak the session extends."""
    for minimum, multiplier in STREAK_BONUSES:
        if current_streak >= minimum:
            return multiplier
    return 1.0


def calculate_streaks(
    previous: UserAnalytics | None,
    day: date,
    is_active_day: bool,
) -> tuple[int, int, date | None]:
    """
    Work out the streak after a session on ``day``.

    Returns:
        ``(current_streak, longest_streak, last_streak_date)``
    """
    if previous is None:
        if is_active_day:
            return 1, 1, day
        return 0, 0, None

    current = previous.current_streak or 0
    longest = previous.longest_streak or 0
    last_streak = previous.last_streak_date

    if last_streak is not None and day < last_streak:
        # Late session for a day before the streak's end; it cannot move it
        return current, longest, last_streak

    if is_active_day:
        if last_streak == day:
            current = max(current, 1)
        elif last_streak is not None and (day - last_streak).days == 1:
            current += 1
        else:
            current = 1
        last_streak = day
    elif last_streak is None or (day - last_streak).days > 1:
        # Yesterday was not a counting day, so the streak is over
        current = 0

    return current, max(longest, current), last_streak


def weighted_accuracy(
    existing_attempts: int,
    existing_accuracy: float,
    new_attempts: int,
    new_accuracy: float,
) -> float:
    """Attempt-weighted mean of two accuracy percentages, 2 decimals."""
    total = existing_attempts + new_attempts
    if total == 0:
        return 0.0
    return _round2((existing_attempts * existing_accuracy + new_attempts * new_accuracy) / total)


def merge_difficulty_performance(
    existing: dict[str, Any] | None,
    attempts: Sequence[Attempt],
) -> dict[str, dict[str, Any]]:
    """Add a session's per-difficulty counts to the cumulative map."""
    merged = {key: dict(value) for key, value in (existing or {}).items()}
    for attempt in attempts:
        if not attempt.difficulty:
            continue
        entry = merged.setdefault(attempt.difficulty, {"attempted": 0, "correct": 0, "accuracy": 0.0})
        entry["attempted"] += 1
        entry["correct"] += int(attempt.correct)

    for entry in merged.values():
        if entry["attempted"]:
            entry["accuracy"] = _round2(entry["correct"] / entry["attempted"] * 100)
    return merged


def _answered(attempt: Attempt) -> bool:
    return attempt.user_answer not in (None, "", [])


def session_accuracy(attempts: Sequence[Attempt]) -> float:
    """Percentage of answered questions that were correct, 2 decimals."""
    answered = sum(1 for a in attempts if _answered(a))
    if not answered:
        return 0.0
    return _round2(sum(1 for a in attempts if a.correct) / answered * 100)


def build_user_analytics(
    user_id: str,
    day: date,
    session_seconds: int,
    prior_seconds_today: int,
    attempts: Sequence[Attempt],
    previous: UserAnalytics | None,
    records: Iterable[ProficiencyRecord],
    reading_speed_wpm: int | None,
) -> UserAnalyticsUpdate:
    """
    Merge one session into the user's analytics row.

    Args:
        user_id: Owner of the session
        day: UTC date the session was completed
        session_seconds: Time spent in this session
        prior_seconds_today: Time spent in the user's other sessions on ``day``
        attempts: Session attempts
        previous: Current row, or None for a first session
        records: All proficiency records after this session was applied
        reading_speed_wpm: Measured speed, None when not measurable

    Returns:
        UserAnalyticsUpdate (nothing is persisted here)
    """
    questions_attempted = sum(1 for a in attempts if _answered(a))
    questions_correct = sum(1 for a in attempts if a.correct)
    accuracy = session_accuracy(attempts)
    minutes = round_half_up(session_seconds / 60)

    is_active = prior_seconds_today + session_seconds >= MINIMUM_ACTIVE_SECONDS
    current_streak, longest_streak, last_streak_date = calculate_streaks(previous, day, is_active)

    points = math.floor(questions_correct * streak_bonus_multiplier(current_streak))

    last_active = previous.last_active_date if previous else None
    if last_active is None or day > last_active:
        last_active, is_active_day, points_today = day, is_active, points
    elif day == last_active:
        is_active_day = is_active or bool(previous.is_active_day)
        points_today = (previous.points_earned_today or 0) + points
    else:
        # Late session for an earlier day: only the cumulative totals move
        is_active_day = bool(previous.is_active_day)
        points_today = previous.points_earned_today or 0

    records = list(records)
    by_type = {
        t: {r.dimension_key: r.proficiency_score for r in records if r.dimension_type == t}
        for t in (DimensionType.GENRE, DimensionType.QUESTION_TYPE)
    }

    if reading_speed_wpm is None and previous is not None:
        reading_speed_wpm = previous.reading_speed_wpm

    prev_attempted = (previous.questions_attempted or 0) if previous else 0
    prev_accuracy = (previous.accuracy_percentage or 0.0) if previous else 0.0

    return UserAnalyticsUpdate(
        user_id=user_id,
        last_active_date=last_active,
        last_streak_date=last_streak_date,
        is_active_day=is_active_day,
        minutes_practiced=((previous.minutes_practiced or 0) if previous else 0) + minutes,
        questions_attempted=prev_attempted + questions_attempted,
        questions_correct=((previous.questions_correct or 0) if previous else 0) + questions_correct,
        accuracy_percentage=weighted_accuracy(prev_attempted, prev_accuracy, questions_attempted, accuracy),
        current_streak=current_streak,
        longest_streak=longest_streak,
        points_earned_today=points_today,
        total_points=((previous.total_points or 0) if previous else 0) + points,
        genre_performance=dict(sorted(by_type[DimensionType.GENRE].items())),
        question_type_performance=dict(sorted(by_type[DimensionType.QUESTION_TYPE].items())),
        difficulty_performance=merge_difficulty_performance(
            previous.difficulty_performance if previous else None, attempts
        ),
        reading_speed_wpm=reading_speed_wpm,
        points_earned=points,
    )


# ========================================
# Store access
# ========================================


def session_day(completed_at: datetime | None) -> date:
    """UTC calendar day of a session (naive timestamps are taken as UTC)."""
    if completed_at is None:
        return datetime.now(timezone.utc).date()
    if completed_at.tzinfo is None:
        return completed_at.date()
    return completed_at.astimezone(timezone.utc).date()


def session_seconds(loaded: SessionLoadResult) -> int:
    """Session duration, falling back to the sum of attempt times."""
    if loaded.time_spent_seconds is not None:
        return int(loaded.time_spent_seconds)
    return round_half_up(sum(a.time_spent_seconds for a in loaded.attempts))


async def get_user_analytics(db: AsyncSession, user_id: str) -> UserAnalytics | None:
    """Fetch the stored analytics row for a user."""
    stmt = (
        select(UserAnalytics)
        .where(UserAnalytics.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


class UserAnalyticsUpdater:
    """Reading speed and engagement updates for one analysed session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _passage_word_counts(self, attempts: Sequence[Attempt]) -> dict[str, int]:
        passage_ids = {a.passage_id for a in attempts if a.passage_id}
        if not passage_ids:
            return {}
        stmt = select(Passage.id, Passage.word_count).where(Passage.id.in_(passage_ids))
        return {pid: count or 0 for pid, count in (await self.db.execute(stmt)).all()}

    async def update_reading_speed(self, user_id: str, session_id: str, loaded: SessionLoadResult) -> int | None:
        """
        Measure the session's reading speed and fold it into the
        ``reading_speed_wpm`` core metric.

        A failed write is logged and skipped like any other dimension; a lost
        compare-and-swap raises TransientStoreError.

        Returns:
            The measured wpm, or None if the session had nothing to measure
        """
        wpm = calculate_reading_speed_wpm(loaded.attempts, await self._passage_word_counts(loaded.attempts))
        if wpm is None:
            logger.info(f"Session {session_id} has no measurable reading time, skipping reading speed")
            return None

        records = await list_proficiency_records(self.db, user_id, DimensionType.CORE_METRIC)
        record = next((r for r in records if r.dimension_key == READING_SPEED_KEY), None)

        delta = plan_reading_speed(
            session_id, wpm, session_accuracy(loaded.attempts), session_day(loaded.completed_at), record
        )
        if delta is None:
            return wpm

        summary = await ProficiencyUpdater(self.db).apply(user_id, session_id, [delta])
        if summary.conflicts:
            raise TransientStoreError(f"Reading speed for user {user_id} changed concurrently")

        logger.info(f"Reading speed for session {session_id}: {wpm} wpm -> score {delta.new_score}")
        return wpm

    async def _prior_seconds_on(self, user_id: str, session_id: str, day: date, completed_at: datetime | None) -> int:
        """Seconds spent on ``day`` in the user's sessions completed before this one."""
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1)
        if completed_at is not None:
            if completed_at.tzinfo is None:
                completed_at = completed_at.replace(tzinfo=timezone.utc)
            end = min(end, completed_at)

        stmt = select(func.coalesce(func.sum(PracticeSession.time_spent_seconds), 0)).where(
            PracticeSession.user_id == user_id,
            PracticeSession.status == COMPLETED_STATUS,
            PracticeSession.id != session_id,
            PracticeSession.completed_at >= start,
            PracticeSession.completed_at < end,
        )
        return int((await self.db.execute(stmt)).scalar_one())

    async def update(
        self,
        user_id: str,
        session_id: str,
        loaded: SessionLoadResult,
        reading_speed_wpm: int | None = None,
    ) -> UserAnalyticsUpdate:
        """
        Merge the session into ``user_analytics``.

        The write is conditional on the row's ``last_session_id`` being the
        one read here.

        Raises:
            TransientStoreError: The row was changed by a concurrent run
        """
        day = session_day(loaded.completed_at)
        seconds = session_seconds(loaded)
        prior_seconds = await self._prior_seconds_on(user_id, session_id, day, loaded.completed_at)

        previous = await get_user_analytics(self.db, user_id)
        records = await list_proficiency_records(self.db, user_id)

        analytics = build_user_analytics(
            user_id, day, seconds, prior_seconds, loaded.attempts, previous, records, reading_speed_wpm
        )

        table = UserAnalytics.__table__
        expected = previous.last_session_id if previous else None
        unchanged = table.c.last_session_id.is_(None) if expected is None else table.c.last_session_id == expected

        columns = analytics.to_columns()
        replace = {k: v for k, v in columns.items() if k != "user_id"}
        stmt = dialect_insert(self.db, UserAnalytics).values(id=new_id(), last_session_id=session_id, **columns)
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id"],
            set_={**replace, "last_session_id": session_id, "updated_at": func.now()},
            where=unchanged,
        ).returning(table.c.id)

        if (await self.db.execute(stmt)).scalar_one_or_none() is None:
            raise TransientStoreError(f"User analytics for user {user_id} changed concurrently")

        logger.info(
            f"User analytics for {user_id} on {day}: +{analytics.points_earned} points, "
            f"streak {analytics.current_streak} (longest {analytics.longest_streak}), "
            f"active={analytics.is_active_day}"
        )
        return analytics
