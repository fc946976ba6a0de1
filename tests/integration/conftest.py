"""
Fixtures for integration tests against a temporary SQLite database.
"""

from datetime import datetime, timedelta, timezone

import pytest_asyncio

from varc_analytics.db.database import build_async_engine, build_session_factory, init_db
from varc_analytics.db.models import Passage, PracticeSession, Question, QuestionAttempt, new_id

BASE_TIME = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite engine with all tables created."""
    engine = build_async_engine(f"sqlite:///{tmp_path / 'analytics.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return build_session_factory(engine)


class Seeder:
    """Insert practice data the way the platform would."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._clock = 0

    def _tick(self) -> datetime:
        self._clock += 1
        return BASE_TIME + timedelta(minutes=self._clock)

    async def passage(self, genre: str, word_count: int | None = None) -> str:
        passage_id = new_id()
        async with self.session_factory() as db:
            db.add(Passage(id=passage_id, title=f"{genre} passage", genre=genre, word_count=word_count))
            await db.commit()
        return passage_id

    async def question(
        self,
        question_type: str = "rc_question",
        tags=(),
        passage_id: str | None = None,
        difficulty: str | None = None,
    ) -> str:
        question_id = new_id()
        async with self.session_factory() as db:
            db.add(
                Question(
                    id=question_id,
                    passage_id=passage_id,
                    question_type=question_type,
                    question_text="What is the primary purpose of the passage?",
                    options=["A", "B", "C", "D"],
                    correct_answer="A",
                    tags=list(tags),
                    difficulty=difficulty,
                )
            )
            await db.commit()
        return question_id

    async def session(
        self,
        user_id: str,
        status: str = "completed",
        is_analysed: bool = False,
        answers=(),
        session_data=None,
        time_spent_seconds: int | None = None,
        completed_at: datetime | None = None,
    ) -> str:
        """
        Create a session with attempts.

        ``answers`` is a sequence of ``(question_id, is_correct)`` or
        ``(question_id, is_correct, passage_id)``. Without ``time_spent_seconds`` the
        session length is taken from its attempts.
        """
        session_id = new_id()
        completed_at = completed_at or self._tick()
        async with self.session_factory() as db:
            db.add(
                PracticeSession(
                    id=session_id,
                    user_id=user_id,
                    session_type="practice",
                    status=status,
                    is_analysed=is_analysed,
                    session_data=session_data,
                    time_spent_seconds=time_spent_seconds,
                    completed_at=completed_at if status == "completed" else None,
                    created_at=completed_at,
                )
            )
            await db.flush()
            for i, answer in enumerate(answers):
                question_id, is_correct = answer[0], answer[1]
                passage_id = answer[2] if len(answer) > 2 else None
                db.add(
                    QuestionAttempt(
                        session_id=session_id,
                        user_id=user_id,
                        question_id=question_id,
                        passage_id=passage_id,
                        is_correct=is_correct,
                        user_answer="A" if is_correct else "C",
                        time_spent_seconds=45 + i,
                        created_at=completed_at + timedelta(seconds=i),
                    )
                )
            await db.commit()
        return session_id


@pytest_asyncio.fixture
async def seed(session_factory):
    return Seeder(session_factory)
