"""
Session loader.

Reads a completed practice session and its attempts, joined with question
type, difficulty, reasoning node tags and passage genre. Never writes.
"""

from __future__ import annotations

import json
from typing import Any

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from varc_analytics.core.errors import DataIntegrityError, InvalidSessionStateError, SessionNotFoundError
from varc_analytics.db.models import Passage, PracticeSession, Question, QuestionAttempt
from varc_analytics.pipeline.models import Attempt, SessionLoadResult

COMPLETED_STATUS = "completed"


def _parse_node_ids(tags: Any) -> tuple[str, ...]:
    """Normalise a question's ``tags`` column into a tuple of node ids."""
    if not tags:
        return ()
    if isinstance(tags, str):
        try:
            tags = json.loads(tags)
        except json.JSONDecodeError:
            return (tags,)
    if isinstance(tags, str):
        return (tags,)
    return tuple(str(tag) for tag in tags if tag)


class SessionLoader:
    """Load one session's attempts for analysis."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def load(self, session_id: str, user_id: str) -> SessionLoadResult:
        """
        Load a session and its attempts.

        Args:
            session_id: Practice session id
            user_id: Owner of the session

        Returns:
            SessionLoadResult; ``already_processed`` is set (with no attempts)
            when the session was analysed before

        Raises:
            SessionNotFoundError: Session missing or owned by another user
            InvalidSessionStateError: Session is not completed
            DataIntegrityError: An attempt references a missing question
        """
        logger.info(f"Loading session {session_id} for user {user_id}")

        session_row = await self.db.get(PracticeSession, session_id)
        if session_row is None or session_row.user_id != user_id:
            raise SessionNotFoundError(session_id, user_id)

        if session_row.is_analysed:
            logger.info(f"Session {session_id} already analysed, nothing to load")
            return SessionLoadResult(session_id=session_id, user_id=user_id, already_processed=True)

        if session_row.status != COMPLETED_STATUS:
            raise InvalidSessionStateError(session_id, session_row.status)

        attempts = await self._load_attempts(session_id, user_id)

        if not attempts:
            logger.warning(f"Session {session_id} has no attempts")
        else:
            correct = sum(1 for a in attempts if a.correct)
            logger.info(f"Loaded {len(attempts)} attempts ({correct} correct) for session {session_id}")

        return SessionLoadResult(
            session_id=session_id,
            user_id=user_id,
            attempts=attempts,
            completed_at=session_row.completed_at,
            time_spent_seconds=session_row.time_spent_seconds,
        )

    async def _load_attempts(self, session_id: str, user_id: str) -> list[Attempt]:
        attempt_passage = aliased(Passage)
        question_passage = aliased(Passage)

        stmt = (
            select(QuestionAttempt, Question, attempt_passage, question_passage)
            .outerjoin(Question, Question.id == QuestionAttempt.question_id)
            .outerjoin(attempt_passage, attempt_passage.id == QuestionAttempt.passage_id)
            .outerjoin(question_passage, question_passage.id == Question.passage_id)
            .where(
                QuestionAttempt.session_id == session_id,
                QuestionAttempt.user_id == user_id,
            )
            .order_by(QuestionAttempt.created_at, QuestionAttempt.id)
        )
        rows = (await self.db.execute(stmt)).all()

        attempts: list[Attempt] = []
        for attempt_row, question, a_passage, q_passage in rows:
            if question is None:
                raise DataIntegrityError(
                    f"Attempt {attempt_row.id} references missing question {attempt_row.question_id}",
                    session_id=session_id,
                    question_id=attempt_row.question_id,
                )

            passage = a_passage or q_passage
            attempts.append(
                Attempt(
                    attempt_id=attempt_row.id,
                    question_id=question.id,
                    passage_id=attempt_row.passage_id or question.passage_id,
                    question_type=question.question_type,
                    genre=passage.genre if passage is not None and passage.genre else None,
                    correct=bool(attempt_row.is_correct),
                    time_spent_seconds=float(attempt_row.time_spent_seconds or 0),
                    reasoning_node_ids=_parse_node_ids(question.tags),
                    difficulty=question.difficulty,
                    question_text=question.question_text,
                    options=question.options,
                    correct_answer=question.correct_answer,
                    user_answer=attempt_row.user_answer,
                    confidence_level=attempt_row.confidence_level,
                    jumbled_sentences=question.jumbled_sentences,
                )
            )

        return attempts
