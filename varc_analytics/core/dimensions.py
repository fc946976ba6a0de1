"""
Dimension vocabulary for the proficiency model.

Proficiency is tracked along four closed axes. Stored rows carry the enum
value as plain text, so the enum doubles as the column vocabulary.
"""
from __future__ import annotations

from enum import Enum


class DimensionType(str, Enum):
    """Axis along which proficiency is tracked."""

    CORE_METRIC = "core_metric"
    GENRE = "genre"
    QUESTION_TYPE = "question_type"
    REASONING_STEP = "reasoning_step"

    @property
    def label(self) -> str:
        """Human readable plural label (used in logs and CLI tables)."""
        return {
            DimensionType.CORE_METRIC: "Core metrics",
            DimensionType.GENRE: "Genres",
            DimensionType.QUESTION_TYPE: "Question types",
            DimensionType.REASONING_STEP: "Reasoning steps",
        }[self]


class Trend(str, Enum):
    """Direction of the most recent proficiency change."""

    IMPROVING = "improving"
    DECLINING = "declining"
    STAGNANT = "stagnant"


class Difficulty(str, Enum):
    """Recommended content difficulty derived from the rollup."""

    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"
