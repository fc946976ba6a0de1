"""
Unit tests for the proficiency signal rollup.
"""

import pytest

from varc_analytics.core.dimensions import Difficulty, DimensionType
from varc_analytics.pipeline.models import ProficiencyRecord
from varc_analytics.pipeline.signal_rollup import build_signal, recommend_difficulty


def _record(dimension_type: DimensionType, key: str, score: int) -> ProficiencyRecord:
    return ProficiencyRecord(
        user_id="user-001",
        dimension_type=dimension_type,
        dimension_key=key,
        proficiency_score=score,
        confidence_score=1.0,
        total_attempts=10,
        correct_attempts=5,
    )


class TestBuildSignal:
    """Tests for build_signal."""

    def test_weak_topics_ascending(self):
        """Genres {fiction:80, science:40, history:55, poetry:20} -> [poetry, science, history]."""
        records = [
            _record(DimensionType.GENRE, "fiction", 80),
            _record(DimensionType.GENRE, "science", 40),
            _record(DimensionType.GENRE, "history", 55),
            _record(DimensionType.GENRE, "poetry", 20),
        ]

        signal = build_signal("user-001", records)

        assert signal.weak_topics == ["poetry", "science", "history"]
        assert signal.genre_strengths == {"fiction": 80, "history": 55, "poetry": 20, "science": 40}

    def test_weak_question_types_ties_by_key(self):
        records = [
            _record(DimensionType.QUESTION_TYPE, "para_jumble", 30),
            _record(DimensionType.QUESTION_TYPE, "odd_one_out", 30),
            _record(DimensionType.QUESTION_TYPE, "para_summary", 70),
            _record(DimensionType.QUESTION_TYPE, "rc_question", 90),
        ]

        signal = build_signal("user-001", records)

        assert signal.weak_question_types == ["odd_one_out", "para_jumble", "para_summary"]

    def test_fewer_than_three(self):
        signal = build_signal("user-001", [_record(DimensionType.GENRE, "fiction", 80)])

        assert signal.weak_topics == ["fiction"]
        assert signal.weak_question_types == []

    def test_skill_columns_and_overall(self):
        records = [
            _record(DimensionType.CORE_METRIC, "inference_accuracy", 80),
            _record(DimensionType.CORE_METRIC, "tone_and_intent_sensitivity", 70),
            _record(DimensionType.CORE_METRIC, "detail_vs_structure_balance", 60),
            _record(DimensionType.CORE_METRIC, "evidence_evaluation", 50),
            _record(DimensionType.CORE_METRIC, "trap_avoidance_rate", 65),
            _record(DimensionType.REASONING_STEP, "n-1", 10),
        ]

        signal = build_signal("user-001", records)

        assert signal.inference_skill == 80
        assert signal.tone_analysis_skill == 70
        assert signal.main_idea_skill == 60
        assert signal.detail_comprehension_skill == 50
        assert signal.overall_score == pytest.approx(65.0)
        assert signal.recommended_difficulty == "medium"
        assert signal.data_points_count == 6

    def test_no_core_metrics(self):
        signal = build_signal("user-001", [_record(DimensionType.GENRE, "fiction", 90)])

        assert signal.overall_score is None
        assert signal.recommended_difficulty is None
        assert signal.inference_skill is None

    def test_empty(self):
        signal = build_signal("user-001", [])

        assert signal.genre_strengths == {}
        assert signal.weak_topics == []
        assert signal.data_points_count == 0


class TestRecommendDifficulty:
    """Tests for difficulty thresholds."""

    @pytest.mark.parametrize(
        "overall,expected",
        [
            (100, Difficulty.HARD),
            (75, Difficulty.HARD),
            (74.9, Difficulty.MEDIUM),
            (50, Difficulty.MEDIUM),
            (49.5, Difficulty.EASY),
            (0, Difficulty.EASY),
            (None, None),
        ],
    )
    def test_thresholds(self, overall, expected):
        assert recommend_difficulty(overall) == expected
