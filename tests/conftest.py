"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import pytest
import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from varc_analytics.pipeline.models import Attempt  # noqa: E402
from varc_analytics.taxonomy import NodeMetricMap  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (temporary SQLite database)")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        # Mark based on test file location
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def node_metric_map():
    """
    Small mapping with one shared node.

    n-shared backs both inference_accuracy and evidence_evaluation.
    """
    return NodeMetricMap.from_pairs(
        {
            "inference_accuracy": ["n-infer", "n-shared"],
            "evidence_evaluation": ["n-evidence", "n-shared"],
            "tone_and_intent_sensitivity": ["n-tone"],
        },
        version="test",
    )


@pytest.fixture
def make_attempt():
    """Factory for Attempt values with sensible defaults."""
    counter = {"n": 0}

    def _make(
        correct: bool = True,
        question_type: str = "rc_question",
        genre: str | None = "philosophy",
        nodes: tuple[str, ...] = (),
        time_spent: float = 60.0,
        attempt_id: str | None = None,
    ) -> Attempt:
        counter["n"] += 1
        n = counter["n"]
        return Attempt(
            attempt_id=attempt_id or f"attempt-{n:03d}",
            question_id=f"question-{n:03d}",
            passage_id="passage-001" if genre else None,
            question_type=question_type,
            genre=genre,
            correct=correct,
            time_spent_seconds=time_spent,
            reasoning_node_ids=tuple(nodes),
            question_text="Which of the following best captures the author's stance?",
            options=["A", "B", "C", "D"],
            correct_answer="B",
            user_answer="B" if correct else "C",
        )

    return _make
