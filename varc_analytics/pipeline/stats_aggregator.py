"""
Session-local statistics per dimension.

Pure and deterministic: the same attempts and mapping always produce the
same SurfaceStats.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from varc_analytics.core.scoring import round_half_up
from varc_analytics.pipeline.models import Attempt, DimensionStats, SurfaceStats
from varc_analytics.taxonomy import NodeMetricMap


@dataclass
class _Accumulator:
    attempts: int = 0
    correct: int = 0
    total_time: float = 0.0

    def add(self, attempt: Attempt) -> None:
        self.attempts += 1
        if attempt.correct:
            self.correct += 1
        self.total_time += attempt.time_spent_seconds

    def finalize(self) -> DimensionStats:
        accuracy = self.correct / self.attempts
        return DimensionStats(
            attempts=self.attempts,
            correct=self.correct,
            accuracy=accuracy,
            avg_time=self.total_time / self.attempts,
            score_0_100=round_half_up(accuracy * 100),
        )


def _bump(bucket: dict[str, _Accumulator], key: str, attempt: Attempt) -> None:
    acc = bucket.get(key)
    if acc is None:
        acc = bucket[key] = _Accumulator()
    acc.add(attempt)


def compute_surface_stats(attempts: Iterable[Attempt], node_metric_map: NodeMetricMap) -> SurfaceStats:
    """
    Aggregate attempts into per-dimension statistics.

    Each attempt contributes to:
    - core_metric: once per (reasoning node, metric backed by that node).
      A node shared by two metrics feeds both, and two nodes backing the
      same metric count that metric twice.
    - genre: when the passage genre is known
    - question_type: always
    - reasoning_step: once per tagged node id

    Args:
        attempts: Attempts of one session
        node_metric_map: Node -> metric adjacency for this run

    Returns:
        SurfaceStats with accuracy, average time and a 0-100 score per key
    """
    core_metric: dict[str, _Accumulator] = {}
    genre: dict[str, _Accumulator] = {}
    question_type: dict[str, _Accumulator] = {}
    reasoning_step: dict[str, _Accumulator] = {}

    for attempt in attempts:
        for node_id in attempt.reasoning_node_ids:
            for metric_key in node_metric_map.metrics_for(node_id):
                _bump(core_metric, metric_key, attempt)
            _bump(reasoning_step, node_id, attempt)

        if attempt.genre:
            _bump(genre, attempt.genre, attempt)

        _bump(question_type, attempt.question_type, attempt)

    def _finalize(bucket: dict[str, _Accumulator]) -> dict[str, DimensionStats]:
        return {key: acc.finalize() for key, acc in sorted(bucket.items())}

    return SurfaceStats(
        core_metric=_finalize(core_metric),
        genre=_finalize(genre),
        question_type=_finalize(question_type),
        reasoning_step=_finalize(reasoning_step),
    )
