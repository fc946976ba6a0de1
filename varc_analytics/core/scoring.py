"""
Scoring math for the proficiency engine.

Proficiency is a confidence-weighted exponential moving average:

    confidence = min(1, sqrt(total_attempts / CONFIDENCE_THRESHOLD))
    weight     = ALPHA * confidence
    new        = old * (1 - weight) + surface * weight

Rounding is half-up everywhere (12.5 -> 13), not Python's banker's rounding.
"""
from __future__ import annotations

import math

from varc_analytics.core.dimensions import Trend

# Do not change without re-baselining stored proficiency scores
ALPHA = 0.2
CONFIDENCE_THRESHOLD = 9
TREND_DELTA_THRESHOLD = 3
DEFAULT_PROFICIENCY = 50

SCORE_MIN = 0
SCORE_MAX = 100


def round_half_up(value: float) -> int:
    """Round to the nearest integer, ties away from zero for positives."""
    return int(math.floor(value + 0.5))


def calculate_confidence(attempts: int) -> float:
    """
    Confidence in [0, 1] from cumulative attempt count.

    Square-root curve, saturating at CONFIDENCE_THRESHOLD attempts.
    """
    if attempts <= 0:
        return 0.0
    return min(1.0, math.sqrt(attempts / CONFIDENCE_THRESHOLD))


def blend_proficiency(old_proficiency: float, surface_score: float, confidence: float) -> float:
    """Unclamped, unrounded EMA step (a convex combination of its inputs)."""
    learning_weight = ALPHA * confidence
    return old_proficiency * (1 - learning_weight) + surface_score * learning_weight


def calculate_new_proficiency(old_proficiency: float, surface_score: float, confidence: float) -> int:
    """
    Blend a session's surface score into the stored proficiency.

    Args:
        old_proficiency: Current score (0-100), DEFAULT_PROFICIENCY for new dimensions
        surface_score: Session-local score (0-100)
        confidence: Confidence after adding this session's attempts (0-1)

    Returns:
        New proficiency, clamped to [0, 100] and rounded
    """
    blended = blend_proficiency(old_proficiency, surface_score, confidence)
    return round_half_up(max(SCORE_MIN, min(SCORE_MAX, blended)))


def calculate_trend(old_proficiency: float, new_proficiency: float) -> Trend:
    """Classify a change as improving, declining or stagnant."""
    delta = new_proficiency - old_proficiency
    if delta > TREND_DELTA_THRESHOLD:
        return Trend.IMPROVING
    if delta < -TREND_DELTA_THRESHOLD:
        return Trend.DECLINING
    return Trend.STAGNANT
