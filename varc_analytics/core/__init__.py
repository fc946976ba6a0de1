"""Core domain vocabulary: dimensions, scoring math and error taxonomy."""

from varc_analytics.core.dimensions import Difficulty, DimensionType, Trend
from varc_analytics.core.errors import (
    AnalyticsError,
    DataIntegrityError,
    DiagnosticServiceError,
    InvalidSessionStateError,
    SessionNotFoundError,
    TaxonomyError,
    TransientStoreError,
)
from varc_analytics.core.scoring import (
    ALPHA,
    CONFIDENCE_THRESHOLD,
    DEFAULT_PROFICIENCY,
    TREND_DELTA_THRESHOLD,
    calculate_confidence,
    calculate_new_proficiency,
    calculate_trend,
    round_half_up,
)

__all__ = [
    # Dimensions
    "DimensionType",
    "Trend",
    "Difficulty",
    # Errors
    "AnalyticsError",
    "SessionNotFoundError",
    "InvalidSessionStateError",
    "DataIntegrityError",
    "TransientStoreError",
    "DiagnosticServiceError",
    "TaxonomyError",
    # Scoring
    "ALPHA",
    "CONFIDENCE_THRESHOLD",
    "DEFAULT_PROFICIENCY",
    "TREND_DELTA_THRESHOLD",
    "calculate_confidence",
    "calculate_new_proficiency",
    "calculate_trend",
    "round_half_up",
]
