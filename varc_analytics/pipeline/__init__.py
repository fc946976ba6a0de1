"""Session analysis pipeline: load, aggregate, diagnose, update, roll up, record activity."""
from varc_analytics.pipeline.diagnostics import (
    Annotator,
    GeminiDiagnosticAnnotator,
    HttpDiagnosticAnnotator,
    NullAnnotator,
    build_annotator,
    run_diagnostics,
)
from varc_analytics.pipeline.models import (
    AnalysisOutcome,
    AnalyticsResult,
    Attempt,
    AttemptDiagnosis,
    BatchAnalyticsResult,
    DimensionStats,
    ProficiencyRecord,
    ProficiencySignal,
    SessionStats,
    SurfaceStats,
    UserAnalyticsUpdate,
)
from varc_analytics.pipeline.orchestrator import AnalyticsOrchestrator
from varc_analytics.pipeline.proficiency_updater import ProficiencyUpdater, list_proficiency_records, plan_update
from varc_analytics.pipeline.session_loader import SessionLoader
from varc_analytics.pipeline.signal_rollup import build_signal, get_signal, rollup_signals
from varc_analytics.pipeline.stats_aggregator import compute_surface_stats
from varc_analytics.pipeline.user_analytics import UserAnalyticsUpdater, build_user_analytics, get_user_analytics

__all__ = [
    "AnalyticsOrchestrator",
    "SessionLoader",
    "compute_surface_stats",
    "Annotator",
    "NullAnnotator",
    "GeminiDiagnosticAnnotator",
    "HttpDiagnosticAnnotator",
    "build_annotator",
    "run_diagnostics",
    "ProficiencyUpdater",
    "plan_update",
    "list_proficiency_records",
    "build_signal",
    "rollup_signals",
    "get_signal",
    "UserAnalyticsUpdater",
    "build_user_analytics",
    "get_user_analytics",
    "AnalysisOutcome",
    "AnalyticsResult",
    "Attempt",
    "AttemptDiagnosis",
    "BatchAnalyticsResult",
    "DimensionStats",
    "ProficiencyRecord",
    "ProficiencySignal",
    "SessionStats",
    "SurfaceStats",
    "UserAnalyticsUpdate",
]
