"""
FastAPI application for varc-analytics.

Provides REST API for:
- Session analysis (single session and pending sweep)
- Proficiency records and personalisation signals
- Health checks
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from config import get_settings
from varc_analytics import __version__
from varc_analytics.core.log_config import configure_logging
from varc_analytics.db.database import check_database_health, dispose_engine, get_session_factory, init_db
from varc_analytics.pipeline.diagnostics import build_annotator
from varc_analytics.pipeline.orchestrator import AnalyticsOrchestrator
from varc_analytics.taxonomy import NodeMetricMap

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # Startup
    configure_logging(settings.log_level, settings.log_file)
    logger.info("Starting varc-analytics service...")
    await init_db()

    node_metric_map = NodeMetricMap.load(settings.taxonomy_path)
    annotator = build_annotator(settings, taxonomy_version=node_metric_map.version)
    app.state.orchestrator = AnalyticsOrchestrator(
        session_factory=get_session_factory(),
        node_metric_map=node_metric_map,
        annotator=annotator,
        diagnostics_timeout=settings.diagnostics_timeout_seconds,
        pending_batch_limit=settings.pending_batch_limit,
    )
    logger.info(f"Service started on {settings.api_host}:{settings.api_port}")

    yield

    # Shutdown
    logger.info("Shutting down varc-analytics service...")
    close = getattr(annotator, "close", None)
    if close is not None:
        await close()
    await dispose_engine()


app = FastAPI(
    title="VARC Analytics",
    description="""
    Session analytics and proficiency engine for VARC practice.

    ## Data Flow

    ```
    Completed practice session
        ↓ load + aggregate
    Surface statistics per dimension
        ↓ confidence-weighted update
    user_metric_proficiency
        ↓ rollup
    user_proficiency_signals (personalisation)
    ```
    """,
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ========================================
# Health & Status Endpoints
# ========================================


@app.get("/", tags=["Health"])
def root() -> dict[str, str]:
    """Root endpoint returning service info."""
    return {
        "service": "varc-analytics",
        "version": __version__,
        "status": "ok",
    }


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, Any]:
    """Health check with a live database round trip."""
    db_status, db_error = await check_database_health()

    orchestrator = getattr(app.state, "orchestrator", None)
    taxonomy_version = orchestrator.node_metric_map.version if orchestrator else None

    result: dict[str, Any] = {
        "status": "healthy" if db_status == "ok" else "unhealthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {
            "database": db_status,
            "taxonomy": taxonomy_version or "not_loaded",
            "diagnostics": settings.diagnostics_provider,
        },
        "config": settings.get_diagnostics_config(),
    }
    if db_error:
        result["errors"] = {"database": db_error}

    return result


# ========================================
# Import and mount routers
# ========================================

from varc_analytics.api.routers import analytics_router  # noqa: E402

app.include_router(analytics_router.router, prefix="/analytics", tags=["Analytics"])
