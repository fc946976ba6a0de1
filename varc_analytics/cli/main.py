"""
Typer CLI for the varc-analytics service.

Commands:
    varc-analytics analyze SESSION_ID --user-id U   - Analyse one completed session
    varc-analytics pending --user-id U              - Analyse all pending sessions of a user
    varc-analytics proficiency --user-id U          - Show proficiency records
    varc-analytics signals --user-id U              - Show the personalisation signal
    varc-analytics activity --user-id U             - Show practice totals, streaks and points
    varc-analytics taxonomy                         - Show the node -> metric mapping
    varc-analytics db init                          - Initialize database tables
    varc-analytics serve                            - Run the HTTP API
    varc-analytics config                           - Show current configuration

Usage:
    varc-analytics --help
    varc-analytics analyze 6f1c... --user-id 42a0...
    varc-analytics proficiency --user-id 42a0... --type genre
"""

from __future__ import annotations

import asyncio
import json

import typer
from loguru import logger
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from config import get_settings
from varc_analytics import __version__
from varc_analytics.core.dimensions import DimensionType
from varc_analytics.core.errors import AnalyticsError
from varc_analytics.core.log_config import configure_logging
from varc_analytics.pipeline.models import AnalyticsResult

app = typer.Typer(
    help="varc-analytics CLI: practice sessions -> proficiency model -> personalisation signals",
    no_args_is_help=True,
)

console = Console()


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """VARC session analytics."""
    settings = get_settings()
    configure_logging("DEBUG" if verbose else settings.log_level, settings.log_file)


# ========================================
# Context Builder (Dependency Injection)
# ========================================


def _build_orchestrator():
    """Wire the orchestrator from settings (lazy imports keep --help fast)."""
    from varc_analytics.db.database import get_session_factory
    from varc_analytics.pipeline.diagnostics import build_annotator
    from varc_analytics.pipeline.orchestrator import AnalyticsOrchestrator
    from varc_analytics.taxonomy import NodeMetricMap

    settings = get_settings()
    node_metric_map = NodeMetricMap.load(settings.taxonomy_path)
    return AnalyticsOrchestrator(
        session_factory=get_session_factory(),
        node_metric_map=node_metric_map,
        annotator=build_annotator(settings, taxonomy_version=node_metric_map.version),
        diagnostics_timeout=settings.diagnostics_timeout_seconds,
        pending_batch_limit=settings.pending_batch_limit,
    )


def _run(coro):
    """Run a coroutine and dispose the engine afterwards."""
    from varc_analytics.db.database import dispose_engine

    async def _wrapped():
        try:
            return await coro
        finally:
            await dispose_engine()

    return asyncio.run(_wrapped())


OUTCOME_STYLES = {"analysed": "green", "empty": "yellow", "already_processed": "dim"}


def _print_result(result: AnalyticsResult) -> None:
    style = OUTCOME_STYLES.get(result.outcome.value, "white")
    rprint(f"\n[bold]Session {result.session_id}[/bold]: [{style}]{result.outcome.value}[/{style}]")
    if result.message:
        rprint(f"  {result.message}")

    if result.stats is None or not result.stats.attempts:
        return

    stats = result.stats
    table = Table(title="Session Analysis", show_header=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Attempts", str(stats.attempts))
    table.add_row("Correct", str(stats.correct))
    for dimension_type in DimensionType:
        table.add_row(dimension_type.label, str(stats.dimensions.get(dimension_type.value, 0)))
    table.add_section()
    table.add_row("Dimensions created", str(stats.dimensions_created), style="green")
    table.add_row("Dimensions updated", str(stats.dimensions_updated), style="yellow")
    table.add_row("Dimensions skipped", str(stats.dimensions_skipped), style="dim")
    table.add_row("Conflicts", str(stats.dimensions_conflicted) if stats.dimensions_conflicted else "-")
    table.add_row("Failures", str(stats.dimensions_failed) if stats.dimensions_failed else "-", style="red")
    table.add_row("Diagnostics", f"{stats.diagnostics} ({'stored' if stats.diagnostics_stored else 'not stored'})")
    table.add_section()
    table.add_row("Reading speed", f"{stats.reading_speed_wpm} wpm" if stats.reading_speed_wpm else "-")
    table.add_row("Points earned", str(stats.points_earned))
    table.add_row("Current streak", "-" if stats.current_streak is None else str(stats.current_streak))

    console.print(table)


# ========================================
# Analysis Commands
# ========================================


@app.command("analyze")
def analyze(
    session_id: str = typer.Argument(..., help="Practice session id"),
    user_id: str = typer.Option(..., "--user-id", "-u", help="Owner of the session"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw result as JSON"),
) -> None:
    """
    Analyse one completed practice session.

    Re-running on an analysed session is a no-op.
    """
    orchestrator = _build_orchestrator()
    try:
        result = _run(orchestrator.analyze_session(session_id, user_id))
    except AnalyticsError as e:
        logger.error(f"{type(e).__name__}: {e}")
        rprint(f"[red]✗[/red] {e}")
        raise typer.Exit(code=1)

    if as_json:
        console.print_json(json.dumps(result.to_dict()))
    else:
        _print_result(result)


@app.command("pending")
def pending(
    user_id: str = typer.Option(..., "--user-id", "-u", help="User whose pending sessions to analyse"),
    limit: int | None = typer.Option(None, "--limit", "-l", help="Max sessions (default: PENDING_BATCH_LIMIT)"),
) -> None:
    """Analyse every completed, unanalysed session of a user, oldest first."""
    orchestrator = _build_orchestrator()
    try:
        batch = _run(orchestrator.analyze_pending_sessions(user_id, limit=limit))
    except AnalyticsError as e:
        rprint(f"[red]✗[/red] {e}")
        raise typer.Exit(code=1)

    if not batch.sessions_found:
        rprint(f"[dim]No pending sessions for user {user_id}[/dim]")
        return

    table = Table(title=f"Pending Sessions ({batch.sessions_found})", show_header=True)
    table.add_column("Session", style="cyan")
    table.add_column("Outcome")
    table.add_column("Attempts", justify="right")
    table.add_column("Error", style="red")

    for result in batch.results:
        attempts = str(result.stats.attempts) if result.stats else "-"
        table.add_row(result.session_id, result.outcome.value, attempts, "-")
    for session_id, error in batch.errors.items():
        table.add_row(session_id, "[red]failed[/red]", "-", error)

    console.print(table)

    if batch.errors:
        rprint(f"\n[yellow]⚠[/yellow] {len(batch.errors)} session(s) failed")
        raise typer.Exit(code=1)
    rprint(f"\n[bold green]✓ {batch.sessions_analysed} session(s) analysed[/bold green]")


# ========================================
# Read Commands
# ========================================


@app.command("proficiency")
def proficiency(
    user_id: str = typer.Option(..., "--user-id", "-u", help="User id"),
    dimension_type: DimensionType | None = typer.Option(None, "--type", "-t", help="Filter by dimension type"),
) -> None:
    """Show a user's proficiency records."""
    from varc_analytics.db.database import async_session_scope
    from varc_analytics.pipeline.proficiency_updater import list_proficiency_records

    async def _load():
        async with async_session_scope() as db:
            return await list_proficiency_records(db, user_id, dimension_type)

    records = _run(_load())
    if not records:
        rprint(f"[dim]No proficiency records for user {user_id}[/dim]")
        return

    table = Table(title=f"Proficiency ({len(records)} records)", show_header=True)
    table.add_column("Type", style="cyan")
    table.add_column("Key")
    table.add_column("Score", justify="right")
    table.add_column("Confidence", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("Trend")

    trend_style = {"improving": "green", "declining": "red", "stagnant": "dim"}
    for r in records:
        trend = r.trend.value if r.trend else "-"
        table.add_row(
            r.dimension_type.value,
            r.dimension_key,
            str(r.proficiency_score),
            f"{r.confidence_score:.2f}",
            f"{r.correct_attempts}/{r.total_attempts}",
            f"[{trend_style.get(trend, 'dim')}]{trend}[/]",
        )

    console.print(table)


@app.command("signals")
def signals(
    user_id: str = typer.Option(..., "--user-id", "-u", help="User id"),
) -> None:
    """Show a user's personalisation signal."""
    from varc_analytics.db.database import async_session_scope
    from varc_analytics.pipeline.signal_rollup import get_signal

    async def _load():
        async with async_session_scope() as db:
            return await get_signal(db, user_id)

    row = _run(_load())
    if row is None:
        rprint(f"[yellow]⚠[/yellow] No signals for user {user_id} (no session analysed yet)")
        raise typer.Exit(code=1)

    table = Table(title=f"Signals for {user_id}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    def _fmt(value) -> str:
        return "-" if value is None else str(value)

    overall = f"{row.overall_score:.1f}" if row.overall_score is not None else "-"
    table.add_row("Overall score", overall)
    table.add_row("Recommended difficulty", _fmt(row.recommended_difficulty))
    table.add_row("Inference", _fmt(row.inference_skill))
    table.add_row("Tone analysis", _fmt(row.tone_analysis_skill))
    table.add_row("Main idea", _fmt(row.main_idea_skill))
    table.add_row("Detail comprehension", _fmt(row.detail_comprehension_skill))
    table.add_row("Weak topics", ", ".join(row.weak_topics or []) or "-")
    table.add_row("Weak question types", ", ".join(row.weak_question_types or []) or "-")
    table.add_row("Data points", str(row.data_points_count or 0))
    table.add_row("Calculated at", _fmt(row.calculated_at))
    console.print(table)

    if row.genre_strengths:
        genre_table = Table(title="Genre Strengths")
        genre_table.add_column("Genre", style="cyan")
        genre_table.add_column("Score", justify="right")
        for genre, score in sorted(row.genre_strengths.items(), key=lambda kv: -kv[1]):
            genre_table.add_row(genre, str(score))
        console.print(genre_table)


@app.command("activity")
def activity(
    user_id: str = typer.Option(..., "--user-id", "-u", help="User id"),
) -> None:
    """Show a user's practice totals, streaks and points."""
    from varc_analytics.db.database import async_session_scope
    from varc_analytics.pipeline.user_analytics import get_user_analytics

    async def _load():
        async with async_session_scope() as db:
            return await get_user_analytics(db, user_id)

    row = _run(_load())
    if row is None:
        rprint(f"[yellow]⚠[/yellow] No activity for user {user_id} (no session analysed yet)")
        raise typer.Exit(code=1)

    table = Table(title=f"Activity for {user_id}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    table.add_row("Last active", f"{row.last_active_date} ({'active' if row.is_active_day else 'inactive'})")
    table.add_row("Current streak", f"{row.current_streak} day(s)")
    table.add_row("Longest streak", f"{row.longest_streak} day(s)")
    table.add_row("Points today", str(row.points_earned_today))
    table.add_row("Total points", str(row.total_points))
    table.add_row("Minutes practiced", str(row.minutes_practiced))
    table.add_row("Questions", f"{row.questions_correct}/{row.questions_attempted}")
    table.add_row("Accuracy", f"{row.accuracy_percentage:.2f}%")
    table.add_row("Reading speed", f"{row.reading_speed_wpm} wpm" if row.reading_speed_wpm else "-")
    console.print(table)

    if row.difficulty_performance:
        difficulty_table = Table(title="By Difficulty")
        difficulty_table.add_column("Difficulty", style="cyan")
        difficulty_table.add_column("Correct", justify="right")
        difficulty_table.add_column("Accuracy", justify="right")
        for difficulty, entry in sorted(row.difficulty_performance.items()):
            difficulty_table.add_row(difficulty, f"{entry['correct']}/{entry['attempted']}", f"{entry['accuracy']:.2f}%")
        console.print(difficulty_table)


@app.command("taxonomy")
def taxonomy(
    metric: str | None = typer.Option(None, "--metric", "-m", help="Show nodes for one metric"),
) -> None:
    """Show the reasoning node -> core metric mapping in use."""
    from varc_analytics.core.errors import TaxonomyError
    from varc_analytics.taxonomy import NodeMetricMap

    settings = get_settings()
    try:
        mapping = NodeMetricMap.load(settings.taxonomy_path)
    except TaxonomyError as e:
        rprint(f"[red]✗[/red] {e}")
        raise typer.Exit(code=1)

    if metric:
        nodes = mapping.nodes_for(metric)
        if not nodes:
            rprint(f"[yellow]⚠[/yellow] Unknown metric '{metric}'")
            raise typer.Exit(code=1)
        table = Table(title=f"{metric} ({len(nodes)} nodes)")
        table.add_column("Node", style="dim")
        table.add_column("Label")
        table.add_column("Also backs", style="cyan")
        for node_id in nodes:
            others = [m for m in mapping.metrics_for(node_id) if m != metric]
            table.add_row(node_id, mapping.node_labels.get(node_id, "-"), ", ".join(others) or "-")
        console.print(table)
        return

    table = Table(title=f"Taxonomy {mapping.version}")
    table.add_column("Metric", style="cyan")
    table.add_column("Nodes", justify="right")
    for key in mapping.metric_keys:
        table.add_row(key, str(len(mapping.nodes_for(key))))
    console.print(table)
    rprint(f"  {len(mapping.node_to_metrics)} distinct reasoning nodes")


# ========================================
# Database & Service Commands
# ========================================

db_app = typer.Typer(help="Database management")
app.add_typer(db_app, name="db")


@db_app.command("init")
def db_init() -> None:
    """
    Initialize database tables from SQLAlchemy models.

    Safe to run multiple times (idempotent).
    """
    from varc_analytics.db.database import init_db

    logger.info("Initializing database tables...")
    _run(init_db())
    rprint("[green]✓[/green] Database initialized!")


@app.command("serve")
def serve(
    host: str | None = typer.Option(None, "--host", help="Bind host (default: API_HOST)"),
    port: int | None = typer.Option(None, "--port", help="Bind port (default: API_PORT)"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on code changes"),
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "varc_analytics.api.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@app.command("config")
def show_config() -> None:
    """Show current configuration (non-sensitive)."""
    settings = get_settings()

    table = Table(title="Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    database = settings.database_url.split("@")[-1] if "@" in settings.database_url else settings.database_url
    table.add_row("Database", database)
    table.add_row("Taxonomy", str(settings.taxonomy_path))
    table.add_row("Diagnostics provider", settings.diagnostics_provider)
    table.add_row("Diagnostics model", settings.diagnostics_model)
    table.add_row("Diagnostics service", settings.diagnostics_service_url or "Not set")
    table.add_row("Gemini API Key", "***" if settings.gemini_api_key else "Not set")
    table.add_row("Diagnostics timeout", f"{settings.diagnostics_timeout_seconds}s")
    table.add_row("Pending batch limit", str(settings.pending_batch_limit))
    table.add_row("Log Level", settings.log_level)

    console.print(table)


@app.command("version")
def show_version() -> None:
    """Show version information."""
    rprint(f"[bold]varc-analytics[/bold] v{__version__}")
    rprint("  Session analytics and proficiency engine")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
