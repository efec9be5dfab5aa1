"""
Typer CLI for the explore-cache service.

Commands:
    explore-cache key TOPIC LEVEL          - Show the cache identity for a topic+level
    explore-cache lookup TOPIC LEVEL       - Look up the shared question pool
    explore-cache gaps                     - List most-requested cache gaps (pre-warm candidates)
    explore-cache db init                  - Initialize database tables
    explore-cache backfill run JOB_ID      - Process one backfill job

Usage:
    explore-cache --help
    explore-cache key "Acute Kidney Injury overview" md3
    explore-cache gaps --type questions --limit 10
    explore-cache backfill run job_123
"""

from __future__ import annotations

import asyncio
import sys

import typer
from loguru import logger
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from config import get_settings
from explore_cache.cache.knowledge_cache import KnowledgeCache
from explore_cache.cache.normalize import build_cache_key, build_gap_id, normalize_topic_key
from explore_cache.db.database import dispose_engine, get_async_session_factory, init_db
from explore_cache.db.sql_store import SqlKeyedStore
from explore_cache.explore.backfill_processor import BackfillJobProcessor
from explore_cache.integrations.generation_client import HttpGenerationClient
from explore_cache.levels import get_assessment_level
from explore_cache.models import ContentType, JobStatus

app = typer.Typer(
    help="explore-cache CLI: shared quiz-content cache and backfill worker",
    no_args_is_help=True,
)

console = Console()


def configure_logging() -> None:
    """Route loguru to stderr (and the configured log file)."""
    settings = get_settings()
    logger.remove()
    logger.add(
        sys.stderr,
        level=settings.log_level,
        format="<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {message}",
    )
    if settings.log_file:
        logger.add(settings.log_file, level=settings.log_level, rotation="10 MB", retention=5)


def _sql_store() -> SqlKeyedStore:
    return SqlKeyedStore(get_async_session_factory())


# ========================================
# CACHE COMMANDS
# ========================================


@app.command("key")
def show_key(
    topic: str = typer.Argument(..., help="Raw topic string"),
    level: str = typer.Argument("MD3", help="Assessment level"),
    exam_type: str | None = typer.Option(None, "--exam", "-e", help="Exam type (insight identity)"),
) -> None:
    """Show how a topic+level is normalised into cache identities."""
    profile = get_assessment_level(level)

    table = Table(title="Cache Identity", show_header=True)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Topic key", normalize_topic_key(topic))
    table.add_row("Level", f"{profile.id} ({profile.label})")
    table.add_row("Difficulty band", f"{profile.min_difficulty:g}-{profile.max_difficulty:g}")
    table.add_row("Question pool key", build_cache_key(topic, level))
    if exam_type:
        table.add_row("Insight key", build_cache_key(topic, level, exam_type))
    table.add_row("Gap id (questions)", build_gap_id(topic, level, ContentType.QUESTIONS.value))

    console.print(table)


@app.command("lookup")
def lookup(
    topic: str = typer.Argument(..., help="Raw topic string"),
    level: str = typer.Argument("MD3", help="Assessment level"),
    show: int = typer.Option(10, "--show", "-n", help="Questions to list"),
) -> None:
    """Show the shared question pool for a topic+level (no hit counting)."""
    configure_logging()

    async def _run():
        cache = KnowledgeCache.from_settings(_sql_store(), get_settings())
        try:
            return await cache.get_pool(topic, level)
        finally:
            await dispose_engine()

    pool = asyncio.run(_run())
    if pool is None:
        rprint(f"[yellow]⚠[/yellow] No pool for {build_cache_key(topic, level)}")
        raise typer.Exit(code=1)

    rprint(
        f"[bold]{pool.topic_original}[/bold] ({pool.level}): "
        f"{pool.question_count} questions, {pool.hits} hits"
    )
    if pool.topic_aliases:
        rprint(f"  Aliases: {', '.join(pool.topic_aliases)}")

    table = Table(title=f"Questions (first {min(show, len(pool.questions))})", show_header=True)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Stem", style="cyan")
    table.add_column("Difficulty", justify="right")
    table.add_column("Model", style="dim")

    for i, question in enumerate(pool.questions[:show], start=1):
        stem = question.stem if len(question.stem) <= 80 else question.stem[:77] + "..."
        table.add_row(str(i), stem, f"{question.difficulty:g}", question.model_used or "-")

    console.print(table)


@app.command("gaps")
def list_gaps(
    content_type: ContentType | None = typer.Option(None, "--type", "-t", help="questions or insights"),
    include_filled: bool = typer.Option(False, "--include-filled", help="Also list filled gaps"),
    limit: int = typer.Option(20, "--limit", "-l", help="Max gaps to list"),
) -> None:
    """List the most-requested cache gaps."""
    configure_logging()

    async def _run():
        cache = KnowledgeCache.from_settings(_sql_store(), get_settings())
        try:
            return await cache.list_gaps(content_type, include_filled=include_filled, limit=limit)
        finally:
            await dispose_engine()

    gaps = asyncio.run(_run())
    if not gaps:
        rprint("[green]✓[/green] No open gaps")
        return

    table = Table(title=f"Cache Gaps ({len(gaps)})", show_header=True)
    table.add_column("Topic", style="cyan")
    table.add_column("Level")
    table.add_column("Type")
    table.add_column("Requests", justify="right", style="yellow")
    table.add_column("Last requested", style="dim")
    table.add_column("Filled", justify="center")

    for gap in gaps:
        table.add_row(
            gap.topic_original,
            gap.level,
            gap.content_type.value,
            str(gap.request_count),
            gap.last_requested_at.strftime("%Y-%m-%d %H:%M") if gap.last_requested_at else "-",
            "✓" if gap.filled else "",
        )

    console.print(table)


# ========================================
# DATABASE COMMANDS
# ========================================

db_app = typer.Typer(help="Database management")
app.add_typer(db_app, name="db")


@db_app.command("init")
def db_init() -> None:
    """
    Initialize database tables from SQLAlchemy models.

    Safe to run multiple times (idempotent).
    """
    configure_logging()
    logger.info("Initializing database tables...")

    async def _run() -> None:
        try:
            await init_db()
        finally:
            await dispose_engine()

    try:
        asyncio.run(_run())
    except Exception as e:
        logger.error("Database initialization failed: {}", e)
        raise typer.Exit(code=1)
    rprint("[green]✓[/green] Database initialized!")


# ========================================
# BACKFILL COMMANDS
# ========================================

backfill_app = typer.Typer(help="Explore quiz backfill worker")
app.add_typer(backfill_app, name="backfill")


@backfill_app.command("run")
def backfill_run(
    job_id: str = typer.Argument(..., help="Job id in the jobs collection"),
) -> None:
    """Claim and process one backfill job."""
    configure_logging()
    settings = get_settings()

    async def _run():
        generator = HttpGenerationClient.from_settings(settings)
        try:
            processor = BackfillJobProcessor.from_settings(_sql_store(), generator, settings)
            return await processor.process(job_id)
        finally:
            await generator.close()
            await dispose_engine()

    outcome = asyncio.run(_run())

    if not outcome.claimed:
        status = outcome.status.value if outcome.status else "missing"
        rprint(f"[yellow]⚠[/yellow] Job {job_id} not processed (status: {status})")
        return

    table = Table(title=f"Backfill {job_id}", show_header=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right", style="green")
    table.add_row("Status", outcome.status.value if outcome.status else "-")
    table.add_row("Questions", str(outcome.final_count))
    table.add_row("Remaining", str(outcome.remaining_count))
    console.print(table)

    if outcome.status == JobStatus.FAILED:
        raise typer.Exit(code=1)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
