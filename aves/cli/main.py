"""
Typer CLI for the Aves learning engine.

Commands:
    aves due USER                 - Terms due for review
    aves review USER TERM -q 4    - Record a review
    aves stats USER               - Learner progress summary
    aves publish ID [ID ...]      - Publish approved annotations atomically
    aves estimate FEATURE SPECIES - Learned correction statistics
    aves content submit|approve|reject|fix|list|stats|quality
    aves module create|list
    aves cache clean|invalidate|clear
    aves db init                  - Initialize database tables
    aves info                     - Show configuration

Usage:
    aves --help
    aves content submit "el pico" "the beak" pico --box 0.4,0.2,0.1,0.1 --species flamenco
    aves module create Anatomy "Anatomía" --id anatomy-1
    aves publish 3f2a... 9bc1... --module anatomy-1 --generate
"""

from __future__ import annotations

import json
from functools import lru_cache

import typer
from loguru import logger
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from config import get_settings
from aves import __version__
from aves.core.errors import AvesError
from aves.core.logging_config import configure_logging
from aves.engine import LearningEngine
from aves.publishing import AnnotationStatus, BoundingBox

app = typer.Typer(
    help="aves: spaced repetition, generation cache and pattern learning for visual vocabulary",
    no_args_is_help=True,
)
console = Console()


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
) -> None:
    """Configure logging before any command runs."""
    configure_logging(level="DEBUG" if verbose else None)


@lru_cache(maxsize=1)
def _engine() -> LearningEngine:
    return LearningEngine.from_settings()


def _fail(error: AvesError) -> typer.Exit:
    rprint(f"[red]✗[/red] {error.message}")
    if error.details:
        rprint(f"  [dim]{json.dumps(error.details, default=str)}[/dim]")
    logger.debug(f"{type(error).__name__}: {error.details}")
    return typer.Exit(code=1)


def _parse_box(value: str) -> BoundingBox:
    try:
        x, y, width, height = (float(part) for part in value.split(","))
    except ValueError as e:
        raise typer.BadParameter("expected x,y,width,height") from e
    return BoundingBox(x=x, y=y, width=width, height=height)


# ========================================
# LEARNER COMMANDS
# ========================================


@app.command("due")
def due(
    user_id: str = typer.Argument(..., help="Learner id"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum terms to show"),
) -> None:
    """Show terms due for review, most urgent first."""
    try:
        due_terms = _engine().get_due_terms(user_id, limit)
    except AvesError as e:
        raise _fail(e)

    if not due_terms:
        rprint(f"[green]✓[/green] Nothing due for {user_id}")
        return

    table = Table(title=f"Due for {user_id} ({len(due_terms)})")
    table.add_column("Term", style="cyan")
    table.add_column("Spanish", style="bold")
    table.add_column("English")
    table.add_column("Overdue", justify="right")
    table.add_column("Mastery", justify="right")
    table.add_column("Interval", justify="right", style="dim")

    for item in due_terms:
        table.add_row(
            item.term.id[:12],
            item.term.spanish_term,
            item.term.english_term,
            f"{item.days_overdue}d",
            str(item.progress.mastery_level),
            f"{item.progress.interval_days}d",
        )
    console.print(table)


@app.command("review")
def review(
    user_id: str = typer.Argument(..., help="Learner id"),
    term_id: str = typer.Argument(..., help="Reviewed term"),
    quality: int = typer.Option(..., "--quality", "-q", help="SM-2 grade 0-5"),
    correct: bool | None = typer.Option(
        None, "--correct/--incorrect", help="Answer correctness (defaults to quality >= 3)"
    ),
) -> None:
    """Record one review result."""
    is_correct = correct if correct is not None else quality >= 3
    try:
        progress = _engine().record_review(user_id, term_id, is_correct, quality)
    except AvesError as e:
        raise _fail(e)

    rprint(f"[green]✓[/green] Review recorded for [cyan]{term_id}[/cyan]")
    rprint(f"  Next review: {progress.next_review_at:%Y-%m-%d %H:%M} (in {progress.interval_days}d)")
    rprint(f"  Ease factor: {progress.ease_factor:.2f}  Mastery: {progress.mastery_level}")
    rprint(f"  Streak: {progress.current_streak} (best {progress.longest_streak})")


@app.command("stats")
def stats(user_id: str = typer.Argument(..., help="Learner id")) -> None:
    """Show a learner's progress summary."""
    summary = _engine().scheduler.get_user_stats(user_id)

    table = Table(title=f"Progress for {user_id}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")
    for name, value in summary.to_dict().items():
        if name != "user_id":
            table.add_row(name.replace("_", " ").title(), str(value))
    console.print(table)


# ========================================
# PUBLISHING & STATISTICS
# ========================================


@app.command("publish")
def publish(
    annotation_ids: list[str] = typer.Argument(..., help="Approved annotation ids"),
    module_id: str | None = typer.Option(None, "--module", "-m", help="Learning module to assign"),
    generate: bool = typer.Option(False, "--generate", help="Warm the exercise cache afterwards"),
) -> None:
    """Publish approved annotations (all or nothing)."""
    engine = _engine()
    try:
        result = engine.publish(annotation_ids, module_id=module_id, generate_exercises=generate)
    except AvesError as e:
        raise _fail(e)

    table = Table(title="Publish batch")
    table.add_column("Annotation", style="cyan")
    table.add_column("Status")
    table.add_column("Reason", style="dim")
    colors = {"published": "green", "ready": "yellow", "not_found": "red", "invalid_state": "red"}
    for item in result.items:
        color = colors.get(item.status, "white")
        table.add_row(item.annotation_id, f"[{color}]{item.status}[/{color}]", item.reason or "")
    console.print(table)

    if not result.success:
        rprint(f"[red]✗[/red] Nothing published: {result.failed_count} item(s) failed validation")
        raise typer.Exit(code=1)

    rprint(f"[green]✓[/green] Published {result.published_count} annotation(s)")
    if result.warmup_scheduled and engine.publishing.warmer is not None:
        rprint("[dim]Warming exercise cache...[/dim]")
        engine.publishing.warmer.join()


@app.command("estimate")
def estimate(
    feature_type: str = typer.Argument(..., help="Feature type (e.g. pico)"),
    species_id: str = typer.Argument(..., help="Species id"),
) -> None:
    """Show learned correction statistics for a feature on a species."""
    est = _engine().get_estimate(feature_type, species_id)
    if est.count == 0 and not est.mean:
        rprint(f"[yellow]⚠[/yellow] No observations for {species_id}:{feature_type}")

    table = Table(title=f"{species_id}:{feature_type}")
    table.add_column("Dimension", style="cyan")
    table.add_column("Mean", justify="right")
    table.add_column("Variance", justify="right")
    for name, mean, variance in zip(("dx", "dy", "dwidth", "dheight"), est.mean, est.variance):
        table.add_row(name, f"{mean:+.4f}", f"{variance:.5f}")
    console.print(table)
    rprint(f"  Observations: {est.count}  Confidence: {est.confidence:.2f}  Occurrence: {est.occurrence_rate:.2f}")


# ========================================
# CONTENT COMMANDS
# ========================================

content_app = typer.Typer(help="Annotation review workflow")
app.add_typer(content_app, name="content")


@content_app.command("submit")
def content_submit(
    spanish: str = typer.Argument(..., help="Spanish term"),
    english: str = typer.Argument(..., help="English translation"),
    feature_type: str = typer.Argument(..., help="Anatomical feature"),
    box: str = typer.Option(..., "--box", help="x,y,width,height in 0-1 image coordinates"),
    species_id: str | None = typer.Option(None, "--species", help="Species id"),
    image_id: str | None = typer.Option(None, "--image", help="Image id"),
    annotation_id: str | None = typer.Option(None, "--id", help="Explicit annotation id"),
) -> None:
    """Submit a new annotation for review."""
    try:
        annotation = _engine().publishing.submit(
            spanish,
            english,
            feature_type,
            _parse_box(box),
            species_id=species_id,
            image_id=image_id,
            annotation_id=annotation_id,
        )
    except AvesError as e:
        raise _fail(e)
    rprint(f"[green]✓[/green] Submitted {annotation.id} ({annotation.spanish_term})")


@content_app.command("approve")
def content_approve(annotation_id: str = typer.Argument(...)) -> None:
    """Approve a pending annotation."""
    try:
        _engine().publishing.approve(annotation_id)
    except AvesError as e:
        raise _fail(e)
    rprint(f"[green]✓[/green] Approved {annotation_id}")


@content_app.command("reject")
def content_reject(
    annotation_id: str = typer.Argument(...),
    reason: str | None = typer.Option(None, "--reason", "-r", help="Why it was rejected"),
) -> None:
    """Reject a pending annotation."""
    try:
        _engine().publishing.reject(annotation_id, reason)
    except AvesError as e:
        raise _fail(e)
    rprint(f"[yellow]✓[/yellow] Rejected {annotation_id}")


@content_app.command("fix")
def content_fix(
    annotation_id: str = typer.Argument(...),
    box: str = typer.Option(..., "--box", help="Corrected x,y,width,height"),
) -> None:
    """Correct an annotation's bounding box."""
    try:
        annotation = _engine().publishing.fix_position(annotation_id, _parse_box(box))
    except AvesError as e:
        raise _fail(e)
    rprint(f"[green]✓[/green] Box updated for {annotation.id}")


@content_app.command("list")
def content_list(
    status: AnnotationStatus | None = typer.Option(None, "--status", "-s", help="Filter by status"),
    module_id: str | None = typer.Option(None, "--module", "-m"),
) -> None:
    """List annotations."""
    annotations = _engine().publishing.store.list(status=status, module_id=module_id)

    table = Table(title=f"Annotations ({len(annotations)})")
    table.add_column("Id", style="cyan")
    table.add_column("Spanish", style="bold")
    table.add_column("English")
    table.add_column("Feature")
    table.add_column("Status")
    table.add_column("Module", style="dim")
    for a in annotations:
        table.add_row(a.id, a.spanish_term, a.english_term, a.feature_type, a.status.value, a.module_id or "")
    console.print(table)


@content_app.command("stats")
def content_stats() -> None:
    """Show annotation counts by status and module."""
    data = _engine().publishing.get_content_stats()

    table = Table(title=f"Content ({data['total']} annotations)")
    table.add_column("Status", style="cyan")
    table.add_column("Count", justify="right")
    for name, count in data["by_status"].items():
        table.add_row(name, str(count))
    console.print(table)

    if data["published_by_module"]:
        modules = Table(title="Published by module")
        modules.add_column("Module", style="cyan")
        modules.add_column("Terms", justify="right")
        for name, count in sorted(data["published_by_module"].items()):
            modules.add_row(name, str(count))
        console.print(modules)


@content_app.command("quality")
def content_quality(
    annotation_id: str = typer.Argument(...),
    confidence: float | None = typer.Option(None, "--confidence", help="Annotator confidence 0-1"),
) -> None:
    """Score an annotation's box against approved placements."""
    try:
        quality = _engine().publishing.evaluate_annotation_quality(annotation_id, confidence)
    except AvesError as e:
        raise _fail(e)

    table = Table(title=f"Quality of {annotation_id}")
    table.add_column("Component", style="cyan")
    table.add_column("Score", justify="right")
    for name, value in quality.to_dict().items():
        table.add_row(name.replace("_", " "), f"{value:.3f}")
    console.print(table)


# ========================================
# MODULE COMMANDS
# ========================================

module_app = typer.Typer(help="Learning modules")
app.add_typer(module_app, name="module")


@module_app.command("create")
def module_create(
    title: str = typer.Argument(..., help="English title"),
    title_spanish: str = typer.Argument(..., help="Spanish title"),
    description: str | None = typer.Option(None, "--description", "-d"),
    difficulty: int = typer.Option(1, "--difficulty", help="Difficulty level (1 and up)"),
    species: list[str] = typer.Option([], "--species", help="Species covered (repeatable)"),
    module_id: str | None = typer.Option(None, "--id", help="Explicit module id"),
) -> None:
    """Create a learning module."""
    try:
        module = _engine().publishing.create_module(
            title,
            title_spanish,
            description=description,
            difficulty_level=difficulty,
            species_ids=species,
            module_id=module_id,
        )
    except AvesError as e:
        raise _fail(e)
    rprint(f"[green]✓[/green] Created module {module.id} ({module.title} / {module.title_spanish})")


@module_app.command("list")
def module_list() -> None:
    """List active learning modules with their published term counts."""
    publishing = _engine().publishing
    modules = publishing.get_learning_modules()
    content = publishing.get_content_by_module()

    table = Table(title=f"Learning modules ({len(modules)})")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Id", style="cyan")
    table.add_column("Title", style="bold")
    table.add_column("Spanish")
    table.add_column("Difficulty", justify="right")
    table.add_column("Terms", justify="right")
    for module in modules:
        table.add_row(
            str(module.order_index),
            module.id,
            module.title,
            module.title_spanish,
            str(module.difficulty_level),
            str(len(content.get(module.id, []))),
        )
    console.print(table)


# ========================================
# CACHE COMMANDS
# ========================================

cache_app = typer.Typer(help="Generation cache maintenance")
app.add_typer(cache_app, name="cache")


@cache_app.command("clean")
def cache_clean() -> None:
    """Remove expired cache entries."""
    removed = _engine().cache.clean_expired()
    rprint(f"[green]✓[/green] Removed {removed} expired entries")


@cache_app.command("invalidate")
def cache_invalidate(
    key: str = typer.Argument(..., help="Cache key, or a prefix with --prefix"),
    prefix: bool = typer.Option(False, "--prefix", help="Treat KEY as a prefix"),
) -> None:
    """Drop cached payloads."""
    cache = _engine().cache
    removed = cache.invalidate_prefix(key) if prefix else int(cache.invalidate(key))
    rprint(f"[green]✓[/green] Invalidated {removed} entr{'y' if removed == 1 else 'ies'}")


@cache_app.command("clear")
def cache_clear(yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation")) -> None:
    """Remove every cached payload."""
    if not yes and not typer.confirm("Remove every cached exercise?"):
        raise typer.Abort()
    removed = _engine().cache.clear()
    rprint(f"[green]✓[/green] Cleared {removed} entries")


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
    from aves.db.database import check_database_health, init_db

    logger.info("Initializing database tables...")
    status, error = check_database_health()
    if status != "ok":
        rprint(f"[red]✗[/red] Database unreachable: {error}")
        raise typer.Exit(code=1)
    init_db()
    rprint("[green]✓[/green] Database initialized!")


# ========================================
# INFO
# ========================================


@app.command("info")
def show_info() -> None:
    """Show configuration."""
    settings = get_settings()

    table = Table(title=f"aves v{__version__} Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Database URL", settings.database_url)
    table.add_row("Generation URL", settings.generation_api_url)
    table.add_row("Generation API Key", "***" if settings.generation_api_key else "Not set")
    table.add_row("Model", f"{settings.generation_model} ({settings.generation_model_version})")
    table.add_row("Cache TTL", f"{settings.cache_ttl_days} days")
    table.add_row("Allow Unpublish", str(settings.allow_unpublish))
    table.add_row("Log Level", settings.log_level)

    console.print(table)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
