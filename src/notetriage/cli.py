"""Command-line interface for notetriage.

Provides commands for configuration validation, rule classification,
LLM re-classification, review actions and the API server.

Usage:
    python -m notetriage validate-config
    python -m notetriage classify "We decided to use SQLite for storage"
    python -m notetriage reclassify --limit 10 --dry-run
    python -m notetriage pending
    python -m notetriage serve
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from notetriage.classifier.taxonomy import NOTE_TYPES
from notetriage.config import config_path as config_path_default
from notetriage.config import validate_config_file
from notetriage.core.logging import configure_logging, configure_logging_from_config

if TYPE_CHECKING:
    from notetriage.engine.reclassify import ReclassifyBatchResult, ReviewPage
    from notetriage.services import Services

console = Console()


async def _init_cli_deps() -> Services:
    """Load config and build the shared services.

    Prints actionable error messages and calls sys.exit(1) on failure.
    """
    from notetriage.config import get_config
    from notetriage.core.errors import ConfigLoadError, ConfigValidationError, DatabaseError
    from notetriage.services import build_services

    # 1. Load config
    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Fix config/config.yaml or run [cyan]validate-config[/cyan] for details."
        )
        sys.exit(1)

    # 2. Initialize database and engines
    try:
        return await build_services(config)
    except DatabaseError as e:
        console.print(
            f"[red]Database error:[/red] {e}\n\n"
            f"Check that {config.database.path} is writable."
        )
        sys.exit(1)


def _run_async(factory: Callable[[], Awaitable[Any]]) -> None:
    """Run an async command body with the standard exit code handling."""
    try:
        asyncio.run(factory())
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


def _confidence_style(confidence: float) -> str:
    if confidence >= 0.85:
        return "green"
    if confidence >= 0.7:
        return "yellow"
    return "red"


def _print_review_page(title: str, page: ReviewPage) -> None:
    if not page.items:
        console.print(f"[dim]{title}: nothing to review.[/dim]")
        return

    table = Table(title=f"{title} ({page.count})")
    table.add_column("ID", justify="right")
    table.add_column("Note")
    table.add_column("Current")
    table.add_column("Suggested")
    table.add_column("Confidence", justify="right")
    table.add_column("Reasoning")
    for item in page.items:
        style = _confidence_style(item.confidence)
        table.add_row(
            str(item.id),
            item.title,
            item.current_type or "-",
            item.suggested_type,
            f"[{style}]{item.confidence:.0%}[/{style}]",
            item.reasoning,
        )
    console.print(table)


def _print_batch_result(result: ReclassifyBatchResult) -> None:
    table = Table(title=f"Batch {result.batch_id[:8]}...")
    table.add_column("Note")
    table.add_column("Type")
    table.add_column("Confidence", justify="right")
    table.add_column("Status")
    table.add_column("Detail")
    for item in result.items:
        detail = item.error_message if item.status == "error" else item.reasoning
        if item.fallback_used:
            detail = f"[dim]{detail}[/dim]"
        table.add_row(
            item.note_id,
            item.note_type,
            f"{item.confidence:.0%}",
            item.status,
            detail or "",
        )
    console.print(table)

    console.print(f"\n[bold]Re-classification Summary[/bold] ({result.duration_ms}ms)")
    console.print(f"  Executed:               {result.executed}")
    console.print(f"  Auto-applied:           {result.count('auto_applied')}")
    console.print(f"  Auto-applied (notify):  {result.count('auto_applied_notified')}")
    console.print(f"  Pending review:         {result.count('pending')}")
    console.print(f"  Errors:                 {result.count('error')}")
    if not result.inference_available:
        console.print("  [yellow]Inference server unavailable: rule fallback used[/yellow]")
    if result.dry_run:
        console.print("  [cyan]Dry-run: nothing was saved[/cyan]")


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """notetriage - rule and LLM classification for notes."""
    # Console rendering here; serve switches to the configured format
    configure_logging("DEBUG" if debug else "INFO", json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Config file (default: $NOTETRIAGE_CONFIG_PATH or config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Check a config file against the schema and print a summary."""
    console.print(f"Checking [cyan]{config_path or config_path_default()}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("classify")
@click.argument("text")
def classify_text(text: str) -> None:
    """Classify TEXT with the rule classifier (nothing is saved)."""
    from notetriage.classifier.policy import classify, needs_reinference, search_priority
    from notetriage.classifier.rules import RuleClassifier

    result = RuleClassifier().classify(text)
    final = classify(result)
    detail = result.confidence_detail

    console.print(f"[bold]Type:[/bold]        {result.note_type}")
    console.print(f"[bold]Intent:[/bold]      {result.intent}")
    style = _confidence_style(result.confidence)
    console.print(f"[bold]Confidence:[/bold]  [{style}]{result.confidence:.2f}[/{style}]")
    console.print(
        f"  structural={detail.structural:.2f} experiential={detail.experiential:.2f} "
        f"temporal={detail.temporal:.2f}"
    )
    console.print(f"[bold]Decay:[/bold]       {result.decay_profile}")
    console.print(f"[bold]Reasoning:[/bold]   {result.reasoning}")
    secondary = ", ".join(final.secondary_types) or "-"
    console.print(
        f"[bold]Policy:[/bold]      {final.primary_type} "
        f"(secondary: {secondary}, reliability: {final.reliability}, "
        f"priority: {search_priority(final)})"
    )
    if needs_reinference(result, final):
        console.print("[yellow]Would be a re-classification candidate[/yellow]")


@cli.command("candidates")
@click.option("--limit", default=None, type=int, help="Maximum candidates")
@click.option("--threshold", default=None, type=float, help="Low-confidence threshold")
def candidates(limit: int | None, threshold: float | None) -> None:
    """List notes the next re-classification run would process."""
    _run_async(lambda: _run_candidates(limit, threshold))


async def _run_candidates(limit: int | None, threshold: float | None) -> None:
    deps = await _init_cli_deps()
    try:
        selected = await deps.candidates.select(limit=limit, confidence_threshold=threshold)
        estimate = await deps.engine.estimate(limit)
    finally:
        await deps.aclose()

    if not selected:
        console.print("[dim]No candidates.[/dim]")
        return

    table = Table(title=f"Candidates ({len(selected)})")
    table.add_column("Note")
    table.add_column("Title")
    table.add_column("Current")
    table.add_column("Confidence", justify="right")
    table.add_column("Reason")
    for candidate in selected:
        confidence = (
            f"{candidate.current_confidence:.0%}"
            if candidate.current_confidence is not None
            else "-"
        )
        table.add_row(
            candidate.note_id,
            candidate.title,
            candidate.current_type or "-",
            confidence,
            candidate.reason,
        )
    console.print(table)
    console.print(f"Estimated time: ~{estimate['estimated_time_seconds']}s")


@cli.command("reclassify")
@click.option("--note-id", "note_ids", multiple=True, help="Specific note (repeatable)")
@click.option("--stale", is_flag=True, help="Notes whose baseline needs re-inference")
@click.option("--limit", default=None, type=int, help="Maximum notes per batch")
@click.option("--dry-run", "is_dry_run", is_flag=True, help="Don't save any results")
@click.option("--model", default=None, help="Model override for this run")
@click.option("--seed", default=None, type=int, help="Sampling seed")
@click.option("--watch", is_flag=True, help="Keep running on the configured interval")
def reclassify(
    note_ids: tuple[str, ...],
    stale: bool,
    limit: int | None,
    is_dry_run: bool,
    model: str | None,
    seed: int | None,
    watch: bool,
) -> None:
    """Re-classify candidate notes with the local LLM.

    Without --watch, runs a single batch and exits. With --watch, runs a
    batch every batch.schedule_interval_minutes until interrupted. --stale
    targets low-confidence baselines instead of the candidate pools.
    """
    if stale and (note_ids or watch):
        raise click.UsageError("--stale cannot be combined with --note-id or --watch")
    if watch:
        try:
            asyncio.run(_run_reclassify_watch(limit, model, seed))
        except KeyboardInterrupt:
            console.print("\n[yellow]Stopped.[/yellow]")
            sys.exit(0)
        except SystemExit:
            raise
        except Exception as e:
            console.print(f"\n[red]Error:[/red] {e}")
            sys.exit(1)
    else:
        _run_async(
            lambda: _run_reclassify_once(list(note_ids), stale, limit, is_dry_run, model, seed)
        )


async def _run_reclassify_once(
    note_ids: list[str],
    stale: bool,
    limit: int | None,
    is_dry_run: bool,
    model: str | None,
    seed: int | None,
) -> None:
    deps = await _init_cli_deps()
    try:
        if is_dry_run:
            console.print("[cyan]Dry-run mode:[/cyan] results will not be saved\n")
        targets: list[str] | None = note_ids or None
        if stale:
            targets = await deps.baseline.note_ids_needing_reinference()
            console.print(f"{len(targets)} note(s) need re-inference")
        result = await deps.engine.run_batch(
            note_ids=targets,
            limit=limit,
            dry_run=is_dry_run,
            model=model,
            seed=seed,
        )
    finally:
        await deps.aclose()

    _print_batch_result(result)


async def _run_reclassify_watch(limit: int | None, model: str | None, seed: int | None) -> None:
    """Run batches on an interval with APScheduler until SIGINT/SIGTERM."""
    import signal

    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    from notetriage.config import get_config, reload_config_if_changed

    deps = await _init_cli_deps()
    interval = deps.config.batch.schedule_interval_minutes

    async def run_batch():
        if reload_config_if_changed():
            deps.engine.update_config(get_config())
        try:
            result = await deps.engine.run_batch(limit=limit, model=model, seed=seed)
        except Exception as e:
            console.print(f"[red]Batch failed:[/red] {e}")
            return
        console.print(
            f"[dim]Batch {result.batch_id[:8]}...[/dim] "
            f"executed={result.executed} auto={result.count('auto_applied')} "
            f"notify={result.count('auto_applied_notified')} "
            f"pending={result.count('pending')} errors={result.count('error')} "
            f"({result.duration_ms}ms)"
        )

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_batch,
        "interval",
        minutes=interval,
        id="reclassify_batch",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()

    console.print(f"Re-classifying every {interval} minutes. Press Ctrl+C to stop.")

    # Wait until interrupted
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    try:
        await stop_event.wait()
    finally:
        scheduler.shutdown(wait=False)
        await deps.aclose()


@cli.command("pending")
@click.option("--limit", default=20, type=int, help="Maximum items")
@click.option("--offset", default=0, type=int, help="Items to skip")
def pending(limit: int, offset: int) -> None:
    """List LLM results awaiting review, plus auto-applied ones to confirm."""
    _run_async(lambda: _run_pending(limit, offset))


async def _run_pending(limit: int, offset: int) -> None:
    deps = await _init_cli_deps()
    try:
        pending_page = await deps.engine.list_pending(limit=limit, offset=offset)
        notified_page = await deps.engine.list_auto_applied_notified(limit=limit, offset=offset)
    finally:
        await deps.aclose()

    _print_review_page("Pending review", pending_page)
    _print_review_page("Auto-applied, please confirm", notified_page)


@cli.command("approve")
@click.argument("result_id", type=int)
def approve(result_id: int) -> None:
    """Approve LLM result RESULT_ID."""
    _run_async(lambda: _run_approve(result_id))


async def _run_approve(result_id: int) -> None:
    deps = await _init_cli_deps()
    try:
        record = await deps.engine.approve(result_id)
    finally:
        await deps.aclose()
    console.print(
        f"[green]✓[/green] Approved result {result_id}: "
        f"{record.note_id} is now [bold]{record.result.note_type}[/bold]"
    )


@cli.command("override")
@click.argument("result_id", type=int)
@click.argument("note_type", type=click.Choice(NOTE_TYPES))
@click.option("--reason", default=None, help="Why the suggestion was wrong")
def override(result_id: int, note_type: str, reason: str | None) -> None:
    """Override LLM result RESULT_ID with NOTE_TYPE."""
    _run_async(lambda: _run_override(result_id, note_type, reason))


async def _run_override(result_id: int, note_type: str, reason: str | None) -> None:
    deps = await _init_cli_deps()
    try:
        record = await deps.engine.override(result_id, note_type, reason)
    finally:
        await deps.aclose()
    console.print(
        f"[green]✓[/green] Overrode result {result_id}: {record.note_id} "
        f"{record.result.note_type} -> [bold]{note_type}[/bold]"
    )


@cli.command("scan-promotions")
@click.option("--limit", default=None, type=int, help="Maximum notes to scan")
def scan_promotions(limit: int | None) -> None:
    """Look for scratch notes worth promoting and store suggestions."""
    _run_async(lambda: _run_scan_promotions(limit))


async def _run_scan_promotions(limit: int | None) -> None:
    deps = await _init_cli_deps()
    try:
        created = await deps.detector.scan_batch(limit)
        pending_promotions = await deps.detector.list_pending()
    finally:
        await deps.aclose()

    console.print(f"[green]✓[/green] {len(created)} new suggestion(s)")
    for record in pending_promotions:
        console.print(
            f"  #{record.id} {record.note_title or record.note_id}: "
            f"scratch -> [bold]{record.suggested_type}[/bold] ({record.reason})"
        )


@cli.command("weekly-summary")
def weekly_summary() -> None:
    """Show this week's LLM re-classification activity."""
    _run_async(_run_weekly_summary)


async def _run_weekly_summary() -> None:
    deps = await _init_cli_deps()
    try:
        summary = await deps.engine.weekly_summary()
    finally:
        await deps.aclose()

    console.print(
        f"\n[bold]Weekly Summary[/bold] ({summary.week_start} to {summary.week_end})"
    )
    console.print(f"  Auto-applied (high):  {summary.auto_applied_high}")
    console.print(f"  Auto-applied (mid):   {summary.auto_applied_mid}")
    console.print(f"  Pending:              {summary.pending}")
    console.print(f"  Approved:             {summary.approved}")
    console.print(f"  Overridden:           {summary.overridden}")
    console.print(f"  Errors:               {summary.error}")

    if summary.recent_auto_applied:
        console.print("\n[bold]Recently auto-applied[/bold]")
        for item in summary.recent_auto_applied:
            console.print(f"  #{item.id} {item.title} -> {item.suggested_type}")
    if summary.pending_items:
        console.print("\n[bold]Oldest pending[/bold]")
        for item in summary.pending_items:
            console.print(
                f"  #{item.id} {item.title} -> {item.suggested_type} ({item.confidence:.0%})"
            )


@cli.command("health")
def health() -> None:
    """Check the inference server and the configured model."""
    _run_async(_run_health)


async def _run_health() -> None:
    from notetriage.classifier.llm_client import OllamaClient
    from notetriage.config import get_config

    config = get_config()
    client = OllamaClient.from_config(config.ollama)
    try:
        status = await client.check_health()
    finally:
        await client.aclose()

    if status.available and status.model_loaded:
        console.print(f"[green]✓[/green] {status.message}")
        return

    console.print(f"[red]✗[/red] {status.message}")
    if status.installed_models:
        console.print(f"  Installed models: {', '.join(status.installed_models)}")
    sys.exit(1)


@cli.command("serve")
@click.option(
    "--host",
    default="127.0.0.1",
    help="Interface to listen on (default 127.0.0.1)",
)
@click.option(
    "--port",
    default=8000,
    type=int,
    help="Port to bind to",
)
def serve(host: str, port: int) -> None:
    """Start the review API server.

    Runs scheduled re-classification alongside the API when
    batch.schedule_enabled is set.
    """
    import uvicorn

    from notetriage.web.app import create_app

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] the review API has no authentication and is now "
            "reachable from the network. Prefer 127.0.0.1."
        )

    from notetriage.config import get_config
    from notetriage.core.errors import ConfigLoadError, ConfigValidationError

    try:
        configure_logging_from_config(get_config().logging)
    except (ConfigLoadError, ConfigValidationError):
        # Startup reports the config error through /api/health
        configure_logging(log_level="INFO", json_output=True)

    app = create_app()
    console.print(f"Review API listening on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


def main() -> None:
    """Console script entry point. Reads .env before any command runs."""
    load_dotenv()
    cli()


if __name__ == "__main__":
    main()
