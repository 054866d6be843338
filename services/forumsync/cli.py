"""
CLI interface for the forum sync system.

Provides commands for:
- Manual course syncs and full resyncs
- Search over synced discussions
- Sync state, vector statistics and health checks
- Maintenance (stuck-sync reset, old state cleanup)
- Running the background scheduler

The Ed token is read from ED_TOKEN (a .env file is loaded if present).

Usage Examples:
    # Delta sync every active course, with verbose logs
    python -m services.forumsync.cli sync --all --verbose

    # Full sync of one course
    python -m services.forumsync.cli sync --course 1234 --full

    # Search a course
    python -m services.forumsync.cli search CS-250 "dynamic programming"
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import Config
from .ed_client import EdClient, EnvTokenProvider, StaticTokenProvider
from .state_store import SyncType
from .utils import ForumSyncError, setup_detailed_logging, setup_logging

app = typer.Typer(
    name="forumsync",
    help="Ed Discussion Forum Sync CLI",
    add_completion=False,
)

console = Console()

TOKEN_ENV_VAR = "ED_TOKEN"


def _load_config(config_path: Optional[Path]) -> Config:
    load_dotenv()
    try:
        config = Config.load(config_path)
    except Exception as e:
        console.print(f"[red]Error loading config: {e}[/red]")
        raise typer.Exit(1)
    return config


def _configure_logging(config: Config, verbose: bool = False, debug: bool = False) -> None:
    if debug:
        setup_detailed_logging(level="DEBUG", log_file=config.logging.file)
    else:
        setup_logging(
            level="DEBUG" if verbose else config.logging.level,
            log_file=config.logging.file,
            max_size_mb=config.logging.max_size_mb,
            backup_count=config.logging.backup_count,
            verbose=not verbose,
        )


def _require_token() -> str:
    try:
        return EnvTokenProvider(TOKEN_ENV_VAR)()
    except ForumSyncError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def _build_orchestrator(config: Config):
    from .orchestrator import SyncOrchestrator

    return SyncOrchestrator.from_config(config)


# =============================================================================
# Sync Commands
# =============================================================================

@app.command("sync")
def sync_courses(
    course_id: Optional[int] = typer.Option(
        None,
        "--course", "-C",
        help="Ed course ID to sync",
    ),
    all_courses: bool = typer.Option(
        False,
        "--all", "-a",
        help="Sync all active courses for this year",
    ),
    full: bool = typer.Option(
        False,
        "--full", "-f",
        help="Full sync instead of delta sync",
    ),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to sync_config.yaml",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Enable verbose output",
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug logging (most detailed)",
    ),
):
    """
    Sync Ed discussions into the vector store.

    Delta syncs fetch threads updated since the last successful sync.
    """
    config = _load_config(config_path)
    _configure_logging(config, verbose, debug)
    token = _require_token()
    sync_type = SyncType.FULL if full else SyncType.DELTA

    with _build_orchestrator(config) as orchestrator:
        if course_id is not None:
            with EdClient.from_config(config.ed, StaticTokenProvider(token)) as client:
                _, courses = client.get_user_and_courses()
            course = next((c.course for c in courses if c.course.id == course_id), None)
            if course is None:
                console.print(f"[red]Course {course_id} not found among your courses[/red]")
                raise typer.Exit(1)

            console.print(f"[blue]Syncing {course.code} ({course.name}), {sync_type.value} sync[/blue]")
            try:
                workflow_id = orchestrator.start_course_sync(
                    course.id, course.name, course.code, sync_type, token,
                    force_full_sync=full,
                )
                report = orchestrator.wait_for_workflow(workflow_id)
            except ForumSyncError as e:
                console.print(f"[red]✗ {e}[/red]")
                raise typer.Exit(1)

            console.print(Panel(
                f"[green]Sync Complete[/green]\n\n"
                f"Threads: {report.total_threads}\n"
                f"Documents upserted: {report.upserted}\n"
                f"Failed threads: {len(report.failed_thread_ids)}\n"
                f"Errors: {len(report.errors)}\n"
                f"Duration: {report.duration_seconds:.1f}s",
                title="Sync Results",
                box=box.ROUNDED,
            ))

        elif all_courses:
            console.print(f"[blue]Starting {sync_type.value} sync for all active courses[/blue]")
            try:
                result = orchestrator.sync_all_active_courses(sync_type, token, force_full_sync=full)
            except ForumSyncError as e:
                console.print(f"[red]✗ {e}[/red]")
                raise typer.Exit(1)

            for workflow_id in result.workflow_ids:
                try:
                    orchestrator.wait_for_workflow(workflow_id)
                except Exception as e:
                    console.print(f"[red]✗ Workflow {workflow_id}: {e}[/red]")

            console.print(
                f"[green]✓ Started {result.started_syncs}/{result.total_courses} syncs "
                f"({len(result.skipped_course_ids)} skipped)[/green]"
            )
            _print_states(orchestrator.get_all_sync_states())

        else:
            console.print("[yellow]Specify --course ID or --all[/yellow]")
            raise typer.Exit(1)


@app.command("resync")
def force_resync(
    course_id: int = typer.Argument(..., help="Ed course ID"),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to sync_config.yaml",
    ),
    force: bool = typer.Option(
        False,
        "--force", "-f",
        help="Skip confirmation",
    ),
):
    """Delete a course's documents and rebuild them with a full sync."""
    config = _load_config(config_path)
    _configure_logging(config)
    token = _require_token()

    if not force and not typer.confirm(f"Delete all documents for course {course_id} and resync?"):
        console.print("[blue]Cancelled[/blue]")
        raise typer.Exit(0)

    with _build_orchestrator(config) as orchestrator:
        state = orchestrator.get_course_sync_state(course_id)
        name = state.course_name if state else f"Course {course_id}"
        code = state.course_code if state else ""

        result = orchestrator.force_full_resync(course_id, name, code, token)
        if not result.success:
            console.print(f"[red]✗ {result.message}[/red]")
            raise typer.Exit(1)

        console.print(f"[blue]{result.message}[/blue]")
        try:
            orchestrator.wait_for_workflow(result.workflow_id)
        except Exception as e:
            console.print(f"[red]✗ Resync failed: {e}[/red]")
            raise typer.Exit(1)

        console.print("[green]✓ Resync complete[/green]")


@app.command("start")
def start_scheduler(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to sync_config.yaml",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Enable verbose output",
    ),
):
    """
    Start the background scheduler.

    Runs periodic delta syncs and the maintenance sweeps until stopped.
    """
    config = _load_config(config_path)
    _configure_logging(config, verbose)

    if not config.scheduler.enabled:
        console.print("[yellow]Scheduler is disabled (scheduler.enabled: false)[/yellow]")
        raise typer.Exit(0)

    _require_token()

    from .scheduler import SyncScheduler

    orchestrator = _build_orchestrator(config)
    scheduler = SyncScheduler(orchestrator, EnvTokenProvider(TOKEN_ENV_VAR), config.scheduler)

    console.print(Panel(
        f"[green]Scheduler Started[/green]\n\n"
        f"Delta sync every {config.scheduler.delta_sync_interval_minutes} min\n"
        f"Stuck-sync sweep every {config.scheduler.stuck_sweep_interval_minutes} min\n"
        f"Cleanup every {config.scheduler.cleanup_interval_hours} h\n"
        f"Press Ctrl+C to stop",
        title="Scheduler Status",
        box=box.ROUNDED,
    ))

    scheduler.start()
    try:
        scheduler.wait()
    finally:
        orchestrator.close()


# =============================================================================
# Search Commands
# =============================================================================

@app.command("search")
def search_course(
    course_code: str = typer.Argument(..., help="Course code, e.g. CS-250"),
    query: str = typer.Argument(..., help="Search query"),
    top_k: int = typer.Option(5, "--top-k", "-k", help="Number of results"),
    content_type: Optional[list[str]] = typer.Option(
        None,
        "--type", "-t",
        help="Filter by document type (thread, answer, comment)",
    ),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to sync_config.yaml",
    ),
):
    """Search a course's synced discussions semantically."""
    config = _load_config(config_path)
    _configure_logging(config)
    token = _require_token()

    from .search import CourseSearcher

    with _build_orchestrator(config) as orchestrator:
        searcher = CourseSearcher(orchestrator.vectors, orchestrator.client_factory, token)
        response = searcher.search_in_course(course_code, query, top_k=top_k, content_types=content_type)

    if not response.success:
        console.print(f"[red]{response.message}[/red]")
        raise typer.Exit(1)

    if not response.results:
        console.print("[yellow]No results found[/yellow]")
        return

    console.print(f"\n[blue]Found {len(response.results)} results in {response.course_code}[/blue]\n")

    for i, hit in enumerate(response.results, 1):
        console.print(Panel(
            f"[green]{hit.title or hit.type}[/green]\n\n"
            f"Type: {hit.type} | Thread: {hit.thread_id}\n"
            f"Score: {hit.score:.3f}\n\n"
            f"[dim]{hit.content[:500]}{'...' if len(hit.content) > 500 else ''}[/dim]",
            title=f"Result {i}",
            box=box.ROUNDED,
        ))


# =============================================================================
# Status Commands
# =============================================================================

def _print_states(states) -> None:
    table = Table(title="Sync States", box=box.ROUNDED)
    table.add_column("Course", style="cyan")
    table.add_column("Code", style="green")
    table.add_column("Status", style="white")
    table.add_column("Type", style="magenta")
    table.add_column("Last Sync", style="yellow")
    table.add_column("Last Success", style="yellow")
    table.add_column("Synced", style="blue")
    table.add_column("Error", style="red")

    colors = {"completed": "green", "failed": "red", "syncing": "blue", "idle": "dim"}

    for state in states:
        color = colors.get(state.status.value, "white")
        table.add_row(
            f"{state.course_id} {state.course_name}",
            state.course_code,
            f"[{color}]{state.status.value}[/{color}]",
            state.sync_type.value,
            state.last_sync_at.strftime("%Y-%m-%d %H:%M") if state.last_sync_at else "-",
            state.last_successful_sync_at.strftime("%Y-%m-%d %H:%M") if state.last_successful_sync_at else "-",
            f"{state.synced_threads or 0}/{state.total_threads or 0}",
            (state.error_message or "")[:60],
        )

    console.print(table)


@app.command("status")
def show_status(
    course_id: Optional[int] = typer.Option(
        None,
        "--course", "-C",
        help="Show a single course",
    ),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to sync_config.yaml",
    ),
):
    """Show sync state for all courses."""
    config = _load_config(config_path)
    _configure_logging(config)

    from .state_store import SyncStateStore

    store = SyncStateStore(config.state.path)

    if course_id is not None:
        state = store.get(course_id)
        if state is None:
            console.print(f"[yellow]No sync state for course {course_id}[/yellow]")
            raise typer.Exit(1)
        states = [state]
    else:
        states = store.get_all()

    if not states:
        console.print("[yellow]No courses synced yet[/yellow]")
        return

    _print_states(states)


@app.command("stats")
def vector_stats(
    course_id: int = typer.Argument(..., help="Ed course ID"),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to sync_config.yaml",
    ),
):
    """Show document counts for a course."""
    config = _load_config(config_path)
    _configure_logging(config)

    with _build_orchestrator(config) as orchestrator:
        result = orchestrator.get_course_vector_stats(course_id)

    if not result.success:
        console.print(f"[red]{result.message}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Course {course_id} Documents", box=box.ROUNDED)
    table.add_column("Type", style="cyan")
    table.add_column("Count", style="green")

    table.add_row("Threads", str(result.stats.thread_count))
    table.add_row("Answers", str(result.stats.answer_count))
    table.add_row("Comments", str(result.stats.comment_count))
    table.add_row("Total", str(result.stats.total))

    console.print(table)


@app.command("health")
def health_check(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to sync_config.yaml",
    ),
):
    """Check that the Ed token works."""
    config = _load_config(config_path)
    _configure_logging(config)

    with _build_orchestrator(config) as orchestrator:
        health = orchestrator.get_health_status(os.getenv(TOKEN_ENV_VAR, ""))

    status = "[green]✓[/green]" if health.is_healthy else "[red]✗[/red]"
    courses = f" ({health.courses_count} courses)" if health.courses_count is not None else ""
    console.print(f"  {status} Ed API: {health.message}{courses}")

    if not health.is_healthy:
        raise typer.Exit(1)


# =============================================================================
# Maintenance Commands
# =============================================================================

@app.command("reset-stuck")
def reset_stuck(
    max_hours: Optional[float] = typer.Option(
        None,
        "--max-hours",
        help="Syncs running longer than this are failed (default from config)",
    ),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to sync_config.yaml",
    ),
):
    """Mark long-running syncs as failed."""
    config = _load_config(config_path)
    _configure_logging(config)

    from .state_store import SyncStateStore

    store = SyncStateStore(config.state.path)
    count = store.reset_stuck(max_hours if max_hours is not None else config.sync.stuck_sync_hours)
    console.print(f"[green]Reset {count} stuck syncs[/green]")


@app.command("cleanup")
def cleanup(
    older_than_days: Optional[float] = typer.Option(
        None,
        "--days",
        help="Delete finished sync records older than this (default from config)",
    ),
    course_id: Optional[int] = typer.Option(
        None,
        "--course", "-C",
        help="Delete this course's sync record and documents instead",
    ),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to sync_config.yaml",
    ),
    force: bool = typer.Option(
        False,
        "--force", "-f",
        help="Skip confirmation",
    ),
):
    """Delete old sync records, or everything stored for one course."""
    config = _load_config(config_path)
    _configure_logging(config)

    if course_id is None:
        from .state_store import SyncStateStore

        store = SyncStateStore(config.state.path)
        days = older_than_days if older_than_days is not None else config.sync.cleanup_days
        count = store.cleanup_completed(days)
        console.print(f"[green]Deleted {count} sync records older than {days} days[/green]")
        return

    if not force and not typer.confirm(f"Delete all documents and sync state for course {course_id}?"):
        console.print("[blue]Cancelled[/blue]")
        raise typer.Exit(0)

    with _build_orchestrator(config) as orchestrator:
        result = orchestrator.cleanup_course_vectors(course_id)
        if not result.success:
            console.print(f"[red]{result.message}[/red]")
            raise typer.Exit(1)
        orchestrator.delete_course_sync(course_id)

    console.print(f"[green]{result.message}[/green]")


@app.command("validate-config")
def validate_config(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config", "-c",
        help="Path to sync_config.yaml",
    ),
):
    """Validate configuration file."""
    config = _load_config(config_path)
    setup_logging(level="INFO", log_file=config.logging.file)

    errors = config.validate()

    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  • {error}")
        raise typer.Exit(1)

    console.print("[green]✓ Configuration is valid[/green]")
    console.print(f"\nEd API: {config.ed.base_url}")


# =============================================================================
# Entry Point
# =============================================================================

def main():
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
