"""Main CLI entry point for codehive."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Coroutine
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__, db
from .branches import GitBranchManager
from .config import Settings, get_settings
from .decisions import DecisionGate, QueryCreate, QueryFilters
from .engine import CycleEngine, FeatureRequest, PhaseOutcome
from .errors import CodeHiveError
from .events import EventEmitter, ExecutionLogHandler, RedisEventPublisher
from .logging_setup import configure_logging
from .models import CommentAuthor, QueryPriority, QueryStatus, QueryType, QueryUrgency
from .redis_client import create_redis_client
from .snapshots import SnapshotStore

console = Console()

T = TypeVar("T")


@dataclass
class Services:
    settings: Settings
    session_factory: db.SessionFactory
    events: EventEmitter
    gate: DecisionGate
    snapshots: SnapshotStore
    engine: CycleEngine


@asynccontextmanager
async def open_services(settings: Settings) -> AsyncIterator[Services]:
    """Wire the orchestrator for one command invocation."""
    engine = db.create_engine(settings.database_url)
    session_factory = db.create_session_factory(engine)
    events = EventEmitter()
    events.on_event(ExecutionLogHandler(session_factory))

    redis = None
    if settings.redis_events_enabled:
        redis = create_redis_client(settings.redis_url)
        events.on_event(RedisEventPublisher(redis))

    gate = DecisionGate(session_factory, events)
    snapshots = SnapshotStore(settings.project_path, session_factory, settings)
    cycle_engine = CycleEngine(
        settings.project_id,
        session_factory,
        GitBranchManager(settings.project_path),
        snapshot_store=snapshots,
        decision_gate=gate,
        events=events,
        settings=settings,
    )
    try:
        yield Services(settings, session_factory, events, gate, snapshots, cycle_engine)
        await events.drain()
    finally:
        if redis is not None:
            await redis.aclose()
        await engine.dispose()


def run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine, reporting orchestrator errors as CLI errors."""
    try:
        return asyncio.run(coro)
    except CodeHiveError as exc:
        raise click.ClickException(str(exc)) from exc


def _phase_style(value: str) -> str:
    return {"RED": "red", "GREEN": "green", "REFACTOR": "blue", "REVIEW": "magenta"}.get(
        value, "white"
    )


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """CodeHive feature-cycle orchestrator.

    Drive features through RED, GREEN, REFACTOR and REVIEW, gated on decisions.
    """
    configure_logging(get_settings().log_level)


@main.command(name="init-db")
def init_db() -> None:
    """Create database tables (for development)."""

    async def do_init() -> None:
        settings = get_settings()
        engine = db.create_engine(settings.database_url)
        try:
            await db.init_db(engine)
        finally:
            await engine.dispose()
        console.print("[green]Database initialized[/green]")

    run(do_init())


# =============================================================================
# Cycles
# =============================================================================


@main.command()
@click.argument("title")
@click.option(
    "--criterion", "-c", "criteria", multiple=True, required=True, help="Acceptance criterion"
)
@click.option("--description", "-d", default=None, help="Feature description")
@click.option("--constraint", "constraints", multiple=True, help="Constraint on the work")
def start(
    title: str, criteria: tuple[str, ...], description: str | None, constraints: tuple[str, ...]
) -> None:
    """Start a new cycle for a feature.

    TITLE: Short feature title (used for the branch name)
    """

    async def do_start() -> None:
        async with open_services(get_settings()) as services:
            cycle = await services.engine.start_cycle(
                FeatureRequest(
                    title=title,
                    acceptance_criteria=list(criteria),
                    description=description,
                    constraints=list(constraints),
                )
            )
            console.print(f"[green]Started cycle {cycle.id}[/green]")
            console.print(f"Branch: [cyan]{cycle.current_branch}[/cyan]")

    run(do_start())


@main.command()
@click.argument("cycle_id")
@click.option("--all", "run_all", is_flag=True, help="Execute until the cycle stops advancing")
def execute(cycle_id: str, run_all: bool) -> None:
    """Execute the current phase of a cycle.

    CYCLE_ID: The cycle identifier
    """

    async def do_execute() -> None:
        async with open_services(get_settings()) as services:
            while True:
                result = await services.engine.execute_phase(cycle_id)
                style = {
                    PhaseOutcome.ADVANCED: "green",
                    PhaseOutcome.COMPLETED: "green",
                    PhaseOutcome.FAILED: "red",
                }.get(result.outcome, "yellow")
                console.print(f"[{style}]{result.message}[/{style}]")
                for change in result.changes:
                    console.print(f"  {change.type.value:<6} {change.path}")
                if not run_all or result.outcome != PhaseOutcome.ADVANCED:
                    break

    run(do_execute())


@main.command()
@click.argument("cycle_id")
def status(cycle_id: str) -> None:
    """Show status of a cycle.

    CYCLE_ID: The cycle identifier
    """

    async def show_status() -> None:
        async with open_services(get_settings()) as services:
            report = await services.engine.get_cycle_status(cycle_id)
            cycle = report.cycle
            phase_style = _phase_style(cycle.phase.value)
            body = (
                f"[bold]{cycle.title}[/bold]\n\n"
                f"Phase: [{phase_style}]{cycle.phase.value}[/{phase_style}]\n"
                f"Status: [cyan]{cycle.status.value}[/cyan]\n"
                f"Branch: {cycle.current_branch or '-'}\n"
                f"Tests: {report.passing_tests}/{report.tests_count} passing\n"
                f"Artifacts: {report.artifacts_count}\n"
                f"Pending queries: {report.pending_queries}"
            )
            if cycle.failure_reason:
                body += f"\nFailure: [red]{cycle.failure_reason}[/red]"
            console.print(Panel(body, title=f"Cycle: {cycle.id}"))

            if cycle.tests:
                table = Table(title="Tests")
                table.add_column("Name", style="cyan")
                table.add_column("Status")
                table.add_column("File")
                for t in cycle.tests:
                    color = "green" if t.status.value == "PASSING" else "red"
                    table.add_row(
                        t.name, f"[{color}]{t.status.value}[/{color}]", t.file_path or "-"
                    )
                console.print(table)

    run(show_status())


@main.command(name="list")
@click.option("--limit", default=10, help="Number of cycles to show")
def list_cycles(limit: int) -> None:
    """List recent cycles."""

    async def list_all() -> None:
        async with open_services(get_settings()) as services:
            cycles = await services.engine.list_cycles(limit=limit)
            if not cycles:
                console.print("[yellow]No cycles found[/yellow]")
                return

            table = Table(title="Cycles")
            table.add_column("ID", style="cyan")
            table.add_column("Title")
            table.add_column("Phase")
            table.add_column("Status")
            table.add_column("Created")
            for c in cycles:
                table.add_row(
                    c.id,
                    c.title[:40] + "..." if len(c.title) > 40 else c.title,
                    c.phase.value,
                    c.status.value,
                    db.as_utc(c.created_at).strftime("%Y-%m-%d %H:%M"),
                )
            console.print(table)

    run(list_all())


@main.command()
@click.argument("cycle_id")
def pause(cycle_id: str) -> None:
    """Pause a cycle.

    CYCLE_ID: The cycle identifier
    """

    async def do_pause() -> None:
        async with open_services(get_settings()) as services:
            cycle = await services.engine.pause_cycle(cycle_id)
            console.print(f"[yellow]Paused cycle {cycle.id} at {cycle.phase.value}[/yellow]")

    run(do_pause())


@main.command()
@click.argument("cycle_id")
def resume(cycle_id: str) -> None:
    """Resume a paused cycle on its branch.

    CYCLE_ID: The cycle identifier
    """

    async def do_resume() -> None:
        async with open_services(get_settings()) as services:
            cycle = await services.engine.resume_cycle(cycle_id)
            console.print(f"[green]Resumed cycle {cycle.id} on {cycle.current_branch}[/green]")

    run(do_resume())


@main.command()
@click.argument("cycle_id")
@click.option("--no-restore", is_flag=True, help="Do not restore the latest snapshot")
def recover(cycle_id: str, no_restore: bool) -> None:
    """Return a failed cycle to active at the same phase.

    CYCLE_ID: The cycle identifier
    """

    async def do_recover() -> None:
        async with open_services(get_settings()) as services:
            cycle = await services.engine.recover_cycle(cycle_id, restore_snapshot=not no_restore)
            console.print(f"[green]Recovered cycle {cycle.id} at {cycle.phase.value}[/green]")

    run(do_recover())


# =============================================================================
# Queries
# =============================================================================


@main.command()
@click.option("--cycle", "cycle_id", default=None, help="Only queries on this cycle")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in QueryStatus]),
    default=QueryStatus.PENDING.value,
    help="Filter by status",
)
def queries(cycle_id: str | None, status_filter: str) -> None:
    """List queries, blocking first."""

    async def show_queries() -> None:
        settings = get_settings()
        async with open_services(settings) as services:
            found = await services.gate.get_queries(
                QueryFilters(
                    project_id=settings.project_id,
                    cycle_id=cycle_id,
                    status=QueryStatus(status_filter),
                )
            )
            if not found:
                console.print(f"[yellow]No {status_filter.lower()} queries[/yellow]")
                return

            for q in found:
                urgency_style = "red" if q.urgency == QueryUrgency.BLOCKING else "cyan"
                console.print(
                    Panel(
                        f"[bold]{q.question}[/bold]\n\n"
                        f"Urgency: [{urgency_style}]{q.urgency.value}[/{urgency_style}]  "
                        f"Priority: {q.priority.value}  Type: {q.type.value}\n"
                        f"Cycle: {q.cycle_id or '-'}"
                        + (f"\nAnswer: {q.answer}" if q.answer else ""),
                        title=f"{q.title} ({q.id})",
                    )
                )

    run(show_queries())


@main.command()
@click.argument("question")
@click.option("--title", "-t", required=True, help="Short title")
@click.option(
    "--type",
    "query_type",
    type=click.Choice([t.value for t in QueryType]),
    default=QueryType.CLARIFICATION.value,
)
@click.option("--cycle", "cycle_id", default=None, help="Cycle the query belongs to")
@click.option("--blocking", is_flag=True, help="Pause the cycle until answered")
@click.option("--priority", type=click.Choice([p.value for p in QueryPriority]), default=None)
def ask(
    question: str,
    title: str,
    query_type: str,
    cycle_id: str | None,
    blocking: bool,
    priority: str | None,
) -> None:
    """Raise a decision query.

    QUESTION: The question text
    """

    async def do_ask() -> None:
        settings = get_settings()
        async with open_services(settings) as services:
            data = QueryCreate(
                project_id=settings.project_id,
                type=QueryType(query_type),
                title=title,
                question=question,
                urgency=QueryUrgency.BLOCKING if blocking else QueryUrgency.ADVISORY,
                priority=QueryPriority(priority) if priority else None,
            )
            if cycle_id:
                query = await services.engine.add_query(cycle_id, data)
            else:
                query = await services.gate.create_query(data)
            console.print(f"[green]Created query {query.id}[/green]")

    run(do_ask())


@main.command()
@click.argument("query_id")
@click.argument("answer_text")
def answer(query_id: str, answer_text: str) -> None:
    """Answer a pending query.

    QUERY_ID: The query identifier
    ANSWER_TEXT: Your answer
    """

    async def do_answer() -> None:
        async with open_services(get_settings()) as services:
            result = await services.gate.answer_query(query_id, answer_text)
            console.print(f"[green]Answer recorded for query {result.query.id}[/green]")
            if not result.should_continue:
                console.print(f"[yellow]Suggested action: {result.alternative_action}[/yellow]")

    run(do_answer())


@main.command()
@click.argument("query_id")
def dismiss(query_id: str) -> None:
    """Dismiss an advisory query.

    QUERY_ID: The query identifier
    """

    async def do_dismiss() -> None:
        async with open_services(get_settings()) as services:
            query = await services.gate.dismiss_query(query_id)
            console.print(f"[yellow]Dismissed query {query.id}[/yellow]")

    run(do_dismiss())


@main.command()
@click.argument("query_id")
@click.argument("content")
@click.option("--author", type=click.Choice([a.value for a in CommentAuthor]), default="user")
def comment(query_id: str, content: str, author: str) -> None:
    """Add a comment to a query."""

    async def do_comment() -> None:
        async with open_services(get_settings()) as services:
            await services.gate.add_comment(query_id, content, CommentAuthor(author))
            console.print(f"[green]Comment added to query {query_id}[/green]")

    run(do_comment())


@main.command()
@click.option("--days", default=None, type=int, help="Age in days (defaults to settings)")
def expire(days: int | None) -> None:
    """Expire old advisory queries."""

    async def do_expire() -> None:
        settings = get_settings()
        async with open_services(settings) as services:
            count = await services.gate.expire_old_queries(
                days if days is not None else settings.query_expiry_days
            )
            console.print(f"Expired {count} queries")

    run(do_expire())


@main.command()
def stats() -> None:
    """Show decision statistics for the project."""

    async def show_stats() -> None:
        settings = get_settings()
        async with open_services(settings) as services:
            result = await services.gate.get_decision_stats(settings.project_id)
            table = Table(title=f"Decisions: {settings.project_id}")
            table.add_column("Metric", style="cyan")
            table.add_column("Value", justify="right")
            for key, value in result.to_dict().items():
                table.add_row(key.replace("_", " "), str(value))
            console.print(table)

    run(show_stats())


# =============================================================================
# Snapshots
# =============================================================================


@main.group()
def snapshot() -> None:
    """Capture, restore and compare workspace snapshots."""


@snapshot.command(name="create")
@click.argument("cycle_id")
def snapshot_create(cycle_id: str) -> None:
    """Capture the cycle's files at its current phase."""

    async def do_create() -> None:
        async with open_services(get_settings()) as services:
            cycle = await services.engine.get_cycle(cycle_id)
            await services.snapshots.initialize()
            snap = await services.snapshots.create_snapshot(
                cycle.id, cycle.current_branch or "", cycle.phase.value
            )
            console.print(f"[green]Created {snap.snapshot_id} ({len(snap.files)} files)[/green]")

    run(do_create())


@snapshot.command(name="list")
@click.argument("cycle_id", required=False)
def snapshot_list(cycle_id: str | None) -> None:
    """List snapshots, optionally for one cycle."""

    async def do_list() -> None:
        async with open_services(get_settings()) as services:
            found = await services.snapshots.list_snapshots(cycle_id)
            if not found:
                console.print("[yellow]No snapshots found[/yellow]")
                return

            table = Table(title="Snapshots")
            table.add_column("ID", style="cyan")
            table.add_column("Phase")
            table.add_column("Files", justify="right")
            table.add_column("Created")
            for s in found:
                table.add_row(
                    s.snapshot_id,
                    s.phase,
                    str(len(s.files)),
                    s.created_at.strftime("%Y-%m-%d %H:%M"),
                )
            console.print(table)

    run(do_list())


@snapshot.command(name="restore")
@click.argument("snapshot_id")
def snapshot_restore(snapshot_id: str) -> None:
    """Write a snapshot's files back to the working tree."""

    async def do_restore() -> None:
        async with open_services(get_settings()) as services:
            snap = await services.snapshots.restore_snapshot(snapshot_id)
            console.print(f"[green]Restored {len(snap.files)} files from {snapshot_id}[/green]")

    run(do_restore())


@snapshot.command(name="diff")
@click.argument("cycle_id")
@click.option("--since", default=None, help="Snapshot to compare against (default: latest)")
def snapshot_diff(cycle_id: str, since: str | None) -> None:
    """Show changes since a snapshot."""

    async def do_diff() -> None:
        async with open_services(get_settings()) as services:
            if since is None:
                latest = await services.snapshots.latest_snapshot(cycle_id)
                if latest is None:
                    console.print("[yellow]No snapshot to compare against[/yellow]")
                    return
                base = latest.snapshot_id
            else:
                base = since
            changes = await services.snapshots.analyze_changes(cycle_id, base)
            if not changes:
                console.print(f"No changes since {base}")
                return
            colors = {"CREATE": "green", "MODIFY": "yellow", "DELETE": "red"}
            for change in changes:
                color = colors[change.type.value]
                console.print(f"[{color}]{change.type.value:<6}[/{color}] {change.path}")

    run(do_diff())


@snapshot.command(name="conflicts")
@click.argument("cycle_a")
@click.argument("cycle_b")
def snapshot_conflicts(cycle_a: str, cycle_b: str) -> None:
    """List paths captured by both cycles' latest snapshots."""

    async def do_conflicts() -> None:
        async with open_services(get_settings()) as services:
            paths = await services.snapshots.detect_conflicts(cycle_a, cycle_b)
            if not paths:
                console.print("[green]No overlapping paths[/green]")
                return
            for path in paths:
                console.print(f"[red]{path}[/red]")

    run(do_conflicts())


@snapshot.command(name="cleanup")
@click.option("--days", default=None, type=int, help="Retention in days (defaults to settings)")
def snapshot_cleanup(days: int | None) -> None:
    """Delete snapshots older than the retention window."""

    async def do_cleanup() -> None:
        settings = get_settings()
        async with open_services(settings) as services:
            removed = await services.snapshots.cleanup_old_snapshots(
                days if days is not None else settings.snapshot_retention_days
            )
            console.print(f"Removed {removed} snapshots")

    run(do_cleanup())


if __name__ == "__main__":
    main()
