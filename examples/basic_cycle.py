"""
Basic Cycle Example

Demonstrates how to programmatically drive a feature through a full cycle,
including a blocking decision query that pauses it halfway.

Usage:
    python examples/basic_cycle.py
"""

import asyncio

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from codehive import (
    CycleEngine,
    DecisionGate,
    EventEmitter,
    FeatureRequest,
    PhaseOutcome,
    QueryCreate,
    QueryType,
    QueryUrgency,
    Settings,
    SnapshotStore,
    db,
)
from codehive.branches import GitBranchManager

console = Console()


async def display_cycle(engine: CycleEngine, cycle_id: str) -> None:
    """Display cycle information in a formatted table."""
    report = await engine.get_cycle_status(cycle_id)

    table = Table(title="Cycle Information")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="magenta")

    table.add_row("Title", report.cycle.title)
    table.add_row("Phase", report.cycle.phase.value)
    table.add_row("Status", report.cycle.status.value)
    table.add_row("Branch", report.cycle.current_branch or "N/A")
    table.add_row("Tests", f"{report.passing_tests}/{report.tests_count} passing")
    table.add_row("Artifacts", str(report.artifacts_count))

    console.print("\n")
    console.print(table)


async def main():
    """Main execution function."""
    console.print(
        Panel.fit(
            "[bold]Basic Cycle Example[/bold]\nDemonstrates running a feature cycle",
            border_style="blue",
        )
    )

    settings = Settings()
    sql_engine = db.create_engine(settings.database_url)
    session_factory = db.create_session_factory(sql_engine)
    events = EventEmitter()
    events.on_event(lambda event: console.print(f"[dim]{event.type.value}[/dim] {event.message}"))

    gate = DecisionGate(session_factory, events)
    engine = CycleEngine(
        settings.project_id,
        session_factory,
        GitBranchManager(settings.project_path),
        snapshot_store=SnapshotStore(settings.project_path, session_factory, settings),
        decision_gate=gate,
        events=events,
        settings=settings,
    )

    try:
        cycle = await engine.start_cycle(
            FeatureRequest(
                title="Add user authentication",
                acceptance_criteria=["user can log in", "user can log out"],
            )
        )
        console.print(f"[green]✓ Started cycle: {cycle.id}[/green]")

        await engine.execute_phase(cycle.id)

        query = await engine.add_query(
            cycle.id,
            QueryCreate(
                project_id=settings.project_id,
                type=QueryType.ARCHITECTURE,
                title="Session storage",
                question="Store sessions in Redis or in the database?",
                urgency=QueryUrgency.BLOCKING,
            ),
        )
        paused = await engine.execute_phase(cycle.id)
        console.print(f"[yellow]{paused.message}[/yellow]")

        await gate.answer_query(query.id, "Use Redis")
        while True:
            result = await engine.execute_phase(cycle.id)
            console.print(result.message)
            if result.outcome != PhaseOutcome.ADVANCED:
                break

        await events.drain()
        await display_cycle(engine, cycle.id)

    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        console.print("\nMake sure:")
        console.print("• Database is running (docker ps)")
        console.print("• Migrations are applied (alembic upgrade head)")
        console.print("• The project path is a git checkout with a main branch")
    finally:
        await sql_engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
