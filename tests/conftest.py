"""Shared test fixtures and configuration for pytest."""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio

from codehive import db
from codehive.config import Settings
from codehive.decisions import DecisionGate
from codehive.engine import CycleEngine
from codehive.events import CycleEvent, EventEmitter
from codehive.generation import generate_slug
from codehive.snapshots import SnapshotStore


class RecordingBranchManager:
    """Branch manager double that records every call."""

    def __init__(self) -> None:
        self.created: list[str] = []
        self.switched: list[str] = []
        self.commits: list[str | None] = []

    async def create_feature_branch(self, title: str) -> str:
        name = f"feature/{generate_slug(title)}"
        self.created.append(name)
        return name

    async def switch_branch(self, branch_name: str) -> None:
        self.switched.append(branch_name)

    async def commit_changes(self, message: str | None = None) -> None:
        self.commits.append(message)


class RecordingHandler:
    """Event handler that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: list[CycleEvent] = []

    def __call__(self, event: CycleEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.type.value for e in self.events]


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Empty project checkout."""
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def settings(tmp_path: Path, project: Path) -> Settings:
    return Settings(
        _env_file=None,
        project_path=project,
        project_id="test-project",
        database_url_override=f"sqlite+aiosqlite:///{tmp_path / 'codehive.db'}",
        lock_timeout=1.0,
    )


@pytest_asyncio.fixture
async def session_factory(settings: Settings) -> AsyncGenerator[db.SessionFactory]:
    """Session factory over a fresh SQLite database."""
    engine = db.create_engine(settings.database_url)
    await db.init_db(engine)
    yield db.create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def branch_manager() -> RecordingBranchManager:
    return RecordingBranchManager()


@pytest.fixture
def recorder() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def events(recorder: RecordingHandler) -> EventEmitter:
    emitter = EventEmitter()
    emitter.on_event(recorder)
    return emitter


@pytest.fixture
def snapshot_store(
    project: Path, session_factory: db.SessionFactory, settings: Settings
) -> SnapshotStore:
    return SnapshotStore(project, session_factory, settings)


@pytest.fixture
def gate(session_factory: db.SessionFactory, events: EventEmitter) -> DecisionGate:
    return DecisionGate(session_factory, events)


@pytest.fixture
def engine(
    session_factory: db.SessionFactory,
    branch_manager: RecordingBranchManager,
    snapshot_store: SnapshotStore,
    gate: DecisionGate,
    events: EventEmitter,
    settings: Settings,
) -> CycleEngine:
    return CycleEngine(
        settings.project_id,
        session_factory,
        branch_manager,
        snapshot_store=snapshot_store,
        decision_gate=gate,
        events=events,
        settings=settings,
    )


def write(project: Path, path: str, content: str) -> None:
    """Write a file under the project, creating directories."""
    target = project / path
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
