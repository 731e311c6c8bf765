from pathlib import Path

import pytest

from codehive import db
from codehive.config import Settings
from codehive.decisions import DecisionGate, QueryCreate
from codehive.engine import CycleEngine, FeatureRequest, PhaseOutcome
from codehive.errors import CycleNotFoundError, InvalidTransitionError
from codehive.events import EventEmitter
from codehive.generation import TemplateCodeGenerator
from codehive.models import (
    ArtifactType,
    CyclePhase,
    CycleStatus,
    QueryStatus,
    QueryType,
    QueryUrgency,
    TestStatus,
)
from codehive.snapshots import ChangeType, SnapshotStore

from conftest import RecordingBranchManager, RecordingHandler

LOGIN = FeatureRequest(
    title="Login",
    acceptance_criteria=["user can enter credentials", "invalid login shows error"],
)


def _blocking_query(title: str = "Session storage?") -> QueryCreate:
    return QueryCreate(
        project_id="ignored",
        type=QueryType.ARCHITECTURE,
        title=title,
        question="Cookies or local storage?",
        urgency=QueryUrgency.BLOCKING,
    )


@pytest.mark.asyncio
async def test_start_cycle(
    engine: CycleEngine, branch_manager: RecordingBranchManager, project: Path
) -> None:
    cycle = await engine.start_cycle(LOGIN)

    assert cycle.phase == CyclePhase.RED
    assert cycle.status == CycleStatus.ACTIVE
    assert cycle.constraints == []
    assert cycle.acceptance_criteria == LOGIN.acceptance_criteria
    assert cycle.current_branch == "feature/login"
    assert branch_manager.created == ["feature/login"]
    assert (project / ".codehive" / "workspaces").is_dir()


@pytest.mark.asyncio
async def test_red_phase_creates_one_failing_test_per_criterion(
    engine: CycleEngine, project: Path
) -> None:
    cycle = await engine.start_cycle(LOGIN)

    result = await engine.execute_phase(cycle.id)

    assert result.outcome == PhaseOutcome.ADVANCED
    assert "RED phase completed" in result.message
    assert result.next_phase == CyclePhase.GREEN
    assert result.cycle.phase == CyclePhase.GREEN
    assert len(result.tests) == 2
    assert all(t.status == TestStatus.FAILING for t in result.tests)
    assert {t.criterion for t in result.tests} == set(LOGIN.acceptance_criteria)
    for test in result.tests:
        assert test.file_path is not None
        assert (project / test.file_path).read_text() == test.code


@pytest.mark.asyncio
async def test_green_phase_implements_failing_tests(engine: CycleEngine) -> None:
    cycle = await engine.start_cycle(LOGIN)
    await engine.execute_phase(cycle.id)

    result = await engine.execute_phase(cycle.id)

    assert "GREEN phase completed" in result.message
    assert result.cycle.phase == CyclePhase.REFACTOR
    assert len(result.tests) == 2
    assert all(t.status == TestStatus.PASSING for t in result.tests)
    assert len(result.artifacts) == 2
    assert all(a.type == ArtifactType.CODE for a in result.artifacts)
    assert all(a.phase == CyclePhase.GREEN for a in result.artifacts)


@pytest.mark.asyncio
async def test_full_cycle_end_to_end(
    engine: CycleEngine, branch_manager: RecordingBranchManager
) -> None:
    cycle = await engine.start_cycle(LOGIN)

    phases = []
    results = []
    for _ in range(4):
        phases.append((await engine.get_cycle(cycle.id)).phase)
        results.append(await engine.execute_phase(cycle.id))

    assert phases == [CyclePhase.RED, CyclePhase.GREEN, CyclePhase.REFACTOR, CyclePhase.REVIEW]

    refactor = results[2]
    assert "REFACTOR phase completed" in refactor.message
    assert len(refactor.artifacts) >= 1
    assert all(a.parent_id for a in refactor.artifacts)

    review = results[3]
    assert review.outcome == PhaseOutcome.COMPLETED
    assert review.complete is True
    assert review.message == "Cycle completed successfully"
    assert review.next_phase is None
    assert review.cycle.status == CycleStatus.COMPLETED
    assert review.cycle.phase == CyclePhase.REVIEW
    assert review.cycle.completed_at is not None
    assert len(branch_manager.commits) == 1

    report = await engine.get_cycle_status(cycle.id)
    assert report.tests_count == 2
    assert report.passing_tests == 2
    assert report.failing_tests == 0
    assert report.artifacts_count == 4

    after = await engine.execute_phase(cycle.id)
    assert after.outcome == PhaseOutcome.NOT_ACTIVE


@pytest.mark.asyncio
async def test_each_phase_records_a_snapshot_and_changes(
    engine: CycleEngine, snapshot_store: SnapshotStore
) -> None:
    cycle = await engine.start_cycle(LOGIN)

    red = await engine.execute_phase(cycle.id)
    green = await engine.execute_phase(cycle.id)
    refactor = await engine.execute_phase(cycle.id)

    assert red.snapshot_id and green.snapshot_id and refactor.snapshot_id
    assert red.changes == []
    assert {c.type for c in green.changes} == {ChangeType.CREATE}
    assert len(green.changes) == 2
    assert {c.type for c in refactor.changes} == {ChangeType.MODIFY}
    assert len(await snapshot_store.list_snapshots(cycle.id)) == 3


@pytest.mark.asyncio
async def test_paused_cycle_is_not_executed(engine: CycleEngine) -> None:
    cycle = await engine.start_cycle(LOGIN)
    paused = await engine.pause_cycle(cycle.id)
    assert paused.status == CycleStatus.PAUSED
    assert paused.phase == CyclePhase.RED

    result = await engine.execute_phase(cycle.id)

    assert result.outcome == PhaseOutcome.NOT_ACTIVE
    assert "not active" in result.message
    report = await engine.get_cycle_status(cycle.id)
    assert report.tests_count == 0
    assert report.cycle.phase == CyclePhase.RED


@pytest.mark.asyncio
async def test_blocking_query_gates_progression(
    engine: CycleEngine, branch_manager: RecordingBranchManager
) -> None:
    cycle = await engine.start_cycle(LOGIN)
    query = await engine.add_query(cycle.id, _blocking_query())
    assert query.cycle_id == cycle.id
    assert query.project_id == "test-project"
    assert (await engine.get_cycle(cycle.id)).status == CycleStatus.PAUSED

    # Resuming does not clear the gate.
    await engine.resume_cycle(cycle.id)
    assert branch_manager.switched == ["feature/login"]

    blocked = await engine.execute_phase(cycle.id)
    assert blocked.outcome == PhaseOutcome.BLOCKED
    assert blocked.blocked_by_queries is True
    assert "blocked by queries" in blocked.message
    assert [q.id for q in blocked.queries] == [query.id]
    report = await engine.get_cycle_status(cycle.id)
    assert report.cycle.phase == CyclePhase.RED
    assert report.tests_count == 0
    assert report.pending_queries == 1

    await engine.decision_gate.answer_query(query.id, "Cookies")

    result = await engine.execute_phase(cycle.id)
    assert result.outcome == PhaseOutcome.ADVANCED
    assert result.cycle.phase == CyclePhase.GREEN


@pytest.mark.asyncio
async def test_answering_blocking_query_reactivates_paused_cycle(engine: CycleEngine) -> None:
    cycle = await engine.start_cycle(LOGIN)
    query = await engine.add_query(cycle.id, _blocking_query())

    await engine.decision_gate.answer_query(query.id, "Cookies")

    assert (await engine.get_cycle(cycle.id)).status == CycleStatus.ACTIVE
    result = await engine.execute_phase(cycle.id)
    assert "RED phase completed" in result.message


@pytest.mark.asyncio
async def test_review_with_failing_test_marks_cycle_failed(
    engine: CycleEngine,
    branch_manager: RecordingBranchManager,
    session_factory: db.SessionFactory,
) -> None:
    cycle = await engine.start_cycle(LOGIN)
    for _ in range(3):
        await engine.execute_phase(cycle.id)

    async with db.session_scope(session_factory) as session:
        tests = await db.get_tests(session, cycle.id)
        await db.set_test_statuses(session, [tests[0].id], TestStatus.FAILING)

    result = await engine.execute_phase(cycle.id)

    assert result.outcome == PhaseOutcome.FAILED
    assert "1 failing tests" in result.message
    assert result.cycle.status == CycleStatus.FAILED
    assert result.cycle.phase == CyclePhase.REVIEW
    assert result.cycle.failure_reason == result.message
    assert branch_manager.commits == []


@pytest.mark.asyncio
async def test_recover_failed_cycle_keeps_phase_and_restores_snapshot(
    engine: CycleEngine, project: Path
) -> None:
    cycle = await engine.start_cycle(LOGIN)
    red = await engine.execute_phase(cycle.id)
    test_file = project / red.tests[0].file_path
    original = test_file.read_text()

    await engine.mark_failed(cycle.id, "worker crashed")
    test_file.write_text("corrupted")

    with pytest.raises(InvalidTransitionError):
        await engine.resume_cycle(cycle.id)

    recovered = await engine.recover_cycle(cycle.id)

    assert recovered.status == CycleStatus.ACTIVE
    assert recovered.phase == CyclePhase.GREEN
    assert recovered.failure_reason is None
    assert test_file.read_text() == original


@pytest.mark.asyncio
async def test_recover_requires_failed_cycle(engine: CycleEngine) -> None:
    cycle = await engine.start_cycle(LOGIN)
    with pytest.raises(InvalidTransitionError):
        await engine.recover_cycle(cycle.id)


class ExplodingGenerator(TemplateCodeGenerator):
    def implementation(self, test_name: str, test_code: str) -> str:
        raise RuntimeError("generator unavailable")


def _engine_with(
    session_factory: db.SessionFactory,
    settings: Settings,
    branch_manager: RecordingBranchManager,
    **kwargs,
) -> CycleEngine:
    return CycleEngine(
        settings.project_id,
        session_factory,
        branch_manager,
        snapshot_store=SnapshotStore(settings.project_path, session_factory, settings),
        settings=settings,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_phase_error_marks_cycle_failed_and_propagates(
    session_factory: db.SessionFactory,
    settings: Settings,
    branch_manager: RecordingBranchManager,
) -> None:
    engine = _engine_with(
        session_factory, settings, branch_manager, generator=ExplodingGenerator()
    )
    cycle = await engine.start_cycle(LOGIN)
    await engine.execute_phase(cycle.id)

    with pytest.raises(RuntimeError, match="generator unavailable"):
        await engine.execute_phase(cycle.id)

    failed = await engine.get_cycle(cycle.id)
    assert failed.status == CycleStatus.FAILED
    assert failed.phase == CyclePhase.GREEN
    assert "generator unavailable" in (failed.failure_reason or "")
    report = await engine.get_cycle_status(cycle.id)
    assert report.artifacts_count == 0
    assert report.failing_tests == 2


@pytest.mark.asyncio
async def test_phase_error_without_failing_cycle(
    session_factory: db.SessionFactory,
    settings: Settings,
    branch_manager: RecordingBranchManager,
) -> None:
    settings = settings.model_copy(update={"fail_cycle_on_error": False})
    engine = _engine_with(
        session_factory, settings, branch_manager, generator=ExplodingGenerator()
    )
    cycle = await engine.start_cycle(LOGIN)
    await engine.execute_phase(cycle.id)

    with pytest.raises(RuntimeError):
        await engine.execute_phase(cycle.id)

    assert (await engine.get_cycle(cycle.id)).status == CycleStatus.ACTIVE


@pytest.mark.asyncio
async def test_red_phase_is_idempotent(
    engine: CycleEngine, session_factory: db.SessionFactory
) -> None:
    cycle = await engine.start_cycle(LOGIN)
    await engine.execute_phase(cycle.id)

    # Simulate a crash after the tests were written but before the transition.
    async with db.session_scope(session_factory) as session:
        stored = await db.get_cycle(session, cycle.id)
        stored.phase = CyclePhase.RED

    result = await engine.execute_phase(cycle.id)

    assert result.tests == []
    assert (await engine.get_cycle_status(cycle.id)).tests_count == 2


@pytest.mark.asyncio
async def test_pause_and_resume_rules(
    engine: CycleEngine, session_factory: db.SessionFactory
) -> None:
    cycle = await engine.start_cycle(LOGIN)
    for _ in range(4):
        await engine.execute_phase(cycle.id)

    with pytest.raises(InvalidTransitionError):
        await engine.pause_cycle(cycle.id)
    with pytest.raises(InvalidTransitionError):
        await engine.resume_cycle(cycle.id)
    with pytest.raises(InvalidTransitionError):
        await engine.mark_failed(cycle.id, "too late")

    async with db.session_scope(session_factory) as session:
        branchless = await db.create_cycle(
            session, project_id="test-project", title="No branch", acceptance_criteria=["x"]
        )
    await engine.pause_cycle(branchless.id)
    with pytest.raises(InvalidTransitionError):
        await engine.resume_cycle(branchless.id)

    failing = await engine.start_cycle(FeatureRequest(title="Search", acceptance_criteria=["x"]))
    await engine.mark_failed(failing.id, "broken build")
    with pytest.raises(InvalidTransitionError):
        await engine.pause_cycle(failing.id)
    with pytest.raises(InvalidTransitionError):
        await engine.resume_cycle(failing.id)
    still_failed = await engine.get_cycle(failing.id)
    assert still_failed.status == CycleStatus.FAILED
    assert still_failed.failure_reason == "broken build"


@pytest.mark.asyncio
async def test_colliding_criteria_get_distinct_files(engine: CycleEngine, project: Path) -> None:
    cycle = await engine.start_cycle(
        FeatureRequest(title="Login", acceptance_criteria=["Log in!", "Log in?"])
    )

    red = await engine.execute_phase(cycle.id)
    paths = sorted(t.file_path for t in red.tests)
    assert paths == ["tests/test_should_log_in.py", "tests/test_should_log_in_2.py"]
    for test in red.tests:
        assert (project / test.file_path).read_text() == test.code

    green = await engine.execute_phase(cycle.id)
    assert sorted(a.path for a in green.artifacts) == [
        "src/should_log_in.py",
        "src/should_log_in_2.py",
    ]
    assert {c.path for c in green.changes} == {"src/should_log_in.py", "src/should_log_in_2.py"}


@pytest.mark.asyncio
async def test_missing_cycle_raises(engine: CycleEngine) -> None:
    with pytest.raises(CycleNotFoundError):
        await engine.execute_phase("missing")
    with pytest.raises(CycleNotFoundError):
        await engine.get_cycle_status("missing")
    with pytest.raises(CycleNotFoundError):
        await engine.add_query("missing", _blocking_query())


@pytest.mark.asyncio
async def test_engine_publishes_lifecycle_events(
    engine: CycleEngine, events: EventEmitter, recorder: RecordingHandler
) -> None:
    cycle = await engine.start_cycle(LOGIN)
    await engine.execute_phase(cycle.id)
    await engine.pause_cycle(cycle.id)
    await engine.resume_cycle(cycle.id)
    await events.drain()

    assert recorder.types() == [
        "cycle.started",
        "snapshot.created",
        "cycle.phase_completed",
        "cycle.paused",
        "cycle.resumed",
    ]
    phase_event = recorder.events[2]
    assert phase_event.cycle_id == cycle.id
    assert phase_event.data["from_phase"] == "RED"
    assert phase_event.data["to_phase"] == "GREEN"


@pytest.mark.asyncio
async def test_engine_without_snapshot_store(
    session_factory: db.SessionFactory,
    settings: Settings,
    branch_manager: RecordingBranchManager,
) -> None:
    engine = CycleEngine(
        settings.project_id,
        session_factory,
        branch_manager,
        decision_gate=DecisionGate(session_factory),
        settings=settings,
    )
    cycle = await engine.start_cycle(LOGIN)

    result = await engine.execute_phase(cycle.id)

    assert result.snapshot_id is None
    assert result.changes == []
    assert (await engine.get_cycle_status(cycle.id)).tests_count == 2


@pytest.mark.asyncio
async def test_pending_queries_counted_in_status(engine: CycleEngine) -> None:
    cycle = await engine.start_cycle(LOGIN)
    advisory = QueryCreate(
        project_id="ignored",
        type=QueryType.UI_UX,
        title="Button colour?",
        question="Blue or green?",
    )
    query = await engine.add_query(cycle.id, advisory)
    assert query.status == QueryStatus.PENDING

    report = await engine.get_cycle_status(cycle.id)

    assert report.pending_queries == 1
    assert report.cycle.status == CycleStatus.ACTIVE
