"""
Cycle state machine and orchestrator facade.

A cycle moves RED -> GREEN -> REFACTOR -> REVIEW and then to the terminal
COMPLETED status. Each call to :meth:`CycleEngine.execute_phase` runs the body
of the current phase, captures a workspace snapshot, and advances one step.
Pausing, resuming, failing and recovering only ever change the status.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .branches import BranchManager
from .config import Settings
from .content_store import ContentStore
from .db import SessionFactory, session_scope
from .decisions import DecisionGate, QueryCreate, QueryFilters
from .errors import CycleNotFoundError, InvalidTransitionError
from .events import CycleEvent, EventEmitter, EventType
from .generation import CodeGenerator, TemplateCodeGenerator, unique_path
from .locks import CycleLocks
from .models import (
    Artifact,
    ArtifactType,
    Cycle,
    CyclePhase,
    CycleStatus,
    Query,
    QueryStatus,
    QueryUrgency,
    Test,
    TestStatus,
    next_phase,
)
from .snapshots import FileChange, SnapshotStore

logger = logging.getLogger(__name__)


@dataclass
class FeatureRequest:
    """A unit of feature work to drive through a cycle."""

    title: str
    acceptance_criteria: list[str]
    description: str | None = None
    constraints: list[str] | None = None


class PhaseOutcome(str, Enum):
    ADVANCED = "advanced"
    COMPLETED = "completed"
    NOT_ACTIVE = "not_active"
    BLOCKED = "blocked"
    FAILED = "failed"


@dataclass
class PhaseResult:
    """Result of one execute_phase call.

    Soft states (not active, blocked, review failed) are reported here rather
    than raised.
    """

    outcome: PhaseOutcome
    cycle: Cycle
    message: str
    tests: list[Test] = field(default_factory=list)
    artifacts: list[Artifact] = field(default_factory=list)
    queries: list[Query] = field(default_factory=list)
    next_phase: CyclePhase | None = None
    snapshot_id: str | None = None
    changes: list[FileChange] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.outcome == PhaseOutcome.COMPLETED

    @property
    def blocked_by_queries(self) -> bool:
        return self.outcome == PhaseOutcome.BLOCKED

    @classmethod
    def not_active(cls, cycle: Cycle) -> PhaseResult:
        return cls(
            outcome=PhaseOutcome.NOT_ACTIVE,
            cycle=cycle,
            message=f"Cycle {cycle.id} is not active (status: {cycle.status.value})",
        )

    @classmethod
    def blocked(cls, cycle: Cycle, queries: list[Query]) -> PhaseResult:
        return cls(
            outcome=PhaseOutcome.BLOCKED,
            cycle=cycle,
            queries=queries,
            message=f"Cycle {cycle.id} is blocked by queries ({len(queries)} pending)",
        )

    @classmethod
    def failed(cls, cycle: Cycle, reason: str) -> PhaseResult:
        return cls(outcome=PhaseOutcome.FAILED, cycle=cycle, message=reason)

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "cycle_id": self.cycle.id,
            "phase": self.cycle.phase.value,
            "status": self.cycle.status.value,
            "message": self.message,
            "next_phase": self.next_phase.value if self.next_phase else None,
            "complete": self.complete,
            "blocked_by_queries": self.blocked_by_queries,
            "tests": [t.id for t in self.tests],
            "artifacts": [a.id for a in self.artifacts],
            "queries": [q.id for q in self.queries],
            "snapshot_id": self.snapshot_id,
            "changes": [c.to_dict() for c in self.changes],
        }


@dataclass
class CycleStatusReport:
    cycle: Cycle
    tests_count: int
    passing_tests: int
    failing_tests: int
    artifacts_count: int
    pending_queries: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle": self.cycle.to_dict(),
            "tests_count": self.tests_count,
            "passing_tests": self.passing_tests,
            "failing_tests": self.failing_tests,
            "artifacts_count": self.artifacts_count,
            "pending_queries": self.pending_queries,
        }


@dataclass
class _PhaseWork:
    """What a phase body produced, before the transition."""

    message: str
    tests: list[Test] = field(default_factory=list)
    artifacts: list[Artifact] = field(default_factory=list)
    failure: str | None = None


PhaseHandler = Callable[[AsyncSession, Cycle], Awaitable[_PhaseWork]]


class CycleEngine:
    """Drives cycles for one project."""

    def __init__(
        self,
        project_id: str,
        session_factory: SessionFactory,
        branch_manager: BranchManager,
        snapshot_store: SnapshotStore | None = None,
        decision_gate: DecisionGate | None = None,
        generator: CodeGenerator | None = None,
        events: EventEmitter | None = None,
        locks: CycleLocks | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.project_id = project_id
        self.settings = settings or Settings()
        self.project_path = (
            snapshot_store.project_path if snapshot_store else Path(self.settings.project_path)
        )
        self._session_factory = session_factory
        self.branch_manager = branch_manager
        self.snapshot_store = snapshot_store
        self.events = events or EventEmitter()
        self.decision_gate = decision_gate or DecisionGate(session_factory, self.events)
        self.generator = generator or TemplateCodeGenerator()
        self.locks = locks or CycleLocks(
            self.project_path / ".codehive" / "locks", self.settings.lock_timeout
        )

        self._handlers: dict[CyclePhase, PhaseHandler] = {
            CyclePhase.RED: self._execute_red,
            CyclePhase.GREEN: self._execute_green,
            CyclePhase.REFACTOR: self._execute_refactor,
            CyclePhase.REVIEW: self._execute_review,
        }

    def _emit(self, event_type: EventType, cycle: Cycle, message: str, **data: Any) -> None:
        self.events.emit(
            CycleEvent(
                type=event_type,
                project_id=cycle.project_id,
                cycle_id=cycle.id,
                phase=cycle.phase.value,
                message=message,
                data=data,
            )
        )

    async def _load_cycle(self, session: AsyncSession, cycle_id: str) -> Cycle:
        cycle = await db.get_cycle_with_relations(session, cycle_id)
        if not cycle:
            raise CycleNotFoundError(cycle_id)
        return cycle

    async def get_cycle(self, cycle_id: str) -> Cycle:
        async with session_scope(self._session_factory) as session:
            return await self._load_cycle(session, cycle_id)

    async def list_cycles(self, status: CycleStatus | None = None, limit: int = 20) -> list[Cycle]:
        async with session_scope(self._session_factory) as session:
            return await db.list_cycles(session, self.project_id, status=status, limit=limit)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start_cycle(self, request: FeatureRequest) -> Cycle:
        """Create a feature branch and a new cycle in RED/ACTIVE."""
        branch_name = await self.branch_manager.create_feature_branch(request.title)
        if self.snapshot_store:
            await self.snapshot_store.initialize()

        async with session_scope(self._session_factory) as session:
            cycle = await db.create_cycle(
                session,
                project_id=self.project_id,
                title=request.title,
                description=request.description,
                acceptance_criteria=request.acceptance_criteria,
                constraints=request.constraints or [],
                current_branch=branch_name,
            )
            cycle = await self._load_cycle(session, cycle.id)

        logger.info("Started cycle %s on branch %s: %s", cycle.id, branch_name, cycle.title)
        self._emit(
            EventType.CYCLE_STARTED,
            cycle,
            f"Cycle started: {cycle.title}",
            branch=branch_name,
            criteria=len(cycle.acceptance_criteria),
        )
        return cycle

    async def execute_phase(self, cycle_id: str) -> PhaseResult:
        """Run the current phase of a cycle while holding its lease.

        Raises:
            CycleNotFoundError: If the cycle does not exist.
            CycleBusyError: If another caller is executing the same cycle.
        """
        async with self.locks.hold(cycle_id):
            return await self._execute_phase(cycle_id)

    async def _execute_phase(self, cycle_id: str) -> PhaseResult:
        cycle = await self.get_cycle(cycle_id)

        if cycle.status != CycleStatus.ACTIVE:
            return PhaseResult.not_active(cycle)

        if await self.decision_gate.has_blocking_queries(cycle_id):
            queries = await self.decision_gate.get_queries(
                QueryFilters(
                    cycle_id=cycle_id,
                    status=QueryStatus.PENDING,
                    urgency=QueryUrgency.BLOCKING,
                )
            )
            logger.info("Cycle %s blocked by %d queries", cycle_id, len(queries))
            self._emit(
                EventType.CYCLE_BLOCKED,
                cycle,
                "Cycle blocked by queries",
                queries=[q.id for q in queries],
            )
            return PhaseResult.blocked(cycle, queries)

        try:
            return await self._run_phase(cycle)
        except Exception as exc:
            if self.settings.fail_cycle_on_error:
                await self._fail_after_error(cycle_id, exc)
            raise

    async def _fail_after_error(self, cycle_id: str, exc: Exception) -> None:
        try:
            await self.mark_failed(cycle_id, f"{type(exc).__name__}: {exc}")
        except Exception:
            logger.exception("Could not mark cycle %s as failed", cycle_id)

    async def _run_phase(self, cycle: Cycle) -> PhaseResult:
        phase = cycle.phase
        handler = self._handlers[phase]

        async with session_scope(self._session_factory) as session:
            cycle = await self._load_cycle(session, cycle.id)
            work = await handler(session, cycle)

        if work.failure:
            failed = await self.mark_failed(cycle.id, work.failure)
            return PhaseResult.failed(failed, work.failure)

        snapshot_id, changes = await self._capture(cycle, phase)

        upcoming = next_phase(phase)
        async with session_scope(self._session_factory) as session:
            cycle = await self._load_cycle(session, cycle.id)
            if upcoming is None:
                await db.update_cycle(session, cycle, status=CycleStatus.COMPLETED)
            else:
                await db.update_cycle(session, cycle, phase=upcoming)

        result = PhaseResult(
            outcome=PhaseOutcome.COMPLETED if upcoming is None else PhaseOutcome.ADVANCED,
            cycle=cycle,
            message=work.message,
            tests=work.tests,
            artifacts=work.artifacts,
            next_phase=upcoming,
            snapshot_id=snapshot_id,
            changes=changes,
        )

        if upcoming is None:
            logger.info("Cycle %s completed", cycle.id)
            self._emit(EventType.CYCLE_COMPLETED, cycle, work.message)
        else:
            logger.info("Cycle %s advanced %s -> %s", cycle.id, phase.value, upcoming.value)
            self._emit(
                EventType.CYCLE_PHASE_COMPLETED,
                cycle,
                work.message,
                from_phase=phase.value,
                to_phase=upcoming.value,
                tests=len(work.tests),
                artifacts=len(work.artifacts),
            )
        return result

    async def _capture(
        self, cycle: Cycle, phase: CyclePhase
    ) -> tuple[str | None, list[FileChange]]:
        """Snapshot the workspace and diff it against the previous snapshot."""
        if not self.snapshot_store:
            return None, []

        previous = await self.snapshot_store.latest_snapshot(cycle.id)
        changes: list[FileChange] = []
        if previous:
            changes = await self.snapshot_store.analyze_changes(cycle.id, previous.snapshot_id)
        snapshot = await self.snapshot_store.create_snapshot(
            cycle.id, cycle.current_branch or "", phase.value
        )
        self._emit(
            EventType.SNAPSHOT_CREATED,
            cycle,
            f"Snapshot {snapshot.snapshot_id} created",
            snapshot_id=snapshot.snapshot_id,
            files=len(snapshot.files),
            changes=len(changes),
        )
        return snapshot.snapshot_id, changes

    # =========================================================================
    # Phase bodies
    # =========================================================================

    async def _execute_red(self, session: AsyncSession, cycle: Cycle) -> _PhaseWork:
        """Write one failing test per acceptance criterion that has none."""
        store = ContentStore(self.project_path)
        covered = {t.criterion for t in cycle.tests} | {t.name for t in cycle.tests}
        taken = {t.file_path for t in cycle.tests if t.file_path}
        created: list[Test] = []

        for criterion in cycle.acceptance_criteria:
            name = self.generator.test_name(criterion)
            if criterion in covered or name in covered:
                continue

            code = self.generator.test_code(criterion)
            file_path = unique_path(self.generator.test_path(name), taken)
            taken.add(file_path)
            await store.write_file(file_path, code)
            created.append(
                await db.create_test(
                    session,
                    cycle,
                    name=name,
                    criterion=criterion,
                    description=f"Test for: {criterion}",
                    code=code,
                    file_path=file_path,
                )
            )
            covered.add(criterion)

        return _PhaseWork(
            message=f"RED phase completed: created {len(created)} failing tests", tests=created
        )

    async def _execute_green(self, session: AsyncSession, cycle: Cycle) -> _PhaseWork:
        """Implement every failing test, then mark those tests passing."""
        store = ContentStore(self.project_path)
        failing = [t for t in cycle.tests if t.status == TestStatus.FAILING]
        artifacts: list[Artifact] = []

        for test in failing:
            content = self.generator.implementation(test.name, test.code)
            path = self.generator.implementation_path(
                test.file_path or self.generator.test_path(test.name)
            )
            await store.write_file(path, content)
            artifacts.append(
                await db.create_artifact(
                    session,
                    cycle,
                    type_=ArtifactType.CODE,
                    name=f"Implementation for {test.name}",
                    content=content,
                    phase=CyclePhase.GREEN,
                    path=path,
                    purpose=f"Make test pass: {test.name}",
                )
            )

        ids = [t.id for t in failing]
        await db.set_test_statuses(session, ids, TestStatus.PASSING)
        passing = [t for t in await db.get_tests(session, cycle.id) if t.id in ids]
        return _PhaseWork(
            message=f"GREEN phase completed: implemented {len(artifacts)} tests",
            tests=passing,
            artifacts=artifacts,
        )

    async def _execute_refactor(self, session: AsyncSession, cycle: Cycle) -> _PhaseWork:
        """Create a refactored copy of each code artifact. Originals are kept."""
        store = ContentStore(self.project_path)
        code_artifacts = [a for a in cycle.artifacts if a.type == ArtifactType.CODE]
        refactored: list[Artifact] = []

        for artifact in code_artifacts:
            content = self.generator.refactor(artifact.content)
            if artifact.path:
                await store.write_file(artifact.path, content)
            refactored.append(
                await db.create_artifact(
                    session,
                    cycle,
                    type_=ArtifactType.CODE,
                    name=f"{artifact.name} (refactored)",
                    content=content,
                    phase=CyclePhase.REFACTOR,
                    path=artifact.path,
                    purpose="Refactored for better code quality",
                    parent_id=artifact.id,
                )
            )

        return _PhaseWork(
            message=f"REFACTOR phase completed: refactored {len(refactored)} artifacts",
            artifacts=refactored,
        )

    async def _execute_review(self, session: AsyncSession, cycle: Cycle) -> _PhaseWork:
        """Verify the cycle's work and commit it to the feature branch."""
        del session
        problems: list[str] = []
        if not cycle.tests:
            problems.append("no tests")
        if not cycle.artifacts:
            problems.append("no artifacts")
        failing = [t.name for t in cycle.tests if t.status != TestStatus.PASSING]
        if failing:
            problems.append(f"{len(failing)} failing tests")
        if problems:
            return _PhaseWork(
                message="Review failed", failure=f"Review failed: {', '.join(problems)}"
            )

        await self.branch_manager.commit_changes(f"Complete TDD cycle: {cycle.title}")
        return _PhaseWork(message="Cycle completed successfully")

    # =========================================================================
    # Status changes
    # =========================================================================

    async def pause_cycle(self, cycle_id: str) -> Cycle:
        """Set the cycle PAUSED without touching its phase."""
        async with session_scope(self._session_factory) as session:
            cycle = await self._load_cycle(session, cycle_id)
            if cycle.status in (CycleStatus.COMPLETED, CycleStatus.FAILED):
                raise InvalidTransitionError(
                    f"Cycle {cycle_id} is {cycle.status.value.lower()} and cannot be paused"
                )
            await db.update_cycle(session, cycle, status=CycleStatus.PAUSED)

        logger.info("Paused cycle %s at %s", cycle_id, cycle.phase.value)
        self._emit(EventType.CYCLE_PAUSED, cycle, "Cycle paused")
        return cycle

    async def resume_cycle(self, cycle_id: str) -> Cycle:
        """Switch back to the cycle's branch and set it ACTIVE."""
        cycle = await self.get_cycle(cycle_id)
        if cycle.status in (CycleStatus.COMPLETED, CycleStatus.FAILED):
            raise InvalidTransitionError(
                f"Cycle {cycle_id} is {cycle.status.value.lower()} and cannot be resumed"
            )
        if not cycle.current_branch:
            raise InvalidTransitionError(f"Cycle {cycle_id} has no branch to resume on")

        await self.branch_manager.switch_branch(cycle.current_branch)
        async with session_scope(self._session_factory) as session:
            cycle = await self._load_cycle(session, cycle_id)
            await db.update_cycle(session, cycle, status=CycleStatus.ACTIVE)

        logger.info("Resumed cycle %s on %s", cycle_id, cycle.current_branch)
        self._emit(EventType.CYCLE_RESUMED, cycle, "Cycle resumed", branch=cycle.current_branch)
        return cycle

    async def mark_failed(self, cycle_id: str, reason: str) -> Cycle:
        """Set the cycle FAILED, keeping its phase."""
        async with session_scope(self._session_factory) as session:
            cycle = await self._load_cycle(session, cycle_id)
            if cycle.status == CycleStatus.COMPLETED:
                raise InvalidTransitionError(f"Cycle {cycle_id} is completed and cannot fail")
            await db.update_cycle(session, cycle, status=CycleStatus.FAILED, failure_reason=reason)

        logger.warning("Cycle %s failed at %s: %s", cycle_id, cycle.phase.value, reason)
        self._emit(EventType.CYCLE_FAILED, cycle, reason)
        return cycle

    async def recover_cycle(self, cycle_id: str, restore_snapshot: bool = True) -> Cycle:
        """Return a FAILED cycle to ACTIVE at the same phase.

        With ``restore_snapshot``, the cycle's latest snapshot (if any) is written
        back to the working tree first.
        """
        cycle = await self.get_cycle(cycle_id)
        if cycle.status != CycleStatus.FAILED:
            raise InvalidTransitionError(
                f"Cycle {cycle_id} is {cycle.status.value.lower()}; "
                "only failed cycles can be recovered"
            )

        restored: str | None = None
        if restore_snapshot and self.snapshot_store:
            latest = await self.snapshot_store.latest_snapshot(cycle_id)
            if latest:
                await self.snapshot_store.restore_snapshot(latest.snapshot_id)
                restored = latest.snapshot_id
                self._emit(
                    EventType.SNAPSHOT_RESTORED,
                    cycle,
                    f"Snapshot {restored} restored",
                    snapshot_id=restored,
                )

        async with session_scope(self._session_factory) as session:
            cycle = await self._load_cycle(session, cycle_id)
            await db.update_cycle(session, cycle, status=CycleStatus.ACTIVE)

        logger.info("Recovered cycle %s at %s", cycle_id, cycle.phase.value)
        self._emit(EventType.CYCLE_RECOVERED, cycle, "Cycle recovered", snapshot_id=restored)
        return cycle

    # =========================================================================
    # Queries and status
    # =========================================================================

    async def add_query(self, cycle_id: str, data: QueryCreate) -> Query:
        """Attach a query to the cycle. A BLOCKING query pauses it."""
        cycle = await self.get_cycle(cycle_id)
        return await self.decision_gate.create_query(
            replace(data, cycle_id=cycle.id, project_id=cycle.project_id)
        )

    async def get_cycle_status(self, cycle_id: str) -> CycleStatusReport:
        cycle = await self.get_cycle(cycle_id)
        passing = sum(1 for t in cycle.tests if t.status == TestStatus.PASSING)
        return CycleStatusReport(
            cycle=cycle,
            tests_count=len(cycle.tests),
            passing_tests=passing,
            failing_tests=len(cycle.tests) - passing,
            artifacts_count=len(cycle.artifacts),
            pending_queries=sum(1 for q in cycle.queries if q.status == QueryStatus.PENDING),
        )
