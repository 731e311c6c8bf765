"""Async database connection and operations for the cycle orchestrator."""

from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import selectinload

from .errors import (
    SchemaNotInitializedError,
    is_schema_missing_error,
    schema_not_initialized_message,
)
from .models import (
    Artifact,
    ArtifactType,
    Base,
    CommentAuthor,
    Cycle,
    CyclePhase,
    CycleStatus,
    ExecutionLog,
    Query,
    QueryComment,
    QueryPriority,
    QueryStatus,
    QueryType,
    QueryUrgency,
    Test,
    TestStatus,
)

SessionFactory = async_sessionmaker[AsyncSession]


def create_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the given URL."""
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo)
    return create_async_engine(database_url, echo=echo, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> SessionFactory:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables (for development/testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def session_scope(factory: SessionFactory) -> AsyncGenerator[AsyncSession]:
    """Async context manager for database sessions."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as exc:
            await session.rollback()
            if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                raise SchemaNotInitializedError(schema_not_initialized_message(exc)) from exc
            raise


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive timestamps returned by backends without tz support."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# =============================================================================
# Cycle Operations
# =============================================================================


async def create_cycle(
    session: AsyncSession,
    *,
    project_id: str,
    title: str,
    acceptance_criteria: list[str],
    description: str | None = None,
    constraints: list[str] | None = None,
    current_branch: str | None = None,
) -> Cycle:
    """Create a new cycle in the RED phase."""
    cycle = Cycle(
        project_id=project_id,
        title=title,
        description=description,
        phase=CyclePhase.RED,
        status=CycleStatus.ACTIVE,
        acceptance_criteria=list(acceptance_criteria),
        constraints=list(constraints or []),
        current_branch=current_branch,
    )
    session.add(cycle)
    await session.flush()
    return cycle


async def get_cycle(session: AsyncSession, cycle_id: str) -> Cycle | None:
    """Get a cycle by its ID."""
    result = await session.execute(select(Cycle).where(Cycle.id == cycle_id))
    return result.scalar_one_or_none()


async def get_cycle_with_relations(session: AsyncSession, cycle_id: str) -> Cycle | None:
    """Get a cycle with its tests, artifacts and queries loaded."""
    result = await session.execute(
        select(Cycle)
        .where(Cycle.id == cycle_id)
        .options(
            selectinload(Cycle.tests),
            selectinload(Cycle.artifacts),
            selectinload(Cycle.queries),
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_cycles(
    session: AsyncSession,
    project_id: str | None = None,
    status: CycleStatus | None = None,
    limit: int = 20,
) -> list[Cycle]:
    """List recent cycles."""
    query = select(Cycle).order_by(Cycle.created_at.desc()).limit(limit)
    if project_id:
        query = query.where(Cycle.project_id == project_id)
    if status:
        query = query.where(Cycle.status == status)
    result = await session.execute(query)
    return list(result.scalars().all())


async def update_cycle(
    session: AsyncSession,
    cycle: Cycle,
    *,
    phase: CyclePhase | None = None,
    status: CycleStatus | None = None,
    failure_reason: str | None = None,
) -> Cycle:
    """Update cycle phase/status."""
    if phase is not None:
        cycle.phase = phase
    if status is not None:
        cycle.status = status
        if status == CycleStatus.COMPLETED:
            cycle.completed_at = datetime.now(UTC)
        if status == CycleStatus.FAILED:
            cycle.failure_reason = failure_reason
        elif status == CycleStatus.ACTIVE:
            cycle.failure_reason = None
    cycle.updated_at = datetime.now(UTC)
    await session.flush()
    return cycle


# =============================================================================
# Test Operations
# =============================================================================


async def create_test(
    session: AsyncSession,
    cycle: Cycle,
    *,
    name: str,
    criterion: str,
    code: str,
    file_path: str | None = None,
    description: str | None = None,
) -> Test:
    """Create a failing test for an acceptance criterion."""
    test = Test(
        cycle_id=cycle.id,
        name=name,
        criterion=criterion,
        description=description,
        code=code,
        file_path=file_path,
        status=TestStatus.FAILING,
    )
    session.add(test)
    await session.flush()
    return test


async def get_tests(
    session: AsyncSession, cycle_id: str, status: TestStatus | None = None
) -> list[Test]:
    """Get tests for a cycle."""
    query = select(Test).where(Test.cycle_id == cycle_id).order_by(Test.created_at)
    if status:
        query = query.where(Test.status == status)
    result = await session.execute(query)
    return list(result.scalars().all())


async def set_test_statuses(
    session: AsyncSession, test_ids: Sequence[str], status: TestStatus
) -> int:
    """Batch-update test statuses. Returns the number of rows updated."""
    if not test_ids:
        return 0
    now = datetime.now(UTC)
    result = await session.execute(
        update(Test)
        .where(Test.id.in_(list(test_ids)))
        .values(status=status, last_run=now, updated_at=now)
    )
    return result.rowcount or 0


# =============================================================================
# Artifact Operations
# =============================================================================


async def create_artifact(
    session: AsyncSession,
    cycle: Cycle,
    *,
    type_: ArtifactType,
    name: str,
    content: str,
    phase: CyclePhase,
    path: str | None = None,
    purpose: str | None = None,
    parent_id: str | None = None,
) -> Artifact:
    """Create an artifact."""
    artifact = Artifact(
        cycle_id=cycle.id,
        type=type_,
        name=name,
        content=content,
        phase=phase,
        path=path,
        purpose=purpose,
        parent_id=parent_id,
    )
    session.add(artifact)
    await session.flush()
    return artifact


async def get_artifacts(
    session: AsyncSession, cycle_id: str, type_: ArtifactType | None = None
) -> list[Artifact]:
    """Get artifacts for a cycle, oldest first."""
    query = select(Artifact).where(Artifact.cycle_id == cycle_id).order_by(Artifact.created_at)
    if type_:
        query = query.where(Artifact.type == type_)
    result = await session.execute(query)
    return list(result.scalars().all())


# =============================================================================
# Query Operations
# =============================================================================


async def create_query(
    session: AsyncSession,
    *,
    project_id: str,
    type_: QueryType,
    title: str,
    question: str,
    urgency: QueryUrgency,
    priority: QueryPriority,
    context: dict[str, Any] | None = None,
    cycle_id: str | None = None,
) -> Query:
    """Create a pending query."""
    query = Query(
        project_id=project_id,
        cycle_id=cycle_id,
        type=type_,
        title=title,
        question=question,
        context=dict(context or {}),
        urgency=urgency,
        priority=priority,
        status=QueryStatus.PENDING,
    )
    session.add(query)
    await session.flush()
    return query


async def get_query(session: AsyncSession, query_id: str) -> Query | None:
    """Get a query by its ID, with comments loaded."""
    result = await session.execute(
        select(Query)
        .where(Query.id == query_id)
        .options(selectinload(Query.comments))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_queries(
    session: AsyncSession,
    *,
    project_id: str | None = None,
    cycle_id: str | None = None,
    status: QueryStatus | None = None,
    urgency: QueryUrgency | None = None,
    type_: QueryType | None = None,
) -> list[Query]:
    """Find queries matching the given filters (unordered)."""
    query = select(Query).options(selectinload(Query.comments))
    if project_id:
        query = query.where(Query.project_id == project_id)
    if cycle_id:
        query = query.where(Query.cycle_id == cycle_id)
    if status:
        query = query.where(Query.status == status)
    if urgency:
        query = query.where(Query.urgency == urgency)
    if type_:
        query = query.where(Query.type == type_)
    result = await session.execute(query)
    return list(result.scalars().all())


async def count_queries(
    session: AsyncSession,
    *,
    cycle_id: str,
    status: QueryStatus,
    urgency: QueryUrgency | None = None,
) -> int:
    """Count queries on a cycle with a given status (and urgency)."""
    query = select(func.count(Query.id)).where(Query.cycle_id == cycle_id, Query.status == status)
    if urgency:
        query = query.where(Query.urgency == urgency)
    return int((await session.execute(query)).scalar_one())


async def expire_queries(
    session: AsyncSession, *, urgency: QueryUrgency, older_than: datetime
) -> int:
    """Mark pending queries created before ``older_than`` as expired."""
    result = await session.execute(
        update(Query)
        .where(
            Query.status == QueryStatus.PENDING,
            Query.urgency == urgency,
            Query.created_at < older_than,
        )
        .values(status=QueryStatus.EXPIRED, updated_at=datetime.now(UTC))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def add_comment(
    session: AsyncSession,
    query: Query,
    content: str,
    author: CommentAuthor = CommentAuthor.USER,
) -> QueryComment:
    """Append a comment to a query."""
    comment = QueryComment(query_id=query.id, content=content, author=author)
    session.add(comment)
    await session.flush()
    return comment


# =============================================================================
# Execution Log Operations
# =============================================================================


async def log_event(
    session: AsyncSession,
    cycle_id: str,
    phase: str,
    event: str,
    message: str | None = None,
    details: dict[str, Any] | None = None,
) -> ExecutionLog:
    """Log an execution event."""
    log = ExecutionLog(
        cycle_id=cycle_id,
        phase=phase,
        event=event,
        message=message,
        details=details,
    )
    session.add(log)
    await session.flush()
    return log


async def get_execution_logs(session: AsyncSession, cycle_id: str) -> list[ExecutionLog]:
    """Get the execution log for a cycle, oldest first."""
    result = await session.execute(
        select(ExecutionLog)
        .where(ExecutionLog.cycle_id == cycle_id)
        .order_by(ExecutionLog.created_at)
    )
    return list(result.scalars().all())
