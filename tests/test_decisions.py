from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import update

from codehive import db
from codehive.decisions import (
    RETRY_WITH_DIFFERENT_APPROACH,
    DecisionGate,
    QueryCreate,
    QueryFilters,
    is_negative_answer,
)
from codehive.errors import QueryNotFoundError
from codehive.events import EventEmitter
from codehive.models import (
    CommentAuthor,
    CycleStatus,
    Query,
    QueryPriority,
    QueryStatus,
    QueryType,
    QueryUrgency,
)

from conftest import RecordingHandler


async def _make_cycle(session_factory: db.SessionFactory) -> str:
    async with db.session_scope(session_factory) as session:
        cycle = await db.create_cycle(
            session,
            project_id="test-project",
            title="Checkout",
            acceptance_criteria=["user can pay"],
            current_branch="feature/checkout",
        )
        return cycle.id


async def _cycle_status(session_factory: db.SessionFactory, cycle_id: str) -> CycleStatus:
    async with db.session_scope(session_factory) as session:
        cycle = await db.get_cycle(session, cycle_id)
        assert cycle is not None
        return cycle.status


async def _backdate(session_factory: db.SessionFactory, query_id: str, **delta: float) -> None:
    async with db.session_scope(session_factory) as session:
        await session.execute(
            update(Query)
            .where(Query.id == query_id)
            .values(created_at=datetime.now(UTC) - timedelta(**delta))
        )


def _query(
    cycle_id: str | None = None,
    urgency: QueryUrgency = QueryUrgency.ADVISORY,
    title: str = "Which database?",
    priority: QueryPriority | None = None,
) -> QueryCreate:
    return QueryCreate(
        project_id="test-project",
        type=QueryType.ARCHITECTURE,
        title=title,
        question="Postgres or SQLite?",
        urgency=urgency,
        priority=priority,
        context={"options": ["postgres", "sqlite"]},
        cycle_id=cycle_id,
    )


@pytest.mark.asyncio
async def test_priority_defaults_follow_urgency(gate: DecisionGate) -> None:
    blocking = await gate.create_query(_query(urgency=QueryUrgency.BLOCKING))
    advisory = await gate.create_query(_query())
    explicit = await gate.create_query(_query(priority=QueryPriority.LOW))

    assert blocking.status == QueryStatus.PENDING
    assert blocking.priority == QueryPriority.HIGH
    assert advisory.priority == QueryPriority.MEDIUM
    assert explicit.priority == QueryPriority.LOW
    assert advisory.context == {"options": ["postgres", "sqlite"]}


@pytest.mark.asyncio
async def test_blocking_query_pauses_cycle(
    gate: DecisionGate, session_factory: db.SessionFactory
) -> None:
    cycle_id = await _make_cycle(session_factory)

    await gate.create_query(_query(cycle_id))
    assert await _cycle_status(session_factory, cycle_id) == CycleStatus.ACTIVE

    await gate.create_query(_query(cycle_id, QueryUrgency.BLOCKING))
    assert await _cycle_status(session_factory, cycle_id) == CycleStatus.PAUSED
    assert await gate.has_blocking_queries(cycle_id)


@pytest.mark.asyncio
async def test_answer_resumes_cycle_after_last_blocking_query(
    gate: DecisionGate, session_factory: db.SessionFactory
) -> None:
    cycle_id = await _make_cycle(session_factory)
    first = await gate.create_query(_query(cycle_id, QueryUrgency.BLOCKING, "First"))
    second = await gate.create_query(_query(cycle_id, QueryUrgency.BLOCKING, "Second"))

    result = await gate.answer_query(first.id, "Use Postgres")
    assert result.query.status == QueryStatus.ANSWERED
    assert result.query.answer == "Use Postgres"
    assert result.query.answered_at is not None
    assert await _cycle_status(session_factory, cycle_id) == CycleStatus.PAUSED

    await gate.answer_query(second.id, "Yes")
    assert await _cycle_status(session_factory, cycle_id) == CycleStatus.ACTIVE
    assert not await gate.has_blocking_queries(cycle_id)


@pytest.mark.asyncio
async def test_answer_appends_system_comment(gate: DecisionGate) -> None:
    query = await gate.create_query(_query())

    result = await gate.answer_query(query.id, "Go with SQLite")

    assert [(c.author, c.content) for c in result.query.comments] == [
        (CommentAuthor.SYSTEM, "Answered: Go with SQLite")
    ]


@pytest.mark.asyncio
async def test_negative_answer_suggests_alternative(gate: DecisionGate) -> None:
    query = await gate.create_query(_query())

    result = await gate.answer_query(query.id, "No, try a DIFFERENT approach")

    assert result.should_continue is False
    assert result.alternative_action == RETRY_WITH_DIFFERENT_APPROACH


@pytest.mark.parametrize(
    ("answer", "negative"),
    [
        ("no", True),
        ("Please stop.", True),
        ("cancel it", True),
        ("Abort!", True),
        ("Yes, that is notable", False),
        ("I know this works", False),
        ("Unstoppable, go ahead", False),
        ("Sounds good", False),
    ],
)
def test_negative_keywords_match_whole_words(answer: str, negative: bool) -> None:
    assert is_negative_answer(answer) is negative


@pytest.mark.asyncio
async def test_dismiss_query(gate: DecisionGate) -> None:
    query = await gate.create_query(_query())

    dismissed = await gate.dismiss_query(query.id)

    assert dismissed.status == QueryStatus.DISMISSED
    assert [c.content for c in dismissed.comments] == ["Query dismissed"]


@pytest.mark.asyncio
async def test_missing_query_raises(gate: DecisionGate) -> None:
    with pytest.raises(QueryNotFoundError):
        await gate.answer_query("missing", "yes")
    with pytest.raises(QueryNotFoundError):
        await gate.dismiss_query("missing")
    with pytest.raises(LookupError):
        await gate.get_query("missing")


@pytest.mark.asyncio
async def test_expire_old_queries_skips_blocking(
    gate: DecisionGate, session_factory: db.SessionFactory
) -> None:
    old_advisory = await gate.create_query(_query(title="Old advisory"))
    old_blocking = await gate.create_query(_query(urgency=QueryUrgency.BLOCKING, title="Old"))
    recent = await gate.create_query(_query(title="Recent advisory"))
    await _backdate(session_factory, old_advisory.id, days=10)
    await _backdate(session_factory, old_blocking.id, days=10)

    expired = await gate.expire_old_queries(days_old=7)

    assert expired == 1
    assert (await gate.get_query(old_advisory.id)).status == QueryStatus.EXPIRED
    assert (await gate.get_query(old_blocking.id)).status == QueryStatus.PENDING
    assert (await gate.get_query(recent.id)).status == QueryStatus.PENDING


@pytest.mark.asyncio
async def test_decision_stats(gate: DecisionGate, session_factory: db.SessionFactory) -> None:
    answered = await gate.create_query(_query(title="Answered"))
    dismissed = await gate.create_query(_query(title="Dismissed"))
    await gate.create_query(_query(urgency=QueryUrgency.BLOCKING, title="Pending"))
    await _backdate(session_factory, answered.id, minutes=30)
    await gate.answer_query(answered.id, "yes")
    await gate.dismiss_query(dismissed.id)

    stats = await gate.get_decision_stats("test-project")

    assert stats.total == 3
    assert stats.pending == 1
    assert stats.answered == 1
    assert stats.dismissed == 1
    assert stats.expired == 0
    assert stats.blocking == 1
    assert 29 <= stats.avg_response_minutes <= 31


@pytest.mark.asyncio
async def test_get_queries_orders_blocking_then_priority(
    gate: DecisionGate, session_factory: db.SessionFactory
) -> None:
    low = await gate.create_query(_query(title="low", priority=QueryPriority.LOW))
    high = await gate.create_query(_query(title="high", priority=QueryPriority.HIGH))
    blocking = await gate.create_query(_query(urgency=QueryUrgency.BLOCKING, title="blocking"))
    older_high = await gate.create_query(_query(title="older high", priority=QueryPriority.HIGH))
    await _backdate(session_factory, older_high.id, hours=1)

    ordered = await gate.get_queries(QueryFilters(project_id="test-project"))

    assert [q.id for q in ordered] == [blocking.id, high.id, older_high.id, low.id]

    pending = await gate.get_pending_queries("test-project")
    assert len(pending) == 4
    assert await gate.get_queries(QueryFilters(status=QueryStatus.ANSWERED)) == []


@pytest.mark.asyncio
async def test_add_comment(gate: DecisionGate) -> None:
    query = await gate.create_query(_query())

    comment = await gate.add_comment(query.id, "Leaning towards Postgres", "ai")

    assert comment.author == CommentAuthor.AI
    reloaded = await gate.get_query(query.id)
    assert [c.content for c in reloaded.comments] == ["Leaning towards Postgres"]


@pytest.mark.asyncio
async def test_create_decision_branch(
    gate: DecisionGate, session_factory: db.SessionFactory
) -> None:
    cycle_id = await _make_cycle(session_factory)
    query = await gate.create_query(_query(cycle_id))

    updated = await gate.create_decision_branch(query.id, "try-sqlite", "Prototype on SQLite")

    branches = updated.context["decision_branches"]
    assert [b["branch_name"] for b in branches] == ["try-sqlite"]
    assert updated.context["options"] == ["postgres", "sqlite"]
    assert updated.comments[-1].author == CommentAuthor.SYSTEM

    unbound = await gate.create_query(_query())
    with pytest.raises(ValueError):
        await gate.create_decision_branch(unbound.id, "x", "y")


@pytest.mark.asyncio
async def test_gate_emits_events(session_factory: db.SessionFactory) -> None:
    recorder = RecordingHandler()
    emitter = EventEmitter()
    emitter.on_event(recorder)
    gate = DecisionGate(session_factory, emitter)
    cycle_id = await _make_cycle(session_factory)

    query = await gate.create_query(_query(cycle_id, QueryUrgency.BLOCKING))
    await gate.answer_query(query.id, "ok")
    await emitter.drain()

    assert recorder.types() == [
        "query.created",
        "cycle.paused",
        "query.answered",
        "cycle.resumed",
    ]
