"""
Decision gate: queries that pause and resume cycles.

A BLOCKING query on a cycle pauses it until the query is answered. ADVISORY
queries never gate progression and expire after a retention window.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from . import db
from .db import SessionFactory, session_scope
from .errors import QueryNotFoundError
from .events import CycleEvent, EventEmitter, EventType
from .models import (
    CommentAuthor,
    CycleStatus,
    Query,
    QueryComment,
    QueryPriority,
    QueryStatus,
    QueryType,
    QueryUrgency,
)

logger = logging.getLogger(__name__)

NEGATIVE_KEYWORDS = ("no", "stop", "cancel", "abort", "different")
_NEGATIVE_RE = re.compile(r"\b(" + "|".join(NEGATIVE_KEYWORDS) + r")\b", re.IGNORECASE)

RETRY_WITH_DIFFERENT_APPROACH = "retry_with_different_approach"

_PRIORITY_RANK = {QueryPriority.HIGH: 0, QueryPriority.MEDIUM: 1, QueryPriority.LOW: 2}


@dataclass
class QueryCreate:
    """Input for a new query."""

    project_id: str
    type: QueryType
    title: str
    question: str
    urgency: QueryUrgency = QueryUrgency.ADVISORY
    priority: QueryPriority | None = None
    context: dict[str, Any] = field(default_factory=dict)
    cycle_id: str | None = None

    def resolved_priority(self) -> QueryPriority:
        if self.priority is not None:
            return self.priority
        if self.urgency == QueryUrgency.BLOCKING:
            return QueryPriority.HIGH
        return QueryPriority.MEDIUM


@dataclass
class QueryFilters:
    project_id: str | None = None
    cycle_id: str | None = None
    status: QueryStatus | None = None
    urgency: QueryUrgency | None = None
    type: QueryType | None = None


@dataclass
class DecisionResult:
    """Outcome of answering a query."""

    query: Query
    should_continue: bool
    alternative_action: str | None = None


@dataclass
class DecisionStats:
    total: int = 0
    pending: int = 0
    answered: int = 0
    dismissed: int = 0
    expired: int = 0
    blocking: int = 0
    avg_response_minutes: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "answered": self.answered,
            "dismissed": self.dismissed,
            "expired": self.expired,
            "blocking": self.blocking,
            "avg_response_minutes": self.avg_response_minutes,
        }


def is_negative_answer(answer: str) -> bool:
    """Coarse check for answers that reject the proposed approach."""
    return bool(_NEGATIVE_RE.search(answer))


def sort_queries(queries: list[Query]) -> list[Query]:
    """BLOCKING first, then HIGH to LOW priority, then newest first."""
    newest_first = sorted(queries, key=lambda q: db.as_utc(q.created_at), reverse=True)
    return sorted(
        newest_first,
        key=lambda q: (q.urgency != QueryUrgency.BLOCKING, _PRIORITY_RANK[q.priority]),
    )


class DecisionGate:
    """Creates and resolves queries, pausing and resuming cycles as needed."""

    def __init__(self, session_factory: SessionFactory, events: EventEmitter | None = None) -> None:
        self._session_factory = session_factory
        self._events = events

    def _emit(self, event_type: EventType, query: Query, message: str, **data: Any) -> None:
        if not self._events:
            return
        self._events.emit(
            CycleEvent(
                type=event_type,
                project_id=query.project_id,
                cycle_id=query.cycle_id,
                message=message,
                data={"query_id": query.id, "urgency": query.urgency.value, **data},
            )
        )

    async def _load(self, session: Any, query_id: str) -> Query:
        query = await db.get_query(session, query_id)
        if not query:
            raise QueryNotFoundError(query_id)
        return query

    # =========================================================================
    # Create / resolve
    # =========================================================================

    async def create_query(self, data: QueryCreate) -> Query:
        """Create a PENDING query; a BLOCKING query pauses its active cycle."""
        paused = False
        async with session_scope(self._session_factory) as session:
            query = await db.create_query(
                session,
                project_id=data.project_id,
                cycle_id=data.cycle_id,
                type_=data.type,
                title=data.title,
                question=data.question,
                context=data.context,
                urgency=data.urgency,
                priority=data.resolved_priority(),
            )
            if query.urgency == QueryUrgency.BLOCKING and query.cycle_id:
                cycle = await db.get_cycle(session, query.cycle_id)
                if cycle and cycle.status == CycleStatus.ACTIVE:
                    await db.update_cycle(session, cycle, status=CycleStatus.PAUSED)
                    paused = True
            query = await self._load(session, query.id)

        logger.info("Created %s query %s: %s", query.urgency.value, query.id, query.title)
        self._emit(EventType.QUERY_CREATED, query, f"Query created: {query.title}")
        if paused:
            self._emit(
                EventType.CYCLE_PAUSED,
                query,
                "Cycle paused by blocking query",
                reason="blocking_query",
            )
        return query

    async def answer_query(self, query_id: str, answer: str) -> DecisionResult:
        """Record an answer. Resumes the cycle once its last blocking query is resolved."""
        resumed = False
        async with session_scope(self._session_factory) as session:
            query = await self._load(session, query_id)
            query.status = QueryStatus.ANSWERED
            query.answer = answer
            query.answered_at = datetime.now(UTC)
            await db.add_comment(session, query, f"Answered: {answer}", CommentAuthor.SYSTEM)

            if query.urgency == QueryUrgency.BLOCKING and query.cycle_id:
                await session.flush()
                remaining = await db.count_queries(
                    session,
                    cycle_id=query.cycle_id,
                    status=QueryStatus.PENDING,
                    urgency=QueryUrgency.BLOCKING,
                )
                cycle = await db.get_cycle(session, query.cycle_id)
                if remaining == 0 and cycle and cycle.status == CycleStatus.PAUSED:
                    await db.update_cycle(session, cycle, status=CycleStatus.ACTIVE)
                    resumed = True
            query = await self._load(session, query_id)

        should_continue = not is_negative_answer(answer)
        result = DecisionResult(
            query=query,
            should_continue=should_continue,
            alternative_action=None if should_continue else RETRY_WITH_DIFFERENT_APPROACH,
        )

        logger.info("Answered query %s (continue=%s)", query.id, should_continue)
        self._emit(
            EventType.QUERY_ANSWERED,
            query,
            f"Query answered: {query.title}",
            should_continue=should_continue,
        )
        if resumed:
            self._emit(
                EventType.CYCLE_RESUMED, query, "Cycle resumed after blocking query answered"
            )
        return result

    async def dismiss_query(self, query_id: str) -> Query:
        """Dismiss a query. Meant for ADVISORY queries; not enforced."""
        async with session_scope(self._session_factory) as session:
            query = await self._load(session, query_id)
            query.status = QueryStatus.DISMISSED
            await db.add_comment(session, query, "Query dismissed", CommentAuthor.SYSTEM)
            query = await self._load(session, query_id)

        logger.info("Dismissed query %s", query.id)
        self._emit(EventType.QUERY_DISMISSED, query, f"Query dismissed: {query.title}")
        return query

    async def add_comment(
        self, query_id: str, content: str, author: CommentAuthor | str = CommentAuthor.USER
    ) -> QueryComment:
        async with session_scope(self._session_factory) as session:
            query = await self._load(session, query_id)
            return await db.add_comment(session, query, content, CommentAuthor(author))

    async def create_decision_branch(
        self, query_id: str, branch_name: str, description: str
    ) -> Query:
        """Record an alternative approach explored for a cycle-bound query."""
        async with session_scope(self._session_factory) as session:
            query = await self._load(session, query_id)
            if not query.cycle_id:
                raise ValueError(f"Query {query_id} is not associated with a cycle")

            context = dict(query.context or {})
            branches = list(context.get("decision_branches", []))
            branches.append(
                {
                    "branch_name": branch_name,
                    "description": description,
                    "created_at": datetime.now(UTC).isoformat(),
                }
            )
            context["decision_branches"] = branches
            query.context = context
            await db.add_comment(
                session,
                query,
                f"Created decision branch: {branch_name} - {description}",
                CommentAuthor.SYSTEM,
            )
            query = await self._load(session, query_id)

        logger.info("Recorded decision branch %s on query %s", branch_name, query_id)
        return query

    # =========================================================================
    # Lookups
    # =========================================================================

    async def get_query(self, query_id: str) -> Query:
        async with session_scope(self._session_factory) as session:
            return await self._load(session, query_id)

    async def get_queries(self, filters: QueryFilters | None = None) -> list[Query]:
        filters = filters or QueryFilters()
        async with session_scope(self._session_factory) as session:
            queries = await db.find_queries(
                session,
                project_id=filters.project_id,
                cycle_id=filters.cycle_id,
                status=filters.status,
                urgency=filters.urgency,
                type_=filters.type,
            )
        return sort_queries(queries)

    async def get_pending_queries(self, project_id: str) -> list[Query]:
        return await self.get_queries(
            QueryFilters(project_id=project_id, status=QueryStatus.PENDING)
        )

    async def has_blocking_queries(self, cycle_id: str) -> bool:
        """True while the cycle has any PENDING BLOCKING query."""
        async with session_scope(self._session_factory) as session:
            count = await db.count_queries(
                session,
                cycle_id=cycle_id,
                status=QueryStatus.PENDING,
                urgency=QueryUrgency.BLOCKING,
            )
        return count > 0

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def expire_old_queries(self, days_old: int = 7) -> int:
        """Expire PENDING ADVISORY queries older than ``days_old`` days.

        BLOCKING queries are never expired.
        """
        cutoff = datetime.now(UTC) - timedelta(days=days_old)
        async with session_scope(self._session_factory) as session:
            count = await db.expire_queries(
                session, urgency=QueryUrgency.ADVISORY, older_than=cutoff
            )

        if count:
            logger.info("Expired %d advisory queries older than %d days", count, days_old)
            if self._events:
                self._events.emit(
                    CycleEvent(
                        type=EventType.QUERY_EXPIRED,
                        message=f"Expired {count} advisory queries",
                        data={"count": count, "days_old": days_old},
                    )
                )
        return count

    async def get_decision_stats(self, project_id: str) -> DecisionStats:
        async with session_scope(self._session_factory) as session:
            queries = await db.find_queries(session, project_id=project_id)

        stats = DecisionStats(total=len(queries))
        response_minutes: list[float] = []
        for query in queries:
            if query.status == QueryStatus.PENDING:
                stats.pending += 1
            elif query.status == QueryStatus.ANSWERED:
                stats.answered += 1
                if query.answered_at:
                    delta = db.as_utc(query.answered_at) - db.as_utc(query.created_at)
                    response_minutes.append(delta.total_seconds() / 60)
            elif query.status == QueryStatus.DISMISSED:
                stats.dismissed += 1
            elif query.status == QueryStatus.EXPIRED:
                stats.expired += 1
            if query.urgency == QueryUrgency.BLOCKING:
                stats.blocking += 1

        if response_minutes:
            stats.avg_response_minutes = round(sum(response_minutes) / len(response_minutes), 2)
        return stats
