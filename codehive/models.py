"""SQLAlchemy models for the cycle orchestrator database."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, DateTime, ForeignKey, String, Text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid4())


_JSON = JSON().with_variant(JSONB(), "postgresql")


class CyclePhase(str, Enum):
    RED = "RED"
    GREEN = "GREEN"
    REFACTOR = "REFACTOR"
    REVIEW = "REVIEW"


class CycleStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TestStatus(str, Enum):
    __test__ = False

    FAILING = "FAILING"
    PASSING = "PASSING"


class ArtifactType(str, Enum):
    CODE = "CODE"
    TEST = "TEST"
    DOC = "DOC"


class QueryType(str, Enum):
    ARCHITECTURE = "ARCHITECTURE"
    BUSINESS_LOGIC = "BUSINESS_LOGIC"
    UI_UX = "UI_UX"
    INTEGRATION = "INTEGRATION"
    CLARIFICATION = "CLARIFICATION"


class QueryUrgency(str, Enum):
    BLOCKING = "BLOCKING"
    ADVISORY = "ADVISORY"


class QueryPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class QueryStatus(str, Enum):
    PENDING = "PENDING"
    ANSWERED = "ANSWERED"
    DISMISSED = "DISMISSED"
    EXPIRED = "EXPIRED"


class CommentAuthor(str, Enum):
    USER = "user"
    AI = "ai"
    SYSTEM = "system"


# Phase order; REVIEW is followed by the terminal COMPLETED status.
PHASE_ORDER: tuple[CyclePhase, ...] = (
    CyclePhase.RED,
    CyclePhase.GREEN,
    CyclePhase.REFACTOR,
    CyclePhase.REVIEW,
)


def next_phase(phase: CyclePhase) -> CyclePhase | None:
    """Return the phase after ``phase``, or None after REVIEW."""
    index = PHASE_ORDER.index(phase)
    if index + 1 < len(PHASE_ORDER):
        return PHASE_ORDER[index + 1]
    return None


def _enum_column(enum_cls: type[Enum]) -> SAEnum:
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: _JSON,
        list[str]: _JSON,
    }


class Cycle(Base):
    """One unit of feature work driven through RED/GREEN/REFACTOR/REVIEW."""

    __tablename__ = "cycles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    phase: Mapped[CyclePhase] = mapped_column(_enum_column(CyclePhase), default=CyclePhase.RED)
    status: Mapped[CycleStatus] = mapped_column(
        _enum_column(CycleStatus), default=CycleStatus.ACTIVE
    )
    acceptance_criteria: Mapped[list[str]] = mapped_column(default=list)
    constraints: Mapped[list[str]] = mapped_column(default=list)
    current_branch: Mapped[str | None] = mapped_column(String, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    tests: Mapped[list[Test]] = relationship(
        back_populates="cycle", cascade="all, delete-orphan", order_by="Test.created_at"
    )
    artifacts: Mapped[list[Artifact]] = relationship(
        back_populates="cycle", cascade="all, delete-orphan", order_by="Artifact.created_at"
    )
    queries: Mapped[list[Query]] = relationship(
        back_populates="cycle", cascade="all, delete-orphan", order_by="Query.created_at"
    )
    execution_logs: Mapped[list[ExecutionLog]] = relationship(
        back_populates="cycle", cascade="all, delete-orphan"
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "title": self.title,
            "description": self.description,
            "phase": self.phase.value,
            "status": self.status.value,
            "acceptance_criteria": list(self.acceptance_criteria or []),
            "constraints": list(self.constraints or []),
            "current_branch": self.current_branch,
            "failure_reason": self.failure_reason,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
            "completed_at": _isoformat(self.completed_at),
        }


class Test(Base):
    """A test written for one acceptance criterion."""

    __tablename__ = "tests"
    __test__ = False

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    cycle_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("cycles.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    criterion: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    code: Mapped[str] = mapped_column(Text, default="")
    file_path: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[TestStatus] = mapped_column(_enum_column(TestStatus), default=TestStatus.FAILING)
    last_run: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    cycle: Mapped[Cycle] = relationship(back_populates="tests")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "cycle_id": self.cycle_id,
            "name": self.name,
            "criterion": self.criterion,
            "description": self.description,
            "code": self.code,
            "file_path": self.file_path,
            "status": self.status.value,
            "last_run": _isoformat(self.last_run),
            "created_at": _isoformat(self.created_at),
        }


class Artifact(Base):
    """Generated output of a phase. Never edited after creation."""

    __tablename__ = "artifacts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    cycle_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("cycles.id", ondelete="CASCADE"), index=True
    )
    parent_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("artifacts.id", ondelete="SET NULL"), nullable=True
    )
    type: Mapped[ArtifactType] = mapped_column(_enum_column(ArtifactType), nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    path: Mapped[str | None] = mapped_column(String, nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    purpose: Mapped[str | None] = mapped_column(Text, nullable=True)
    phase: Mapped[CyclePhase] = mapped_column(_enum_column(CyclePhase), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    cycle: Mapped[Cycle] = relationship(back_populates="artifacts")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "cycle_id": self.cycle_id,
            "parent_id": self.parent_id,
            "type": self.type.value,
            "name": self.name,
            "path": self.path,
            "content": self.content,
            "purpose": self.purpose,
            "phase": self.phase.value,
            "created_at": _isoformat(self.created_at),
        }


class Query(Base):
    """A decision point that may block a cycle until answered."""

    __tablename__ = "queries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    cycle_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("cycles.id", ondelete="CASCADE"), nullable=True, index=True
    )
    type: Mapped[QueryType] = mapped_column(_enum_column(QueryType), nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[dict[str, Any]] = mapped_column(default=dict)
    urgency: Mapped[QueryUrgency] = mapped_column(
        _enum_column(QueryUrgency), default=QueryUrgency.ADVISORY
    )
    priority: Mapped[QueryPriority] = mapped_column(
        _enum_column(QueryPriority), default=QueryPriority.MEDIUM
    )
    status: Mapped[QueryStatus] = mapped_column(
        _enum_column(QueryStatus), default=QueryStatus.PENDING, index=True
    )
    answer: Mapped[str | None] = mapped_column(Text, nullable=True)
    answered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    cycle: Mapped[Cycle | None] = relationship(back_populates="queries")
    comments: Mapped[list[QueryComment]] = relationship(
        back_populates="query", cascade="all, delete-orphan", order_by="QueryComment.created_at"
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "cycle_id": self.cycle_id,
            "type": self.type.value,
            "title": self.title,
            "question": self.question,
            "context": dict(self.context or {}),
            "urgency": self.urgency.value,
            "priority": self.priority.value,
            "status": self.status.value,
            "answer": self.answer,
            "answered_at": _isoformat(self.answered_at),
            "created_at": _isoformat(self.created_at),
        }


class QueryComment(Base):
    """Append-only audit trail on a query."""

    __tablename__ = "query_comments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    query_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("queries.id", ondelete="CASCADE"), index=True
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    author: Mapped[CommentAuthor] = mapped_column(
        _enum_column(CommentAuthor), default=CommentAuthor.USER
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    query: Mapped[Query] = relationship(back_populates="comments")


class ExecutionLog(Base):
    """Audit trail of cycle events."""

    __tablename__ = "execution_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    cycle_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("cycles.id", ondelete="CASCADE"), index=True
    )
    phase: Mapped[str] = mapped_column(String, nullable=False)
    event: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    cycle: Mapped[Cycle] = relationship(back_populates="execution_logs")
