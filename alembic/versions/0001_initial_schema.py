"""Initial schema - all tables for the cycle orchestrator.

Revision ID: 0001
Revises:
Create Date: 2026-10-18

"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _id() -> sa.Column:
    return sa.Column("id", sa.String(36), primary_key=True)


def _cycle_fk(nullable: bool = False) -> sa.Column:
    return sa.Column(
        "cycle_id",
        sa.String(36),
        sa.ForeignKey("cycles.id", ondelete="CASCADE"),
        nullable=nullable,
    )


def upgrade() -> None:
    # Cycles table
    op.create_table(
        "cycles",
        _id(),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("phase", sa.String(32), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("acceptance_criteria", JSON, nullable=False),
        sa.Column("constraints", JSON, nullable=False),
        sa.Column("current_branch", sa.String(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_cycles_project_id", "cycles", ["project_id"])

    # Tests table
    op.create_table(
        "tests",
        _id(),
        _cycle_fk(),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("criterion", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("code", sa.Text(), nullable=False),
        sa.Column("file_path", sa.String(), nullable=True),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("last_run", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_tests_cycle_id", "tests", ["cycle_id"])

    # Artifacts table
    op.create_table(
        "artifacts",
        _id(),
        _cycle_fk(),
        sa.Column(
            "parent_id",
            sa.String(36),
            sa.ForeignKey("artifacts.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("path", sa.String(), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("purpose", sa.Text(), nullable=True),
        sa.Column("phase", sa.String(32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_artifacts_cycle_id", "artifacts", ["cycle_id"])

    # Queries table
    op.create_table(
        "queries",
        _id(),
        sa.Column("project_id", sa.String(), nullable=False),
        _cycle_fk(nullable=True),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column("context", JSON, nullable=False),
        sa.Column("urgency", sa.String(32), nullable=False),
        sa.Column("priority", sa.String(32), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("answer", sa.Text(), nullable=True),
        sa.Column("answered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_queries_project_id", "queries", ["project_id"])
    op.create_index("ix_queries_cycle_id", "queries", ["cycle_id"])
    op.create_index("ix_queries_status", "queries", ["status"])

    # Query comments table
    op.create_table(
        "query_comments",
        _id(),
        sa.Column(
            "query_id",
            sa.String(36),
            sa.ForeignKey("queries.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("author", sa.String(32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_query_comments_query_id", "query_comments", ["query_id"])

    # Execution log table
    op.create_table(
        "execution_log",
        _id(),
        _cycle_fk(),
        sa.Column("phase", sa.String(), nullable=False),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("details", JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_execution_log_cycle_id", "execution_log", ["cycle_id"])


def downgrade() -> None:
    op.drop_table("execution_log")
    op.drop_table("query_comments")
    op.drop_table("queries")
    op.drop_table("artifacts")
    op.drop_table("tests")
    op.drop_table("cycles")
