"""Error types and helpers for the cycle orchestrator."""

from __future__ import annotations

import re
from collections.abc import Iterator

import click


class CodeHiveError(Exception):
    """Base class for orchestrator errors."""


class NotFoundError(CodeHiveError, LookupError):
    """A referenced cycle, query or snapshot does not exist."""


class CycleNotFoundError(NotFoundError):
    def __init__(self, cycle_id: str) -> None:
        super().__init__(f"Cycle {cycle_id} not found")
        self.cycle_id = cycle_id


class QueryNotFoundError(NotFoundError):
    def __init__(self, query_id: str) -> None:
        super().__init__(f"Query {query_id} not found")
        self.query_id = query_id


class SnapshotNotFoundError(NotFoundError):
    def __init__(self, snapshot_id: str, reason: str | None = None) -> None:
        message = f"Snapshot {snapshot_id} not found"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.snapshot_id = snapshot_id


class InvalidTransitionError(CodeHiveError):
    """Raised when a status change is not allowed from the cycle's current state."""


class CycleBusyError(CodeHiveError):
    """Raised when another caller holds the execution lease for a cycle."""

    def __init__(self, cycle_id: str, timeout: float) -> None:
        super().__init__(f"Cycle {cycle_id} is busy (lease not acquired within {timeout}s)")
        self.cycle_id = cycle_id


class BranchOperationError(CodeHiveError):
    """Raised when a git branch operation fails."""


class PathOutsideProjectError(CodeHiveError, ValueError):
    """A file path does not resolve to a location under the project root."""

    def __init__(self, path: str, root: str) -> None:
        super().__init__(f"Path {path} is outside the project root {root}")
        self.path = path


class SchemaNotInitializedError(click.ClickException):
    """Raised when the database schema/migrations have not been applied."""


_MISSING_TABLE_PATTERNS = (
    # PostgreSQL (asyncpg)
    re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE),
    # SQLite
    re.compile(r"no such table:\s*(?P<table>\w+)", re.IGNORECASE),
)


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def missing_table_name(exc: BaseException) -> str | None:
    """Name of the table a database error complains about, if it names one."""
    for error in _exception_chain(exc):
        for pattern in _MISSING_TABLE_PATTERNS:
            match = pattern.search(str(error))
            if match:
                return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table / missing-schema error."""
    if missing_table_name(exc):
        return True
    return any("undefinedtableerror" in str(error).lower() for error in _exception_chain(exc))


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""
    return "\n".join(
        [
            f"Database schema is not initialized{table_hint}.",
            "Run: `alembic upgrade head`",
            "Or: `codehive init-db`",
        ]
    )
