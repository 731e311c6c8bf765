"""
CodeHive Cycle Orchestrator

This package drives feature work through RED, GREEN, REFACTOR and REVIEW
phases, gates progression on decision queries, and keeps content-addressed
workspace snapshots with SQLAlchemy-backed state management.
"""

__version__ = "0.1.0"

# Configuration
from codehive.config import Settings, get_settings

# Content and snapshots
from codehive.content_store import ContentStore

# Decisions
from codehive.decisions import (
    DecisionGate,
    DecisionResult,
    DecisionStats,
    QueryCreate,
    QueryFilters,
)

# Orchestration
from codehive.engine import (
    CycleEngine,
    CycleStatusReport,
    FeatureRequest,
    PhaseOutcome,
    PhaseResult,
)
from codehive.errors import (
    CodeHiveError,
    CycleBusyError,
    CycleNotFoundError,
    InvalidTransitionError,
    NotFoundError,
    PathOutsideProjectError,
    QueryNotFoundError,
    SnapshotNotFoundError,
)

# Events
from codehive.events import CycleEvent, EventEmitter, EventType

# Core models
from codehive.models import (
    Artifact,
    ArtifactType,
    Cycle,
    CyclePhase,
    CycleStatus,
    Query,
    QueryComment,
    QueryPriority,
    QueryStatus,
    QueryType,
    QueryUrgency,
    Test,
    TestStatus,
)
from codehive.snapshots import (
    ChangeType,
    FileChange,
    FileSnapshot,
    SnapshotStore,
    WorkspaceSnapshot,
)

__all__ = [
    # Version
    "__version__",
    # Models
    "Cycle",
    "Test",
    "Artifact",
    "Query",
    "QueryComment",
    "CyclePhase",
    "CycleStatus",
    "TestStatus",
    "ArtifactType",
    "QueryType",
    "QueryUrgency",
    "QueryPriority",
    "QueryStatus",
    # Config
    "Settings",
    "get_settings",
    # Content and snapshots
    "ContentStore",
    "SnapshotStore",
    "WorkspaceSnapshot",
    "FileSnapshot",
    "FileChange",
    "ChangeType",
    # Decisions
    "DecisionGate",
    "DecisionResult",
    "DecisionStats",
    "QueryCreate",
    "QueryFilters",
    # Orchestration
    "CycleEngine",
    "CycleStatusReport",
    "FeatureRequest",
    "PhaseOutcome",
    "PhaseResult",
    # Events
    "CycleEvent",
    "EventEmitter",
    "EventType",
    # Errors
    "CodeHiveError",
    "NotFoundError",
    "CycleNotFoundError",
    "QueryNotFoundError",
    "SnapshotNotFoundError",
    "InvalidTransitionError",
    "CycleBusyError",
    "PathOutsideProjectError",
]
