"""
Workspace snapshots: capture, restore, diff and overlap detection.

Storage structure:
.codehive/workspaces/
└── snapshot-{cycle_id}-{epoch_ms}/
    ├── metadata.json      # Serialized WorkspaceSnapshot (source of truth)
    └── <captured files>   # Copies of each captured file at its relative path
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from . import db
from .config import Settings
from .content_store import ContentStore
from .db import SessionFactory, session_scope
from .errors import PathOutsideProjectError, SnapshotNotFoundError
from .models import QueryStatus

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
SKIPPED_DIRS = {"node_modules", "__pycache__"}


class ChangeType(str, Enum):
    CREATE = "CREATE"
    MODIFY = "MODIFY"
    DELETE = "DELETE"


@dataclass(frozen=True)
class FileSnapshot:
    """Content of one file at capture time. ``hash`` is always sha256(content)."""

    path: str
    content: str
    hash: str
    last_modified: datetime

    @classmethod
    def capture(cls, path: str, content: str, last_modified: datetime) -> FileSnapshot:
        return cls(
            path=path,
            content=content,
            hash=ContentStore.hash(content),
            last_modified=last_modified,
        )

    def verify(self) -> bool:
        return ContentStore.hash(self.content) == self.hash

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "content": self.content,
            "hash": self.hash,
            "last_modified": self.last_modified.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileSnapshot:
        return cls(
            path=data["path"],
            content=data["content"],
            hash=data["hash"],
            last_modified=datetime.fromisoformat(data["last_modified"]),
        )


@dataclass
class SnapshotMetadata:
    """Copies of the cycle's rows at capture time."""

    tests: list[dict[str, Any]] = field(default_factory=list)
    artifacts: list[dict[str, Any]] = field(default_factory=list)
    queries: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"tests": self.tests, "artifacts": self.artifacts, "queries": self.queries}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SnapshotMetadata:
        return cls(
            tests=list(data.get("tests", [])),
            artifacts=list(data.get("artifacts", [])),
            queries=list(data.get("queries", [])),
        )


@dataclass
class WorkspaceSnapshot:
    """Immutable capture of a cycle's relevant files."""

    snapshot_id: str
    cycle_id: str
    branch_name: str
    phase: str
    files: list[FileSnapshot] = field(default_factory=list)
    metadata: SnapshotMetadata = field(default_factory=SnapshotMetadata)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def paths(self) -> list[str]:
        return [f.path for f in self.files]

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "cycle_id": self.cycle_id,
            "branch_name": self.branch_name,
            "phase": self.phase,
            "files": [f.to_dict() for f in self.files],
            "metadata": self.metadata.to_dict(),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkspaceSnapshot:
        created_at = datetime.fromisoformat(data["created_at"])
        return cls(
            snapshot_id=data["snapshot_id"],
            cycle_id=data["cycle_id"],
            branch_name=data["branch_name"],
            phase=data["phase"],
            files=[FileSnapshot.from_dict(f) for f in data.get("files", [])],
            metadata=SnapshotMetadata.from_dict(data.get("metadata", {})),
            created_at=db.as_utc(created_at),
        )


@dataclass(frozen=True)
class FileChange:
    """A difference between a snapshot and the current workspace."""

    type: ChangeType
    path: str
    content: str | None = None
    old_content: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "path": self.path,
            "content": self.content,
            "old_content": self.old_content,
        }


class SnapshotStore:
    """Persists workspace snapshots under ``<project>/.codehive/workspaces``."""

    def __init__(
        self,
        project_path: Path | str,
        session_factory: SessionFactory,
        settings: Settings | None = None,
    ) -> None:
        self.project_path = Path(project_path)
        self._session_factory = session_factory
        settings = settings or Settings(project_path=self.project_path)
        self.codehive_dir = self.project_path / ".codehive"
        self.snapshot_root = self.codehive_dir / "workspaces"
        self.test_dirs = list(settings.test_dirs)
        self.source_dirs = list(settings.source_dirs)
        self._test_pattern = re.compile(settings.test_file_pattern)
        self._source_pattern = re.compile(settings.source_file_pattern)

    def _content_store(self) -> ContentStore:
        # One store (and one cache) per operation.
        return ContentStore(self.project_path)

    def _snapshot_dir(self, snapshot_id: str) -> Path:
        return self.snapshot_root / snapshot_id

    def _metadata_path(self, snapshot_id: str) -> Path:
        return self._snapshot_dir(snapshot_id) / METADATA_FILE

    # =========================================================================
    # Setup
    # =========================================================================

    async def initialize(self) -> None:
        """Create the .codehive directory layout and ignore it in git."""
        for name in ("cycles", "workspaces", "locks"):
            await aiofiles.os.makedirs(self.codehive_dir / name, exist_ok=True)
        await self._update_gitignore()

    async def _update_gitignore(self) -> None:
        gitignore = self.project_path / ".gitignore"
        if await aiofiles.os.path.exists(gitignore):
            async with aiofiles.open(gitignore, "r", encoding="utf-8") as f:
                content = await f.read()
            if ".codehive" in content:
                return
            if content and not content.endswith("\n"):
                content += "\n"
            content += "\n# CodeHive\n.codehive/\n"
        else:
            content = "# CodeHive\n.codehive/\n"
        async with aiofiles.open(gitignore, "w", encoding="utf-8") as f:
            await f.write(content)

    # =========================================================================
    # Relevant files
    # =========================================================================

    async def _find_files(self, directory: Path, pattern: re.Pattern[str]) -> list[str]:
        files: list[str] = []
        if not await aiofiles.os.path.isdir(directory):
            return files

        for name in sorted(await aiofiles.os.listdir(directory)):
            full_path = directory / name
            if await aiofiles.os.path.isdir(full_path):
                if name.startswith(".") or name in SKIPPED_DIRS:
                    continue
                files.extend(await self._find_files(full_path, pattern))
            elif pattern.search(name) and await aiofiles.os.path.isfile(full_path):
                files.append(full_path.relative_to(self.project_path).as_posix())
        return files

    async def relevant_files(self, cycle_id: str) -> list[str]:
        """Test files, source files and artifact paths for a cycle, deduplicated."""
        files: list[str] = []
        store = self._content_store()

        async with session_scope(self._session_factory) as session:
            artifacts = await db.get_artifacts(session, cycle_id)
        for artifact in artifacts:
            if not artifact.path:
                continue
            try:
                files.append(store.relative(artifact.path))
            except PathOutsideProjectError:
                logger.warning(
                    "Ignoring artifact %s outside the project: %s", artifact.id, artifact.path
                )

        for directory in self.test_dirs:
            files.extend(await self._find_files(self.project_path / directory, self._test_pattern))
        for directory in self.source_dirs:
            files.extend(
                await self._find_files(self.project_path / directory, self._source_pattern)
            )

        return sorted(set(files))

    # =========================================================================
    # Snapshot persistence
    # =========================================================================

    async def _new_snapshot_id(self, cycle_id: str) -> str:
        stamp = time.time_ns() // 1_000_000
        snapshot_id = f"snapshot-{cycle_id}-{stamp}"
        while await aiofiles.os.path.exists(self._snapshot_dir(snapshot_id)):
            stamp += 1
            snapshot_id = f"snapshot-{cycle_id}-{stamp}"
        return snapshot_id

    async def _save_metadata(self, snapshot: WorkspaceSnapshot) -> None:
        for file in snapshot.files:
            if not file.verify():
                raise ValueError(f"Refusing to persist {file.path}: hash does not match content")
        async with aiofiles.open(
            self._metadata_path(snapshot.snapshot_id), "w", encoding="utf-8"
        ) as f:
            await f.write(json.dumps(snapshot.to_dict(), indent=2))

    async def load_snapshot(self, snapshot_id: str) -> WorkspaceSnapshot:
        """Load a persisted snapshot.

        Raises:
            SnapshotNotFoundError: If the metadata is missing, unparsable, or a
                file's hash does not match its content.
        """
        try:
            async with aiofiles.open(
                self._metadata_path(snapshot_id), "r", encoding="utf-8"
            ) as f:
                raw = await f.read()
            snapshot = WorkspaceSnapshot.from_dict(json.loads(raw))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise SnapshotNotFoundError(snapshot_id) from exc

        for file in snapshot.files:
            if not file.verify():
                raise SnapshotNotFoundError(snapshot_id, f"hash mismatch for {file.path}")
        return snapshot

    async def _snapshot_file(
        self, store: ContentStore, path: str, snapshot_dir: Path
    ) -> FileSnapshot | None:
        try:
            path = store.relative(path)
            content = await store.read_file(path)
            last_modified = await store.last_modified(path)
            await store.copy_file(store.resolve(path), snapshot_dir / path)
        except (OSError, UnicodeDecodeError, PathOutsideProjectError) as exc:
            logger.warning("Failed to snapshot file %s: %s", path, exc)
            return None
        return FileSnapshot.capture(path, content, last_modified)

    async def create_snapshot(
        self, cycle_id: str, branch_name: str, phase: str
    ) -> WorkspaceSnapshot:
        """Capture the cycle's relevant files. Unreadable files are skipped."""
        snapshot_id = await self._new_snapshot_id(cycle_id)
        snapshot_dir = self._snapshot_dir(snapshot_id)
        await aiofiles.os.makedirs(snapshot_dir, exist_ok=True)

        store = self._content_store()
        files: list[FileSnapshot] = []
        for path in await self.relevant_files(cycle_id):
            file_snapshot = await self._snapshot_file(store, path, snapshot_dir)
            if file_snapshot:
                files.append(file_snapshot)

        metadata = SnapshotMetadata()
        async with session_scope(self._session_factory) as session:
            cycle = await db.get_cycle_with_relations(session, cycle_id)
            if cycle:
                metadata = SnapshotMetadata(
                    tests=[t.to_dict() for t in cycle.tests],
                    artifacts=[a.to_dict() for a in cycle.artifacts],
                    queries=[q.to_dict() for q in cycle.queries if q.status == QueryStatus.PENDING],
                )

        snapshot = WorkspaceSnapshot(
            snapshot_id=snapshot_id,
            cycle_id=cycle_id,
            branch_name=branch_name,
            phase=phase,
            files=files,
            metadata=metadata,
        )
        await self._save_metadata(snapshot)
        logger.info(
            "Created snapshot %s for cycle %s (%d files)", snapshot_id, cycle_id, len(files)
        )
        return snapshot

    async def restore_snapshot(self, snapshot_id: str) -> WorkspaceSnapshot:
        """Write every captured file back to the working tree.

        Unlike creation, restoration is strict: the first write error propagates.
        """
        snapshot = await self.load_snapshot(snapshot_id)
        store = self._content_store()
        # Every path is checked before anything is written.
        for file in snapshot.files:
            store.relative(file.path)
        for file in snapshot.files:
            await store.write_file(file.path, file.content)
        logger.info("Restored snapshot %s (%d files)", snapshot_id, len(snapshot.files))
        return snapshot

    # =========================================================================
    # Queries over snapshots
    # =========================================================================

    async def list_snapshots(self, cycle_id: str | None = None) -> list[WorkspaceSnapshot]:
        """Readable snapshots, oldest first. Unparsable directories are skipped."""
        if not await aiofiles.os.path.isdir(self.snapshot_root):
            return []

        prefix = f"snapshot-{cycle_id}-" if cycle_id else "snapshot-"
        snapshots: list[WorkspaceSnapshot] = []
        for name in await aiofiles.os.listdir(self.snapshot_root):
            if not name.startswith(prefix):
                continue
            if cycle_id and not name[len(prefix):].isdigit():
                continue
            try:
                snapshots.append(await self.load_snapshot(name))
            except SnapshotNotFoundError:
                logger.debug("Skipping unreadable snapshot %s", name)
        snapshots.sort(key=lambda s: (s.created_at, s.snapshot_id))
        return snapshots

    async def latest_snapshot(self, cycle_id: str) -> WorkspaceSnapshot | None:
        snapshots = await self.list_snapshots(cycle_id)
        return snapshots[-1] if snapshots else None

    async def analyze_changes(
        self, cycle_id: str, previous_snapshot_id: str | None = None
    ) -> list[FileChange]:
        """Diff the current relevant files against a previous snapshot by content hash."""
        if not previous_snapshot_id:
            return []

        previous = await self.load_snapshot(previous_snapshot_id)
        previous_files = {f.path: f for f in previous.files}
        store = self._content_store()
        changes: list[FileChange] = []

        for path in await self.relevant_files(cycle_id):
            try:
                content = await store.read_file(path)
            except (OSError, UnicodeDecodeError):
                # Treated as absent; a previous capture shows up as DELETE below.
                continue

            old = previous_files.pop(path, None)
            if old is None:
                changes.append(FileChange(ChangeType.CREATE, path, content=content))
            elif old.hash != store.hash(content):
                changes.append(
                    FileChange(ChangeType.MODIFY, path, content=content, old_content=old.content)
                )

        for path, old in previous_files.items():
            changes.append(FileChange(ChangeType.DELETE, path, old_content=old.content))

        return changes

    async def detect_conflicts(self, cycle_id_a: str, cycle_id_b: str) -> list[str]:
        """Paths present in both cycles' latest snapshots.

        This is path overlap only; it does not compare either side against a
        common base.
        """
        latest_a = await self.latest_snapshot(cycle_id_a)
        latest_b = await self.latest_snapshot(cycle_id_b)
        if latest_a is None or latest_b is None:
            return []
        return sorted(set(latest_a.paths) & set(latest_b.paths))

    async def cleanup_old_snapshots(self, retention_days: int = 7) -> int:
        """Delete snapshot directories older than ``retention_days``."""
        cutoff = datetime.now(UTC) - timedelta(days=retention_days)
        removed = 0
        for snapshot in await self.list_snapshots():
            if snapshot.created_at < cutoff:
                await asyncio.to_thread(
                    shutil.rmtree, self._snapshot_dir(snapshot.snapshot_id), ignore_errors=True
                )
                removed += 1
        if removed:
            logger.info("Removed %d snapshots older than %d days", removed, retention_days)
        return removed
