"""File read/hash/write primitives with a per-instance content cache."""

from __future__ import annotations

import hashlib
import os
from datetime import UTC, datetime
from pathlib import Path

import aiofiles
import aiofiles.os

from .errors import PathOutsideProjectError


class ContentStore:
    """Reads and writes project files relative to ``project_path``.

    Reads are cached by relative path for the lifetime of the instance. The cache
    is never invalidated by changes made outside this instance, so callers create
    a fresh store per snapshot/diff operation or call :meth:`clear_cache`.
    """

    def __init__(self, project_path: Path | str) -> None:
        self.project_path = Path(project_path)
        self._cache: dict[str, str] = {}

    def relative(self, path: str | Path) -> str:
        """Normalize ``path`` to a POSIX path relative to the project root.

        Absolute paths are accepted when they point inside the project.

        Raises:
            PathOutsideProjectError: If the path resolves outside the project or
                to the project root itself.
        """
        root = Path(os.path.abspath(self.project_path))
        full = Path(os.path.normpath(root / path))
        if full == root or not full.is_relative_to(root):
            raise PathOutsideProjectError(str(path), str(root))
        return full.relative_to(root).as_posix()

    def resolve(self, path: str | Path) -> Path:
        return self.project_path / self.relative(path)

    @staticmethod
    def hash(content: str) -> str:
        """SHA-256 hex digest of the UTF-8 encoded content."""
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    async def read_file(self, path: str) -> str:
        """Read a file, serving repeated reads of the same path from the cache.

        Raises:
            OSError: If the file cannot be read.
            PathOutsideProjectError: If the path leaves the project root.
        """
        key = self.relative(path)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        async with aiofiles.open(self.project_path / key, "r", encoding="utf-8", newline="") as f:
            content = await f.read()
        self._cache[key] = content
        return content

    async def write_file(self, path: str, content: str) -> None:
        """Write a file, creating parent directories as needed."""
        key = self.relative(path)
        full_path = self.project_path / key
        await aiofiles.os.makedirs(full_path.parent, exist_ok=True)
        async with aiofiles.open(full_path, "w", encoding="utf-8", newline="") as f:
            await f.write(content)
        self._cache[key] = content

    async def copy_file(self, source: Path, destination: Path) -> None:
        """Copy an absolute file path to another, creating parent directories.

        The source is read in full before the destination is opened, so copying
        a file onto itself leaves it intact.
        """
        async with aiofiles.open(source, "rb") as src:
            data = await src.read()
        await aiofiles.os.makedirs(destination.parent, exist_ok=True)
        async with aiofiles.open(destination, "wb") as dst:
            await dst.write(data)

    async def exists(self, path: str) -> bool:
        return await aiofiles.os.path.exists(self.resolve(path))

    async def last_modified(self, path: str) -> datetime:
        stats: os.stat_result = await aiofiles.os.stat(self.resolve(path))
        return datetime.fromtimestamp(stats.st_mtime, tz=UTC)

    def invalidate(self, path: str) -> None:
        self._cache.pop(self.relative(path), None)

    def clear_cache(self) -> None:
        self._cache.clear()
