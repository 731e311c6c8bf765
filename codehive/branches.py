"""Version-control branch management for cycles."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Protocol

from .errors import BranchOperationError
from .generation import generate_slug

logger = logging.getLogger(__name__)


class BranchManager(Protocol):
    async def create_feature_branch(self, title: str) -> str: ...

    async def switch_branch(self, branch_name: str) -> None: ...

    async def commit_changes(self, message: str | None = None) -> None: ...


async def run_git(
    args: list[str], cwd: Path, timeout: int = 120
) -> tuple[int, str, str]:
    """Run a git command and return exit code, stdout, stderr."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return -1, "", "Command not found: git"

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        return -1, "", "Command timed out"
    return proc.returncode or 0, stdout.decode(), stderr.decode()


class GitBranchManager:
    """Creates one feature branch per cycle in the project's git checkout."""

    def __init__(self, project_path: Path | str, base_branch: str = "main") -> None:
        self.project_path = Path(project_path)
        self.base_branch = base_branch

    async def _git(self, *args: str) -> str:
        code, stdout, stderr = await run_git(list(args), self.project_path)
        if code != 0:
            detail = stderr.strip() or stdout.strip()
            raise BranchOperationError(f"git {' '.join(args)} failed: {detail}")
        return stdout

    async def current_branch(self) -> str:
        return (await self._git("rev-parse", "--abbrev-ref", "HEAD")).strip()

    async def branch_exists(self, branch_name: str) -> bool:
        code, _, _ = await run_git(
            ["rev-parse", "--verify", "--quiet", f"refs/heads/{branch_name}"], self.project_path
        )
        return code == 0

    async def create_feature_branch(self, title: str) -> str:
        """Create ``feature/<slug>`` from the base branch and switch to it."""
        slug = generate_slug(title) or "cycle"
        branch_name = f"feature/{slug}"
        suffix = 1
        while await self.branch_exists(branch_name):
            suffix += 1
            branch_name = f"feature/{slug}-{suffix}"

        if await self.branch_exists(self.base_branch):
            await self._git("checkout", self.base_branch)
        await self._git("checkout", "-b", branch_name)
        logger.info("Created feature branch %s", branch_name)
        return branch_name

    async def switch_branch(self, branch_name: str) -> None:
        await self._git("checkout", branch_name)
        logger.info("Switched to branch %s", branch_name)

    async def commit_changes(self, message: str | None = None) -> None:
        """Stage everything and commit. A clean tree is not an error."""
        await self._git("add", "-A")
        status = await self._git("status", "--porcelain")
        if not status.strip():
            logger.info("Nothing to commit on %s", await self.current_branch())
            return
        await self._git("commit", "-m", message or "Complete TDD cycle")
        logger.info("Committed changes on %s", await self.current_branch())
