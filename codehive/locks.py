"""Per-cycle execution leases."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from filelock import AsyncFileLock, Timeout

from .errors import CycleBusyError

logger = logging.getLogger(__name__)


class CycleLocks:
    """Hands out one lease per cycle id, backed by lock files in ``lock_dir``.

    Lock files make the lease hold across processes that share a checkout.

    Storage structure:
    .codehive/locks/
    └── {cycle_id}.lock
    """

    def __init__(self, lock_dir: Path | str, timeout: float = 30.0) -> None:
        self.lock_dir = Path(lock_dir)
        self.timeout = timeout

    def _lock_path(self, cycle_id: str) -> Path:
        return self.lock_dir / f"{cycle_id}.lock"

    @asynccontextmanager
    async def hold(self, cycle_id: str, timeout: float | None = None) -> AsyncIterator[None]:
        """Hold the lease for ``cycle_id`` for the duration of the block.

        Raises:
            CycleBusyError: If the lease is not acquired within the timeout.
        """
        wait = self.timeout if timeout is None else timeout
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        lock = AsyncFileLock(str(self._lock_path(cycle_id)), timeout=wait)
        try:
            await lock.acquire()
        except Timeout as exc:
            raise CycleBusyError(cycle_id, wait) from exc

        logger.debug("Acquired lease for cycle %s", cycle_id)
        try:
            yield
        finally:
            await lock.release()
            logger.debug("Released lease for cycle %s", cycle_id)
