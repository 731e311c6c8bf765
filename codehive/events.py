"""
Outbound event channel for cycle and query lifecycle notifications.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from redis.asyncio import Redis

from . import db
from .db import SessionFactory, session_scope

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    CYCLE_STARTED = "cycle.started"
    CYCLE_PHASE_COMPLETED = "cycle.phase_completed"
    CYCLE_COMPLETED = "cycle.completed"
    CYCLE_FAILED = "cycle.failed"
    CYCLE_PAUSED = "cycle.paused"
    CYCLE_RESUMED = "cycle.resumed"
    CYCLE_RECOVERED = "cycle.recovered"
    CYCLE_BLOCKED = "cycle.blocked"

    QUERY_CREATED = "query.created"
    QUERY_ANSWERED = "query.answered"
    QUERY_DISMISSED = "query.dismissed"
    QUERY_EXPIRED = "query.expired"

    SNAPSHOT_CREATED = "snapshot.created"
    SNAPSHOT_RESTORED = "snapshot.restored"


@dataclass
class CycleEvent:
    """Standardized event published by the orchestrator."""

    id: UUID = field(default_factory=uuid4)
    type: EventType = EventType.CYCLE_STARTED
    project_id: Optional[str] = None
    cycle_id: Optional[str] = None
    phase: Optional[str] = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "project_id": self.project_id,
            "cycle_id": self.cycle_id,
            "phase": self.phase,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[CycleEvent], Optional[Awaitable[None]]]


class EventEmitter:
    """Delivers events to registered handlers without blocking the publisher.

    Each handler call runs on its own task; :meth:`drain` waits for everything
    in flight.
    """

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []
        self._pending: set[asyncio.Task[None]] = set()

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def emit(self, event: CycleEvent) -> None:
        for handler in self._handlers:
            task = asyncio.get_running_loop().create_task(self._deliver(handler, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending))

    @staticmethod
    async def _deliver(handler: EventHandler, event: CycleEvent) -> None:
        try:
            result = handler(event)
            if hasattr(result, "__await__"):
                await result
        except Exception:
            logger.exception("Event handler error for %s", event.type.value)


class ExecutionLogHandler:
    """Handler that persists cycle events to the execution log."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def __call__(self, event: CycleEvent) -> None:
        if not event.cycle_id:
            return

        async with session_scope(self._session_factory) as session:
            cycle = await db.get_cycle(session, event.cycle_id)
            if not cycle:
                return

            await db.log_event(
                session,
                cycle_id=cycle.id,
                phase=event.phase or cycle.phase.value,
                event=event.type.value,
                message=event.message,
                details=event.data,
            )


class RedisEventPublisher:
    """Handler that publishes events to Redis Pub/Sub."""

    def __init__(self, redis: Redis, channel_prefix: str = "channel:project") -> None:
        self._redis = redis
        self._channel_prefix = channel_prefix

    def channel_for(self, event: CycleEvent) -> str:
        return f"{self._channel_prefix}:{event.project_id or 'global'}"

    async def __call__(self, event: CycleEvent) -> None:
        await self._redis.publish(self.channel_for(event), json.dumps(event.to_dict()))
