from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Set

import structlog

from ..core.models import ExecutionRequest, ExecutionResult
from ..core.utils import utc_now

log = structlog.get_logger(__name__)

QUEUED = "queued"
STARTED = "started"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"


@dataclass
class ExecutionEvent:
    type: str
    execution_id: str
    room_id: str
    user_id: str
    display_name: str
    avatar: Optional[str]
    language: str
    timestamp: datetime = field(default_factory=utc_now)
    position: Optional[int] = None
    estimated_wait_ms: Optional[int] = None
    result: Optional[ExecutionResult] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None

    @classmethod
    def for_request(cls, type: str, req: ExecutionRequest, **extra) -> "ExecutionEvent":
        return cls(
            type=type,
            execution_id=req.id,
            room_id=req.room_id,
            user_id=req.user.user_id,
            display_name=req.user.display_name,
            avatar=req.user.avatar,
            language=req.language,
            **extra,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.type,
            "execution_id": self.execution_id,
            "room_id": self.room_id,
            "user_id": self.user_id,
            "display_name": self.display_name,
            "avatar": self.avatar,
            "language": self.language,
            "timestamp": self.timestamp.isoformat(),
        }
        for key, value in (
            ("position", self.position),
            ("estimated_wait_ms", self.estimated_wait_ms),
            ("error", self.error),
            ("duration_ms", self.duration_ms),
        ):
            if value is not None:
                data[key] = value
        if self.result is not None:
            data["result"] = self.result.to_dict()
        return data


class Broadcaster:
    """Publish primitive scoped by room. Delivery must not raise into the engine."""

    async def publish(self, room_id: str, event: ExecutionEvent) -> None:
        raise NotImplementedError


class InMemoryBroadcaster(Broadcaster):
    """Fan-out to every subscriber of a room through bounded asyncio queues.

    A subscriber that falls `max_pending` events behind loses its oldest
    pending event rather than stalling the publisher.
    """

    def __init__(self, max_pending: int = 256):
        self.max_pending = max_pending
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}

    def subscribe(self, room_id: str) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self.max_pending)
        self._subscribers.setdefault(room_id, set()).add(q)
        return q

    def unsubscribe(self, room_id: str, q: asyncio.Queue) -> None:
        subs = self._subscribers.get(room_id)
        if not subs:
            return
        subs.discard(q)
        if not subs:
            self._subscribers.pop(room_id, None)

    def subscriber_count(self, room_id: str) -> int:
        return len(self._subscribers.get(room_id, ()))

    async def publish(self, room_id: str, event: ExecutionEvent) -> None:
        for q in list(self._subscribers.get(room_id, ())):
            if q.full():
                try:
                    q.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                log.warning("subscriber_lagging", room_id=room_id, dropped=1)
            q.put_nowait(event)
