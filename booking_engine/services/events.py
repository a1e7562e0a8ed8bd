"""Best-effort fan-out of status changes to live observers."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional, Set

from booking_engine.models.base import utcnow

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusChangedEvent:
    appointment_id: int
    previous_status: Optional[str]
    new_status: str
    source: str
    tracking_code: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["occurred_at"] = self.occurred_at.isoformat()
        return data


class StatusEventBus:
    """Publishing never blocks; a subscriber whose queue is full misses the event."""

    def __init__(self, *, max_queue_size: int = 100) -> None:
        self._max_queue_size = max_queue_size
        self._subscribers: Set[asyncio.Queue] = set()

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    @asynccontextmanager
    async def subscription(self) -> AsyncIterator[asyncio.Queue]:
        queue = self.subscribe()
        try:
            yield queue
        finally:
            self.unsubscribe(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: StatusChangedEvent) -> int:
        delivered = 0
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                LOGGER.debug("Dropping event for slow subscriber: %s", event)
                continue
            delivered += 1
        return delivered
