"""Per-session event fan-out for processing and export notifications.

The queue scheduler and export service publish here; WebSocket handlers
subscribe. Publishing never blocks: each subscriber has a bounded queue and
events for a full queue are dropped with a warning.
"""

import asyncio
import json
import logging
from collections import defaultdict
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Event types
PROCESSING_STATUS = "processing-status"
SEGMENT_FAILED = "segment-failed"
QUEUE_COMPLETED = "queue-completed"
QUEUE_CANCELLED = "queue-cancelled"
EXPORT_STARTED = "export-started"
EXPORT_PROGRESS = "export-progress"
EXPORT_COMPLETED = "export-completed"
EXPORT_FAILED = "export-failed"
EXPORT_CANCELLED = "export-cancelled"

SUBSCRIBER_QUEUE_SIZE = 256


@dataclass
class SessionEvent:
    """Event data for a session."""

    event_type: str
    session_id: str
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    data: dict[str, Any] | None = None

    def to_message(self) -> dict[str, Any]:
        message: dict[str, Any] = {
            "type": self.event_type,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
        }
        if self.data:
            message["data"] = self.data
        return message

    def to_json(self) -> str:
        return json.dumps(self.to_message())


class SessionEventManager:
    """Manages subscriptions and event publishing per session."""

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        # session_id -> set of asyncio.Queue for each subscriber
        self._subscribers: dict[str, set[asyncio.Queue[SessionEvent]]] = defaultdict(set)
        self._queue_size = queue_size

    async def subscribe(self, session_id: str) -> AsyncGenerator[SessionEvent, None]:
        """Yield events published for a session until the consumer stops."""
        queue: asyncio.Queue[SessionEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[session_id].add(queue)
        logger.info(
            f"New subscriber for session {session_id}. "
            f"Total: {len(self._subscribers[session_id])}"
        )

        try:
            while True:
                yield await queue.get()
        finally:
            subscribers = self._subscribers.get(session_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[session_id]
            logger.info(f"Subscriber removed for session {session_id}")

    def publish_nowait(
        self,
        session_id: str,
        event_type: str,
        data: dict[str, Any] | None = None,
    ) -> int:
        """Publish from synchronous code such as progress callbacks.

        Returns:
            Number of subscribers notified
        """
        event = SessionEvent(event_type=event_type, session_id=session_id, data=data)
        subscribers = self._subscribers.get(session_id)
        if not subscribers:
            return 0

        notified = 0
        for queue in list(subscribers):
            try:
                queue.put_nowait(event)
                notified += 1
            except asyncio.QueueFull:
                logger.warning(f"Queue full for subscriber of session {session_id}, dropping {event_type}")

        logger.debug(f"Published {event_type} to {notified} subscribers for session {session_id}")
        return notified

    async def publish(
        self,
        session_id: str,
        event_type: str,
        data: dict[str, Any] | None = None,
    ) -> int:
        return self.publish_nowait(session_id, event_type, data)

    def get_subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, set()))


# Global event manager instance
event_manager = SessionEventManager()
