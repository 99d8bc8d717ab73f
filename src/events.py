"""
Cleanup Events - In-memory pub/sub for node cleanup lifecycle events.

Every state change the watcher and the plugin registry go through is
published here, tagged with the node name, and can be streamed as
Server-Sent Events from the health server.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


def _json_default(obj: Any) -> str:
    """JSON serializer for objects not handled by default json encoder."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class CleanupEventType(Enum):
    """Types of node cleanup events."""

    MARKER_ADDED = "MARKER_ADDED"
    DELETION_DETECTED = "DELETION_DETECTED"
    CLEANUP_STARTED = "CLEANUP_STARTED"
    CLEANUP_SKIPPED = "CLEANUP_SKIPPED"
    ACTION_STARTED = "ACTION_STARTED"
    ACTION_SUCCEEDED = "ACTION_SUCCEEDED"
    ACTION_FAILED = "ACTION_FAILED"
    ACTION_SKIPPED = "ACTION_SKIPPED"
    CLEANUP_SUCCEEDED = "CLEANUP_SUCCEEDED"
    CLEANUP_FAILED = "CLEANUP_FAILED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    MARKER_REMOVED = "MARKER_REMOVED"


@dataclass
class CleanupEvent:
    """Event emitted during a node's cleanup lifecycle."""

    event_type: CleanupEventType
    node_name: str
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "node_name": self.node_name,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp,
        }

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        json_data = json.dumps(self.to_dict(), default=_json_default)
        return f"event: {self.event_type.value}\ndata: {json_data}\n\n"

    @classmethod
    def create(
        cls,
        event_type: CleanupEventType,
        node_name: str,
        message: str = "",
        **details: Any,
    ) -> "CleanupEvent":
        """
        Create an event stamped with the current UTC time.

        Args:
            event_type: The type of event.
            node_name: The node the event is about.
            message: Human-readable summary.
            **details: Extra structured fields (plugin name, attempt, ...).

        Returns:
            A new CleanupEvent instance.
        """
        return cls(
            event_type=event_type,
            node_name=node_name,
            message=message,
            details=details,
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        )


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    Reads events from a queue, applying an optional filter function.
    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[["CleanupEvent"], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator["CleanupEvent"]:
        return self

    async def __anext__(self) -> "CleanupEvent":
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus for cleanup events.

    Maintains an ``asyncio.Queue`` per subscriber and publishes events
    non-blocking. Full subscriber queues drop the event with a warning so a
    slow stream consumer never stalls the watcher.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    def publish_nowait(self, event: CleanupEvent) -> None:
        """
        Publish an event from synchronous code running on the event loop.

        Args:
            event: The event to publish.
        """
        for subscriber_id, queue in list(self._subscribers.items()):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped event for subscriber {subscriber_id}: queue full"
                )

    async def publish(self, event: CleanupEvent) -> None:
        """
        Publish an event to all subscribers (non-blocking).

        Args:
            event: The event to publish.
        """
        async with self._lock:
            self.publish_nowait(event)

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[CleanupEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            filter_fn: Optional predicate applied to each event.
                Only events for which it returns ``True`` are yielded.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._subscribers[subscriber_id] = queue

        logger.info(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber and clean up its queue.

        Sends a ``None`` sentinel so that the subscription's async
        iterator terminates gracefully.

        Args:
            subscriber_id: The ID returned by :meth:`subscribe`.
        """
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                logger.debug(f"Queue full while unsubscribing {subscriber_id}")
            logger.info(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)


def emit(
    event_bus: Optional[EventBus],
    event_type: CleanupEventType,
    node_name: str,
    message: str,
    level: int = logging.INFO,
    **details: Any,
) -> CleanupEvent:
    """
    Log a cleanup event and publish it on the bus if one is configured.

    Args:
        event_bus: Bus to publish on, or None to only log.
        event_type: The type of event.
        node_name: The node the event is about.
        message: Human-readable summary, also used as the log message.
        level: Logging level for the log line.
        **details: Extra structured fields.

    Returns:
        The created event.
    """
    event = CleanupEvent.create(event_type, node_name, message, **details)
    extra = " ".join(f"{k}={v}" for k, v in details.items())
    logger.log(
        level,
        f"[{event_type.value}] node={node_name} {message}" + (f" {extra}" if extra else ""),
    )
    if event_bus is not None:
        event_bus.publish_nowait(event)
    return event
