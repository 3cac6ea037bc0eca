"""
Event Streaming - In-memory pub/sub for resource events.

Two kinds of traffic share one bus: desired-state changes made through the
API (CREATED, MODIFIED, DELETED), which the controller watches to start a
pass straight away, and condition transitions written by the status
projector (CONDITION_CHANGED), which watch clients stream over SSE.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Collection,
    Dict,
    Optional,
    Tuple,
)

logger = logging.getLogger(__name__)

# Never streamed to watch clients
REDACTED_FIELDS = frozenset({"connection_details"})


class EventType(Enum):
    """Types of resource events."""

    CREATED = "CREATED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    CONDITION_CHANGED = "CONDITION_CHANGED"


# Desired-state changes; the controller reconciles on these
WATCHED_EVENT_TYPES = frozenset(
    {EventType.CREATED, EventType.MODIFIED, EventType.DELETED}
)

EventFilter = Callable[["ResourceEvent"], bool]


def _json_default(obj: Any) -> str:
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ResourceEvent:
    """A change to a resource or to one of its conditions."""

    event_type: EventType
    resource_id: int
    resource_name: str
    kind: str
    resource_data: Dict[str, Any]
    timestamp: str

    def to_sse(self) -> str:
        """Render as one SSE message: an ``event:`` line and a JSON ``data:`` line."""
        data = {
            "event_type": self.event_type.value,
            "resource_id": self.resource_id,
            "resource_name": self.resource_name,
            "kind": self.kind,
            "resource_data": self.resource_data,
            "timestamp": self.timestamp,
        }
        json_data = json.dumps(data, default=_json_default)
        return f"event: {self.event_type.value}\ndata: {json_data}\n\n"

    @classmethod
    def from_resource(
        cls,
        event_type: EventType,
        resource: Dict[str, Any],
    ) -> "ResourceEvent":
        """
        Build an event from a stored resource.

        Connection details published by the external resource are dropped
        from the payload.
        """
        if REDACTED_FIELDS.intersection(resource):
            data = {k: v for k, v in resource.items() if k not in REDACTED_FIELDS}
        else:
            data = resource
        return cls(
            event_type=event_type,
            resource_id=resource["id"],
            resource_name=resource["name"],
            kind=resource["kind"],
            resource_data=data,
            timestamp=_utcnow(),
        )

    @classmethod
    def condition_changed(
        cls,
        resource_id: int,
        kind: str,
        name: str,
        condition: Dict[str, Any],
    ) -> "ResourceEvent":
        """Build a CONDITION_CHANGED event carrying the new condition."""
        return cls(
            event_type=EventType.CONDITION_CHANGED,
            resource_id=resource_id,
            resource_name=name,
            kind=kind,
            resource_data=condition,
            timestamp=_utcnow(),
        )


def event_filter(
    kind: Optional[str] = None,
    resource_id: Optional[int] = None,
    event_types: Optional[Collection[EventType]] = None,
) -> Optional[EventFilter]:
    """
    Build a predicate matching events on every criterion given.

    Returns None when no criterion is given, meaning every event matches.
    """
    if kind is None and resource_id is None and event_types is None:
        return None

    def matches(event: ResourceEvent) -> bool:
        if kind is not None and event.kind != kind:
            return False
        if resource_id is not None and event.resource_id != resource_id:
            return False
        if event_types is not None and event.event_type not in event_types:
            return False
        return True

    return matches


class EventSubscription:
    """
    Async iterator over one subscriber's queue.

    Events the filter rejects are skipped. A ``None`` in the queue ends
    iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[EventFilter] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[ResourceEvent]:
        return self

    async def __anext__(self) -> ResourceEvent:
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event

    def pending(self) -> int:
        """Number of events queued and not yet consumed."""
        return self._queue.qsize()


class EventBus:
    """
    In-memory pub/sub event bus.

    Each subscriber owns a bounded ``asyncio.Queue``. Publishing never
    blocks: an event is dropped for any subscriber whose queue is full.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: ResourceEvent) -> None:
        async with self._lock:
            subscribers = list(self._subscribers.items())

        for subscriber_id, queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped {event.event_type.value} for {event.kind}/"
                    f"{event.resource_name} on subscriber {subscriber_id}: queue full"
                )

    async def subscribe(
        self,
        filter_fn: Optional[EventFilter] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Returns:
            A ``(subscriber_id, subscription)`` pair. Pass the ID to
            :meth:`unsubscribe` to end the subscription.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._subscribers[subscriber_id] = queue

        logger.debug(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """Remove a subscriber and end its iteration. Unknown IDs are ignored."""
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is None:
            return

        try:
            queue.put_nowait(None)
        except asyncio.QueueFull:
            # Make room for the end marker
            queue.get_nowait()
            queue.put_nowait(None)
        logger.debug(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        return len(self._subscribers)
