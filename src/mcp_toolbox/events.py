"""In-process publish/subscribe channel for lifecycle events.

Subscribers receive events on their own ``asyncio.Queue``. Delivery is
best effort: an event reaches the subscribers registered when it is
published, and a subscriber whose queue is full is dropped.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional, Set, Tuple, Type

from .models import HealthCheckResult, utc_now

logger = logging.getLogger(__name__)


@dataclass
class Event:
    """Base class for all toolbox events."""
    kind: ClassVar[str] = "event"
    timestamp: datetime = field(default_factory=utc_now, kw_only=True)

    def to_dict(self) -> dict:
        data = {k: v for k, v in self.__dict__.items() if k != "timestamp"}
        for key, value in list(data.items()):
            if hasattr(value, "value"):
                data[key] = value.value
            elif hasattr(value, "to_dict"):
                data[key] = value.to_dict()
        return {"kind": self.kind, "timestamp": self.timestamp.isoformat(), **data}


@dataclass
class InstanceStatusChanged(Event):
    kind: ClassVar[str] = "instance_status"
    instance_name: str
    status: Any
    container_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class GroupStatusChanged(Event):
    kind: ClassVar[str] = "group_status"
    group_id: str
    collective_status: Any
    total_instances: int = 0
    running_instances: int = 0
    healthy_instances: int = 0


@dataclass
class HealthChecked(Event):
    """Published after every recorded health check."""
    kind: ClassVar[str] = "health_check"
    instance_name: str
    result: HealthCheckResult


@dataclass
class HealthChanged(Event):
    """Threshold notification from the health monitor."""
    kind: ClassVar[str] = "health_change"
    instance_name: str
    health_status: Any
    failure_count: int = 0
    recovery_count: int = 0
    result: Optional[HealthCheckResult] = None


@dataclass
class GroupHealthUpdated(Event):
    kind: ClassVar[str] = "group_health"
    group_id: str
    overall_status: Any
    total_servers: int = 0
    healthy_servers: int = 0
    degraded_servers: int = 0
    failed_servers: int = 0
    average_response_time_ms: Optional[float] = None


@dataclass
class CredentialEvent(Event):
    """Credential lifecycle: ``injected``, ``updated``, ``cleanup`` or ``failed``."""
    kind: ClassVar[str] = "credential"
    action: str
    account_id: str
    providers: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CredentialRefreshRequired(Event):
    kind: ClassVar[str] = "credential_refresh_required"
    instance_name: str
    account_id: str
    providers: List[str] = field(default_factory=list)


@dataclass
class InstanceRestarted(Event):
    kind: ClassVar[str] = "instance_restarted"
    instance_name: str
    restart_count: int = 0
    success: bool = True
    error: Optional[str] = None


class EventBus:
    """Broadcasts events to subscriber queues."""

    def __init__(self, default_maxsize: int = 1000):
        self._default_maxsize = default_maxsize
        self._subscribers: Set[asyncio.Queue] = set()
        self._filters: Dict[int, Tuple[Type[Event], ...]] = {}

    def publish(self, event: Event) -> int:
        """Deliver an event to every current subscriber.

        Returns:
            Number of subscribers that received the event.
        """
        delivered = 0
        dead_queues = []
        for queue in list(self._subscribers):
            wanted = self._filters.get(id(queue))
            if wanted and not isinstance(event, wanted):
                continue
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                dead_queues.append(queue)
        for q in dead_queues:
            logger.warning("Dropping slow event subscriber (queue full)")
            self.unsubscribe(q)
        return delivered

    def subscribe(self, *event_types: Type[Event], maxsize: Optional[int] = None) -> asyncio.Queue:
        """Create a new subscriber queue, optionally limited to some event types."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or self._default_maxsize)
        self._subscribers.add(queue)
        if event_types:
            self._filters[id(queue)] = tuple(event_types)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        """Remove a subscriber queue."""
        self._subscribers.discard(queue)
        self._filters.pop(id(queue), None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
