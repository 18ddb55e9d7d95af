"""Fan-out of state changes to the live transports.

Every mutation is published once as a ``Notification``; each registered sink
renders it for its own transport. Both sinks receive the same object, so the
event id, timestamp and data a client sees are identical whichever
transport it uses.
"""

import datetime
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Protocol

from pydantic import BaseModel

from .connections import METRICS_GROUP, ConnectionRegistry
from .core.logging import get_logger
from .instrumentation import NOTIFICATIONS_PUBLISHED

logger = get_logger("notifications")


class NotificationKind(str, Enum):
    """Subscription topic names; clients subscribe by these values."""
    DASHBOARD_UPDATE = "dashboardUpdate"
    ALERT_RECEIVED = "alertReceived"
    KPI_UPDATED = "kpiUpdated"
    DATABASE_UPDATE = "DatabaseUpdates"
    DATABASE_REFRESHED = "DatabaseRefreshed"
    QUERY_EXECUTED = "QueryExecuted"


GROUP_TARGETS: Dict[NotificationKind, str] = {
    NotificationKind.DASHBOARD_UPDATE: "ReceiveDashboardUpdate",
    NotificationKind.ALERT_RECEIVED: "ReceiveAlert",
    NotificationKind.KPI_UPDATED: "ReceiveKPIUpdate",
    NotificationKind.DATABASE_UPDATE: "ReceiveDatabaseUpdate",
    NotificationKind.DATABASE_REFRESHED: "ReceiveDatabaseUpdate",
    NotificationKind.QUERY_EXECUTED: "ReceiveQueryExecuted",
}


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    data: Dict[str, Any]
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime.datetime = field(default_factory=_now)

    @classmethod
    def of(cls, kind: NotificationKind, payload: BaseModel) -> "Notification":
        return cls(kind=kind, data=payload.model_dump(mode="json", by_alias=True))

    def envelope(self) -> Dict[str, Any]:
        return {
            "eventId": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }


class NotificationSink(Protocol):
    name: str

    def deliver(self, notification: Notification) -> int:
        ...


class GroupPushSink:
    """Pushes to every connection that joined the group, tagged with a client target."""

    name = "group"

    def __init__(self, registry: ConnectionRegistry, group: str = METRICS_GROUP):
        self._registry = registry
        self._group = group

    def deliver(self, notification: Notification) -> int:
        message = {
            "type": "event",
            "target": GROUP_TARGETS[notification.kind],
            **notification.envelope(),
        }
        delivered = 0
        for connection in self._registry.group_members(self._group):
            if connection.send(message):
                delivered += 1
        return delivered


class SubscriptionSink:
    """Emits a ``next`` message for every subscription on the notification's topic."""

    name = "subscription"

    def __init__(self, registry: ConnectionRegistry):
        self._registry = registry

    def deliver(self, notification: Notification) -> int:
        delivered = 0
        for connection, subscription_id in self._registry.subscribers(notification.kind.value):
            message = {
                "type": "next",
                "id": subscription_id,
                "payload": {"topic": notification.kind.value, **notification.envelope()},
            }
            if connection.send(message):
                delivered += 1
        return delivered


class NotificationHub:
    def __init__(self, sinks: Iterable[NotificationSink]):
        self._sinks: List[NotificationSink] = list(sinks)

    def publish(self, notification: Notification) -> Dict[str, int]:
        """Hand the notification to every sink; returns deliveries per sink.

        Delivery only enqueues into per-connection buffers, so this never
        waits on a client.
        """
        delivered = {sink.name: sink.deliver(notification) for sink in self._sinks}
        NOTIFICATIONS_PUBLISHED.labels(kind=notification.kind.value).inc()
        logger.debug(f"Published {notification.kind.value} {notification.event_id}: {delivered}")
        return delivered

    def publish_model(self, kind: NotificationKind, payload: BaseModel) -> Notification:
        notification = Notification.of(kind, payload)
        self.publish(notification)
        return notification
