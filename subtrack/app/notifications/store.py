"""Persistence contracts for webhook endpoints and notifications."""
from __future__ import annotations

from datetime import datetime
from threading import Lock
from typing import Dict, List, Optional, Protocol, Sequence

from .models import Notification, WebhookDeliveryLog, WebhookEndpoint


class WebhookEndpointStore(Protocol):
    def list_endpoints(self, organization_id: str) -> Sequence[WebhookEndpoint]:
        ...

    def record_delivery(self, log: WebhookDeliveryLog) -> None:
        ...

    def delivered(self, webhook_id: str, event_id: str) -> bool:
        """Whether this endpoint already accepted the event."""

    def mark_success(self, webhook_id: str, triggered_at: datetime) -> None:
        ...

    def mark_failure(self, webhook_id: str) -> None:
        ...


class NotificationStore(Protocol):
    def has_notification_for_event(self, organization_id: str, event_id: str) -> bool:
        ...

    def create_notification(self, notification: Notification) -> Notification:
        ...


class InMemoryWebhookEndpointStore:
    def __init__(self, endpoints: Sequence[WebhookEndpoint] = ()) -> None:
        self._lock = Lock()
        self.endpoints: Dict[str, WebhookEndpoint] = {endpoint.id: endpoint for endpoint in endpoints}
        self.logs: List[WebhookDeliveryLog] = []

    def add(self, endpoint: WebhookEndpoint) -> None:
        with self._lock:
            self.endpoints[endpoint.id] = endpoint

    def list_endpoints(self, organization_id: str) -> Sequence[WebhookEndpoint]:
        with self._lock:
            return [e for e in self.endpoints.values() if e.organization_id == organization_id]

    def record_delivery(self, log: WebhookDeliveryLog) -> None:
        with self._lock:
            self.logs.append(log)

    def delivered(self, webhook_id: str, event_id: str) -> bool:
        with self._lock:
            return any(
                log.delivered and log.webhook_id == webhook_id and log.event_id == event_id
                for log in self.logs
            )

    def mark_success(self, webhook_id: str, triggered_at: datetime) -> None:
        with self._lock:
            endpoint = self.endpoints[webhook_id]
            self.endpoints[webhook_id] = endpoint.model_copy(
                update={"failure_count": 0, "last_triggered_at": triggered_at}
            )

    def mark_failure(self, webhook_id: str) -> None:
        with self._lock:
            endpoint = self.endpoints[webhook_id]
            self.endpoints[webhook_id] = endpoint.model_copy(
                update={"failure_count": endpoint.failure_count + 1}
            )


class InMemoryNotificationStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self.notifications: List[Notification] = []

    def has_notification_for_event(self, organization_id: str, event_id: str) -> bool:
        with self._lock:
            return any(
                n.organization_id == organization_id and n.event_id == event_id for n in self.notifications
            )

    def create_notification(self, notification: Notification) -> Notification:
        with self._lock:
            self.notifications.append(notification)
        return notification

    def for_organization(self, organization_id: str) -> List[Notification]:
        with self._lock:
            return [n for n in self.notifications if n.organization_id == organization_id]


__all__ = [
    "InMemoryNotificationStore",
    "InMemoryWebhookEndpointStore",
    "NotificationStore",
    "WebhookEndpointStore",
]
