"""Downstream consumers of billing events: webhooks and in-app notifications."""

from .creator import NotificationCreator
from .models import Notification, NotificationType, WebhookDeliveryLog, WebhookEndpoint
from .store import (
    InMemoryNotificationStore,
    InMemoryWebhookEndpointStore,
    NotificationStore,
    WebhookEndpointStore,
)
from .webhooks import UrllibWebhookTransport, WebhookDispatcher, sign_payload

__all__ = [
    "InMemoryNotificationStore",
    "InMemoryWebhookEndpointStore",
    "Notification",
    "NotificationCreator",
    "NotificationStore",
    "NotificationType",
    "UrllibWebhookTransport",
    "WebhookDeliveryLog",
    "WebhookDispatcher",
    "WebhookEndpoint",
    "WebhookEndpointStore",
    "sign_payload",
]
