"""Turns billing events into in-app notifications."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Optional, Tuple
from uuid import uuid4

from ..billing.models import BillingEventType
from ..events.models import DomainEvent
from .models import Notification, NotificationType
from .store import NotificationStore

logger = logging.getLogger(__name__)

_Template = Tuple[NotificationType, str, Callable[[Mapping[str, Any]], str]]


def _amount(data: Mapping[str, Any]) -> str:
    amount = data.get("amount")
    currency = str(data.get("currency") or "usd").upper()
    if amount is None:
        return ""
    return f"{float(amount):.2f} {currency}"


TEMPLATES: Dict[str, _Template] = {
    BillingEventType.SUBSCRIPTION_CREATED.value: (
        NotificationType.INFO,
        "Subscription active",
        lambda data: f"Your organization is now on the {data.get('planName') or data.get('planId')} plan.",
    ),
    BillingEventType.SUBSCRIPTION_CANCELED.value: (
        NotificationType.WARNING,
        "Subscription canceled",
        lambda data: (
            f"Your subscription will end on {data['cancelAt']}."
            if data.get("cancelAt")
            else "Your subscription will end at the close of the current period."
        ),
    ),
    BillingEventType.PAYMENT_FAILED.value: (
        NotificationType.ERROR,
        "Payment failed",
        lambda data: f"We could not collect {_amount(data)}. {data.get('errorMessage') or ''}".strip(),
    ),
    BillingEventType.INVOICE_PAID.value: (
        NotificationType.SUCCESS,
        "Payment received",
        lambda data: f"Thanks! We received your payment of {_amount(data)}.",
    ),
}


class NotificationCreator:
    def __init__(self, store: NotificationStore, *, action_url: Optional[str] = None) -> None:
        self._store = store
        self._action_url = action_url

    def __call__(self, event: DomainEvent) -> None:
        self.handle(event)

    def handle(self, event: DomainEvent) -> Optional[Notification]:
        template = TEMPLATES.get(event.type)
        organization_id = event.data.get("organizationId")
        if template is None or not organization_id:
            return None
        organization_id = str(organization_id)
        if self._store.has_notification_for_event(organization_id, event.id):
            return None

        kind, title, render = template
        notification = self._store.create_notification(
            Notification(
                id=f"ntf_{uuid4().hex}",
                organization_id=organization_id,
                event_id=event.id,
                type=kind,
                title=title,
                message=render(event.data),
                data=dict(event.data),
                action_url=self._action_url,
            )
        )
        logger.info(
            "Billing notification created",
            extra={"organization_id": organization_id, "event_type": event.type},
        )
        return notification


__all__ = ["NotificationCreator", "TEMPLATES"]
