"""Explicit mappings from processor subscription statuses to local statuses."""
from __future__ import annotations

import logging
from typing import Mapping

from .models import SubscriptionStatus

logger = logging.getLogger(__name__)


PROCESSOR_STATUSES = (
    "incomplete",
    "incomplete_expired",
    "trialing",
    "active",
    "past_due",
    "canceled",
    "unpaid",
    "paused",
)

# Used by customer.subscription.updated / deleted webhooks.
WEBHOOK_STATUS_MAP: Mapping[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.UNPAID,
    "incomplete": SubscriptionStatus.UNPAID,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.UNPAID,
}

# Used by the manual sync repair path, which only distinguishes paying from not.
SYNC_STATUS_MAP: Mapping[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.UNPAID,
    "canceled": SubscriptionStatus.UNPAID,
    "unpaid": SubscriptionStatus.UNPAID,
    "incomplete": SubscriptionStatus.UNPAID,
    "incomplete_expired": SubscriptionStatus.UNPAID,
    "paused": SubscriptionStatus.UNPAID,
}


def map_webhook_status(processor_status: str, *, deleted: bool = False) -> SubscriptionStatus:
    if deleted:
        return SubscriptionStatus.CANCELED
    mapped = WEBHOOK_STATUS_MAP.get(processor_status)
    if mapped is None:
        logger.warning(
            "Unknown processor subscription status",
            extra={"processor_status": processor_status},
        )
        return SubscriptionStatus.UNPAID
    return mapped


def map_sync_status(processor_status: str) -> SubscriptionStatus:
    mapped = SYNC_STATUS_MAP.get(processor_status)
    if mapped is None:
        logger.warning(
            "Unknown processor subscription status during sync",
            extra={"processor_status": processor_status},
        )
        return SubscriptionStatus.UNPAID
    return mapped


__all__ = [
    "PROCESSOR_STATUSES",
    "SYNC_STATUS_MAP",
    "WEBHOOK_STATUS_MAP",
    "map_sync_status",
    "map_webhook_status",
]
