"""Handlers the billing service runs for events published by other services."""
from __future__ import annotations

import logging

from ..billing.service import SubscriptionReconciliationEngine
from .models import DomainEvent, UserEventType

logger = logging.getLogger(__name__)


class UserEventsConsumer:
    """Provisions the free plan when an organization is created."""

    def __init__(self, engine: SubscriptionReconciliationEngine) -> None:
        self._engine = engine

    def __call__(self, event: DomainEvent) -> None:
        if event.type != UserEventType.ORG_CREATED.value:
            return
        organization_id = event.data.get("organizationId")
        if not organization_id:
            logger.warning("org.created event without organizationId", extra={"event_id": event.id})
            return
        self._engine.provision_free_plan(
            str(organization_id),
            correlation_id=event.correlation_id or event.id,
        )


__all__ = ["UserEventsConsumer"]
