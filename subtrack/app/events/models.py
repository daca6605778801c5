"""Event envelope shared by every SubTrack service."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class Topic(str, Enum):
    BILLING_EVENTS = "billing.events"
    USER_EVENTS = "user.events"
    NOTIFICATION_EVENTS = "notification.events"


class UserEventType(str, Enum):
    ORG_CREATED = "org.created"
    ORG_DELETED = "org.deleted"
    USER_CREATED = "user.created"


class DeliveryGuarantee(str, Enum):
    """Publish contract chosen when the bus is constructed."""

    BEST_EFFORT = "best_effort"
    AT_LEAST_ONCE = "at_least_once"


class DomainEvent(BaseModel):
    """Immutable fact published for cross-service consumption."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: str
    correlation_id: Optional[str] = Field(default=None, alias="correlationId")
    data: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str) -> "DomainEvent":
        return cls.model_validate_json(raw)


__all__ = ["DeliveryGuarantee", "DomainEvent", "Topic", "UserEventType"]
