"""Records owned by the downstream billing-event consumers."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

MAX_WEBHOOK_FAILURES = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    BILLING = "billing"
    SECURITY = "security"


class WebhookEndpoint(BaseModel):
    """Customer-registered URL receiving billing events."""

    id: str
    organization_id: str
    url: str
    events: List[str] = Field(default_factory=list)
    secret: str
    is_active: bool = True
    failure_count: int = 0
    last_triggered_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def accepts(self, event_type: str) -> bool:
        return self.is_active and self.failure_count < MAX_WEBHOOK_FAILURES and event_type in self.events


class WebhookDeliveryLog(BaseModel):
    webhook_id: str
    event_id: str
    event: str
    payload: Dict[str, Any]
    response_code: Optional[int] = None
    response_body: Optional[str] = None
    delivered: bool = False
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Notification(BaseModel):
    """In-app notification addressed to an organization."""

    id: str
    organization_id: str
    user_id: Optional[str] = None
    event_id: str
    type: NotificationType = NotificationType.INFO
    title: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    channels: List[str] = Field(default_factory=lambda: ["in_app"])
    action_url: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


__all__ = [
    "MAX_WEBHOOK_FAILURES",
    "Notification",
    "NotificationType",
    "WebhookDeliveryLog",
    "WebhookEndpoint",
]
