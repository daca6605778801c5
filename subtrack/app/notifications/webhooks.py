"""Outbound delivery of billing events to customer webhook endpoints."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Protocol
from urllib import error as urllib_error, request as urllib_request

from ..events.models import DomainEvent
from .models import WebhookDeliveryLog, WebhookEndpoint
from .store import WebhookEndpointStore

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"


@dataclass
class DeliveryResult:
    delivered: bool
    status_code: Optional[int] = None
    body: Optional[str] = None


class WebhookTransport(Protocol):
    def post(self, url: str, body: bytes, headers: Mapping[str, str]) -> DeliveryResult:
        ...


class UrllibWebhookTransport:
    """POSTs JSON bodies with a bounded timeout."""

    def __init__(self, *, timeout: float = 10.0) -> None:
        self._timeout = timeout

    def post(self, url: str, body: bytes, headers: Mapping[str, str]) -> DeliveryResult:
        request = urllib_request.Request(url, data=body, headers=dict(headers), method="POST")
        try:
            with urllib_request.urlopen(request, timeout=self._timeout) as response:
                status = response.status
                text = response.read(2048).decode("utf-8", errors="replace")
        except urllib_error.HTTPError as exc:
            return DeliveryResult(delivered=False, status_code=exc.code, body=str(exc.reason))
        except (urllib_error.URLError, OSError) as exc:
            return DeliveryResult(delivered=False, body=str(exc))
        return DeliveryResult(delivered=200 <= status < 300, status_code=status, body=text)


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookDispatcher:
    """Fans billing events out to the organization's subscribed endpoints.

    Endpoints that already accepted an event id are skipped, so redelivered
    bus messages do not produce duplicate webhook calls.
    """

    def __init__(
        self,
        store: WebhookEndpointStore,
        transport: WebhookTransport,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._transport = transport
        self._clock = clock

    def __call__(self, event: DomainEvent) -> None:
        self.dispatch(event)

    def dispatch(self, event: DomainEvent) -> int:
        organization_id = event.data.get("organizationId")
        if not organization_id:
            logger.debug("Event has no organization; nothing to dispatch", extra={"event_type": event.type})
            return 0

        delivered = 0
        for endpoint in self._store.list_endpoints(str(organization_id)):
            if not endpoint.accepts(event.type):
                continue
            if self._store.delivered(endpoint.id, event.id):
                continue
            if self._deliver(endpoint, event):
                delivered += 1
        return delivered

    def _deliver(self, endpoint: WebhookEndpoint, event: DomainEvent) -> bool:
        payload: Dict[str, Any] = {
            "event": event.type,
            "timestamp": event.timestamp.isoformat(),
            "data": event.data,
        }
        body = json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(endpoint.secret, body),
        }
        result = self._transport.post(endpoint.url, body, headers)
        self._store.record_delivery(
            WebhookDeliveryLog(
                webhook_id=endpoint.id,
                event_id=event.id,
                event=event.type,
                payload=payload,
                response_code=result.status_code,
                response_body=result.body,
                delivered=result.delivered,
                created_at=self._clock(),
            )
        )
        if result.delivered:
            self._store.mark_success(endpoint.id, self._clock())
        else:
            self._store.mark_failure(endpoint.id)
            logger.warning(
                "Webhook delivery failed",
                extra={
                    "webhook_id": endpoint.id,
                    "event_type": event.type,
                    "status_code": result.status_code,
                },
            )
        return result.delivered


__all__ = [
    "DeliveryResult",
    "SIGNATURE_HEADER",
    "UrllibWebhookTransport",
    "WebhookDispatcher",
    "WebhookTransport",
    "sign_payload",
]
