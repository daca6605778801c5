"""Stripe implementation of the payment processor gateway."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import stripe

from .errors import ProcessorError, SignatureError
from .models import (
    CheckoutPrice,
    CheckoutSession,
    ProcessorEvent,
    ProcessorInvoice,
    ProcessorInvoiceLine,
    ProcessorSubscription,
    ProcessorSubscriptionItem,
)

logger = logging.getLogger(__name__)

WEBHOOK_TOLERANCE_SECONDS = 300


def build_stripe_client(
    api_key: str,
    *,
    timeout_seconds: float = 10.0,
    max_network_retries: int = 2,
) -> stripe.StripeClient:
    """Create a Stripe client whose requests are bounded by ``timeout_seconds``."""

    return stripe.StripeClient(
        api_key,
        http_client=stripe.RequestsClient(timeout=timeout_seconds),
        max_network_retries=max_network_retries,
    )


def _timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _metadata(value: Any) -> Dict[str, str]:
    if isinstance(value, Mapping):
        return {str(k): str(v) for k, v in value.items()}
    return {}


def _subscription_items(payload: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    # ``payload.items`` is the dict method on StripeObject; always index.
    items = payload.get("items") or {}
    return list(items.get("data") or [])


def to_processor_subscription(payload: Mapping[str, Any]) -> ProcessorSubscription:
    """Normalize a Stripe subscription object or webhook payload."""

    raw_items = _subscription_items(payload)
    items: List[ProcessorSubscriptionItem] = []
    for raw in raw_items:
        price = raw.get("price") or {}
        recurring = price.get("recurring") or {}
        items.append(
            ProcessorSubscriptionItem(
                id=str(raw["id"]),
                price_ref=price.get("id"),
                unit_amount=price.get("unit_amount"),
                interval=recurring.get("interval"),
            )
        )

    # Newer API versions moved the billing period onto subscription items.
    period_source: Mapping[str, Any] = payload
    if payload.get("current_period_start") is None and raw_items:
        period_source = raw_items[0]

    customer = payload.get("customer")
    if isinstance(customer, Mapping):
        customer = customer.get("id")

    return ProcessorSubscription(
        id=str(payload["id"]),
        customer_ref=customer,
        status=str(payload.get("status") or ""),
        current_period_start=_timestamp(period_source.get("current_period_start")),
        current_period_end=_timestamp(period_source.get("current_period_end")),
        cancel_at_period_end=bool(payload.get("cancel_at_period_end")),
        items=items,
        metadata=_metadata(payload.get("metadata")),
    )


def to_processor_invoice(payload: Mapping[str, Any]) -> ProcessorInvoice:
    """Normalize a Stripe invoice webhook payload."""

    lines: List[ProcessorInvoiceLine] = []
    for raw in (payload.get("lines") or {}).get("data") or []:
        price = raw.get("price") or {}
        lines.append(
            ProcessorInvoiceLine(
                description=str(raw.get("description") or ""),
                quantity=int(raw.get("quantity") or 1),
                unit_amount=int(price.get("unit_amount") or raw.get("amount") or 0),
                amount=int(raw.get("amount") or 0),
            )
        )

    subscription = payload.get("subscription")
    if subscription is None:
        # Newer API versions nest the subscription under parent details.
        parent = payload.get("parent") or {}
        subscription = (parent.get("subscription_details") or {}).get("subscription")
    if isinstance(subscription, Mapping):
        subscription = subscription.get("id")

    customer = payload.get("customer")
    if isinstance(customer, Mapping):
        customer = customer.get("id")

    transitions = payload.get("status_transitions") or {}
    error = payload.get("last_finalization_error") or {}
    tax = payload.get("tax")
    if tax is None:
        tax = sum(int(item.get("amount") or 0) for item in payload.get("total_taxes") or [])

    return ProcessorInvoice(
        id=str(payload["id"]),
        subscription_ref=subscription,
        customer_ref=customer,
        currency=str(payload.get("currency") or "usd").lower(),
        amount_due=int(payload.get("amount_due") or 0),
        amount_paid=int(payload.get("amount_paid") or 0),
        subtotal=int(payload.get("subtotal") or 0),
        tax=int(tax or 0),
        total=int(payload.get("total") or 0),
        due_date=_timestamp(payload.get("due_date")),
        paid_at=_timestamp(transitions.get("paid_at")),
        lines=lines,
        error_code=error.get("code"),
        error_message=error.get("message"),
    )


def verify_webhook_event(
    raw_body: bytes, signature: Optional[str], secret: Optional[str]
) -> ProcessorEvent:
    """Check a ``Stripe-Signature`` header against ``secret`` and parse the event.

    Raises :class:`SignatureError` when the secret or header is missing, the
    signature does not match, the timestamp is outside the tolerance window,
    or the body is not a UTF-8 encoded JSON object.
    """

    if not secret:
        raise SignatureError("Webhook secret is not configured")
    if not signature:
        raise SignatureError("Missing webhook signature")
    try:
        payload = raw_body.decode("utf-8") if isinstance(raw_body, (bytes, bytearray)) else raw_body
    except UnicodeDecodeError as exc:
        raise SignatureError("Webhook body is not valid UTF-8") from exc
    try:
        stripe.WebhookSignature.verify_header(payload, signature, secret, WEBHOOK_TOLERANCE_SECONDS)
    except stripe.SignatureVerificationError as exc:
        raise SignatureError(str(exc)) from exc

    try:
        body = json.loads(payload)
    except ValueError as exc:
        raise SignatureError("Webhook body is not valid JSON") from exc
    if not isinstance(body, Mapping):
        raise SignatureError("Webhook body is not a JSON object")

    data = body.get("data") or {}
    obj = data.get("object") if isinstance(data, Mapping) else data
    if obj is not None and not isinstance(obj, Mapping):
        raise SignatureError("Webhook event data is not a JSON object")
    try:
        created_at = _timestamp(body.get("created"))
    except (TypeError, ValueError, OverflowError) as exc:
        raise SignatureError("Webhook event timestamp is invalid") from exc
    return ProcessorEvent(
        id=str(body.get("id") or ""),
        type=str(body.get("type") or ""),
        data=dict(obj or {}),
        created_at=created_at,
    )


class StripePaymentGateway:
    """Gateway over an injected :class:`stripe.StripeClient`.

    Every ``stripe.StripeError`` (including network timeouts) is re-raised as
    :class:`ProcessorError`.
    """

    def __init__(self, client: stripe.StripeClient, *, webhook_secret: Optional[str]) -> None:
        self._client = client
        self._webhook_secret = webhook_secret

    def create_customer(self, *, metadata: Dict[str, str], email: Optional[str] = None) -> str:
        params: Dict[str, Any] = {"metadata": metadata}
        if email:
            params["email"] = email
        try:
            customer = self._client.customers.create(params=params)
        except stripe.StripeError as exc:
            raise ProcessorError(f"Failed to create customer: {exc}") from exc
        return customer["id"]

    def create_checkout_session(
        self,
        *,
        customer_ref: str,
        price: CheckoutPrice,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> CheckoutSession:
        product_data: Dict[str, Any] = {"name": price.product_name}
        if price.description:
            product_data["description"] = price.description
        params: Dict[str, Any] = {
            "customer": customer_ref,
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": price.currency,
                        "product_data": product_data,
                        "unit_amount": price.unit_amount,
                        "recurring": {"interval": price.interval},
                    },
                    "quantity": 1,
                }
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
        try:
            session = self._client.checkout.sessions.create(params=params)
        except stripe.StripeError as exc:
            raise ProcessorError(f"Failed to create checkout session: {exc}") from exc
        return CheckoutSession(id=session["id"], url=session["url"])

    def retrieve_subscription(self, subscription_ref: str) -> ProcessorSubscription:
        try:
            subscription = self._client.subscriptions.retrieve(subscription_ref)
        except stripe.StripeError as exc:
            raise ProcessorError(f"Failed to retrieve subscription: {exc}") from exc
        return to_processor_subscription(subscription)

    def update_subscription_item(
        self,
        subscription_ref: str,
        *,
        item_id: str,
        price_ref: str,
        proration_behavior: str = "create_prorations",
        metadata: Optional[Dict[str, str]] = None,
    ) -> ProcessorSubscription:
        params: Dict[str, Any] = {
            "items": [{"id": item_id, "price": price_ref}],
            "proration_behavior": proration_behavior,
        }
        if metadata:
            params["metadata"] = metadata
        try:
            subscription = self._client.subscriptions.update(subscription_ref, params=params)
        except stripe.StripeError as exc:
            raise ProcessorError(f"Failed to update subscription: {exc}") from exc
        return to_processor_subscription(subscription)

    def cancel_subscription(self, subscription_ref: str) -> None:
        try:
            self._client.subscriptions.cancel(subscription_ref)
        except stripe.StripeError as exc:
            raise ProcessorError(f"Failed to cancel subscription: {exc}") from exc

    def list_subscriptions_for_customer(
        self, customer_ref: str, *, limit: int = 1
    ) -> List[ProcessorSubscription]:
        try:
            result = self._client.subscriptions.list(
                params={"customer": customer_ref, "limit": limit, "status": "all"}
            )
        except stripe.StripeError as exc:
            raise ProcessorError(f"Failed to list subscriptions: {exc}") from exc
        return [to_processor_subscription(item) for item in result["data"]]

    def parse_subscription(self, payload: Mapping[str, Any]) -> ProcessorSubscription:
        return to_processor_subscription(payload)

    def parse_invoice(self, payload: Mapping[str, Any]) -> ProcessorInvoice:
        return to_processor_invoice(payload)

    def retrieve_payment_method(self, payment_method_ref: str) -> Dict[str, Any]:
        try:
            method = self._client.payment_methods.retrieve(payment_method_ref)
        except stripe.StripeError as exc:
            raise ProcessorError(f"Failed to retrieve payment method: {exc}") from exc
        card = method.get("card") or {}
        return {
            "id": method["id"],
            "type": method.get("type") or "card",
            "card": {
                "brand": card.get("brand") or "unknown",
                "last_four": card.get("last4") or "",
                "expiry_month": int(card.get("exp_month") or 0),
                "expiry_year": int(card.get("exp_year") or 0),
            }
            if card
            else None,
        }

    def ensure_recurring_price(
        self,
        *,
        slug: str,
        product_name: str,
        unit_amount: int,
        currency: str,
        interval: str,
        description: Optional[str] = None,
    ) -> str:
        """Find or create the product tagged with ``slug`` and a matching recurring price."""

        try:
            found = self._client.products.search(params={"query": f"metadata['slug']:'{slug}'"})
            products = list(found["data"])
            if products:
                product_id = products[0]["id"]
            else:
                params: Dict[str, Any] = {"name": product_name, "metadata": {"slug": slug}}
                if description:
                    params["description"] = description
                product_id = self._client.products.create(params=params)["id"]
                logger.info("Created processor product", extra={"slug": slug, "product_id": product_id})

            prices = self._client.prices.list(
                params={"product": product_id, "active": True, "type": "recurring", "limit": 100}
            )
            for price in prices["data"]:
                recurring = price.get("recurring") or {}
                if (
                    recurring.get("interval") == interval
                    and price.get("unit_amount") == unit_amount
                    and str(price.get("currency") or "").lower() == currency.lower()
                ):
                    return price["id"]

            created = self._client.prices.create(
                params={
                    "product": product_id,
                    "unit_amount": unit_amount,
                    "currency": currency,
                    "recurring": {"interval": interval},
                    "metadata": {"slug": slug, "interval": interval},
                }
            )
        except stripe.StripeError as exc:
            raise ProcessorError(f"Failed to set up price for plan {slug}: {exc}") from exc
        logger.info(
            "Created processor price",
            extra={"slug": slug, "price_id": created["id"], "interval": interval},
        )
        return created["id"]

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> ProcessorEvent:
        return verify_webhook_event(raw_body, signature, self._webhook_secret)


__all__ = [
    "StripePaymentGateway",
    "WEBHOOK_TOLERANCE_SECONDS",
    "build_stripe_client",
    "to_processor_invoice",
    "to_processor_subscription",
    "verify_webhook_event",
]
