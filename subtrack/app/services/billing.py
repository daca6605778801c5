"""Application wiring for the billing service."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

from ...config import BillingConfig
from ..billing import (
    OrganizationLocks,
    PlanCatalog,
    ProcessorError,
    SubscriptionReconciliationEngine,
)
from ..billing.gateway import (
    StripePaymentGateway,
    build_stripe_client,
    to_processor_invoice,
    to_processor_subscription,
    verify_webhook_event,
)
from ..billing.models import (
    BillingCycle,
    CheckoutPrice,
    CheckoutSession,
    ProcessorEvent,
    ProcessorInvoice,
    ProcessorSubscription,
    ProcessorSubscriptionItem,
    to_minor_units,
)
from ..billing.repository import InMemorySubscriptionStore, PostgresSubscriptionStore
from ..billing.service import PRORATION_BEHAVIOR, PaymentProcessorGateway, SubscriptionStore, advance_period
from ..events import DeliveryGuarantee, EventBus, InMemoryEventBus, RedisStreamEventBus, Topic
from ..events.bus import EventConsumer
from ..events.consumers import UserEventsConsumer
from ..notifications import (
    InMemoryNotificationStore,
    InMemoryWebhookEndpointStore,
    NotificationCreator,
    UrllibWebhookTransport,
    WebhookDispatcher,
)

logger = logging.getLogger("billing")

SANDBOX_WEBHOOK_SECRET = "whsec_sandbox"


class SandboxPaymentGateway:
    """Processor stand-in for local development and tests.

    Customers and subscriptions live in memory. Webhooks are verified with the
    same ``Stripe-Signature`` scheme as the real gateway so local tooling can
    replay signed events.
    """

    def __init__(self, *, webhook_secret: Optional[str] = None, base_url: str = "https://billing.local") -> None:
        self._webhook_secret = webhook_secret or SANDBOX_WEBHOOK_SECRET
        self._base_url = base_url.rstrip("/")
        self._lock = Lock()
        self.customers: Dict[str, Dict[str, str]] = {}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: Dict[str, ProcessorSubscription] = {}
        self.canceled: List[str] = []
        self.prices: Dict[Tuple[str, str, int, str], str] = {}

    def create_customer(self, *, metadata: Dict[str, str], email: Optional[str] = None) -> str:
        customer_ref = f"cus_{uuid4().hex[:14]}"
        with self._lock:
            self.customers[customer_ref] = dict(metadata, email=email or "")
        return customer_ref

    def create_checkout_session(
        self,
        *,
        customer_ref: str,
        price: CheckoutPrice,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> CheckoutSession:
        session_id = f"cs_{uuid4().hex}"
        with self._lock:
            self.sessions[session_id] = {
                "customer": customer_ref,
                "price": price,
                "metadata": dict(metadata),
                "success_url": success_url,
                "cancel_url": cancel_url,
            }
        return CheckoutSession(id=session_id, url=f"{self._base_url}/checkout/{session_id}")

    def complete_checkout(self, session_id: str) -> ProcessorSubscription:
        """Turn an open sandbox session into an active subscription."""

        with self._lock:
            session = self.sessions.get(session_id)
            if session is None:
                raise ProcessorError("Unknown checkout session")
            price: CheckoutPrice = session["price"]
            now = datetime.now(timezone.utc)
            cycle = BillingCycle.YEARLY if price.interval == "year" else BillingCycle.MONTHLY
            subscription = ProcessorSubscription(
                id=f"sub_{uuid4().hex[:14]}",
                customer_ref=session["customer"],
                status="active",
                current_period_start=now,
                current_period_end=advance_period(now, cycle),
                items=[
                    ProcessorSubscriptionItem(
                        id=f"si_{uuid4().hex[:14]}",
                        price_ref=f"price_{uuid4().hex[:14]}",
                        unit_amount=price.unit_amount,
                        interval=price.interval,
                    )
                ],
                metadata=session["metadata"],
            )
            self.subscriptions[subscription.id] = subscription
            return subscription

    def _get(self, subscription_ref: str) -> ProcessorSubscription:
        subscription = self.subscriptions.get(subscription_ref)
        if subscription is None:
            raise ProcessorError("No such subscription")
        return subscription

    def retrieve_subscription(self, subscription_ref: str) -> ProcessorSubscription:
        with self._lock:
            return self._get(subscription_ref)

    def update_subscription_item(
        self,
        subscription_ref: str,
        *,
        item_id: str,
        price_ref: str,
        proration_behavior: str = PRORATION_BEHAVIOR,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ProcessorSubscription:
        with self._lock:
            current = self._get(subscription_ref)
            items = [
                item.model_copy(update={"price_ref": price_ref}) if item.id == item_id else item
                for item in current.items
            ]
            updated = current.model_copy(
                update={"items": items, "metadata": dict(current.metadata, **(metadata or {}))}
            )
            self.subscriptions[subscription_ref] = updated
            return updated

    def cancel_subscription(self, subscription_ref: str) -> None:
        with self._lock:
            current = self._get(subscription_ref)
            self.subscriptions[subscription_ref] = current.model_copy(update={"status": "canceled"})
            self.canceled.append(subscription_ref)

    def list_subscriptions_for_customer(self, customer_ref: str, *, limit: int = 1) -> List[ProcessorSubscription]:
        with self._lock:
            matches = [sub for sub in self.subscriptions.values() if sub.customer_ref == customer_ref]
        matches.reverse()
        return matches[:limit]

    def retrieve_payment_method(self, payment_method_ref: str) -> Dict[str, Any]:
        return {
            "id": payment_method_ref,
            "type": "card",
            "card": {"brand": "visa", "last_four": "4242", "expiry_month": 12, "expiry_year": 2030},
        }

    def parse_subscription(self, payload: Mapping[str, Any]) -> ProcessorSubscription:
        return to_processor_subscription(payload)

    def parse_invoice(self, payload: Mapping[str, Any]) -> ProcessorInvoice:
        return to_processor_invoice(payload)

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
        key = (slug, interval, unit_amount, currency.lower())
        with self._lock:
            price_ref = self.prices.get(key)
            if price_ref is None:
                price_ref = f"price_{slug}_{interval}_{unit_amount}"
                self.prices[key] = price_ref
        return price_ref

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> ProcessorEvent:
        return verify_webhook_event(raw_body, signature, self._webhook_secret)


@dataclass
class BillingComponents:
    """Everything ``create_app`` needs, built once per process."""

    config: BillingConfig
    store: SubscriptionStore
    catalog: PlanCatalog
    gateway: PaymentProcessorGateway
    bus: EventBus
    engine: SubscriptionReconciliationEngine
    webhook_endpoints: InMemoryWebhookEndpointStore = field(default_factory=InMemoryWebhookEndpointStore)
    notifications: InMemoryNotificationStore = field(default_factory=InMemoryNotificationStore)
    consumers: List[EventConsumer] = field(default_factory=list)


def build_store(config: BillingConfig) -> SubscriptionStore:
    if config.store_backend == "memory":
        return InMemorySubscriptionStore()
    store = PostgresSubscriptionStore.from_config(config.database)
    store.ensure_schema()
    return store


def build_gateway(config: BillingConfig) -> PaymentProcessorGateway:
    if not config.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY is not set; using the sandbox payment gateway")
        return SandboxPaymentGateway(webhook_secret=config.stripe_webhook_secret)
    client = build_stripe_client(
        config.stripe_secret_key,
        timeout_seconds=config.processor_timeout_seconds,
        max_network_retries=config.processor_max_retries,
    )
    return StripePaymentGateway(client, webhook_secret=config.stripe_webhook_secret)


def build_event_bus(config: BillingConfig) -> EventBus:
    guarantee = DeliveryGuarantee(config.event_delivery)
    if config.event_bus_enabled and config.redis_url:
        return RedisStreamEventBus.from_url(
            config.redis_url,
            source=config.service_name,
            guarantee=guarantee,
            socket_timeout=config.redis_socket_timeout,
        )
    logger.info("Event bus running in-process", extra={"guarantee": guarantee.value})
    return InMemoryEventBus(source=config.service_name, guarantee=guarantee)


def build_billing_components(
    config: BillingConfig,
    *,
    store: Optional[SubscriptionStore] = None,
    gateway: Optional[PaymentProcessorGateway] = None,
    bus: Optional[EventBus] = None,
) -> BillingComponents:
    store = store if store is not None else build_store(config)
    catalog = PlanCatalog.from_store(store, price_references=config.price_references)
    gateway = gateway if gateway is not None else build_gateway(config)
    bus = bus if bus is not None else build_event_bus(config)
    engine = SubscriptionReconciliationEngine(
        store=store,
        catalog=catalog,
        gateway=gateway,
        bus=bus,
        locks=OrganizationLocks(),
        app_base_url=config.app_base_url,
        currency=config.currency,
    )
    return BillingComponents(
        config=config,
        store=store,
        catalog=catalog,
        gateway=gateway,
        bus=bus,
        engine=engine,
    )


def setup_processor_prices(components: BillingComponents, *, overwrite: bool = False) -> Dict[str, Dict[str, str]]:
    """Create or reuse processor prices for every paid active plan.

    Missing price references are backfilled into the catalog, which writes
    them through to the plan store. Existing references are kept unless
    ``overwrite`` is set. Returns the resolved references keyed by slug.
    """

    catalog = components.catalog
    resolved: Dict[str, Dict[str, str]] = {}
    for plan in catalog.list_active():
        if plan.is_free:
            continue
        refs: Dict[str, str] = {}
        for cycle in (BillingCycle.MONTHLY, BillingCycle.YEARLY):
            current = plan.price_references.for_cycle(cycle)
            if current and not overwrite:
                refs[cycle.value] = current
                continue
            price_ref = components.gateway.ensure_recurring_price(
                slug=plan.slug,
                product_name=f"SubTrack {plan.name}",
                description=plan.description,
                unit_amount=to_minor_units(plan.pricing.for_cycle(cycle)),
                currency=plan.pricing.currency,
                interval="year" if cycle == BillingCycle.YEARLY else "month",
            )
            if price_ref != current:
                plan = catalog.backfill_price_reference(plan.id, cycle, price_ref)
            refs[cycle.value] = price_ref
        resolved[plan.slug] = refs
    logger.info("Processor prices ready", extra={"plans": sorted(resolved)})
    return resolved


def start_consumers(components: BillingComponents) -> List[EventConsumer]:
    """Subscribe the billing service's handlers to the bus."""

    config = components.config
    bus = components.bus
    consumers: List[EventConsumer] = [
        bus.subscribe(
            [Topic.USER_EVENTS.value],
            config.event_consumer_group,
            UserEventsConsumer(components.engine),
        ),
        bus.subscribe(
            [Topic.BILLING_EVENTS.value],
            f"{config.service_name}-webhooks",
            WebhookDispatcher(
                components.webhook_endpoints,
                UrllibWebhookTransport(timeout=config.webhook_delivery_timeout),
            ),
        ),
        bus.subscribe(
            [Topic.BILLING_EVENTS.value],
            f"{config.service_name}-notifications",
            NotificationCreator(components.notifications, action_url=f"{config.app_base_url}/billing"),
        ),
    ]
    components.consumers.extend(consumers)
    logger.info("Event consumers started", extra={"count": len(consumers)})
    return consumers


def stop_consumers(components: BillingComponents, *, timeout: Optional[float] = 5.0) -> None:
    while components.consumers:
        consumer = components.consumers.pop()
        consumer.stop(timeout)


__all__ = [
    "BillingComponents",
    "SANDBOX_WEBHOOK_SECRET",
    "SandboxPaymentGateway",
    "build_billing_components",
    "build_event_bus",
    "build_gateway",
    "build_store",
    "setup_processor_prices",
    "start_consumers",
    "stop_consumers",
]
