"""Subscription lifecycle engine reconciling local state with the payment processor."""
from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple
from uuid import uuid4

from ..events.bus import EventBus
from ..events.models import Topic
from .catalog import FREE_PLAN_SLUG, PlanCatalog, PlanStore
from .errors import ConflictError, NotFoundError, ProcessorError, ValidationError
from .locks import OrganizationLocks
from .models import (
    AuthContext,
    BillingCycle,
    BillingEventType,
    CardDetails,
    CheckoutPrice,
    CheckoutSession,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    PaymentMethod,
    PaymentMethodType,
    Plan,
    ProcessorEvent,
    ProcessorEventType,
    ProcessorInvoice,
    ProcessorSubscription,
    Subscription,
    SubscriptionOutcome,
    SubscriptionStatus,
    UsageItem,
    UsageReport,
    from_minor_units,
    to_minor_units,
)
from .status import map_sync_status, map_webhook_status

logger = logging.getLogger("billing")

PRORATION_BEHAVIOR = "create_prorations"


class SubscriptionStore(PlanStore, Protocol):
    """Persistence operations required by the engine."""

    def find_by_organization(self, organization_id: str) -> Optional[Subscription]:
        ...

    def find_by_external_subscription_ref(self, external_ref: str) -> Optional[Subscription]:
        ...

    def upsert(self, organization_id: str, **fields: Any) -> Subscription:
        ...

    def save(self, subscription: Subscription) -> Subscription:
        ...

    def find_invoice_by_external_ref(self, external_ref: str) -> Optional[Invoice]:
        ...

    def next_invoice_number(self, year: int) -> str:
        ...

    def save_invoice(self, invoice: Invoice) -> Invoice:
        ...

    def list_payment_methods(self, organization_id: str) -> Sequence[PaymentMethod]:
        ...

    def find_payment_method(self, organization_id: str, method_id: str) -> Optional[PaymentMethod]:
        ...

    def clear_default_payment_method(self, organization_id: str) -> None:
        ...

    def save_payment_method(self, method: PaymentMethod) -> PaymentMethod:
        ...

    def delete_payment_method(self, organization_id: str, method_id: str) -> bool:
        ...

    def processor_event_seen(self, event_id: str) -> bool:
        ...

    def record_processor_event(self, event_id: str, event_type: str) -> bool:
        ...


class PaymentProcessorGateway(Protocol):
    """External payment processor integration."""

    def create_customer(self, *, metadata: Dict[str, str], email: Optional[str] = None) -> str:
        """Create a processor customer and return its reference."""

    def create_checkout_session(
        self,
        *,
        customer_ref: str,
        price: CheckoutPrice,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> CheckoutSession:
        """Open a hosted checkout session for a recurring price."""

    def retrieve_subscription(self, subscription_ref: str) -> ProcessorSubscription:
        ...

    def update_subscription_item(
        self,
        subscription_ref: str,
        *,
        item_id: str,
        price_ref: str,
        proration_behavior: str = PRORATION_BEHAVIOR,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ProcessorSubscription:
        ...

    def cancel_subscription(self, subscription_ref: str) -> None:
        ...

    def list_subscriptions_for_customer(
        self, customer_ref: str, *, limit: int = 1
    ) -> List[ProcessorSubscription]:
        """Most recent subscriptions first, any status."""

    def retrieve_payment_method(self, payment_method_ref: str) -> Dict[str, Any]:
        ...

    def parse_subscription(self, payload: Mapping[str, Any]) -> ProcessorSubscription:
        ...

    def parse_invoice(self, payload: Mapping[str, Any]) -> ProcessorInvoice:
        ...

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
        """Return the processor price id for ``slug`` at ``unit_amount`` per ``interval``.

        An existing active price with the same amount is reused; the product
        and price are created otherwise.
        """

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> ProcessorEvent:
        """Raise ``SignatureError`` unless the body was signed with the shared secret."""


class UsageMeter(Protocol):
    """Reports resource consumption for an organization's current period."""

    def usage_for(
        self,
        organization_id: str,
        period_start: Optional[datetime],
        period_end: Optional[datetime],
    ) -> Mapping[str, int]:
        ...


class ZeroUsageMeter:
    """Meter used until usage tracking is wired to the owning services."""

    def usage_for(self, organization_id, period_start, period_end) -> Mapping[str, int]:
        return {}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def advance_period(start: datetime, cycle: BillingCycle) -> datetime:
    """Return the end of a billing period beginning at ``start``."""

    return _add_months(start, 12 if cycle == BillingCycle.YEARLY else 1)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_cycle(value: Optional[str]) -> BillingCycle:
    try:
        return BillingCycle(value or BillingCycle.MONTHLY.value)
    except ValueError:
        logger.warning("Unknown billing cycle in processor metadata", extra={"billing_cycle": value})
        return BillingCycle.MONTHLY


def _cycle_from_interval(interval: Optional[str], default: BillingCycle) -> BillingCycle:
    if interval == "year":
        return BillingCycle.YEARLY
    if interval == "month":
        return BillingCycle.MONTHLY
    return default


def _plan_ref(plan: Optional[Plan], plan_id: str) -> Dict[str, str]:
    return {"id": plan_id, "name": plan.name if plan else plan_id}


@dataclass
class SubscriptionReconciliationEngine:
    """Owns every mutation of subscription records.

    Mutations for one organization are serialized through ``locks``; processor
    webhooks are resolved to their organization before taking the lock.
    """

    store: SubscriptionStore
    catalog: PlanCatalog
    gateway: PaymentProcessorGateway
    bus: EventBus
    locks: OrganizationLocks = field(default_factory=OrganizationLocks)
    usage_meter: UsageMeter = field(default_factory=ZeroUsageMeter)
    app_base_url: str = "http://localhost:5173"
    currency: str = "usd"
    clock: Callable[[], datetime] = _utcnow

    # ------------------------------------------------------------------
    # Helpers

    def _now(self) -> datetime:
        return self.clock()

    def _require_plan(self, plan_id: str) -> Plan:
        plan = self.catalog.get(plan_id)
        if plan is None:
            raise NotFoundError("Plan not found")
        return plan

    def _require_subscription(self, organization_id: str) -> Subscription:
        subscription = self.store.find_by_organization(organization_id)
        if subscription is None:
            raise NotFoundError("Subscription not found")
        return subscription

    def _publish(
        self,
        event_type: BillingEventType,
        data: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        self.bus.publish(
            Topic.BILLING_EVENTS.value,
            event_type.value,
            data,
            correlation_id=correlation_id,
        )

    def _created_payload(self, subscription: Subscription, plan: Plan) -> Dict[str, Any]:
        return {
            "subscriptionId": subscription.id,
            "organizationId": subscription.organization_id,
            "planId": plan.id,
            "planName": plan.name,
            "status": subscription.status.value,
            "billingCycle": subscription.billing_cycle.value,
            "externalSubscriptionRef": subscription.external_subscription_ref,
        }

    def _ensure_customer(self, ctx: AuthContext, existing: Optional[Subscription]) -> str:
        if existing is not None and existing.external_customer_ref:
            return existing.external_customer_ref
        return self.gateway.create_customer(
            metadata={"organizationId": ctx.organization_id},
            email=ctx.email,
        )

    def _open_checkout(
        self,
        *,
        organization_id: str,
        customer_ref: str,
        plan: Plan,
        cycle: BillingCycle,
        return_origin: Optional[str],
    ) -> CheckoutSession:
        origin = (return_origin or self.app_base_url).rstrip("/")
        price = CheckoutPrice(
            product_name=f"SubTrack {plan.name}",
            description=plan.description,
            unit_amount=to_minor_units(plan.pricing.for_cycle(cycle)),
            currency=plan.pricing.currency or self.currency,
            interval="year" if cycle == BillingCycle.YEARLY else "month",
        )
        return self.gateway.create_checkout_session(
            customer_ref=customer_ref,
            price=price,
            success_url=f"{origin}/billing?success=true&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{origin}/billing?canceled=true",
            metadata={
                "organizationId": organization_id,
                "planId": plan.id,
                "billingCycle": cycle.value,
            },
        )

    # ------------------------------------------------------------------
    # User-initiated operations

    def get_subscription(self, ctx: AuthContext) -> Tuple[Subscription, Optional[Plan]]:
        subscription = self._require_subscription(ctx.organization_id)
        return subscription, self.catalog.get(subscription.plan_id)

    def create(
        self,
        ctx: AuthContext,
        plan_id: str,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        *,
        return_origin: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> SubscriptionOutcome:
        """Start a subscription on ``plan_id``.

        Free plans activate immediately. Paid plans leave an ``unpaid`` record
        and return a checkout URL; activation happens when the processor reports
        ``checkout.session.completed``.
        """

        plan = self._require_plan(plan_id)
        if not plan.is_active:
            raise ValidationError("Plan is not available", code="PLAN_INACTIVE", detail={"planId": plan.id})

        organization_id = ctx.organization_id
        with self.locks.hold(organization_id):
            existing = self.store.find_by_organization(organization_id)
            if existing is not None and existing.status == SubscriptionStatus.ACTIVE:
                current_plan = self.catalog.get(existing.plan_id)
                if current_plan is None or not current_plan.is_free:
                    raise ConflictError("Organization already has an active subscription")

            if plan.is_free:
                now = self._now()
                subscription = self.store.upsert(
                    organization_id,
                    plan_id=plan.id,
                    status=SubscriptionStatus.ACTIVE,
                    billing_cycle=billing_cycle,
                    current_period_start=now,
                    current_period_end=advance_period(now, billing_cycle),
                    cancel_at_period_end=False,
                    canceled_at=None,
                    cancellation_reason=None,
                    external_subscription_ref=None,
                )
                logger.info(
                    "Free subscription activated",
                    extra={"organization_id": organization_id, "plan_id": plan.id},
                )
                self._publish(
                    BillingEventType.SUBSCRIPTION_CREATED,
                    self._created_payload(subscription, plan),
                    correlation_id,
                )
                return SubscriptionOutcome(subscription=subscription, message="Subscription activated")

            customer_ref = self._ensure_customer(ctx, existing)
            if existing is not None and existing.status == SubscriptionStatus.ACTIVE:
                # Active free record stays in force until checkout completes.
                subscription = self.store.upsert(organization_id, external_customer_ref=customer_ref)
            else:
                subscription = self.store.upsert(
                    organization_id,
                    plan_id=plan.id,
                    status=SubscriptionStatus.UNPAID,
                    billing_cycle=billing_cycle,
                    external_customer_ref=customer_ref,
                )

            session = self._open_checkout(
                organization_id=organization_id,
                customer_ref=customer_ref,
                plan=plan,
                cycle=billing_cycle,
                return_origin=return_origin,
            )
            logger.info(
                "Checkout session opened",
                extra={"organization_id": organization_id, "plan_id": plan.id, "session_id": session.id},
            )
            return SubscriptionOutcome(
                subscription=subscription,
                checkout_url=session.url,
                message="Redirect to checkout to complete payment",
            )

    def change_plan(
        self,
        ctx: AuthContext,
        new_plan_id: str,
        *,
        return_origin: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> SubscriptionOutcome:
        organization_id = ctx.organization_id
        with self.locks.hold(organization_id):
            subscription = self._require_subscription(organization_id)
            new_plan = self._require_plan(new_plan_id)
            old_plan = self.catalog.get(subscription.plan_id)

            if new_plan.is_free:
                if subscription.external_subscription_ref:
                    try:
                        self.gateway.cancel_subscription(subscription.external_subscription_ref)
                    except ProcessorError:
                        logger.warning(
                            "Failed to cancel processor subscription during downgrade",
                            extra={
                                "organization_id": organization_id,
                                "external_subscription_ref": subscription.external_subscription_ref,
                            },
                        )
                updated = self.store.upsert(
                    organization_id,
                    plan_id=new_plan.id,
                    status=SubscriptionStatus.ACTIVE,
                    external_subscription_ref=None,
                )
                logger.info(
                    "Subscription downgraded to free plan",
                    extra={"organization_id": organization_id, "plan_id": new_plan.id},
                )
                return SubscriptionOutcome(subscription=updated, message=f"Plan changed to {new_plan.name}")

            if not subscription.external_subscription_ref:
                customer_ref = self._ensure_customer(ctx, subscription)
                if customer_ref != subscription.external_customer_ref:
                    subscription = self.store.upsert(organization_id, external_customer_ref=customer_ref)
                session = self._open_checkout(
                    organization_id=organization_id,
                    customer_ref=customer_ref,
                    plan=new_plan,
                    cycle=subscription.billing_cycle,
                    return_origin=return_origin,
                )
                return SubscriptionOutcome(
                    subscription=subscription,
                    checkout_url=session.url,
                    message="Redirect to checkout to complete payment",
                )

            price_ref = new_plan.price_references.for_cycle(subscription.billing_cycle)
            if not price_ref:
                raise ValidationError(
                    "Plan has no processor price for this billing cycle",
                    code="NO_PRICE",
                    detail={"planId": new_plan.id, "billingCycle": subscription.billing_cycle.value},
                )

            remote = self.gateway.retrieve_subscription(subscription.external_subscription_ref)
            if not remote.items:
                raise ProcessorError("Processor subscription has no items")

            updated_remote = self.gateway.update_subscription_item(
                subscription.external_subscription_ref,
                item_id=remote.items[0].id,
                price_ref=price_ref,
                proration_behavior=PRORATION_BEHAVIOR,
                metadata={
                    "organizationId": organization_id,
                    "planId": new_plan.id,
                    "billingCycle": subscription.billing_cycle.value,
                },
            )
            updated = self.store.upsert(
                organization_id,
                plan_id=new_plan.id,
                current_period_start=updated_remote.current_period_start or subscription.current_period_start,
                current_period_end=updated_remote.current_period_end or subscription.current_period_end,
            )
            logger.info(
                "Subscription plan changed",
                extra={
                    "organization_id": organization_id,
                    "old_plan_id": subscription.plan_id,
                    "plan_id": new_plan.id,
                },
            )
            self._publish(
                BillingEventType.SUBSCRIPTION_UPGRADED,
                {
                    "subscriptionId": updated.id,
                    "organizationId": organization_id,
                    "oldPlan": _plan_ref(old_plan, subscription.plan_id),
                    "newPlan": _plan_ref(new_plan, new_plan.id),
                },
                correlation_id,
            )
            old_name = old_plan.name if old_plan else subscription.plan_id
            return SubscriptionOutcome(
                subscription=updated,
                message=f"Plan changed from {old_name} to {new_plan.name}",
            )

    def cancel(
        self,
        ctx: AuthContext,
        reason: Optional[str] = None,
        *,
        correlation_id: Optional[str] = None,
    ) -> Subscription:
        """Schedule cancellation at period end. No processor call is made."""

        organization_id = ctx.organization_id
        with self.locks.hold(organization_id):
            subscription = self._require_subscription(organization_id)
            fields: Dict[str, Any] = {"cancel_at_period_end": True}
            if subscription.canceled_at is None:
                fields["canceled_at"] = self._now()
            if reason:
                fields["cancellation_reason"] = reason
            updated = self.store.upsert(organization_id, **fields)
            logger.info(
                "Subscription scheduled for cancellation",
                extra={"organization_id": organization_id, "subscription_id": updated.id},
            )
            self._publish(
                BillingEventType.SUBSCRIPTION_CANCELED,
                {
                    "subscriptionId": updated.id,
                    "organizationId": organization_id,
                    "cancelAt": _iso(updated.current_period_end),
                    "reason": updated.cancellation_reason,
                },
                correlation_id,
            )
            return updated

    def sync(self, ctx: AuthContext) -> Subscription:
        """Pull the latest processor subscription into the local record.

        This is a repair path and publishes nothing.
        """

        organization_id = ctx.organization_id
        with self.locks.hold(organization_id):
            subscription = self._require_subscription(organization_id)
            if not subscription.external_customer_ref:
                raise NotFoundError("No billing customer for organization")

            remotes = self.gateway.list_subscriptions_for_customer(subscription.external_customer_ref, limit=1)
            if not remotes:
                return subscription
            remote = remotes[0]

            first_item = remote.items[0] if remote.items else None
            fields: Dict[str, Any] = {
                "status": map_sync_status(remote.status),
                "external_subscription_ref": remote.id,
                "billing_cycle": _cycle_from_interval(
                    first_item.interval if first_item else None, subscription.billing_cycle
                ),
            }
            if remote.current_period_start:
                fields["current_period_start"] = remote.current_period_start
            if remote.current_period_end:
                fields["current_period_end"] = remote.current_period_end

            plan = self._resolve_remote_plan(remote)
            if plan is not None:
                fields["plan_id"] = plan.id
            else:
                logger.warning(
                    "Could not resolve plan for processor subscription",
                    extra={"organization_id": organization_id, "external_subscription_ref": remote.id},
                )

            updated = self.store.upsert(organization_id, **fields)
            logger.info(
                "Subscription synced from processor",
                extra={"organization_id": organization_id, "status": updated.status.value},
            )
            return updated

    def _resolve_remote_plan(self, remote: ProcessorSubscription) -> Optional[Plan]:
        plan_id = remote.metadata.get("planId")
        if plan_id:
            plan = self.catalog.get(plan_id)
            if plan is not None:
                return plan
        if remote.items and remote.items[0].unit_amount is not None:
            return self.catalog.find_by_price(from_minor_units(remote.items[0].unit_amount))
        return None

    def get_usage(self, ctx: AuthContext) -> UsageReport:
        subscription = self._require_subscription(ctx.organization_id)
        plan = self._require_plan(subscription.plan_id)
        used = self.usage_meter.usage_for(
            ctx.organization_id,
            subscription.current_period_start,
            subscription.current_period_end,
        )
        limits = plan.limits
        return UsageReport(
            organization_id=ctx.organization_id,
            plan_id=plan.id,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            usage={
                "users": UsageItem(used=int(used.get("users", 0)), limit=limits.users),
                "projects": UsageItem(used=int(used.get("projects", 0)), limit=limits.projects),
                "storage": UsageItem(used=int(used.get("storage", 0)), limit=limits.storage, unit="MB"),
                "apiCalls": UsageItem(used=int(used.get("apiCalls", 0)), limit=limits.api_calls),
            },
        )

    # ------------------------------------------------------------------
    # Payment methods

    def list_payment_methods(self, ctx: AuthContext) -> Sequence[PaymentMethod]:
        return self.store.list_payment_methods(ctx.organization_id)

    def add_payment_method(self, ctx: AuthContext, payment_method_ref: str) -> PaymentMethod:
        if not payment_method_ref:
            raise ValidationError("paymentMethodRef is required")
        details = self.gateway.retrieve_payment_method(payment_method_ref)
        card = details.get("card")
        try:
            method_type = PaymentMethodType(details.get("type") or PaymentMethodType.CARD.value)
        except ValueError as exc:
            raise ValidationError("Unsupported payment method type") from exc

        with self.locks.hold(ctx.organization_id):
            self.store.clear_default_payment_method(ctx.organization_id)
            return self.store.save_payment_method(
                PaymentMethod(
                    id=f"pm_{uuid4().hex}",
                    organization_id=ctx.organization_id,
                    type=method_type,
                    card=CardDetails.model_validate(card) if card else None,
                    is_default=True,
                    external_payment_method_ref=payment_method_ref,
                    created_at=self._now(),
                )
            )

    def remove_payment_method(self, ctx: AuthContext, method_id: str) -> None:
        with self.locks.hold(ctx.organization_id):
            if not self.store.delete_payment_method(ctx.organization_id, method_id):
                raise NotFoundError("Payment method not found")

    # ------------------------------------------------------------------
    # Event-driven operations

    def provision_free_plan(self, organization_id: str, *, correlation_id: Optional[str] = None) -> Subscription:
        """Give a newly created organization the free plan unless it already has a record."""

        plan = self.catalog.get_by_slug(FREE_PLAN_SLUG)
        if plan is None:
            raise NotFoundError("Free plan is not configured")

        with self.locks.hold(organization_id):
            existing = self.store.find_by_organization(organization_id)
            if existing is not None:
                logger.info(
                    "Organization already has a subscription; skipping free plan provisioning",
                    extra={"organization_id": organization_id},
                )
                return existing

            now = self._now()
            subscription = self.store.upsert(
                organization_id,
                plan_id=plan.id,
                status=SubscriptionStatus.ACTIVE,
                billing_cycle=BillingCycle.MONTHLY,
                current_period_start=now,
                current_period_end=advance_period(now, BillingCycle.MONTHLY),
            )
            logger.info(
                "Free plan provisioned",
                extra={"organization_id": organization_id, "plan_id": plan.id},
            )
            self._publish(
                BillingEventType.SUBSCRIPTION_CREATED,
                self._created_payload(subscription, plan),
                correlation_id,
            )
            return subscription

    def handle_processor_webhook(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """Verify and apply a processor webhook.

        Returns ``False`` when the event was already processed. The event id is
        recorded only after the handler succeeds so failed deliveries are retried.
        """

        event = self.gateway.verify_webhook_signature(raw_body, signature)
        if not event.id:
            raise ValidationError("Webhook event has no id")

        with self.locks.hold(f"processor-event:{event.id}"):
            if self.store.processor_event_seen(event.id):
                logger.info(
                    "Duplicate processor event ignored",
                    extra={"event_id": event.id, "event_type": event.type},
                )
                return False

            handler = self._webhook_handlers().get(event.type)
            if handler is None:
                logger.debug("Ignoring processor event", extra={"event_type": event.type})
            else:
                handler(event)
            self.store.record_processor_event(event.id, event.type)
            return True

    def _webhook_handlers(self) -> Dict[str, Callable[[ProcessorEvent], None]]:
        return {
            ProcessorEventType.CHECKOUT_SESSION_COMPLETED.value: self._on_checkout_completed,
            ProcessorEventType.SUBSCRIPTION_UPDATED.value: self._on_subscription_changed,
            ProcessorEventType.SUBSCRIPTION_DELETED.value: self._on_subscription_changed,
            ProcessorEventType.INVOICE_PAID.value: self._on_invoice_paid,
            ProcessorEventType.INVOICE_PAYMENT_FAILED.value: self._on_invoice_failed,
        }

    def _on_checkout_completed(self, event: ProcessorEvent) -> None:
        session = event.data
        metadata = session.get("metadata") or {}
        if session.get("mode") != "subscription" or not metadata:
            return

        organization_id = metadata.get("organizationId")
        plan_id = metadata.get("planId")
        subscription_ref = session.get("subscription")
        if isinstance(subscription_ref, Mapping):
            subscription_ref = subscription_ref.get("id")
        if not organization_id or not plan_id or not subscription_ref:
            logger.warning(
                "Checkout session is missing subscription metadata",
                extra={"event_id": event.id, "session_id": session.get("id")},
            )
            return

        plan = self.catalog.get(plan_id)
        if plan is None:
            logger.error(
                "Checkout completed for unknown plan",
                extra={"event_id": event.id, "organization_id": organization_id, "plan_id": plan_id},
            )
            return

        cycle = _parse_cycle(metadata.get("billingCycle"))
        remote = self.gateway.retrieve_subscription(subscription_ref)
        customer_ref = session.get("customer") or remote.customer_ref
        if isinstance(customer_ref, Mapping):
            customer_ref = customer_ref.get("id")

        with self.locks.hold(organization_id):
            fields: Dict[str, Any] = {
                "plan_id": plan.id,
                "status": SubscriptionStatus.ACTIVE,
                "billing_cycle": cycle,
                "current_period_start": remote.current_period_start,
                "current_period_end": remote.current_period_end,
                "cancel_at_period_end": False,
                "canceled_at": None,
                "cancellation_reason": None,
                "external_subscription_ref": remote.id,
            }
            if customer_ref:
                fields["external_customer_ref"] = customer_ref
            subscription = self.store.upsert(organization_id, **fields)
            logger.info(
                "Subscription activated from checkout",
                extra={"organization_id": organization_id, "plan_id": plan.id},
            )
            self._publish(
                BillingEventType.SUBSCRIPTION_CREATED,
                self._created_payload(subscription, plan),
                event.id,
            )

    def _on_subscription_changed(self, event: ProcessorEvent) -> None:
        remote = self.gateway.parse_subscription(event.data)
        located = self.store.find_by_external_subscription_ref(remote.id)
        if located is None:
            logger.info(
                "Processor subscription not linked to any organization",
                extra={"event_id": event.id, "external_subscription_ref": remote.id},
            )
            return

        deleted = event.type == ProcessorEventType.SUBSCRIPTION_DELETED.value
        with self.locks.hold(located.organization_id):
            current = self.store.find_by_organization(located.organization_id)
            if current is None or current.external_subscription_ref != remote.id:
                # Superseded by a downgrade or a newer checkout while we waited.
                return
            fields: Dict[str, Any] = {
                "status": map_webhook_status(remote.status, deleted=deleted),
                "cancel_at_period_end": remote.cancel_at_period_end,
            }
            if remote.current_period_start:
                fields["current_period_start"] = remote.current_period_start
            if remote.current_period_end:
                fields["current_period_end"] = remote.current_period_end
            if deleted and current.canceled_at is None:
                fields["canceled_at"] = self._now()
            updated = self.store.upsert(current.organization_id, **fields)
            logger.info(
                "Subscription updated from processor",
                extra={
                    "organization_id": updated.organization_id,
                    "status": updated.status.value,
                    "event_type": event.type,
                },
            )

    def _project_invoice(
        self,
        subscription: Subscription,
        remote: ProcessorInvoice,
        status: InvoiceStatus,
    ) -> Invoice:
        line_items = [
            InvoiceLineItem(
                description=line.description or "Subscription",
                quantity=line.quantity,
                unit_price=from_minor_units(line.unit_amount),
                amount=from_minor_units(line.amount),
            )
            for line in remote.lines
        ]
        fields: Dict[str, Any] = {
            "line_items": line_items,
            "subtotal": from_minor_units(remote.subtotal),
            "tax": from_minor_units(remote.tax),
            "total": from_minor_units(remote.total),
            "currency": remote.currency,
            "status": status,
            "due_date": remote.due_date,
            "paid_at": (remote.paid_at or self._now()) if status == InvoiceStatus.PAID else None,
        }
        with self.locks.hold("invoice-numbering"):
            existing = self.store.find_invoice_by_external_ref(remote.id)
            if existing is not None:
                return self.store.save_invoice(existing.model_copy(update=fields))
            now = self._now()
            return self.store.save_invoice(
                Invoice(
                    id=f"inv_{uuid4().hex}",
                    subscription_id=subscription.id,
                    organization_id=subscription.organization_id,
                    invoice_number=self.store.next_invoice_number(now.year),
                    external_invoice_ref=remote.id,
                    created_at=now,
                    updated_at=now,
                    **fields,
                )
            )

    def _invoice_subscription(self, event: ProcessorEvent, remote: ProcessorInvoice) -> Optional[Subscription]:
        subscription = (
            self.store.find_by_external_subscription_ref(remote.subscription_ref)
            if remote.subscription_ref
            else None
        )
        if subscription is None:
            logger.warning(
                "Invoice does not belong to a known subscription",
                extra={"event_id": event.id, "invoice_ref": remote.id},
            )
        return subscription

    def _on_invoice_paid(self, event: ProcessorEvent) -> None:
        remote = self.gateway.parse_invoice(event.data)
        subscription = self._invoice_subscription(event, remote)
        if subscription is None:
            return
        with self.locks.hold(subscription.organization_id):
            invoice = self._project_invoice(subscription, remote, InvoiceStatus.PAID)
            self._publish(
                BillingEventType.INVOICE_PAID,
                {
                    "invoiceId": remote.id,
                    "organizationId": subscription.organization_id,
                    "amount": float(from_minor_units(remote.amount_paid)),
                    "currency": remote.currency,
                    "paidAt": _iso(invoice.paid_at),
                },
                event.id,
            )

    def _on_invoice_failed(self, event: ProcessorEvent) -> None:
        remote = self.gateway.parse_invoice(event.data)
        subscription = self._invoice_subscription(event, remote)
        if subscription is None:
            return
        with self.locks.hold(subscription.organization_id):
            self._project_invoice(subscription, remote, InvoiceStatus.FAILED)
            self._publish(
                BillingEventType.PAYMENT_FAILED,
                {
                    "invoiceId": remote.id,
                    "organizationId": subscription.organization_id,
                    "amount": float(from_minor_units(remote.amount_due)),
                    "currency": remote.currency,
                    "errorCode": remote.error_code or "payment_failed",
                    "errorMessage": remote.error_message or "Payment failed",
                },
                event.id,
            )


__all__ = [
    "PaymentProcessorGateway",
    "SubscriptionReconciliationEngine",
    "SubscriptionStore",
    "UsageMeter",
    "ZeroUsageMeter",
    "advance_period",
]
