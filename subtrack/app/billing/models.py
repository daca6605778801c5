"""Domain models for the billing system."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillingCycle(str, Enum):
    """Supported billing intervals."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionStatus(str, Enum):
    """Local subscription lifecycle states."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    VOID = "void"


class PaymentMethodType(str, Enum):
    CARD = "card"
    BANK_ACCOUNT = "bank_account"


class BillingEventType(str, Enum):
    """Domain events published on the billing topic."""

    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPGRADED = "subscription.upgraded"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    INVOICE_PAID = "invoice.paid"
    PAYMENT_FAILED = "payment.failed"


class ProcessorEventType(str, Enum):
    """Processor webhook types the engine reacts to."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount (e.g. dollars) to integer minor units."""

    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: Optional[int]) -> Decimal:
    if amount is None:
        return Decimal("0")
    return (Decimal(int(amount)) / Decimal(100)).quantize(Decimal("0.01"))


class PlanPricing(BaseModel):
    monthly: Decimal = Field(ge=0)
    yearly: Decimal = Field(ge=0)
    currency: str = "usd"

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _lower_currency(cls, value: str) -> str:
        return value.lower()

    def for_cycle(self, cycle: BillingCycle) -> Decimal:
        return self.yearly if cycle == BillingCycle.YEARLY else self.monthly


class PriceReferences(BaseModel):
    """Processor price identifiers for each billing cycle."""

    monthly: Optional[str] = None
    yearly: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def for_cycle(self, cycle: BillingCycle) -> Optional[str]:
        return self.yearly if cycle == BillingCycle.YEARLY else self.monthly


class PlanFeature(BaseModel):
    name: str
    included: bool = True
    limit: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PlanLimits(BaseModel):
    """Resource limits for a plan. ``-1`` means unlimited."""

    users: int
    projects: int
    storage: int = Field(description="Storage quota in MB")
    api_calls: int = Field(alias="apiCalls")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Plan(BaseModel):
    """A priced tier with feature and limit metadata."""

    id: str
    slug: str
    name: str
    description: str = ""
    pricing: PlanPricing
    price_references: PriceReferences = Field(default_factory=PriceReferences, alias="priceReferences")
    features: List[PlanFeature] = Field(default_factory=list)
    limits: PlanLimits
    is_active: bool = Field(default=True, alias="isActive")
    is_popular: bool = Field(default=False, alias="isPopular")
    sort_order: int = Field(default=0, alias="sortOrder")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_free(self) -> bool:
        """A plan is free when its monthly price is zero, whatever the cycle."""
        return self.pricing.monthly == 0


class Subscription(BaseModel):
    """The authoritative local subscription record for one organization."""

    id: str
    organization_id: str
    plan_id: str
    status: SubscriptionStatus
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    external_customer_ref: Optional[str] = None
    external_subscription_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class InvoiceLineItem(BaseModel):
    description: str
    quantity: int = Field(default=1, ge=0)
    unit_price: Decimal = Field(alias="unitPrice")
    amount: Decimal

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Invoice(BaseModel):
    """Local projection of a processor invoice."""

    id: str
    subscription_id: str
    organization_id: str
    invoice_number: str
    line_items: List[InvoiceLineItem] = Field(default_factory=list)
    subtotal: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    currency: str = "usd"
    status: InvoiceStatus = InvoiceStatus.PENDING
    due_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    external_invoice_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CardDetails(BaseModel):
    brand: str
    last_four: str = Field(alias="lastFour")
    expiry_month: int = Field(alias="expiryMonth")
    expiry_year: int = Field(alias="expiryYear")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PaymentMethod(BaseModel):
    id: str
    organization_id: str
    type: PaymentMethodType = PaymentMethodType.CARD
    card: Optional[CardDetails] = None
    is_default: bool = False
    external_payment_method_ref: str
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class AuthContext(BaseModel):
    """Identity forwarded by the gateway for the current request."""

    user_id: Optional[str] = None
    organization_id: str
    email: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CheckoutPrice(BaseModel):
    """Inline price passed to the processor when opening a checkout session."""

    product_name: str
    description: str = ""
    unit_amount: int = Field(ge=0, description="Amount in minor units")
    currency: str
    interval: str

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CheckoutSession(BaseModel):
    id: str
    url: str

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProcessorSubscriptionItem(BaseModel):
    id: str
    price_ref: Optional[str] = None
    unit_amount: Optional[int] = None
    interval: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProcessorSubscription(BaseModel):
    """Processor-side view of a subscription, normalized by the gateway."""

    id: str
    customer_ref: Optional[str] = None
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    items: List[ProcessorSubscriptionItem] = Field(default_factory=list)
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProcessorInvoiceLine(BaseModel):
    description: str = ""
    quantity: int = 1
    unit_amount: int = 0
    amount: int = 0

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProcessorInvoice(BaseModel):
    """Processor-side invoice; amounts are in minor units."""

    id: str
    subscription_ref: Optional[str] = None
    customer_ref: Optional[str] = None
    currency: str = "usd"
    amount_due: int = 0
    amount_paid: int = 0
    subtotal: int = 0
    tax: int = 0
    total: int = 0
    due_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    lines: List[ProcessorInvoiceLine] = Field(default_factory=list)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProcessorEvent(BaseModel):
    """A verified processor webhook event."""

    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SubscriptionOutcome(BaseModel):
    """Result of a subscription operation that may require a checkout redirect."""

    subscription: Optional[Subscription] = None
    checkout_url: Optional[str] = None
    message: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class UsageItem(BaseModel):
    used: int = 0
    limit: int
    unit: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class UsageReport(BaseModel):
    organization_id: str
    plan_id: str
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    usage: Dict[str, UsageItem] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)
