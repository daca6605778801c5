"""Billing domain package: plans, subscriptions and the reconciliation engine."""

from .catalog import DEFAULT_PLANS, FREE_PLAN_SLUG, PlanCatalog
from .errors import (
    BillingError,
    ConflictError,
    NotFoundError,
    ProcessorError,
    SignatureError,
    ValidationError,
)
from .locks import OrganizationLocks
from .models import (
    AuthContext,
    BillingCycle,
    BillingEventType,
    Invoice,
    InvoiceStatus,
    PaymentMethod,
    Plan,
    ProcessorEvent,
    ProcessorSubscription,
    Subscription,
    SubscriptionOutcome,
    SubscriptionStatus,
    UsageReport,
)
from .service import (
    PaymentProcessorGateway,
    SubscriptionReconciliationEngine,
    SubscriptionStore,
    UsageMeter,
)

__all__ = [
    "AuthContext",
    "BillingCycle",
    "BillingError",
    "BillingEventType",
    "ConflictError",
    "DEFAULT_PLANS",
    "FREE_PLAN_SLUG",
    "Invoice",
    "InvoiceStatus",
    "NotFoundError",
    "OrganizationLocks",
    "PaymentMethod",
    "PaymentProcessorGateway",
    "Plan",
    "PlanCatalog",
    "ProcessorError",
    "ProcessorEvent",
    "ProcessorSubscription",
    "SignatureError",
    "Subscription",
    "SubscriptionOutcome",
    "SubscriptionReconciliationEngine",
    "SubscriptionStatus",
    "SubscriptionStore",
    "UsageMeter",
    "UsageReport",
    "ValidationError",
]
