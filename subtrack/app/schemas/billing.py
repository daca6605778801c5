"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import (
    BillingCycle,
    PaymentMethod,
    Plan,
    Subscription,
    SubscriptionStatus,
    UsageReport,
)


class CreateSubscriptionRequest(BaseModel):
    plan_id: str = Field(alias="planId", min_length=1)
    billing_cycle: BillingCycle = Field(alias="billingCycle", default=BillingCycle.MONTHLY)
    organization_id: Optional[str] = Field(alias="organizationId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class ChangePlanRequest(BaseModel):
    new_plan_id: str = Field(alias="newPlanId", min_length=1)
    organization_id: Optional[str] = Field(alias="organizationId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class CancelSubscriptionRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
    organization_id: Optional[str] = Field(alias="organizationId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class OrganizationRequest(BaseModel):
    organization_id: Optional[str] = Field(alias="organizationId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class AddPaymentMethodRequest(BaseModel):
    payment_method_ref: str = Field(alias="paymentMethodRef", min_length=1)
    organization_id: Optional[str] = Field(alias="organizationId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class PlanSummary(BaseModel):
    id: str
    slug: str
    name: str
    monthly_price: Decimal = Field(alias="monthlyPrice")
    yearly_price: Decimal = Field(alias="yearlyPrice")
    currency: str
    limits: Dict[str, int]

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_plan(cls, plan: Plan) -> "PlanSummary":
        return cls(
            id=plan.id,
            slug=plan.slug,
            name=plan.name,
            monthly_price=plan.pricing.monthly,
            yearly_price=plan.pricing.yearly,
            currency=plan.pricing.currency,
            limits=plan.limits.model_dump(by_alias=True),
        )


class SubscriptionView(BaseModel):
    id: str
    organization_id: str = Field(alias="organizationId")
    plan_id: str = Field(alias="planId")
    plan: Optional[PlanSummary] = None
    status: SubscriptionStatus
    billing_cycle: BillingCycle = Field(alias="billingCycle")
    current_period_start: Optional[datetime] = Field(alias="currentPeriodStart", default=None)
    current_period_end: Optional[datetime] = Field(alias="currentPeriodEnd", default=None)
    cancel_at_period_end: bool = Field(alias="cancelAtPeriodEnd", default=False)
    canceled_at: Optional[datetime] = Field(alias="canceledAt", default=None)
    cancellation_reason: Optional[str] = Field(alias="cancellationReason", default=None)
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_subscription(cls, subscription: Subscription, plan: Optional[Plan] = None) -> "SubscriptionView":
        return cls(
            id=subscription.id,
            organization_id=subscription.organization_id,
            plan_id=subscription.plan_id,
            plan=PlanSummary.from_plan(plan) if plan else None,
            status=subscription.status,
            billing_cycle=subscription.billing_cycle,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            canceled_at=subscription.canceled_at,
            cancellation_reason=subscription.cancellation_reason,
            created_at=subscription.created_at,
            updated_at=subscription.updated_at,
        )


class UsageView(BaseModel):
    period: Dict[str, Optional[datetime]]
    usage: Dict[str, Dict[str, Any]]

    @classmethod
    def from_report(cls, report: UsageReport) -> "UsageView":
        return cls(
            period={"start": report.period_start, "end": report.period_end},
            usage={
                name: item.model_dump(exclude_none=True)
                for name, item in report.usage.items()
            },
        )


class PaymentMethodView(BaseModel):
    id: str
    type: str
    card: Optional[Dict[str, Any]] = None
    is_default: bool = Field(alias="isDefault")
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_method(cls, method: PaymentMethod) -> "PaymentMethodView":
        return cls(
            id=method.id,
            type=method.type.value,
            card=method.card.model_dump(by_alias=True) if method.card else None,
            is_default=method.is_default,
            created_at=method.created_at,
        )


def envelope(data: Any = None, **extra: Any) -> Dict[str, Any]:
    """Wrap ``data`` in the ``{"success": true, "data": ...}`` response shape."""

    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True, mode="json")
    elif isinstance(data, list):
        data = [
            item.model_dump(by_alias=True, mode="json") if isinstance(item, BaseModel) else item
            for item in data
        ]
    body: Dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    body.update({key: value for key, value in extra.items() if value is not None})
    return body


def error_envelope(code: str, message: str) -> Dict[str, Any]:
    return {"success": False, "error": {"code": code, "message": message}}


__all__: List[str] = [
    "AddPaymentMethodRequest",
    "CancelSubscriptionRequest",
    "ChangePlanRequest",
    "CreateSubscriptionRequest",
    "OrganizationRequest",
    "PaymentMethodView",
    "PlanSummary",
    "SubscriptionView",
    "UsageView",
    "envelope",
    "error_envelope",
]
