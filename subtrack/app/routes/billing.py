"""API routes exposing subscription management and processor webhooks."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from starlette.concurrency import run_in_threadpool

from ..billing import AuthContext, SubscriptionReconciliationEngine, ValidationError
from ..schemas.billing import (
    AddPaymentMethodRequest,
    CancelSubscriptionRequest,
    ChangePlanRequest,
    CreateSubscriptionRequest,
    OrganizationRequest,
    PaymentMethodView,
    SubscriptionView,
    UsageView,
    envelope,
)


@dataclass(frozen=True)
class GatewayIdentity:
    """Identity headers forwarded by the API gateway after token validation."""

    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    email: Optional[str] = None


def get_identity(
    x_user_id: Optional[str] = Header(None, alias="x-user-id"),
    x_org_id: Optional[str] = Header(None, alias="x-org-id"),
    x_user_email: Optional[str] = Header(None, alias="x-user-email"),
    organization_id: Optional[str] = Query(None, alias="organizationId"),
) -> GatewayIdentity:
    return GatewayIdentity(
        user_id=x_user_id or None,
        organization_id=x_org_id or organization_id or None,
        email=x_user_email or None,
    )


def get_engine(request: Request) -> SubscriptionReconciliationEngine:
    return request.app.state.billing.engine


def _context(identity: GatewayIdentity, body_organization_id: Optional[str] = None) -> AuthContext:
    organization_id = identity.organization_id or body_organization_id
    if not organization_id:
        raise ValidationError("organizationId is required")
    return AuthContext(user_id=identity.user_id, organization_id=organization_id, email=identity.email)


def _origin(request: Optional[Request]) -> Optional[str]:
    if request is None:
        return None
    return request.headers.get("origin")


def _correlation_id(request: Optional[Request]) -> Optional[str]:
    if request is None:
        return None
    return request.headers.get("x-correlation-id") or request.headers.get("x-request-id")


router = APIRouter(prefix="/billing", tags=["billing"])


@router.get("/subscriptions")
def get_subscription(
    *,
    identity: GatewayIdentity = Depends(get_identity),
    engine: SubscriptionReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    subscription, plan = engine.get_subscription(_context(identity))
    return envelope(SubscriptionView.from_subscription(subscription, plan))


@router.post("/subscriptions", status_code=status.HTTP_201_CREATED)
def create_subscription(
    payload: CreateSubscriptionRequest,
    request: Request,
    *,
    identity: GatewayIdentity = Depends(get_identity),
    engine: SubscriptionReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    ctx = _context(identity, payload.organization_id)
    outcome = engine.create(
        ctx,
        payload.plan_id,
        payload.billing_cycle,
        return_origin=_origin(request),
        correlation_id=_correlation_id(request),
    )
    subscription = outcome.subscription
    data = (
        SubscriptionView.from_subscription(subscription, engine.catalog.get(subscription.plan_id))
        if subscription
        else None
    )
    return envelope(data, checkoutUrl=outcome.checkout_url, message=outcome.message)


@router.post("/subscriptions/sync")
def sync_subscription(
    payload: Optional[OrganizationRequest] = None,
    *,
    identity: GatewayIdentity = Depends(get_identity),
    engine: SubscriptionReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    ctx = _context(identity, payload.organization_id if payload else None)
    subscription = engine.sync(ctx)
    return envelope(
        SubscriptionView.from_subscription(subscription, engine.catalog.get(subscription.plan_id)),
        message="Subscription synced",
    )


@router.post("/subscriptions/change")
def change_plan(
    payload: ChangePlanRequest,
    request: Request,
    *,
    identity: GatewayIdentity = Depends(get_identity),
    engine: SubscriptionReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    ctx = _context(identity, payload.organization_id)
    outcome = engine.change_plan(
        ctx,
        payload.new_plan_id,
        return_origin=_origin(request),
        correlation_id=_correlation_id(request),
    )
    subscription = outcome.subscription
    data = (
        SubscriptionView.from_subscription(subscription, engine.catalog.get(subscription.plan_id))
        if subscription
        else None
    )
    return envelope(data, checkoutUrl=outcome.checkout_url, message=outcome.message)


@router.post("/subscriptions/cancel")
def cancel_subscription(
    request: Request,
    payload: Optional[CancelSubscriptionRequest] = None,
    *,
    identity: GatewayIdentity = Depends(get_identity),
    engine: SubscriptionReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    ctx = _context(identity, payload.organization_id if payload else None)
    subscription = engine.cancel(
        ctx,
        payload.reason if payload else None,
        correlation_id=_correlation_id(request),
    )
    return envelope(
        SubscriptionView.from_subscription(subscription, engine.catalog.get(subscription.plan_id)),
        message="Subscription will be canceled at period end",
    )


@router.get("/subscriptions/usage")
def get_usage(
    *,
    identity: GatewayIdentity = Depends(get_identity),
    engine: SubscriptionReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    report = engine.get_usage(_context(identity))
    return envelope(UsageView.from_report(report))


@router.get("/payment-methods")
def list_payment_methods(
    *,
    identity: GatewayIdentity = Depends(get_identity),
    engine: SubscriptionReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    methods = engine.list_payment_methods(_context(identity))
    return envelope([PaymentMethodView.from_method(method) for method in methods])


@router.post("/payment-methods", status_code=status.HTTP_201_CREATED)
def add_payment_method(
    payload: AddPaymentMethodRequest,
    *,
    identity: GatewayIdentity = Depends(get_identity),
    engine: SubscriptionReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    ctx = _context(identity, payload.organization_id)
    method = engine.add_payment_method(ctx, payload.payment_method_ref)
    return envelope(PaymentMethodView.from_method(method))


@router.delete("/payment-methods/{method_id}")
def remove_payment_method(
    method_id: str,
    *,
    identity: GatewayIdentity = Depends(get_identity),
    engine: SubscriptionReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    engine.remove_payment_method(_context(identity), method_id)
    return envelope(message="Payment method removed")


@router.post("/webhooks/processor")
async def receive_processor_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    engine: SubscriptionReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    raw_body = await request.body()
    await run_in_threadpool(engine.handle_processor_webhook, raw_body, stripe_signature)
    return {"received": True}
