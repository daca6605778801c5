"""Seeded plan catalog and lookup helpers."""
from __future__ import annotations

import logging
from decimal import Decimal
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from .models import (
    BillingCycle,
    Plan,
    PlanFeature,
    PlanLimits,
    PlanPricing,
    PriceReferences,
)

logger = logging.getLogger(__name__)

UNLIMITED = -1

FREE_PLAN_SLUG = "free"


DEFAULT_PLANS: tuple = (
    Plan(
        id="plan_free",
        slug=FREE_PLAN_SLUG,
        name="Free",
        description="Perfect for getting started",
        pricing=PlanPricing(monthly=Decimal("0"), yearly=Decimal("0")),
        features=[
            PlanFeature(name="Up to 3 users", limit=3),
            PlanFeature(name="1 project", limit=1),
            PlanFeature(name="100 MB storage"),
            PlanFeature(name="Email support"),
            PlanFeature(name="API access", included=False),
        ],
        limits=PlanLimits(users=3, projects=1, storage=100, api_calls=1000),
        sort_order=0,
    ),
    Plan(
        id="plan_pro",
        slug="pro",
        name="Pro",
        description="For growing teams",
        pricing=PlanPricing(monthly=Decimal("29"), yearly=Decimal("290")),
        features=[
            PlanFeature(name="Up to 10 users", limit=10),
            PlanFeature(name="Unlimited projects"),
            PlanFeature(name="10 GB storage"),
            PlanFeature(name="Priority support"),
            PlanFeature(name="API access"),
            PlanFeature(name="Advanced analytics"),
        ],
        limits=PlanLimits(users=10, projects=UNLIMITED, storage=10240, api_calls=50000),
        is_popular=True,
        sort_order=1,
    ),
    Plan(
        id="plan_enterprise",
        slug="enterprise",
        name="Enterprise",
        description="For large organizations",
        pricing=PlanPricing(monthly=Decimal("99"), yearly=Decimal("990")),
        features=[
            PlanFeature(name="Unlimited users"),
            PlanFeature(name="Unlimited projects"),
            PlanFeature(name="100 GB storage"),
            PlanFeature(name="Dedicated support"),
            PlanFeature(name="API access"),
            PlanFeature(name="Advanced analytics"),
            PlanFeature(name="SSO"),
            PlanFeature(name="Audit logs"),
        ],
        limits=PlanLimits(users=UNLIMITED, projects=UNLIMITED, storage=102400, api_calls=UNLIMITED),
        sort_order=2,
    ),
)


class PlanStore(Protocol):
    """Persistence for plan records."""

    def list_plans(self) -> List[Plan]:
        ...

    def seed_plans(self, plans: Iterable[Plan]) -> int:
        """Insert plans that are not stored yet and return how many were added."""

    def save_plan(self, plan: Plan) -> Plan:
        ...


def _apply_price_references(
    plans: Iterable[Plan], references: Mapping[str, Mapping[str, str]]
) -> List[Plan]:
    resolved: List[Plan] = []
    for plan in plans:
        refs = references.get(plan.slug)
        if refs:
            plan = plan.model_copy(
                update={
                    "price_references": PriceReferences(
                        monthly=refs.get("monthly") or plan.price_references.monthly,
                        yearly=refs.get("yearly") or plan.price_references.yearly,
                    )
                }
            )
        resolved.append(plan)
    return resolved


class PlanCatalog:
    """Read-mostly registry of plans keyed by id.

    Plans are never removed. The only mutations are processor price
    reference backfills and deactivation, both guarded by a lock and written
    through to ``store`` when one is attached.
    """

    def __init__(self, plans: Iterable[Plan] = DEFAULT_PLANS, *, store: Optional[PlanStore] = None) -> None:
        self._plans: Dict[str, Plan] = {}
        self._lock = Lock()
        self._store = store
        for plan in plans:
            if plan.id in self._plans:
                raise ValueError(f"Duplicate plan id {plan.id!r}")
            if any(existing.slug == plan.slug for existing in self._plans.values()):
                raise ValueError(f"Duplicate plan slug {plan.slug!r}")
            self._plans[plan.id] = plan

    @classmethod
    def with_price_references(
        cls,
        references: Mapping[str, Mapping[str, str]],
        plans: Iterable[Plan] = DEFAULT_PLANS,
    ) -> "PlanCatalog":
        """Build a catalog whose plans carry processor price ids keyed by slug."""

        return cls(_apply_price_references(plans, references))

    @classmethod
    def from_store(
        cls,
        store: PlanStore,
        *,
        seed: Iterable[Plan] = DEFAULT_PLANS,
        price_references: Optional[Mapping[str, Mapping[str, str]]] = None,
    ) -> "PlanCatalog":
        """Seed missing plans into ``store`` and load the catalog from it.

        ``price_references`` override stored ids in memory. They are written
        to the store only when a later backfill or deactivation saves the plan.
        """

        inserted = store.seed_plans(seed)
        if inserted:
            logger.info("Seeded billing plans", extra={"count": inserted})
        plans = _apply_price_references(store.list_plans(), price_references or {})
        return cls(plans, store=store)

    def get(self, plan_id: str) -> Optional[Plan]:
        return self._plans.get(plan_id)

    def get_by_slug(self, slug: str) -> Optional[Plan]:
        for plan in self._plans.values():
            if plan.slug == slug:
                return plan
        return None

    def list_active(self) -> List[Plan]:
        return sorted(
            (plan for plan in self._plans.values() if plan.is_active),
            key=lambda plan: plan.sort_order,
        )

    def find_by_price(self, amount: Decimal) -> Optional[Plan]:
        """Match a processor unit amount against monthly prices, then yearly prices."""

        ordered = sorted(self._plans.values(), key=lambda plan: plan.sort_order)
        for plan in ordered:
            if plan.pricing.monthly == amount:
                return plan
        for plan in ordered:
            if plan.pricing.yearly == amount:
                return plan
        return None

    def _replace(self, plan_id: str, change: Callable[[Plan], Dict[str, Any]]) -> Plan:
        with self._lock:
            plan = self._plans.get(plan_id)
            if plan is None:
                raise KeyError(plan_id)
            updated = plan.model_copy(update=change(plan))
            if self._store is not None:
                updated = self._store.save_plan(updated)
            self._plans[plan_id] = updated
        return updated

    def backfill_price_reference(self, plan_id: str, cycle: BillingCycle, price_ref: str) -> Plan:
        field = "yearly" if cycle == BillingCycle.YEARLY else "monthly"
        updated = self._replace(
            plan_id,
            lambda plan: {"price_references": plan.price_references.model_copy(update={field: price_ref})},
        )
        logger.info(
            "Backfilled plan price reference",
            extra={"plan_id": plan_id, "billing_cycle": cycle.value},
        )
        return updated

    def deactivate(self, plan_id: str) -> Plan:
        updated = self._replace(plan_id, lambda plan: {"is_active": False})
        logger.info("Plan deactivated", extra={"plan_id": plan_id})
        return updated


__all__ = ["DEFAULT_PLANS", "FREE_PLAN_SLUG", "PlanCatalog", "PlanStore", "UNLIMITED"]
