"""Round trips against a real PostgreSQL, enabled by ``BILLING_TEST_DSN``."""
from __future__ import annotations

import os
from uuid import uuid4

import psycopg2
import pytest

from subtrack.app.billing import BillingCycle, SubscriptionStatus
from subtrack.app.billing.catalog import DEFAULT_PLANS
from subtrack.app.billing.repository import PostgresSubscriptionStore

DSN = os.environ.get("BILLING_TEST_DSN")

pytestmark = pytest.mark.skipif(not DSN, reason="BILLING_TEST_DSN is not set")


@pytest.fixture
def store():
    store = PostgresSubscriptionStore(connection_factory=lambda: psycopg2.connect(DSN))
    store.ensure_schema()
    return store


def test_partial_updates_keep_required_columns(store):
    organization_id = f"org-{uuid4().hex}"
    created = store.upsert(
        organization_id,
        plan_id="plan_pro",
        status=SubscriptionStatus.ACTIVE,
        billing_cycle=BillingCycle.MONTHLY,
    )

    canceled = store.upsert(organization_id, cancel_at_period_end=True)
    linked = store.upsert(organization_id, external_customer_ref="cus_live")

    assert canceled.id == created.id
    assert canceled.plan_id == "plan_pro"
    assert canceled.cancel_at_period_end is True
    assert linked.status == SubscriptionStatus.ACTIVE
    assert linked.external_customer_ref == "cus_live"


def test_partial_update_of_unknown_organization_raises(store):
    with pytest.raises(ValueError):
        store.upsert(f"org-{uuid4().hex}", cancel_at_period_end=True)


def test_seeded_plans_keep_persisted_changes(store):
    store.seed_plans(DEFAULT_PLANS)
    pro = next(plan for plan in store.list_plans() if plan.id == "plan_pro")
    refs = pro.price_references.model_copy(update={"monthly": f"price_{uuid4().hex[:8]}"})
    store.save_plan(pro.model_copy(update={"price_references": refs}))

    store.seed_plans(DEFAULT_PLANS)

    reloaded = next(plan for plan in store.list_plans() if plan.id == "plan_pro")
    assert reloaded.price_references.monthly == refs.monthly
    assert reloaded.limits == pro.limits
