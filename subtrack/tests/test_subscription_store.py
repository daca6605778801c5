"""Tests for the in-memory subscription store and invoice numbering."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from subtrack.app.billing import Invoice, SubscriptionStatus
from subtrack.app.billing.models import PaymentMethod
from subtrack.app.billing.repository import (
    InMemorySubscriptionStore,
    SCHEMA_STATEMENTS,
    format_invoice_number,
)


@pytest.fixture
def store():
    return InMemorySubscriptionStore()


def test_upsert_inserts_then_updates_single_record(store):
    created = store.upsert("org1", plan_id="plan_free", status=SubscriptionStatus.ACTIVE)
    updated = store.upsert("org1", status=SubscriptionStatus.UNPAID, external_customer_ref="cus_1")

    assert created.id == updated.id
    assert updated.plan_id == "plan_free"
    assert updated.status == SubscriptionStatus.UNPAID
    assert updated.created_at == created.created_at
    assert len(store.subscriptions) == 1


def test_upsert_requires_plan_and_status_on_insert(store):
    with pytest.raises(ValueError):
        store.upsert("org1", plan_id="plan_free")


def test_upsert_rejects_unknown_fields(store):
    with pytest.raises(ValueError):
        store.upsert("org1", plan_id="plan_free", status=SubscriptionStatus.ACTIVE, seats=3)


def test_find_by_external_subscription_ref(store):
    store.upsert("org1", plan_id="plan_pro", status=SubscriptionStatus.ACTIVE, external_subscription_ref="sub_1")

    assert store.find_by_external_subscription_ref("sub_1").organization_id == "org1"
    assert store.find_by_external_subscription_ref("sub_2") is None


def test_save_round_trips_mutable_fields(store):
    subscription = store.upsert("org1", plan_id="plan_pro", status=SubscriptionStatus.ACTIVE)

    saved = store.save(subscription.model_copy(update={"cancel_at_period_end": True}))

    assert saved.cancel_at_period_end is True
    assert saved.id == subscription.id


def test_invoice_numbers_are_sequential_per_year(store):
    assert store.next_invoice_number(2024) == "INV-2024-0001"
    for sequence in (1, 2):
        store.save_invoice(
            Invoice(
                id=f"inv_{sequence}",
                subscription_id="sub_1",
                organization_id="org1",
                invoice_number=format_invoice_number(2024, sequence),
            )
        )

    assert store.next_invoice_number(2024) == "INV-2024-0003"
    assert store.next_invoice_number(2025) == "INV-2025-0001"


def test_list_invoices_newest_first_with_limit(store):
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for index in range(3):
        store.save_invoice(
            Invoice(
                id=f"inv_{index}",
                subscription_id="sub_1",
                organization_id="org1",
                invoice_number=format_invoice_number(2024, index + 1),
                created_at=base + timedelta(days=index),
            )
        )

    assert [invoice.id for invoice in store.list_invoices("org1", limit=2)] == ["inv_2", "inv_1"]
    assert store.list_invoices("org2") == []


def test_payment_method_reuses_record_for_same_processor_reference(store):
    first = store.save_payment_method(
        PaymentMethod(id="pm_a", organization_id="org1", external_payment_method_ref="pm_ext")
    )
    second = store.save_payment_method(
        PaymentMethod(id="pm_b", organization_id="org1", external_payment_method_ref="pm_ext", is_default=True)
    )

    assert second.id == first.id
    assert len(store.payment_methods) == 1
    assert store.delete_payment_method("org2", "pm_a") is False
    assert store.delete_payment_method("org1", "pm_a") is True


def test_processor_event_ledger(store):
    assert store.processor_event_seen("evt_1") is False
    assert store.record_processor_event("evt_1", "invoice.paid") is True
    assert store.record_processor_event("evt_1", "invoice.paid") is False
    assert store.processor_event_seen("evt_1") is True


def test_schema_declares_unique_keys():
    ddl = "\n".join(SCHEMA_STATEMENTS)

    assert "organization_id TEXT NOT NULL UNIQUE" in ddl
    assert "billing_processor_events" in ddl
