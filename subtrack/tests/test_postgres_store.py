"""Tests for the psycopg2-backed subscription store using fake connections."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import psycopg2.extras
import pytest
from psycopg2 import sql

from subtrack.app.billing import DEFAULT_PLANS, SubscriptionStatus
from subtrack.app.billing.repository import PostgresSubscriptionStore


class FakeCursor:
    def __init__(self, *, fetchone_result=None, fetchall_result=None, rowcount=0, error=None):
        self.fetchone_result = fetchone_result
        self.fetchall_result = list(fetchall_result or [])
        self.rowcount = rowcount
        self.error = error
        self.execute_calls = []
        self.closed = False

    def execute(self, query, params=None):
        if isinstance(query, str):
            query = " ".join(query.split())
        self.execute_calls.append((query, params))
        if self.error is not None:
            raise self.error

    def fetchone(self):
        return self.fetchone_result

    def fetchall(self):
        return list(self.fetchall_result)

    def close(self):
        self.closed = True


class FakeConnection:
    def __init__(self, *cursors):
        self._cursors = list(cursors)
        self.cursor_calls = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def cursor(self, *args, **kwargs):
        self.cursor_calls.append((args, kwargs))
        if not self._cursors:
            raise AssertionError("No cursor configured")
        return self._cursors.pop(0)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = True


NOW = datetime(2024, 3, 15, 12, tzinfo=timezone.utc)


def _render(query) -> str:
    """Flatten a ``psycopg2.sql`` composition without a live connection."""

    if isinstance(query, sql.Composed):
        text = "".join(_render(part) for part in query.seq)
    elif isinstance(query, sql.Identifier):
        text = ".".join(f'"{name}"' for name in query.strings)
    elif isinstance(query, sql.Placeholder):
        text = "%s"
    elif isinstance(query, sql.SQL):
        text = query.string
    else:
        text = str(query)
    return " ".join(text.split())


def _subscription_row(**overrides):
    row = {
        "id": "sub_local",
        "organization_id": "org1",
        "plan_id": "plan_pro",
        "status": "active",
        "billing_cycle": "monthly",
        "current_period_start": NOW,
        "current_period_end": None,
        "cancel_at_period_end": False,
        "canceled_at": None,
        "cancellation_reason": None,
        "external_customer_ref": "cus_1",
        "external_subscription_ref": "sub_123",
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def test_find_by_organization_maps_row():
    cursor = FakeCursor(fetchone_result=_subscription_row())
    conn = FakeConnection(cursor)
    store = PostgresSubscriptionStore(conn=conn)

    subscription = store.find_by_organization("org1")

    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.external_subscription_ref == "sub_123"
    query, params = cursor.execute_calls[0]
    assert "WHERE organization_id = %s" in query
    assert params == ("org1",)
    assert conn.cursor_calls[0][1] == {"cursor_factory": psycopg2.extras.RealDictCursor}
    assert conn.commits == 0
    assert cursor.closed


def test_upsert_builds_conflict_statement_for_given_fields():
    cursor = FakeCursor(fetchone_result=_subscription_row(status="unpaid"))
    store = PostgresSubscriptionStore(conn=FakeConnection(cursor))

    subscription = store.upsert("org1", plan_id="plan_pro", status=SubscriptionStatus.UNPAID)

    query, params = cursor.execute_calls[0]
    assert isinstance(query, sql.Composed)
    assert params[0].startswith("sub_")
    assert params[1:] == ["org1", "plan_pro", "unpaid"]
    assert subscription.status == SubscriptionStatus.UNPAID


def test_partial_upsert_updates_existing_row_only():
    cursor = FakeCursor(fetchone_result=_subscription_row(cancel_at_period_end=True))
    store = PostgresSubscriptionStore(conn=FakeConnection(cursor))

    subscription = store.upsert("org1", cancel_at_period_end=True)

    query, params = cursor.execute_calls[0]
    rendered = _render(query)
    assert rendered.startswith("UPDATE billing_subscriptions")
    assert 'SET "cancel_at_period_end" = %s, updated_at = NOW()' in rendered
    assert "WHERE organization_id = %s" in rendered
    assert "INSERT" not in rendered
    assert params == [True, "org1"]
    assert subscription.cancel_at_period_end is True


def test_partial_upsert_without_existing_row_raises():
    store = PostgresSubscriptionStore(conn=FakeConnection(FakeCursor(fetchone_result=None)))

    with pytest.raises(ValueError):
        store.upsert("org-missing", external_customer_ref="cus_1")


def test_complete_upsert_uses_insert_on_conflict():
    cursor = FakeCursor(fetchone_result=_subscription_row())
    store = PostgresSubscriptionStore(conn=FakeConnection(cursor))

    store.upsert("org1", plan_id="plan_pro", status=SubscriptionStatus.ACTIVE, external_subscription_ref=None)

    rendered = _render(cursor.execute_calls[0][0])
    assert rendered.startswith("INSERT INTO billing_subscriptions")
    assert 'ON CONFLICT (organization_id) DO UPDATE SET "plan_id" = EXCLUDED."plan_id"' in rendered


def test_upsert_rejects_unknown_fields_before_touching_the_database():
    conn = FakeConnection()
    store = PostgresSubscriptionStore(conn=conn)

    with pytest.raises(ValueError):
        store.upsert("org1", seats=4)
    assert conn.cursor_calls == []


def test_next_invoice_number_counts_the_year_prefix():
    cursor = FakeCursor(fetchone_result={"total": 4})
    store = PostgresSubscriptionStore(conn=FakeConnection(cursor))

    assert store.next_invoice_number(2024) == "INV-2024-0005"
    assert cursor.execute_calls[0][1] == ("INV-2024-%",)


def test_record_processor_event_reports_duplicates():
    store = PostgresSubscriptionStore(conn=FakeConnection(FakeCursor(fetchone_result=None)))

    assert store.record_processor_event("evt_1", "invoice.paid") is False


def test_managed_connection_commits_and_closes():
    conn = FakeConnection(FakeCursor(rowcount=1))
    store = PostgresSubscriptionStore(connection_factory=lambda: conn)

    assert store.delete_payment_method("org1", "pm_1") is True
    assert conn.commits >= 1
    assert conn.rollbacks == 0
    assert conn.closed


def test_managed_connection_rolls_back_on_error():
    conn = FakeConnection(FakeCursor(error=RuntimeError("db down")))
    store = PostgresSubscriptionStore(connection_factory=lambda: conn)

    with pytest.raises(RuntimeError):
        store.clear_default_payment_method("org1")
    assert conn.commits == 0
    assert conn.rollbacks >= 1
    assert conn.closed


def test_store_without_connection_source_fails_fast():
    with pytest.raises(RuntimeError):
        PostgresSubscriptionStore().find_by_organization("org1")


def _plan_row(**overrides):
    row = {
        "id": "plan_pro",
        "slug": "pro",
        "name": "Pro",
        "description": "For growing teams",
        "monthly_price": Decimal("29.00"),
        "yearly_price": Decimal("290.00"),
        "currency": "usd",
        "monthly_price_ref": "price_pro_m",
        "yearly_price_ref": None,
        "features": [{"name": "Priority support", "included": True, "limit": None}],
        "limits": {"users": 10, "projects": 25, "storage": 10240, "apiCalls": 100000},
        "is_active": True,
        "is_popular": True,
        "sort_order": 1,
    }
    row.update(overrides)
    return row


def test_list_plans_maps_rows():
    cursor = FakeCursor(fetchall_result=[_plan_row(is_active=False)])
    store = PostgresSubscriptionStore(conn=FakeConnection(cursor))

    plans = store.list_plans()

    assert cursor.execute_calls[0][0] == "SELECT * FROM billing_plans ORDER BY sort_order, id"
    assert plans[0].pricing.monthly == Decimal("29.00")
    assert plans[0].price_references.monthly == "price_pro_m"
    assert plans[0].limits.api_calls == 100000
    assert plans[0].features[0].name == "Priority support"
    assert plans[0].is_active is False


def test_seed_plans_inserts_without_overwriting():
    cursor = FakeCursor(rowcount=1)
    store = PostgresSubscriptionStore(conn=FakeConnection(cursor))

    inserted = store.seed_plans(DEFAULT_PLANS)

    assert inserted == len(DEFAULT_PLANS)
    query, params = cursor.execute_calls[0]
    assert query.startswith("INSERT INTO billing_plans")
    assert query.endswith("ON CONFLICT (id) DO NOTHING")
    assert params["id"] == "plan_free"
    assert isinstance(params["limits"], psycopg2.extras.Json)
    assert params["limits"].adapted["apiCalls"] == DEFAULT_PLANS[0].limits.api_calls


def test_save_plan_updates_price_references_and_activity():
    cursor = FakeCursor(fetchone_result=_plan_row(yearly_price_ref="price_pro_y", is_active=False))
    store = PostgresSubscriptionStore(conn=FakeConnection(cursor))
    plan = DEFAULT_PLANS[1]

    saved = store.save_plan(plan)

    query, params = cursor.execute_calls[0]
    assert "ON CONFLICT (id) DO UPDATE SET" in query
    assert "yearly_price_ref = EXCLUDED.yearly_price_ref" in query
    assert "is_active = EXCLUDED.is_active" in query
    assert "slug = EXCLUDED" not in query
    assert params["yearly_price"] == plan.pricing.yearly
    assert saved.price_references.yearly == "price_pro_y"
    assert saved.is_active is False


def test_schema_creates_the_plan_table():
    cursor = FakeCursor()
    store = PostgresSubscriptionStore(conn=FakeConnection(cursor))

    store.ensure_schema()

    assert any("CREATE TABLE IF NOT EXISTS billing_plans" in query for query, _ in cursor.execute_calls)
