"""Persistence layer for subscriptions, invoices and payment methods."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set
from uuid import uuid4

import psycopg2
import psycopg2.extras
from psycopg2 import sql
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .models import (
    BillingCycle,
    CardDetails,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    PaymentMethod,
    PaymentMethodType,
    Plan,
    PlanFeature,
    PlanLimits,
    PlanPricing,
    PriceReferences,
    Subscription,
    SubscriptionStatus,
)

SUBSCRIPTION_FIELDS = frozenset(
    {
        "plan_id",
        "status",
        "billing_cycle",
        "current_period_start",
        "current_period_end",
        "cancel_at_period_end",
        "canceled_at",
        "cancellation_reason",
        "external_customer_ref",
        "external_subscription_ref",
    }
)

_REQUIRED_ON_INSERT = ("plan_id", "status")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _check_fields(fields: Mapping[str, Any]) -> None:
    unknown = set(fields) - SUBSCRIPTION_FIELDS
    if unknown:
        raise ValueError(f"Unknown subscription fields: {sorted(unknown)}")


def _db_value(value: Any) -> Any:
    if isinstance(value, (SubscriptionStatus, BillingCycle, InvoiceStatus, PaymentMethodType)):
        return value.value
    return value


def invoice_number_prefix(year: int) -> str:
    return f"INV-{year}-"


def format_invoice_number(year: int, sequence: int) -> str:
    return f"{invoice_number_prefix(year)}{sequence:04d}"


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        id=row["id"],
        organization_id=row["organization_id"],
        plan_id=row["plan_id"],
        status=SubscriptionStatus(row["status"]),
        billing_cycle=BillingCycle(row["billing_cycle"]),
        current_period_start=row.get("current_period_start"),
        current_period_end=row.get("current_period_end"),
        cancel_at_period_end=bool(row.get("cancel_at_period_end")),
        canceled_at=row.get("canceled_at"),
        cancellation_reason=row.get("cancellation_reason"),
        external_customer_ref=row.get("external_customer_ref"),
        external_subscription_ref=row.get("external_subscription_ref"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_invoice(row: dict) -> Invoice:
    return Invoice(
        id=row["id"],
        subscription_id=row["subscription_id"],
        organization_id=row["organization_id"],
        invoice_number=row["invoice_number"],
        line_items=[InvoiceLineItem.model_validate(item) for item in row.get("line_items") or []],
        subtotal=row["subtotal"],
        tax=row["tax"],
        total=row["total"],
        currency=row["currency"],
        status=InvoiceStatus(row["status"]),
        due_date=row.get("due_date"),
        paid_at=row.get("paid_at"),
        external_invoice_ref=row.get("external_invoice_ref"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_payment_method(row: dict) -> PaymentMethod:
    card = row.get("card")
    return PaymentMethod(
        id=row["id"],
        organization_id=row["organization_id"],
        type=PaymentMethodType(row["type"]),
        card=CardDetails.model_validate(card) if card else None,
        is_default=bool(row.get("is_default")),
        external_payment_method_ref=row["external_payment_method_ref"],
        created_at=row["created_at"],
    )


def _row_to_plan(row: dict) -> Plan:
    return Plan(
        id=row["id"],
        slug=row["slug"],
        name=row["name"],
        description=row.get("description") or "",
        pricing=PlanPricing(
            monthly=row["monthly_price"],
            yearly=row["yearly_price"],
            currency=row["currency"],
        ),
        price_references=PriceReferences(
            monthly=row.get("monthly_price_ref"),
            yearly=row.get("yearly_price_ref"),
        ),
        features=[PlanFeature.model_validate(item) for item in row.get("features") or []],
        limits=PlanLimits.model_validate(row["limits"]),
        is_active=bool(row["is_active"]),
        is_popular=bool(row.get("is_popular")),
        sort_order=int(row.get("sort_order") or 0),
    )


def _plan_params(plan: Plan) -> Dict[str, Any]:
    return {
        "id": plan.id,
        "slug": plan.slug,
        "name": plan.name,
        "description": plan.description,
        "monthly_price": plan.pricing.monthly,
        "yearly_price": plan.pricing.yearly,
        "currency": plan.pricing.currency,
        "monthly_price_ref": plan.price_references.monthly,
        "yearly_price_ref": plan.price_references.yearly,
        "features": psycopg2.extras.Json([feature.model_dump() for feature in plan.features]),
        "limits": psycopg2.extras.Json(plan.limits.model_dump(by_alias=True)),
        "is_active": plan.is_active,
        "is_popular": plan.is_popular,
        "sort_order": plan.sort_order,
    }


_PLAN_INSERT = """
    INSERT INTO billing_plans (
        id, slug, name, description, monthly_price, yearly_price, currency,
        monthly_price_ref, yearly_price_ref, features, limits, is_active, is_popular, sort_order
    )
    VALUES (%(id)s, %(slug)s, %(name)s, %(description)s, %(monthly_price)s, %(yearly_price)s,
            %(currency)s, %(monthly_price_ref)s, %(yearly_price_ref)s, %(features)s, %(limits)s,
            %(is_active)s, %(is_popular)s, %(sort_order)s)
"""


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS billing_plans (
        id TEXT PRIMARY KEY,
        slug TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        monthly_price NUMERIC(12, 2) NOT NULL,
        yearly_price NUMERIC(12, 2) NOT NULL,
        currency TEXT NOT NULL DEFAULT 'usd',
        monthly_price_ref TEXT,
        yearly_price_ref TEXT,
        features JSONB NOT NULL DEFAULT '[]'::jsonb,
        limits JSONB NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_popular BOOLEAN NOT NULL DEFAULT FALSE,
        sort_order INTEGER NOT NULL DEFAULT 0,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS billing_subscriptions (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL UNIQUE,
        plan_id TEXT NOT NULL,
        status TEXT NOT NULL,
        billing_cycle TEXT NOT NULL DEFAULT 'monthly',
        current_period_start TIMESTAMPTZ,
        current_period_end TIMESTAMPTZ,
        cancel_at_period_end BOOLEAN NOT NULL DEFAULT FALSE,
        canceled_at TIMESTAMPTZ,
        cancellation_reason TEXT,
        external_customer_ref TEXT,
        external_subscription_ref TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_billing_subscriptions_external_ref
        ON billing_subscriptions (external_subscription_ref)
    """,
    """
    CREATE TABLE IF NOT EXISTS billing_invoices (
        id TEXT PRIMARY KEY,
        subscription_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        invoice_number TEXT NOT NULL UNIQUE,
        line_items JSONB NOT NULL DEFAULT '[]'::jsonb,
        subtotal NUMERIC(12, 2) NOT NULL DEFAULT 0,
        tax NUMERIC(12, 2) NOT NULL DEFAULT 0,
        total NUMERIC(12, 2) NOT NULL DEFAULT 0,
        currency TEXT NOT NULL,
        status TEXT NOT NULL,
        due_date TIMESTAMPTZ,
        paid_at TIMESTAMPTZ,
        external_invoice_ref TEXT UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS billing_payment_methods (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        type TEXT NOT NULL,
        card JSONB,
        is_default BOOLEAN NOT NULL DEFAULT FALSE,
        external_payment_method_ref TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS billing_processor_events (
        event_id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        processed_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
)


@contextmanager
def managed_connection(
    connection_factory: Optional[Callable[[], PgConnection]],
    conn: Optional[PgConnection] = None,
):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    if connection_factory is None:
        raise RuntimeError("PostgresSubscriptionStore requires a connection or connection factory")

    connection = connection_factory()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


class PostgresSubscriptionStore:
    """Concrete store persisting billing records in PostgreSQL."""

    def __init__(
        self,
        *,
        connection_factory: Optional[Callable[[], PgConnection]] = None,
        conn: Optional[PgConnection] = None,
    ) -> None:
        self._connection_factory = connection_factory
        self._conn = conn

    @classmethod
    def from_config(cls, database) -> "PostgresSubscriptionStore":
        connect_kwargs = database.as_connect_kwargs()
        return cls(connection_factory=lambda: psycopg2.connect(**connect_kwargs))

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._connection_factory, self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def ensure_schema(self) -> None:
        with self._cursor() as cursor:
            for statement in SCHEMA_STATEMENTS:
                cursor.execute(statement)

    # Plans -------------------------------------------------------------

    def list_plans(self) -> List[Plan]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM billing_plans ORDER BY sort_order, id")
            return [_row_to_plan(row) for row in cursor.fetchall()]

    def seed_plans(self, plans: Iterable[Plan]) -> int:
        """Insert plans that are not stored yet; stored rows are left untouched."""

        inserted = 0
        with self._cursor() as cursor:
            for plan in plans:
                cursor.execute(_PLAN_INSERT + " ON CONFLICT (id) DO NOTHING", _plan_params(plan))
                inserted += max(cursor.rowcount, 0)
        return inserted

    def save_plan(self, plan: Plan) -> Plan:
        with self._cursor() as cursor:
            cursor.execute(
                _PLAN_INSERT
                + """
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    monthly_price = EXCLUDED.monthly_price,
                    yearly_price = EXCLUDED.yearly_price,
                    currency = EXCLUDED.currency,
                    monthly_price_ref = EXCLUDED.monthly_price_ref,
                    yearly_price_ref = EXCLUDED.yearly_price_ref,
                    features = EXCLUDED.features,
                    limits = EXCLUDED.limits,
                    is_active = EXCLUDED.is_active,
                    is_popular = EXCLUDED.is_popular,
                    sort_order = EXCLUDED.sort_order,
                    updated_at = NOW()
                RETURNING *
                """,
                _plan_params(plan),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist plan")
            return _row_to_plan(row)

    # Subscriptions -----------------------------------------------------

    def find_by_organization(self, organization_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE organization_id = %s
                LIMIT 1
                """,
                (organization_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def find_by_external_subscription_ref(self, external_ref: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE external_subscription_ref = %s
                LIMIT 1
                """,
                (external_ref,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def upsert(self, organization_id: str, **fields: Any) -> Subscription:
        """Insert or update the organization's record, keyed on ``organization_id``.

        Calls without ``plan_id`` and ``status`` only update an existing row;
        the proposed row of an ``INSERT`` would violate their NOT NULL
        constraints before ``ON CONFLICT`` is considered.
        """

        _check_fields(fields)
        missing = [name for name in _REQUIRED_ON_INSERT if fields.get(name) is None]
        if missing:
            return self._update(organization_id, fields, missing)
        return self._insert_or_update(organization_id, fields)

    def _update(self, organization_id: str, fields: Mapping[str, Any], missing: List[str]) -> Subscription:
        assignments = [
            sql.SQL("{column} = {value}").format(column=sql.Identifier(name), value=sql.Placeholder())
            for name in fields
        ]
        assignments.append(sql.SQL("updated_at = NOW()"))
        statement = sql.SQL(
            """
            UPDATE billing_subscriptions
            SET {assignments}
            WHERE organization_id = {organization_id}
            RETURNING *
            """
        ).format(
            assignments=sql.SQL(", ").join(assignments),
            organization_id=sql.Placeholder(),
        )
        values = [*(_db_value(v) for v in fields.values()), organization_id]
        with self._cursor() as cursor:
            cursor.execute(statement, values)
            row = cursor.fetchone()
        if not row:
            raise ValueError(f"Missing subscription fields on insert: {missing}")
        return _row_to_subscription(row)

    def _insert_or_update(self, organization_id: str, fields: Mapping[str, Any]) -> Subscription:
        columns = ["id", "organization_id", *fields.keys()]
        values = [f"sub_{uuid4().hex}", organization_id, *(_db_value(v) for v in fields.values())]
        updates = [
            sql.SQL("{column} = EXCLUDED.{column}").format(column=sql.Identifier(name))
            for name in fields
        ]
        updates.append(sql.SQL("updated_at = NOW()"))
        statement = sql.SQL(
            """
            INSERT INTO billing_subscriptions ({columns})
            VALUES ({placeholders})
            ON CONFLICT (organization_id) DO UPDATE SET {updates}
            RETURNING *
            """
        ).format(
            columns=sql.SQL(", ").join(sql.Identifier(name) for name in columns),
            placeholders=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
            updates=sql.SQL(", ").join(updates),
        )
        with self._cursor() as cursor:
            cursor.execute(statement, values)
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist subscription")
            return _row_to_subscription(row)

    def save(self, subscription: Subscription) -> Subscription:
        fields = subscription.model_dump(include=set(SUBSCRIPTION_FIELDS))
        return self.upsert(subscription.organization_id, **fields)

    # Invoices ----------------------------------------------------------

    def find_invoice_by_external_ref(self, external_ref: str) -> Optional[Invoice]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM billing_invoices WHERE external_invoice_ref = %s LIMIT 1",
                (external_ref,),
            )
            row = cursor.fetchone()
            return _row_to_invoice(row) if row else None

    def next_invoice_number(self, year: int) -> str:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT COUNT(*) AS total FROM billing_invoices WHERE invoice_number LIKE %s",
                (invoice_number_prefix(year) + "%",),
            )
            row = cursor.fetchone() or {"total": 0}
            return format_invoice_number(year, int(row["total"]) + 1)

    def save_invoice(self, invoice: Invoice) -> Invoice:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_invoices (
                    id,
                    subscription_id,
                    organization_id,
                    invoice_number,
                    line_items,
                    subtotal,
                    tax,
                    total,
                    currency,
                    status,
                    due_date,
                    paid_at,
                    external_invoice_ref
                )
                VALUES (%(id)s, %(subscription_id)s, %(organization_id)s, %(invoice_number)s,
                        %(line_items)s, %(subtotal)s, %(tax)s, %(total)s, %(currency)s,
                        %(status)s, %(due_date)s, %(paid_at)s, %(external_invoice_ref)s)
                ON CONFLICT (id) DO UPDATE SET
                    line_items = EXCLUDED.line_items,
                    subtotal = EXCLUDED.subtotal,
                    tax = EXCLUDED.tax,
                    total = EXCLUDED.total,
                    currency = EXCLUDED.currency,
                    status = EXCLUDED.status,
                    due_date = EXCLUDED.due_date,
                    paid_at = EXCLUDED.paid_at,
                    updated_at = NOW()
                RETURNING *
                """,
                {
                    "id": invoice.id,
                    "subscription_id": invoice.subscription_id,
                    "organization_id": invoice.organization_id,
                    "invoice_number": invoice.invoice_number,
                    "line_items": psycopg2.extras.Json(
                        [item.model_dump(mode="json") for item in invoice.line_items]
                    ),
                    "subtotal": invoice.subtotal,
                    "tax": invoice.tax,
                    "total": invoice.total,
                    "currency": invoice.currency,
                    "status": invoice.status.value,
                    "due_date": invoice.due_date,
                    "paid_at": invoice.paid_at,
                    "external_invoice_ref": invoice.external_invoice_ref,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist invoice")
            return _row_to_invoice(row)

    def list_invoices(self, organization_id: str, *, limit: int = 20) -> Sequence[Invoice]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_invoices
                WHERE organization_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (organization_id, limit),
            )
            return [_row_to_invoice(row) for row in cursor.fetchall()]

    # Payment methods ---------------------------------------------------

    def list_payment_methods(self, organization_id: str) -> Sequence[PaymentMethod]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_payment_methods
                WHERE organization_id = %s
                ORDER BY is_default DESC, created_at DESC
                """,
                (organization_id,),
            )
            return [_row_to_payment_method(row) for row in cursor.fetchall()]

    def find_payment_method(self, organization_id: str, method_id: str) -> Optional[PaymentMethod]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM billing_payment_methods WHERE organization_id = %s AND id = %s",
                (organization_id, method_id),
            )
            row = cursor.fetchone()
            return _row_to_payment_method(row) if row else None

    def clear_default_payment_method(self, organization_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "UPDATE billing_payment_methods SET is_default = FALSE WHERE organization_id = %s",
                (organization_id,),
            )

    def save_payment_method(self, method: PaymentMethod) -> PaymentMethod:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_payment_methods (
                    id, organization_id, type, card, is_default, external_payment_method_ref
                )
                VALUES (%(id)s, %(organization_id)s, %(type)s, %(card)s, %(is_default)s,
                        %(external_payment_method_ref)s)
                ON CONFLICT (external_payment_method_ref) DO UPDATE SET
                    card = EXCLUDED.card,
                    is_default = EXCLUDED.is_default
                RETURNING *
                """,
                {
                    "id": method.id,
                    "organization_id": method.organization_id,
                    "type": method.type.value,
                    "card": psycopg2.extras.Json(method.card.model_dump()) if method.card else None,
                    "is_default": method.is_default,
                    "external_payment_method_ref": method.external_payment_method_ref,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist payment method")
            return _row_to_payment_method(row)

    def delete_payment_method(self, organization_id: str, method_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                "DELETE FROM billing_payment_methods WHERE organization_id = %s AND id = %s",
                (organization_id, method_id),
            )
            return cursor.rowcount > 0

    # Processor webhook ledger -----------------------------------------

    def processor_event_seen(self, event_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT 1 FROM billing_processor_events WHERE event_id = %s",
                (event_id,),
            )
            return cursor.fetchone() is not None

    def record_processor_event(self, event_id: str, event_type: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_processor_events (event_id, event_type)
                VALUES (%s, %s)
                ON CONFLICT (event_id) DO NOTHING
                RETURNING event_id
                """,
                (event_id, event_type),
            )
            return cursor.fetchone() is not None


class InMemorySubscriptionStore:
    """Thread-safe in-process store used for local runs and tests."""

    def __init__(self) -> None:
        self._lock = RLock()
        self.subscriptions: Dict[str, Subscription] = {}
        self.invoices: Dict[str, Invoice] = {}
        self.payment_methods: Dict[str, PaymentMethod] = {}
        self.processor_events: Set[str] = set()
        self.plans: Dict[str, Plan] = {}

    def list_plans(self) -> List[Plan]:
        with self._lock:
            return sorted(self.plans.values(), key=lambda plan: (plan.sort_order, plan.id))

    def seed_plans(self, plans: Iterable[Plan]) -> int:
        inserted = 0
        with self._lock:
            for plan in plans:
                if plan.id not in self.plans:
                    self.plans[plan.id] = plan
                    inserted += 1
        return inserted

    def save_plan(self, plan: Plan) -> Plan:
        with self._lock:
            self.plans[plan.id] = plan
        return plan

    def find_by_organization(self, organization_id: str) -> Optional[Subscription]:
        with self._lock:
            return self.subscriptions.get(organization_id)

    def find_by_external_subscription_ref(self, external_ref: str) -> Optional[Subscription]:
        with self._lock:
            for subscription in self.subscriptions.values():
                if subscription.external_subscription_ref == external_ref:
                    return subscription
        return None

    def upsert(self, organization_id: str, **fields: Any) -> Subscription:
        _check_fields(fields)
        with self._lock:
            existing = self.subscriptions.get(organization_id)
            if existing is None:
                missing = [name for name in _REQUIRED_ON_INSERT if fields.get(name) is None]
                if missing:
                    raise ValueError(f"Missing subscription fields on insert: {missing}")
                stored = Subscription(
                    id=f"sub_{uuid4().hex}",
                    organization_id=organization_id,
                    **fields,
                )
            else:
                stored = Subscription.model_validate(
                    {**existing.model_dump(), **fields, "updated_at": _now()}
                )
            self.subscriptions[organization_id] = stored
            return stored

    def save(self, subscription: Subscription) -> Subscription:
        fields = subscription.model_dump(include=set(SUBSCRIPTION_FIELDS))
        return self.upsert(subscription.organization_id, **fields)

    def find_invoice_by_external_ref(self, external_ref: str) -> Optional[Invoice]:
        with self._lock:
            for invoice in self.invoices.values():
                if invoice.external_invoice_ref == external_ref:
                    return invoice
        return None

    def next_invoice_number(self, year: int) -> str:
        prefix = invoice_number_prefix(year)
        with self._lock:
            count = sum(1 for invoice in self.invoices.values() if invoice.invoice_number.startswith(prefix))
        return format_invoice_number(year, count + 1)

    def save_invoice(self, invoice: Invoice) -> Invoice:
        with self._lock:
            existing = self.invoices.get(invoice.id)
            if existing is not None:
                invoice = invoice.model_copy(
                    update={"created_at": existing.created_at, "updated_at": _now()}
                )
            self.invoices[invoice.id] = invoice
            return invoice

    def list_invoices(self, organization_id: str, *, limit: int = 20) -> Sequence[Invoice]:
        with self._lock:
            matching = [
                invoice
                for invoice in sorted(self.invoices.values(), key=lambda inv: inv.created_at, reverse=True)
                if invoice.organization_id == organization_id
            ]
        return matching[:limit]

    def list_payment_methods(self, organization_id: str) -> Sequence[PaymentMethod]:
        with self._lock:
            methods: List[PaymentMethod] = [
                method for method in self.payment_methods.values() if method.organization_id == organization_id
            ]
        return sorted(methods, key=lambda m: (not m.is_default, -m.created_at.timestamp()))

    def find_payment_method(self, organization_id: str, method_id: str) -> Optional[PaymentMethod]:
        with self._lock:
            method = self.payment_methods.get(method_id)
        if method is None or method.organization_id != organization_id:
            return None
        return method

    def clear_default_payment_method(self, organization_id: str) -> None:
        with self._lock:
            for method_id, method in list(self.payment_methods.items()):
                if method.organization_id == organization_id and method.is_default:
                    self.payment_methods[method_id] = method.model_copy(update={"is_default": False})

    def save_payment_method(self, method: PaymentMethod) -> PaymentMethod:
        with self._lock:
            for existing_id, existing in list(self.payment_methods.items()):
                if existing.external_payment_method_ref == method.external_payment_method_ref:
                    method = method.model_copy(update={"id": existing_id, "created_at": existing.created_at})
                    break
            self.payment_methods[method.id] = method
            return method

    def delete_payment_method(self, organization_id: str, method_id: str) -> bool:
        with self._lock:
            method = self.payment_methods.get(method_id)
            if method is None or method.organization_id != organization_id:
                return False
            del self.payment_methods[method_id]
            return True

    def processor_event_seen(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self.processor_events

    def record_processor_event(self, event_id: str, event_type: str) -> bool:
        with self._lock:
            if event_id in self.processor_events:
                return False
            self.processor_events.add(event_id)
            return True


__all__ = [
    "InMemorySubscriptionStore",
    "PostgresSubscriptionStore",
    "SCHEMA_STATEMENTS",
    "managed_connection",
]
