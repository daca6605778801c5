"""Billing service configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional
import os


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings for the PostgreSQL subscription store."""

    host: str
    port: int
    dbname: str
    user: str
    password: str
    connect_timeout: int

    def as_connect_kwargs(self) -> Dict[str, object]:
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.dbname,
            "user": self.user,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
        }


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for the billing service and its collaborators."""

    service_name: str
    log_level: str
    store_backend: str
    database: DatabaseConfig
    redis_url: Optional[str]
    event_bus_enabled: bool
    event_delivery: str
    event_consumer_group: str
    redis_socket_timeout: float
    stripe_secret_key: Optional[str]
    stripe_webhook_secret: Optional[str]
    processor_timeout_seconds: float
    processor_max_retries: int
    app_base_url: str
    currency: str
    webhook_delivery_timeout: float
    price_references: Dict[str, Dict[str, str]] = field(default_factory=dict)


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


_PRICE_PREFIX = "STRIPE_PRICE_"
_CYCLES = {"MONTHLY": "monthly", "YEARLY": "yearly"}


def _price_references(env_mapping: Mapping[str, str]) -> Dict[str, Dict[str, str]]:
    """Collect ``STRIPE_PRICE_<SLUG>_<CYCLE>`` variables keyed by plan slug."""

    references: Dict[str, Dict[str, str]] = {}
    for key, value in env_mapping.items():
        if not key.startswith(_PRICE_PREFIX) or not value:
            continue
        slug, _, cycle = key[len(_PRICE_PREFIX):].rpartition("_")
        if not slug or cycle not in _CYCLES:
            continue
        references.setdefault(slug.lower(), {})[_CYCLES[cycle]] = value.strip()
    return references


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    database = DatabaseConfig(
        host=env_mapping.get("DB_HOST", "127.0.0.1"),
        port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        dbname=env_mapping.get("DB_NAME", "subtrack_billing"),
        user=env_mapping.get("DB_USER", "subtrack"),
        password=env_mapping.get("DB_PASSWORD", "subtrack"),
        connect_timeout=max(1, _to_int(env_mapping.get("DB_CONNECT_TIMEOUT"), default=5)),
    )

    store_backend = (env_mapping.get("BILLING_STORE") or "postgres").strip().lower()
    if store_backend not in {"postgres", "memory"}:
        raise ValueError(f"Unsupported BILLING_STORE {store_backend!r}")

    event_delivery = (env_mapping.get("EVENT_DELIVERY") or "best_effort").strip().lower()
    if event_delivery not in {"best_effort", "at_least_once"}:
        raise ValueError(f"Unsupported EVENT_DELIVERY {event_delivery!r}")

    return BillingConfig(
        service_name=env_mapping.get("SERVICE_NAME", "billing-service"),
        log_level=(env_mapping.get("LOG_LEVEL") or "INFO").upper(),
        store_backend=store_backend,
        database=database,
        redis_url=env_mapping.get("REDIS_URL") or None,
        event_bus_enabled=_to_bool(env_mapping.get("EVENT_BUS_ENABLED"), default=True),
        event_delivery=event_delivery,
        event_consumer_group=env_mapping.get("EVENT_CONSUMER_GROUP", "billing-service-group"),
        redis_socket_timeout=max(0.1, _to_float(env_mapping.get("REDIS_SOCKET_TIMEOUT"), default=5.0)),
        stripe_secret_key=env_mapping.get("STRIPE_SECRET_KEY") or None,
        stripe_webhook_secret=env_mapping.get("STRIPE_WEBHOOK_SECRET") or None,
        processor_timeout_seconds=max(
            1.0, _to_float(env_mapping.get("PROCESSOR_TIMEOUT_SECONDS"), default=10.0)
        ),
        processor_max_retries=max(0, _to_int(env_mapping.get("PROCESSOR_MAX_RETRIES"), default=2)),
        app_base_url=env_mapping.get("APP_BASE_URL", "http://localhost:5173").rstrip("/"),
        currency=(env_mapping.get("BILLING_CURRENCY") or "usd").lower(),
        webhook_delivery_timeout=max(
            1.0, _to_float(env_mapping.get("WEBHOOK_DELIVERY_TIMEOUT"), default=10.0)
        ),
        price_references=_price_references(env_mapping),
    )


__all__ = ["BillingConfig", "DatabaseConfig", "load_billing_config"]
