from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import fakeredis
import pytest
from sqlalchemy.pool import StaticPool

from stripe_metrics_service.config import Settings
from stripe_metrics_service.db.session import Database

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


def ts(value: datetime) -> int:
    return int(value.timestamp())


def charge(
    charge_id: str,
    amount: int,
    created: datetime,
    *,
    currency: str = "usd",
    paid: bool = True,
    status: str = "succeeded",
) -> Dict[str, Any]:
    return {
        "id": charge_id,
        "object": "charge",
        "amount": amount,
        "created": ts(created),
        "currency": currency,
        "paid": paid,
        "status": status,
    }


def refund(refund_id: str, amount: int, created: datetime) -> Dict[str, Any]:
    return {"id": refund_id, "object": "refund", "amount": amount, "created": ts(created), "currency": "usd"}


def price(
    price_id: str,
    unit_amount: Optional[int],
    interval: Optional[str] = "month",
    *,
    currency: str = "usd",
    nickname: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "id": price_id,
        "object": "price",
        "unit_amount": unit_amount,
        "currency": currency,
        "nickname": nickname,
        "recurring": {"interval": interval, "interval_count": 1} if interval else None,
    }


def subscription(sub_id: str, status: str, items: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "items": {"object": "list", "data": items},
    }


def item(price_obj: Dict[str, Any], quantity: Optional[int] = 1) -> Dict[str, Any]:
    return {"id": f"si_{price_obj['id']}", "price": price_obj, "quantity": quantity}


class FakeBillingSource:
    """In-memory stand-in for the Stripe client's record streams."""

    def __init__(self, charges=(), refunds=(), invoices=(), subscriptions=(), fail_on: Optional[str] = None):
        self.streams = {
            "charges": list(charges),
            "refunds": list(refunds),
            "invoices": list(invoices),
            "subscriptions": list(subscriptions),
        }
        self.fail_on = fail_on

    async def _stream(self, resource: str):
        from stripe_metrics_service.billing.client import BillingRequestError

        for record in self.streams[resource]:
            yield record
        if self.fail_on == resource:
            raise BillingRequestError(f"Stripe {resource} request failed: connection reset")

    def iter_charges(self):
        return self._stream("charges")

    def iter_refunds(self):
        return self._stream("refunds")

    def iter_invoices(self):
        return self._stream("invoices")

    def iter_subscriptions(self):
        return self._stream("subscriptions")


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "database_url": TEST_DATABASE_URL,
        "redis_url": "redis://localhost:6379/15",
        "api_keys": {"key-alice": "alice", "key-bob": "bob"},
        "enable_metrics": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_redis():
    return fakeredis.FakeAsyncRedis(decode_responses=True)


def make_database() -> Database:
    return Database(TEST_DATABASE_URL, poolclass=StaticPool)


class RecordingDispatch:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.calls: List[tuple] = []
        self.queues: List[Optional[str]] = []
        self.error = error

    def __call__(self, job_id: str, kind: str, payload: Dict[str, Any], *, queue=None, countdown=None) -> None:
        if self.error is not None:
            raise self.error
        self.calls.append((job_id, kind, payload))
        self.queues.append(queue)


@pytest.fixture
def settings() -> Settings:
    return make_settings()
