"""Turns a Stripe account's history into revenue and subscription metrics."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from fractions import Fraction
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Protocol

from .models import MetricsResult, MRRBreakdownEntry, MRRSummary, RawCounts, Totals

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "usd"
MRR_STATUSES = frozenset({"active", "trialing", "past_due"})

# Monthly-equivalent multiplier per billing interval.
INTERVAL_FACTORS: Dict[str, Fraction] = {
    "day": Fraction(30),
    "week": Fraction(52, 12),
    "month": Fraction(1),
    "year": Fraction(1, 12),
}

ProgressCallback = Callable[[int], Awaitable[None]]


class BillingSource(Protocol):
    def iter_charges(self) -> AsyncIterator[Dict[str, Any]]: ...

    def iter_refunds(self) -> AsyncIterator[Dict[str, Any]]: ...

    def iter_invoices(self) -> AsyncIterator[Dict[str, Any]]: ...

    def iter_subscriptions(self) -> AsyncIterator[Dict[str, Any]]: ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def round_half_away_from_zero(value: Fraction) -> int:
    if value < 0:
        return -math.floor(-value + Fraction(1, 2))
    return math.floor(value + Fraction(1, 2))


def monthly_amount(unit_amount: int, interval: str, quantity: int) -> int:
    """Normalized monthly value of ``quantity`` units billed every ``interval``."""

    try:
        factor = INTERVAL_FACTORS[interval]
    except KeyError as exc:
        raise ValueError(f"Unsupported billing interval: {interval!r}") from exc
    return round_half_away_from_zero(unit_amount * factor * quantity)


def day_key(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")


@dataclass(frozen=True)
class WindowAnchors:
    """UTC midnight boundaries, as unix timestamps, for the windowed totals."""

    year_start: int
    month_start: int
    last_30d_start: int
    today_start: int

    @classmethod
    def at(cls, now: datetime) -> "WindowAnchors":
        now = now.astimezone(timezone.utc)
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return cls(
            year_start=int(today.replace(month=1, day=1).timestamp()),
            month_start=int(today.replace(day=1).timestamp()),
            last_30d_start=int((today - timedelta(days=30)).timestamp()),
            today_start=int(today.timestamp()),
        )


@dataclass
class _RevenueLedger:
    anchors: WindowAnchors
    total: int = 0
    ytd: int = 0
    mtd: int = 0
    last_30d: int = 0
    today: int = 0
    daily: Dict[str, int] = field(default_factory=dict)

    def book(self, created: int, amount: int) -> None:
        """Add a signed amount to every total whose window contains ``created``."""

        self.total += amount
        if created >= self.anchors.year_start:
            self.ytd += amount
        if created >= self.anchors.month_start:
            self.mtd += amount
        if created >= self.anchors.last_30d_start:
            self.last_30d += amount
        if created >= self.anchors.today_start:
            self.today += amount
        key = day_key(created)
        self.daily[key] = self.daily.get(key, 0) + amount

    def totals(self) -> Totals:
        return Totals(
            gross_sales_total=self.total,
            ytd=self.ytd,
            mtd=self.mtd,
            last_30d=self.last_30d,
            today=self.today,
        )


@dataclass
class _BreakdownRow:
    price_id: str
    nickname: Optional[str]
    currency: str
    interval: str
    unit_amount: int
    quantity_total: int = 0
    mrr: int = 0

    def freeze(self) -> MRRBreakdownEntry:
        return MRRBreakdownEntry(
            price_id=self.price_id,
            nickname=self.nickname,
            currency=self.currency,
            interval=self.interval,
            unit_amount=self.unit_amount,
            quantity_total=self.quantity_total,
            mrr=self.mrr,
        )


def is_paid_charge(charge: Dict[str, Any]) -> bool:
    return charge.get("paid") is True and charge.get("status") == "succeeded"


class MetricsAggregator:
    """Streams charges, refunds, invoices and subscriptions into one result.

    The run is all-or-nothing: a failed page fetch propagates out of
    :meth:`aggregate` and no partial result is returned.
    """

    def __init__(self, source: BillingSource, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.source = source
        self.clock = clock

    async def aggregate(self, on_progress: Optional[ProgressCallback] = None) -> MetricsResult:
        anchors = WindowAnchors.at(self.clock())
        ledger = _RevenueLedger(anchors=anchors)
        charge_currency: Optional[str] = None
        price_currency: Optional[str] = None

        charges = 0
        async for charge in self.source.iter_charges():
            if not is_paid_charge(charge):
                continue
            charges += 1
            if charge_currency is None and charge.get("currency"):
                charge_currency = charge["currency"]
            ledger.book(int(charge["created"]), int(charge.get("amount") or 0))
        logger.info("Aggregated charges", extra={"charges": charges})
        await self._report(on_progress, 25)

        refunds = 0
        async for refund in self.source.iter_refunds():
            refunds += 1
            ledger.book(int(refund["created"]), -int(refund.get("amount") or 0))
        logger.info("Aggregated refunds", extra={"refunds": refunds})
        await self._report(on_progress, 50)

        invoices = 0
        async for _invoice in self.source.iter_invoices():
            invoices += 1
        await self._report(on_progress, 75)

        subscriptions = 0
        mrr_total = 0
        breakdown: Dict[str, _BreakdownRow] = {}
        async for subscription in self.source.iter_subscriptions():
            subscriptions += 1
            if subscription.get("status") not in MRR_STATUSES:
                continue
            items = (subscription.get("items") or {}).get("data") or []
            for item in items:
                price = item.get("price") or {}
                recurring = price.get("recurring")
                unit_amount = price.get("unit_amount")
                if not recurring or unit_amount is None:
                    continue
                if price_currency is None and price.get("currency"):
                    price_currency = price["currency"]

                quantity = item.get("quantity")
                quantity = 1 if quantity is None else int(quantity)
                interval = recurring["interval"]
                item_mrr = monthly_amount(int(unit_amount), interval, quantity)
                mrr_total += item_mrr

                row = breakdown.get(price["id"])
                if row is None:
                    row = _BreakdownRow(
                        price_id=price["id"],
                        nickname=price.get("nickname"),
                        currency=(price.get("currency") or DEFAULT_CURRENCY).lower(),
                        interval=interval,
                        unit_amount=int(unit_amount),
                    )
                    breakdown[price["id"]] = row
                row.quantity_total += quantity
                row.mrr += item_mrr
        logger.info(
            "Aggregated subscriptions",
            extra={"subscriptions": subscriptions, "invoices": invoices, "mrr": mrr_total},
        )

        entries = sorted((row.freeze() for row in breakdown.values()), key=lambda entry: entry.mrr, reverse=True)
        currency = (charge_currency or price_currency or DEFAULT_CURRENCY).lower()
        result = MetricsResult(
            currency=currency,
            totals=ledger.totals(),
            daily_revenue=dict(ledger.daily),
            mrr=MRRSummary(total=mrr_total, arr=mrr_total * 12, as_of=self.clock(), breakdown=entries),
            raw_counts=RawCounts(
                charges=charges,
                refunds=refunds,
                invoices=invoices,
                subscriptions=subscriptions,
            ),
        )
        await self._report(on_progress, 100)
        return result

    @staticmethod
    async def _report(on_progress: Optional[ProgressCallback], percent: int) -> None:
        if on_progress is not None:
            await on_progress(percent)


__all__ = [
    "BillingSource",
    "INTERVAL_FACTORS",
    "MetricsAggregator",
    "WindowAnchors",
    "day_key",
    "is_paid_charge",
    "monthly_amount",
    "round_half_away_from_zero",
    "utcnow",
]
