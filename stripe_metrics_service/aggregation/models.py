"""Result types produced by the metrics aggregator.

All money values are integers in the minor unit of ``currency`` (cents for
USD). ``to_dict`` renders the camelCase JSON document that is persisted with
each scrape and served by the API; ``from_dict`` reads it back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Totals:
    gross_sales_total: int = 0
    ytd: int = 0
    mtd: int = 0
    last_30d: int = 0
    today: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "grossSalesTotal": self.gross_sales_total,
            "ytd": self.ytd,
            "mtd": self.mtd,
            "last30d": self.last_30d,
            "today": self.today,
        }


@dataclass(frozen=True)
class MRRBreakdownEntry:
    """Normalized monthly contribution of one price plan."""

    price_id: str
    currency: str
    interval: str
    unit_amount: int
    quantity_total: int
    mrr: int
    nickname: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "priceId": self.price_id,
            "nickname": self.nickname,
            "currency": self.currency,
            "interval": self.interval,
            "unitAmount": self.unit_amount,
            "quantityTotal": self.quantity_total,
            "mrr": self.mrr,
        }


@dataclass(frozen=True)
class MRRSummary:
    total: int
    arr: int
    as_of: datetime
    breakdown: List[MRRBreakdownEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "arr": self.arr,
            "asOf": self.as_of.isoformat(),
            "breakdown": [entry.to_dict() for entry in self.breakdown],
        }


@dataclass(frozen=True)
class RawCounts:
    charges: int = 0
    refunds: int = 0
    invoices: int = 0
    subscriptions: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "charges": self.charges,
            "refunds": self.refunds,
            "invoices": self.invoices,
            "subscriptions": self.subscriptions,
        }


@dataclass(frozen=True)
class MetricsResult:
    currency: str
    totals: Totals
    daily_revenue: Dict[str, int]
    mrr: MRRSummary
    raw_counts: RawCounts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currency": self.currency,
            "totals": self.totals.to_dict(),
            "dailyRevenue": {day: self.daily_revenue[day] for day in sorted(self.daily_revenue)},
            "mrr": self.mrr.to_dict(),
            "rawCounts": self.raw_counts.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetricsResult":
        totals = data.get("totals", {})
        mrr = data.get("mrr", {})
        counts = data.get("rawCounts", {})
        breakdown = [
            MRRBreakdownEntry(
                price_id=entry["priceId"],
                nickname=entry.get("nickname"),
                currency=entry["currency"],
                interval=entry["interval"],
                unit_amount=int(entry["unitAmount"]),
                quantity_total=int(entry["quantityTotal"]),
                mrr=int(entry["mrr"]),
            )
            for entry in mrr.get("breakdown", [])
        ]
        return cls(
            currency=data.get("currency", "usd"),
            totals=Totals(
                gross_sales_total=int(totals.get("grossSalesTotal", 0)),
                ytd=int(totals.get("ytd", 0)),
                mtd=int(totals.get("mtd", 0)),
                last_30d=int(totals.get("last30d", 0)),
                today=int(totals.get("today", 0)),
            ),
            daily_revenue={day: int(amount) for day, amount in data.get("dailyRevenue", {}).items()},
            mrr=MRRSummary(
                total=int(mrr.get("total", 0)),
                arr=int(mrr.get("arr", 0)),
                as_of=datetime.fromisoformat(mrr["asOf"]),
                breakdown=breakdown,
            ),
            raw_counts=RawCounts(
                charges=int(counts.get("charges", 0)),
                refunds=int(counts.get("refunds", 0)),
                invoices=int(counts.get("invoices", 0)),
                subscriptions=int(counts.get("subscriptions", 0)),
            ),
        )


__all__ = ["MRRBreakdownEntry", "MRRSummary", "MetricsResult", "RawCounts", "Totals"]
