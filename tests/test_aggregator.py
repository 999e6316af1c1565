import asyncio
from datetime import datetime, timedelta, timezone
from fractions import Fraction

import httpx
import pytest

from conftest import NOW, FakeBillingSource, charge, item, price, refund, subscription
from stripe_metrics_service.aggregation.aggregator import (
    MetricsAggregator,
    WindowAnchors,
    monthly_amount,
    round_half_away_from_zero,
)
from stripe_metrics_service.aggregation.models import MetricsResult
from stripe_metrics_service.billing.client import BillingError, StripeClient


def aggregate(source, now=NOW, on_progress=None) -> MetricsResult:
    return asyncio.run(MetricsAggregator(source, clock=lambda: now).aggregate(on_progress=on_progress))


def test_single_day_scenario():
    source = FakeBillingSource(
        charges=[charge("ch_1", 5000, NOW - timedelta(hours=1))],
        refunds=[refund("re_1", 1000, NOW - timedelta(minutes=5))],
        subscriptions=[subscription("sub_1", "active", [item(price("price_m", 2000, "month"))])],
    )

    result = aggregate(source)

    assert result.totals.today == 4000
    assert result.totals.gross_sales_total == 4000
    assert result.daily_revenue == {"2025-06-15": 4000}
    assert result.mrr.total == 2000
    assert result.mrr.arr == 24000
    assert result.raw_counts.to_dict() == {"charges": 1, "refunds": 1, "invoices": 0, "subscriptions": 1}
    assert result.currency == "usd"
    assert result.mrr.as_of == NOW


def test_windows_are_tested_independently():
    now = datetime(2025, 6, 10, 9, 30, tzinfo=timezone.utc)
    source = FakeBillingSource(
        charges=[
            charge("ch_may", 700, now - timedelta(days=25)),
            charge("ch_june", 300, datetime(2025, 6, 1, 0, 0, tzinfo=timezone.utc)),
            charge("ch_jan", 50, datetime(2025, 1, 2, tzinfo=timezone.utc)),
            charge("ch_last_year", 20, datetime(2024, 12, 31, 23, 59, tzinfo=timezone.utc)),
        ],
    )

    totals = aggregate(source, now=now).totals

    assert totals.last_30d == 1000
    assert totals.mtd == 300
    assert totals.ytd == 1050
    assert totals.today == 0
    assert totals.gross_sales_total == 1070


def test_window_boundaries_are_inclusive_utc_midnight():
    anchors = WindowAnchors.at(NOW)
    source = FakeBillingSource(
        charges=[
            charge("ch_today_start", 100, datetime(2025, 6, 15, tzinfo=timezone.utc)),
            charge("ch_30d_start", 10, datetime(2025, 5, 16, tzinfo=timezone.utc)),
            charge("ch_before_30d", 1, datetime(2025, 5, 15, 23, 59, 59, tzinfo=timezone.utc)),
        ],
    )

    totals = aggregate(source).totals

    assert anchors.today_start == int(datetime(2025, 6, 15, tzinfo=timezone.utc).timestamp())
    assert anchors.last_30d_start == int(datetime(2025, 5, 16, tzinfo=timezone.utc).timestamp())
    assert anchors.month_start == int(datetime(2025, 6, 1, tzinfo=timezone.utc).timestamp())
    assert anchors.year_start == int(datetime(2025, 1, 1, tzinfo=timezone.utc).timestamp())
    assert totals.today == 100
    assert totals.last_30d == 110
    assert totals.mtd == 100


def test_refund_is_booked_on_its_own_date():
    source = FakeBillingSource(
        charges=[charge("ch_1", 2500, datetime(2025, 6, 1, 10, tzinfo=timezone.utc))],
        refunds=[refund("re_1", 2500, datetime(2025, 6, 3, 8, tzinfo=timezone.utc))],
    )

    result = aggregate(source)

    assert result.daily_revenue == {"2025-06-01": 2500, "2025-06-03": -2500}
    assert result.totals.gross_sales_total == 0


def test_daily_revenue_partitions_gross_total():
    charges = [charge(f"ch_{n}", 100 * n, NOW - timedelta(days=n * 3, hours=n)) for n in range(1, 12)]
    refunds = [refund("re_1", 150, NOW - timedelta(days=4)), refund("re_2", 75, NOW - timedelta(days=400))]
    result = aggregate(FakeBillingSource(charges=charges, refunds=refunds))

    expected_days = {
        datetime.fromtimestamp(record["created"], tz=timezone.utc).strftime("%Y-%m-%d")
        for record in charges + refunds
    }
    assert set(result.daily_revenue) == expected_days
    assert sum(result.daily_revenue.values()) == result.totals.gross_sales_total
    assert result.totals.gross_sales_total == sum(c["amount"] for c in charges) - 225


def test_unpaid_and_failed_charges_are_ignored():
    source = FakeBillingSource(
        charges=[
            charge("ch_failed", 900, NOW, currency="eur", paid=False, status="failed"),
            charge("ch_pending", 800, NOW, currency="eur", paid=True, status="pending"),
            charge("ch_ok", 100, NOW, currency="gbp"),
        ],
    )

    result = aggregate(source)

    assert result.totals.gross_sales_total == 100
    assert result.raw_counts.charges == 1
    assert result.currency == "gbp"


def test_mrr_normalizes_intervals():
    source = FakeBillingSource(
        subscriptions=[
            subscription("sub_year", "active", [item(price("price_year", 1200, "year"))]),
            subscription("sub_week", "trialing", [item(price("price_week", 100, "week"), quantity=2)]),
            subscription("sub_day", "past_due", [item(price("price_day", 10, "day"))]),
        ],
    )

    mrr = aggregate(source).mrr

    contributions = {entry.price_id: entry.mrr for entry in mrr.breakdown}
    assert contributions == {"price_year": 100, "price_week": round(100 * 52 / 12 * 2), "price_day": 300}
    assert mrr.total == 100 + 867 + 300
    assert mrr.arr == mrr.total * 12


def test_mrr_skips_inactive_and_non_recurring_items():
    source = FakeBillingSource(
        subscriptions=[
            subscription("sub_canceled", "canceled", [item(price("price_a", 5000))]),
            subscription("sub_incomplete", "incomplete", [item(price("price_a", 5000))]),
            subscription(
                "sub_active",
                "active",
                [
                    item(price("price_one_time", 999, interval=None)),
                    item(price("price_metered", None)),
                    item(price("price_b", 300), quantity=None),
                ],
            ),
        ],
    )

    result = aggregate(source)

    assert result.raw_counts.subscriptions == 3
    assert result.mrr.total == 300
    assert [entry.price_id for entry in result.mrr.breakdown] == ["price_b"]
    assert result.mrr.breakdown[0].quantity_total == 1


def test_breakdown_merges_prices_and_sorts_descending():
    basic = price("price_basic", 1000, nickname="Basic")
    pro = price("price_pro", 4000, nickname="Pro")
    source = FakeBillingSource(
        subscriptions=[
            subscription("sub_1", "active", [item(basic, quantity=2)]),
            subscription("sub_2", "active", [item(pro)]),
            subscription("sub_3", "active", [item(dict(basic, nickname="Renamed"), quantity=3)]),
        ],
    )

    breakdown = aggregate(source).mrr.breakdown

    assert [entry.price_id for entry in breakdown] == ["price_basic", "price_pro"]
    assert breakdown[0].mrr == 5000
    assert breakdown[0].quantity_total == 5
    assert breakdown[0].nickname == "Basic"
    assert breakdown[1].mrr == 4000


def test_currency_prefers_charges_then_subscription_prices():
    sub = subscription("sub_1", "active", [item(price("price_x", 100, currency="EUR"))])

    assert aggregate(FakeBillingSource(subscriptions=[sub])).currency == "eur"
    assert aggregate(FakeBillingSource(charges=[charge("ch_1", 1, NOW, currency="cad")], subscriptions=[sub])).currency == "cad"
    assert aggregate(FakeBillingSource()).currency == "usd"


def test_invoices_are_only_counted():
    source = FakeBillingSource(invoices=[{"id": "in_1", "amount_paid": 999}, {"id": "in_2", "amount_paid": 1}])

    result = aggregate(source)

    assert result.raw_counts.invoices == 2
    assert result.totals.gross_sales_total == 0


def test_progress_is_reported_per_resource():
    seen = []

    async def on_progress(percent):
        seen.append(percent)

    aggregate(FakeBillingSource(), on_progress=on_progress)

    assert seen == [25, 50, 75, 100]


def test_failed_page_aborts_without_result():
    seen = []

    async def on_progress(percent):
        seen.append(percent)

    source = FakeBillingSource(charges=[charge("ch_1", 100, NOW)], fail_on="refunds")

    with pytest.raises(BillingError):
        aggregate(source, on_progress=on_progress)
    assert 100 not in seen


def test_rounding_is_half_away_from_zero():
    assert round_half_away_from_zero(Fraction(5, 2)) == 3
    assert round_half_away_from_zero(Fraction(-5, 2)) == -3
    assert round_half_away_from_zero(Fraction(7, 3)) == 2
    assert monthly_amount(1, "year", 6) == 1
    assert monthly_amount(1, "year", 5) == 0
    with pytest.raises(ValueError):
        monthly_amount(100, "fortnight", 1)


def test_result_document_shape():
    source = FakeBillingSource(
        charges=[charge("ch_2", 100, NOW), charge("ch_1", 50, NOW - timedelta(days=2))],
        subscriptions=[subscription("sub_1", "active", [item(price("price_m", 2000, nickname="Monthly"))])],
    )
    result = aggregate(source)

    document = result.to_dict()

    assert list(document["dailyRevenue"]) == ["2025-06-13", "2025-06-15"]
    assert document["totals"]["grossSalesTotal"] == 150
    assert document["mrr"]["breakdown"][0] == {
        "priceId": "price_m",
        "nickname": "Monthly",
        "currency": "usd",
        "interval": "month",
        "unitAmount": 2000,
        "quantityTotal": 1,
        "mrr": 2000,
    }
    assert MetricsResult.from_dict(document) == result


def _stripe_transport(records_by_resource):
    def handler(request: httpx.Request) -> httpx.Response:
        resource = request.url.path.rsplit("/", 1)[-1]
        records = records_by_resource.get(resource, [])
        limit = int(request.url.params["limit"])
        start = 0
        cursor = request.url.params.get("starting_after")
        if cursor:
            start = next(i for i, record in enumerate(records) if record["id"] == cursor) + 1
        page = records[start:start + limit]
        return httpx.Response(
            200, json={"object": "list", "data": page, "has_more": start + limit < len(records)}
        )

    return httpx.MockTransport(handler)


@pytest.mark.parametrize("page_size", [1, 2, 3, 100])
def test_gross_total_is_independent_of_page_size(page_size):
    records = {
        "charges": [charge(f"ch_{n}", 100 + n, NOW - timedelta(days=n)) for n in range(7)],
        "refunds": [refund(f"re_{n}", 10 * n, NOW - timedelta(days=n)) for n in range(4)],
        "invoices": [{"id": f"in_{n}"} for n in range(5)],
        "subscriptions": [],
    }

    async def scenario():
        async with httpx.AsyncClient(transport=_stripe_transport(records)) as http:
            client = StripeClient("sk_test_123", http, page_size=page_size)
            return await MetricsAggregator(client, clock=lambda: NOW).aggregate()

    result = asyncio.run(scenario())

    assert result.totals.gross_sales_total == sum(100 + n for n in range(7)) - sum(10 * n for n in range(4))
    assert result.raw_counts.to_dict() == {"charges": 7, "refunds": 4, "invoices": 5, "subscriptions": 0}
