"""Prometheus metrics and monitoring utilities."""

from __future__ import annotations

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

JOBS_SUBMITTED = Counter("stripe_metrics_jobs_submitted_total", "Scrape jobs accepted by the gateway")
JOBS_COMPLETED = Counter("stripe_metrics_jobs_completed_total", "Scrape jobs completed successfully")
JOBS_FAILED = Counter("stripe_metrics_jobs_failed_total", "Scrape jobs that ended in failure", ["reason"])
JOBS_IN_PROGRESS = Gauge("stripe_metrics_jobs_in_progress", "Scrape jobs currently executing")
AGGREGATION_DURATION = Histogram(
    "stripe_metrics_aggregation_duration_seconds", "Wall time of a full metrics aggregation"
)
BILLING_PAGES_FETCHED = Counter(
    "stripe_metrics_billing_pages_total", "Stripe list pages fetched", ["resource"]
)
BILLING_FETCH_LATENCY = Histogram(
    "stripe_metrics_billing_fetch_latency_seconds", "Latency of Stripe list requests", ["resource"]
)

metrics_router = APIRouter()


@metrics_router.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "AGGREGATION_DURATION",
    "BILLING_FETCH_LATENCY",
    "BILLING_PAGES_FETCHED",
    "JOBS_COMPLETED",
    "JOBS_FAILED",
    "JOBS_IN_PROGRESS",
    "JOBS_SUBMITTED",
    "metrics_router",
]
