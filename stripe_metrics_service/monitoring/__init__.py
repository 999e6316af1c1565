"""Monitoring helpers."""

from .metrics import (
    AGGREGATION_DURATION,
    BILLING_FETCH_LATENCY,
    BILLING_PAGES_FETCHED,
    JOBS_COMPLETED,
    JOBS_FAILED,
    JOBS_IN_PROGRESS,
    JOBS_SUBMITTED,
    metrics_router,
)

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
