"""Billing provider access."""

from .client import (
    BillingAuthError,
    BillingError,
    BillingRateLimitError,
    BillingRequestError,
    BillingTimeoutError,
    StripeClient,
)

__all__ = [
    "BillingAuthError",
    "BillingError",
    "BillingRateLimitError",
    "BillingRequestError",
    "BillingTimeoutError",
    "StripeClient",
]
