"""Paginated read access to the Stripe REST API."""

from __future__ import annotations

import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..monitoring.metrics import BILLING_FETCH_LATENCY, BILLING_PAGES_FETCHED

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class BillingError(Exception):
    """Raised when the billing provider cannot serve a page."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BillingAuthError(BillingError):
    """The credential was rejected (invalid, revoked or lacking permissions)."""


class BillingRateLimitError(BillingError):
    """The provider kept rate limiting after all retries."""


class BillingTimeoutError(BillingError):
    """A request timed out or the aggregation deadline passed."""


class BillingRequestError(BillingError):
    """Any other failed request."""


class _RetryableResponse(Exception):
    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


def _should_retry(exc: BaseException) -> bool:
    if isinstance(exc, _RetryableResponse):
        return True
    return isinstance(exc, httpx.TransportError)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return f"HTTP {response.status_code}"


def _raise_for_response(resource: str, response: httpx.Response) -> None:
    status = response.status_code
    message = f"Stripe {resource} request failed: {_error_message(response)}"
    if status in (401, 403):
        raise BillingAuthError(message, status_code=status)
    if status == 429:
        raise BillingRateLimitError(message, status_code=status)
    raise BillingRequestError(message, status_code=status)


class StripeClient:
    """Streams every record of a Stripe list endpoint, one page at a time.

    The credential is sent as a bearer token and is never logged. ``deadline``
    is a :func:`time.monotonic` timestamp; once it passes, the next page
    request raises :class:`BillingTimeoutError` instead of being sent.
    """

    def __init__(
        self,
        credential: str,
        http: httpx.AsyncClient,
        *,
        base_url: str = "https://api.stripe.com",
        api_version: Optional[str] = None,
        page_size: int = 100,
        deadline: Optional[float] = None,
        max_attempts: int = 3,
        retry_wait_max: float = 8.0,
    ) -> None:
        if not credential:
            raise BillingAuthError("A Stripe API key is required")
        self._credential = credential
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._api_version = api_version
        self._page_size = page_size
        self._deadline = deadline
        self._max_attempts = max_attempts
        self._retry_wait_max = retry_wait_max

    def _headers(self) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self._credential}"}
        if self._api_version:
            headers["Stripe-Version"] = self._api_version
        return headers

    def _check_deadline(self, resource: str) -> None:
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise BillingTimeoutError(f"Deadline exceeded while listing Stripe {resource}")

    async def _get(self, resource: str, params: List[Tuple[str, Any]]) -> httpx.Response:
        url = f"{self._base_url}/v1/{resource}"
        try:
            async for attempt in AsyncRetrying(
                reraise=True,
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_exponential(multiplier=0.5, max=self._retry_wait_max),
                retry=retry_if_exception(_should_retry),
            ):
                with attempt:
                    self._check_deadline(resource)
                    response = await self._http.get(url, params=params, headers=self._headers())
                    if response.status_code in RETRYABLE_STATUS_CODES:
                        raise _RetryableResponse(response)
                    return response
        except _RetryableResponse as exc:
            return exc.response
        except httpx.TimeoutException as exc:
            raise BillingTimeoutError(f"Stripe {resource} request timed out") from exc
        except httpx.TransportError as exc:
            raise BillingRequestError(f"Stripe {resource} request failed: {exc}") from exc
        raise BillingRequestError(f"Stripe {resource} request was not attempted")

    async def list_page(
        self,
        resource: str,
        *,
        starting_after: Optional[str] = None,
        extra_params: Optional[List[Tuple[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """Fetch one page of ``resource`` after the ``starting_after`` cursor."""

        params: List[Tuple[str, Any]] = [("limit", self._page_size)]
        if starting_after:
            params.append(("starting_after", starting_after))
        params.extend(extra_params or [])

        start_time = time.perf_counter()
        response = await self._get(resource, params)
        BILLING_FETCH_LATENCY.labels(resource=resource).observe(time.perf_counter() - start_time)

        if response.status_code != 200:
            _raise_for_response(resource, response)
        try:
            page = response.json()
        except ValueError as exc:
            raise BillingRequestError(f"Stripe {resource} returned a non-JSON page") from exc
        BILLING_PAGES_FETCHED.labels(resource=resource).inc()
        return page

    async def paginate(
        self, resource: str, extra_params: Optional[List[Tuple[str, Any]]] = None
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield every record of ``resource`` across all pages."""

        starting_after: Optional[str] = None
        pages = 0
        while True:
            page = await self.list_page(resource, starting_after=starting_after, extra_params=extra_params)
            pages += 1
            records = page.get("data") or []
            for record in records:
                yield record
            if not page.get("has_more") or not records:
                break
            starting_after = records[-1]["id"]
        logger.debug("Listed Stripe resource", extra={"resource": resource, "pages": pages})

    def iter_charges(self) -> AsyncIterator[Dict[str, Any]]:
        return self.paginate("charges")

    def iter_refunds(self) -> AsyncIterator[Dict[str, Any]]:
        return self.paginate("refunds")

    def iter_invoices(self) -> AsyncIterator[Dict[str, Any]]:
        return self.paginate("invoices")

    def iter_subscriptions(self) -> AsyncIterator[Dict[str, Any]]:
        return self.paginate(
            "subscriptions",
            extra_params=[("status", "all"), ("expand[]", "data.items.data.price")],
        )


__all__ = [
    "BillingAuthError",
    "BillingError",
    "BillingRateLimitError",
    "BillingRequestError",
    "BillingTimeoutError",
    "StripeClient",
]
