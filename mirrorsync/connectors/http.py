"""
HTTP helpers for connectors.

Provides retry/backoff for transient errors and rate limits, and maps vendor
status codes onto the engine's error taxonomy.
"""

from __future__ import annotations

import asyncio
import random
from typing import Iterable

import httpx
import structlog
from prometheus_client import Counter

from mirrorsync.kernel.errors import ResourceUnauthorized, TokenExpired, VendorUnavailable

logger = structlog.get_logger()

_connector_http_retries_total = Counter(
    "mirrorsync_connector_http_retries_total",
    "Total connector HTTP retries by connector/operation and reason",
    ["connector_type", "operation", "reason", "status_code"],
)


RETRY_STATUSES = {429, 500, 502, 503, 504}


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _backoff(attempt: int, base_backoff: float, max_backoff: float) -> float:
    delay = min(max_backoff, base_backoff * (2 ** (attempt - 1)))
    return delay + random.uniform(0, delay / 2)


def _count_retry(connector_type: str | None, operation: str | None, reason: str, status_code: int) -> None:
    if not connector_type:
        return
    _connector_http_retries_total.labels(
        connector_type=connector_type,
        operation=operation or "request",
        reason=reason,
        status_code=str(status_code),
    ).inc()


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    max_attempts: int = 5,
    retry_statuses: Iterable[int] | None = None,
    base_backoff: float = 0.5,
    max_backoff: float = 8.0,
    metrics_connector_type: str | None = None,
    metrics_operation: str | None = None,
    **kwargs,
) -> httpx.Response:
    """
    Make an HTTP request with exponential backoff + jitter.

    Retryable statuses honour `Retry-After`. After the last attempt the
    response is returned as-is; network errors are re-raised as
    `VendorUnavailable`.
    """
    retry_statuses = set(retry_statuses or RETRY_STATUSES)

    attempt = 0
    while True:
        attempt += 1
        try:
            response = await client.request(method, url, **kwargs)
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            if attempt >= max_attempts:
                raise VendorUnavailable(f"Network error calling vendor: {e}", meta={"url": url}) from e

            delay = _backoff(attempt, base_backoff, max_backoff)
            _count_retry(metrics_connector_type, metrics_operation, "network", 0)
            logger.warning(
                "Retrying request due to network error",
                url=url,
                attempt=attempt,
                delay=delay,
                error=str(e),
            )
            await asyncio.sleep(delay)
            continue

        if response.status_code in retry_statuses and attempt < max_attempts:
            delay = _parse_retry_after(response.headers.get("Retry-After"))
            if delay is None:
                delay = _backoff(attempt, base_backoff, max_backoff)

            _count_retry(metrics_connector_type, metrics_operation, "status", response.status_code)
            logger.warning(
                "Retrying request due to status",
                status_code=response.status_code,
                url=url,
                attempt=attempt,
                delay=delay,
            )
            await asyncio.sleep(delay)
            continue

        return response


def raise_for_vendor_status(response: httpx.Response) -> httpx.Response:
    """
    Translate vendor failures into engine errors.

    410 means the resume token is gone; 401/403 mean authorization was
    revoked; 429 and 5xx are transient.
    """
    status = response.status_code
    if status < 400:
        return response

    meta = {"status_code": status}
    if status == 410:
        raise TokenExpired(meta=meta)
    if status in (401, 403):
        raise ResourceUnauthorized(meta=meta)
    if status == 429 or status >= 500:
        raise VendorUnavailable(
            f"Vendor returned {status}",
            status_code=status,
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            meta=meta,
        )
    response.raise_for_status()
    return response
