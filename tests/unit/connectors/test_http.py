"""
Unit tests for connector HTTP helpers.
"""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from mirrorsync.connectors.http import raise_for_vendor_status, request_with_retry
from mirrorsync.kernel.errors import ResourceUnauthorized, TokenExpired, VendorUnavailable

pytestmark = pytest.mark.unit


def _client(responses):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        result = responses[min(len(calls) - 1, len(responses) - 1)]
        if isinstance(result, Exception):
            raise result
        return result

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), calls


@pytest.mark.asyncio
async def test_retries_retryable_status_then_succeeds():
    client, calls = _client([httpx.Response(503), httpx.Response(200, json={"ok": True})])
    sleep = AsyncMock()

    with patch("mirrorsync.connectors.http.asyncio.sleep", sleep):
        response = await request_with_retry(client, "GET", "https://vendor.example.com/events")

    assert response.status_code == 200
    assert len(calls) == 2
    sleep.assert_awaited_once()


@pytest.mark.asyncio
async def test_honours_retry_after():
    client, _ = _client([httpx.Response(429, headers={"Retry-After": "7"}), httpx.Response(200)])
    sleep = AsyncMock()

    with patch("mirrorsync.connectors.http.asyncio.sleep", sleep):
        await request_with_retry(client, "GET", "https://vendor.example.com/events", metrics_connector_type="gcal")

    sleep.assert_awaited_once_with(7.0)


@pytest.mark.asyncio
async def test_returns_last_response_when_attempts_run_out():
    client, calls = _client([httpx.Response(500)])

    with patch("mirrorsync.connectors.http.asyncio.sleep", AsyncMock()):
        response = await request_with_retry(client, "GET", "https://vendor.example.com/events", max_attempts=3)

    assert response.status_code == 500
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_network_errors_become_vendor_unavailable():
    client, calls = _client([httpx.ConnectError("refused")])

    with patch("mirrorsync.connectors.http.asyncio.sleep", AsyncMock()):
        with pytest.raises(VendorUnavailable):
            await request_with_retry(client, "GET", "https://vendor.example.com/events", max_attempts=2)

    assert len(calls) == 2


@pytest.mark.parametrize(
    "status, error",
    [
        (410, TokenExpired),
        (401, ResourceUnauthorized),
        (403, ResourceUnauthorized),
        (429, VendorUnavailable),
        (502, VendorUnavailable),
    ],
)
def test_vendor_status_mapping(status, error):
    response = httpx.Response(status, request=httpx.Request("GET", "https://vendor.example.com"))
    with pytest.raises(error):
        raise_for_vendor_status(response)


def test_success_passes_through_and_other_client_errors_raise_http_error():
    request = httpx.Request("GET", "https://vendor.example.com")
    ok = httpx.Response(200, request=request)
    assert raise_for_vendor_status(ok) is ok

    with pytest.raises(httpx.HTTPStatusError):
        raise_for_vendor_status(httpx.Response(404, request=request))


def test_retry_after_is_exposed_on_rate_limit():
    response = httpx.Response(
        429, headers={"Retry-After": "30"}, request=httpx.Request("GET", "https://vendor.example.com")
    )
    with pytest.raises(VendorUnavailable) as exc_info:
        raise_for_vendor_status(response)
    assert exc_info.value.retry_after == 30.0
    assert exc_info.value.status_code == 429
