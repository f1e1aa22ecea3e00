from __future__ import annotations

import base64
import json

import httpx
import pytest

from policy_billing_api.services.billing.errors import ConfigurationError, UpstreamCallError
from policy_billing_api.services.policy.client import PolicyServiceClient

BASE_URL = "https://policy.test/v1/insurance"


def _client(handler) -> PolicyServiceClient:
    return PolicyServiceClient(base_url=BASE_URL, api_key="sandbox_key", transport=httpx.MockTransport(handler))


def test_client_requires_api_key() -> None:
    with pytest.raises(ConfigurationError):
        PolicyServiceClient(base_url=BASE_URL, api_key="")


@pytest.mark.asyncio
async def test_get_policy_uses_basic_auth() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"policy_id": "policy_1"})

    policy = await _client(handler).get_policy("policy_1")

    assert policy == {"policy_id": "policy_1"}
    request = seen[0]
    assert request.method == "GET"
    assert request.url.path == "/v1/insurance/policies/policy_1"
    expected = base64.b64encode(b"sandbox_key:").decode()
    assert request.headers["authorization"] == f"Basic {expected}"


@pytest.mark.asyncio
async def test_update_app_data_patches_policy() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"policy_id": "policy_1"})

    await _client(handler).update_policy_app_data("policy_1", {"stripe_customer_id": "cus_1"})

    assert seen[0].method == "PATCH"
    assert json.loads(seen[0].content) == {"app_data": {"stripe_customer_id": "cus_1"}}


@pytest.mark.asyncio
async def test_update_payments_sends_batch() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    result = await _client(handler).update_payments([{"payment_id": "payment_1", "status": "successful"}])

    assert result is None
    assert seen[0].method == "PUT"
    assert seen[0].url.path == "/v1/insurance/payments"
    assert json.loads(seen[0].content) == {"payment_updates": [{"payment_id": "payment_1", "status": "successful"}]}


@pytest.mark.asyncio
async def test_missing_payment_method_returns_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "not found"})

    assert await _client(handler).get_policy_payment_method("policy_1") is None


@pytest.mark.asyncio
async def test_error_response_raises_upstream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    with pytest.raises(UpstreamCallError) as exc_info:
        await _client(handler).create_policy_payment("policy_1", {"amount": 100})

    assert exc_info.value.operation == "create_policy_payment"
    assert exc_info.value.status_code == 500
    assert exc_info.value.params == {"path": "/policies/policy_1/payments", "body": {"amount": 100}}


@pytest.mark.asyncio
async def test_non_json_body_raises_upstream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>maintenance</html>")

    with pytest.raises(UpstreamCallError) as exc_info:
        await _client(handler).get_policy("policy_1")

    assert exc_info.value.operation == "get_policy"
    assert exc_info.value.status_code == 200
    assert "maintenance" in exc_info.value.context["response"]
    assert isinstance(exc_info.value.__cause__, ValueError)


@pytest.mark.asyncio
async def test_transport_error_raises_upstream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UpstreamCallError) as exc_info:
        await _client(handler).get_policy("policy_1")

    assert exc_info.value.status_code is None
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
