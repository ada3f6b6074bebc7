"""Tests for the provider REST client's error mapping and retries."""

import httpx
import pytest

from app.core.exceptions import (
    EntityNotFoundError,
    ProviderNotConfiguredError,
    ProviderRequestError,
    TransientProviderError,
)
from app.integrations.provider import ProviderClient


pytestmark = pytest.mark.unit

PROVIDER_URL = "https://provider.test"


async def test_get_payment_parses_snapshot(provider, fake_provider):
    fake_provider.add_payment("9001", "approved", external_reference="ORD-1")

    payment = await provider.get_payment("9001")

    assert payment.id == "9001"
    assert payment.status == "approved"
    request = fake_provider.requests[0]
    assert request.headers["Authorization"].startswith("Bearer ")


async def test_search_payments_sends_external_reference(provider, fake_provider):
    fake_provider.add_payment("1", "rejected", external_reference="ORD-1", date_created="2025-01-01T10:00:00Z")
    fake_provider.add_payment("2", "approved", external_reference="ORD-1", date_created="2025-01-02T10:00:00Z")
    fake_provider.add_payment("3", "approved", external_reference="ORD-2")

    results = await provider.search_payments("ORD-1")

    assert [p.id for p in results] == ["2", "1"]
    params = fake_provider.requests[0].url.params
    assert params["external_reference"] == "ORD-1"
    assert params["sort"] == "date_created"
    assert params["criteria"] == "desc"


async def test_404_maps_to_entity_not_found(provider):
    with pytest.raises(EntityNotFoundError) as exc_info:
        await provider.get_subscription("pre-missing")
    assert exc_info.value.entity == "subscription"
    assert exc_info.value.reference == "pre-missing"


async def test_5xx_is_retried_then_raised_as_transient(provider, fake_provider):
    fake_provider.add_payment("9001", "approved")
    fake_provider.fail_with["9001"] = 503

    with pytest.raises(TransientProviderError) as exc_info:
        await provider.get_payment("9001")

    assert exc_info.value.status_code == 503
    assert exc_info.value.retryable
    assert fake_provider.calls_to("/v1/payments/9001") == 2


async def test_timeout_is_transient(provider, fake_provider):
    fake_provider.fail_with["9001"] = httpx.ReadTimeout("slow")

    with pytest.raises(TransientProviderError):
        await provider.get_payment("9001")
    assert fake_provider.calls_to("/v1/payments/9001") == 2


async def test_transient_failure_recovers_on_retry(fake_provider):
    fake_provider.add_payment("9001", "approved")
    attempts = {"n": 0}

    def flaky(request: httpx.Request) -> httpx.Response:
        attempts["n"] += 1
        if attempts["n"] == 1:
            return httpx.Response(429, json={"message": "slow down"})
        return fake_provider.handler(request)

    client = ProviderClient(
        access_token="test-access-token",
        base_url=PROVIDER_URL,
        max_attempts=3,
        retry_wait_multiplier=0,
        transport=httpx.MockTransport(flaky),
    )
    payment = await client.get_payment("9001")
    assert payment.status == "approved"
    assert attempts["n"] == 2


async def test_other_4xx_is_not_retried(provider, fake_provider):
    fake_provider.fail_with["9001"] = 400

    with pytest.raises(ProviderRequestError) as exc_info:
        await provider.get_payment("9001")
    assert exc_info.value.status_code == 400
    assert fake_provider.calls_to("/v1/payments/9001") == 1


async def test_missing_token_fails_before_any_request(fake_provider):
    client = ProviderClient(access_token="", base_url=PROVIDER_URL, transport=httpx.MockTransport(fake_provider.handler))
    with pytest.raises(ProviderNotConfiguredError):
        await client.get_payment("9001")
    assert fake_provider.requests == []


async def test_update_subscription_status_puts_status(provider, fake_provider):
    fake_provider.add_preapproval("pre-1", "authorized")

    snapshot = await provider.update_subscription_status("pre-1", "paused")

    assert snapshot.status == "paused"
    assert fake_provider.requests[-1].method == "PUT"


def test_with_timeout_keeps_transport_and_credentials(provider):
    clone = provider.with_timeout(3.0)
    assert clone.timeout == 3.0
    assert clone.access_token == provider.access_token
    assert clone._transport is provider._transport
