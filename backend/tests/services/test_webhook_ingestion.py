"""Tests for webhook authentication, deduplication and dispatch."""

import asyncio
import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import httpx
import pytest

from app.core.exceptions import AuthenticationError, MalformedEventError, ProviderNotConfiguredError
from app.services.webhook_ingestion import WebhookIngestion, compute_signature, verify_signature

pytestmark = pytest.mark.unit

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)
SECRET = "whsec-test"


def _signed(payload: dict, ts: int | None = None, secret: str = SECRET) -> tuple[bytes, dict[str, str]]:
    body = json.dumps(payload).encode()
    ts = str(ts if ts is not None else int(NOW.timestamp()))
    return body, {"x-signature": f"ts={ts},v1={compute_signature(secret, ts, body)}"}


def _payment_event(event_id: str = "evt-100", payment_id: str = "9001") -> dict:
    return {"id": event_id, "type": "payment", "action": "payment.updated", "data": {"id": payment_id}}


@pytest.fixture
def ingestion(store, reconciler, settings) -> WebhookIngestion:
    return WebhookIngestion(store, reconciler, settings)


# ---------------------------------------------------------------------------
# Signature verification
# ---------------------------------------------------------------------------


def test_verify_signature_accepts_valid_header():
    body, headers = _signed(_payment_event())
    verify_signature(body, headers["x-signature"], SECRET, NOW, tolerance_seconds=600)


def test_verify_signature_accepts_millisecond_timestamp():
    body, headers = _signed(_payment_event(), ts=int(NOW.timestamp() * 1000))
    verify_signature(body, headers["x-signature"], SECRET, NOW, tolerance_seconds=600)


@pytest.mark.parametrize(
    "header",
    [None, "", "v1=abc", "ts=123", "ts=notanumber,v1=abc"],
)
def test_verify_signature_rejects_malformed_headers(header):
    with pytest.raises(AuthenticationError):
        verify_signature(b"{}", header, SECRET, NOW, tolerance_seconds=600)


def test_verify_signature_rejects_wrong_secret():
    body, headers = _signed(_payment_event(), secret="other")
    with pytest.raises(AuthenticationError):
        verify_signature(body, headers["x-signature"], SECRET, NOW, tolerance_seconds=600)


def test_verify_signature_rejects_tampered_body():
    body, headers = _signed(_payment_event())
    with pytest.raises(AuthenticationError):
        verify_signature(body.replace(b"9001", b"9002"), headers["x-signature"], SECRET, NOW, tolerance_seconds=600)


def test_verify_signature_rejects_stale_timestamp():
    body, headers = _signed(_payment_event(), ts=int(NOW.timestamp()) - 601)
    with pytest.raises(AuthenticationError):
        verify_signature(body, headers["x-signature"], SECRET, NOW, tolerance_seconds=600)


# ---------------------------------------------------------------------------
# handle()
# ---------------------------------------------------------------------------


async def test_duplicate_delivery_is_acked_without_second_reconcile(ingestion, store, fake_provider, make_order):
    order = await make_order("ORD-1001")
    fake_provider.add_payment("9001", "approved", external_reference="ORD-1001")
    body, headers = _signed(_payment_event("evt-100"))

    first = await ingestion.handle(body, headers, now=NOW)
    calls_after_first = fake_provider.calls_to("/v1/payments/9001")
    second = await ingestion.handle(body, headers, now=NOW)

    assert first.status == "processed"
    assert second.status == "duplicate"
    assert fake_provider.calls_to("/v1/payments/9001") == calls_after_first
    assert (await store.get_order(order.id)).payment_status == "paid"
    row = await store.get_webhook("evt-100")
    assert row.status == "processed"
    assert row.processed_at is not None


async def test_bad_signature_records_nothing(ingestion, store):
    body, headers = _signed(_payment_event(), secret="attacker")

    with pytest.raises(AuthenticationError):
        await ingestion.handle(body, headers, now=NOW)

    assert await store.get_webhook("evt-100") is None


async def test_malformed_payload_records_nothing(ingestion, store):
    body, headers = _signed({"id": "evt-x", "type": "chargeback", "data": {"id": "1"}})

    with pytest.raises(MalformedEventError):
        await ingestion.handle(body, headers, now=NOW)

    assert await store.get_webhook("evt-x") is None


async def test_missing_secret_fails_closed(store, reconciler, settings):
    ingestion = WebhookIngestion(store, reconciler, settings.model_copy(update={"provider_webhook_secret": ""}))
    body, headers = _signed(_payment_event())

    with pytest.raises(ProviderNotConfiguredError):
        await ingestion.handle(body, headers, now=NOW)


async def test_signature_check_can_be_disabled_outside_production(store, reconciler, settings, fake_provider, make_order):
    relaxed = settings.model_copy(update={"webhook_signature_required": False})
    ingestion = WebhookIngestion(store, reconciler, relaxed)
    await make_order("ORD-1001")
    fake_provider.add_payment("9001", "approved", external_reference="ORD-1001")

    ack = await ingestion.handle(json.dumps(_payment_event()).encode(), {}, now=NOW)

    assert ack.status == "processed"


def test_production_always_enforces_signatures(settings):
    prod = settings.model_copy(update={"environment": "production", "webhook_signature_required": False})
    assert prod.webhook_signature_enforced


async def test_housekeeping_event_is_acked_and_ignored(ingestion, store, fake_provider):
    body, headers = _signed({"id": "evt-mo", "type": "topic_merchant_order_wh"})

    ack = await ingestion.handle(body, headers, now=NOW)

    assert ack.status == "ignored"
    assert (await store.get_webhook("evt-mo")).status == "processed"
    assert fake_provider.requests == []


async def test_transient_failure_is_deferred_for_the_scheduler(ingestion, store, fake_provider, make_order):
    await make_order("ORD-1001")
    fake_provider.fail_with["9001"] = httpx.ConnectTimeout("down")
    body, headers = _signed(_payment_event())

    ack = await ingestion.handle(body, headers, now=NOW)

    assert ack.status == "deferred"
    row = await store.get_webhook("evt-100")
    assert row.status == "received"
    assert row.retryable


async def test_unknown_payment_is_failed_not_retryable(ingestion, store, fake_provider):
    body, headers = _signed(_payment_event(payment_id="404404"))

    ack = await ingestion.handle(body, headers, now=NOW)

    assert ack.status == "failed"
    row = await store.get_webhook("evt-100")
    assert row.status == "failed"
    assert not row.retryable


async def test_unexpected_error_is_recorded_retryable(ingestion, store, monkeypatch):
    monkeypatch.setattr(ingestion.reconciler, "reconcile_payment", AsyncMock(side_effect=RuntimeError("kaboom")))
    body, headers = _signed(_payment_event())

    ack = await ingestion.handle(body, headers, now=NOW)

    assert ack.status == "failed"
    row = await store.get_webhook("evt-100")
    assert row.retryable
    assert "kaboom" in row.error_detail


async def test_slow_reconcile_times_out_and_defers(store, reconciler, settings, monkeypatch):
    ingestion = WebhookIngestion(store, reconciler, settings.model_copy(update={"webhook_timeout_seconds": 0.05}))

    async def slow(*args, **kwargs):
        await asyncio.sleep(1)

    monkeypatch.setattr(reconciler, "reconcile_payment", slow)
    body, headers = _signed(_payment_event())

    ack = await ingestion.handle(body, headers, now=NOW)

    assert ack.status == "deferred"
    assert (await store.get_webhook("evt-100")).status == "received"


async def test_preapproval_event_reconciles_subscription(ingestion, store, fake_provider, make_subscription):
    sub = await make_subscription(cadence="monthly", provider_subscription_id="pre-1")
    fake_provider.add_preapproval("pre-1", "authorized")
    body, headers = _signed({"id": "evt-pre", "type": "subscription_preapproval", "data": {"id": "pre-1"}})

    ack = await ingestion.handle(body, headers, now=NOW)

    assert ack.status == "processed"
    assert (await store.get_subscription(sub.id)).status == "active"


async def test_authorized_payment_event_resolves_preapproval(ingestion, store, fake_provider, make_subscription):
    sub = await make_subscription(cadence="monthly", provider_subscription_id="pre-1")
    fake_provider.add_preapproval("pre-1", "authorized")
    fake_provider.add_authorized_payment("555", "pre-1")
    body, headers = _signed({"id": "evt-ap", "type": "subscription_authorized_payment", "data": {"id": 555}})

    ack = await ingestion.handle(body, headers, now=NOW)

    assert ack.status == "processed"
    assert fake_provider.calls_to("/authorized_payments/555") == 1
    assert (await store.get_subscription(sub.id)).status == "active"


async def test_failed_event_redelivery_is_reprocessed(ingestion, store, fake_provider, make_order):
    await make_order("ORD-1001")
    body, headers = _signed(_payment_event())
    fake_provider.fail_with["9001"] = 400

    first = await ingestion.handle(body, headers, now=NOW)
    assert first.status == "failed"

    del fake_provider.fail_with["9001"]
    fake_provider.add_payment("9001", "approved", external_reference="ORD-1001")
    second = await ingestion.handle(body, headers, now=NOW)

    assert second.status == "processed"
    assert (await store.get_webhook("evt-100")).attempts == 2
