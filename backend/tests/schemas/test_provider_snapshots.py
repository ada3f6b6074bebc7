"""Tests for provider snapshot parsing and the subscription metadata bag."""

from datetime import date
from decimal import Decimal

import pytest

from app.schemas.ledger import SubscriptionMetadata
from app.schemas.provider import AuthorizedPayment, PaymentSnapshot, SubscriptionSnapshot

pytestmark = pytest.mark.unit


def test_payment_snapshot_parses_provider_shape():
    payment = PaymentSnapshot.model_validate(
        {
            "id": 9001,
            "status": "approved",
            "transaction_amount": 49.9,
            "external_reference": "ORD-1",
            "payer": {"email": "p@example.com", "identification": {"type": "DNI"}},
            "date_created": "2025-01-01T10:00:00.000-03:00",
            "fee_details": [],
        }
    )
    assert payment.id == "9001"
    assert payment.payer_email == "p@example.com"
    assert payment.correlation_key == "ORD-1"
    assert payment.transaction_amount == Decimal("49.9")


def test_subscription_snapshot_next_payment_day():
    snapshot = SubscriptionSnapshot.model_validate(
        {
            "id": "pre-1",
            "status": "authorized",
            "next_payment_date": "2025-02-01T12:00:00.000-03:00",
            "auto_recurring": {"frequency": 1, "frequency_type": "months", "transaction_amount": 29.9},
        }
    )
    assert snapshot.next_payment_day == date(2025, 2, 1)
    assert snapshot.auto_recurring.frequency_type == "months"


def test_authorized_payment_links_preapproval():
    authorized = AuthorizedPayment.model_validate(
        {"id": 77, "preapproval_id": "pre-1", "payment": {"id": 9100, "status": "approved"}}
    )
    assert authorized.id == "77"
    assert authorized.payment.id == "9100"


def test_metadata_merge_later_values_win_and_keep_extra():
    base = SubscriptionMetadata(collection_id="c-1", payer_email="old@example.com", extra={"a": 1})
    merged = base.merged_with(SubscriptionMetadata(payer_email="new@example.com", extra={"b": 2}))
    assert merged.collection_id == "c-1"
    assert merged.payer_email == "new@example.com"
    assert merged.extra == {"a": 1, "b": 2}
    assert base.payer_email == "old@example.com"


def test_metadata_merge_with_none_copies():
    base = SubscriptionMetadata(provider_reference="SUB-x")
    merged = base.merged_with(None)
    assert merged == base
    assert merged is not base
    assert merged.has_provider_correlation()
