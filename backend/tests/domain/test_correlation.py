"""Tests for deterministic subscription correlation keys."""

import hashlib
import json

import pytest

from app.domain.correlation import (
    build_subscription_reference,
    is_subscription_reference,
    parse_subscription_reference,
)

pytestmark = pytest.mark.unit


def test_build_is_deterministic():
    assert build_subscription_reference("user-1", "plan1") == build_subscription_reference("user-1", "plan1")


def test_build_hash_is_md5_of_sorted_pair():
    expected = hashlib.md5(json.dumps({"planId": "plan1", "userId": "u1"}, sort_keys=True).encode()).hexdigest()[:8]
    assert build_subscription_reference("u1", "plan1") == f"SUB-u1-plan1-{expected}"


def test_salt_changes_digest():
    assert build_subscription_reference("u1", "plan1", salt="retry") != build_subscription_reference("u1", "plan1")


def test_parse_round_trips_dashed_user_id():
    user_id = "0f8e2c1a-5b7d-4e21-9c3f-1a2b3c4d5e6f"
    parsed = parse_subscription_reference(build_subscription_reference(user_id, "gold"))
    assert parsed is not None
    assert parsed.user_id == user_id
    assert parsed.product_id == "gold"
    assert len(parsed.digest) == 8


@pytest.mark.parametrize(
    "reference",
    [None, "", "ORD-1001", "SUB-", "SUB-user-plan", "SUB-user-plan-NOTHEX!!", "SUB--plan-0a1b2c3d"],
)
def test_parse_rejects_non_subscription_references(reference):
    assert parse_subscription_reference(reference) is None
    assert not is_subscription_reference(reference)
