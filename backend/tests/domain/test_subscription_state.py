"""Tests for the subscription lifecycle state machine."""

import pytest

from app.core.exceptions import InvariantViolation
from app.domain.statuses import SubscriptionStatus as S
from app.domain.subscription_state import (
    TRANSITIONS,
    can_transition,
    is_charge_backed_activation,
    is_terminal,
    validate_transition,
)

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    "current,target",
    [
        (S.PENDING, S.ACTIVE),
        (S.PENDING, S.CANCELLED),
        (S.PENDING, S.PAYMENT_FAILED),
        (S.ACTIVE, S.PAUSED),
        (S.ACTIVE, S.CANCELLED),
        (S.ACTIVE, S.PAYMENT_FAILED),
        (S.PAUSED, S.ACTIVE),
        (S.PAUSED, S.CANCELLED),
        (S.PAYMENT_FAILED, S.ACTIVE),
        (S.PAYMENT_FAILED, S.CANCELLED),
    ],
)
def test_legal_transitions(current, target):
    assert can_transition(current, target)
    validate_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (S.CANCELLED, S.ACTIVE),
        (S.CANCELLED, S.PENDING),
        (S.ACTIVE, S.PENDING),
        (S.PAUSED, S.PAYMENT_FAILED),
        (S.ACTIVE, S.ACTIVE),
    ],
)
def test_illegal_transitions_raise(current, target):
    assert not can_transition(current, target)
    with pytest.raises(InvariantViolation) as exc_info:
        validate_transition(current, target)
    assert exc_info.value.current == current.value
    assert exc_info.value.target == target.value


def test_validate_transition_accepts_plain_strings():
    validate_transition("pending", "active")


def test_cancelled_is_the_only_terminal_state():
    assert [s for s in TRANSITIONS if is_terminal(s)] == [S.CANCELLED]


def test_charge_backed_activation():
    assert is_charge_backed_activation(S.PENDING, S.ACTIVE)
    assert is_charge_backed_activation("payment_failed", "active")
    assert not is_charge_backed_activation(S.PAUSED, S.ACTIVE)
    assert not is_charge_backed_activation(S.PENDING, S.CANCELLED)
