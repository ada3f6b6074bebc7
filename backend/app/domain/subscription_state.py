"""Subscription lifecycle state machine.

Pure domain logic with no external dependencies.
"""

from app.core.exceptions import InvariantViolation
from app.domain.statuses import SubscriptionStatus

# Valid state transitions
TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.PENDING: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED, SubscriptionStatus.PAYMENT_FAILED}
    ),
    SubscriptionStatus.ACTIVE: frozenset(
        {SubscriptionStatus.PAUSED, SubscriptionStatus.CANCELLED, SubscriptionStatus.PAYMENT_FAILED}
    ),
    SubscriptionStatus.PAUSED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED}),
    SubscriptionStatus.PAYMENT_FAILED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED}),
    SubscriptionStatus.CANCELLED: frozenset(),  # Terminal state
}

# Entering ACTIVE from these states is backed by a realized charge
CHARGE_BACKED_SOURCES = frozenset({SubscriptionStatus.PENDING, SubscriptionStatus.PAYMENT_FAILED})


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def validate_transition(current: SubscriptionStatus | str, target: SubscriptionStatus | str) -> None:
    """Raise InvariantViolation unless ``current -> target`` is a legal transition.

    A transition to the same status is not a transition and is rejected here;
    callers treat it as a no-op before asking.
    """
    current = SubscriptionStatus(current)
    target = SubscriptionStatus(target)
    if not can_transition(current, target):
        raise InvariantViolation(
            f"Illegal subscription transition {current.value} -> {target.value}",
            current=current.value,
            target=target.value,
        )


def is_charge_backed_activation(current: SubscriptionStatus | str, target: SubscriptionStatus | str) -> bool:
    return (
        SubscriptionStatus(target) == SubscriptionStatus.ACTIVE
        and SubscriptionStatus(current) in CHARGE_BACKED_SOURCES
    )


def is_terminal(status: SubscriptionStatus | str) -> bool:
    return not TRANSITIONS[SubscriptionStatus(status)]
