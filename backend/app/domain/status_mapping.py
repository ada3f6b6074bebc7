"""Fixed tables mapping provider statuses onto local ledger statuses.

Anything not in a table means "no local change".
"""

from app.domain.statuses import OrderStatus, PaymentStatus, SubscriptionStatus

PAYMENT_STATUS_MAP: dict[str, PaymentStatus] = {
    "approved": PaymentStatus.PAID,
    "rejected": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.FAILED,
}

ORDER_STATUS_FOR_PAYMENT: dict[PaymentStatus, OrderStatus] = {
    PaymentStatus.PAID: OrderStatus.CONFIRMED,
    PaymentStatus.FAILED: OrderStatus.CANCELLED,
}

PREAPPROVAL_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "authorized": SubscriptionStatus.ACTIVE,
    "active": SubscriptionStatus.ACTIVE,
    "paused": SubscriptionStatus.PAUSED,
    "cancelled": SubscriptionStatus.CANCELLED,
}

# Status of a payment observed against a subscription (first charge or renewal)
SUBSCRIPTION_PAYMENT_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "approved": SubscriptionStatus.ACTIVE,
    "rejected": SubscriptionStatus.PAYMENT_FAILED,
    "cancelled": SubscriptionStatus.PAYMENT_FAILED,
}


def map_payment_status(provider_status: str | None) -> PaymentStatus | None:
    if not provider_status:
        return None
    return PAYMENT_STATUS_MAP.get(provider_status.lower())


def map_preapproval_status(provider_status: str | None) -> SubscriptionStatus | None:
    if not provider_status:
        return None
    return PREAPPROVAL_STATUS_MAP.get(provider_status.lower())


def map_subscription_payment_status(provider_status: str | None) -> SubscriptionStatus | None:
    if not provider_status:
        return None
    return SUBSCRIPTION_PAYMENT_STATUS_MAP.get(provider_status.lower())
