"""Versioned sub-documents stored in JSON columns of the ledger tables."""

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field


class LineItem(BaseModel):
    product_id: str
    name: str | None = None
    quantity: int = 1
    unit_price: Decimal | None = None


class ShippingDestination(BaseModel):
    recipient: str | None = None
    street: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None


class OrderSnapshot(BaseModel):
    """Cart and shipping captured at checkout. Immutable once written."""

    version: int = 1
    items: list[LineItem] = Field(default_factory=list)
    shipping: ShippingDestination | None = None
    customer_email: str | None = None


class SubscriptionMetadata(BaseModel):
    """Open key/value bag merged across reconciliation events.

    Well-known provider keys are explicit fields; anything else lands in ``extra``.
    """

    version: int = 1
    collection_id: str | None = None
    provider_reference: str | None = None
    first_payment_id: str | None = None
    preapproval_status: str | None = None
    payer_email: str | None = None
    last_event_id: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    def merged_with(self, other: "SubscriptionMetadata | None") -> "SubscriptionMetadata":
        """Return a new bag where ``other``'s non-empty values win on collision."""
        if other is None:
            return self.model_copy(deep=True)
        base = self.model_dump(exclude={"extra"})
        for key, value in other.model_dump(exclude={"extra"}).items():
            if value is not None:
                base[key] = value
        extra = {**self.extra, **other.extra}
        return SubscriptionMetadata(**base, extra=extra)

    def has_provider_correlation(self) -> bool:
        return bool(self.collection_id or self.provider_reference)
