"""Typed snapshots of provider resources.

Only the fields the reconciler reads are declared; the provider sends many more.
"""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, field_validator


class _ProviderModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("id", mode="before", check_fields=False)
    @classmethod
    def _coerce_id(cls, value):
        # Provider ids arrive as ints for payments and strings for preapprovals
        return str(value) if value is not None else value


class Payer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str | None = None


class PaymentSnapshot(_ProviderModel):
    """GET /v1/payments/{id}"""

    id: str
    status: str
    status_detail: str | None = None
    transaction_amount: Decimal | None = None
    external_reference: str | None = None
    payer: Payer | None = None
    date_created: datetime | None = None
    date_approved: datetime | None = None
    preapproval_id: str | None = None
    collection_id: str | None = None

    @property
    def payer_email(self) -> str | None:
        return self.payer.email if self.payer else None

    @property
    def correlation_key(self) -> str | None:
        return self.external_reference


class AutoRecurring(BaseModel):
    model_config = ConfigDict(extra="ignore")

    frequency: int | None = None
    frequency_type: str | None = None
    transaction_amount: Decimal | None = None


class SubscriptionSnapshot(_ProviderModel):
    """GET /preapproval/{id}"""

    id: str
    status: str
    external_reference: str | None = None
    payer_email: str | None = None
    next_payment_date: datetime | None = None
    date_created: datetime | None = None
    reason: str | None = None
    preapproval_plan_id: str | None = None
    auto_recurring: AutoRecurring | None = None

    @property
    def correlation_key(self) -> str | None:
        return self.external_reference

    @property
    def next_payment_day(self) -> date | None:
        return self.next_payment_date.date() if self.next_payment_date else None


class AuthorizedPaymentCharge(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    status: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        return str(value) if value is not None else value


class AuthorizedPayment(_ProviderModel):
    """GET /authorized_payments/{id}: one recurring charge of a preapproval."""

    id: str
    preapproval_id: str
    status: str | None = None
    transaction_amount: Decimal | None = None
    debit_date: datetime | None = None
    payment: AuthorizedPaymentCharge | None = None
