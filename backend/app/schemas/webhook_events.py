"""Closed set of provider webhook events, discriminated on ``type``.

Payloads are validated into one of these before any business logic runs.
Anything outside the known tags fails validation.
"""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class EventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        # Provider ids arrive as ints or strings
        return str(value) if value is not None else value


class _EventBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    action: str | None = None
    live_mode: bool | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        # Provider ids arrive as ints or strings
        return str(value) if value is not None else value


class PaymentEvent(_EventBase):
    type: Literal["payment"]
    data: EventData


class PreapprovalEvent(_EventBase):
    type: Literal["subscription_preapproval"]
    data: EventData


class AuthorizedPaymentEvent(_EventBase):
    type: Literal["subscription_authorized_payment"]
    data: EventData


class HousekeepingEvent(_EventBase):
    """Notifications acknowledged without reconciliation."""

    type: Literal["topic_merchant_order_wh", "merchant_order", "plan", "invoice"]
    data: EventData | None = None


WebhookEvent = Annotated[
    PaymentEvent | PreapprovalEvent | AuthorizedPaymentEvent | HousekeepingEvent,
    Field(discriminator="type"),
]

webhook_event_adapter: TypeAdapter[WebhookEvent] = TypeAdapter(WebhookEvent)


def parse_webhook_event(raw_body: bytes | str) -> WebhookEvent:
    """Validate a raw JSON body into a typed event.

    Raises:
        pydantic.ValidationError: on invalid JSON, unknown type, or missing fields
    """
    return webhook_event_adapter.validate_json(raw_body)
