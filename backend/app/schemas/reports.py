"""Structured outcomes returned by the reconciler, scheduler and consolidator."""

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field


class OrderOutcome(BaseModel):
    order_id: int
    previous_payment_status: str
    payment_status: str
    order_status: str
    provider_payment_id: str | None = None
    changed: bool = False
    billing_recorded: bool = False
    skipped_reason: str | None = None


class SubscriptionOutcome(BaseModel):
    subscription_id: int
    previous_status: str
    status: str
    changed: bool = False
    next_billing_date: date | None = None
    charges_made: int = 0
    billing_recorded: bool = False
    renewal_recorded: bool = False
    skipped_reason: str | None = None


SyncItemKind = Literal["order", "subscription", "webhook", "order_expiry"]
SyncItemResult = Literal["updated", "unchanged", "error"]


class SyncItem(BaseModel):
    kind: SyncItemKind
    reference: str
    result: SyncItemResult
    error: str | None = None
    retryable: bool | None = None


class SyncReport(BaseModel):
    processed: int = 0
    updated: int = 0
    errors: int = 0
    expired: int = 0
    skipped: bool = False
    skipped_reason: str | None = None
    items: list[SyncItem] = Field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def error_ratio(self) -> float:
        return self.errors / self.processed if self.processed else 0.0

    def record(self, item: SyncItem) -> None:
        self.items.append(item)
        self.processed += 1
        if item.result == "updated":
            self.updated += 1
            if item.kind == "order_expiry":
                self.expired += 1
        elif item.result == "error":
            self.errors += 1


HealthStatus = Literal["healthy", "degraded", "critical"]


class SyncHealth(BaseModel):
    status: HealthStatus
    error_ratio: float
    runs: int
    processed: int
    errors: int
    last_run_at: datetime | None = None


class ConsolidationReport(BaseModel):
    correlation_key: str
    candidates: int
    canonical_id: int | None = None
    removed_ids: list[int] = Field(default_factory=list)
    scores: dict[int, int] = Field(default_factory=dict)
    filled_fields: list[str] = Field(default_factory=list)
    aborted: bool = False
    skipped_reason: str | None = None


AckStatus = Literal["processed", "duplicate", "ignored", "deferred", "failed"]


class AckResult(BaseModel):
    """What the webhook endpoint tells the provider. Always HTTP 200."""

    event_id: str
    status: AckStatus
    detail: str | None = None


class WebhookStats(BaseModel):
    total: int
    processed: int
    failed: int
    received: int
    retryable: int
    success_rate: float
