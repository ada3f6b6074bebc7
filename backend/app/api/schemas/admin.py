"""Admin API Pydantic schemas."""

from typing import Literal

from pydantic import BaseModel, Field

from app.schemas.reports import ConsolidationReport

SubscriptionAction = Literal["pause", "resume", "cancel"]

# Provider preapproval status requested for each admin action
PROVIDER_STATUS_FOR_ACTION: dict[str, str] = {
    "pause": "paused",
    "resume": "authorized",
    "cancel": "cancelled",
}


class SyncRunRequest(BaseModel):
    max_age_hours: int | None = Field(default=None, ge=1, le=24 * 90)


class ConsolidateAllResponse(BaseModel):
    keys: int
    consolidated: int
    aborted: int
    reports: list[ConsolidationReport]
