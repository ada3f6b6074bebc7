"""Consolidator: collapse Subscription rows that share a correlation key.

Duplicates appear when a checkout is retried before the first attempt's row is
reconciled. The most complete row (see app.domain.scoring) is kept; metadata
bags of every row are merged into it, empty fields are filled from the others,
and the rest are deleted in one batch.

The delete re-counts rows for the key first and is abandoned if new ones
appeared meanwhile; the merge is kept and the report says ``aborted``. A
per-key Redis advisory lock keeps two consolidators off the same key.
"""

from datetime import UTC, datetime

import structlog
from redis.asyncio import Redis

from app.core.locking import AdvisoryLock
from app.db.models.subscription import Subscription
from app.domain.scoring import completeness_score, created_sort_key, select_canonical
from app.schemas.ledger import SubscriptionMetadata
from app.schemas.reports import ConsolidationReport
from app.services.ledger_store import LedgerStore

logger = structlog.get_logger(__name__)

# Canonical columns that may be filled from a discarded duplicate when empty
FILLABLE_FIELDS = (
    "user_id",
    "product_id",
    "product_name",
    "cadence",
    "base_price",
    "discount_percentage",
    "discounted_price",
    "provider_subscription_id",
    "provider_payment_id",
    "provider_preference_id",
    "activated_at",
    "last_billing_date",
    "next_billing_date",
    "trial_end_date",
)


def merge_metadata(rows: list[Subscription]) -> SubscriptionMetadata:
    """Fold every bag oldest-first so later rows win on key collisions."""
    merged = SubscriptionMetadata()
    for row in sorted(rows, key=lambda r: (created_sort_key(r), r.id)):
        merged = merged.merged_with(row.metadata_)
    return merged


class Consolidator:
    """Deterministic duplicate cleanup, safe to re-run."""

    LOCK_TTL = 120

    def __init__(self, store: LedgerStore, redis: Redis):
        self.store = store
        self.redis = redis

    async def consolidate(self, correlation_key: str, now: datetime | None = None) -> ConsolidationReport:
        """Collapse all rows for ``correlation_key`` into the most complete one."""
        now = now or datetime.now(UTC)
        log = logger.bind(correlation_key=correlation_key)
        lock = AdvisoryLock(self.redis, f"consolidate:{correlation_key}", ttl=self.LOCK_TTL)

        async with lock.hold() as acquired:
            if not acquired:
                log.info("consolidation_skipped", reason="locked")
                return ConsolidationReport(correlation_key=correlation_key, candidates=0, skipped_reason="locked")

            rows = await self.store.list_subscriptions_by_key(correlation_key)
            if len(rows) <= 1:
                return ConsolidationReport(
                    correlation_key=correlation_key,
                    candidates=len(rows),
                    canonical_id=rows[0].id if rows else None,
                    skipped_reason="no_duplicates",
                )

            scores = {row.id: completeness_score(row) for row in rows}
            canonical = select_canonical(rows)
            others = [row for row in rows if row.id != canonical.id]
            report = ConsolidationReport(
                correlation_key=correlation_key,
                candidates=len(rows),
                canonical_id=canonical.id,
                scores=scores,
            )

            values = self._merge_values(canonical, rows, others, now, report)
            if not await self.store.save_merged_subscription(canonical.id, canonical.status, values):
                # Canonical row changed status under us; let the next run decide
                report.aborted = True
                report.skipped_reason = "canonical_changed"
                log.warning("consolidation_aborted", reason="canonical_changed", canonical_id=canonical.id)
                return report

            remove_ids = [row.id for row in others]
            deleted = await self.store.delete_subscriptions_if_count(
                correlation_key, canonical.id, remove_ids, expected_count=len(rows)
            )
            if not deleted:
                report.aborted = True
                report.skipped_reason = "rows_changed"
                log.warning("consolidation_delete_aborted", canonical_id=canonical.id)
                return report

            report.removed_ids = remove_ids
            log.info(
                "subscriptions_consolidated",
                canonical_id=canonical.id,
                removed=len(remove_ids),
                canonical_score=scores[canonical.id],
            )
            return report

    @staticmethod
    def _merge_values(
        canonical: Subscription,
        rows: list[Subscription],
        others: list[Subscription],
        now: datetime,
        report: ConsolidationReport,
    ) -> dict:
        values: dict = {"metadata_": merge_metadata(rows), "updated_at": now}

        # Fill from the next most complete rows first
        donors = sorted(others, key=lambda r: (-completeness_score(r), created_sort_key(r), r.id))
        for field in FILLABLE_FIELDS:
            if getattr(canonical, field) not in (None, ""):
                continue
            for donor in donors:
                value = getattr(donor, field)
                if value not in (None, ""):
                    values[field] = value
                    report.filled_fields.append(field)
                    break

        earliest = min(rows, key=lambda r: (created_sort_key(r), r.id))
        if earliest.id != canonical.id:
            values["created_at"] = earliest.created_at
        return values

    async def consolidate_all(self, now: datetime | None = None) -> list[ConsolidationReport]:
        """Consolidate every correlation key that currently has duplicates."""
        keys = await self.store.duplicated_correlation_keys()
        reports = []
        for key in keys:
            reports.append(await self.consolidate(key, now=now))
        logger.info("consolidation_sweep_completed", keys=len(keys))
        return reports
