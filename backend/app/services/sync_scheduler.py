"""SyncScheduler: polling fallback for missed or failed webhook deliveries.

Each run selects ledger rows whose local state may have drifted from the
provider and feeds them to the Reconciler with bounded concurrency. Per-item
failures are recorded in the report and never abort the batch.

Runs as an asyncio.Task owned by this instance (started and stopped by the app
lifespan), and on demand through the admin API. A Redis ``SET NX EX`` flag
short-circuits a second concurrent full run; overlapping runs would still be
correct, only wasteful.
"""

import asyncio
import json
from collections.abc import Awaitable
from datetime import UTC, datetime

import structlog
from redis.asyncio import Redis

from app.core.config import Settings, get_settings
from app.core.exceptions import ReconcilerError
from app.core.locking import AdvisoryLock
from app.db.models.webhook_log import WebhookLog
from app.db.redis import redis_key
from app.domain.statuses import WebhookStatus
from app.metrics.cloudwatch import emit_business_event
from app.schemas.reports import SyncHealth, SyncItem, SyncItemKind, SyncReport
from app.services.ledger_store import LedgerStore
from app.services.reconciler import Reconciler
from app.services.webhook_ingestion import DISPATCHED_EVENT_TYPES, WebhookIngestion

logger = structlog.get_logger(__name__)

DEGRADED_ERROR_RATIO = 0.2
CRITICAL_ERROR_RATIO = 0.5

RUN_LOCK_NAME = "sync:run"


def health_status(error_ratio: float) -> str:
    if error_ratio > CRITICAL_ERROR_RATIO:
        return "critical"
    if error_ratio > DEGRADED_ERROR_RATIO:
        return "degraded"
    return "healthy"


class SyncScheduler:
    """Owned background component; running state lives on the instance."""

    def __init__(
        self,
        store: LedgerStore,
        reconciler: Reconciler,
        redis: Redis,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.reconciler = reconciler.with_provider_timeout(self.settings.sync_provider_timeout_seconds)
        self.redis = redis
        self._replayer = WebhookIngestion(store, self.reconciler, self.settings)
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self._log = logger.bind(component="sync_scheduler")

    @property
    def health_key(self) -> str:
        return redis_key("sync", "health")

    # ── Lifecycle ──────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the periodic loop. No-op if already running."""
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name="sync-scheduler")
        self._log.info("sync_scheduler_started", interval_seconds=self.settings.sync_interval_seconds)

    async def stop(self, timeout: float = 10.0) -> None:
        """Signal the loop to exit and wait for the current run to finish."""
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            self._log.info("sync_scheduler_stopped")

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                # Non-fatal: the next tick retries
                self._log.exception("sync_run_crashed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.settings.sync_interval_seconds)
            except asyncio.TimeoutError:
                pass

    # ── Runs ───────────────────────────────────────────────────────────

    async def run_once(self, max_age_hours: int | None = None, now: datetime | None = None) -> SyncReport:
        """Reconcile every stale candidate once.

        Args:
            max_age_hours: Only orders created within this window (default SYNC_MAX_AGE_HOURS)
            now: Current time (for deterministic testing)

        Returns:
            SyncReport; ``skipped_reason="already_running"`` if another run holds the flag
        """
        now = now or datetime.now(UTC)
        max_age_hours = max_age_hours or self.settings.sync_max_age_hours
        lock = AdvisoryLock(self.redis, RUN_LOCK_NAME, ttl=max(self.settings.sync_interval_seconds * 2, 60))

        async with lock.hold() as acquired:
            if not acquired:
                self._log.info("sync_run_skipped", reason="already_running")
                return SyncReport(skipped=True, skipped_reason="already_running", started_at=now, finished_at=now)
            report = await self._run(max_age_hours, now)

        await self._record_health(report)
        if report.errors:
            await emit_business_event("sync_run_errors", value=float(report.errors))
        self._log.info(
            "sync_run_completed",
            processed=report.processed,
            updated=report.updated,
            expired=report.expired,
            errors=report.errors,
        )
        return report

    async def _run(self, max_age_hours: int, now: datetime) -> SyncReport:
        settings = self.settings
        report = SyncReport(started_at=now)

        expired_ids = await self.store.expired_order_ids(now, settings.order_expiry_hours, settings.sync_batch_limit)
        order_ids = await self.store.stale_order_ids(
            now, max_age_hours, settings.sync_stale_after_minutes, settings.sync_batch_limit
        )
        # A wide admin window can overlap the expiry cutoff; expiry wins
        expiring = set(expired_ids)
        order_ids = [order_id for order_id in order_ids if order_id not in expiring]
        subscription_ids = await self.store.subscription_candidate_ids(now.date(), settings.sync_batch_limit)
        webhooks = await self.store.replayable_webhooks(
            now, settings.sync_stale_after_minutes, settings.sync_batch_limit
        )
        self._log.info(
            "sync_candidates_selected",
            orders=len(order_ids),
            subscriptions=len(subscription_ids),
            webhooks=len(webhooks),
            expired_orders=len(expired_ids),
        )

        semaphore = asyncio.Semaphore(settings.provider_max_concurrency)
        jobs: list[Awaitable[SyncItem]] = []
        for order_id in order_ids:
            jobs.append(self._bounded(semaphore, "order", str(order_id), self._sync_order(order_id, now)))
        for subscription_id in subscription_ids:
            jobs.append(
                self._bounded(semaphore, "subscription", str(subscription_id), self._sync_subscription(subscription_id, now))
            )
        for row in webhooks:
            jobs.append(self._bounded(semaphore, "webhook", row.event_id, self._replay_webhook(row, now)))
        for order_id in expired_ids:
            jobs.append(self._bounded(semaphore, "order_expiry", str(order_id), self._expire_order(order_id, now)))

        for item in await asyncio.gather(*jobs):
            report.record(item)
        report.finished_at = datetime.now(UTC)
        return report

    async def _bounded(
        self,
        semaphore: asyncio.Semaphore,
        kind: SyncItemKind,
        reference: str,
        work: Awaitable[str],
    ) -> SyncItem:
        async with semaphore:
            try:
                result = await work
                return SyncItem(kind=kind, reference=reference, result=result)
            except ReconcilerError as e:
                self._log.warning("sync_item_failed", kind=kind, reference=reference, error=str(e), error_type=type(e).__name__)
                return SyncItem(kind=kind, reference=reference, result="error", error=str(e), retryable=e.retryable)
            except Exception as e:
                self._log.exception("sync_item_crashed", kind=kind, reference=reference)
                return SyncItem(kind=kind, reference=reference, result="error", error=f"{type(e).__name__}: {e}", retryable=True)

    async def _sync_order(self, order_id: int, now: datetime) -> str:
        outcome = await self.reconciler.reconcile_order(order_id, now=now)
        return "updated" if outcome.changed or outcome.billing_recorded else "unchanged"

    async def _expire_order(self, order_id: int, now: datetime) -> str:
        outcome = await self.reconciler.expire_order(order_id, now=now)
        return "updated" if outcome.changed else "unchanged"

    async def _sync_subscription(self, subscription_id: int, now: datetime) -> str:
        outcome = await self.reconciler.reconcile_subscription(subscription_id=subscription_id, now=now)
        return "updated" if outcome.changed or outcome.renewal_recorded else "unchanged"

    async def _replay_webhook(self, row: WebhookLog, now: datetime) -> str:
        """Re-run a stuck or retryable-failed delivery through the ingestion path."""
        if row.status == WebhookStatus.FAILED.value:
            if not await self.store.reclaim_webhook(row.event_id, WebhookStatus.FAILED.value):
                return "unchanged"
        if row.event_type not in DISPATCHED_EVENT_TYPES:
            await self.store.mark_webhook_processed(row.event_id, now)
            return "unchanged"
        ack = await self._replayer.process(
            row.event_id,
            row.event_type,
            row.resource_id,
            timeout=self.settings.sync_provider_timeout_seconds * max(self.settings.provider_max_attempts, 1),
            now=now,
        )
        if ack.status == "processed":
            return "updated"
        raise _ReplayFailed(ack.detail or ack.status, retryable=ack.status == "deferred")

    # ── Health ─────────────────────────────────────────────────────────

    async def _record_health(self, report: SyncReport) -> None:
        entry = json.dumps(
            {
                "processed": report.processed,
                "updated": report.updated,
                "errors": report.errors,
                "finished_at": (report.finished_at or datetime.now(UTC)).isoformat(),
            }
        )
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lpush(self.health_key, entry)
            pipe.ltrim(self.health_key, 0, self.settings.sync_health_window - 1)
            await pipe.execute()

    async def health(self) -> SyncHealth:
        """Error ratio over the last ``sync_health_window`` runs."""
        raw = await self.redis.lrange(self.health_key, 0, self.settings.sync_health_window - 1)
        runs = [json.loads(item) for item in raw]
        processed = sum(run["processed"] for run in runs)
        errors = sum(run["errors"] for run in runs)
        ratio = errors / processed if processed else 0.0
        return SyncHealth(
            status=health_status(ratio),
            error_ratio=round(ratio, 4),
            runs=len(runs),
            processed=processed,
            errors=errors,
            last_run_at=datetime.fromisoformat(runs[0]["finished_at"]) if runs else None,
        )


class _ReplayFailed(ReconcilerError):
    """A replayed webhook was recorded as failed or deferred again."""

    def __init__(self, message: str, retryable: bool):
        self.retryable = retryable
        super().__init__(message)
