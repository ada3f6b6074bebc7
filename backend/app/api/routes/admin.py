"""Admin API routes: manual sync, subscription actions, duplicate cleanup, webhook stats."""

from fastapi import APIRouter, Body, Depends, HTTPException

from app.api.deps import (
    get_consolidator,
    get_ledger_store,
    get_reconciler,
    get_sync_scheduler,
)
from app.api.schemas.admin import (
    PROVIDER_STATUS_FOR_ACTION,
    ConsolidateAllResponse,
    SubscriptionAction,
    SyncRunRequest,
)
from app.core.auth import AdminPrincipal, require_admin
from app.core.exceptions import (
    EntityNotFoundError,
    InvariantViolation,
    ProviderNotConfiguredError,
    ProviderRequestError,
    ReconcilerError,
    StoreConflictError,
    TransientProviderError,
)
from app.schemas.reports import (
    ConsolidationReport,
    OrderOutcome,
    SubscriptionOutcome,
    SyncHealth,
    SyncReport,
    WebhookStats,
)
from app.services.consolidator import Consolidator
from app.services.ledger_store import LedgerStore
from app.services.reconciler import Reconciler
from app.services.sync_scheduler import SyncScheduler

router = APIRouter(prefix="/admin", tags=["admin"])


def _http_error(exc: ReconcilerError) -> HTTPException:
    """Map the reconciler taxonomy onto admin HTTP status codes."""
    if isinstance(exc, EntityNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (InvariantViolation, StoreConflictError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (TransientProviderError, ProviderNotConfiguredError)):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, ProviderRequestError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


# ---------- Force sync ----------


@router.post("/orders/{order_id}/sync", response_model=OrderOutcome)
async def sync_order(
    order_id: int,
    _: AdminPrincipal = Depends(require_admin),
    reconciler: Reconciler = Depends(get_reconciler),
):
    """Force-reconcile one order, even if already terminal."""
    try:
        return await reconciler.reconcile_order(order_id, force=True)
    except ReconcilerError as e:
        raise _http_error(e) from e


@router.post("/subscriptions/{subscription_id}/sync", response_model=SubscriptionOutcome)
async def sync_subscription(
    subscription_id: int,
    _: AdminPrincipal = Depends(require_admin),
    reconciler: Reconciler = Depends(get_reconciler),
):
    """Force-reconcile one subscription."""
    try:
        return await reconciler.reconcile_subscription(subscription_id=subscription_id, force=True)
    except ReconcilerError as e:
        raise _http_error(e) from e


@router.post("/sync/run", response_model=SyncReport)
async def run_sync(
    body: SyncRunRequest | None = Body(default=None),
    _: AdminPrincipal = Depends(require_admin),
    scheduler: SyncScheduler = Depends(get_sync_scheduler),
):
    """Run one full sync pass now."""
    return await scheduler.run_once(max_age_hours=body.max_age_hours if body else None)


@router.get("/sync/health", response_model=SyncHealth)
async def sync_health(
    _: AdminPrincipal = Depends(require_admin),
    scheduler: SyncScheduler = Depends(get_sync_scheduler),
):
    """Error ratio over the recent sync runs."""
    return await scheduler.health()


# ---------- Subscription actions ----------


@router.post("/subscriptions/{subscription_id}/{action}", response_model=SubscriptionOutcome)
async def subscription_action(
    subscription_id: int,
    action: SubscriptionAction,
    _: AdminPrincipal = Depends(require_admin),
    store: LedgerStore = Depends(get_ledger_store),
    reconciler: Reconciler = Depends(get_reconciler),
):
    """Pause, resume or cancel at the provider, then reconcile the local row."""
    sub = await store.get_subscription(subscription_id)
    if sub is None:
        raise HTTPException(status_code=404, detail="Subscription not found")
    if not sub.provider_subscription_id:
        raise HTTPException(status_code=409, detail="Subscription has no provider agreement yet")

    try:
        await reconciler.provider.update_subscription_status(
            sub.provider_subscription_id, PROVIDER_STATUS_FOR_ACTION[action]
        )
        return await reconciler.reconcile_subscription(subscription_id=subscription_id)
    except ReconcilerError as e:
        raise _http_error(e) from e


# ---------- Duplicate cleanup ----------


@router.post("/consolidate", response_model=ConsolidateAllResponse)
async def consolidate_all(
    _: AdminPrincipal = Depends(require_admin),
    consolidator: Consolidator = Depends(get_consolidator),
):
    """Consolidate every correlation key that has duplicate subscriptions."""
    reports = await consolidator.consolidate_all()
    return ConsolidateAllResponse(
        keys=len(reports),
        consolidated=sum(1 for r in reports if r.removed_ids),
        aborted=sum(1 for r in reports if r.aborted),
        reports=reports,
    )


@router.post("/consolidate/{correlation_key}", response_model=ConsolidationReport)
async def consolidate_key(
    correlation_key: str,
    _: AdminPrincipal = Depends(require_admin),
    consolidator: Consolidator = Depends(get_consolidator),
):
    """Collapse duplicate subscriptions sharing one correlation key."""
    return await consolidator.consolidate(correlation_key)


# ---------- Webhooks ----------


@router.get("/webhooks/stats", response_model=WebhookStats)
async def webhook_stats(
    _: AdminPrincipal = Depends(require_admin),
    store: LedgerStore = Depends(get_ledger_store),
):
    """Delivery counts and success rate across the Webhook Log."""
    return await store.webhook_stats()
