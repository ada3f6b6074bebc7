"""FastAPI dependency providers for the reconciliation services.

Long-lived collaborators (notification dispatcher, sync scheduler) live on
``app.state`` and are created by the lifespan. Everything else is cheap and
built per request. Override any of these in tests via app.dependency_overrides.
"""

from fastapi import Depends, Request

from app.core.config import get_settings
from app.db.base import get_session_factory
from app.db.redis import get_redis
from app.integrations.provider import ProviderClient, get_provider_client
from app.services.consolidator import Consolidator
from app.services.ledger_store import LedgerStore
from app.services.notifications import NotificationDispatcher
from app.services.reconciler import Reconciler
from app.services.sync_scheduler import SyncScheduler
from app.services.webhook_ingestion import WebhookIngestion


def get_ledger_store() -> LedgerStore:
    return LedgerStore(get_session_factory())


def get_notifications(request: Request) -> NotificationDispatcher:
    dispatcher = getattr(request.app.state, "notifications", None)
    if dispatcher is None:
        dispatcher = NotificationDispatcher()
        request.app.state.notifications = dispatcher
    return dispatcher


def get_reconciler(
    store: LedgerStore = Depends(get_ledger_store),
    provider: ProviderClient = Depends(get_provider_client),
    notifications: NotificationDispatcher = Depends(get_notifications),
) -> Reconciler:
    return Reconciler(store, provider, notifications)


def get_webhook_ingestion(
    store: LedgerStore = Depends(get_ledger_store),
    reconciler: Reconciler = Depends(get_reconciler),
) -> WebhookIngestion:
    settings = get_settings()
    # Provider calls on the webhook path get the short timeout
    return WebhookIngestion(store, reconciler.with_provider_timeout(settings.webhook_provider_timeout_seconds))


def get_sync_scheduler(
    request: Request,
    store: LedgerStore = Depends(get_ledger_store),
    reconciler: Reconciler = Depends(get_reconciler),
) -> SyncScheduler:
    scheduler = getattr(request.app.state, "sync_scheduler", None)
    if scheduler is not None:
        return scheduler
    return SyncScheduler(store, reconciler, get_redis())


def get_consolidator(store: LedgerStore = Depends(get_ledger_store)) -> Consolidator:
    return Consolidator(store, get_redis())
