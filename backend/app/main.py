"""Payment Reconciler: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# Logging is configured before the app modules below create their loggers
from app.core.logging import configure_structlog
from app.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse

from app.api.routes import api_router
from app.core.config import get_settings
from app.db import init_db, close_db, init_redis, close_redis, get_redis
from app.db.base import get_session_factory
from app.integrations.provider import get_provider_client
from app.middleware.correlation import setup_correlation_middleware
from app.services.ledger_store import LedgerStore
from app.services.notifications import NotificationDispatcher
from app.services.reconciler import Reconciler
from app.services.sync_scheduler import SyncScheduler

logger = structlog.get_logger(__name__)


def validate_webhook_config() -> None:
    """Fail fast if production would accept unsigned webhooks."""
    settings = get_settings()
    if settings.is_production and not settings.provider_webhook_secret:
        raise RuntimeError("PROVIDER_WEBHOOK_SECRET is required in production")
    if not settings.webhook_signature_enforced:
        logger.warning("webhook_signature_not_enforced", environment=settings.environment)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # Set on SIGTERM; /api/health answers 503 while the load balancer drains
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", draining=True)

    signal.signal(signal.SIGTERM, handle_sigterm)

    # Startup
    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    validate_webhook_config()

    await init_db()
    logger.info("db_initialized")

    await init_redis()
    logger.info("redis_initialized")

    app.state.notifications = NotificationDispatcher()
    reconciler = Reconciler(
        LedgerStore(get_session_factory()),
        get_provider_client(),
        app.state.notifications,
    )
    app.state.sync_scheduler = SyncScheduler(reconciler.store, reconciler, get_redis(), settings)
    if settings.sync_enabled:
        app.state.sync_scheduler.start()

    yield

    # Shutdown
    logger.info("shutdown_begin")
    await app.state.sync_scheduler.stop()
    await app.state.notifications.drain()
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


def _error_response(request: Request, status_code: int, detail, event: str, **fields) -> JSONResponse:
    """Log ``event`` under a fresh debug_id and answer with only the detail and that id.

    The correlation id is attached by the logging chain.
    """
    debug_id = str(uuid.uuid4())
    logger.error(
        event,
        status_code=status_code,
        debug_id=debug_id,
        path=request.url.path,
        method=request.method,
        detail=detail,
        **fields,
    )
    return JSONResponse(status_code=status_code, content={"detail": detail, "debug_id": debug_id})


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error_response(request, exc.status_code, exc.detail, "http_exception")


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Tracebacks stay in the log; the client sees a generic 500
    return _error_response(
        request, 500, "Internal server error", "unhandled_exception", error_type=type(exc).__name__, exc_info=exc
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Payment and subscription reconciliation against the payment provider",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_correlation_middleware(app)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(api_router, prefix="/api")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
