"""WebhookIngestion: authenticate, deduplicate and dispatch provider notifications.

Flow per delivery:
1. Verify the ``x-signature`` header (HMAC-SHA256 over ``"{ts}.{body}"``)
2. Validate the body into a typed event
3. Claim the event id in the Webhook Log (duplicates are acked untouched)
4. Dispatch to the Reconciler under a bounded timeout

Only authentication and malformed input surface as errors to the caller. Every
internal failure is recorded on the log row and acknowledged, so the provider
never retries an event we cannot use; retryable ones are replayed by the sync
scheduler.
"""

import asyncio
import hashlib
import hmac
from collections.abc import Mapping
from datetime import UTC, datetime

import structlog
from pydantic import ValidationError

from app.core.config import Settings, get_settings
from app.core.exceptions import (
    AuthenticationError,
    MalformedEventError,
    ProviderNotConfiguredError,
    ReconcilerError,
    TransientProviderError,
)
from app.schemas.reports import AckResult
from app.schemas.webhook_events import HousekeepingEvent, parse_webhook_event
from app.services.ledger_store import LedgerStore
from app.services.reconciler import Reconciler

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-signature"

EVENT_PAYMENT = "payment"
EVENT_PREAPPROVAL = "subscription_preapproval"
EVENT_AUTHORIZED_PAYMENT = "subscription_authorized_payment"
DISPATCHED_EVENT_TYPES = frozenset({EVENT_PAYMENT, EVENT_PREAPPROVAL, EVENT_AUTHORIZED_PAYMENT})


def _parse_signature_header(header: str) -> tuple[str, str]:
    parts: dict[str, str] = {}
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    ts, v1 = parts.get("ts"), parts.get("v1")
    if not ts or not v1:
        raise AuthenticationError("Invalid signature format")
    return ts, v1


def compute_signature(secret: str, ts: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode(), f"{ts}.".encode() + raw_body, hashlib.sha256).hexdigest()


def verify_signature(
    raw_body: bytes,
    header: str | None,
    secret: str,
    now: datetime,
    tolerance_seconds: int,
) -> None:
    """Raise AuthenticationError unless ``header`` signs ``raw_body`` with ``secret``.

    The timestamp may be in seconds or milliseconds and must be within
    ``tolerance_seconds`` of ``now``.
    """
    if not header:
        raise AuthenticationError("Missing signature header")
    ts, v1 = _parse_signature_header(header)
    try:
        ts_value = int(ts)
    except ValueError as e:
        raise AuthenticationError("Invalid signature timestamp") from e
    ts_seconds = ts_value / 1000 if ts_value > 10**12 else ts_value
    if abs(now.timestamp() - ts_seconds) > tolerance_seconds:
        raise AuthenticationError("Signature timestamp outside tolerance")
    if not hmac.compare_digest(compute_signature(secret, ts, raw_body), v1):
        raise AuthenticationError("Invalid signature")


class WebhookIngestion:
    """Turns raw provider deliveries into at-most-once reconciler invocations."""

    def __init__(self, store: LedgerStore, reconciler: Reconciler, settings: Settings | None = None):
        self.store = store
        self.reconciler = reconciler
        self.settings = settings or get_settings()

    def authenticate(self, raw_body: bytes, headers: Mapping[str, str], now: datetime) -> None:
        """Raises:
        ProviderNotConfiguredError: enforcement is on but no secret is configured
        AuthenticationError: signature missing, stale or wrong
        """
        secret = self.settings.provider_webhook_secret
        header = headers.get(SIGNATURE_HEADER)
        if not self.settings.webhook_signature_enforced:
            logger.warning("webhook_signature_not_enforced", environment=self.settings.environment)
            return
        if not secret:
            raise ProviderNotConfiguredError("Webhook secret not configured")
        verify_signature(raw_body, header, secret, now, self.settings.webhook_timestamp_tolerance_seconds)

    async def handle(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        now: datetime | None = None,
    ) -> AckResult:
        """Authenticate, dedup and process one delivery.

        Raises:
            ProviderNotConfiguredError: signature enforcement without a secret
            AuthenticationError: bad signature; nothing is recorded
            MalformedEventError: body is not a known event; nothing is recorded
        """
        now = now or datetime.now(UTC)
        self.authenticate(raw_body, headers, now)

        try:
            event = parse_webhook_event(raw_body)
        except ValidationError as e:
            logger.warning("webhook_malformed", errors=e.error_count(), detail=str(e)[:500])
            raise MalformedEventError(f"Unrecognized webhook payload: {e.error_count()} validation errors") from e

        log = logger.bind(event_id=event.id, event_type=event.type)
        resource_id = event.data.id if event.data is not None else None
        claim = await self.store.claim_webhook(event.id, event.type, event.action, resource_id, now)
        if not claim.acquired:
            log.info("webhook_duplicate_ignored", status=claim.status)
            return AckResult(event_id=event.id, status="duplicate", detail=claim.status)

        if isinstance(event, HousekeepingEvent):
            await self.store.mark_webhook_processed(event.id, now)
            log.info("webhook_housekeeping_acked")
            return AckResult(event_id=event.id, status="ignored")

        return await self.process(event.id, event.type, resource_id, self.settings.webhook_timeout_seconds, now)

    async def process(
        self,
        event_id: str,
        event_type: str,
        resource_id: str | None,
        timeout: float,
        now: datetime,
    ) -> AckResult:
        """Run the reconciler for a claimed log row and record the outcome on it."""
        log = logger.bind(event_id=event_id, event_type=event_type, resource_id=resource_id)
        try:
            await asyncio.wait_for(self.dispatch(event_type, resource_id, now), timeout=timeout)
        except (TransientProviderError, asyncio.TimeoutError) as e:
            detail = str(e) or f"Reconciliation exceeded {timeout}s"
            await self.store.mark_webhook_deferred(event_id, detail)
            log.warning("webhook_deferred", error=detail, error_type=type(e).__name__)
            return AckResult(event_id=event_id, status="deferred", detail=detail)
        except ProviderNotConfiguredError as e:
            await self.store.mark_webhook_failed(event_id, str(e), retryable=True)
            log.error("webhook_failed", error=str(e), error_type=type(e).__name__)
            return AckResult(event_id=event_id, status="failed", detail=str(e))
        except ReconcilerError as e:
            await self.store.mark_webhook_failed(event_id, str(e), retryable=e.retryable)
            log.warning("webhook_failed", error=str(e), error_type=type(e).__name__)
            return AckResult(event_id=event_id, status="failed", detail=str(e))
        except Exception as e:
            await self.store.mark_webhook_failed(event_id, f"{type(e).__name__}: {e}", retryable=True)
            log.exception("webhook_processing_error")
            return AckResult(event_id=event_id, status="failed", detail=type(e).__name__)

        await self.store.mark_webhook_processed(event_id, now)
        log.info("webhook_processed")
        return AckResult(event_id=event_id, status="processed")

    async def dispatch(self, event_type: str, resource_id: str | None, now: datetime) -> None:
        """Route one event to the reconciler.

        Raises:
            MalformedEventError: event carries no resource id or has an unknown type
        """
        if not resource_id:
            raise MalformedEventError(f"{event_type} event without data.id")

        if event_type == EVENT_PAYMENT:
            await self.reconciler.reconcile_payment(resource_id, now=now)
        elif event_type == EVENT_PREAPPROVAL:
            await self.reconciler.reconcile_subscription(provider_subscription_id=resource_id, now=now)
        elif event_type == EVENT_AUTHORIZED_PAYMENT:
            authorized = await self.reconciler.provider.get_authorized_payment(resource_id)
            await self.reconciler.reconcile_subscription(provider_subscription_id=authorized.preapproval_id, now=now)
        else:
            raise MalformedEventError(f"No dispatch route for event type {event_type}")
