"""Fire-and-forget notification dispatch on ledger transitions.

The reconciler only guarantees a notification is attempted. Delivery runs in a
background task; failures are logged and never propagate back into the
reconciliation that triggered them.
"""

import asyncio
from typing import Any, Protocol

import structlog

from app.metrics.cloudwatch import emit_business_event

logger = structlog.get_logger(__name__)


class NotificationEvent:
    """Event names sent to the notifier and counted as business metrics."""

    ORDER_PAID = "order_paid"
    ORDER_EXPIRED = "order_expired"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription_payment_failed"


class Notifier(Protocol):
    async def send(self, event: str, payload: dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Default notifier: records the transition in the structured log."""

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        logger.info("notification_sent", notification=event, **payload)


class NotificationDispatcher:
    def __init__(self, notifier: Notifier | None = None) -> None:
        self.notifier: Notifier = notifier or LoggingNotifier()
        self._pending: set[asyncio.Task] = set()

    def dispatch(self, event: str, payload: dict[str, Any]) -> None:
        """Schedule delivery and return immediately."""
        task = asyncio.create_task(self._deliver(event, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: str, payload: dict[str, Any]) -> None:
        await emit_business_event(event)
        try:
            await self.notifier.send(event, payload)
        except Exception as e:
            logger.warning("notification_failed", notification=event, error=str(e), error_type=type(e).__name__)

    async def drain(self) -> None:
        """Wait for in-flight deliveries. Used at shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
