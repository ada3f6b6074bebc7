"""LedgerStore: persistence boundary for orders, subscriptions, webhooks and billing.

Every write to an Order or Subscription row is a conditional UPDATE scoped by id
and the status the caller last observed. A write that matches no row lost a race
and reports ``applied=False``; callers re-read and decide. Billing History rows
are inserted in the same transaction as the status write that realizes them.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Literal

import structlog
from sqlalchemy import and_, case, delete, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import InvariantViolation
from app.db.models.billing_history import BillingHistory
from app.db.models.order import Order
from app.db.models.subscription import Subscription
from app.db.models.webhook_log import WebhookLog
from app.domain.statuses import (
    SYNCABLE_SUBSCRIPTION_STATUSES,
    ChargeStatus,
    OrderStatus,
    PaymentStatus,
    SubscriptionStatus,
    WebhookStatus,
)
from app.schemas.reports import WebhookStats

logger = structlog.get_logger(__name__)

_UNSET: Any = object()


@dataclass(frozen=True)
class ChargeRecord:
    """A realized charge to append to Billing History."""

    charge_key: str
    status: ChargeStatus
    billing_date: date
    amount: Decimal | None = None
    provider_payment_id: str | None = None
    order_id: int | None = None
    subscription_id: int | None = None


@dataclass(frozen=True)
class WriteResult:
    applied: bool
    charge_recorded: bool = False


ClaimOutcome = Literal["claimed", "reclaimed", "duplicate"]


@dataclass(frozen=True)
class WebhookClaim:
    outcome: ClaimOutcome
    status: str  # status of the row after the claim attempt

    @property
    def acquired(self) -> bool:
        return self.outcome in ("claimed", "reclaimed")


class LedgerStore:
    """Row-level access to the four ledger tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ── Orders ─────────────────────────────────────────────────────────

    async def get_order(self, order_id: int) -> Order | None:
        async with self.session_factory() as session:
            return await session.get(Order, order_id)

    async def get_order_by_correlation_key(self, correlation_key: str) -> Order | None:
        async with self.session_factory() as session:
            result = await session.execute(select(Order).where(Order.correlation_key == correlation_key))
            return result.scalar_one_or_none()

    async def update_order_if(
        self,
        order_id: int,
        expected_payment_status: str,
        values: dict[str, Any],
        charge: ChargeRecord | None = None,
    ) -> WriteResult:
        """Apply ``values`` only while payment_status still equals the expected one."""
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    update(Order)
                    .where(Order.id == order_id, Order.payment_status == expected_payment_status)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    return WriteResult(applied=False)
                recorded = await self._insert_charge(session, charge) if charge else False
                await session.commit()
                return WriteResult(applied=True, charge_recorded=recorded)
            except IntegrityError:
                await session.rollback()
                logger.info("order_write_conflict", order_id=order_id)
                return WriteResult(applied=False)

    async def touch_order(self, order_id: int, now: datetime, provider_payment_id: str | None = None) -> None:
        """Record a sync attempt; fills provider_payment_id only if still empty."""
        async with self.session_factory() as session:
            await session.execute(update(Order).where(Order.id == order_id).values(last_synced_at=now))
            if provider_payment_id:
                await session.execute(
                    update(Order)
                    .where(Order.id == order_id, Order.provider_payment_id.is_(None))
                    .values(provider_payment_id=provider_payment_id, updated_at=now)
                )
            await session.commit()

    # ── Subscriptions ──────────────────────────────────────────────────

    async def get_subscription(self, subscription_id: int) -> Subscription | None:
        async with self.session_factory() as session:
            return await session.get(Subscription, subscription_id)

    async def list_subscriptions_by_key(self, correlation_key: str) -> list[Subscription]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Subscription)
                .where(Subscription.correlation_key == correlation_key)
                .order_by(Subscription.created_at, Subscription.id)
            )
            return list(result.scalars().all())

    async def count_subscriptions_by_key(self, correlation_key: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(Subscription).where(Subscription.correlation_key == correlation_key)
            )
            return result.scalar_one()

    async def find_subscription_by_provider_id(self, provider_subscription_id: str) -> Subscription | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Subscription)
                .where(Subscription.provider_subscription_id == provider_subscription_id)
                .order_by(Subscription.id)
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def find_open_subscription(self, user_id: str, product_id: str) -> Subscription | None:
        """Most recent non-terminal row for a user/product pair."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Subscription)
                .where(
                    Subscription.user_id == user_id,
                    Subscription.product_id == product_id,
                    Subscription.status != SubscriptionStatus.CANCELLED.value,
                )
                .order_by(Subscription.created_at.desc(), Subscription.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def has_other_active(self, subscription_id: int, user_id: str | None, product_id: str | None) -> bool:
        async with self.session_factory() as session:
            return await self._has_other_active(session, subscription_id, user_id, product_id)

    @staticmethod
    async def _has_other_active(
        session: AsyncSession, subscription_id: int, user_id: str | None, product_id: str | None
    ) -> bool:
        if user_id is None or product_id is None:
            return False
        result = await session.execute(
            select(Subscription.id).where(
                Subscription.user_id == user_id,
                Subscription.product_id == product_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.id != subscription_id,
            )
        )
        return result.first() is not None

    async def update_subscription_if(
        self,
        subscription_id: int,
        expected_status: str,
        values: dict[str, Any],
        expected_next_billing_date: date | None = _UNSET,
        charge: ChargeRecord | None = None,
    ) -> WriteResult:
        """Apply ``values`` only while the row still has the observed status.

        When ``expected_next_billing_date`` is given it joins the predicate, which
        makes renewal roll-forwards single-shot. Entering ``active`` re-checks the
        one-active-per-user-product invariant inside the same transaction.

        Raises:
            InvariantViolation: if another row for the same user/product is active
        """
        async with self.session_factory() as session:
            try:
                if values.get("status") == SubscriptionStatus.ACTIVE.value and (
                    expected_status != SubscriptionStatus.ACTIVE.value
                ):
                    row = await session.get(Subscription, subscription_id)
                    if row is not None and await self._has_other_active(
                        session, subscription_id, row.user_id, row.product_id
                    ):
                        await session.rollback()
                        raise InvariantViolation(
                            f"Another active subscription exists for user {row.user_id} product {row.product_id}",
                            current=expected_status,
                            target=SubscriptionStatus.ACTIVE.value,
                        )

                predicate = [Subscription.id == subscription_id, Subscription.status == expected_status]
                if expected_next_billing_date is not _UNSET:
                    if expected_next_billing_date is None:
                        predicate.append(Subscription.next_billing_date.is_(None))
                    else:
                        predicate.append(Subscription.next_billing_date == expected_next_billing_date)

                result = await session.execute(
                    update(Subscription)
                    .where(*predicate)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    return WriteResult(applied=False)
                recorded = await self._insert_charge(session, charge) if charge else False
                await session.commit()
                return WriteResult(applied=True, charge_recorded=recorded)
            except IntegrityError:
                await session.rollback()
                logger.info("subscription_write_conflict", subscription_id=subscription_id)
                return WriteResult(applied=False)

    async def save_merged_subscription(
        self, subscription_id: int, expected_status: str, values: dict[str, Any]
    ) -> bool:
        result = await self.update_subscription_if(subscription_id, expected_status, values)
        return result.applied

    async def delete_subscriptions_if_count(
        self,
        correlation_key: str,
        canonical_id: int,
        remove_ids: list[int],
        expected_count: int,
    ) -> bool:
        """Delete duplicates in one batch, unless rows for the key changed meanwhile.

        Billing History rows of removed subscriptions are re-pointed at the
        canonical row so the ledger keeps its history.
        """
        if not remove_ids:
            return True
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(Subscription).where(Subscription.correlation_key == correlation_key)
            )
            if result.scalar_one() != expected_count:
                await session.rollback()
                return False
            await session.execute(
                update(BillingHistory)
                .where(BillingHistory.subscription_id.in_(remove_ids))
                .values(subscription_id=canonical_id)
            )
            await session.execute(
                delete(Subscription).where(
                    Subscription.id.in_(remove_ids),
                    Subscription.correlation_key == correlation_key,
                )
            )
            await session.commit()
            return True

    async def duplicated_correlation_keys(self, limit: int = 500) -> list[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Subscription.correlation_key)
                .group_by(Subscription.correlation_key)
                .having(func.count(Subscription.id) > 1)
                .order_by(Subscription.correlation_key)
                .limit(limit)
            )
            return list(result.scalars().all())

    # ── Billing History ────────────────────────────────────────────────

    @staticmethod
    async def _insert_charge(session: AsyncSession, charge: ChargeRecord) -> bool:
        """Insert a billing row unless its charge key is already recorded."""
        existing = await session.execute(
            select(BillingHistory.id).where(BillingHistory.charge_key == charge.charge_key)
        )
        if existing.first() is not None:
            return False
        session.add(
            BillingHistory(
                charge_key=charge.charge_key,
                order_id=charge.order_id,
                subscription_id=charge.subscription_id,
                provider_payment_id=charge.provider_payment_id,
                amount=charge.amount,
                status=charge.status.value,
                billing_date=charge.billing_date,
            )
        )
        await session.flush()
        return True

    async def record_charge(self, charge: ChargeRecord) -> bool:
        """Standalone append, used for failed charges that change no status."""
        async with self.session_factory() as session:
            try:
                recorded = await self._insert_charge(session, charge)
                await session.commit()
                return recorded
            except IntegrityError:
                await session.rollback()
                return False

    async def has_charge(self, charge_key: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BillingHistory.id).where(BillingHistory.charge_key == charge_key)
            )
            return result.first() is not None

    async def list_billing(
        self, order_id: int | None = None, subscription_id: int | None = None
    ) -> list[BillingHistory]:
        async with self.session_factory() as session:
            stmt = select(BillingHistory).order_by(BillingHistory.id)
            if order_id is not None:
                stmt = stmt.where(BillingHistory.order_id == order_id)
            if subscription_id is not None:
                stmt = stmt.where(BillingHistory.subscription_id == subscription_id)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ── Sync candidates ────────────────────────────────────────────────

    async def stale_order_ids(
        self, now: datetime, max_age_hours: int, stale_after_minutes: int, limit: int
    ) -> list[int]:
        """Pending orders inside the age window that look stuck or lack a payment id."""
        created_after = now - timedelta(hours=max_age_hours)
        stale_before = now - timedelta(minutes=stale_after_minutes)
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order.id)
                .where(
                    Order.payment_status == PaymentStatus.PENDING.value,
                    Order.created_at >= created_after,
                    or_(Order.updated_at <= stale_before, Order.provider_payment_id.is_(None)),
                )
                .order_by(Order.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def expired_order_ids(self, now: datetime, expiry_hours: int, limit: int) -> list[int]:
        """Pending orders past the expiry window that never got a provider payment."""
        cutoff = now - timedelta(hours=expiry_hours)
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order.id)
                .where(
                    Order.status == OrderStatus.PENDING.value,
                    Order.payment_status == PaymentStatus.PENDING.value,
                    Order.provider_payment_id.is_(None),
                    Order.created_at < cutoff,
                )
                .order_by(Order.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def subscription_candidate_ids(self, today: date, limit: int) -> list[int]:
        """Live subscriptions to re-verify, or ones whose billing date passed unbilled."""
        billed = exists().where(
            and_(
                BillingHistory.subscription_id == Subscription.id,
                BillingHistory.billing_date == Subscription.next_billing_date,
            )
        )
        async with self.session_factory() as session:
            result = await session.execute(
                select(Subscription.id)
                .where(
                    Subscription.status.in_([s.value for s in SYNCABLE_SUBSCRIPTION_STATUSES]),
                    or_(
                        Subscription.provider_subscription_id.is_not(None),
                        and_(Subscription.next_billing_date < today, ~billed),
                    ),
                )
                .order_by(Subscription.last_synced_at.is_not(None), Subscription.last_synced_at, Subscription.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def replayable_webhooks(self, now: datetime, stale_after_minutes: int, limit: int) -> list[WebhookLog]:
        """Rows stuck in ``received`` past the threshold, or failed and retryable."""
        stale_before = now - timedelta(minutes=stale_after_minutes)
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookLog)
                .where(
                    or_(
                        and_(
                            WebhookLog.status == WebhookStatus.RECEIVED.value,
                            WebhookLog.received_at <= stale_before,
                        ),
                        and_(
                            WebhookLog.status == WebhookStatus.FAILED.value,
                            WebhookLog.retryable.is_(True),
                        ),
                    )
                )
                .order_by(WebhookLog.received_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    # ── Webhook Log ────────────────────────────────────────────────────

    async def get_webhook(self, event_id: str) -> WebhookLog | None:
        async with self.session_factory() as session:
            result = await session.execute(select(WebhookLog).where(WebhookLog.event_id == event_id))
            return result.scalar_one_or_none()

    async def claim_webhook(
        self,
        event_id: str,
        event_type: str,
        action: str | None,
        resource_id: str | None,
        now: datetime,
    ) -> WebhookClaim:
        """Insert a ``received`` row, or re-claim a ``failed`` one.

        ``processed`` and ``received`` rows are duplicates. A concurrent insert
        of the same event id loses on the unique key and is a duplicate too.
        """
        existing = await self.get_webhook(event_id)
        if existing is None:
            async with self.session_factory() as session:
                try:
                    session.add(
                        WebhookLog(
                            event_id=event_id,
                            event_type=event_type,
                            action=action,
                            resource_id=resource_id,
                            status=WebhookStatus.RECEIVED.value,
                            received_at=now,
                        )
                    )
                    await session.commit()
                    return WebhookClaim("claimed", WebhookStatus.RECEIVED.value)
                except IntegrityError:
                    await session.rollback()
                    return WebhookClaim("duplicate", WebhookStatus.RECEIVED.value)

        if existing.status == WebhookStatus.FAILED.value:
            if await self.reclaim_webhook(event_id, WebhookStatus.FAILED.value):
                return WebhookClaim("reclaimed", WebhookStatus.RECEIVED.value)
        return WebhookClaim("duplicate", existing.status)

    async def reclaim_webhook(self, event_id: str, expected_status: str) -> bool:
        """Compare-and-set a row back to ``received`` for another attempt."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(WebhookLog)
                .where(WebhookLog.event_id == event_id, WebhookLog.status == expected_status)
                .values(
                    status=WebhookStatus.RECEIVED.value,
                    attempts=WebhookLog.attempts + 1,
                    error_detail=None,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def mark_webhook_processed(self, event_id: str, now: datetime) -> None:
        await self._finish_webhook(
            event_id,
            status=WebhookStatus.PROCESSED.value,
            error_detail=None,
            retryable=False,
            processed_at=now,
        )

    async def mark_webhook_failed(self, event_id: str, detail: str, retryable: bool) -> None:
        await self._finish_webhook(
            event_id,
            status=WebhookStatus.FAILED.value,
            error_detail=detail[:2000],
            retryable=retryable,
        )

    async def mark_webhook_deferred(self, event_id: str, detail: str) -> None:
        """Leave the row ``received`` so the scheduler picks it up later."""
        await self._finish_webhook(
            event_id,
            status=WebhookStatus.RECEIVED.value,
            error_detail=detail[:2000],
            retryable=True,
        )

    async def _finish_webhook(self, event_id: str, **values: Any) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(WebhookLog)
                .where(WebhookLog.event_id == event_id, WebhookLog.status != WebhookStatus.PROCESSED.value)
                .values(**values)
            )
            await session.commit()

    async def webhook_stats(self) -> WebhookStats:
        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    func.count(WebhookLog.id),
                    func.sum(case((WebhookLog.status == WebhookStatus.PROCESSED.value, 1), else_=0)),
                    func.sum(case((WebhookLog.status == WebhookStatus.FAILED.value, 1), else_=0)),
                    func.sum(case((WebhookLog.status == WebhookStatus.RECEIVED.value, 1), else_=0)),
                    func.sum(case((WebhookLog.retryable.is_(True), 1), else_=0)),
                )
            )
            total, processed, failed, received, retryable = result.one()
        total = total or 0
        processed = processed or 0
        return WebhookStats(
            total=total,
            processed=processed,
            failed=failed or 0,
            received=received or 0,
            retryable=retryable or 0,
            success_rate=round(processed / total, 4) if total else 0.0,
        )
