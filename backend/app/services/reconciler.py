"""Reconciler: pulls canonical provider state and applies it to the ledger.

Stateless and safe to run concurrently from webhooks, the sync scheduler and
admin actions. Every call re-derives local state from the provider's current
snapshot, so event ordering does not matter. Writes go through conditional
updates; a lost race is re-read and retried once before surfacing as
StoreConflictError.
"""

from datetime import UTC, datetime

import structlog

from app.core.exceptions import EntityNotFoundError, InvariantViolation, StoreConflictError
from app.db.models.order import Order
from app.db.models.subscription import Subscription
from app.domain.cadence import add_cadence, cadence_from_frequency, parse_cadence, roll_forward
from app.domain.correlation import parse_subscription_reference
from app.domain.scoring import select_canonical
from app.domain.status_mapping import (
    ORDER_STATUS_FOR_PAYMENT,
    map_payment_status,
    map_preapproval_status,
    map_subscription_payment_status,
)
from app.domain.statuses import ChargeStatus, OrderStatus, PaymentStatus, SubscriptionStatus
from app.domain.subscription_state import is_charge_backed_activation, validate_transition
from app.integrations.provider import ProviderClient
from app.schemas.ledger import SubscriptionMetadata
from app.schemas.provider import PaymentSnapshot, SubscriptionSnapshot
from app.schemas.reports import OrderOutcome, SubscriptionOutcome
from app.services.ledger_store import ChargeRecord, LedgerStore
from app.services.notifications import NotificationDispatcher, NotificationEvent

logger = structlog.get_logger(__name__)

# One fresh re-read after a lost conditional update, then give up
WRITE_ATTEMPTS = 2

_LIVE_PREAPPROVAL_STATUSES = ("authorized", "active")


def _pick_payment(payments: list[PaymentSnapshot]) -> PaymentSnapshot | None:
    """Prefer an approved payment, else the most recent one."""
    if not payments:
        return None
    approved = [p for p in payments if p.status == "approved"]
    if approved:
        return approved[0]
    dated = [p for p in payments if p.date_created is not None]
    if dated:
        return max(dated, key=lambda p: p.date_created)
    return payments[0]


def _pick_preapproval(preapprovals: list[SubscriptionSnapshot]) -> SubscriptionSnapshot | None:
    if not preapprovals:
        return None
    live = [p for p in preapprovals if p.status in _LIVE_PREAPPROVAL_STATUSES]
    pool = live or preapprovals
    dated = [p for p in pool if p.date_created is not None]
    if dated:
        return max(dated, key=lambda p: p.date_created)
    return pool[0]


class Reconciler:
    """Applies provider truth to Orders and Subscriptions, idempotently."""

    def __init__(
        self,
        store: LedgerStore,
        provider: ProviderClient,
        notifications: NotificationDispatcher | None = None,
    ):
        self.store = store
        self.provider = provider
        self.notifications = notifications or NotificationDispatcher()

    def with_provider_timeout(self, timeout: float) -> "Reconciler":
        """Same reconciler, bounded by a different per-request provider timeout."""
        return Reconciler(self.store, self.provider.with_timeout(timeout), self.notifications)

    # ── Orders ─────────────────────────────────────────────────────────

    async def reconcile_order(self, order_id: int, force: bool = False, now: datetime | None = None) -> OrderOutcome:
        """Bring one order's payment_status in line with the provider.

        Terminal orders (paid/failed) are returned untouched unless ``force``.

        Raises:
            EntityNotFoundError: unknown order, or provider 404 on its payment
            TransientProviderError: provider timeout/5xx after client retries
            InvariantViolation: provider state would reverse a terminal status
            StoreConflictError: conditional update lost twice
        """
        now = now or datetime.now(UTC)
        order = await self.store.get_order(order_id)
        if order is None:
            raise EntityNotFoundError("order", str(order_id))

        if order.payment_status != PaymentStatus.PENDING.value and not force:
            return self._order_outcome(order, order.payment_status, skipped_reason="terminal")

        payment = await self._resolve_order_payment(order)
        if payment is None:
            await self.store.touch_order(order.id, now)
            logger.info("order_reconcile_no_payment", order_id=order.id, correlation_key=order.correlation_key)
            return self._order_outcome(order, order.payment_status, skipped_reason="no_provider_payment")

        return await self._apply_order_payment(order, payment, now)

    async def expire_order(self, order_id: int, now: datetime | None = None) -> OrderOutcome:
        """Cancel a pending order the provider never received a payment for.

        The provider is asked first; if it does know a payment the order is
        reconciled normally instead of expired.

        Raises:
            EntityNotFoundError: unknown order
        """
        now = now or datetime.now(UTC)
        order = await self.store.get_order(order_id)
        if order is None:
            raise EntityNotFoundError("order", str(order_id))
        if order.payment_status != PaymentStatus.PENDING.value:
            return self._order_outcome(order, order.payment_status, skipped_reason="terminal")

        payment = await self._resolve_order_payment(order)
        if payment is not None:
            return await self._apply_order_payment(order, payment, now)

        previous = order.payment_status
        values = {
            "payment_status": PaymentStatus.FAILED.value,
            "status": OrderStatus.CANCELLED.value,
            "updated_at": now,
            "last_synced_at": now,
        }
        result = await self.store.update_order_if(order.id, PaymentStatus.PENDING.value, values)
        fresh = await self.store.get_order(order.id)
        if not result.applied:
            return self._order_outcome(fresh, previous, skipped_reason="lost_race")

        logger.info("order_expired", order_id=order.id, correlation_key=order.correlation_key)
        self.notifications.dispatch(
            NotificationEvent.ORDER_EXPIRED,
            {"order_id": order.id, "user_id": order.user_id, "correlation_key": order.correlation_key},
        )
        return self._order_outcome(fresh, previous, changed=True)

    async def _resolve_order_payment(self, order: Order) -> PaymentSnapshot | None:
        if order.provider_payment_id:
            return await self.provider.get_payment(order.provider_payment_id)
        return _pick_payment(await self.provider.search_payments(order.correlation_key))

    async def _apply_order_payment(self, order: Order, payment: PaymentSnapshot, now: datetime) -> OrderOutcome:
        log = logger.bind(order_id=order.id, provider_payment_id=payment.id)
        previous = order.payment_status
        order_id = order.id
        target = map_payment_status(payment.status)

        if target is None:
            await self.store.touch_order(order.id, now, provider_payment_id=payment.id)
            log.info("order_provider_pending", provider_status=payment.status)
            return self._order_outcome(order, previous, provider_payment_id=payment.id, skipped_reason="provider_pending")

        for _ in range(WRITE_ATTEMPTS):
            if order.payment_status == target.value:
                recorded = False
                if target == PaymentStatus.PAID:
                    # Backfill for rows confirmed outside the reconciler; no-op when present
                    recorded = await self.store.record_charge(self._order_charge(order, payment, now))
                await self.store.touch_order(order.id, now, provider_payment_id=payment.id)
                return self._order_outcome(order, previous, billing_recorded=recorded)

            if order.payment_status != PaymentStatus.PENDING.value:
                log.warning("order_terminal_reversal_rejected", current=order.payment_status, target=target.value)
                raise InvariantViolation(
                    f"Order {order.id} payment_status {order.payment_status} cannot become {target.value}",
                    current=order.payment_status,
                    target=target.value,
                )

            values = {
                "payment_status": target.value,
                "status": ORDER_STATUS_FOR_PAYMENT[target].value,
                "provider_payment_id": payment.id,
                "updated_at": now,
                "last_synced_at": now,
            }
            charge = None
            if target == PaymentStatus.PAID:
                values["confirmed_at"] = now
                charge = self._order_charge(order, payment, now)

            result = await self.store.update_order_if(order.id, PaymentStatus.PENDING.value, values, charge=charge)
            if result.applied:
                log.info("order_reconciled", previous=previous, payment_status=target.value)
                if target == PaymentStatus.PAID:
                    self.notifications.dispatch(
                        NotificationEvent.ORDER_PAID,
                        {"order_id": order.id, "user_id": order.user_id, "provider_payment_id": payment.id},
                    )
                fresh = await self.store.get_order(order.id)
                return self._order_outcome(fresh, previous, changed=True, billing_recorded=result.charge_recorded)

            log.info("order_write_lost_race")
            order = await self.store.get_order(order_id)
            if order is None:
                raise EntityNotFoundError("order", str(order_id))

        raise StoreConflictError("order", order_id)

    @staticmethod
    def _order_charge(order: Order, payment: PaymentSnapshot, now: datetime) -> ChargeRecord:
        billed_at = payment.date_approved or now
        return ChargeRecord(
            charge_key=payment.id,
            status=ChargeStatus.APPROVED,
            billing_date=billed_at.date(),
            amount=payment.transaction_amount if payment.transaction_amount is not None else order.total,
            provider_payment_id=payment.id,
            order_id=order.id,
        )

    @staticmethod
    def _order_outcome(
        order: Order,
        previous: str,
        changed: bool = False,
        billing_recorded: bool = False,
        provider_payment_id: str | None = None,
        skipped_reason: str | None = None,
    ) -> OrderOutcome:
        return OrderOutcome(
            order_id=order.id,
            previous_payment_status=previous,
            payment_status=order.payment_status,
            order_status=order.status,
            provider_payment_id=order.provider_payment_id or provider_payment_id,
            changed=changed,
            billing_recorded=billing_recorded,
            skipped_reason=skipped_reason,
        )

    # ── Subscriptions ──────────────────────────────────────────────────

    async def reconcile_subscription(
        self,
        subscription_id: int | None = None,
        correlation_key: str | None = None,
        provider_subscription_id: str | None = None,
        force: bool = False,
        now: datetime | None = None,
    ) -> SubscriptionOutcome:
        """Bring one subscription in line with its provider preapproval.

        Exactly one of ``subscription_id``, ``correlation_key`` or
        ``provider_subscription_id`` identifies the row.

        Raises:
            ValueError: no reference given
            EntityNotFoundError: no local row, or provider 404
            TransientProviderError: provider timeout/5xx after client retries
            InvariantViolation: illegal transition or a second active row
            StoreConflictError: conditional update lost twice
        """
        now = now or datetime.now(UTC)
        snapshot: SubscriptionSnapshot | None = None

        if subscription_id is not None:
            sub = await self.store.get_subscription(subscription_id)
            if sub is None:
                raise EntityNotFoundError("subscription", str(subscription_id))
        elif correlation_key is not None:
            sub = await self._subscription_for_key(correlation_key)
            if sub is None:
                raise EntityNotFoundError("subscription", correlation_key)
        elif provider_subscription_id is not None:
            sub = await self.store.find_subscription_by_provider_id(provider_subscription_id)
            if sub is None:
                snapshot = await self.provider.get_subscription(provider_subscription_id)
                sub = await self._subscription_for_key(snapshot.external_reference)
            if sub is None:
                raise EntityNotFoundError("subscription", provider_subscription_id)
        else:
            raise ValueError("reconcile_subscription() needs an id, correlation key or provider subscription id")

        return await self._reconcile_subscription_row(sub, force=force, now=now, snapshot=snapshot)

    async def _subscription_for_key(self, correlation_key: str | None) -> Subscription | None:
        """Resolve a correlation key to one local row.

        Duplicates sharing the key resolve to the row the consolidator would keep.
        ``SUB-{user}-{product}-{hash}`` keys minted on a retried checkout fall back
        to the open row for that user/product pair.
        """
        if not correlation_key:
            return None
        rows = await self.store.list_subscriptions_by_key(correlation_key)
        if rows:
            return select_canonical(rows)
        parsed = parse_subscription_reference(correlation_key)
        if parsed is None:
            return None
        return await self.store.find_open_subscription(parsed.user_id, parsed.product_id)

    async def _fetch_preapproval(self, sub: Subscription) -> SubscriptionSnapshot | None:
        if sub.provider_subscription_id:
            return await self.provider.get_subscription(sub.provider_subscription_id)
        return _pick_preapproval(await self.provider.search_subscriptions(sub.correlation_key))

    async def _reconcile_subscription_row(
        self,
        sub: Subscription,
        force: bool,
        now: datetime,
        snapshot: SubscriptionSnapshot | None = None,
        payment: PaymentSnapshot | None = None,
    ) -> SubscriptionOutcome:
        if sub.status == SubscriptionStatus.CANCELLED.value and not force:
            return self._subscription_outcome(sub, sub.status, skipped_reason="terminal")

        if snapshot is None:
            snapshot = await self._fetch_preapproval(sub)

        target = self._subscription_target(snapshot, payment)
        if target is None and payment is None and sub.status in (
            SubscriptionStatus.PENDING.value,
            SubscriptionStatus.PAYMENT_FAILED.value,
        ):
            # No decisive preapproval state yet: fall back to first-payment evidence
            payment = _pick_payment(await self.provider.search_payments(sub.correlation_key))
            target = self._subscription_target(snapshot, payment)

        if sub.status == SubscriptionStatus.PAYMENT_FAILED.value and target == SubscriptionStatus.ACTIVE:
            # An authorized preapproval alone does not settle a failed charge
            payment = await self._recovery_payment(sub, payment)
            if payment is None:
                target = None

        return await self._apply_subscription(sub, target, snapshot, payment, now)

    async def _recovery_payment(self, sub: Subscription, payment: PaymentSnapshot | None) -> PaymentSnapshot | None:
        """Newest approved payment for ``sub`` that Billing History has not recorded yet."""
        candidates = [payment] if payment is not None else await self.provider.search_payments(sub.correlation_key)
        approved = [p for p in candidates if p.status == "approved"]
        approved.sort(key=lambda p: p.date_created or datetime.min.replace(tzinfo=UTC), reverse=True)
        for candidate in approved:
            if not await self.store.has_charge(candidate.id):
                return candidate
        return None

    @staticmethod
    def _subscription_target(
        snapshot: SubscriptionSnapshot | None, payment: PaymentSnapshot | None
    ) -> SubscriptionStatus | None:
        """Preapproval pause/cancel wins, then payment evidence, then preapproval status."""
        preapproval_target = map_preapproval_status(snapshot.status) if snapshot else None
        if preapproval_target in (SubscriptionStatus.PAUSED, SubscriptionStatus.CANCELLED):
            return preapproval_target
        payment_target = map_subscription_payment_status(payment.status) if payment else None
        return payment_target or preapproval_target

    @staticmethod
    def _merged_metadata(
        sub: Subscription, snapshot: SubscriptionSnapshot | None, payment: PaymentSnapshot | None
    ) -> SubscriptionMetadata:
        update = SubscriptionMetadata()
        if snapshot is not None:
            update.preapproval_status = snapshot.status
            update.provider_reference = snapshot.external_reference
            update.payer_email = snapshot.payer_email
        if payment is not None:
            update.collection_id = payment.collection_id
            if payment.status == "approved" and not (sub.metadata_ and sub.metadata_.first_payment_id):
                update.first_payment_id = payment.id
            update.payer_email = update.payer_email or payment.payer_email
        return (sub.metadata_ or SubscriptionMetadata()).merged_with(update)

    async def _apply_subscription(
        self,
        sub: Subscription,
        target: SubscriptionStatus | None,
        snapshot: SubscriptionSnapshot | None,
        payment: PaymentSnapshot | None,
        now: datetime,
    ) -> SubscriptionOutcome:
        log = logger.bind(subscription_id=sub.id, correlation_key=sub.correlation_key)
        previous = sub.status
        subscription_id = sub.id

        for _ in range(WRITE_ATTEMPTS):
            current = SubscriptionStatus(sub.status)
            values = {
                "metadata_": self._merged_metadata(sub, snapshot, payment),
                "last_synced_at": now,
            }
            if snapshot is not None and not sub.provider_subscription_id:
                values["provider_subscription_id"] = snapshot.id

            if target is None or target == current:
                if current == SubscriptionStatus.ACTIVE and self._renewal_due(sub, snapshot, now):
                    result = await self._apply_renewal(sub, snapshot, values, now)
                    if result is not None:
                        return result
                else:
                    write = await self.store.update_subscription_if(sub.id, current.value, values)
                    if write.applied:
                        fresh = await self.store.get_subscription(sub.id)
                        return self._subscription_outcome(fresh, previous)
            else:
                validate_transition(current, target)
                values["status"] = target.value
                values["updated_at"] = now
                charge = self._transition_effects(sub, current, target, snapshot, payment, values, now)
                write = await self.store.update_subscription_if(sub.id, current.value, values, charge=charge)
                if write.applied:
                    log.info("subscription_reconciled", previous=current.value, status=target.value)
                    self._notify_subscription(sub, target)
                    fresh = await self.store.get_subscription(sub.id)
                    return self._subscription_outcome(
                        fresh, previous, changed=True, billing_recorded=write.charge_recorded
                    )

            log.info("subscription_write_lost_race")
            sub = await self.store.get_subscription(subscription_id)
            if sub is None:
                # Removed by the consolidator between read and write
                raise EntityNotFoundError("subscription", str(subscription_id))
            if sub.status == SubscriptionStatus.CANCELLED.value:
                return self._subscription_outcome(sub, previous, skipped_reason="terminal")

        raise StoreConflictError("subscription", subscription_id)

    def _transition_effects(
        self,
        sub: Subscription,
        current: SubscriptionStatus,
        target: SubscriptionStatus,
        snapshot: SubscriptionSnapshot | None,
        payment: PaymentSnapshot | None,
        values: dict,
        now: datetime,
    ) -> ChargeRecord | None:
        """Fill ``values`` with the date/counter side effects of a transition."""
        today = now.date()

        if is_charge_backed_activation(current, target):
            cadence = parse_cadence(sub.cadence)
            if cadence is None and snapshot is not None and snapshot.auto_recurring is not None:
                cadence = cadence_from_frequency(
                    snapshot.auto_recurring.frequency, snapshot.auto_recurring.frequency_type
                )
            if cadence is None:
                raise InvariantViolation(
                    f"Subscription {sub.id} has no cadence; cannot schedule billing",
                    current=current.value,
                    target=target.value,
                )
            values["cadence"] = cadence.value
            values["next_billing_date"] = add_cadence(today, cadence)
            values["last_billing_date"] = now
            values["charges_made"] = Subscription.charges_made + 1
            if sub.activated_at is None:
                values["activated_at"] = now
            if payment is not None and not sub.provider_payment_id:
                values["provider_payment_id"] = payment.id
            charge_key = payment.id if payment is not None else f"{snapshot.id if snapshot else sub.id}:{today}"
            return ChargeRecord(
                charge_key=charge_key,
                status=ChargeStatus.APPROVED,
                billing_date=today,
                amount=self._charge_amount(sub, snapshot, payment),
                provider_payment_id=payment.id if payment is not None else None,
                subscription_id=sub.id,
            )

        if target == SubscriptionStatus.ACTIVE and current == SubscriptionStatus.PAUSED:
            cadence = parse_cadence(sub.cadence)
            if sub.next_billing_date is not None and sub.next_billing_date < today and cadence is not None:
                values["next_billing_date"] = roll_forward(sub.next_billing_date, cadence, today)
            return None

        if target == SubscriptionStatus.PAYMENT_FAILED and payment is not None:
            return ChargeRecord(
                charge_key=payment.id,
                status=ChargeStatus.REJECTED,
                billing_date=(payment.date_created or now).date(),
                amount=self._charge_amount(sub, snapshot, payment),
                provider_payment_id=payment.id,
                subscription_id=sub.id,
            )
        return None

    @staticmethod
    def _renewal_due(sub: Subscription, snapshot: SubscriptionSnapshot | None, now: datetime) -> bool:
        """The local billing date passed and the provider already moved past it."""
        if snapshot is None or snapshot.next_payment_day is None or sub.next_billing_date is None:
            return False
        return sub.next_billing_date <= now.date() and snapshot.next_payment_day > sub.next_billing_date

    async def _apply_renewal(
        self,
        sub: Subscription,
        snapshot: SubscriptionSnapshot,
        values: dict,
        now: datetime,
    ) -> SubscriptionOutcome | None:
        """Record one renewal charge and roll the billing date forward.

        Returns None when the write lost a race so the caller re-reads.
        """
        billing_date = sub.next_billing_date
        values.update(
            next_billing_date=snapshot.next_payment_day,
            last_billing_date=now,
            charges_made=Subscription.charges_made + 1,
            updated_at=now,
        )
        charge = ChargeRecord(
            charge_key=f"{snapshot.id}:{billing_date.isoformat()}",
            status=ChargeStatus.APPROVED,
            billing_date=billing_date,
            amount=self._charge_amount(sub, snapshot, None),
            subscription_id=sub.id,
        )
        write = await self.store.update_subscription_if(
            sub.id,
            SubscriptionStatus.ACTIVE.value,
            values,
            expected_next_billing_date=billing_date,
            charge=charge,
        )
        if not write.applied:
            return None
        logger.info(
            "subscription_renewal_recorded",
            subscription_id=sub.id,
            billing_date=billing_date.isoformat(),
            next_billing_date=snapshot.next_payment_day.isoformat(),
        )
        fresh = await self.store.get_subscription(sub.id)
        outcome = self._subscription_outcome(fresh, sub.status, billing_recorded=write.charge_recorded)
        outcome.renewal_recorded = True
        return outcome

    @staticmethod
    def _charge_amount(sub: Subscription, snapshot: SubscriptionSnapshot | None, payment: PaymentSnapshot | None):
        if payment is not None and payment.transaction_amount is not None:
            return payment.transaction_amount
        if snapshot is not None and snapshot.auto_recurring and snapshot.auto_recurring.transaction_amount is not None:
            return snapshot.auto_recurring.transaction_amount
        return sub.discounted_price if sub.discounted_price is not None else sub.base_price

    def _notify_subscription(self, sub: Subscription, target: SubscriptionStatus) -> None:
        event = {
            SubscriptionStatus.ACTIVE: NotificationEvent.SUBSCRIPTION_ACTIVATED,
            SubscriptionStatus.PAYMENT_FAILED: NotificationEvent.SUBSCRIPTION_PAYMENT_FAILED,
        }.get(target)
        if event is None:
            return
        self.notifications.dispatch(
            event,
            {"subscription_id": sub.id, "user_id": sub.user_id, "product_id": sub.product_id},
        )

    @staticmethod
    def _subscription_outcome(
        sub: Subscription,
        previous: str,
        changed: bool = False,
        billing_recorded: bool = False,
        skipped_reason: str | None = None,
    ) -> SubscriptionOutcome:
        return SubscriptionOutcome(
            subscription_id=sub.id,
            previous_status=previous,
            status=sub.status,
            changed=changed,
            next_billing_date=sub.next_billing_date,
            charges_made=sub.charges_made or 0,
            billing_recorded=billing_recorded,
            skipped_reason=skipped_reason,
        )

    # ── Payments ───────────────────────────────────────────────────────

    async def reconcile_payment(self, payment_id: str, now: datetime | None = None) -> OrderOutcome | SubscriptionOutcome:
        """Route a provider payment to the order or subscription it belongs to.

        Orders match on the payment's external reference. Otherwise the payment
        is treated as subscription evidence: by preapproval id, then by
        correlation key, then by parsing a ``SUB-`` reference.

        Raises:
            EntityNotFoundError: payment unknown to the provider or to the ledger
        """
        now = now or datetime.now(UTC)
        payment = await self.provider.get_payment(payment_id)
        reference = payment.external_reference

        if reference:
            order = await self.store.get_order_by_correlation_key(reference)
            if order is not None:
                if order.payment_status != PaymentStatus.PENDING.value:
                    return self._order_outcome(order, order.payment_status, skipped_reason="terminal")
                return await self._apply_order_payment(order, payment, now)

        sub = None
        if payment.preapproval_id:
            sub = await self.store.find_subscription_by_provider_id(payment.preapproval_id)
        if sub is None:
            sub = await self._subscription_for_key(reference)
        if sub is None:
            logger.warning("payment_unmatched", provider_payment_id=payment_id, external_reference=reference)
            raise EntityNotFoundError("order_or_subscription", reference or payment_id)

        return await self._reconcile_subscription_row(sub, force=False, now=now, payment=payment)
