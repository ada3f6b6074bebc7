"""BillingHistory model: append-only ledger of realized charge attempts."""

from datetime import datetime, timezone

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, Numeric, String

from app.db.base import Base


class BillingHistory(Base):
    __tablename__ = "billing_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # Idempotency key: provider payment id, or "{preapproval_id}:{billing_date}" for renewals
    charge_key = Column(String(255), unique=True, nullable=False, index=True)

    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True)
    provider_payment_id = Column(String(255), nullable=True)

    amount = Column(Numeric(12, 2), nullable=True)
    status = Column(String(50), nullable=False)  # ChargeStatus values
    billing_date = Column(Date, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
