"""Subscription model: recurring-billing agreement mirrored from the provider."""

from datetime import datetime, timezone

from sqlalchemy import Column, Date, DateTime, Integer, Numeric, String

from app.db.base import Base, PydanticJSON
from app.schemas.ledger import SubscriptionMetadata


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=True, index=True)
    product_id = Column(String(255), nullable=True, index=True)
    product_name = Column(String(255), nullable=True)

    # Not unique: duplicates share a key until the consolidator collapses them
    correlation_key = Column(String(255), nullable=False, index=True)
    provider_subscription_id = Column(String(255), nullable=True, index=True)  # preapproval id
    provider_payment_id = Column(String(255), nullable=True)  # first approved payment
    provider_preference_id = Column(String(255), nullable=True)

    status = Column(String(50), nullable=False, default="pending", index=True)  # SubscriptionStatus values
    cadence = Column(String(50), nullable=True)  # Cadence values

    base_price = Column(Numeric(12, 2), nullable=True)
    discount_percentage = Column(Numeric(5, 2), nullable=True)
    discounted_price = Column(Numeric(12, 2), nullable=True)

    last_billing_date = Column(DateTime(timezone=True), nullable=True)
    next_billing_date = Column(Date, nullable=True)
    trial_end_date = Column(Date, nullable=True)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    charges_made = Column(Integer, nullable=False, default=0)

    # "metadata" is reserved on declarative classes
    metadata_ = Column("metadata", PydanticJSON(SubscriptionMetadata), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
