"""Order model: one checkout attempt, one-time or subscription-originating."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String

from app.db.base import Base, PydanticJSON
from app.schemas.ledger import OrderSnapshot


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    correlation_key = Column(String(255), unique=True, nullable=False, index=True)  # provider external_reference
    user_id = Column(String(255), nullable=True, index=True)

    status = Column(String(50), nullable=False, default="pending")  # OrderStatus values
    payment_status = Column(String(50), nullable=False, default="pending", index=True)  # PaymentStatus values
    provider_payment_id = Column(String(255), nullable=True, index=True)

    total = Column(Numeric(12, 2), nullable=True)
    snapshot = Column(PydanticJSON(OrderSnapshot), nullable=True)

    # Rows created by load-testing tooling; the only orders that may be deleted
    is_synthetic = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
