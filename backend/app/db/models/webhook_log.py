"""WebhookLog model: one row per inbound provider notification."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from app.db.base import Base


class WebhookLog(Base):
    """Audit and idempotency record for provider webhooks. Never deleted."""

    __tablename__ = "webhook_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    action = Column(String(100), nullable=True)
    resource_id = Column(String(255), nullable=True)  # data.id of the envelope

    status = Column(String(50), nullable=False, default="received", index=True)  # WebhookStatus values
    error_detail = Column(Text, nullable=True)
    retryable = Column(Boolean, nullable=False, default=False)
    attempts = Column(Integer, nullable=False, default=1)

    received_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    processed_at = Column(DateTime(timezone=True), nullable=True)
