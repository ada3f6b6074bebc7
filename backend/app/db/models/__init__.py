"""Re-export all models so Base.metadata sees them."""

from app.db.models.billing_history import BillingHistory
from app.db.models.order import Order
from app.db.models.subscription import Subscription
from app.db.models.webhook_log import WebhookLog

__all__ = [
    "BillingHistory",
    "Order",
    "Subscription",
    "WebhookLog",
]
