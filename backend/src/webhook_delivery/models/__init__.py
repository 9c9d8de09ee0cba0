"""SQLAlchemy models."""
from webhook_delivery.models.base import Base
from webhook_delivery.models.webhook_delivery import WebhookDelivery, WebhookDeliveryStatus
from webhook_delivery.models.webhook_endpoint import WILDCARD_EVENT, WebhookEndpoint

__all__ = [
    "Base",
    "WebhookDelivery",
    "WebhookDeliveryStatus",
    "WebhookEndpoint",
    "WILDCARD_EVENT",
]
