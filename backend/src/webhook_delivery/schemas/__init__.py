"""Pydantic schemas for request/response validation."""
from webhook_delivery.schemas.error import ErrorCode, ErrorDetail, ErrorResponse
from webhook_delivery.schemas.webhook_delivery import WebhookDeliveryList, WebhookDeliveryRead

__all__ = [
    "ErrorCode",
    "ErrorDetail",
    "ErrorResponse",
    "WebhookDeliveryList",
    "WebhookDeliveryRead",
]
