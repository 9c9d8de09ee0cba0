"""Webhook delivery services."""
from webhook_delivery.services.circuit_breaker import CircuitBreaker
from webhook_delivery.services.delivery_executor import DeliveryExecutor, DeliveryJob, DeliveryResult
from webhook_delivery.services.signature import HmacSha256Signer, WebhookSigner, verify_signature
from webhook_delivery.services.webhook_service import WebhookDeliveryService, WebhookValidationError

__all__ = [
    "CircuitBreaker",
    "DeliveryExecutor",
    "DeliveryJob",
    "DeliveryResult",
    "HmacSha256Signer",
    "WebhookDeliveryService",
    "WebhookSigner",
    "WebhookValidationError",
    "verify_signature",
]
