"""Pydantic schemas for the delivery status read model."""
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from webhook_delivery.models.webhook_delivery import WebhookDeliveryStatus


class WebhookDeliveryRead(BaseModel):
    """Schema for returning delivery status to operators.

    The payload snapshot and endpoint secret are deliberately absent.
    """

    id: UUID
    endpoint_id: UUID
    event_type: str
    resource_id: str
    status: WebhookDeliveryStatus
    attempts: int
    last_error: str | None = Field(default=None, description="Sanitized error from the last failed attempt")
    response_code: int | None = None
    next_attempt_at: datetime | None = Field(default=None, description="Next scheduled retry, null when none")
    last_attempt_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class WebhookDeliveryList(BaseModel):
    """Schema for a list of deliveries of one endpoint."""

    items: list[WebhookDeliveryRead]
    total: int
    limit: int
