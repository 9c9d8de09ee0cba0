"""Webhook delivery model: one obligation to deliver one event to one endpoint."""
import enum

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy import Enum as SQLEnum

from webhook_delivery.models.base import Base, JSONType


class WebhookDeliveryStatus(enum.Enum):
    """Webhook delivery status."""

    PENDING = "pending"
    DELIVERING = "delivering"
    FAILED = "failed"
    COMPLETED = "completed"


class WebhookDelivery(Base):
    """
    Durable delivery record.

    (endpoint_id, event_type, resource_id) is the idempotency key for
    enqueue. ``endpoint_id`` is a reference only: endpoints can be disabled
    or removed without touching delivery history. Rows are never deleted here.
    """

    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        UniqueConstraint("endpoint_id", "event_type", "resource_id", name="uq_webhook_deliveries_idempotency"),
        Index("ix_webhook_deliveries_status_next_attempt", "status", "next_attempt_at"),
    )

    endpoint_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    event_type = Column(String, nullable=False)  # incident.created, payment.completed, etc.
    resource_id = Column(String, nullable=False)
    payload = Column(JSONType, nullable=False)  # Envelope snapshot taken at enqueue time
    status = Column(
        SQLEnum(
            WebhookDeliveryStatus,
            name="webhook_delivery_status",
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=False,
        default=WebhookDeliveryStatus.PENDING,
    )
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime, nullable=True)
    last_attempt_at = Column(DateTime, nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    response_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)  # Truncated, never exposed through the API
    last_error = Column(String(1000), nullable=True)  # Sanitized before storage

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<WebhookDelivery(id={self.id}, event_type={self.event_type}, "
            f"status={self.status.value}, attempts={self.attempts})>"
        )
