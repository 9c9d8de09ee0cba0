"""Webhook endpoint model (subscription registry, read-only to delivery)."""
from sqlalchemy import Boolean, Column, String

from webhook_delivery.models.base import Base, JSONType

# Subscribes an endpoint to every event type
WILDCARD_EVENT = "*"


class WebhookEndpoint(Base):
    """
    A third-party URL subscribed to event types for one owning account.

    Rows are created and edited by the endpoint registry. The delivery
    subsystem only reads them; ``secret`` arrives already decrypted.
    """

    __tablename__ = "webhook_endpoints"

    owner_id = Column(String, nullable=False, index=True)
    url = Column(String, nullable=False)
    secret = Column(String, nullable=False)
    events = Column(JSONType, nullable=False, default=list)
    enabled = Column(Boolean, nullable=False, default=True)
    description = Column(String, nullable=True)

    def subscribes_to(self, event_type: str) -> bool:
        """Return True if this endpoint wants ``event_type``."""
        events = self.events or []
        return event_type in events or WILDCARD_EVENT in events

    def __repr__(self) -> str:
        """String representation (never includes the secret)."""
        return f"<WebhookEndpoint(id={self.id}, owner_id={self.owner_id}, enabled={self.enabled})>"
