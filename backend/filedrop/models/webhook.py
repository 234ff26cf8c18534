"""
Webhook and WebhookDelivery models.

A Webhook is a subscriber endpoint owned by a caller.
A WebhookDelivery tracks the attempt sequence of one event occurrence
sent to one webhook. The payload is stored as the exact JSON text that is
signed and posted, so every attempt replays identical bytes.
"""
import enum
from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Enum, Text, JSON, ForeignKey, Index
)

from filedrop.models.base import Base, generate_uuid, utc_now


class DeliveryStatus(str, enum.Enum):
    """Delivery state. Transitions only move forward."""
    PENDING = "pending"      # Waiting for (another) attempt
    DELIVERED = "delivered"  # Endpoint answered 2xx
    FAILED = "failed"        # Automatic attempts exhausted


class Webhook(Base):
    """Subscriber endpoint."""
    __tablename__ = "webhooks"

    id = Column(String, primary_key=True, default=generate_uuid)
    owner_id = Column(String, nullable=False, index=True)
    url = Column(String, nullable=False)

    # HMAC-SHA256 signing key. Returned in plaintext only on creation.
    secret = Column(String, nullable=False)

    # List of subscribed event names
    events = Column(JSON, nullable=False, default=list)

    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    def __repr__(self):
        return f"<Webhook(id={self.id}, owner={self.owner_id}, url={self.url})>"


class WebhookDelivery(Base):
    """Delivery history for one event occurrence to one webhook."""
    __tablename__ = "webhook_deliveries"

    id = Column(String, primary_key=True, default=generate_uuid)
    webhook_id = Column(
        String,
        ForeignKey("webhooks.id", ondelete="CASCADE"),
        nullable=False,
    )
    event = Column(String, nullable=False)

    # Frozen canonical JSON, posted byte-for-byte on every attempt
    payload = Column(Text, nullable=False)

    status = Column(
        Enum(DeliveryStatus),
        nullable=False,
        default=DeliveryStatus.PENDING
    )
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    response_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    delivered_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('ix_webhook_deliveries_webhook_created', 'webhook_id', 'created_at'),
        # Reconciliation scans pending deliveries
        Index('ix_webhook_deliveries_status', 'status'),
    )

    def __repr__(self):
        return (
            f"<WebhookDelivery(id={self.id}, webhook={self.webhook_id}, "
            f"event={self.event}, status={self.status.value}, attempts={self.attempts})>"
        )
