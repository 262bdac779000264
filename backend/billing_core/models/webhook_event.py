"""
Webhook event record model.

WHAT: One row per gateway event that has been applied.

WHY: The gateway delivers at least once. The presence of a record means
"already processed; skip". The record is inserted in the same transaction
that applies the event, so concurrent deliveries of one event id race on
the unique constraint and only one of them can commit.
"""

from sqlalchemy import Column, DateTime, JSON, String

from billing_core.models.base import Base, PrimaryKeyMixin, utcnow


class WebhookEventRecord(Base, PrimaryKeyMixin):
    """Processed gateway event."""

    __tablename__ = "webhook_events"

    event_id = Column(String(255), nullable=False, unique=True)
    event_type = Column(String(100), nullable=False, index=True)
    processed_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)
    payload = Column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<WebhookEventRecord(event_id={self.event_id}, type={self.event_type})>"
