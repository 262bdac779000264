"""
Invoice model.

WHAT: Local mirror of a paid or failed gateway invoice.

WHY: Successful payments are recorded for billing history and to advance
subscriptions out of past_due. Rendering, tax and refunds stay upstream.
"""

import enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Uuid

from billing_core.models.base import (
    Base,
    PrimaryKeyMixin,
    TimestampMixin,
    str_enum,
    unique_when_present,
)


class InvoiceStatus(str, enum.Enum):
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    UNCOLLECTIBLE = "uncollectible"
    VOID = "void"


class Invoice(Base, PrimaryKeyMixin, TimestampMixin):
    """Mirrored gateway invoice."""

    __tablename__ = "invoices"

    user_id = Column(String(255), nullable=True, index=True)
    organization_id = Column(Uuid, nullable=True, index=True)
    subscription_id = Column(
        Uuid, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True
    )

    upstream_invoice_id = Column(String(255), nullable=True)
    upstream_subscription_id = Column(String(255), nullable=True, index=True)

    amount_paid = Column(Integer, nullable=False, default=0)
    amount_due = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="eur")
    status = Column(str_enum(InvoiceStatus), nullable=False, default=InvoiceStatus.OPEN)

    period_start = Column(DateTime, nullable=True)
    period_end = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    hosted_invoice_url = Column(String(1000), nullable=True)

    __table_args__ = (
        unique_when_present("uq_invoices_upstream_invoice_id", upstream_invoice_id),
    )

    def __repr__(self) -> str:
        return f"<Invoice(id={self.id}, upstream={self.upstream_invoice_id}, status={self.status.value})>"
