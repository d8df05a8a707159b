from __future__ import annotations

from sqlalchemy import JSON, Boolean, Column, Enum, Index, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from portal.db.base import Base, UTCDateTime, utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")

CHECKOUT_STATUSES = ("open", "processing", "completed", "partial", "failed", "expired")


class CheckoutSession(Base):
    """Server-side record of a pending checkout, keyed by the Stripe session id.

    Written before the dealer is redirected to Stripe and consumed exactly
    once by reconciliation (webhook, client confirmation or sweep).
    """
    __tablename__ = "checkout_sessions"

    id = Column(String(255), primary_key=True)
    dealer_id = Column(String(64), nullable=False)
    kind = Column(Enum("purchase", "lock", name="checkout_kind"), nullable=False)
    lock_type = Column(String(32))
    lead_ids = Column(JSONType, nullable=False)
    line_prices = Column(JSONType, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="cad")
    coupon_id = Column(String(255))
    discount_applied = Column(Boolean, nullable=False, default=False)
    discount_type = Column(String(32))
    discount_amount = Column(Numeric(10, 2))
    status = Column(Enum(*CHECKOUT_STATUSES, name="checkout_status"), nullable=False, default="open")
    payment_id = Column(String(255))
    stripe_customer_id = Column(String(255))
    failed_lead_ids = Column(JSONType)
    # Leads refused for good (e.g. locked by another dealer); these need a refund
    rejected_lead_ids = Column(JSONType)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    completed_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_checkout_sessions_status_updated", "status", "updated_at"),
        Index("idx_checkout_sessions_dealer", "dealer_id"),
    )


class PaymentEvent(Base):
    """Verified webhook event; the primary key de-duplicates redeliveries."""
    __tablename__ = "payment_events"

    id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    session_id = Column(String(255))
    received_at = Column(UTCDateTime, default=utcnow, nullable=False)
