from __future__ import annotations

from sqlalchemy import Boolean, CheckConstraint, Column, Index, Integer, Numeric, String, text

from portal.db.base import Base, UTCDateTime, new_uuid, utcnow


class DealerPurchase(Base):
    """Permanent grant of contact-detail visibility on a lead to a dealer."""
    __tablename__ = "dealer_purchases"

    id = Column(String(36), primary_key=True, default=new_uuid)
    lead_id = Column(String(36), nullable=False)
    dealer_id = Column(String(64), nullable=False)
    payment_id = Column(String(255))
    payment_amount = Column(Numeric(10, 2), nullable=False)
    purchase_date = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    downloaded_at = Column(UTCDateTime)
    download_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    discount_applied = Column(Boolean, nullable=False, default=False)
    discount_type = Column(String(32))
    discount_amount = Column(Numeric(10, 2))
    stripe_session_id = Column(String(255))
    stripe_customer_id = Column(String(255))

    __table_args__ = (
        # At most one active purchase per (lead, dealer)
        Index(
            "uq_dealer_purchases_active_lead_dealer",
            "lead_id",
            "dealer_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("idx_dealer_purchases_dealer_date", "dealer_id", "purchase_date"),
        Index("idx_dealer_purchases_session", "stripe_session_id"),
        CheckConstraint("payment_amount >= 0", name="non_negative_amount"),
        CheckConstraint("download_count >= 0", name="non_negative_downloads"),
    )
