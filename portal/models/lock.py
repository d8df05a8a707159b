from __future__ import annotations

from sqlalchemy import Boolean, CheckConstraint, Column, Enum, Index, Numeric, String

from portal.db.base import Base, UTCDateTime, new_uuid, utcnow

LOCK_TYPES = ("temporary-24h", "temporary-1week", "permanent", "purchase-lock")
PAID_LOCK_TYPES = ("temporary-24h", "temporary-1week", "permanent")


class ApplicationLock(Base):
    """A time-bounded exclusive claim by one dealer on one lead.

    A NULL ``expires_at`` means the lock never expires (permanent locks).
    Rows are never deleted; releasing or pre-empting a lock sets
    ``expires_at`` to the current time.
    """
    __tablename__ = "application_locks"

    id = Column(String(36), primary_key=True, default=new_uuid)
    lead_id = Column(String(36), nullable=False)
    dealer_id = Column(String(64), nullable=False)
    lock_type = Column(Enum(*LOCK_TYPES, name="lock_type"), nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    expires_at = Column(UTCDateTime, nullable=True)
    is_paid = Column(Boolean, nullable=False, default=False)
    payment_id = Column(String(255))
    payment_amount = Column(Numeric(10, 2), nullable=False, default=0)

    __table_args__ = (
        Index("idx_application_locks_lead_expires", "lead_id", "expires_at"),
        Index("idx_application_locks_dealer", "dealer_id"),
        CheckConstraint("expires_at IS NULL OR expires_at >= created_at", name="valid_expiry"),
        CheckConstraint("payment_amount >= 0", name="non_negative_amount"),
    )

    @property
    def is_permanent(self) -> bool:
        return self.expires_at is None

    def is_active(self, now) -> bool:
        return self.expires_at is None or self.expires_at > now
