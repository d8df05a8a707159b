from __future__ import annotations

from sqlalchemy import Boolean, CheckConstraint, Column, Enum, Integer, Numeric, String

from portal.db.base import Base, UTCDateTime, utcnow

SETTINGS_ROW_ID = 1


class SystemSettings(Base):
    """Singleton row holding marketplace pricing configuration."""
    __tablename__ = "system_settings"

    id = Column(Integer, primary_key=True, default=SETTINGS_ROW_ID)
    standard_price = Column(Numeric(10, 2), nullable=False)
    discounted_price = Column(Numeric(10, 2), nullable=False)
    temporary_lock_minutes = Column(Integer, nullable=False)
    age_discount_enabled = Column(Boolean, nullable=False, default=True)
    age_discount_threshold = Column(Integer, nullable=False)
    age_discount_percentage = Column(Integer, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("id = 1", name="singleton"),
        CheckConstraint("standard_price >= 0", name="non_negative_standard"),
        CheckConstraint("discounted_price >= 0", name="non_negative_discounted"),
        CheckConstraint(
            "age_discount_percentage >= 0 AND age_discount_percentage <= 100",
            name="valid_age_percentage",
        ),
    )


class LockoutPeriod(Base):
    """A purchasable lock duration and its fee."""
    __tablename__ = "lockout_periods"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    lock_type = Column(
        Enum("temporary-24h", "temporary-1week", "permanent", name="lockout_lock_type"),
        nullable=False,
    )
    hours = Column(Integer)
    fee = Column(Numeric(10, 2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("fee >= 0", name="non_negative_fee"),
    )
