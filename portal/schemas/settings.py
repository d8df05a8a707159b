from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SystemSettingsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    standard_price: Decimal
    discounted_price: Decimal
    temporary_lock_minutes: int
    age_discount_enabled: bool
    age_discount_threshold: int
    age_discount_percentage: int
    updated_at: Optional[datetime] = None


class SystemSettingsUpdate(BaseModel):
    standard_price: Optional[Decimal] = Field(None, ge=0, decimal_places=2)
    discounted_price: Optional[Decimal] = Field(None, ge=0, decimal_places=2)
    temporary_lock_minutes: Optional[int] = Field(None, ge=1)
    age_discount_enabled: Optional[bool] = None
    age_discount_threshold: Optional[int] = Field(None, ge=0)
    age_discount_percentage: Optional[int] = Field(None, ge=0, le=100)


class LockoutPeriodOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    name: str
    lock_type: str
    hours: Optional[int] = None
    fee: Decimal


class CouponOut(BaseModel):
    id: str
    name: Optional[str] = None
    percent_off: Optional[float] = None
    amount_off: Optional[Decimal] = None
    currency: Optional[str] = None
    valid: bool
