from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from portal.services.dashboard import ApplicationItem, PurchasedItem
from portal.services.lock_store import LockInfo


class LockInfoOut(BaseModel):
    is_locked: bool
    lock_type: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_own_lock: bool = False

    @classmethod
    def from_info(cls, info: LockInfo) -> "LockInfoOut":
        # Never reveal which dealer holds the lock
        return cls(
            is_locked=info.is_locked,
            lock_type=info.lock_type,
            expires_at=info.expires_at,
            is_own_lock=info.is_own_lock,
        )


class ApplicationSummary(BaseModel):
    """A lead as listed on the dashboard, without contact details."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    submitted_at: datetime
    status: str
    full_name: str
    city: Optional[str] = None
    province: Optional[str] = None
    vehicle_type: Optional[str] = None
    preferred_make_model: Optional[str] = None
    employment_status: Optional[str] = None
    monthly_income: Optional[Decimal] = None


class ApplicationContact(ApplicationSummary):
    email: Optional[str] = None
    phone_number: Optional[str] = None
    street_address: Optional[str] = None
    postal_code: Optional[str] = None
    additional_notes: Optional[str] = None


class AvailableApplication(BaseModel):
    application: ApplicationSummary
    lock_info: LockInfoOut
    is_purchased: bool
    is_downloaded: bool
    purchased_by_other: bool
    price: Decimal
    standard_price: Decimal
    discounted_price: Decimal
    is_age_discounted: bool
    pricing_rule: str

    @classmethod
    def from_item(cls, item: ApplicationItem) -> "AvailableApplication":
        return cls(
            application=ApplicationSummary.model_validate(item.lead),
            lock_info=LockInfoOut.from_info(item.lock_info),
            is_purchased=item.is_purchased,
            is_downloaded=item.is_downloaded,
            purchased_by_other=item.purchased_by_other,
            price=item.price,
            standard_price=item.quote.standard_price,
            discounted_price=item.discounted_price,
            is_age_discounted=item.is_age_discounted,
            pricing_rule=item.quote.rule,
        )


class PurchasedApplication(BaseModel):
    application: ApplicationContact
    lock_info: LockInfoOut
    purchase_id: str
    purchase_date: datetime
    payment_amount: Decimal
    downloaded_at: Optional[datetime] = None
    download_count: int
    discount_applied: bool
    discount_type: Optional[str] = None

    @classmethod
    def from_item(cls, item: PurchasedItem) -> "PurchasedApplication":
        purchase = item.purchase
        return cls(
            application=ApplicationContact.model_validate(item.lead),
            lock_info=LockInfoOut.from_info(item.lock_info),
            purchase_id=purchase.id,
            purchase_date=purchase.purchase_date,
            payment_amount=purchase.payment_amount,
            downloaded_at=purchase.downloaded_at,
            download_count=purchase.download_count,
            discount_applied=purchase.discount_applied,
            discount_type=purchase.discount_type,
        )


class ApplicationListResponse(BaseModel):
    items: List[AvailableApplication]
    count: int


class PriceQuoteResponse(BaseModel):
    application_id: str
    price: Decimal
    standard_price: Decimal
    pricing_rule: str
    discount_amount: Decimal
    lock_info: LockInfoOut


class LockReleaseResponse(BaseModel):
    success: bool


class DownloadRequest(BaseModel):
    application_ids: List[str] = Field(..., min_length=1, max_length=500)
    format: Literal["json", "csv"] = "json"
