"""
Pydantic schemas for request/response validation and serialization.
"""

from portal.schemas.application import (
    ApplicationListResponse,
    AvailableApplication,
    DownloadRequest,
    LockInfoOut,
    PriceQuoteResponse,
    PurchasedApplication,
)
from portal.schemas.checkout import (
    CheckoutResponse,
    LockCheckoutRequest,
    PurchaseCheckoutRequest,
    ReconciliationResponse,
)
from portal.schemas.settings import CouponOut, LockoutPeriodOut, SystemSettingsOut, SystemSettingsUpdate

__all__ = [
    "ApplicationListResponse",
    "AvailableApplication",
    "CheckoutResponse",
    "CouponOut",
    "DownloadRequest",
    "LockCheckoutRequest",
    "LockInfoOut",
    "LockoutPeriodOut",
    "PriceQuoteResponse",
    "PurchaseCheckoutRequest",
    "PurchasedApplication",
    "ReconciliationResponse",
    "SystemSettingsOut",
    "SystemSettingsUpdate",
]
