from __future__ import annotations

from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from portal.services.reconciliation import ReconciliationReport


class PurchaseCheckoutRequest(BaseModel):
    application_ids: List[str] = Field(..., min_length=1)
    coupon_id: Optional[str] = Field(None, max_length=255)


class LockCheckoutRequest(BaseModel):
    application_id: str = Field(..., min_length=1)
    lock_type: Literal["temporary-24h", "temporary-1week", "permanent"]


class CheckoutResponse(BaseModel):
    session_id: str
    redirect_url: str
    amount: Decimal
    line_prices: Dict[str, Decimal]


class ReconciliationResponse(BaseModel):
    session_id: str
    status: str
    applied: List[str]
    failed: List[str]

    @classmethod
    def from_report(cls, report: ReconciliationReport) -> "ReconciliationResponse":
        return cls(
            session_id=report.session_id,
            status=report.status,
            applied=list(report.applied),
            failed=list(report.failed),
        )
