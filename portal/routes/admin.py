from __future__ import annotations

from typing import Dict, List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.exceptions import BusinessRuleError
from portal.core.logging import get_structlog_logger
from portal.db.session import get_session
from portal.schemas.checkout import ReconciliationResponse
from portal.schemas.settings import CouponOut
from portal.services.auth import require_role
from portal.services.payment_gateway import StripeGateway, get_payment_gateway
from portal.services.reconciliation import ReconciliationReport, mark_expired, reconcile_checkout

logger = get_structlog_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/coupons", response_model=List[CouponOut])
async def list_coupons(
    limit: int = Query(100, ge=1, le=100),
    _user: Dict = Depends(require_role("admin")),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    """Coupons configured in Stripe."""
    coupons = await gateway.list_coupons(limit=limit)
    return [CouponOut(**coupon.__dict__) for coupon in coupons]


@router.post("/checkouts/{session_id}/reconcile", response_model=ReconciliationResponse)
async def force_reconcile(
    session_id: str,
    user: Dict = Depends(require_role("admin")),
    session: AsyncSession = Depends(get_session),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    """Re-run reconciliation for a checkout, including one stuck in processing."""
    status = await gateway.complete_session(session_id)
    logger.info("admin.reconcile_requested", session_id=session_id, admin_id=user["id"], paid=status.paid)

    if status.paid:
        report = await reconcile_checkout(
            session,
            session_id,
            payment_id=status.payment_id,
            customer_id=status.customer_id,
            metadata=status.metadata,
            reclaim_stale=True,
        )
        return ReconciliationResponse.from_report(report)

    if status.status == "expired":
        await mark_expired(session, session_id)
        return ReconciliationResponse.from_report(ReconciliationReport(session_id=session_id, status="expired"))

    raise BusinessRuleError(
        "Payment has not completed",
        code="payment_not_completed",
        details={"session_id": session_id, "status": status.status},
    )
