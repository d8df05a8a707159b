from __future__ import annotations

from typing import Dict, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.logging import get_structlog_logger
from portal.db.session import get_session
from portal.schemas.checkout import (
    CheckoutResponse,
    LockCheckoutRequest,
    PurchaseCheckoutRequest,
    ReconciliationResponse,
)
from portal.services import checkout
from portal.services.auth import get_current_dealer, get_current_user
from portal.services.payment_gateway import StripeGateway, get_payment_gateway
from portal.services.redis import RedisCache, get_cache
from portal.services.settings_service import get_lock_fees, get_pricing_settings

logger = get_structlog_logger(__name__)

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post("/purchase", response_model=CheckoutResponse)
async def start_purchase(
    request: PurchaseCheckoutRequest,
    dealer_id: str = Depends(get_current_dealer),
    user: Dict = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    gateway: StripeGateway = Depends(get_payment_gateway),
    cache: Optional[RedisCache] = Depends(get_cache),
):
    """Open a Stripe checkout to buy the selected applications."""
    pricing = await get_pricing_settings(session, cache)
    started = await checkout.begin_purchase(
        session,
        gateway,
        dealer_id,
        request.application_ids,
        pricing,
        coupon_id=request.coupon_id,
        customer_email=user.get("email"),
    )
    return CheckoutResponse(
        session_id=started.session_id,
        redirect_url=started.redirect_url,
        amount=started.amount,
        line_prices=started.line_prices,
    )


@router.post("/lock", response_model=CheckoutResponse)
async def start_lock(
    request: LockCheckoutRequest,
    dealer_id: str = Depends(get_current_dealer),
    session: AsyncSession = Depends(get_session),
    gateway: StripeGateway = Depends(get_payment_gateway),
    cache: Optional[RedisCache] = Depends(get_cache),
):
    """Open a Stripe checkout for a paid lock on one application."""
    pricing = await get_pricing_settings(session, cache)
    fees = await get_lock_fees(session)
    started = await checkout.begin_lock(
        session,
        gateway,
        dealer_id,
        request.application_id,
        request.lock_type,
        fees,
        pricing,
    )
    return CheckoutResponse(
        session_id=started.session_id,
        redirect_url=started.redirect_url,
        amount=started.amount,
        line_prices=started.line_prices,
    )


@router.post("/{session_id}/complete", response_model=ReconciliationResponse)
async def complete_checkout(
    session_id: str,
    dealer_id: str = Depends(get_current_dealer),
    session: AsyncSession = Depends(get_session),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    """Confirm a checkout on return from Stripe; safe to call after the webhook."""
    report = await checkout.confirm_checkout(session, gateway, session_id, dealer_id)
    if report.failed:
        logger.warning(
            "checkout.confirm_partial",
            session_id=session_id,
            dealer_id=dealer_id,
            failed_lead_ids=list(report.failed),
        )
    return ReconciliationResponse.from_report(report)
