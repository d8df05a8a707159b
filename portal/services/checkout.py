from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.config import settings
from portal.core.exceptions import (
    AlreadyLockedError,
    AuthorizationError,
    BusinessRuleError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from portal.core.logging import get_structlog_logger
from portal.db.base import utcnow
from portal.models.checkout import CheckoutSession
from portal.models.lead import Lead
from portal.models.lock import PAID_LOCK_TYPES
from portal.services import lock_store, purchase_store
from portal.services.dashboard import contention_from
from portal.services.lock_store import LockInfo
from portal.services.payment_gateway import CheckoutSessionInfo, DiscountInfo, StripeGateway
from portal.services.pricing import PricingSettings, lock_fee, money, quote
from portal.services.reconciliation import ReconciliationReport, reconcile_checkout
from portal.services.settings_service import checkout_ttl_minutes

logger = get_structlog_logger(__name__)

MAX_LEADS_PER_CHECKOUT = 50


@dataclass(frozen=True)
class CheckoutStarted:
    session_id: str
    redirect_url: str
    amount: Decimal
    line_prices: Dict[str, Decimal]


async def load_listed_leads(session: AsyncSession, lead_ids: Sequence[str]) -> Dict[str, Lead]:
    """Fetch leads by id; every id must exist and not be a draft."""
    try:
        result = await session.execute(select(Lead).where(Lead.id.in_(list(lead_ids))))
    except SQLAlchemyError as e:
        raise PersistenceError(details={"operation": "load_listed_leads"}) from e

    leads = {lead.id: lead for lead in result.scalars() if lead.status != "draft"}
    missing = [lead_id for lead_id in lead_ids if lead_id not in leads]
    if missing:
        raise NotFoundError("Application not found", code="lead_not_found", details={"lead_ids": missing})
    return leads


def _unique_ids(lead_ids: Sequence[str]) -> List[str]:
    ids = list(dict.fromkeys(lead_id for lead_id in lead_ids if lead_id))
    if not ids:
        raise ValidationError("Select at least one application", code="no_applications")
    if len(ids) > MAX_LEADS_PER_CHECKOUT:
        raise ValidationError(
            f"At most {MAX_LEADS_PER_CHECKOUT} applications per checkout",
            code="too_many_applications",
        )
    return ids


def summarize_discount(rules: Mapping[str, str], discounts: Mapping[str, Decimal]) -> Optional[DiscountInfo]:
    applied = {rule for lead_id, rule in rules.items() if discounts[lead_id] > 0}
    if not applied:
        return None
    discount_type = applied.pop() if len(applied) == 1 else "mixed"
    return DiscountInfo(discount_type=discount_type, amount=money(sum(discounts.values(), Decimal("0"))))


async def _store_checkout(
    session: AsyncSession,
    gateway: StripeGateway,
    info: CheckoutSessionInfo,
    record: CheckoutSession,
) -> None:
    dealer_id = record.dealer_id
    session.add(record)
    try:
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error("checkout.record_failed", session_id=info.session_id, dealer_id=dealer_id, error=str(e))
        # Without the pending record the session must not stay payable
        try:
            await gateway.expire_session(info.session_id)
        except ExternalServiceError:
            logger.error("checkout.orphaned_session", session_id=info.session_id)
        raise PersistenceError(details={"operation": "begin_checkout"}) from e


async def begin_purchase(
    session: AsyncSession,
    gateway: StripeGateway,
    dealer_id: str,
    lead_ids: Sequence[str],
    pricing: PricingSettings,
    *,
    coupon_id: Optional[str] = None,
    customer_email: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CheckoutStarted:
    """
    Price the selected leads and open a Stripe checkout for them.

    Rejects leads the dealer already owns and leads permanently locked by
    another dealer. Nothing is granted here; purchases are only created by
    reconciliation once payment succeeds.
    """
    now = now or utcnow()
    ids = _unique_ids(lead_ids)
    leads = await load_listed_leads(session, ids)

    owned = await purchase_store.purchased_lead_ids(session, dealer_id, ids)
    if owned:
        raise ConflictError(
            "Application already purchased",
            code="already_purchased",
            details={"lead_ids": sorted(owned)},
        )

    locks = await lock_store.active_locks_by_lead(session, ids, now=now)
    others = await purchase_store.purchased_by_others(session, dealer_id, ids)

    line_prices: Dict[str, Decimal] = {}
    rules: Dict[str, str] = {}
    discounts: Dict[str, Decimal] = {}
    for lead_id in ids:
        lock_info = LockInfo.from_lock(locks.get(lead_id), dealer_id)
        if lock_info.held_by_other and lock_info.is_permanent:
            raise AlreadyLockedError(
                "Application is permanently locked by another dealer",
                details={"lead_id": lead_id},
            )
        lead_quote = quote(leads[lead_id].submitted_at, contention_from(lock_info, lead_id in others), pricing, now)
        line_prices[lead_id] = lead_quote.amount
        rules[lead_id] = lead_quote.rule
        discounts[lead_id] = lead_quote.discount_amount

    total = money(sum(line_prices.values(), Decimal("0")))
    unit_price = money(total / len(ids))
    discount = summarize_discount(rules, discounts)

    info = await gateway.create_checkout_session(
        dealer_id,
        ids,
        unit_price,
        discount=discount,
        line_prices=line_prices,
        expires_in_minutes=checkout_ttl_minutes(pricing),
        coupon_id=coupon_id,
        customer_email=customer_email,
    )

    await _store_checkout(
        session,
        gateway,
        info,
        CheckoutSession(
            id=info.session_id,
            dealer_id=dealer_id,
            kind="purchase",
            lead_ids=ids,
            line_prices={lead_id: str(amount) for lead_id, amount in line_prices.items()},
            unit_price=unit_price,
            total_amount=total,
            currency=settings.stripe_currency,
            coupon_id=coupon_id,
            discount_applied=discount is not None,
            discount_type=discount.discount_type if discount else None,
            discount_amount=discount.amount if discount else None,
            status="open",
            created_at=now,
        ),
    )

    logger.info(
        "checkout.purchase_started",
        session_id=info.session_id,
        dealer_id=dealer_id,
        lead_ids=ids,
        total=str(total),
    )
    return CheckoutStarted(info.session_id, info.redirect_url, total, line_prices)


async def begin_lock(
    session: AsyncSession,
    gateway: StripeGateway,
    dealer_id: str,
    lead_id: str,
    lock_type: str,
    fees: Mapping[str, Decimal],
    pricing: PricingSettings,
    *,
    now: Optional[datetime] = None,
) -> CheckoutStarted:
    """Open a Stripe checkout for a paid lock. The lock is granted on payment."""
    now = now or utcnow()
    if lock_type not in PAID_LOCK_TYPES:
        raise ValidationError(
            f"Unknown lock type: {lock_type}",
            code="invalid_lock_type",
            details={"allowed": list(PAID_LOCK_TYPES)},
        )

    await load_listed_leads(session, [lead_id])

    lock_info = await lock_store.is_locked(session, lead_id, dealer_id, now=now)
    if lock_info.held_by_other:
        raise AlreadyLockedError(details={"lead_id": lead_id, "permanent": lock_info.is_permanent})

    fee = lock_fee(lock_type, fees)
    if fee is None:
        raise ValidationError("No fee configured for this lock type", code="invalid_lock_type")

    info = await gateway.create_checkout_session(
        dealer_id,
        [lead_id],
        fee,
        lock_type=lock_type,
        expires_in_minutes=checkout_ttl_minutes(pricing),
    )

    await _store_checkout(
        session,
        gateway,
        info,
        CheckoutSession(
            id=info.session_id,
            dealer_id=dealer_id,
            kind="lock",
            lock_type=lock_type,
            lead_ids=[lead_id],
            line_prices={lead_id: str(fee)},
            unit_price=fee,
            total_amount=fee,
            currency=settings.stripe_currency,
            status="open",
            created_at=now,
        ),
    )

    logger.info(
        "checkout.lock_started",
        session_id=info.session_id,
        dealer_id=dealer_id,
        lead_id=lead_id,
        lock_type=lock_type,
        fee=str(fee),
    )
    return CheckoutStarted(info.session_id, info.redirect_url, fee, {lead_id: fee})


async def confirm_checkout(
    session: AsyncSession,
    gateway: StripeGateway,
    session_id: str,
    dealer_id: str,
) -> ReconciliationReport:
    """
    Client-side confirmation after returning from Stripe.

    Runs the same idempotent reconciliation as the webhook, so whichever
    arrives second is a no-op.
    """
    record = await session.get(CheckoutSession, session_id)
    if record is not None and record.dealer_id != dealer_id:
        raise AuthorizationError("Checkout belongs to another dealer", code="checkout_forbidden")

    status = await gateway.complete_session(session_id)
    if record is None and status.metadata.get("dealer_id") != dealer_id:
        raise NotFoundError("Checkout not found", code="checkout_not_found", details={"session_id": session_id})

    if not status.paid:
        logger.info("checkout.confirm_unpaid", session_id=session_id, dealer_id=dealer_id, status=status.status)
        raise BusinessRuleError(
            "Payment has not completed",
            code="payment_not_completed",
            details={"session_id": session_id, "status": status.status},
        )

    return await reconcile_checkout(
        session,
        session_id,
        payment_id=status.payment_id,
        customer_id=status.customer_id,
        metadata=status.metadata,
    )
