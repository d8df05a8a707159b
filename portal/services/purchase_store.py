"""
Purchase Store: permanent, non-exclusive grants of lead visibility.

Rows are only created by reconciliation. At most one active purchase exists
per (lead, dealer); the partial unique index backs up the existence check.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.exceptions import AuthorizationError, PersistenceError
from portal.core.logging import get_structlog_logger
from portal.db.base import utcnow
from portal.models.purchase import DealerPurchase

logger = get_structlog_logger(__name__)


@dataclass(frozen=True)
class PurchaseInsertResult:
    purchase: Optional[DealerPurchase]
    created: bool
    raced: bool = False


async def get_active_purchase(
    session: AsyncSession,
    lead_id: str,
    dealer_id: str,
) -> Optional[DealerPurchase]:
    result = await session.execute(
        select(DealerPurchase).where(
            DealerPurchase.lead_id == lead_id,
            DealerPurchase.dealer_id == dealer_id,
            DealerPurchase.is_active.is_(True),
        )
    )
    return result.scalars().first()


async def has_active_purchase(session: AsyncSession, lead_id: str, dealer_id: str) -> bool:
    try:
        return await get_active_purchase(session, lead_id, dealer_id) is not None
    except SQLAlchemyError as e:
        raise PersistenceError(details={"operation": "has_active_purchase", "lead_id": lead_id}) from e


async def record_purchase(
    session: AsyncSession,
    lead_id: str,
    dealer_id: str,
    payment_amount: Decimal,
    payment_id: Optional[str] = None,
    *,
    discount_applied: bool = False,
    discount_type: Optional[str] = None,
    discount_amount: Optional[Decimal] = None,
    stripe_session_id: Optional[str] = None,
    stripe_customer_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PurchaseInsertResult:
    """
    Insert an active purchase unless one already exists.

    Does not commit. If a concurrent insert wins the race on the unique
    index, the caller's transaction is rolled back and ``raced`` is set;
    the caller should redo its unit of work, which will then find the
    existing row.
    """
    existing = await get_active_purchase(session, lead_id, dealer_id)
    if existing is not None:
        logger.info("purchase.duplicate_skipped", lead_id=lead_id, dealer_id=dealer_id, payment_id=payment_id)
        return PurchaseInsertResult(purchase=existing, created=False)

    purchase = DealerPurchase(
        lead_id=lead_id,
        dealer_id=dealer_id,
        payment_id=payment_id,
        payment_amount=payment_amount,
        purchase_date=now or utcnow(),
        is_active=True,
        download_count=0,
        discount_applied=discount_applied,
        discount_type=discount_type,
        discount_amount=discount_amount,
        stripe_session_id=stripe_session_id,
        stripe_customer_id=stripe_customer_id,
    )

    session.add(purchase)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        logger.info("purchase.duplicate_race", lead_id=lead_id, dealer_id=dealer_id, payment_id=payment_id)
        return PurchaseInsertResult(purchase=None, created=False, raced=True)

    logger.info(
        "purchase.recorded",
        lead_id=lead_id,
        dealer_id=dealer_id,
        payment_id=payment_id,
        amount=str(payment_amount),
    )
    return PurchaseInsertResult(purchase=purchase, created=True)


async def list_purchases(session: AsyncSession, dealer_id: str) -> List[DealerPurchase]:
    """Active purchases of a dealer, newest first."""
    try:
        result = await session.execute(
            select(DealerPurchase)
            .where(DealerPurchase.dealer_id == dealer_id, DealerPurchase.is_active.is_(True))
            .order_by(DealerPurchase.purchase_date.desc(), DealerPurchase.id)
        )
    except SQLAlchemyError as e:
        raise PersistenceError(details={"operation": "list_purchases"}) from e
    return list(result.scalars())


async def purchased_lead_ids(
    session: AsyncSession,
    dealer_id: str,
    lead_ids: Optional[Iterable[str]] = None,
) -> Set[str]:
    query = select(DealerPurchase.lead_id).where(
        DealerPurchase.dealer_id == dealer_id,
        DealerPurchase.is_active.is_(True),
    )
    if lead_ids is not None:
        query = query.where(DealerPurchase.lead_id.in_(list(lead_ids)))
    try:
        result = await session.execute(query)
    except SQLAlchemyError as e:
        raise PersistenceError(details={"operation": "purchased_lead_ids"}) from e
    return set(result.scalars())


async def purchased_by_others(
    session: AsyncSession,
    dealer_id: str,
    lead_ids: Iterable[str],
) -> Set[str]:
    """Subset of ``lead_ids`` with an active purchase by any other dealer."""
    ids = list(lead_ids)
    if not ids:
        return set()
    try:
        result = await session.execute(
            select(DealerPurchase.lead_id)
            .where(
                DealerPurchase.lead_id.in_(ids),
                DealerPurchase.dealer_id != dealer_id,
                DealerPurchase.is_active.is_(True),
            )
            .distinct()
        )
    except SQLAlchemyError as e:
        raise PersistenceError(details={"operation": "purchased_by_others"}) from e
    return set(result.scalars())


async def record_download(
    session: AsyncSession,
    lead_ids: Iterable[str],
    dealer_id: str,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, DealerPurchase]:
    """
    Stamp ``downloaded_at`` and bump ``download_count`` for purchased leads.

    Every requested lead must have an active purchase by the dealer,
    otherwise nothing is written and AuthorizationError is raised.
    """
    ids = list(dict.fromkeys(lead_ids))
    now = now or utcnow()

    owned = await purchased_lead_ids(session, dealer_id, ids)
    missing = [lead_id for lead_id in ids if lead_id not in owned]
    if missing:
        raise AuthorizationError(
            "Applications must be purchased before download",
            code="not_purchased",
            details={"lead_ids": missing},
        )

    try:
        await session.execute(
            update(DealerPurchase)
            .where(
                DealerPurchase.dealer_id == dealer_id,
                DealerPurchase.lead_id.in_(ids),
                DealerPurchase.is_active.is_(True),
            )
            .values(
                downloaded_at=now,
                download_count=DealerPurchase.download_count + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        result = await session.execute(
            select(DealerPurchase).where(
                DealerPurchase.dealer_id == dealer_id,
                DealerPurchase.lead_id.in_(ids),
                DealerPurchase.is_active.is_(True),
            ).execution_options(populate_existing=True)
        )
        purchases = {purchase.lead_id: purchase for purchase in result.scalars()}
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error("purchase.download_failed", dealer_id=dealer_id, error=str(e))
        raise PersistenceError(details={"operation": "record_download"}) from e

    logger.info("purchase.downloaded", dealer_id=dealer_id, lead_ids=ids)
    return purchases
