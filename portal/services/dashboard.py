"""
Dashboard query layer: leads joined with their current lock and purchase state.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.config import settings
from portal.core.exceptions import PersistenceError
from portal.db.base import utcnow
from portal.models.lead import Lead
from portal.models.purchase import DealerPurchase
from portal.services import lock_store, purchase_store
from portal.services.lock_store import LockInfo
from portal.services.pricing import ContentionState, PriceQuote, PricingSettings, quote


@dataclass(frozen=True)
class DashboardFilters:
    hide_older_than_90_days: bool = True
    hide_locked: bool = False
    hide_purchased: bool = True
    limit: Optional[int] = None
    offset: int = 0


@dataclass(frozen=True)
class ApplicationItem:
    lead: Lead
    lock_info: LockInfo
    is_purchased: bool
    purchased_by_other: bool
    quote: PriceQuote
    discounted_price: Decimal

    @property
    def is_downloaded(self) -> bool:
        return self.is_purchased

    @property
    def price(self) -> Decimal:
        return self.quote.amount

    @property
    def is_age_discounted(self) -> bool:
        return self.quote.rule == "age_discount"


@dataclass(frozen=True)
class PurchasedItem:
    lead: Lead
    purchase: DealerPurchase
    lock_info: LockInfo


def contention_from(lock_info: LockInfo, purchased_by_other: bool) -> ContentionState:
    # Permanent locks never earn the contested price
    return ContentionState(
        held_by_other=lock_info.held_by_other and not lock_info.is_permanent,
        purchased_by_other=purchased_by_other,
    )


async def load_contention(
    session: AsyncSession,
    lead_id: str,
    dealer_id: str,
    *,
    now: Optional[datetime] = None,
) -> Tuple[LockInfo, ContentionState]:
    now = now or utcnow()
    lock_info = await lock_store.is_locked(session, lead_id, dealer_id, now=now)
    others = await purchase_store.purchased_by_others(session, dealer_id, [lead_id])
    return lock_info, contention_from(lock_info, lead_id in others)


async def quote_lead(
    session: AsyncSession,
    lead: Lead,
    dealer_id: str,
    pricing: PricingSettings,
    *,
    now: Optional[datetime] = None,
) -> Tuple[LockInfo, PriceQuote]:
    now = now or utcnow()
    lock_info, contention = await load_contention(session, lead.id, dealer_id, now=now)
    return lock_info, quote(lead.submitted_at, contention, pricing, now)


async def list_available(
    session: AsyncSession,
    dealer_id: str,
    pricing: PricingSettings,
    filters: Optional[DashboardFilters] = None,
    *,
    now: Optional[datetime] = None,
) -> List[ApplicationItem]:
    """
    Leads visible to a dealer with lock info, purchase flags and price.

    Drafts are never listed. Filters are independent and AND-combined;
    results are ordered newest first with the lead id as tie-breaker, and
    limit/offset apply after filtering.
    """
    filters = filters or DashboardFilters()
    now = now or utcnow()

    query = select(Lead).where(Lead.status != "draft")
    if filters.hide_older_than_90_days:
        query = query.where(Lead.submitted_at >= now - timedelta(days=settings.listing_max_age_days))
    query = query.order_by(Lead.submitted_at.desc(), Lead.id.asc())

    try:
        leads = list((await session.execute(query)).scalars())
    except SQLAlchemyError as e:
        raise PersistenceError(details={"operation": "list_available"}) from e

    lead_ids = [lead.id for lead in leads]
    locks = await lock_store.active_locks_by_lead(session, lead_ids, now=now)
    mine = await purchase_store.purchased_lead_ids(session, dealer_id, lead_ids)
    others = await purchase_store.purchased_by_others(session, dealer_id, lead_ids)

    items: List[ApplicationItem] = []
    for lead in leads:
        lock_info = LockInfo.from_lock(locks.get(lead.id), dealer_id)
        is_purchased = lead.id in mine

        if filters.hide_purchased and is_purchased:
            continue
        if filters.hide_locked and lock_info.is_locked and not lock_info.is_own_lock:
            continue

        purchased_by_other = lead.id in others
        items.append(
            ApplicationItem(
                lead=lead,
                lock_info=lock_info,
                is_purchased=is_purchased,
                purchased_by_other=purchased_by_other,
                quote=quote(lead.submitted_at, contention_from(lock_info, purchased_by_other), pricing, now),
                discounted_price=pricing.discounted_price,
            )
        )

    end = filters.offset + filters.limit if filters.limit is not None else None
    return items[filters.offset:end]


async def list_purchased(
    session: AsyncSession,
    dealer_id: str,
    *,
    now: Optional[datetime] = None,
) -> List[PurchasedItem]:
    """The dealer's active purchases, newest first, with full lead details."""
    now = now or utcnow()
    purchases = await purchase_store.list_purchases(session, dealer_id)
    if not purchases:
        return []

    lead_ids = [purchase.lead_id for purchase in purchases]
    try:
        result = await session.execute(select(Lead).where(Lead.id.in_(lead_ids)))
    except SQLAlchemyError as e:
        raise PersistenceError(details={"operation": "list_purchased"}) from e
    leads = {lead.id: lead for lead in result.scalars()}
    locks = await lock_store.active_locks_by_lead(session, lead_ids, now=now)

    return [
        PurchasedItem(
            lead=leads[purchase.lead_id],
            purchase=purchase,
            lock_info=LockInfo.from_lock(locks.get(purchase.lead_id), dealer_id),
        )
        for purchase in purchases
        if purchase.lead_id in leads
    ]
