from __future__ import annotations

import csv
import io
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.exceptions import NotFoundError
from portal.core.logging import get_structlog_logger
from portal.db.base import utcnow
from portal.db.session import get_session
from portal.models.lead import Lead
from portal.schemas.application import (
    ApplicationContact,
    ApplicationListResponse,
    AvailableApplication,
    DownloadRequest,
    LockInfoOut,
    LockReleaseResponse,
    PriceQuoteResponse,
    PurchasedApplication,
)
from portal.services import dashboard, lock_store, purchase_store
from portal.services.auth import get_current_dealer
from portal.services.checkout import load_listed_leads
from portal.services.redis import RedisCache, get_cache
from portal.services.settings_service import get_pricing_settings

logger = get_structlog_logger(__name__)

router = APIRouter(prefix="/applications", tags=["applications"])

CSV_COLUMNS = [
    "id",
    "submitted_at",
    "full_name",
    "email",
    "phone_number",
    "street_address",
    "city",
    "province",
    "postal_code",
    "vehicle_type",
    "preferred_make_model",
    "employment_status",
    "monthly_income",
    "additional_notes",
]


@router.get("", response_model=ApplicationListResponse)
async def list_applications(
    hide_older_than_90_days: bool = Query(True, alias="hideOlderThan90Days"),
    hide_locked: bool = Query(False, alias="hideLocked"),
    hide_purchased: bool = Query(True, alias="hidePurchased"),
    limit: Optional[int] = Query(None, ge=1, le=500),
    offset: int = Query(0, ge=0),
    dealer_id: str = Depends(get_current_dealer),
    session: AsyncSession = Depends(get_session),
    cache: Optional[RedisCache] = Depends(get_cache),
):
    """Applications visible on the dealer dashboard."""
    pricing = await get_pricing_settings(session, cache)
    filters = dashboard.DashboardFilters(
        hide_older_than_90_days=hide_older_than_90_days,
        hide_locked=hide_locked,
        hide_purchased=hide_purchased,
        limit=limit,
        offset=offset,
    )
    items = await dashboard.list_available(session, dealer_id, pricing, filters)
    return ApplicationListResponse(
        items=[AvailableApplication.from_item(item) for item in items],
        count=len(items),
    )


@router.get("/purchased", response_model=List[PurchasedApplication])
async def list_purchased_applications(
    dealer_id: str = Depends(get_current_dealer),
    session: AsyncSession = Depends(get_session),
):
    items = await dashboard.list_purchased(session, dealer_id)
    return [PurchasedApplication.from_item(item) for item in items]


@router.get("/{application_id}/lock", response_model=LockInfoOut)
async def get_lock(
    application_id: str,
    dealer_id: str = Depends(get_current_dealer),
    session: AsyncSession = Depends(get_session),
):
    info = await lock_store.is_locked(session, application_id, dealer_id)
    return LockInfoOut.from_info(info)


@router.delete("/{application_id}/lock", response_model=LockReleaseResponse)
async def release_lock(
    application_id: str,
    dealer_id: str = Depends(get_current_dealer),
    session: AsyncSession = Depends(get_session),
):
    released = await lock_store.release_lock(session, application_id, dealer_id)
    return LockReleaseResponse(success=released)


@router.get("/{application_id}/price", response_model=PriceQuoteResponse)
async def get_price(
    application_id: str,
    dealer_id: str = Depends(get_current_dealer),
    session: AsyncSession = Depends(get_session),
    cache: Optional[RedisCache] = Depends(get_cache),
):
    lead = await session.get(Lead, application_id)
    if lead is None or lead.status == "draft":
        raise NotFoundError("Application not found", code="lead_not_found")

    pricing = await get_pricing_settings(session, cache)
    lock_info, quote = await dashboard.quote_lead(session, lead, dealer_id, pricing, now=utcnow())
    return PriceQuoteResponse(
        application_id=lead.id,
        price=quote.amount,
        standard_price=quote.standard_price,
        pricing_rule=quote.rule,
        discount_amount=quote.discount_amount,
        lock_info=LockInfoOut.from_info(lock_info),
    )


def _render_csv(rows: List[ApplicationContact]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow(row.model_dump(mode="json"))
    return buffer.getvalue()


@router.post("/download")
async def download_applications(
    request: DownloadRequest,
    dealer_id: str = Depends(get_current_dealer),
    session: AsyncSession = Depends(get_session),
):
    """Full contact details for purchased applications, as JSON or CSV."""
    ids = list(dict.fromkeys(request.application_ids))
    # Counters are only bumped once every lead is known to be deliverable
    leads = await load_listed_leads(session, ids)
    await purchase_store.record_download(session, ids, dealer_id)
    rows = [ApplicationContact.model_validate(leads[lead_id]) for lead_id in ids]

    logger.info("applications.downloaded", dealer_id=dealer_id, count=len(rows), format=request.format)

    if request.format == "csv":
        filename = f"applications-{utcnow():%Y%m%d-%H%M%S}.csv"
        return StreamingResponse(
            iter([_render_csv(rows)]),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )
    return {"items": [row.model_dump(mode="json") for row in rows], "count": len(rows)}
