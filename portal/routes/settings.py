from __future__ import annotations

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.config import settings
from portal.db.session import get_session
from portal.schemas.settings import LockoutPeriodOut, SystemSettingsOut, SystemSettingsUpdate
from portal.services.auth import DEALER_ROLES, require_role
from portal.services.redis import RedisCache, get_cache
from portal.services.settings_service import get_system_settings, list_lockout_periods, update_system_settings

router = APIRouter(tags=["settings"])

DEFAULT_PERIODS = (
    ("24 hours", "temporary-24h", 24),
    ("1 week", "temporary-1week", 24 * 7),
    ("Permanent", "permanent", None),
)


@router.get("/settings", response_model=SystemSettingsOut)
async def read_settings(
    _user: Dict = Depends(require_role(*DEALER_ROLES)),
    session: AsyncSession = Depends(get_session),
):
    return await get_system_settings(session)


@router.put("/settings", response_model=SystemSettingsOut)
async def write_settings(
    request: SystemSettingsUpdate,
    user: Dict = Depends(require_role("admin")),
    session: AsyncSession = Depends(get_session),
    cache: Optional[RedisCache] = Depends(get_cache),
):
    """Change pricing settings. Only the fields sent are updated."""
    changes = request.model_dump(exclude_unset=True, exclude_none=True)
    return await update_system_settings(session, changes, cache, updated_by=user["id"])


@router.get("/lockout-periods", response_model=List[LockoutPeriodOut])
async def read_lockout_periods(
    _user: Dict = Depends(require_role(*DEALER_ROLES)),
    session: AsyncSession = Depends(get_session),
):
    """Paid lock options offered to dealers."""
    periods = await list_lockout_periods(session)
    if periods:
        return periods

    fees = settings.lock_fees()
    return [
        LockoutPeriodOut(name=name, lock_type=lock_type, hours=hours, fee=fees[lock_type])
        for name, lock_type, hours in DEFAULT_PERIODS
    ]
