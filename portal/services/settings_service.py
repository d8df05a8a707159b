from __future__ import annotations

from dataclasses import asdict
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.config import settings
from portal.core.exceptions import PersistenceError, ValidationError
from portal.core.logging import get_structlog_logger
from portal.models.settings import SETTINGS_ROW_ID, LockoutPeriod, SystemSettings
from portal.services.pricing import PricingSettings, money
from portal.services.redis import RedisCache

logger = get_structlog_logger(__name__)

PRICING_CACHE_KEY = "settings:pricing"

# Stripe checkout sessions live between 30 minutes and 24 hours
MIN_CHECKOUT_MINUTES = 30
MAX_CHECKOUT_MINUTES = 24 * 60

EDITABLE_FIELDS = (
    "standard_price",
    "discounted_price",
    "temporary_lock_minutes",
    "age_discount_enabled",
    "age_discount_threshold",
    "age_discount_percentage",
)


def config_defaults() -> Dict[str, Any]:
    return {
        "standard_price": settings.default_standard_price,
        "discounted_price": settings.default_discounted_price,
        "temporary_lock_minutes": settings.default_temporary_lock_minutes,
        "age_discount_enabled": settings.default_age_discount_enabled,
        "age_discount_threshold": settings.default_age_discount_threshold,
        "age_discount_percentage": settings.default_age_discount_percentage,
    }


def to_pricing_settings(row: SystemSettings) -> PricingSettings:
    return PricingSettings(
        standard_price=money(row.standard_price),
        discounted_price=money(row.discounted_price),
        age_discount_enabled=bool(row.age_discount_enabled),
        age_discount_threshold=int(row.age_discount_threshold),
        age_discount_percentage=int(row.age_discount_percentage),
        temporary_lock_minutes=int(row.temporary_lock_minutes),
    )


def _from_cached(data: Mapping[str, Any]) -> PricingSettings:
    return PricingSettings(
        standard_price=money(data["standard_price"]),
        discounted_price=money(data["discounted_price"]),
        age_discount_enabled=bool(data["age_discount_enabled"]),
        age_discount_threshold=int(data["age_discount_threshold"]),
        age_discount_percentage=int(data["age_discount_percentage"]),
        temporary_lock_minutes=int(data["temporary_lock_minutes"]),
    )


def checkout_ttl_minutes(pricing: PricingSettings) -> int:
    """How long an unpaid checkout may hold its quoted price."""
    return min(max(pricing.temporary_lock_minutes, MIN_CHECKOUT_MINUTES), MAX_CHECKOUT_MINUTES)


async def get_system_settings(session: AsyncSession) -> SystemSettings:
    """Load the settings row, creating it from configuration defaults if missing."""
    try:
        row = await session.get(SystemSettings, SETTINGS_ROW_ID)
        if row is not None:
            return row

        row = SystemSettings(id=SETTINGS_ROW_ID, **config_defaults())
        session.add(row)
        try:
            await session.commit()
            logger.info("settings.initialized", **{k: str(v) for k, v in config_defaults().items()})
        except IntegrityError:
            # Another request created it first
            await session.rollback()
            row = await session.get(SystemSettings, SETTINGS_ROW_ID)
        return row

    except SQLAlchemyError as e:
        logger.error("settings.load_failed", error=str(e))
        raise PersistenceError(details={"operation": "get_system_settings"}) from e


async def get_pricing_settings(
    session: AsyncSession,
    cache: Optional[RedisCache] = None,
) -> PricingSettings:
    if cache is not None:
        cached = await cache.get(PRICING_CACHE_KEY)
        if cached:
            return _from_cached(cached)

    pricing = to_pricing_settings(await get_system_settings(session))

    if cache is not None:
        await cache.set(PRICING_CACHE_KEY, asdict(pricing), expire=settings.settings_cache_ttl_seconds)
    return pricing


def _validate_changes(changes: Mapping[str, Any], merged: Mapping[str, Any]) -> None:
    unknown = sorted(set(changes) - set(EDITABLE_FIELDS))
    if unknown:
        raise ValidationError("Unknown settings", code="invalid_settings", details={"fields": unknown})

    errors = {}
    if Decimal(str(merged["standard_price"])) < 0:
        errors["standard_price"] = "must be non-negative"
    if Decimal(str(merged["discounted_price"])) < 0:
        errors["discounted_price"] = "must be non-negative"
    if int(merged["temporary_lock_minutes"]) < 1:
        errors["temporary_lock_minutes"] = "must be at least 1"
    if int(merged["age_discount_threshold"]) < 0:
        errors["age_discount_threshold"] = "must be non-negative"
    if not 0 <= int(merged["age_discount_percentage"]) <= 100:
        errors["age_discount_percentage"] = "must be between 0 and 100"

    if errors:
        raise ValidationError("Invalid settings", code="invalid_settings", details=errors)


async def update_system_settings(
    session: AsyncSession,
    changes: Mapping[str, Any],
    cache: Optional[RedisCache] = None,
    updated_by: Optional[str] = None,
) -> SystemSettings:
    row = await get_system_settings(session)
    merged = {field: getattr(row, field) for field in EDITABLE_FIELDS}
    merged.update(changes)
    _validate_changes(changes, merged)

    for field, value in changes.items():
        setattr(row, field, value)

    try:
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error("settings.update_failed", error=str(e))
        raise PersistenceError(details={"operation": "update_system_settings"}) from e

    if cache is not None:
        await cache.delete(PRICING_CACHE_KEY)

    logger.info(
        "settings.updated",
        updated_by=updated_by,
        fields=sorted(changes),
    )
    return row


async def list_lockout_periods(session: AsyncSession, active_only: bool = True) -> List[LockoutPeriod]:
    query = select(LockoutPeriod).order_by(LockoutPeriod.fee, LockoutPeriod.id)
    if active_only:
        query = query.where(LockoutPeriod.is_active.is_(True))
    try:
        result = await session.execute(query)
    except SQLAlchemyError as e:
        raise PersistenceError(details={"operation": "list_lockout_periods"}) from e
    return list(result.scalars())


async def get_lock_fees(session: AsyncSession) -> Dict[str, Decimal]:
    """Fee per paid lock type: active lockout periods override configured defaults."""
    fees = dict(settings.lock_fees())
    for period in await list_lockout_periods(session):
        fees[period.lock_type] = money(period.fee)
    return fees
