"""
Lock Store: time-bounded exclusive claims on leads.

A lock is active while ``expires_at`` is NULL (permanent) or in the future.
Expiry is a timestamp comparison at read time, so locks lapse without any
write. Concurrent acquirers are serialised on the lead row (SELECT ... FOR
UPDATE) so the check-then-insert below cannot interleave.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.config import settings
from portal.core.exceptions import NotFoundError, PersistenceError, ValidationError
from portal.core.logging import get_structlog_logger
from portal.db.base import utcnow
from portal.models.lead import Lead
from portal.models.lock import LOCK_TYPES, ApplicationLock

logger = get_structlog_logger(__name__)

REASON_ALREADY_LOCKED = "already_locked"


def lock_duration(lock_type: str) -> Optional[timedelta]:
    """Lifetime of a lock type; None means it never expires."""
    if lock_type == "temporary-24h":
        return timedelta(hours=24)
    if lock_type == "temporary-1week":
        return timedelta(days=7)
    if lock_type == "purchase-lock":
        return timedelta(hours=settings.purchase_lock_hours)
    if lock_type == "permanent":
        return None
    raise ValidationError(
        f"Unknown lock type: {lock_type}",
        code="invalid_lock_type",
        details={"lock_type": lock_type, "allowed": list(LOCK_TYPES)},
    )


def active_at(now: datetime):
    return or_(ApplicationLock.expires_at.is_(None), ApplicationLock.expires_at > now)


def later_expiry(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    if current is None or candidate is None:
        return None
    return max(current, candidate)


@dataclass(frozen=True)
class LockInfo:
    is_locked: bool
    lock_type: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_own_lock: bool = False
    locked_by: Optional[str] = None

    @classmethod
    def from_lock(cls, lock: Optional[ApplicationLock], requester_id: str) -> "LockInfo":
        if lock is None:
            return UNLOCKED
        return cls(
            is_locked=True,
            lock_type=lock.lock_type,
            expires_at=lock.expires_at,
            is_own_lock=lock.dealer_id == requester_id,
            locked_by=lock.dealer_id,
        )

    @property
    def is_permanent(self) -> bool:
        return self.is_locked and self.expires_at is None

    @property
    def held_by_other(self) -> bool:
        return self.is_locked and not self.is_own_lock


UNLOCKED = LockInfo(is_locked=False)


@dataclass(frozen=True)
class LockResult:
    success: bool
    lock: Optional[ApplicationLock] = None
    reason: Optional[str] = None


async def select_lead_for_update(session: AsyncSession, lead_id: str) -> Lead:
    result = await session.execute(
        select(Lead).where(Lead.id == lead_id).with_for_update()
    )
    lead = result.scalar_one_or_none()
    if lead is None:
        raise NotFoundError("Application not found", code="lead_not_found", details={"lead_id": lead_id})
    return lead


async def _current_lock(
    session: AsyncSession,
    lead_id: str,
    now: datetime,
) -> Optional[ApplicationLock]:
    result = await session.execute(
        select(ApplicationLock)
        .where(ApplicationLock.lead_id == lead_id, active_at(now))
        .order_by(ApplicationLock.created_at.desc(), ApplicationLock.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def acquire_lock(
    session: AsyncSession,
    lead_id: str,
    dealer_id: str,
    lock_type: str,
    payment_id: Optional[str] = None,
    payment_amount: Decimal = Decimal("0.00"),
    *,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> LockResult:
    """
    Claim a lead for a dealer.

    Fails with ``already_locked`` when another dealer holds an active lock.
    When the dealer already holds the lock, the call succeeds and the expiry
    is extended to the later of the two (a permanent request makes it
    permanent). Re-applying the payment behind the current lock is a no-op,
    so a re-run reconciliation neither extends the lock nor adds the amount
    twice. Every lock type is payment-backed, so ``payment_id`` is required;
    the store never talks to the payment gateway itself.

    With ``commit=False`` the caller owns the transaction.
    """
    if not payment_id:
        raise ValidationError(
            "A payment reference is required to lock an application",
            code="payment_required",
            details={"lead_id": lead_id, "lock_type": lock_type},
        )

    now = now or utcnow()
    duration = lock_duration(lock_type)
    expires_at = now + duration if duration is not None else None
    if expires_at is not None and expires_at <= now:
        raise ValidationError("Lock expiry must be in the future", code="invalid_lock_duration")

    try:
        await select_lead_for_update(session, lead_id)
        current = await _current_lock(session, lead_id, now)

        if current is not None and current.dealer_id != dealer_id:
            logger.info(
                "lock.acquire_rejected",
                lead_id=lead_id,
                dealer_id=dealer_id,
                holder_id=current.dealer_id,
                lock_type=lock_type,
            )
            if commit:
                await session.rollback()
            return LockResult(success=False, reason=REASON_ALREADY_LOCKED)

        if current is not None and current.payment_id == payment_id:
            # Same payment applied again: expiry and amount stay as first granted
            lock = current
            event = "lock.already_applied"
        elif current is not None:
            extended = later_expiry(current.expires_at, expires_at)
            if extended != current.expires_at:
                current.expires_at = extended
                current.lock_type = lock_type
            current.is_paid = True
            current.payment_id = payment_id
            current.payment_amount = (current.payment_amount or Decimal("0.00")) + payment_amount
            lock = current
            event = "lock.extended"
        else:
            lock = ApplicationLock(
                lead_id=lead_id,
                dealer_id=dealer_id,
                lock_type=lock_type,
                created_at=now,
                expires_at=expires_at,
                is_paid=True,
                payment_id=payment_id,
                payment_amount=payment_amount,
            )
            session.add(lock)
            event = "lock.acquired"

        await session.flush()
        if commit:
            await session.commit()

    except SQLAlchemyError as e:
        if commit:
            await session.rollback()
        logger.error("lock.acquire_failed", lead_id=lead_id, dealer_id=dealer_id, error=str(e))
        raise PersistenceError(details={"operation": "acquire_lock", "lead_id": lead_id}) from e

    logger.info(
        event,
        lead_id=lead_id,
        dealer_id=dealer_id,
        lock_type=lock.lock_type,
        expires_at=lock.expires_at.isoformat() if lock.expires_at else None,
        payment_id=payment_id,
    )
    return LockResult(success=True, lock=lock)


async def release_lock(
    session: AsyncSession,
    lead_id: str,
    dealer_id: str,
    *,
    now: Optional[datetime] = None,
) -> bool:
    """Expire the dealer's own active lock on a lead. Returns False if none was held."""
    now = now or utcnow()
    try:
        result = await session.execute(
            update(ApplicationLock)
            .where(
                ApplicationLock.lead_id == lead_id,
                ApplicationLock.dealer_id == dealer_id,
                active_at(now),
            )
            .values(expires_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error("lock.release_failed", lead_id=lead_id, dealer_id=dealer_id, error=str(e))
        raise PersistenceError(details={"operation": "release_lock", "lead_id": lead_id}) from e

    released = result.rowcount > 0
    logger.info("lock.released" if released else "lock.release_noop", lead_id=lead_id, dealer_id=dealer_id)
    return released


async def is_locked(
    session: AsyncSession,
    lead_id: str,
    requester_id: str,
    *,
    now: Optional[datetime] = None,
) -> LockInfo:
    now = now or utcnow()
    try:
        lock = await _current_lock(session, lead_id, now)
    except SQLAlchemyError as e:
        raise PersistenceError(details={"operation": "is_locked", "lead_id": lead_id}) from e
    return LockInfo.from_lock(lock, requester_id)


async def active_locks_by_lead(
    session: AsyncSession,
    lead_ids: Iterable[str],
    *,
    now: Optional[datetime] = None,
) -> Dict[str, ApplicationLock]:
    """Most recent active lock for each of the given leads."""
    ids = list(lead_ids)
    if not ids:
        return {}
    now = now or utcnow()
    try:
        result = await session.execute(
            select(ApplicationLock)
            .where(ApplicationLock.lead_id.in_(ids), active_at(now))
            .order_by(ApplicationLock.created_at.desc(), ApplicationLock.id.desc())
        )
    except SQLAlchemyError as e:
        raise PersistenceError(details={"operation": "active_locks_by_lead"}) from e

    locks: Dict[str, ApplicationLock] = {}
    for lock in result.scalars():
        locks.setdefault(lock.lead_id, lock)
    return locks


async def expire_competing_locks(
    session: AsyncSession,
    lead_id: str,
    dealer_id: str,
    *,
    now: Optional[datetime] = None,
) -> int:
    """Force-expire every active lock on the lead not held by ``dealer_id``.

    Permanent locks are expired too. Does not commit.
    """
    now = now or utcnow()
    result = await session.execute(
        update(ApplicationLock)
        .where(
            ApplicationLock.lead_id == lead_id,
            ApplicationLock.dealer_id != dealer_id,
            active_at(now),
        )
        .values(expires_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info("lock.preempted", lead_id=lead_id, purchaser_id=dealer_id, expired=result.rowcount)
    return result.rowcount


async def holds_active_lock(
    session: AsyncSession,
    lead_id: str,
    dealer_id: str,
    *,
    now: Optional[datetime] = None,
) -> bool:
    now = now or utcnow()
    result = await session.execute(
        select(ApplicationLock.id)
        .where(
            ApplicationLock.lead_id == lead_id,
            ApplicationLock.dealer_id == dealer_id,
            active_at(now),
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None
