"""
Reconciliation: turn a paid checkout into purchases and locks.

Payment notifications arrive at least once and possibly twice (webhook plus
client confirmation), so everything here is idempotent. A checkout record
is claimed with a conditional status update so only one caller applies it.
Each lead is applied in its own transaction; a failing lead is logged and
recorded without stopping the others.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.config import settings
from portal.core.exceptions import (
    AlreadyLockedError,
    BaseAPIException,
    ConflictError,
    PartialReconciliationFailure,
    PersistenceError,
    ValidationError,
)
from portal.core.logging import get_structlog_logger
from portal.db.base import utcnow
from portal.models.checkout import CheckoutSession, PaymentEvent
from portal.models.lock import ApplicationLock
from portal.services import lock_store, purchase_store
from portal.services.pricing import money

if TYPE_CHECKING:
    from portal.services.payment_gateway import StripeGateway

logger = get_structlog_logger(__name__)

CLAIMABLE_STATUSES = ("open", "partial", "expired")

STATUS_COMPLETED = "completed"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"
STATUS_ALREADY_PROCESSED = "already_processed"
STATUS_IN_PROGRESS = "in_progress"
STATUS_NOT_FOUND = "not_found"


@dataclass(frozen=True)
class CheckoutOrder:
    """Plain snapshot of a checkout record, safe to use across rollbacks."""
    session_id: str
    dealer_id: str
    kind: str
    lock_type: Optional[str]
    lead_ids: Tuple[str, ...]
    line_prices: Dict[str, Decimal]
    unit_price: Decimal
    discount_applied: bool
    discount_type: Optional[str]
    discount_amount: Optional[Decimal]
    payment_id: Optional[str]
    customer_id: Optional[str]
    status: str = "open"
    attempts: int = 0

    @classmethod
    def from_record(cls, record: CheckoutSession) -> "CheckoutOrder":
        return cls(
            session_id=record.id,
            dealer_id=record.dealer_id,
            kind=record.kind,
            lock_type=record.lock_type,
            lead_ids=tuple(record.lead_ids or ()),
            line_prices={k: money(v) for k, v in (record.line_prices or {}).items()},
            unit_price=money(record.unit_price),
            discount_applied=bool(record.discount_applied),
            discount_type=record.discount_type,
            discount_amount=money(record.discount_amount) if record.discount_amount is not None else None,
            payment_id=record.payment_id,
            customer_id=record.stripe_customer_id,
            status=record.status,
            attempts=record.attempts or 0,
        )

    def price_for(self, lead_id: str) -> Decimal:
        return self.line_prices.get(lead_id, self.unit_price)

    @property
    def payment_reference(self) -> str:
        # Fully discounted sessions carry no payment intent
        return self.payment_id or self.session_id


@dataclass(frozen=True)
class ReconciliationReport:
    session_id: str
    status: str
    dealer_id: Optional[str] = None
    payment_id: Optional[str] = None
    applied: Tuple[str, ...] = ()
    failed: Tuple[str, ...] = ()
    rejected: Tuple[str, ...] = ()
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def raise_for_failures(self) -> None:
        if self.failed:
            raise PartialReconciliationFailure(
                self.session_id,
                list(self.failed),
                details={"dealer_id": self.dealer_id, "payment_id": self.payment_id, "errors": self.errors},
            )


def _truthy(value: Optional[str]) -> bool:
    return str(value).lower() in ("true", "1", "yes")


def is_terminal(error: Exception) -> bool:
    """Business refusals that another attempt cannot change."""
    return isinstance(error, (ConflictError, ValidationError))


async def record_from_metadata(
    session: AsyncSession,
    session_id: str,
    metadata: Mapping[str, str],
) -> Optional[CheckoutSession]:
    """Rebuild a missing checkout record from Stripe session metadata."""
    dealer_id = metadata.get("dealer_id")
    lead_ids = [lead_id for lead_id in (metadata.get("application_ids") or "").split(",") if lead_id]
    if not dealer_id or not lead_ids:
        return None

    unit_price = money(metadata.get("unit_price") or "0")
    has_discount = _truthy(metadata.get("has_discount"))
    lock_type = metadata.get("lock_type") or None
    record = CheckoutSession(
        id=session_id,
        dealer_id=dealer_id,
        kind="lock" if lock_type else "purchase",
        lock_type=lock_type,
        lead_ids=lead_ids,
        line_prices={lead_id: str(unit_price) for lead_id in lead_ids},
        unit_price=unit_price,
        total_amount=unit_price * len(lead_ids),
        currency=settings.stripe_currency,
        discount_applied=has_discount,
        discount_type=metadata.get("discount_type") or None if has_discount else None,
        discount_amount=money(metadata.get("discount_amount") or "0") if has_discount else None,
        status="open",
    )
    session.add(record)
    try:
        await session.commit()
    except IntegrityError:
        # Created concurrently by the other notification path
        await session.rollback()
        return await session.get(CheckoutSession, session_id, populate_existing=True)

    logger.info("reconciliation.record_rebuilt", session_id=session_id, dealer_id=dealer_id, lead_count=len(lead_ids))
    return record


async def claim_checkout(
    session: AsyncSession,
    session_id: str,
    *,
    now: Optional[datetime] = None,
    reclaim_stale: bool = False,
) -> bool:
    """Move a checkout to ``processing``. Exactly one concurrent caller wins."""
    now = now or utcnow()
    claimable = CheckoutSession.status.in_(CLAIMABLE_STATUSES)
    if reclaim_stale:
        stale_before = now - timedelta(minutes=settings.reconciliation_stale_minutes)
        claimable = or_(
            claimable,
            (CheckoutSession.status == "processing") & (CheckoutSession.updated_at < stale_before),
        )

    result = await session.execute(
        update(CheckoutSession)
        .where(CheckoutSession.id == session_id, claimable)
        .values(status="processing", attempts=CheckoutSession.attempts + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def _apply_purchase(session: AsyncSession, order: CheckoutOrder, lead_id: str, now: datetime) -> None:
    for _attempt in range(2):
        await lock_store.select_lead_for_update(session, lead_id)

        inserted = await purchase_store.record_purchase(
            session,
            lead_id,
            order.dealer_id,
            order.price_for(lead_id),
            order.payment_id,
            discount_applied=order.discount_applied,
            discount_type=order.discount_type,
            discount_amount=order.discount_amount,
            stripe_session_id=order.session_id,
            stripe_customer_id=order.customer_id,
            now=now,
        )
        if inserted.raced:
            continue

        await lock_store.expire_competing_locks(session, lead_id, order.dealer_id, now=now)

        if not await lock_store.holds_active_lock(session, lead_id, order.dealer_id, now=now):
            session.add(
                ApplicationLock(
                    lead_id=lead_id,
                    dealer_id=order.dealer_id,
                    lock_type="purchase-lock",
                    created_at=now,
                    expires_at=now + lock_store.lock_duration("purchase-lock"),
                    is_paid=True,
                    payment_id=order.payment_reference,
                    payment_amount=Decimal("0.00"),
                )
            )

        await session.commit()
        return

    raise PersistenceError("Purchase insert kept conflicting", details={"lead_id": lead_id})


async def _apply_lock(session: AsyncSession, order: CheckoutOrder, lead_id: str, now: datetime) -> None:
    result = await lock_store.acquire_lock(
        session,
        lead_id,
        order.dealer_id,
        order.lock_type,
        order.payment_reference,
        order.price_for(lead_id),
        now=now,
        commit=False,
    )
    if not result.success:
        raise AlreadyLockedError(details={"lead_id": lead_id})
    await session.commit()


async def reconcile_checkout(
    session: AsyncSession,
    session_id: str,
    payment_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    metadata: Optional[Mapping[str, str]] = None,
    *,
    now: Optional[datetime] = None,
    reclaim_stale: bool = False,
) -> ReconciliationReport:
    """
    Apply a paid checkout.

    Completed and failed checkouts are a no-op. A ``partial`` checkout only
    retries the leads that failed last time. Business refusals such as
    ``already_locked`` are recorded as rejected and never retried; once
    ``RECONCILIATION_MAX_ATTEMPTS`` is used up the checkout ends ``failed``.
    Per-lead failures never raise; inspect the report or call
    ``raise_for_failures()``.
    """
    now = now or utcnow()

    try:
        record = await session.get(CheckoutSession, session_id, populate_existing=True)
        if record is None and metadata:
            record = await record_from_metadata(session, session_id, metadata)
        if record is None:
            logger.warning("reconciliation.checkout_unknown", session_id=session_id, payment_id=payment_id)
            return ReconciliationReport(session_id=session_id, status=STATUS_NOT_FOUND, payment_id=payment_id)

        if record.status == "completed":
            logger.info("reconciliation.already_processed", session_id=session_id, dealer_id=record.dealer_id)
            return ReconciliationReport(
                session_id=session_id,
                status=STATUS_ALREADY_PROCESSED,
                dealer_id=record.dealer_id,
                payment_id=record.payment_id,
            )

        if record.status == STATUS_FAILED:
            logger.info("reconciliation.already_failed", session_id=session_id, dealer_id=record.dealer_id)
            return ReconciliationReport(
                session_id=session_id,
                status=STATUS_FAILED,
                dealer_id=record.dealer_id,
                payment_id=record.payment_id,
                rejected=tuple(record.rejected_lead_ids or ()),
            )

        previous_status = record.status
        previous_failures = list(record.failed_lead_ids or [])
        previous_rejections = list(record.rejected_lead_ids or [])

        if not await claim_checkout(session, session_id, now=now, reclaim_stale=reclaim_stale):
            logger.info("reconciliation.claim_lost", session_id=session_id)
            return ReconciliationReport(session_id=session_id, status=STATUS_IN_PROGRESS, dealer_id=record.dealer_id)

        record = await session.get(CheckoutSession, session_id, populate_existing=True)
        if payment_id:
            record.payment_id = payment_id
        if customer_id:
            record.stripe_customer_id = customer_id
        order = CheckoutOrder.from_record(record)
        await session.commit()

    except SQLAlchemyError as e:
        await session.rollback()
        logger.error("reconciliation.claim_failed", session_id=session_id, error=str(e))
        raise PersistenceError(details={"operation": "reconcile_checkout", "session_id": session_id}) from e

    if previous_status == "partial" and previous_failures:
        targets = previous_failures
    else:
        targets = [lead_id for lead_id in order.lead_ids if lead_id not in previous_rejections]
    apply_lead = _apply_lock if order.kind == "lock" else _apply_purchase

    applied: List[str] = []
    failed: List[str] = []
    rejected: List[str] = []
    errors: Dict[str, str] = {}
    for lead_id in targets:
        try:
            await apply_lead(session, order, lead_id, now)
            applied.append(lead_id)
        except Exception as e:
            await session.rollback()
            failed.append(lead_id)
            errors[lead_id] = getattr(e, "code", None) or e.__class__.__name__
            if is_terminal(e):
                rejected.append(lead_id)
                logger.warning(
                    "reconciliation.lead_rejected",
                    session_id=session_id,
                    lead_id=lead_id,
                    dealer_id=order.dealer_id,
                    payment_id=order.payment_id,
                    kind=order.kind,
                    code=errors[lead_id],
                )
                continue
            logger.error(
                "reconciliation.lead_failed",
                session_id=session_id,
                lead_id=lead_id,
                dealer_id=order.dealer_id,
                payment_id=order.payment_id,
                kind=order.kind,
                attempt=order.attempts,
                error=str(e),
                exc_info=True,
            )

    retryable = [lead_id for lead_id in failed if lead_id not in rejected]
    all_rejected = previous_rejections + [lead_id for lead_id in rejected if lead_id not in previous_rejections]
    if retryable and order.attempts < settings.reconciliation_max_attempts:
        status = STATUS_PARTIAL
    elif retryable or all_rejected:
        status = STATUS_FAILED
    else:
        status = STATUS_COMPLETED

    try:
        await session.execute(
            update(CheckoutSession)
            .where(CheckoutSession.id == session_id)
            .values(
                status=status,
                failed_lead_ids=retryable or None,
                rejected_lead_ids=all_rejected or None,
                last_error="; ".join(f"{k}: {v}" for k, v in errors.items()) or None,
                completed_at=now if status == STATUS_COMPLETED else None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error("reconciliation.finalize_failed", session_id=session_id, error=str(e))
        raise PersistenceError(details={"operation": "reconcile_checkout", "session_id": session_id}) from e

    if status == STATUS_FAILED:
        # Paid but not fully granted; left for a manual refund
        log = logger.error
    else:
        log = logger.warning if failed else logger.info
    log(
        f"reconciliation.{status}",
        session_id=session_id,
        dealer_id=order.dealer_id,
        payment_id=order.payment_id,
        kind=order.kind,
        applied=len(applied),
        attempts=order.attempts,
        failed_lead_ids=failed,
        rejected_lead_ids=all_rejected,
    )
    return ReconciliationReport(
        session_id=session_id,
        status=status,
        dealer_id=order.dealer_id,
        payment_id=order.payment_id,
        applied=tuple(applied),
        failed=tuple(failed),
        rejected=tuple(rejected),
        errors=errors,
    )


async def mark_expired(session: AsyncSession, session_id: str) -> bool:
    """Mark an unpaid checkout as abandoned. Nothing else is written."""
    result = await session.execute(
        update(CheckoutSession)
        .where(CheckoutSession.id == session_id, CheckoutSession.status == "open")
        .values(status="expired", updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    expired = result.rowcount == 1
    if expired:
        logger.info("reconciliation.checkout_expired", session_id=session_id)
    return expired


async def find_unfinished(
    session: AsyncSession,
    *,
    now: Optional[datetime] = None,
    limit: int = 50,
) -> List[CheckoutOrder]:
    """
    Checkouts the sweep should look at: open ones, partial ones with attempts
    left, and ones stuck in processing.
    """
    now = now or utcnow()
    stale_before = now - timedelta(minutes=settings.reconciliation_stale_minutes)
    result = await session.execute(
        select(CheckoutSession)
        .where(
            or_(
                CheckoutSession.status == "open",
                (CheckoutSession.status == "partial")
                & (CheckoutSession.attempts < settings.reconciliation_max_attempts),
                (CheckoutSession.status == "processing") & (CheckoutSession.updated_at < stale_before),
            )
        )
        .order_by(CheckoutSession.updated_at)
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return [CheckoutOrder.from_record(record) for record in result.scalars()]


async def register_event(
    session: AsyncSession,
    event_id: str,
    event_type: str,
    session_id: Optional[str] = None,
) -> bool:
    """Remember a webhook event. Returns False if it was seen before."""
    session.add(PaymentEvent(id=event_id, event_type=event_type, session_id=session_id, received_at=utcnow()))
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.info("reconciliation.duplicate_event", event_id=event_id, event_type=event_type)
        return False
    except SQLAlchemyError as e:
        await session.rollback()
        raise PersistenceError(details={"operation": "register_event", "event_id": event_id}) from e
    return True


async def sweep_unfinished(
    session: AsyncSession,
    gateway: StripeGateway,
    *,
    now: Optional[datetime] = None,
    limit: int = 50,
) -> Dict[str, int]:
    """
    Recover checkouts whose notifications were lost or failed.

    Open checkouts are checked against Stripe first; partial and stuck ones
    are already known to be paid and are simply re-run.
    """
    now = now or utcnow()
    counts = {"checked": 0, "reconciled": 0, "expired": 0, "failed": 0}

    for order in await find_unfinished(session, now=now, limit=limit):
        counts["checked"] += 1
        try:
            if order.status == "open":
                status = await gateway.complete_session(order.session_id)
                if status.paid:
                    report = await reconcile_checkout(
                        session,
                        order.session_id,
                        payment_id=status.payment_id,
                        customer_id=status.customer_id,
                        now=now,
                    )
                elif status.status == "expired":
                    if await mark_expired(session, order.session_id):
                        counts["expired"] += 1
                    continue
                else:
                    continue
            else:
                report = await reconcile_checkout(session, order.session_id, now=now, reclaim_stale=True)

        except BaseAPIException as e:
            await session.rollback()
            counts["failed"] += 1
            logger.error("reconciliation.sweep_error", session_id=order.session_id, code=e.code, error=e.message)
            continue

        if report.failed:
            counts["failed"] += 1
        elif report.status == STATUS_COMPLETED:
            counts["reconciled"] += 1

    if counts["checked"]:
        logger.info("reconciliation.sweep_finished", **counts)
    return counts
