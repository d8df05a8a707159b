from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from portal.core.config import settings
from portal.core.exceptions import PartialReconciliationFailure
from portal.db.base import utcnow
from portal.models.checkout import CheckoutSession
from portal.models.lock import ApplicationLock
from portal.models.purchase import DealerPurchase
from portal.services import lock_store, purchase_store
from portal.services.reconciliation import (
    STATUS_ALREADY_PROCESSED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    STATUS_NOT_FOUND,
    STATUS_PARTIAL,
    claim_checkout,
    find_unfinished,
    mark_expired,
    reconcile_checkout,
    register_event,
    sweep_unfinished,
)


async def _purchases(session, dealer_id):
    result = await session.execute(select(DealerPurchase).where(DealerPurchase.dealer_id == dealer_id))
    return list(result.scalars())


async def _record(session, session_id):
    return await session.get(CheckoutSession, session_id, populate_existing=True)


@pytest.mark.asyncio
async def test_purchase_checkout_creates_purchases_and_purchase_locks(db_session, lead_factory, checkout_factory):
    first = await lead_factory()
    second = await lead_factory()
    await checkout_factory("cs_1", "dealer-a", [first.id, second.id])

    report = await reconcile_checkout(db_session, "cs_1", payment_id="pi_1", customer_id="cus_1")

    assert report.status == STATUS_COMPLETED
    assert report.ok
    assert set(report.applied) == {first.id, second.id}

    purchases = await _purchases(db_session, "dealer-a")
    assert {p.lead_id for p in purchases} == {first.id, second.id}
    assert all(p.payment_id == "pi_1" and p.stripe_session_id == "cs_1" for p in purchases)
    assert all(p.payment_amount == Decimal("50.00") for p in purchases)

    info = await lock_store.is_locked(db_session, first.id, "dealer-b")
    assert info.lock_type == "purchase-lock"
    assert info.locked_by == "dealer-a"

    record = await _record(db_session, "cs_1")
    assert record.status == "completed"
    assert record.payment_id == "pi_1"
    assert record.completed_at is not None


@pytest.mark.asyncio
async def test_reconcile_twice_is_a_noop(db_session, lead_factory, checkout_factory):
    lead = await lead_factory()
    await checkout_factory("cs_1", "dealer-a", [lead.id])

    await reconcile_checkout(db_session, "cs_1", payment_id="pi_1")
    again = await reconcile_checkout(db_session, "cs_1", payment_id="pi_1")

    assert again.status == STATUS_ALREADY_PROCESSED
    assert len(await _purchases(db_session, "dealer-a")) == 1
    locks = (await db_session.execute(select(ApplicationLock))).scalars().all()
    assert len(locks) == 1


@pytest.mark.asyncio
async def test_purchase_expires_competing_locks(db_session, lead_factory, lock_factory, checkout_factory):
    lead = await lead_factory()
    await lock_factory(lead.id, "dealer-b", lock_type="permanent", expires_in=None)
    await checkout_factory("cs_1", "dealer-a", [lead.id])

    await reconcile_checkout(db_session, "cs_1", payment_id="pi_1")

    assert not await lock_store.holds_active_lock(db_session, lead.id, "dealer-b")
    assert await lock_store.holds_active_lock(db_session, lead.id, "dealer-a")


@pytest.mark.asyncio
async def test_purchase_keeps_purchasers_own_lock(db_session, lead_factory, lock_factory, checkout_factory):
    lead = await lead_factory()
    await lock_factory(lead.id, "dealer-a", lock_type="temporary-1week", expires_in=timedelta(days=7))
    await checkout_factory("cs_1", "dealer-a", [lead.id])

    await reconcile_checkout(db_session, "cs_1", payment_id="pi_1")

    locks = (await db_session.execute(select(ApplicationLock))).scalars().all()
    assert [lock.lock_type for lock in locks] == ["temporary-1week"]


@pytest.mark.asyncio
async def test_lock_checkout_grants_lock(db_session, lead_factory, checkout_factory):
    lead = await lead_factory()
    await checkout_factory(
        "cs_lock", "dealer-a", [lead.id], kind="lock", lock_type="temporary-1week", price=Decimal("9.99")
    )

    report = await reconcile_checkout(db_session, "cs_lock", payment_id="pi_9")

    assert report.status == STATUS_COMPLETED
    info = await lock_store.is_locked(db_session, lead.id, "dealer-a")
    assert info.is_own_lock
    assert info.lock_type == "temporary-1week"
    assert await _purchases(db_session, "dealer-a") == []


@pytest.mark.asyncio
async def test_lock_checkout_fails_when_other_dealer_locked_first(
    db_session, lead_factory, lock_factory, checkout_factory
):
    lead = await lead_factory()
    await lock_factory(lead.id, "dealer-b")
    await checkout_factory("cs_lock", "dealer-a", [lead.id], kind="lock", lock_type="temporary-24h")

    report = await reconcile_checkout(db_session, "cs_lock", payment_id="pi_9")

    assert report.status == STATUS_FAILED
    assert report.failed == (lead.id,)
    assert report.rejected == (lead.id,)
    assert report.errors[lead.id] == "already_locked"
    with pytest.raises(PartialReconciliationFailure) as exc_info:
        report.raise_for_failures()
    assert exc_info.value.failed_lead_ids == [lead.id]

    record = await _record(db_session, "cs_lock")
    assert record.status == "failed"
    assert record.rejected_lead_ids == [lead.id]
    assert record.failed_lead_ids is None


@pytest.mark.asyncio
async def test_rejected_lock_is_not_retried_by_sweep(db_session, gateway, lead_factory, lock_factory, checkout_factory):
    lead = await lead_factory()
    await lock_factory(lead.id, "dealer-b")
    await checkout_factory("cs_lock", "dealer-a", [lead.id], kind="lock", lock_type="temporary-24h")
    await reconcile_checkout(db_session, "cs_lock", payment_id="pi_9")

    assert await find_unfinished(db_session) == []
    counts = await sweep_unfinished(db_session, gateway)
    assert counts == {"checked": 0, "reconciled": 0, "expired": 0, "failed": 0}

    again = await reconcile_checkout(db_session, "cs_lock", payment_id="pi_9")
    assert again.status == STATUS_FAILED
    assert (await _record(db_session, "cs_lock")).attempts == 1
    assert not await lock_store.holds_active_lock(db_session, lead.id, "dealer-a")


@pytest.mark.asyncio
async def test_stale_rerun_of_lock_checkout_keeps_lock_unchanged(db_session, lead_factory, checkout_factory):
    lead = await lead_factory()
    await checkout_factory(
        "cs_lock", "dealer-a", [lead.id], kind="lock", lock_type="temporary-24h", price=Decimal("4.99")
    )
    t0 = utcnow()
    await reconcile_checkout(db_session, "cs_lock", payment_id="pi_lock", now=t0)

    # Crash after the lock commit, before the record was finalised
    await db_session.execute(
        update(CheckoutSession)
        .where(CheckoutSession.id == "cs_lock")
        .values(status="processing", updated_at=t0, completed_at=None)
    )
    await db_session.commit()

    report = await reconcile_checkout(db_session, "cs_lock", now=t0 + timedelta(hours=1), reclaim_stale=True)

    assert report.status == STATUS_COMPLETED
    locks = (await db_session.execute(select(ApplicationLock))).scalars().all()
    assert len(locks) == 1
    await db_session.refresh(locks[0])
    assert locks[0].payment_amount == Decimal("4.99")
    assert locks[0].expires_at == t0 + timedelta(hours=24)


@pytest.mark.asyncio
async def test_partial_checkout_gives_up_after_max_attempts(
    db_session, gateway, lead_factory, checkout_factory, monkeypatch
):
    monkeypatch.setattr(settings, "reconciliation_max_attempts", 2)
    missing_id = "00000000-0000-0000-0000-00000000dead"
    await checkout_factory("cs_1", "dealer-a", [missing_id])

    first = await reconcile_checkout(db_session, "cs_1", payment_id="pi_1")
    assert first.status == STATUS_PARTIAL

    counts = await sweep_unfinished(db_session, gateway, now=utcnow() + timedelta(minutes=1))
    assert counts["checked"] == 1

    record = await _record(db_session, "cs_1")
    assert record.status == "failed"
    assert record.attempts == 2
    assert record.failed_lead_ids == [missing_id]
    assert await find_unfinished(db_session) == []


@pytest.mark.asyncio
async def test_find_unfinished_skips_exhausted_partial(db_session, checkout_factory):
    await checkout_factory("cs_fresh", "dealer-a", ["lead-1"], status="partial", attempts=1)
    await checkout_factory(
        "cs_worn", "dealer-a", ["lead-2"], status="partial", attempts=settings.reconciliation_max_attempts
    )

    found = {order.session_id for order in await find_unfinished(db_session)}
    assert found == {"cs_fresh"}


@pytest.mark.asyncio
async def test_partial_checkout_retries_only_failed_leads(db_session, lead_factory, checkout_factory):
    present = await lead_factory()
    missing_id = "00000000-0000-0000-0000-00000000abcd"
    await checkout_factory("cs_1", "dealer-a", [present.id, missing_id])

    first = await reconcile_checkout(db_session, "cs_1", payment_id="pi_1")
    assert first.status == STATUS_PARTIAL
    assert first.applied == (present.id,)
    assert first.failed == (missing_id,)

    record = await _record(db_session, "cs_1")
    assert record.status == "partial"
    assert record.failed_lead_ids == [missing_id]

    await lead_factory(id=missing_id)
    second = await reconcile_checkout(db_session, "cs_1")

    assert second.status == STATUS_COMPLETED
    assert second.applied == (missing_id,)
    assert len(await _purchases(db_session, "dealer-a")) == 2


@pytest.mark.asyncio
async def test_missing_record_is_rebuilt_from_metadata(db_session, lead_factory):
    lead = await lead_factory()
    metadata = {
        "dealer_id": "dealer-a",
        "kind": "purchase",
        "lock_type": "",
        "unit_price": "35.00",
        "has_discount": "true",
        "discount_type": "contested",
        "discount_amount": "15.00",
        "application_ids": lead.id,
    }

    report = await reconcile_checkout(db_session, "cs_lost", payment_id="pi_1", metadata=metadata)

    assert report.status == STATUS_COMPLETED
    purchases = await _purchases(db_session, "dealer-a")
    assert purchases[0].payment_amount == Decimal("35.00")
    assert purchases[0].discount_type == "contested"


@pytest.mark.asyncio
async def test_unknown_checkout_without_metadata(db_session):
    report = await reconcile_checkout(db_session, "cs_nothing", payment_id="pi_1")
    assert report.status == STATUS_NOT_FOUND
    assert not report.applied


@pytest.mark.asyncio
async def test_claim_is_exclusive_until_stale(db_session, checkout_factory):
    await checkout_factory("cs_1", "dealer-a", ["lead-1"])
    now = utcnow()

    assert await claim_checkout(db_session, "cs_1", now=now)
    assert not await claim_checkout(db_session, "cs_1", now=now)
    assert not await claim_checkout(db_session, "cs_1", now=now + timedelta(minutes=30))
    assert await claim_checkout(db_session, "cs_1", now=now + timedelta(minutes=30), reclaim_stale=True)

    record = await _record(db_session, "cs_1")
    assert record.attempts == 2


@pytest.mark.asyncio
async def test_in_progress_checkout_is_skipped(db_session, lead_factory, checkout_factory):
    lead = await lead_factory()
    await checkout_factory("cs_1", "dealer-a", [lead.id], status="processing")

    report = await reconcile_checkout(db_session, "cs_1", payment_id="pi_1")

    assert report.status == STATUS_IN_PROGRESS
    assert await _purchases(db_session, "dealer-a") == []


@pytest.mark.asyncio
async def test_mark_expired_only_touches_open_checkouts(db_session, checkout_factory):
    await checkout_factory("cs_open", "dealer-a", ["lead-1"])
    await checkout_factory("cs_done", "dealer-a", ["lead-2"], status="completed")

    assert await mark_expired(db_session, "cs_open")
    assert not await mark_expired(db_session, "cs_done")
    assert (await _record(db_session, "cs_open")).status == "expired"
    assert (await _record(db_session, "cs_done")).status == "completed"


@pytest.mark.asyncio
async def test_register_event_detects_duplicates(db_session):
    assert await register_event(db_session, "evt_1", "checkout.session.completed", "cs_1")
    assert not await register_event(db_session, "evt_1", "checkout.session.completed", "cs_1")
    assert await register_event(db_session, "evt_2", "checkout.session.completed", "cs_1")


@pytest.mark.asyncio
async def test_find_unfinished(db_session, checkout_factory):
    now = utcnow()
    await checkout_factory("cs_open", "dealer-a", ["lead-1"])
    await checkout_factory("cs_partial", "dealer-a", ["lead-2"], status="partial")
    await checkout_factory("cs_fresh", "dealer-a", ["lead-3"], status="processing")
    await checkout_factory("cs_stuck", "dealer-a", ["lead-4"], status="processing")
    await checkout_factory("cs_done", "dealer-a", ["lead-5"], status="completed")
    await db_session.execute(
        update(CheckoutSession)
        .where(CheckoutSession.id == "cs_stuck")
        .values(updated_at=now - timedelta(hours=1))
    )
    await db_session.commit()

    found = {order.session_id for order in await find_unfinished(db_session, now=now)}
    assert found == {"cs_open", "cs_partial", "cs_stuck"}


@pytest.mark.asyncio
async def test_sweep_recovers_paid_and_expires_abandoned(db_session, gateway, lead_factory, checkout_factory):
    paid_lead = await lead_factory()
    abandoned_lead = await lead_factory()

    paid = await gateway.create_checkout_session("dealer-a", [paid_lead.id], Decimal("50.00"))
    abandoned = await gateway.create_checkout_session("dealer-a", [abandoned_lead.id], Decimal("50.00"))
    pending = await gateway.create_checkout_session("dealer-a", [abandoned_lead.id], Decimal("50.00"))
    for info, lead in ((paid, paid_lead), (abandoned, abandoned_lead), (pending, abandoned_lead)):
        await checkout_factory(info.session_id, "dealer-a", [lead.id])

    gateway.pay(paid.session_id, payment_id="pi_sweep")
    gateway.set_status(abandoned.session_id, "expired")

    counts = await sweep_unfinished(db_session, gateway)

    assert counts == {"checked": 3, "reconciled": 1, "expired": 1, "failed": 0}
    assert await purchase_store.has_active_purchase(db_session, paid_lead.id, "dealer-a")
    assert (await _record(db_session, abandoned.session_id)).status == "expired"
    assert (await _record(db_session, pending.session_id)).status == "open"
