from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from portal.services.pricing import (
    RULE_AGE_DISCOUNT,
    RULE_CONTESTED,
    RULE_STANDARD,
    ContentionState,
    is_age_discounted,
    lead_age_days,
    lock_fee,
    money,
    price,
    quote,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def test_money_rounds_half_up():
    assert money("37.4925") == Decimal("37.49")
    assert money("0.005") == Decimal("0.01")
    assert money(50) == Decimal("50.00")


def test_lead_age_days_counts_whole_days():
    assert lead_age_days(NOW - timedelta(days=30), NOW) == 30
    assert lead_age_days(NOW - timedelta(days=29, hours=23), NOW) == 29


def test_fresh_uncontested_lead_is_standard_price(pricing):
    result = quote(NOW - timedelta(days=1), ContentionState(), pricing, NOW)
    assert result.amount == Decimal("50.00")
    assert result.rule == RULE_STANDARD
    assert result.discount_amount == Decimal("0.00")
    assert not result.is_discounted


def test_age_discount_applies_at_threshold(pricing):
    submitted = NOW - timedelta(days=30)
    assert is_age_discounted(submitted, pricing, NOW)

    result = quote(submitted, ContentionState(), pricing, NOW)
    assert result.amount == Decimal("37.50")
    assert result.rule == RULE_AGE_DISCOUNT
    assert result.discount_amount == Decimal("12.50")


def test_age_discount_not_applied_below_threshold(pricing):
    assert not is_age_discounted(NOW - timedelta(days=29), pricing, NOW)


def test_age_discount_disabled(pricing):
    disabled = replace(pricing, age_discount_enabled=False)
    assert price(NOW - timedelta(days=120), ContentionState(), disabled, NOW) == Decimal("50.00")


def test_contested_price_when_other_dealer_holds_temporary_lock(pricing):
    result = quote(NOW - timedelta(days=1), ContentionState(held_by_other=True), pricing, NOW)
    assert result.amount == Decimal("35.00")
    assert result.rule == RULE_CONTESTED
    assert result.is_discounted


def test_contested_price_gone_after_other_dealer_purchase(pricing):
    contention = ContentionState(held_by_other=True, purchased_by_other=True)
    assert price(NOW - timedelta(days=1), contention, pricing, NOW) == Decimal("50.00")


def test_age_discount_wins_over_contested(pricing):
    contention = ContentionState(held_by_other=True)
    result = quote(NOW - timedelta(days=45), contention, pricing, NOW)
    assert result.rule == RULE_AGE_DISCOUNT
    assert result.amount == Decimal("37.50")


def test_age_discount_rounds_to_cents(pricing):
    odd = replace(pricing, standard_price=Decimal("49.99"))
    assert price(NOW - timedelta(days=31), ContentionState(), odd, NOW) == Decimal("37.49")


def test_price_is_deterministic(pricing):
    submitted = NOW - timedelta(days=12)
    contention = ContentionState(held_by_other=True)
    assert quote(submitted, contention, pricing, NOW) == quote(submitted, contention, pricing, NOW)


def test_lock_fee_lookup():
    fees = {"temporary-24h": Decimal("4.99"), "permanent": Decimal("29.99")}
    assert lock_fee("temporary-24h", fees) == Decimal("4.99")
    assert lock_fee("temporary-1week", fees) is None
