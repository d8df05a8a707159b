"""
Lead pricing.

Pure functions only: every input, including the evaluation time, is passed
in explicitly so the same inputs always produce the same price.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping, Optional

CENTS = Decimal("0.01")

RULE_AGE_DISCOUNT = "age_discount"
RULE_CONTESTED = "contested"
RULE_STANDARD = "standard"


@dataclass(frozen=True)
class PricingSettings:
    standard_price: Decimal
    discounted_price: Decimal
    age_discount_enabled: bool
    age_discount_threshold: int
    age_discount_percentage: int
    temporary_lock_minutes: int = 60


@dataclass(frozen=True)
class ContentionState:
    """Lock/purchase state of a lead as seen by the pricing requester.

    ``held_by_other`` is true only for an active, non-permanent lock held by
    a different dealer.
    """
    held_by_other: bool = False
    purchased_by_other: bool = False


@dataclass(frozen=True)
class PriceQuote:
    amount: Decimal
    rule: str
    standard_price: Decimal

    @property
    def discount_amount(self) -> Decimal:
        return max(self.standard_price - self.amount, Decimal("0.00"))

    @property
    def is_discounted(self) -> bool:
        return self.rule != RULE_STANDARD and self.amount < self.standard_price


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def lead_age_days(submitted_at: datetime, as_of: datetime) -> int:
    return (as_of - submitted_at).days


def is_age_discounted(submitted_at: datetime, settings: PricingSettings, as_of: datetime) -> bool:
    return (
        settings.age_discount_enabled
        and lead_age_days(submitted_at, as_of) >= settings.age_discount_threshold
    )


def quote(
    submitted_at: datetime,
    contention: ContentionState,
    settings: PricingSettings,
    as_of: datetime,
) -> PriceQuote:
    """Price a lead. The first matching rule wins.

    1. Old enough for the age discount: standard price less the percentage.
    2. Another dealer holds a temporary lock and nobody else has bought the
       lead yet: the contested (discounted) price.
    3. Otherwise the standard price.
    """
    standard = money(settings.standard_price)

    if is_age_discounted(submitted_at, settings, as_of):
        factor = (Decimal(100) - Decimal(settings.age_discount_percentage)) / Decimal(100)
        return PriceQuote(money(standard * factor), RULE_AGE_DISCOUNT, standard)

    # Once another dealer has purchased the lead, purchase state governs.
    if contention.held_by_other and not contention.purchased_by_other:
        return PriceQuote(money(settings.discounted_price), RULE_CONTESTED, standard)

    return PriceQuote(standard, RULE_STANDARD, standard)


def price(
    submitted_at: datetime,
    contention: ContentionState,
    settings: PricingSettings,
    as_of: datetime,
) -> Decimal:
    return quote(submitted_at, contention, settings, as_of).amount


def lock_fee(lock_type: str, fees: Mapping[str, Decimal]) -> Optional[Decimal]:
    fee = fees.get(lock_type)
    return money(fee) if fee is not None else None
