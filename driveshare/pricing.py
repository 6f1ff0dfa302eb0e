# Price breakdown for a reservation, snapshotted onto the booking at creation.
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

# Fee percentages of the base price; external configuration, not business logic.
SERVICE_FEE_PERCENT = Decimal(os.getenv("SERVICE_FEE_PERCENT", "10"))
INSURANCE_FEE_PERCENT = Decimal(os.getenv("INSURANCE_FEE_PERCENT", "5"))

# Renter cancellation tiers: (days before pickup strictly below, percent of total kept)
CANCELLATION_TIERS = (
    (1, Decimal("50")),
    (3, Decimal("25")),
    (7, Decimal("10")),
)


@dataclass(frozen=True)
class PriceBreakdown:
    days: int
    base_price_cents: int
    service_fee_cents: int
    insurance_fee_cents: int
    total_price_cents: int


def percent_of(amount_cents: int, percent: Decimal) -> int:
    """Return `percent`% of `amount_cents`, rounded half-up to a whole cent."""
    value = (Decimal(amount_cents) * percent / Decimal(100)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(value)


def quote(daily_rate_cents: int, start_date: date, end_date: date) -> PriceBreakdown:
    days = (end_date - start_date).days
    base = days * daily_rate_cents
    service_fee = percent_of(base, SERVICE_FEE_PERCENT)
    insurance_fee = percent_of(base, INSURANCE_FEE_PERCENT)
    return PriceBreakdown(
        days=days,
        base_price_cents=base,
        service_fee_cents=service_fee,
        insurance_fee_cents=insurance_fee,
        total_price_cents=base + service_fee + insurance_fee,
    )


def cancellation_fee(total_price_cents: int, start_date: date, today: date) -> int:
    """Fee retained when a renter cancels a paid booking `start_date - today` days ahead."""
    days_until_start = (start_date - today).days
    for below, percent in CANCELLATION_TIERS:
        if days_until_start < below:
            return percent_of(total_price_cents, percent)
    return 0
