"""Mid-cycle plan change proration (KRW, whole won).

prorated = round_half_up(price_delta * days_remaining / cycle_total_days),
clamped to [0, |price_delta|]. A downgrade or a same-price change costs 0 now.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from payments_api.pricing.models import PlanCatalogModel
from payments_api.utils.clock import as_utc

SECONDS_PER_DAY = 86400


def prorated_amount(price_delta: int, days_remaining: int, cycle_total_days: int) -> int:
    """Amount owed now for the rest of the cycle.

    Example: basic -> pro monthly, 15 of 30 days left, delta 30,000 -> 15,000.
    """
    if price_delta <= 0 or days_remaining <= 0 or cycle_total_days <= 0:
        return 0

    raw = Decimal(price_delta) * Decimal(days_remaining) / Decimal(cycle_total_days)
    amount = int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return min(max(amount, 0), abs(price_delta))


def days_remaining(period_end: Optional[datetime], now: datetime, cycle_total_days: int) -> int:
    """Whole days left in the period (partial days count as a day), capped at the cycle length."""
    end = as_utc(period_end)
    if end is None or end <= now:
        return 0
    days = math.ceil((end - now).total_seconds() / SECONDS_PER_DAY)
    return min(days, cycle_total_days)


@dataclass(frozen=True)
class ProrationQuote:
    from_tier: str
    to_tier: str
    billing_cycle: str
    price_delta: int
    days_remaining: int
    cycle_total_days: int
    prorated_amount: int
    is_upgrade: bool


def quote(
    catalog: PlanCatalogModel,
    *,
    from_tier: str,
    to_tier: str,
    billing_cycle: str,
    period_end: Optional[datetime],
    now: datetime,
) -> ProrationQuote:
    """
    Raises:
        UnknownPlanError: Either tier is not in the catalog
    """
    cycle_total_days = catalog.days_in_cycle(billing_cycle)
    price_delta = catalog.price(to_tier, billing_cycle) - catalog.price(from_tier, billing_cycle)
    remaining = days_remaining(period_end, now, cycle_total_days)

    return ProrationQuote(
        from_tier=from_tier,
        to_tier=to_tier,
        billing_cycle=billing_cycle,
        price_delta=price_delta,
        days_remaining=remaining,
        cycle_total_days=cycle_total_days,
        prorated_amount=prorated_amount(price_delta, remaining, cycle_total_days),
        is_upgrade=catalog.tier_rank(to_tier) > catalog.tier_rank(from_tier),
    )
