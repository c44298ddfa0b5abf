"""
Billing arithmetic. Pure functions: no session, no clock, no rounding.

A plan is anything carrying customer_price, operator_cost, interval_value and
interval_unit (a Product, or the snapshot on a Subscription).
"""
from __future__ import annotations

import math
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Optional

from cablebill.utils.helpers import safe_float

DAYS_PER_MONTH = 30


@dataclass(frozen=True)
class Charge:
    base_amount: float
    extra_charge: float
    discount: float
    net_amount: float
    cost_of_goods_sold: float
    profit: float
    factor: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class PlanChangeQuote:
    remaining_days: int
    credit_amount: float   # old plan, unused days
    charge_amount: float   # new plan, same days
    net: float             # charge - credit; negative means the customer gains credit

    def to_dict(self) -> dict:
        return asdict(self)


def interval_days(value: Any, unit: str) -> int:
    """Plan interval in days; a month counts as 30."""
    v = int(value or 0)
    if unit == "months":
        return v * DAYS_PER_MONTH
    return v


def plan_interval_days(plan: Any) -> int:
    return interval_days(plan.interval_value, plan.interval_unit)


def compute_charge(
    plan: Any,
    requested_duration_days: Optional[float] = None,
    extra_charge: Any = 0,
    discount: Any = 0,
    price_override: Optional[float] = None,
) -> Charge:
    """
    Price one billing period.

    factor = requested_duration_days / plan interval (1 when no duration is
    requested). base = price * factor, unless price_override is given, in
    which case it replaces the base amount outright. Cost always scales with
    the factor.
    """
    native = plan_interval_days(plan)
    if requested_duration_days is None or native <= 0:
        days, native = 1.0, 1
    else:
        days = float(requested_duration_days)
    factor = days / native

    # price * days / native keeps whole-day multiples exact in binary floats
    if price_override is not None:
        base = float(price_override)
    else:
        base = safe_float(plan.customer_price) * days / native

    extra = safe_float(extra_charge)
    disc = safe_float(discount)
    net = base + extra - disc
    cogs = safe_float(plan.operator_cost) * days / native
    return Charge(
        base_amount=base,
        extra_charge=extra,
        discount=disc,
        net_amount=net,
        cost_of_goods_sold=cogs,
        profit=net - cogs,
        factor=factor,
    )


def _prorated(price: Any, interval: int, days: int) -> float:
    if not interval:
        return 0.0
    return safe_float(price) * days / interval


def compute_plan_change(
    old_price: Any,
    old_interval_days: int,
    new_price: Any,
    new_interval_days: int,
    remaining_days: int,
) -> PlanChangeQuote:
    # old_daily * remaining credited, new_daily * remaining charged
    remaining = max(int(remaining_days or 0), 0)
    credit = _prorated(old_price, old_interval_days, remaining)
    charge = _prorated(new_price, new_interval_days, remaining)
    return PlanChangeQuote(
        remaining_days=remaining,
        credit_amount=credit,
        charge_amount=charge,
        net=charge - credit,
    )


def remaining_days(expiry: Optional[datetime], as_of: datetime) -> int:
    """Whole days left until expiry, rounded up; 0 once expired."""
    if expiry is None:
        return 0
    return max(math.ceil((expiry - as_of).total_seconds() / 86400), 0)
