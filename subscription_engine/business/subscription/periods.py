from __future__ import annotations

import calendar
from datetime import datetime, timedelta

FREE_PLAN_TERM = timedelta(days=365)


def add_months(base: datetime, months: int) -> datetime:
    month_index = base.month - 1 + months
    year = base.year + (month_index // 12)
    month = month_index % 12 + 1
    day = min(base.day, calendar.monthrange(year, month)[1])
    return base.replace(year=year, month=month, day=day)


def advance_cycle(base: datetime, billing_cycle: str) -> datetime:
    """One billing cycle after `base`; month ends clamp (Jan 31 + 1 month is Feb 28/29)."""
    return add_months(base, 12 if billing_cycle == "yearly" else 1)


def gateway_total_count(billing_cycle: str) -> int:
    return 1 if billing_cycle == "yearly" else 12


def shift(value: datetime | None, delta: timedelta) -> datetime | None:
    return None if value is None else value + delta
