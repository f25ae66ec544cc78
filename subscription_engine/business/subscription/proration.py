from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

SECONDS_PER_DAY = 86400


@dataclass(frozen=True, slots=True)
class ProrationQuote:
    is_upgrade: bool
    charge_amount: int
    credit_amount: int
    days_remaining: int
    total_days: int

    def as_details(self) -> dict[str, int | bool]:
        return {
            "is_upgrade": self.is_upgrade,
            "charge_amount": self.charge_amount,
            "credit_amount": self.credit_amount,
            "days_remaining": self.days_remaining,
            "total_days": self.total_days,
        }


class ProrationStrategy(Protocol):
    def quote(
        self,
        current_price: int,
        new_price: int,
        period_start: datetime | None,
        period_end: datetime | None,
        now: datetime,
    ) -> ProrationQuote: ...


def _day_counts(period_start: datetime | None, period_end: datetime | None, now: datetime) -> tuple[int, int]:
    if period_start is None or period_end is None or period_end <= period_start:
        return 0, 0
    total_days = max(1, math.ceil((period_end - period_start).total_seconds() / SECONDS_PER_DAY))
    remaining = math.ceil((period_end - now).total_seconds() / SECONDS_PER_DAY)
    return min(max(0, remaining), total_days), total_days


class DailyProrationStrategy:
    """Charges or credits the price difference for the unused days of the period."""

    def quote(
        self,
        current_price: int,
        new_price: int,
        period_start: datetime | None,
        period_end: datetime | None,
        now: datetime,
    ) -> ProrationQuote:
        is_upgrade = new_price > current_price
        days_remaining, total_days = _day_counts(period_start, period_end, now)
        if total_days == 0:
            return ProrationQuote(is_upgrade, 0, 0, 0, 0)

        difference = round((new_price - current_price) * days_remaining / total_days)
        return ProrationQuote(
            is_upgrade=is_upgrade,
            charge_amount=max(0, difference),
            credit_amount=max(0, -difference),
            days_remaining=days_remaining,
            total_days=total_days,
        )


class NoProrationStrategy:
    def quote(
        self,
        current_price: int,
        new_price: int,
        period_start: datetime | None,
        period_end: datetime | None,
        now: datetime,
    ) -> ProrationQuote:
        days_remaining, total_days = _day_counts(period_start, period_end, now)
        return ProrationQuote(new_price > current_price, 0, 0, days_remaining, total_days)
