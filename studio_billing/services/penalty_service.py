"""Late-payment penalty calculation.

Policy:
- no penalty for the first ``grace_days`` calendar days after the due date
- 5% base rate once the grace window is over
- +0.5% for every day late beyond the grace window
- rate capped at 50% of the base amount
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, UTC
from decimal import Decimal, ROUND_HALF_UP
from zoneinfo import ZoneInfo

from studio_billing.clock import local_date, start_of_day
from studio_billing.constants import (
    PENALTY_BASE_RATE,
    PENALTY_DAILY_RATE,
    PENALTY_GRACE_DAYS,
    PENALTY_MAX_RATE,
)


@dataclass(frozen=True)
class PenaltyPolicy:
    grace_days: int = PENALTY_GRACE_DAYS
    base_rate: Decimal = Decimal(PENALTY_BASE_RATE)
    daily_rate: Decimal = Decimal(PENALTY_DAILY_RATE)
    max_rate: Decimal = Decimal(PENALTY_MAX_RATE)

    @classmethod
    def from_settings(cls, settings) -> "PenaltyPolicy":
        return cls(
            grace_days=settings.penalty_grace_days,
            base_rate=Decimal(str(settings.penalty_base_rate)),
            daily_rate=Decimal(str(settings.penalty_daily_rate)),
            max_rate=Decimal(str(settings.penalty_max_rate)),
        )


@dataclass(frozen=True)
class PenaltyResult:
    days_late: int
    penalty_rate: Decimal
    penalty_amount: int
    within_grace_period: bool


def difference_in_calendar_days(later: datetime, earlier: datetime, tz: ZoneInfo | timezone = UTC) -> int:
    """Whole calendar days from ``earlier`` to ``later`` in ``tz``; never negative."""
    return max(0, (local_date(later, tz) - local_date(earlier, tz)).days)


def penalty_cutoff(now: datetime, grace_days: int, tz: ZoneInfo | timezone = UTC) -> datetime:
    """Start of the local day ``grace_days`` before today, in UTC.

    Payments due strictly before this instant are at least one day late
    beyond the grace window.
    """
    return start_of_day(local_date(now, tz) - timedelta(days=grace_days), tz)


def calculate_penalty(
    base_amount: int,
    due_date: datetime,
    now: datetime,
    policy: PenaltyPolicy = PenaltyPolicy(),
    tz: ZoneInfo | timezone = UTC,
) -> PenaltyResult:
    """Calculate the penalty owed on ``base_amount`` for a payment due at ``due_date``."""
    total_days_late = difference_in_calendar_days(now, due_date, tz)
    days_late = max(0, total_days_late - policy.grace_days)
    within_grace_period = total_days_late > 0 and days_late == 0

    if days_late == 0:
        return PenaltyResult(
            days_late=0,
            penalty_rate=Decimal("0"),
            penalty_amount=0,
            within_grace_period=within_grace_period,
        )

    penalty_rate = min(policy.base_rate + days_late * policy.daily_rate, policy.max_rate)
    penalty_amount = int((Decimal(base_amount) * penalty_rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    return PenaltyResult(
        days_late=days_late,
        penalty_rate=penalty_rate,
        penalty_amount=penalty_amount,
        within_grace_period=within_grace_period,
    )
