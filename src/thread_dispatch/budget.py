"""Spend-based admission control.

Spend for the trailing 1, 7 and 30 UTC days is the sum of the
DailySummaryStore totals for each date in range; missing dates count as
zero. A limit of zero or less is unlimited.

Checks are best-effort under concurrency: spend is only known after a
session finishes, so sessions admitted back-to-back can jointly overshoot
a limit.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

import structlog

from .config import BudgetLimits
from .daily_summary import DailySummaryStore, utc_date_key
from .models import utc_now

logger = structlog.get_logger()

# Warn once spend reaches this share of a limit
WARNING_THRESHOLD_PERCENT = 80.0


class BudgetPeriod(str, Enum):
    """Budget window, in evaluation order."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


PERIOD_DAYS = {
    BudgetPeriod.DAILY: 1,
    BudgetPeriod.WEEKLY: 7,
    BudgetPeriod.MONTHLY: 30,
}

_LIMIT_FIELDS = {
    BudgetPeriod.DAILY: "daily_usd",
    BudgetPeriod.WEEKLY: "weekly_usd",
    BudgetPeriod.MONTHLY: "monthly_usd",
}


@dataclass(frozen=True)
class BudgetCheckResult:
    """The first budget period found at or over its limit."""

    period: BudgetPeriod
    spent: float
    limit: float


@dataclass(frozen=True)
class BudgetWarning:
    """A budget period at or above the warning threshold."""

    period: BudgetPeriod
    spent: float
    limit: float
    percentage: float


class BudgetLedger:
    """Compares rolling spend against configured limits."""

    def __init__(
        self,
        summary_store: DailySummaryStore,
        limits: BudgetLimits,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the ledger.

        Args:
            summary_store: Source of per-day spend
            limits: Live limits object; ``set_limit`` mutates it in place
            clock: Source of the current time
        """
        self._summary = summary_store
        self.limits = limits
        self._clock = clock

    def spend_for_days(self, days: int) -> float:
        """Total spend for today and the ``days - 1`` preceding UTC dates."""
        now = self._clock()
        total = 0.0
        for offset in range(days):
            total += self._summary.total_cost_for_date(utc_date_key(now - timedelta(days=offset)))
        return total

    def daily_spend(self) -> float:
        return self.spend_for_days(PERIOD_DAYS[BudgetPeriod.DAILY])

    def weekly_spend(self) -> float:
        return self.spend_for_days(PERIOD_DAYS[BudgetPeriod.WEEKLY])

    def monthly_spend(self) -> float:
        return self.spend_for_days(PERIOD_DAYS[BudgetPeriod.MONTHLY])

    def _periods(self, limits: BudgetLimits) -> list[tuple[BudgetPeriod, float, float]]:
        return [
            (period, getattr(limits, _LIMIT_FIELDS[period]), self.spend_for_days(days))
            for period, days in PERIOD_DAYS.items()
        ]

    def check_budget(self, limits: BudgetLimits | None = None) -> BudgetCheckResult | None:
        """Check daily, weekly and monthly limits in that order.

        Returns:
            The first exceeded period, or None when within budget.
        """
        for period, limit, spent in self._periods(limits or self.limits):
            if limit > 0 and spent >= limit:
                logger.info(
                    "Budget limit reached",
                    period=period.value,
                    spent=spent,
                    limit=limit,
                )
                return BudgetCheckResult(period=period, spent=spent, limit=limit)
        return None

    def warnings(self, limits: BudgetLimits | None = None) -> list[BudgetWarning]:
        """Every period at or above 80% of its limit."""
        result = []
        for period, limit, spent in self._periods(limits or self.limits):
            if limit <= 0:
                continue
            percentage = spent / limit * 100
            if percentage >= WARNING_THRESHOLD_PERCENT:
                result.append(
                    BudgetWarning(period=period, spent=spent, limit=limit, percentage=percentage)
                )
        return result

    def set_limit(self, period: BudgetPeriod | str, amount: float) -> None:
        """Change a limit at runtime."""
        period = BudgetPeriod(period)
        setattr(self.limits, _LIMIT_FIELDS[period], amount)
        logger.info("Budget limit updated", period=period.value, amount=amount)
