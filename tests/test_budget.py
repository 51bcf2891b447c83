"""Tests for the budget ledger."""

from pathlib import Path

import pytest

from thread_dispatch.budget import BudgetLedger, BudgetPeriod
from thread_dispatch.config import BudgetLimits
from thread_dispatch.daily_summary import DailySummaryStore
from thread_dispatch.models import CompletedSessionRecord, TokenUsage


def _record(cost: float) -> CompletedSessionRecord:
    return CompletedSessionRecord(
        thread_id="t-1",
        user_id="user-a",
        project_name="repo",
        project_path="/repo",
        prompt_text="fix it",
        cost_usd=cost,
        usage=TokenUsage(cost_usd=cost),
        duration_ms=1000,
    )


@pytest.fixture
def summary(data_dir: Path, clock) -> DailySummaryStore:
    return DailySummaryStore(data_dir, clock)


def _spend(summary: DailySummaryStore, clock, days_ago: int, cost: float) -> None:
    clock.advance(days=-days_ago)
    summary.record_completed_session(_record(cost))
    clock.advance(days=days_ago)


class TestSpend:
    """Test rolling spend windows."""

    def test_windows_sum_daily_totals(self, summary: DailySummaryStore, clock) -> None:
        """Test each window sums the dates in range."""
        _spend(summary, clock, 0, 1.0)
        _spend(summary, clock, 3, 2.0)
        _spend(summary, clock, 20, 4.0)
        _spend(summary, clock, 40, 8.0)
        ledger = BudgetLedger(summary, BudgetLimits(), clock)

        assert ledger.daily_spend() == pytest.approx(1.0)
        assert ledger.weekly_spend() == pytest.approx(3.0)
        assert ledger.monthly_spend() == pytest.approx(7.0)

    def test_missing_dates_are_zero(self, summary: DailySummaryStore, clock) -> None:
        """Test no records means no spend."""
        ledger = BudgetLedger(summary, BudgetLimits(), clock)
        assert ledger.spend_for_days(30) == 0.0


class TestCheckBudget:
    """Test check_budget."""

    def test_zero_limit_is_unlimited(self, summary: DailySummaryStore, clock) -> None:
        """Test a zero limit never blocks."""
        _spend(summary, clock, 0, 1000.0)
        ledger = BudgetLedger(summary, BudgetLimits(daily_usd=0), clock)
        assert ledger.check_budget() is None

    def test_spend_equal_to_limit_is_exceeded(self, summary: DailySummaryStore, clock) -> None:
        """Test spend at the limit blocks."""
        _spend(summary, clock, 0, 5.0)
        ledger = BudgetLedger(summary, BudgetLimits(daily_usd=5.0), clock)

        result = ledger.check_budget()
        assert result is not None
        assert result.period == BudgetPeriod.DAILY
        assert result.spent == pytest.approx(5.0)
        assert result.limit == 5.0

    def test_reports_first_exceeded_period(self, summary: DailySummaryStore, clock) -> None:
        """Test daily is reported before weekly and monthly."""
        _spend(summary, clock, 0, 10.0)
        ledger = BudgetLedger(
            summary,
            BudgetLimits(daily_usd=5.0, weekly_usd=5.0, monthly_usd=5.0),
            clock,
        )
        assert ledger.check_budget().period == BudgetPeriod.DAILY

    def test_weekly_exceeded_when_daily_is_not(self, summary: DailySummaryStore, clock) -> None:
        """Test earlier days count toward the weekly limit."""
        _spend(summary, clock, 2, 6.0)
        ledger = BudgetLedger(summary, BudgetLimits(daily_usd=5.0, weekly_usd=6.0), clock)
        assert ledger.check_budget().period == BudgetPeriod.WEEKLY

    def test_explicit_limits_override(self, summary: DailySummaryStore, clock) -> None:
        """Test limits passed to the check take precedence."""
        _spend(summary, clock, 0, 2.0)
        ledger = BudgetLedger(summary, BudgetLimits(), clock)
        assert ledger.check_budget() is None
        assert ledger.check_budget(BudgetLimits(daily_usd=1.0)) is not None


class TestWarnings:
    """Test budget warnings."""

    @pytest.mark.parametrize(
        ("spent", "expected"),
        [(3.0, False), (4.0, True), (4.2, True)],
    )
    def test_threshold(self, summary: DailySummaryStore, clock, spent, expected) -> None:
        """Test warnings start at 80% of the limit."""
        _spend(summary, clock, 0, spent)
        ledger = BudgetLedger(summary, BudgetLimits(daily_usd=5.0), clock)

        warnings = ledger.warnings()
        assert bool(warnings) is expected
        if expected:
            assert warnings[0].period == BudgetPeriod.DAILY
            assert warnings[0].percentage == pytest.approx(spent / 5.0 * 100)

    def test_every_period_reported(self, summary: DailySummaryStore, clock) -> None:
        """Test all periods at or above the threshold are returned."""
        _spend(summary, clock, 0, 9.0)
        ledger = BudgetLedger(
            summary,
            BudgetLimits(daily_usd=10.0, weekly_usd=10.0, monthly_usd=100.0),
            clock,
        )
        periods = [w.period for w in ledger.warnings()]
        assert periods == [BudgetPeriod.DAILY, BudgetPeriod.WEEKLY]

    def test_unlimited_periods_skipped(self, summary: DailySummaryStore, clock) -> None:
        """Test unlimited periods never warn."""
        _spend(summary, clock, 0, 100.0)
        ledger = BudgetLedger(summary, BudgetLimits(), clock)
        assert ledger.warnings() == []


class TestSetLimit:
    """Test runtime limit changes."""

    def test_mutates_live_limits(self, summary: DailySummaryStore, clock) -> None:
        """Test set_limit updates the shared limits object."""
        limits = BudgetLimits()
        ledger = BudgetLedger(summary, limits, clock)

        ledger.set_limit(BudgetPeriod.WEEKLY, 25.0)
        ledger.set_limit("monthly", 90.0)

        assert limits.weekly_usd == 25.0
        assert limits.monthly_usd == 90.0

    def test_unknown_period_rejected(self, summary: DailySummaryStore, clock) -> None:
        """Test an unknown period name raises."""
        ledger = BudgetLedger(summary, BudgetLimits(), clock)
        with pytest.raises(ValueError):
            ledger.set_limit("yearly", 1.0)
