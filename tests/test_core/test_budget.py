"""Tests for budget usage, pre-checks and alerts."""

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest

from savor_save.core.budget import (
    BudgetMonitor,
    compute_usage,
    percentage_of,
    period_window,
    pre_check,
)
from savor_save.errors import RemoteUnavailableError
from savor_save.models.budget import Budget, BudgetPeriod, BudgetUpdate
from savor_save.models.expense import ExpenseStatus, TransactionType
from savor_save.models.notification import NotificationLevel
from savor_save.models.session import SessionContext
from savor_save.state.store import BUDGETS

IST = ZoneInfo("Asia/Kolkata")


def monthly_budget(limit: str = "10000", threshold: str = "80") -> Budget:
    return Budget(
        daily=Decimal("400"),
        weekly=Decimal("2500"),
        monthly=Decimal(limit),
        alert_threshold=Decimal(threshold),
    )


class TestPeriodWindow:
    """Tests for local calendar windows."""

    def test_day_starts_at_local_midnight(self, clock) -> None:
        window = period_window(BudgetPeriod.DAILY, clock(), IST)

        assert window.start == datetime(2024, 6, 12, tzinfo=IST)
        assert window.end == datetime(2024, 6, 13, tzinfo=IST)

    def test_week_starts_on_sunday(self, clock) -> None:
        window = period_window(BudgetPeriod.WEEKLY, clock(), IST)

        assert window.start == datetime(2024, 6, 9, tzinfo=IST)
        assert window.start.weekday() == 6
        assert window.end == datetime(2024, 6, 16, tzinfo=IST)

    def test_week_on_a_sunday_starts_that_day(self) -> None:
        now = datetime(2024, 6, 16, 10, tzinfo=IST)
        window = period_window(BudgetPeriod.WEEKLY, now, IST)
        assert window.start == datetime(2024, 6, 16, tzinfo=IST)

    def test_month_rolls_over_year(self) -> None:
        now = datetime(2024, 12, 15, 10, tzinfo=IST)
        window = period_window(BudgetPeriod.MONTHLY, now, IST)

        assert window.start == datetime(2024, 12, 1, tzinfo=IST)
        assert window.end == datetime(2025, 1, 1, tzinfo=IST)

    def test_window_is_half_open(self, clock) -> None:
        window = period_window(BudgetPeriod.MONTHLY, clock(), IST)

        # 2024-06-01 00:00 IST
        assert window.contains(datetime(2024, 5, 31, 18, 30, tzinfo=timezone.utc))
        assert not window.contains(datetime(2024, 5, 31, 18, 29, tzinfo=timezone.utc))
        assert not window.contains(datetime(2024, 7, 1, tzinfo=IST))

    def test_naive_dates_are_utc(self, clock) -> None:
        window = period_window(BudgetPeriod.DAILY, clock(), IST)
        assert window.contains(datetime(2024, 6, 12, 6, 30))


class TestUsage:
    """Tests for usage computation."""

    def test_only_completed_expenses_count(self, clock, expense_factory) -> None:
        expenses = [
            expense_factory("1000"),
            expense_factory("500", status=ExpenseStatus.PENDING),
            expense_factory("700", status=ExpenseStatus.CANCELLED),
            expense_factory("900", transaction_type=TransactionType.INCOME),
        ]

        usage = compute_usage(expenses, monthly_budget(), clock(), IST)

        assert usage.total_spent == Decimal("1000")
        assert usage.remaining == Decimal("9000")
        assert usage.percentage_used == Decimal("10.00")
        assert usage.should_alert is False

    def test_several_completed_expenses_cross_threshold(self, clock, expense_factory) -> None:
        expenses = [expense_factory("3000"), expense_factory("3000"), expense_factory("2500")]

        usage = compute_usage(expenses, monthly_budget(), clock(), IST)

        assert usage.total_spent == Decimal("8500")
        assert usage.budget_limit == Decimal("10000")
        assert usage.percentage_used == Decimal("85.00")
        assert usage.remaining == Decimal("1500")
        assert usage.should_alert is True

    def test_split_expenses_do_not_count(self, clock, expense_factory) -> None:
        split = expense_factory(
            "50",
            transaction_type=TransactionType.SPLIT,
            is_split=True,
            split_total=Decimal("100"),
            split_people=2,
            split_shares=[{"person": 1, "amount": "50"}, {"person": 2, "amount": "50"}],
        )

        usage = compute_usage([split], monthly_budget(), clock(), IST)
        assert usage.total_spent == Decimal("0")

    def test_expenses_outside_window_ignored(self, clock, expense_factory) -> None:
        last_month = expense_factory("5000", date=datetime(2024, 5, 20, tzinfo=IST))

        usage = compute_usage([last_month], monthly_budget(), clock(), IST)
        assert usage.total_spent == Decimal("0")

    def test_zero_limit_has_no_percentage(self, clock, expense_factory) -> None:
        usage = compute_usage([expense_factory("10")], monthly_budget("0"), clock(), IST)

        assert usage.percentage_used is None
        assert usage.should_alert is False
        assert usage.remaining == Decimal("-10")

    def test_alert_exactly_at_threshold(self, clock, expense_factory) -> None:
        """Test the documented 10000 budget, 80% threshold scenario."""
        budget = monthly_budget()

        below = compute_usage([expense_factory("7999")], budget, clock(), IST)
        at = compute_usage([expense_factory("8000")], budget, clock(), IST)

        assert below.should_alert is False
        assert at.percentage_used == Decimal("80.00")
        assert at.should_alert is True

    def test_percentage_never_decreases_as_expenses_are_added(
        self, clock, expense_factory
    ) -> None:
        budget = monthly_budget()
        expenses = []
        previous = Decimal("0")

        for amount in ["120", "0.01", "999.99", "3000", "45.50", "8000"]:
            expenses.append(expense_factory(amount))
            usage = compute_usage(expenses, budget, clock(), IST)
            assert usage.percentage_used >= previous
            previous = usage.percentage_used

    def test_percentage_rounds_half_up(self) -> None:
        assert percentage_of(Decimal("1"), Decimal("8")) == Decimal("12.50")
        assert percentage_of(Decimal("1"), Decimal("3")) == Decimal("33.33")
        assert percentage_of(Decimal("2"), Decimal("3")) == Decimal("66.67")


class TestPreCheck:
    """Tests for the soft pre-check."""

    def test_within_budget_is_allowed(self, clock, expense_factory) -> None:
        check = pre_check(Decimal("1000"), [expense_factory("8000")], monthly_budget(), clock(), IST)

        assert check.allowed is True
        assert check.message is None
        assert check.projected_percentage == Decimal("90.00")

    def test_exceeding_budget_reports_overage(self, clock, expense_factory) -> None:
        check = pre_check(
            Decimal("2500.50"), [expense_factory("8000")], monthly_budget(), clock(), IST
        )

        assert check.allowed is False
        assert check.message == "This expense will exceed your budget by ₹500.50"

    def test_alerts_disabled_always_allows(self, clock, expense_factory) -> None:
        budget = monthly_budget().model_copy(update={"enable_alerts": False})

        check = pre_check(Decimal("50000"), [expense_factory("8000")], budget, clock(), IST)
        assert check.allowed is True


class TestBudgetMonitor:
    """Tests for the budget monitor."""

    def test_defaults_from_configuration(self, budget: BudgetMonitor) -> None:
        assert budget.budget.daily == Decimal("400")
        assert budget.budget.weekly == Decimal("2500")
        assert budget.budget.monthly == Decimal("10000")
        assert budget.budget.alert_threshold == Decimal("80")
        assert budget.budget.budget_period == BudgetPeriod.MONTHLY

    def test_refresh_warns_over_threshold(self, budget, notifier, expense_factory) -> None:
        usage = budget.refresh([expense_factory("8500")])

        assert usage.should_alert is True
        assert notifier.sent[-1].level == NotificationLevel.WARNING
        assert notifier.sent[-1].message == "Budget Warning: 85% used"
        assert notifier.sent[-1].description == "Remaining: ₹1500.00"

    def test_refresh_errors_when_exceeded(self, budget, notifier, expense_factory) -> None:
        budget.refresh([expense_factory("10000")])

        assert notifier.sent[-1].level == NotificationLevel.ERROR
        assert notifier.sent[-1].message == "You exceeded your budget limit!"
        assert notifier.sent[-1].description == "Spent: ₹10000.00 / Budget: ₹10000.00"

    def test_refresh_below_threshold_is_silent(self, budget, notifier, expense_factory) -> None:
        budget.refresh([expense_factory("100")])
        assert notifier.sent == []

    def test_alerts_repeat_by_default(self, budget, notifier, expense_factory) -> None:
        expenses = [expense_factory("9000")]

        budget.refresh(expenses)
        budget.refresh(expenses)

        assert len(notifier.messages(NotificationLevel.WARNING)) == 2

    def test_dedupe_fires_once_per_level(
        self, budget, notifier, expense_factory, monkeypatch
    ) -> None:
        monkeypatch.setattr(budget.settings, "dedupe_budget_alerts", True)
        expenses = [expense_factory("9000")]

        budget.refresh(expenses)
        budget.refresh(expenses)
        expenses.append(expense_factory("2000"))
        budget.refresh(expenses)
        budget.refresh(expenses)

        assert len(notifier.messages(NotificationLevel.WARNING)) == 1
        assert len(notifier.messages(NotificationLevel.ERROR)) == 1

    def test_disabled_alerts_are_silent(self, budget, notifier, expense_factory) -> None:
        budget.budget = budget.budget.model_copy(update={"enable_alerts": False})

        budget.refresh([expense_factory("20000")])
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_save_then_load(self, store, session, notifier, clock) -> None:
        monitor = BudgetMonitor(store, session, notifier, clock=clock)

        saved = await monitor.save(BudgetUpdate(monthly=Decimal("15000")))

        assert saved.id is not None
        assert notifier.messages() == ["Budget updated"]

        reloaded = BudgetMonitor(store, session, notifier, clock=clock)
        budget = await reloaded.load()
        assert budget.monthly == Decimal("15000")
        assert budget.daily == Decimal("400")

    @pytest.mark.asyncio
    async def test_save_upserts_per_owner(self, store, budget) -> None:
        await budget.save(BudgetUpdate(monthly=Decimal("12000")))
        await budget.save(BudgetUpdate(alert_threshold=Decimal("90")))

        rows = await store.select(BUDGETS)
        assert len(rows) == 1
        assert Decimal(rows[0]["monthly"]) == Decimal("12000")
        assert Decimal(rows[0]["alert_threshold"]) == Decimal("90")

    @pytest.mark.asyncio
    async def test_save_failure_keeps_local_changes(self, store, budget, notifier) -> None:
        store.upsert = AsyncMock(side_effect=RemoteUnavailableError("upsert"))

        result = await budget.save(BudgetUpdate(daily=Decimal("500")))

        assert result.daily == Decimal("500")
        assert notifier.messages() == ["Failed to save budget"]

    @pytest.mark.asyncio
    async def test_load_failure_keeps_defaults(self, store, budget) -> None:
        store.select = AsyncMock(side_effect=RemoteUnavailableError("select"))

        loaded = await budget.load()
        assert loaded.monthly == Decimal("10000")

    @pytest.mark.asyncio
    async def test_anonymous_without_persistence_is_told_to_log_in(
        self, store, notifier, clock
    ) -> None:
        guest = SessionContext(user_id=None, allow_anonymous=False)
        monitor = BudgetMonitor(store, guest, notifier, clock=clock)

        await monitor.save(BudgetUpdate(monthly=Decimal("5000")))

        assert monitor.budget.monthly == Decimal("5000")
        assert notifier.messages() == ["Please log in to save your budget"]
        assert await store.select(BUDGETS) == []
