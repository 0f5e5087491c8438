"""Budget usage, pre-checks and threshold alerts."""

from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from savor_save.config import get_settings
from savor_save.errors import RemoteUnavailableError
from savor_save.models.budget import Budget, BudgetCheck, BudgetPeriod, BudgetUpdate, BudgetUsage
from savor_save.models.expense import ExpenseStatus, FoodExpense, TransactionType
from savor_save.models.session import SessionContext
from savor_save.state.store import BUDGETS, Store, parse_row, to_row
from savor_save.utils.logging import get_logger
from savor_save.utils.notify import Notifier
from savor_save.utils.time import Clock, ensure_aware, utcnow

logger = get_logger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class PeriodWindow:
    """Half-open local calendar window [start, end)."""

    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= ensure_aware(moment) < self.end


def period_window(
    period: BudgetPeriod,
    now: datetime,
    tz: tzinfo | None = None,
) -> PeriodWindow:
    """
    Calendar window containing ``now`` in the configured local timezone.

    Days start at local midnight, weeks on Sunday and months on day 1.
    """
    tz = tz or get_settings().tzinfo
    local_now = ensure_aware(now).astimezone(tz)
    midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)

    if period == BudgetPeriod.DAILY:
        return PeriodWindow(midnight, midnight + timedelta(days=1))

    if period == BudgetPeriod.WEEKLY:
        # weekday() is 0 for Monday
        start = midnight - timedelta(days=(local_now.weekday() + 1) % 7)
        return PeriodWindow(start, start + timedelta(days=7))

    start = midnight.replace(day=1)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return PeriodWindow(start, end)


def percentage_of(amount: Decimal, limit: Decimal) -> Decimal | None:
    """Share of a limit in percent, rounded half-up to 2 places; None for a zero limit."""
    if limit == 0:
        return None
    return (amount / limit * HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)


def counts_toward_budget(expense: FoodExpense) -> bool:
    """Only settled outgoing expenses count; splits and income do not."""
    return (
        expense.status == ExpenseStatus.COMPLETED
        and expense.transaction_type == TransactionType.EXPENSE
    )


def compute_usage(
    expenses: Iterable[FoodExpense],
    budget: Budget,
    now: datetime,
    tz: tzinfo | None = None,
) -> BudgetUsage:
    """Spend against the limit for the budget's period window."""
    window = period_window(budget.budget_period, now, tz)
    total_spent = sum(
        (e.amount for e in expenses if counts_toward_budget(e) and window.contains(e.date)),
        Decimal("0"),
    )
    limit = budget.limit_for()
    percentage = percentage_of(total_spent, limit)

    return BudgetUsage(
        total_spent=total_spent,
        budget_limit=limit,
        percentage_used=percentage,
        remaining=limit - total_spent,
        alert_threshold=budget.alert_threshold,
        should_alert=percentage is not None and percentage >= budget.alert_threshold,
    )


def pre_check(
    amount: Decimal,
    expenses: Iterable[FoodExpense],
    budget: Budget,
    now: datetime,
    tz: tzinfo | None = None,
) -> BudgetCheck:
    """
    Advise whether adding an amount keeps spend within the limit.

    The result is a soft warning; callers may proceed anyway.
    """
    if not budget.enable_alerts:
        return BudgetCheck(allowed=True)

    usage = compute_usage(expenses, budget, now, tz)
    projected_total = usage.total_spent + Decimal(amount)
    projected = percentage_of(projected_total, usage.budget_limit)

    if projected is None or projected <= HUNDRED:
        return BudgetCheck(allowed=True, projected_percentage=projected)

    symbol = get_settings().currency_symbol
    overage = (projected_total - usage.budget_limit).quantize(CENT)
    return BudgetCheck(
        allowed=False,
        message=f"This expense will exceed your budget by {symbol}{overage}",
        projected_percentage=projected,
    )


class BudgetMonitor:
    """Owner's budget record plus threshold notifications."""

    def __init__(
        self,
        store: Store,
        session: SessionContext,
        notifier: Notifier,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.session = session
        self.notifier = notifier
        self.clock = clock
        self.settings = get_settings()
        self.budget = Budget.defaults(self.settings, session.user_id)
        self.last_usage: BudgetUsage | None = None
        self._alerted: set[tuple[datetime, str]] = set()

    async def load(self) -> Budget:
        """Read the owner's budget, falling back to configured defaults."""
        try:
            rows = await self.store.select(
                BUDGETS, {"user_id": self.session.user_id}, limit=1
            )
        except RemoteUnavailableError as e:
            logger.warning("budget_load_failed", user_id=self.session.user_id, error=str(e))
            return self.budget

        budget = parse_row(Budget, rows[0]) if rows else None
        self.budget = budget or Budget.defaults(self.settings, self.session.user_id)
        logger.debug("budget_loaded", user_id=self.session.user_id, stored=budget is not None)
        return self.budget

    async def save(self, changes: BudgetUpdate) -> Budget:
        """Apply changes locally and upsert the record keyed by owner."""
        self.budget = self.budget.model_copy(update=changes.model_dump(exclude_unset=True))

        if not self.session.can_persist:
            self.notifier.error("Please log in to save your budget")
            return self.budget

        try:
            row = await self.store.upsert(
                BUDGETS, to_row(self.budget, exclude={"id"}), key="user_id"
            )
        except RemoteUnavailableError as e:
            logger.warning("budget_save_failed", user_id=self.session.user_id, error=str(e))
            self.notifier.error("Failed to save budget")
            return self.budget

        self.budget = self.budget.model_copy(update={"id": row["id"]})
        self.notifier.success("Budget updated")
        logger.info("budget_saved", user_id=self.session.user_id, budget_id=row["id"])
        return self.budget

    def usage(self, expenses: Iterable[FoodExpense]) -> BudgetUsage:
        return compute_usage(expenses, self.budget, self.clock(), self.settings.tzinfo)

    def check(self, amount: Decimal, expenses: Iterable[FoodExpense]) -> BudgetCheck:
        return pre_check(amount, expenses, self.budget, self.clock(), self.settings.tzinfo)

    def refresh(self, expenses: Iterable[FoodExpense]) -> BudgetUsage:
        """
        Recompute usage and alert when over the threshold.

        Alerts fire on every refresh unless ``dedupe_budget_alerts`` is set,
        in which case each level fires once per period window.
        """
        now = self.clock()
        usage = compute_usage(expenses, self.budget, now, self.settings.tzinfo)
        self.last_usage = usage

        if not (usage.should_alert and self.budget.enable_alerts):
            return usage

        exceeded = usage.percentage_used >= HUNDRED
        level = "exceeded" if exceeded else "warning"

        if self.settings.dedupe_budget_alerts:
            window = period_window(self.budget.budget_period, now, self.settings.tzinfo)
            if (window.start, level) in self._alerted:
                return usage
            self._alerted.add((window.start, level))

        symbol = self.settings.currency_symbol
        if exceeded:
            self.notifier.error(
                "You exceeded your budget limit!",
                f"Spent: {symbol}{usage.total_spent:.2f} / "
                f"Budget: {symbol}{usage.budget_limit:.2f}",
            )
        else:
            self.notifier.warning(
                f"Budget Warning: {usage.percentage_used:.0f}% used",
                f"Remaining: {symbol}{usage.remaining:.2f}",
            )

        logger.info(
            "budget_alert",
            user_id=self.session.user_id,
            level=level,
            percentage_used=str(usage.percentage_used),
        )
        return usage
