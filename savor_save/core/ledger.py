"""Expense ledger with optimistic writes and realtime reconciliation."""

import time
from collections import defaultdict
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

from pydantic import ValidationError as SchemaError

from savor_save.config import get_settings
from savor_save.core.budget import BudgetMonitor, percentage_of, period_window
from savor_save.core.optimistic import OptimisticOperation, OptimisticRunner
from savor_save.core.split import CENT, split_equally, validate_manual_split
from savor_save.errors import (
    InvalidAmountError,
    InvalidDescriptionError,
    InvalidExpenseError,
    RemoteUnavailableError,
)
from savor_save.models.budget import Budget, BudgetPeriod
from savor_save.models.expense import (
    CANCELLABLE_STATUSES,
    DailyExpenseSummary,
    ExpenseStats,
    ExpenseStatus,
    ExpenseUpdate,
    FoodExpense,
    MonthlyExpenseSummary,
    NamedAmount,
    SplitMethod,
    SplitShare,
    TransactionType,
    WeeklyExpenseSummary,
)
from savor_save.models.session import SessionContext
from savor_save.state.realtime import ChangeEvent, EventType, Subscription
from savor_save.state.store import EXPENSES, Store, parse_row, parse_rows, to_row
from savor_save.utils.logging import LedgerLogger
from savor_save.utils.notify import Notifier
from savor_save.utils.time import Clock, ensure_aware, utcnow

TEMP_ID_PREFIX = "local-"
RECENT_LIMIT = 5
TOP_LIMIT = 5

PERIODS: dict[str, BudgetPeriod] = {
    "today": BudgetPeriod.DAILY,
    "week": BudgetPeriod.WEEKLY,
    "month": BudgetPeriod.MONTHLY,
}

GROUP_DIMENSIONS = ("category", "cuisine", "meal_type")


def is_temporary_id(expense_id: str | None) -> bool:
    """Check if an id was assigned locally and never confirmed by the store."""
    return expense_id is None or expense_id.startswith(TEMP_ID_PREFIX)


def validate_amount(amount: Decimal | None) -> None:
    if amount is None or amount <= 0:
        raise InvalidAmountError(amount)


def validate_description(description: str | None) -> None:
    if description is None or not description.strip():
        raise InvalidDescriptionError()


class _AddExpense(OptimisticOperation):
    name = "add_expense"
    failure_message = "Failed to sync expense to cloud"

    def __init__(self, ledger: "ExpenseLedger", entry: FoodExpense):
        super().__init__(entry.id)
        self.ledger = ledger
        self.entry = entry
        self.stored: FoodExpense | None = None

        if entry.transaction_type == TransactionType.INCOME:
            self.success_message = "Income added!"
        elif entry.is_split:
            self.success_message = "Split expense saved!"
        else:
            self.success_message = "Expense saved!"

    def apply_local(self) -> None:
        self.ledger.expenses.insert(0, self.entry)

    async def commit(self) -> dict[str, Any]:
        row = to_row(self.entry, exclude={"id"})
        row["user_id"] = self.ledger.session.user_id
        return await self.ledger.store.insert(EXPENSES, row)

    def confirm(self, result: dict[str, Any]) -> bool:
        server_id = result["id"]
        self.stored = self.entry.model_copy(update={"id": server_id})
        ledger = self.ledger

        index = ledger.index_of(self.entry.id)
        if index is None:
            ledger.logger.log_reconcile("commit", server_id, action="temp_entry_gone")
        elif ledger.index_of(server_id) is not None:
            # realtime INSERT for the server id landed first
            del ledger.expenses[index]
            ledger.logger.log_reconcile("commit", server_id, action="dropped_temp")
        else:
            ledger.expenses[index] = ledger.expenses[index].model_copy(update={"id": server_id})
            ledger.logger.log_reconcile("commit", server_id, action="swapped_id")

        ledger.unsynced_ids.discard(self.entry.id)
        ledger.refresh_budget()
        return True

    async def compensate(self, error: RemoteUnavailableError) -> None:
        self.ledger.unsynced_ids.add(self.entry.id)


class _UpdateExpense(OptimisticOperation):
    name = "update_expense"
    rejected_message = "Expense no longer exists"
    failure_message = "Failed to update"

    def __init__(
        self,
        ledger: "ExpenseLedger",
        merged: FoodExpense,
        changes: ExpenseUpdate,
        success_message: str,
        only_if: dict[str, list[str]] | None = None,
    ):
        super().__init__(merged.id)
        self.ledger = ledger
        self.merged = merged
        self.changes = changes
        self.success_message = success_message
        self.only_if = only_if
        self.previous: FoodExpense | None = None
        if only_if:
            self.rejected_message = "Expense status changed elsewhere"

    def apply_local(self) -> None:
        index = self.ledger.index_of(self.entity_id)
        self.previous = self.ledger.expenses[index]
        self.ledger.expenses[index] = self.merged

    async def commit(self) -> dict[str, Any] | None:
        fields = self.changes.model_dump(mode="json", exclude_unset=True)
        return await self.ledger.store.update(
            EXPENSES, self.entity_id, fields, only_if=self.only_if
        )

    def confirm(self, result: dict[str, Any] | None) -> bool:
        if result is None:
            index = self.ledger.index_of(self.entity_id)
            if index is not None and self.previous is not None:
                self.ledger.expenses[index] = self.previous
            return False
        self.ledger.refresh_budget()
        return True


class _CancelExpense(OptimisticOperation):
    name = "cancel_expense"
    success_message = "Expense cancelled"
    rejected_message = "Cannot cancel this expense"
    failure_message = "Failed to cancel expense"

    def __init__(
        self,
        ledger: "ExpenseLedger",
        expense_id: str,
        reason: str | None,
        at: datetime,
    ):
        super().__init__(expense_id)
        self.ledger = ledger
        self.reason = reason
        self.at = at
        self.previous: FoodExpense | None = None

    def apply_local(self) -> None:
        index = self.ledger.index_of(self.entity_id)
        self.previous = self.ledger.expenses[index]
        self.ledger.expenses[index] = self.previous.model_copy(
            update={
                "status": ExpenseStatus.CANCELLED,
                "cancelled_at": self.at,
                "cancelled_reason": self.reason,
            }
        )

    async def commit(self) -> dict[str, Any] | None:
        return await self.ledger.store.update(
            EXPENSES,
            self.entity_id,
            {
                "status": ExpenseStatus.CANCELLED.value,
                "cancelled_at": self.at.isoformat(),
                "cancelled_reason": self.reason,
            },
            only_if={"status": [s.value for s in CANCELLABLE_STATUSES]},
        )

    def confirm(self, result: dict[str, Any] | None) -> bool:
        if result is None:
            # Remote status moved on; undo the local cancel
            index = self.ledger.index_of(self.entity_id)
            if index is not None and self.previous is not None:
                self.ledger.expenses[index] = self.previous
            return False
        self.ledger.refresh_budget()
        return True


class _DeleteExpense(OptimisticOperation):
    name = "delete_expense"
    success_message = "Expense deleted"
    failure_message = "Failed to delete expense"

    def __init__(self, ledger: "ExpenseLedger", expense_id: str):
        super().__init__(expense_id)
        self.ledger = ledger
        self.removed: FoodExpense | None = None
        self.position = 0

    def apply_local(self) -> None:
        self.position = self.ledger.index_of(self.entity_id)
        self.removed = self.ledger.expenses.pop(self.position)

    async def commit(self) -> bool:
        return await self.ledger.store.delete(EXPENSES, self.entity_id)

    def confirm(self, result: bool) -> bool:
        self.ledger.refresh_budget()
        return True

    async def compensate(self, error: RemoteUnavailableError) -> None:
        try:
            await self.ledger.reload()
        except RemoteUnavailableError as e:
            self.ledger.logger.log_error(str(e), operation="reload")
            if self.removed is not None and self.ledger.index_of(self.entity_id) is None:
                self.ledger.expenses.insert(self.position, self.removed)


class ExpenseLedger:
    """
    A session's expenses, newest first.

    Mutations apply to ``expenses`` before the store is called. Store
    failures leave added and updated entries in place, and reload the
    collection after a failed delete. Every mutation produces exactly one
    notification, except quiet cancels made on behalf of an order.
    """

    def __init__(
        self,
        store: Store,
        session: SessionContext,
        notifier: Notifier,
        clock: Clock = utcnow,
        budget: BudgetMonitor | None = None,
    ):
        self.store = store
        self.session = session
        self.notifier = notifier
        self.clock = clock
        self.budget = budget
        self.settings = get_settings()
        self.logger = LedgerLogger("expense_ledger", session.user_id)
        self.runner = OptimisticRunner(notifier, self.logger)

        self.expenses: list[FoodExpense] = []
        self.unsynced_ids: set[str] = set()
        self._subscription: Subscription | None = None
        self._last_temp_ns = 0

    # Lifecycle

    async def load(self) -> list[FoodExpense]:
        """Fetch the session's expenses, keeping entries not yet in the store."""
        try:
            await self.reload()
        except RemoteUnavailableError as e:
            self.logger.log_error(str(e), operation="load")
            self.notifier.error("Failed to load expenses")
        return self.expenses

    async def reload(self) -> None:
        """Replace the collection from the store. Raises RemoteUnavailableError."""
        rows = await self.store.select(
            EXPENSES,
            {"user_id": self.session.user_id},
            order_by="date",
            descending=True,
        )
        local_only = [e for e in self.expenses if is_temporary_id(e.id)]
        self.expenses = local_only + parse_rows(FoodExpense, rows)
        self.logger.log_reconcile("select", "*", action="reload", count=len(self.expenses))

    def attach(self) -> Subscription:
        """Follow realtime changes on the expenses table."""
        if self._subscription is None:
            self._subscription = self.store.subscribe(EXPENSES, self.apply_remote_event)
        return self._subscription

    async def close(self) -> None:
        """Stop following changes and discard in-flight results."""
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        await self.runner.close()

    # Mutations

    async def add(self, expense: FoodExpense, wait: bool = True) -> FoodExpense:
        """
        Record an expense.

        Args:
            expense: Expense to add; any id it carries is replaced
            wait: Wait for the store before returning

        Returns:
            The entry with its server id, or its temporary ``local-`` id when
            not waiting or when the store call failed
        """
        validate_amount(expense.amount)
        validate_description(expense.description)

        entry = expense.model_copy(
            update={"id": self._temp_id(), "user_id": self.session.user_id}
        )

        if not self.session.can_persist:
            self.expenses.insert(0, entry)
            self.unsynced_ids.add(entry.id)
            self.notifier.error("Please log in to save expenses")
            return entry

        operation = _AddExpense(self, entry)
        if not wait:
            self.runner.spawn(operation)
            return entry

        await self.runner.run(operation)
        return operation.stored or entry

    async def add_split(
        self,
        expense: FoodExpense,
        total: Decimal,
        people: int,
        shares: list[SplitShare] | None = None,
        wait: bool = True,
    ) -> FoodExpense:
        """Record the caller's share of a bill split equally, or by given shares."""
        if shares is None:
            shares = split_equally(total, people)
            method = SplitMethod.EQUAL
        else:
            shares = validate_manual_split(total, shares, people)
            method = SplitMethod.MANUAL

        entry = FoodExpense.model_validate(
            {
                **expense.model_dump(),
                "amount": shares[0].amount,
                "transaction_type": TransactionType.SPLIT,
                "is_split": True,
                "split_total": Decimal(total),
                "split_people": people,
                "split_method": method,
                "split_shares": [share.model_dump() for share in shares],
            }
        )
        return await self.add(entry, wait=wait)

    async def update(self, expense_id: str, changes: ExpenseUpdate) -> bool:
        """Merge supplied fields locally, then write only those fields remotely."""
        return await self._update(expense_id, changes, "Expense updated")

    async def set_status(self, expense_id: str, status: ExpenseStatus) -> bool:
        if status == ExpenseStatus.CANCELLED:
            return await self.cancel(expense_id)
        return await self._update(
            expense_id, ExpenseUpdate(status=status), f"Status updated to {status.value}"
        )

    async def cancel(
        self,
        expense_id: str,
        reason: str | None = None,
        quiet: bool = False,
    ) -> bool:
        """
        Cancel a pending or completed expense.

        Args:
            expense_id: Expense to cancel
            reason: Stored as ``cancelled_reason``
            quiet: Only log refusals and success; store failures still notify.
                Used when the cancel is a side effect of another operation.
        """
        expense = self.get(expense_id)
        refusal = None
        if expense is None:
            refusal = "Expense not found"
        elif expense.status not in CANCELLABLE_STATUSES:
            refusal = "Cannot cancel this expense"
        if refusal is not None:
            if quiet:
                self.logger.log_mutation("cancel", expense_id, phase="refused", reason=refusal)
            else:
                self.notifier.error(refusal)
            return False

        if not self._can_write_remote(expense_id):
            return False

        operation = _CancelExpense(self, expense_id, reason, self.clock())
        if quiet:
            operation.success_message = None
        return await self.runner.run(operation)

    async def delete(self, expense_id: str) -> bool:
        """Remove an expense; a failed store delete reloads the collection."""
        if self.index_of(expense_id) is None:
            self.notifier.error("Expense not found")
            return False

        if expense_id in self.unsynced_ids:
            # never reached the store
            del self.expenses[self.index_of(expense_id)]
            self.unsynced_ids.discard(expense_id)
            self.notifier.success("Expense deleted")
            return True

        if not self._can_write_remote(expense_id):
            return False

        return await self.runner.run(_DeleteExpense(self, expense_id))

    async def _update(
        self,
        expense_id: str,
        changes: ExpenseUpdate,
        success_message: str,
    ) -> bool:
        if "amount" in changes.model_fields_set:
            validate_amount(changes.amount)
        if "description" in changes.model_fields_set:
            validate_description(changes.description)

        current = self.get(expense_id)
        if current is None:
            self.notifier.error("Expense not found")
            return False

        only_if = None
        if "status" in changes.model_fields_set and changes.status != current.status:
            if current.status == ExpenseStatus.CANCELLED:
                self.notifier.error("Cancelled expenses cannot change status")
                return False
            if changes.status == ExpenseStatus.CANCELLED:
                if current.status not in CANCELLABLE_STATUSES:
                    self.notifier.error("Cannot cancel this expense")
                    return False
                if changes.cancelled_at is None:
                    changes = ExpenseUpdate.model_validate(
                        {**changes.model_dump(exclude_unset=True), "cancelled_at": self.clock()}
                    )
                allowed = CANCELLABLE_STATUSES
            else:
                allowed = set(ExpenseStatus) - {ExpenseStatus.CANCELLED}
            only_if = {"status": sorted(s.value for s in allowed)}

        try:
            merged = FoodExpense.model_validate(
                {**current.model_dump(), **changes.model_dump(exclude_unset=True)}
            )
        except SchemaError as e:
            raise InvalidExpenseError(expense_id, str(e.errors()[0]["msg"])) from e

        if not self._can_write_remote(expense_id):
            return False

        operation = _UpdateExpense(self, merged, changes, success_message, only_if)
        return await self.runner.run(operation)

    def _can_write_remote(self, expense_id: str) -> bool:
        if is_temporary_id(expense_id):
            self.notifier.error("This expense has not synced yet")
            return False
        if not self.session.can_persist:
            self.notifier.error("Please log in to save expenses")
            return False
        return True

    def _temp_id(self) -> str:
        stamp = max(time.time_ns(), self._last_temp_ns + 1)
        self._last_temp_ns = stamp
        return f"{TEMP_ID_PREFIX}{stamp}"

    # Realtime

    def apply_remote_event(self, event: ChangeEvent) -> None:
        """Merge a store change idempotently."""
        expense_id = event.row_id
        if expense_id is None:
            return

        if event.event_type == EventType.DELETE:
            index = self.index_of(expense_id)
            if index is not None:
                del self.expenses[index]
                self.logger.log_reconcile("realtime", expense_id, action="removed")
            return

        if not self.session.owns(event.row):
            return

        if event.event_type == EventType.INSERT:
            if self.index_of(expense_id) is not None:
                self.logger.log_reconcile("realtime", expense_id, action="noop")
                return
            expense = parse_row(FoodExpense, event.row)
            if expense is not None:
                self.expenses.insert(0, expense)
                self.logger.log_reconcile("realtime", expense_id, action="inserted")
            return

        if self.runner.is_in_flight(expense_id):
            self.logger.log_reconcile("realtime", expense_id, action="skipped_in_flight")
            return

        index = self.index_of(expense_id)
        expense = parse_row(FoodExpense, event.row)
        if index is not None and expense is not None:
            self.expenses[index] = expense
            self.logger.log_reconcile("realtime", expense_id, action="replaced")

    # Queries

    def get(self, expense_id: str) -> FoodExpense | None:
        index = self.index_of(expense_id)
        return self.expenses[index] if index is not None else None

    def index_of(self, expense_id: str) -> int | None:
        for index, expense in enumerate(self.expenses):
            if expense.id == expense_id:
                return index
        return None

    def in_period(self, period: str) -> list[FoodExpense]:
        """Entries dated within today, this week or this month."""
        if period not in PERIODS:
            raise ValueError(f"Unknown period '{period}', expected one of {list(PERIODS)}")
        window = period_window(PERIODS[period], self.clock(), self.settings.tzinfo)
        return [e for e in self.expenses if window.contains(e.date)]

    def total_for_period(self, period: str) -> Decimal:
        return _total(self.in_period(period))

    def group_by(self, dimension: str) -> dict[str, Decimal]:
        """Sum amounts by category, cuisine or meal type, skipping unset values."""
        return _group(self.expenses, dimension)

    def recent(self, limit: int = RECENT_LIMIT) -> list[FoodExpense]:
        return sorted(self.expenses, key=lambda e: ensure_aware(e.date), reverse=True)[:limit]

    def daily_summary(self, day: date) -> DailyExpenseSummary:
        tz = self.settings.tzinfo
        entries = [e for e in self.expenses if ensure_aware(e.date).astimezone(tz).date() == day]
        return DailyExpenseSummary(
            date=day,
            total=_total(entries),
            meals=len(entries),
            expenses=entries,
        )

    def weekly_summary(self) -> WeeklyExpenseSummary:
        window = period_window(BudgetPeriod.WEEKLY, self.clock(), self.settings.tzinfo)
        entries = [e for e in self.expenses if window.contains(e.date)]
        total = _total(entries)
        return WeeklyExpenseSummary(
            week_start=window.start.date(),
            week_end=(window.start + timedelta(days=6)).date(),
            total=total,
            average_per_day=(total / 7).quantize(CENT),
            by_category=_group(entries, "category"),
            by_cuisine=_group(entries, "cuisine"),
            by_meal_type=_group(entries, "meal_type"),
        )

    def monthly_summary(self, budget: Budget | None = None) -> MonthlyExpenseSummary:
        if budget is None:
            budget = self.budget.budget if self.budget else Budget.defaults(self.settings)
        window = period_window(BudgetPeriod.MONTHLY, self.clock(), self.settings.tzinfo)
        entries = [e for e in self.expenses if window.contains(e.date)]
        total = _total(entries)
        return MonthlyExpenseSummary(
            month=window.start.strftime("%B %Y"),
            total=total,
            budget=budget.monthly,
            remaining=budget.monthly - total,
            percent_used=percentage_of(total, budget.monthly),
            top_cuisines=_top(entries, "cuisine"),
            top_restaurants=_top(entries, "restaurant"),
        )

    def stats(self) -> ExpenseStats:
        """Counts by status and totals of settled entries."""
        stats = ExpenseStats()
        for expense in self.expenses:
            field = f"{expense.status.value}_count"
            setattr(stats, field, getattr(stats, field) + 1)

            if expense.is_split:
                stats.split_count += 1

            if expense.status != ExpenseStatus.COMPLETED:
                continue
            if expense.transaction_type == TransactionType.EXPENSE:
                stats.total_expenses += expense.amount
            elif expense.transaction_type == TransactionType.INCOME:
                stats.total_income += expense.amount
            if expense.is_split:
                stats.total_split_expenses += expense.amount
        return stats

    def refresh_budget(self) -> None:
        if self.budget is not None:
            self.budget.refresh(self.expenses)


def _total(expenses: list[FoodExpense]) -> Decimal:
    return sum((e.amount for e in expenses), Decimal("0"))


def _group(expenses: list[FoodExpense], dimension: str) -> dict[str, Decimal]:
    if dimension not in GROUP_DIMENSIONS:
        raise ValueError(
            f"Unknown dimension '{dimension}', expected one of {list(GROUP_DIMENSIONS)}"
        )
    totals: dict[str, Decimal] = defaultdict(Decimal)
    for expense in expenses:
        value = getattr(expense, dimension)
        if value is None:
            continue
        totals[getattr(value, "value", value)] += expense.amount
    return dict(totals)


def _top(expenses: list[FoodExpense], attribute: str) -> list[NamedAmount]:
    totals: dict[str, Decimal] = defaultdict(Decimal)
    for expense in expenses:
        name = getattr(expense, attribute)
        if name:
            totals[name] += expense.amount
    ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)
    return [NamedAmount(name=name, amount=amount) for name, amount in ranked[:TOP_LIMIT]]
