"""API routes for orders, expenses, budgets and checkout."""

from datetime import date
from decimal import Decimal
from typing import AsyncGenerator, Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from pydantic import BaseModel, Field

from savor_save.api.websocket import manager
from savor_save.config import get_settings
from savor_save.core.budget import BudgetMonitor
from savor_save.core.checkout import Checkout
from savor_save.core.ledger import ExpenseLedger
from savor_save.core.orders import OrderTracker
from savor_save.core.split import split_equally, validate_manual_split
from savor_save.errors import InvalidStateError, NotFoundError
from savor_save.models.budget import Budget, BudgetCheck, BudgetUpdate, BudgetUsage
from savor_save.models.expense import (
    CANCELLABLE_STATUSES,
    DailyExpenseSummary,
    ExpenseStats,
    ExpenseStatus,
    ExpenseUpdate,
    FoodExpense,
    MonthlyExpenseSummary,
    SplitShare,
    WeeklyExpenseSummary,
)
from savor_save.models.order import (
    CreateOrderInput,
    Location,
    Order,
    OrderStatus,
    OrderStatusHistoryEntry,
    OrderTrackingState,
)
from savor_save.models.payment import CheckoutRequest, CheckoutResult, PaymentResult
from savor_save.models.session import SessionContext
from savor_save.state.manager import get_state_manager
from savor_save.state.memory_store import MemoryStore
from savor_save.state.redis_store import RedisStore
from savor_save.state.store import Store
from savor_save.utils.logging import get_logger
from savor_save.utils.notify import Notifier
from savor_save.utils.time import utcnow

logger = get_logger(__name__)

router = APIRouter()


# Request/Response Models


class TransitionRequest(BaseModel):
    """Request to move an order to a new status."""

    status: OrderStatus
    message: str | None = None
    location: Location | None = None


class TransitionResponse(BaseModel):
    """Outcome of a status change."""

    order_id: str
    status: OrderStatus
    found: bool


class CancelRequest(BaseModel):
    """Request to cancel an order or expense."""

    reason: str | None = None


class RateRequest(BaseModel):
    """Request to rate a delivered order."""

    rating: int
    review: str | None = None


class SplitExpenseRequest(BaseModel):
    """Request to record the caller's share of a split bill."""

    expense: FoodExpense
    total: Decimal = Field(gt=0)
    people: int = Field(ge=2)
    shares: list[SplitShare] | None = None


class StatusRequest(BaseModel):
    """Request to change an expense status."""

    status: ExpenseStatus


class PeriodTotalResponse(BaseModel):
    """Sum of expenses for a period."""

    period: str
    total: Decimal


class AmountRequest(BaseModel):
    """Candidate amount for a budget pre-check."""

    amount: Decimal = Field(gt=0)


class SplitRequest(BaseModel):
    """Request to split a total equally."""

    total: Decimal = Field(gt=0)
    people: int = Field(ge=2)


class ManualSplitRequest(BaseModel):
    """Caller-supplied shares to validate."""

    total: Decimal = Field(gt=0)
    people: int = Field(ge=2)
    shares: list[SplitShare]


class PaymentCallback(BaseModel):
    """Gateway success callback with the purchase it belongs to."""

    request: CheckoutRequest
    payment: PaymentResult


# Dependencies


_store: Store | None = None


async def get_store() -> Store:
    """Get the global store for the configured backend."""
    global _store
    if _store is None:
        settings = get_settings()
        if settings.store_backend == "redis":
            _store = RedisStore(await get_state_manager())
        else:
            _store = MemoryStore()
        logger.info("store_initialized", backend=settings.store_backend)
    return _store


async def close_store() -> None:
    """Release the global store."""
    global _store
    if _store is not None:
        await _store.close()
        _store = None


def get_session(x_user_id: str | None = Header(default=None)) -> SessionContext:
    """Session from the X-User-Id header; no header means a guest."""
    return SessionContext(
        user_id=x_user_id or None,
        allow_anonymous=get_settings().allow_anonymous,
    )


def get_notifier(session: SessionContext = Depends(get_session)) -> Notifier:
    """Notifier that forwards to the owner's WebSocket connections."""
    notifier = Notifier(session.user_id)
    notifier.subscribe(manager.send_notification)
    return notifier


class Services:
    """Ledger, budget, tracker and checkout wired for one session."""

    def __init__(self, store: Store, session: SessionContext, notifier: Notifier):
        self.session = session
        self.budget = BudgetMonitor(store, session, notifier)
        self.ledger = ExpenseLedger(store, session, notifier, budget=self.budget)
        self.tracker = OrderTracker(store, session, notifier, ledger=self.ledger)
        self.checkout = Checkout(self.ledger, self.tracker)

    async def load(self) -> None:
        await self.budget.load()
        await self.ledger.load()
        await self.tracker.load()

    async def close(self) -> None:
        await self.ledger.close()
        await self.tracker.close()


async def get_services(
    store: Store = Depends(get_store),
    session: SessionContext = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
) -> AsyncGenerator[Services, None]:
    """Load the session's state for the duration of a request."""
    services = Services(store, session, notifier)
    await services.load()
    try:
        yield services
    finally:
        await services.close()


def _unavailable(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


def _require_order(services: Services, order_id: str) -> Order:
    order = services.tracker.get(order_id)
    if order is None:
        raise NotFoundError("Order", order_id)
    return order


def _require_expense(services: Services, expense_id: str) -> FoodExpense:
    expense = services.ledger.get(expense_id)
    if expense is None:
        raise NotFoundError("Expense", expense_id)
    return expense


def _check_status_change(expense: FoodExpense, new_status: ExpenseStatus | None) -> None:
    if new_status is None or new_status == expense.status:
        return
    if expense.status == ExpenseStatus.CANCELLED:
        raise InvalidStateError("change expense status", expense.status.value)
    if new_status == ExpenseStatus.CANCELLED and expense.status not in CANCELLABLE_STATUSES:
        raise InvalidStateError("cancel expense", expense.status.value)


# Order endpoints


@router.post("/orders", response_model=Order, status_code=status.HTTP_201_CREATED)
async def create_order(
    order_input: CreateOrderInput,
    services: Services = Depends(get_services),
) -> Order:
    """Place a new order."""
    order = await services.tracker.create_order(order_input)
    if order is None:
        raise _unavailable("Failed to create order")
    return order


@router.get("/orders", response_model=list[Order])
async def list_orders(services: Services = Depends(get_services)) -> list[Order]:
    """List the session's orders, newest first."""
    return services.tracker.orders


@router.get("/orders/{order_id}", response_model=Order)
async def get_order(order_id: str, services: Services = Depends(get_services)) -> Order:
    return _require_order(services, order_id)


@router.get("/orders/{order_id}/history", response_model=list[OrderStatusHistoryEntry])
async def get_order_history(
    order_id: str,
    services: Services = Depends(get_services),
) -> list[OrderStatusHistoryEntry]:
    _require_order(services, order_id)
    return await services.tracker.history(order_id)


@router.get("/orders/{order_id}/tracking", response_model=OrderTrackingState)
async def get_order_tracking(
    order_id: str,
    services: Services = Depends(get_services),
) -> OrderTrackingState:
    """Progress, ETA and allowed actions for an order."""
    _require_order(services, order_id)
    state = await services.tracker.tracking_state(order_id)
    if state is None:
        raise NotFoundError("Order", order_id)
    return state


@router.post("/orders/{order_id}/status", response_model=TransitionResponse)
async def transition_order(
    order_id: str,
    request: TransitionRequest,
    services: Services = Depends(get_services),
) -> TransitionResponse:
    """
    Move an order to a new status.

    Strict mode rejects backward moves and moves out of a terminal status
    with 409.
    """
    _require_order(services, order_id)
    found = await services.tracker.transition(
        order_id, request.status, message=request.message, location=request.location
    )
    if not found:
        raise _unavailable("Failed to update order status")
    return TransitionResponse(order_id=order_id, status=request.status, found=found)


@router.post("/orders/{order_id}/cancel", response_model=Order)
async def cancel_order(
    order_id: str,
    request: CancelRequest,
    services: Services = Depends(get_services),
) -> Order:
    _require_order(services, order_id)
    if not await services.tracker.cancel(order_id, request.reason or "Cancelled by customer"):
        raise _unavailable("Failed to cancel order")
    return _require_order(services, order_id)


@router.post("/orders/{order_id}/rating", response_model=Order)
async def rate_order(
    order_id: str,
    request: RateRequest,
    services: Services = Depends(get_services),
) -> Order:
    _require_order(services, order_id)
    if not await services.tracker.rate(order_id, request.rating, request.review):
        raise _unavailable("Failed to submit rating")
    return _require_order(services, order_id)


# Expense endpoints


@router.get("/expenses", response_model=list[FoodExpense])
async def list_expenses(services: Services = Depends(get_services)) -> list[FoodExpense]:
    return services.ledger.expenses


@router.post("/expenses", response_model=FoodExpense, status_code=status.HTTP_201_CREATED)
async def add_expense(
    expense: FoodExpense,
    services: Services = Depends(get_services),
) -> FoodExpense:
    """
    Record an expense.

    The returned id is temporary (``local-...``) when the store could not
    be reached.
    """
    return await services.ledger.add(expense)


@router.post(
    "/expenses/split", response_model=FoodExpense, status_code=status.HTTP_201_CREATED
)
async def add_split_expense(
    request: SplitExpenseRequest,
    services: Services = Depends(get_services),
) -> FoodExpense:
    return await services.ledger.add_split(
        request.expense, request.total, request.people, shares=request.shares
    )


@router.get("/expenses/recent", response_model=list[FoodExpense])
async def recent_expenses(
    limit: int = Query(default=5, ge=1, le=100),
    services: Services = Depends(get_services),
) -> list[FoodExpense]:
    return services.ledger.recent(limit)


@router.get("/expenses/totals/{period}", response_model=PeriodTotalResponse)
async def period_total(
    period: Literal["today", "week", "month"],
    services: Services = Depends(get_services),
) -> PeriodTotalResponse:
    return PeriodTotalResponse(period=period, total=services.ledger.total_for_period(period))


@router.get("/expenses/groups/{dimension}", response_model=dict[str, Decimal])
async def group_expenses(
    dimension: Literal["category", "cuisine", "meal_type"],
    services: Services = Depends(get_services),
) -> dict[str, Decimal]:
    return services.ledger.group_by(dimension)


@router.get("/expenses/summary/daily", response_model=DailyExpenseSummary)
async def daily_summary(
    day: date | None = None,
    services: Services = Depends(get_services),
) -> DailyExpenseSummary:
    """Summary for a day, today in the configured timezone by default."""
    if day is None:
        day = utcnow().astimezone(get_settings().tzinfo).date()
    return services.ledger.daily_summary(day)


@router.get("/expenses/summary/weekly", response_model=WeeklyExpenseSummary)
async def weekly_summary(services: Services = Depends(get_services)) -> WeeklyExpenseSummary:
    return services.ledger.weekly_summary()


@router.get("/expenses/summary/monthly", response_model=MonthlyExpenseSummary)
async def monthly_summary(services: Services = Depends(get_services)) -> MonthlyExpenseSummary:
    return services.ledger.monthly_summary(services.budget.budget)


@router.get("/expenses/stats", response_model=ExpenseStats)
async def expense_stats(services: Services = Depends(get_services)) -> ExpenseStats:
    return services.ledger.stats()


@router.get("/expenses/{expense_id}", response_model=FoodExpense)
async def get_expense(
    expense_id: str,
    services: Services = Depends(get_services),
) -> FoodExpense:
    return _require_expense(services, expense_id)


@router.patch("/expenses/{expense_id}", response_model=FoodExpense)
async def update_expense(
    expense_id: str,
    changes: ExpenseUpdate,
    services: Services = Depends(get_services),
) -> FoodExpense:
    """Update only the supplied fields."""
    expense = _require_expense(services, expense_id)
    if "status" in changes.model_fields_set:
        _check_status_change(expense, changes.status)
    if not await services.ledger.update(expense_id, changes):
        raise _unavailable("Failed to update")
    return _require_expense(services, expense_id)


@router.put("/expenses/{expense_id}/status", response_model=FoodExpense)
async def set_expense_status(
    expense_id: str,
    request: StatusRequest,
    services: Services = Depends(get_services),
) -> FoodExpense:
    _check_status_change(_require_expense(services, expense_id), request.status)
    if not await services.ledger.set_status(expense_id, request.status):
        raise _unavailable("Failed to update")
    return _require_expense(services, expense_id)


@router.post("/expenses/{expense_id}/cancel", response_model=FoodExpense)
async def cancel_expense(
    expense_id: str,
    request: CancelRequest,
    services: Services = Depends(get_services),
) -> FoodExpense:
    """Cancel a pending or completed expense."""
    expense = _require_expense(services, expense_id)
    if expense.status not in CANCELLABLE_STATUSES:
        raise InvalidStateError("cancel expense", expense.status.value)
    if not await services.ledger.cancel(expense_id, request.reason):
        raise _unavailable("Failed to cancel expense")
    return _require_expense(services, expense_id)


@router.delete("/expenses/{expense_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_expense(
    expense_id: str,
    services: Services = Depends(get_services),
) -> None:
    _require_expense(services, expense_id)
    if not await services.ledger.delete(expense_id):
        raise _unavailable("Failed to delete expense")


# Budget endpoints


@router.get("/budget", response_model=Budget)
async def get_budget(services: Services = Depends(get_services)) -> Budget:
    return services.budget.budget


@router.put("/budget", response_model=Budget)
async def save_budget(
    changes: BudgetUpdate,
    services: Services = Depends(get_services),
) -> Budget:
    return await services.budget.save(changes)


@router.get("/budget/usage", response_model=BudgetUsage)
async def budget_usage(services: Services = Depends(get_services)) -> BudgetUsage:
    """Usage for the budget's period; alerts if over the threshold."""
    return services.budget.refresh(services.ledger.expenses)


@router.post("/budget/check", response_model=BudgetCheck)
async def budget_check(
    request: AmountRequest,
    services: Services = Depends(get_services),
) -> BudgetCheck:
    return services.budget.check(request.amount, services.ledger.expenses)


# Split endpoints


@router.post("/splits/equal", response_model=list[SplitShare])
async def split_bill(request: SplitRequest) -> list[SplitShare]:
    return split_equally(request.total, request.people)


@router.post("/splits/validate", response_model=list[SplitShare])
async def validate_split(request: ManualSplitRequest) -> list[SplitShare]:
    return validate_manual_split(request.total, request.shares, request.people)


# Payment endpoints


@router.post(
    "/payments/success", response_model=CheckoutResult, status_code=status.HTTP_201_CREATED
)
async def payment_success(
    callback: PaymentCallback,
    services: Services = Depends(get_services),
) -> CheckoutResult:
    """Record the expense and place the order for a paid checkout."""
    return await services.checkout.handle_success(callback.request, callback.payment)


@router.post("/payments/dismiss", status_code=status.HTTP_204_NO_CONTENT)
async def payment_dismissed(services: Services = Depends(get_services)) -> None:
    services.checkout.handle_dismiss()
