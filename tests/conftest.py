"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Callable

import pytest
import pytest_asyncio

from savor_save.core.budget import BudgetMonitor
from savor_save.core.ledger import ExpenseLedger
from savor_save.core.orders import OrderTracker
from savor_save.models.expense import ExpenseCategory, FoodExpense, MealType
from savor_save.models.notification import Notification, NotificationLevel
from savor_save.models.order import CreateOrderInput, DeliveryType, Location, OrderItem
from savor_save.models.session import SessionContext
from savor_save.state.memory_store import MemoryStore
from savor_save.utils.notify import Notifier

# Wednesday 2024-06-12, 12:00 in Asia/Kolkata
NOW = datetime(2024, 6, 12, 6, 30, tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingNotifier(Notifier):
    """Notifier that keeps what it sent."""

    def __init__(self, user_id: str | None = None) -> None:
        super().__init__(user_id)
        self.sent: list[Notification] = []
        self.subscribe(self.sent.append)

    def messages(self, level: NotificationLevel | None = None) -> list[str]:
        return [n.message for n in self.sent if level is None or n.level == level]

    def clear(self) -> None:
        self.sent.clear()


@pytest.fixture
def clock() -> FrozenClock:
    """Create a frozen clock."""
    return FrozenClock()


@pytest.fixture
def store() -> MemoryStore:
    """Create an empty in-memory store."""
    return MemoryStore()


@pytest.fixture
def session() -> SessionContext:
    """Create a signed-in session."""
    return SessionContext(user_id="user-1")


@pytest.fixture
def notifier(session: SessionContext) -> RecordingNotifier:
    """Create a notifier that records notifications."""
    return RecordingNotifier(session.user_id)


@pytest.fixture
def budget(
    store: MemoryStore,
    session: SessionContext,
    notifier: RecordingNotifier,
    clock: FrozenClock,
) -> BudgetMonitor:
    """Create a budget monitor with default limits."""
    return BudgetMonitor(store, session, notifier, clock=clock)


@pytest_asyncio.fixture
async def ledger(
    store: MemoryStore,
    session: SessionContext,
    notifier: RecordingNotifier,
    clock: FrozenClock,
) -> AsyncGenerator[ExpenseLedger, None]:
    """Create an expense ledger without a budget monitor."""
    ledger = ExpenseLedger(store, session, notifier, clock=clock)
    yield ledger
    await ledger.close()


@pytest_asyncio.fixture
async def tracker(
    store: MemoryStore,
    session: SessionContext,
    notifier: RecordingNotifier,
    clock: FrozenClock,
    ledger: ExpenseLedger,
) -> AsyncGenerator[OrderTracker, None]:
    """Create a strict order tracker linked to the ledger."""
    tracker = OrderTracker(store, session, notifier, clock=clock, ledger=ledger, strict=True)
    yield tracker
    await tracker.close()


# Sample data fixtures


def make_expense(
    amount: str = "250",
    description: str = "Masala Dosa",
    date: datetime = NOW,
    **fields: object,
) -> FoodExpense:
    """Build an expense with sensible defaults."""
    values: dict[str, object] = {
        "description": description,
        "amount": Decimal(amount),
        "category": ExpenseCategory.DINE_IN,
        "meal_type": MealType.LUNCH,
        "date": date,
    }
    values.update(fields)
    return FoodExpense.model_validate(values)


@pytest.fixture
def expense_factory() -> Callable[..., FoodExpense]:
    """Expose make_expense to tests."""
    return make_expense


@pytest.fixture
def sample_expense() -> FoodExpense:
    """Create a sample expense."""
    return make_expense(restaurant="Saravana Bhavan", cuisine="South Indian")


@pytest.fixture
def sample_order_item() -> OrderItem:
    """Create a sample order item."""
    return OrderItem(name="Butter Chicken", quantity=2, price=Decimal("320"))


@pytest.fixture
def sample_order_input(sample_order_item: OrderItem) -> CreateOrderInput:
    """Create a delivery order input about 5 km from the restaurant."""
    return CreateOrderInput(
        restaurant_id="rest-1",
        restaurant_name="Punjab Grill",
        restaurant_location=Location(lat=12.9716, lng=77.5946),
        customer_location=Location(lat=13.0166, lng=77.5946),
        items=[sample_order_item],
        delivery_type=DeliveryType.DELIVERY,
        delivery_address="12 MG Road, Bengaluru",
    )
