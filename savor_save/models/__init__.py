"""Data models for the order and expense ledger."""

from savor_save.models.budget import (
    Budget,
    BudgetCheck,
    BudgetPeriod,
    BudgetUpdate,
    BudgetUsage,
)
from savor_save.models.expense import (
    DailyExpenseSummary,
    ExpenseCategory,
    ExpenseStats,
    ExpenseStatus,
    ExpenseUpdate,
    FoodExpense,
    MealType,
    MonthlyExpenseSummary,
    NamedAmount,
    SplitMethod,
    SplitShare,
    TransactionType,
    WeeklyExpenseSummary,
)
from savor_save.models.notification import Notification, NotificationLevel
from savor_save.models.order import (
    CancelledBy,
    CreateOrderInput,
    DeliveryType,
    Location,
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusHistoryEntry,
    OrderTrackingState,
    PaymentStatus,
)
from savor_save.models.payment import CheckoutRequest, CheckoutResult, PaymentResult
from savor_save.models.session import SessionContext

__all__ = [
    # Budget
    "Budget",
    "BudgetCheck",
    "BudgetPeriod",
    "BudgetUpdate",
    "BudgetUsage",
    # Expense
    "DailyExpenseSummary",
    "ExpenseCategory",
    "ExpenseStats",
    "ExpenseStatus",
    "ExpenseUpdate",
    "FoodExpense",
    "MealType",
    "MonthlyExpenseSummary",
    "NamedAmount",
    "SplitMethod",
    "SplitShare",
    "TransactionType",
    "WeeklyExpenseSummary",
    # Notification
    "Notification",
    "NotificationLevel",
    # Order
    "CancelledBy",
    "CreateOrderInput",
    "DeliveryType",
    "Location",
    "Order",
    "OrderItem",
    "OrderStatus",
    "OrderStatusHistoryEntry",
    "OrderTrackingState",
    "PaymentStatus",
    # Payment
    "CheckoutRequest",
    "CheckoutResult",
    "PaymentResult",
    # Session
    "SessionContext",
]
