"""Food expense models."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from savor_save.utils.time import utcnow

SPLIT_TOLERANCE = Decimal("0.01")


class ExpenseCategory(str, Enum):
    """Where the food came from."""

    DINE_IN = "dine-in"
    DELIVERY = "delivery"
    TAKEOUT = "takeout"
    HOME_COOKED = "home-cooked"
    STREET_FOOD = "street-food"


class MealType(str, Enum):
    """Meal of the day."""

    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"
    SNACKS = "snacks"


class ExpenseStatus(str, Enum):
    """Settlement status of an expense."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransactionType(str, Enum):
    """Direction of the money movement."""

    INCOME = "income"
    EXPENSE = "expense"
    SPLIT = "split"


class SplitMethod(str, Enum):
    """How a shared amount was divided."""

    EQUAL = "equal"
    MANUAL = "manual"


CANCELLABLE_STATUSES = frozenset({ExpenseStatus.PENDING, ExpenseStatus.COMPLETED})


class SplitShare(BaseModel):
    """One participant's share of a split expense."""

    person: int = Field(ge=1)
    amount: Decimal = Field(ge=0)
    name: str | None = None


class FoodExpense(BaseModel):
    """A recorded food expense, income or split."""

    id: str | None = None
    user_id: str | None = None
    food_id: str | None = None
    description: str
    restaurant: str | None = None
    category: ExpenseCategory
    amount: Decimal
    date: datetime = Field(default_factory=utcnow)
    meal_type: MealType
    cuisine: str | None = None
    notes: str | None = None
    image: str | None = None

    status: ExpenseStatus = ExpenseStatus.COMPLETED
    transaction_type: TransactionType = TransactionType.EXPENSE

    is_split: bool = False
    split_total: Decimal | None = None
    split_people: int | None = Field(default=None, ge=2)
    split_method: SplitMethod | None = None
    split_shares: list[SplitShare] | None = None

    cancelled_at: datetime | None = None
    cancelled_reason: str | None = None

    @model_validator(mode="after")
    def check_split(self) -> "FoodExpense":
        """A split must carry one share per person summing to its total."""
        if not self.is_split:
            return self
        if not self.split_shares or self.split_total is None or self.split_people is None:
            raise ValueError("split expenses need split_total, split_people and split_shares")
        if len(self.split_shares) != self.split_people:
            raise ValueError(
                f"expected {self.split_people} shares, got {len(self.split_shares)}"
            )
        shares_sum = sum((share.amount for share in self.split_shares), Decimal("0"))
        if abs(shares_sum - self.split_total) > SPLIT_TOLERANCE:
            raise ValueError(f"shares sum to {shares_sum}, expected {self.split_total}")
        if self.amount != self.split_shares[0].amount:
            raise ValueError("amount must equal the first share")
        return self


class ExpenseUpdate(BaseModel):
    """Partial update; only explicitly supplied fields are written."""

    food_id: str | None = None
    description: str | None = None
    restaurant: str | None = None
    category: ExpenseCategory | None = None
    amount: Decimal | None = None
    date: datetime | None = None
    meal_type: MealType | None = None
    cuisine: str | None = None
    notes: str | None = None
    image: str | None = None
    status: ExpenseStatus | None = None
    transaction_type: TransactionType | None = None
    is_split: bool | None = None
    split_total: Decimal | None = None
    split_people: int | None = Field(default=None, ge=2)
    split_method: SplitMethod | None = None
    split_shares: list[SplitShare] | None = None
    cancelled_at: datetime | None = None
    cancelled_reason: str | None = None


class NamedAmount(BaseModel):
    """A label with its summed amount."""

    name: str
    amount: Decimal


class DailyExpenseSummary(BaseModel):
    """Totals for a single calendar day."""

    date: date
    total: Decimal
    meals: int
    expenses: list[FoodExpense] = Field(default_factory=list)


class WeeklyExpenseSummary(BaseModel):
    """Totals for the current Sunday-to-Saturday week."""

    week_start: date
    week_end: date
    total: Decimal
    average_per_day: Decimal
    by_category: dict[str, Decimal] = Field(default_factory=dict)
    by_cuisine: dict[str, Decimal] = Field(default_factory=dict)
    by_meal_type: dict[str, Decimal] = Field(default_factory=dict)


class MonthlyExpenseSummary(BaseModel):
    """Totals for the current month against the monthly budget."""

    month: str
    total: Decimal
    budget: Decimal
    remaining: Decimal
    percent_used: Decimal | None = None
    top_cuisines: list[NamedAmount] = Field(default_factory=list)
    top_restaurants: list[NamedAmount] = Field(default_factory=list)


class ExpenseStats(BaseModel):
    """Counts and totals by status and transaction type."""

    completed_count: int = 0
    pending_count: int = 0
    failed_count: int = 0
    cancelled_count: int = 0
    total_expenses: Decimal = Decimal("0")
    total_income: Decimal = Decimal("0")
    total_split_expenses: Decimal = Decimal("0")
    split_count: int = 0
