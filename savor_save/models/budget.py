"""Budget models."""

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

from savor_save.config import Settings


class BudgetPeriod(str, Enum):
    """Rolling window a budget limit applies to."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class Budget(BaseModel):
    """Spending limits for one owner."""

    id: str | None = None
    user_id: str | None = None
    daily: Decimal = Field(ge=0)
    weekly: Decimal = Field(ge=0)
    monthly: Decimal = Field(ge=0)
    alert_threshold: Decimal = Field(default=Decimal("80"), ge=0, le=100)
    enable_alerts: bool = True
    budget_period: BudgetPeriod = BudgetPeriod.MONTHLY

    @classmethod
    def defaults(cls, settings: Settings, user_id: str | None = None) -> "Budget":
        """Budget used when the owner has none configured."""
        return cls(
            user_id=user_id,
            daily=settings.default_daily_budget,
            weekly=settings.default_weekly_budget,
            monthly=settings.default_monthly_budget,
            alert_threshold=settings.default_alert_threshold,
        )

    def limit_for(self, period: BudgetPeriod | None = None) -> Decimal:
        """Get the limit for a period (the configured period by default)."""
        period = period or self.budget_period
        if period == BudgetPeriod.DAILY:
            return self.daily
        if period == BudgetPeriod.WEEKLY:
            return self.weekly
        return self.monthly


class BudgetUpdate(BaseModel):
    """Partial budget change."""

    daily: Decimal | None = Field(default=None, ge=0)
    weekly: Decimal | None = Field(default=None, ge=0)
    monthly: Decimal | None = Field(default=None, ge=0)
    alert_threshold: Decimal | None = Field(default=None, ge=0, le=100)
    enable_alerts: bool | None = None
    budget_period: BudgetPeriod | None = None


class BudgetUsage(BaseModel):
    """Spend against the effective budget limit. Derived, never stored."""

    total_spent: Decimal
    budget_limit: Decimal
    percentage_used: Decimal | None
    remaining: Decimal
    alert_threshold: Decimal
    should_alert: bool


class BudgetCheck(BaseModel):
    """Advisory result of checking a candidate expense against the budget."""

    allowed: bool
    message: str | None = None
    projected_percentage: Decimal | None = None
