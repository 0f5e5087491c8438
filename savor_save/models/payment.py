"""Payment gateway callback models."""

from decimal import Decimal

from pydantic import BaseModel, Field

from savor_save.models.expense import ExpenseCategory, FoodExpense, MealType
from savor_save.models.order import DeliveryType, Location, Order, OrderItem


class PaymentResult(BaseModel):
    """Payload of a successful checkout callback."""

    order_id: str
    payment_id: str
    amount: Decimal = Field(gt=0)


class CheckoutRequest(BaseModel):
    """What was being bought when the payment succeeded."""

    restaurant_id: str = "restaurant-1"
    restaurant_name: str = "Restaurant"
    restaurant_location: Location | None = None
    items: list[OrderItem] = Field(min_length=1)
    delivery_type: DeliveryType = DeliveryType.DELIVERY
    delivery_address: str | None = None
    customer_location: Location | None = None
    category: ExpenseCategory = ExpenseCategory.DELIVERY
    meal_type: MealType = MealType.LUNCH
    cuisine: str | None = None


class CheckoutResult(BaseModel):
    """Ledger entry and order created for a paid checkout."""

    expense: FoodExpense
    order: Order | None = None
