"""Order-related data models."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from savor_save.utils.time import utcnow

TOTAL_TOLERANCE = Decimal("0.01")


class OrderStatus(str, Enum):
    """Order status progression."""

    PLACED = "placed"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    PICKED_UP = "picked_up"
    ON_THE_WAY = "on_the_way"
    NEARBY = "nearby"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    """Payment state recorded on the order."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class DeliveryType(str, Enum):
    """How the order reaches the customer."""

    DELIVERY = "delivery"
    PICKUP = "pickup"
    DINE_IN = "dine-in"


class CancelledBy(str, Enum):
    """Who initiated a cancellation."""

    CUSTOMER = "customer"
    RESTAURANT = "restaurant"
    SYSTEM = "system"


# Timestamp column written when an order enters each status.
STATUS_TIMESTAMP_FIELDS: dict[OrderStatus, str] = {
    OrderStatus.PLACED: "placed_at",
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.PREPARING: "preparing_at",
    OrderStatus.READY: "ready_at",
    OrderStatus.PICKED_UP: "picked_up_at",
    OrderStatus.ON_THE_WAY: "on_the_way_at",
    OrderStatus.NEARBY: "nearby_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
    OrderStatus.FAILED: "failed_at",
}


class Location(BaseModel):
    """Geographic location."""

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    address: str | None = None


class OrderItem(BaseModel):
    """Individual line item in an order."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    quantity: int = Field(ge=1)
    price: Decimal = Field(ge=0)
    subtotal: Decimal = Field(default=Decimal("0.00"), ge=0)
    customizations: list[str] = Field(default_factory=list)
    notes: str | None = None

    @model_validator(mode="after")
    def calculate_subtotal(self) -> "OrderItem":
        """Subtotal is always quantity times unit price."""
        self.subtotal = self.price * Decimal(self.quantity)
        return self


class Order(BaseModel):
    """Complete order details."""

    id: str
    order_number: str
    user_id: str | None = None

    # Restaurant
    restaurant_id: str
    restaurant_name: str
    restaurant_distance: Decimal | None = None

    # Items
    items: list[OrderItem] = Field(default_factory=list)

    # Pricing
    subtotal: Decimal = Field(default=Decimal("0.00"), ge=0)
    delivery_fee: Decimal = Field(default=Decimal("0.00"), ge=0)
    tax_amount: Decimal = Field(default=Decimal("0.00"), ge=0)
    discount_amount: Decimal = Field(default=Decimal("0.00"), ge=0)
    total_amount: Decimal = Field(default=Decimal("0.00"), ge=0)

    # Status
    status: OrderStatus = OrderStatus.PLACED
    delivery_type: DeliveryType = DeliveryType.DELIVERY

    # Delivery details
    estimated_delivery_time: datetime | None = None
    delivery_address: str | None = None
    delivery_instructions: str | None = None
    customer_location: Location | None = None
    delivery_person_location: Location | None = None

    # Payment
    payment_method: str = "online"
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_id: str | None = None
    transaction_id: str | None = None
    expense_id: str | None = None

    # Rating
    rating: int | None = Field(default=None, ge=1, le=5)
    review: str | None = None

    # Timing
    placed_at: datetime = Field(default_factory=utcnow)
    confirmed_at: datetime | None = None
    preparing_at: datetime | None = None
    ready_at: datetime | None = None
    picked_up_at: datetime | None = None
    on_the_way_at: datetime | None = None
    nearby_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    failed_at: datetime | None = None

    # Cancellation
    cancellation_reason: str | None = None
    cancelled_by: CancelledBy | None = None

    special_instructions: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def compute_total(self) -> Decimal:
        """Recompute the total from its components."""
        return self.subtotal + self.delivery_fee + self.tax_amount - self.discount_amount

    @model_validator(mode="after")
    def check_total(self) -> "Order":
        """Reject a stored total that disagrees with its components."""
        if abs(self.total_amount - self.compute_total()) > TOTAL_TOLERANCE:
            raise ValueError(
                f"total_amount {self.total_amount} does not match components "
                f"({self.compute_total()})"
            )
        return self

    def timestamp_for(self, status: OrderStatus) -> datetime | None:
        """Get the timestamp recorded when the order entered a status."""
        return getattr(self, STATUS_TIMESTAMP_FIELDS[status])


class OrderStatusHistoryEntry(BaseModel):
    """Append-only record of one status change."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    order_id: str
    status: OrderStatus
    message: str | None = None
    location: Location | None = None
    created_at: datetime = Field(default_factory=utcnow)


class OrderTrackingState(BaseModel):
    """Derived view of an order for tracking screens."""

    current_status: OrderStatus
    status_history: list[OrderStatusHistoryEntry] = Field(default_factory=list)
    estimated_time: int | None = None
    is_delivered: bool
    is_cancelled: bool
    can_cancel: bool
    can_rate: bool
    delivery_person_location: Location | None = None
    progress_percentage: float


class CreateOrderInput(BaseModel):
    """Input for placing a new order.

    When ``paid_amount`` is set the order total is what was charged: the
    delivery fee is carved out of it and no tax is added on top.
    """

    restaurant_id: str
    restaurant_name: str
    restaurant_location: Location | None = None
    items: list[OrderItem] = Field(min_length=1)
    delivery_type: DeliveryType = DeliveryType.DELIVERY
    delivery_address: str | None = None
    delivery_instructions: str | None = None
    customer_location: Location | None = None
    payment_method: str = "online"
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_id: str | None = None
    transaction_id: str | None = None
    expense_id: str | None = None
    paid_amount: Decimal | None = Field(default=None, gt=0)
    discount_amount: Decimal = Field(default=Decimal("0.00"), ge=0)
    preparation_minutes: int | None = Field(default=None, ge=0)
    special_instructions: str | None = None
