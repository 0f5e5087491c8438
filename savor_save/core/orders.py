"""Order status state machine and tracker."""

import asyncio
import math
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from savor_save.config import get_settings
from savor_save.core.ledger import ExpenseLedger
from savor_save.core.split import CENT
from savor_save.errors import (
    AlreadyRatedError,
    InvalidAmountError,
    InvalidRatingError,
    InvalidStateError,
    InvalidTransitionError,
    RemoteUnavailableError,
)
from savor_save.models.order import (
    STATUS_TIMESTAMP_FIELDS,
    CancelledBy,
    CreateOrderInput,
    DeliveryType,
    Location,
    Order,
    OrderStatus,
    OrderStatusHistoryEntry,
    OrderTrackingState,
)
from savor_save.models.session import SessionContext
from savor_save.state.realtime import ChangeEvent, EventType, Subscription
from savor_save.state.store import ORDER_STATUS_HISTORY, ORDERS, Store, parse_row, parse_rows, to_row
from savor_save.utils.geo import estimate_delivery_minutes, haversine_km
from savor_save.utils.logging import LedgerLogger
from savor_save.utils.notify import Notifier
from savor_save.utils.time import Clock, utcnow


class OrderTransitions:
    """Valid order status transitions."""

    SEQUENCE = [
        OrderStatus.PLACED,
        OrderStatus.CONFIRMED,
        OrderStatus.PREPARING,
        OrderStatus.READY,
        OrderStatus.PICKED_UP,
        OrderStatus.ON_THE_WAY,
        OrderStatus.NEARBY,
        OrderStatus.DELIVERED,
    ]

    TERMINAL = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.FAILED})

    # Reachable from any non-terminal status
    ABORT = frozenset({OrderStatus.CANCELLED, OrderStatus.FAILED})

    CANCELLABLE = frozenset({OrderStatus.PLACED, OrderStatus.CONFIRMED})

    @classmethod
    def can_transition(
        cls,
        current: OrderStatus,
        new: OrderStatus,
        strict: bool = True,
    ) -> bool:
        """
        Check if a status change is allowed.

        Permissive mode accepts anything. Strict mode accepts forward moves
        along the sequence (skipping is fine), re-entering the same
        non-terminal status, and aborting a non-terminal order.
        """
        if not strict:
            return True
        if current in cls.TERMINAL:
            return False
        if new in cls.ABORT:
            return True
        return cls.SEQUENCE.index(new) >= cls.SEQUENCE.index(current)

    @classmethod
    def is_terminal(cls, status: OrderStatus) -> bool:
        return status in cls.TERMINAL

    @classmethod
    def next_status(cls, status: OrderStatus) -> OrderStatus | None:
        """Next status along the delivery sequence, if any."""
        if status not in cls.SEQUENCE or status == OrderStatus.DELIVERED:
            return None
        return cls.SEQUENCE[cls.SEQUENCE.index(status) + 1]


def can_transition(current: OrderStatus, new: OrderStatus, strict: bool = True) -> bool:
    return OrderTransitions.can_transition(current, new, strict)


def apply_transition(order: Order, new_status: OrderStatus, at: datetime) -> Order:
    """Return a copy in the new status; the status timestamp is kept if already set."""
    update: dict[str, Any] = {"status": new_status, "updated_at": at}
    field = STATUS_TIMESTAMP_FIELDS[new_status]
    if getattr(order, field) is None:
        update[field] = at
    return order.model_copy(update=update)


def derive_tracking_state(
    order: Order,
    history: list[OrderStatusHistoryEntry],
    now: datetime,
) -> OrderTrackingState:
    """Progress and allowed actions for an order at a point in time."""
    sequence = OrderTransitions.SEQUENCE

    if order.status in sequence:
        index = sequence.index(order.status)
    else:
        # Cancelled and failed orders stay at the furthest step they reached
        index = max(
            (i for i, status in enumerate(sequence) if order.timestamp_for(status) is not None),
            default=0,
        )

    estimated_time = None
    if order.estimated_delivery_time is not None and order.status != OrderStatus.DELIVERED:
        remaining = (order.estimated_delivery_time - now).total_seconds()
        estimated_time = max(0, math.ceil(remaining / 60))

    return OrderTrackingState(
        current_status=order.status,
        status_history=history,
        estimated_time=estimated_time,
        is_delivered=order.status == OrderStatus.DELIVERED,
        is_cancelled=order.status == OrderStatus.CANCELLED,
        can_cancel=order.status in OrderTransitions.CANCELLABLE,
        can_rate=order.status == OrderStatus.DELIVERED and order.rating is None,
        delivery_person_location=order.delivery_person_location,
        progress_percentage=round((index + 1) / len(sequence) * 100, 2),
    )


class OrderTracker:
    """
    A session's orders with status tracking.

    Store failures are logged, resynchronised from the store where possible
    and reported through the notifier; they are not raised.
    """

    def __init__(
        self,
        store: Store,
        session: SessionContext,
        notifier: Notifier,
        clock: Clock = utcnow,
        ledger: ExpenseLedger | None = None,
        strict: bool | None = None,
    ):
        self.store = store
        self.session = session
        self.notifier = notifier
        self.clock = clock
        self.ledger = ledger
        self.settings = get_settings()
        self.strict = self.settings.strict_transitions if strict is None else strict
        self.logger = LedgerLogger("order_tracker", session.user_id)

        self.orders: list[Order] = []
        self._subscription: Subscription | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    # Lifecycle

    async def load(self) -> list[Order]:
        """Fetch the session's orders, newest first."""
        try:
            rows = await self.store.select(
                ORDERS,
                {"user_id": self.session.user_id},
                order_by="placed_at",
                descending=True,
            )
        except RemoteUnavailableError as e:
            self.logger.log_error(str(e), operation="load")
            self.notifier.error("Failed to load orders")
            self.orders = []
            return self.orders

        self.orders = parse_rows(Order, rows)
        return self.orders

    def attach(self) -> Subscription:
        """Follow realtime changes on the orders table."""
        if self._subscription is None:
            self._subscription = self.store.subscribe(ORDERS, self.apply_remote_event)
        return self._subscription

    async def close(self) -> None:
        """Stop following changes and cancel background progression."""
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    # Queries

    def get(self, order_id: str) -> Order | None:
        index = self._index_of(order_id)
        return self.orders[index] if index is not None else None

    async def history(self, order_id: str) -> list[OrderStatusHistoryEntry]:
        """Status history of an order, oldest first."""
        try:
            rows = await self.store.select(
                ORDER_STATUS_HISTORY, {"order_id": order_id}, order_by="created_at"
            )
        except RemoteUnavailableError as e:
            self.logger.log_error(str(e), operation="history", order_id=order_id)
            return []
        return parse_rows(OrderStatusHistoryEntry, rows)

    async def tracking_state(self, order_id: str) -> OrderTrackingState | None:
        order = await self._find(order_id)
        if order is None:
            return None
        return derive_tracking_state(order, await self.history(order_id), self.clock())

    # Mutations

    async def create_order(
        self,
        order_input: CreateOrderInput,
        notify_failure: bool = True,
    ) -> Order | None:
        """
        Price, number and insert a new order.

        Args:
            order_input: Restaurant, items, delivery and payment details
            notify_failure: Emit an error notification if the store call fails

        Returns:
            The stored order, or None if it could not be saved
        """
        if not self.session.can_persist:
            if notify_failure:
                self.notifier.error("Please log in to place orders")
            return None

        settings = self.settings
        now = self.clock()

        delivery_fee = (
            settings.delivery_fee
            if order_input.delivery_type == DeliveryType.DELIVERY
            else Decimal("0")
        )
        if order_input.paid_amount is not None:
            total_amount = order_input.paid_amount
            delivery_fee = min(delivery_fee, total_amount)
            tax_amount = Decimal("0")
            subtotal = total_amount - delivery_fee + order_input.discount_amount
        else:
            subtotal = sum((item.subtotal for item in order_input.items), Decimal("0"))
            tax_amount = (subtotal * settings.tax_rate).quantize(CENT, rounding=ROUND_HALF_UP)
            total_amount = subtotal + delivery_fee + tax_amount - order_input.discount_amount
        if total_amount < 0:
            raise InvalidAmountError(total_amount)

        distance = None
        if order_input.restaurant_location and order_input.customer_location:
            distance = haversine_km(order_input.restaurant_location, order_input.customer_location)

        estimated_delivery_time = None
        if order_input.delivery_type == DeliveryType.DELIVERY and distance is not None:
            preparation = order_input.preparation_minutes
            if preparation is None:
                preparation = settings.default_preparation_minutes
            minutes = estimate_delivery_minutes(
                distance,
                preparation,
                settings.avg_delivery_speed_kmh,
                settings.delivery_buffer_minutes,
            )
            estimated_delivery_time = now + timedelta(minutes=minutes)

        draft = Order(
            # id and order_number are assigned by the store
            id="",
            order_number="",
            user_id=self.session.user_id,
            restaurant_id=order_input.restaurant_id,
            restaurant_name=order_input.restaurant_name,
            restaurant_distance=Decimal(str(distance)) if distance is not None else None,
            items=order_input.items,
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            tax_amount=tax_amount,
            discount_amount=order_input.discount_amount,
            total_amount=total_amount,
            status=OrderStatus.PLACED,
            delivery_type=order_input.delivery_type,
            estimated_delivery_time=estimated_delivery_time,
            delivery_address=order_input.delivery_address,
            delivery_instructions=order_input.delivery_instructions,
            customer_location=order_input.customer_location,
            payment_method=order_input.payment_method,
            payment_status=order_input.payment_status,
            payment_id=order_input.payment_id,
            transaction_id=order_input.transaction_id,
            expense_id=order_input.expense_id,
            special_instructions=order_input.special_instructions,
            placed_at=now,
            created_at=now,
            updated_at=now,
        )

        try:
            row = await self.store.insert_order(
                to_row(draft, exclude={"id", "order_number"}),
                now.astimezone(settings.tzinfo),
            )
            order = Order.model_validate(row)
            if self._index_of(order.id) is None:
                self.orders.insert(0, order)

            await self.store.transition_order(
                order.id,
                OrderStatus.PLACED.value,
                STATUS_TIMESTAMP_FIELDS[OrderStatus.PLACED],
                now,
                message="Order placed successfully",
            )
        except RemoteUnavailableError as e:
            self.logger.log_error(str(e), operation="create_order")
            if notify_failure:
                self.notifier.error("Failed to create order")
            return None

        self.logger.log_mutation(
            "create_order",
            order.id,
            phase="confirm",
            order_number=order.order_number,
            total_amount=str(order.total_amount),
        )
        self.notifier.success(f"Order {order.order_number} placed successfully!")
        return order

    async def transition(
        self,
        order_id: str,
        new_status: OrderStatus | str,
        message: str | None = None,
        location: Location | None = None,
    ) -> bool:
        """
        Move an order to a new status and append a history entry.

        Raises InvalidTransitionError in strict mode before anything changes.
        Returns whether the store found the order.
        """
        return await self._transition(
            order_id,
            OrderStatus(new_status),
            message,
            location,
            success_message=f"Order status updated to {OrderStatus(new_status).value}",
        )

    async def cancel(self, order_id: str, reason: str) -> bool:
        """Cancel a placed or confirmed order on the customer's behalf."""
        order = await self._find(order_id)
        if order is None:
            self.notifier.error("Order not found")
            return False

        if order.status not in OrderTransitions.CANCELLABLE:
            raise InvalidStateError("cancel order", order.status.value)

        if not await self._transition(order_id, OrderStatus.CANCELLED, message=reason):
            return False

        cancelled = self.get(order_id)
        fields = {"cancellation_reason": reason, "cancelled_by": CancelledBy.CUSTOMER.value}
        self._replace_local(
            order_id,
            cancellation_reason=reason,
            cancelled_by=CancelledBy.CUSTOMER,
        )

        try:
            await self.store.update(ORDERS, order_id, fields)
        except RemoteUnavailableError as e:
            self.logger.log_compensation("cancel_order", order_id, action="resync", error=str(e))
            await self._resync(order_id, fallback=cancelled)
            self.notifier.error("Failed to cancel order")
            return False

        self.notifier.success("Order cancelled successfully")
        return True

    async def rate(self, order_id: str, rating: int, review: str | None = None) -> bool:
        """Rate a delivered order once."""
        if not 1 <= rating <= 5:
            raise InvalidRatingError(rating)

        order = await self._find(order_id)
        if order is None:
            self.notifier.error("Order not found")
            return False

        if order.status != OrderStatus.DELIVERED:
            raise InvalidStateError("rate order", order.status.value)
        if order.rating is not None:
            raise AlreadyRatedError(order_id)

        self._replace_local(order_id, rating=rating, review=review)

        try:
            row = await self.store.update(
                ORDERS,
                order_id,
                {"rating": rating, "review": review},
                only_if={"rating": [None]},
            )
        except RemoteUnavailableError as e:
            self.logger.log_compensation("rate_order", order_id, action="resync", error=str(e))
            await self._resync(order_id, fallback=order)
            self.notifier.error("Failed to submit rating")
            return False

        if row is None:
            await self._resync(order_id)
            raise AlreadyRatedError(order_id)

        self.notifier.success("Thank you for your review!")
        return True

    def simulate_progress(self, order_id: str, step_seconds: float = 5.0) -> asyncio.Task[None]:
        """Demo helper: advance the order one step at a time until delivered."""
        task = asyncio.create_task(self._progress(order_id, step_seconds))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # Realtime

    def apply_remote_event(self, event: ChangeEvent) -> None:
        """Merge an order change idempotently."""
        order_id = event.row_id
        if order_id is None:
            return

        index = self._index_of(order_id)

        if event.event_type == EventType.DELETE:
            if index is not None:
                del self.orders[index]
                self.logger.log_reconcile("realtime", order_id, action="removed")
            return

        if not self.session.owns(event.row):
            return

        order = parse_row(Order, event.row)
        if order is None:
            return

        if index is None:
            self.orders.insert(0, order)
            self.logger.log_reconcile("realtime", order_id, action="inserted")
        else:
            self.orders[index] = order
            self.logger.log_reconcile("realtime", order_id, action="replaced")

    # Internals

    async def _transition(
        self,
        order_id: str,
        new_status: OrderStatus,
        message: str | None = None,
        location: Location | None = None,
        success_message: str | None = None,
    ) -> bool:
        order, visible = await self._lookup(order_id)
        if not visible:
            self.notifier.error("Order not found")
            return False
        if order is not None and not can_transition(order.status, new_status, self.strict):
            raise InvalidTransitionError(order.status.value, new_status.value)

        at = self.clock()
        if order is not None:
            self._replace(apply_transition(order, new_status, at))

        try:
            found = await self.store.transition_order(
                order_id,
                new_status.value,
                STATUS_TIMESTAMP_FIELDS[new_status],
                at,
                message=message,
                location=location.model_dump(mode="json") if location else None,
            )
        except RemoteUnavailableError as e:
            self.logger.log_compensation("transition", order_id, action="resync", error=str(e))
            await self._resync(order_id, fallback=order)
            self.notifier.error("Failed to update order status")
            return False

        self.logger.log_mutation(
            "transition", order_id, phase="confirm", status=new_status.value, found=found
        )

        if not found:
            self.notifier.error("Order not found")
            return False

        if success_message:
            self.notifier.success(success_message)

        if order is not None:
            await self._on_status_change(order, new_status)
        return True

    async def _on_status_change(self, order: Order, new_status: OrderStatus) -> None:
        """Cancel the linked expense when an order is cancelled or fails."""
        if self.ledger is None or order.expense_id is None:
            return
        if new_status not in OrderTransitions.ABORT:
            return
        await self.ledger.cancel(
            order.expense_id,
            f"Order {order.order_number} {new_status.value}",
            quiet=True,
        )

    async def _progress(self, order_id: str, step_seconds: float) -> None:
        while True:
            await asyncio.sleep(step_seconds)
            order = self.get(order_id)
            if order is None:
                return
            next_status = OrderTransitions.next_status(order.status)
            if next_status is None:
                return
            label = next_status.value.replace("_", " ")
            if not await self.transition(order_id, next_status, message=f"Order {label}"):
                return

    async def _find(self, order_id: str) -> Order | None:
        order, _ = await self._lookup(order_id)
        return order

    async def _lookup(self, order_id: str) -> tuple[Order | None, bool]:
        """
        Local copy, or the store's when the order is not loaded.

        The flag is False when the order belongs to another owner.
        """
        order = self.get(order_id)
        if order is not None:
            return order, True

        try:
            row = await self.store.get(ORDERS, order_id)
        except RemoteUnavailableError as e:
            self.logger.log_error(str(e), operation="find", order_id=order_id)
            return None, True

        if row is None:
            return None, True
        if not self.session.owns(row):
            return None, False

        order = parse_row(Order, row)
        if order is not None:
            self._replace(order)
        return order, True

    async def _resync(self, order_id: str, fallback: Order | None = None) -> None:
        """Replace the local copy with the store's, or with fallback if unreachable."""
        try:
            row = await self.store.get(ORDERS, order_id)
        except RemoteUnavailableError as e:
            self.logger.log_error(str(e), operation="resync", order_id=order_id)
            if fallback is not None:
                self._replace(fallback)
            return

        index = self._index_of(order_id)
        order = parse_row(Order, row) if row is not None else None
        if order is None:
            if index is not None:
                del self.orders[index]
            return
        self._replace(order)

    def _replace(self, order: Order) -> None:
        index = self._index_of(order.id)
        if index is None:
            self.orders.insert(0, order)
        else:
            self.orders[index] = order

    def _replace_local(self, order_id: str, **fields: Any) -> None:
        index = self._index_of(order_id)
        if index is not None:
            self.orders[index] = self.orders[index].model_copy(update=fields)

    def _index_of(self, order_id: str) -> int | None:
        for index, order in enumerate(self.orders):
            if order.id == order_id:
                return index
        return None
