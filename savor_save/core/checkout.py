"""Payment callback handling: record the expense, then place the order."""

from savor_save.core.ledger import ExpenseLedger, is_temporary_id
from savor_save.core.orders import OrderTracker
from savor_save.models.expense import ExpenseStatus, FoodExpense, TransactionType
from savor_save.models.order import CreateOrderInput, PaymentStatus
from savor_save.models.payment import CheckoutRequest, CheckoutResult, PaymentResult
from savor_save.utils.logging import get_logger

logger = get_logger(__name__)


class Checkout:
    """Turns gateway callbacks into ledger entries and orders."""

    def __init__(self, ledger: ExpenseLedger, tracker: OrderTracker):
        self.ledger = ledger
        self.tracker = tracker

    async def handle_success(
        self,
        request: CheckoutRequest,
        payment: PaymentResult,
    ) -> CheckoutResult:
        """
        Record a paid checkout.

        The expense is always kept. If the order cannot be created the
        customer is still told the purchase went through.
        """
        item_name = request.items[0].name

        expense = await self.ledger.add(
            FoodExpense(
                description=item_name,
                amount=payment.amount,
                category=request.category,
                meal_type=request.meal_type,
                restaurant=request.restaurant_name,
                cuisine=request.cuisine,
                notes=f"Payment ID: {payment.payment_id}",
                status=ExpenseStatus.COMPLETED,
                transaction_type=TransactionType.EXPENSE,
            )
        )

        order = await self.tracker.create_order(
            CreateOrderInput(
                restaurant_id=request.restaurant_id,
                restaurant_name=request.restaurant_name,
                restaurant_location=request.restaurant_location,
                items=request.items,
                delivery_type=request.delivery_type,
                delivery_address=request.delivery_address,
                customer_location=request.customer_location,
                payment_method="online",
                payment_status=PaymentStatus.COMPLETED,
                payment_id=payment.payment_id,
                transaction_id=payment.order_id,
                paid_amount=payment.amount,
                expense_id=None if is_temporary_id(expense.id) else expense.id,
            ),
            notify_failure=False,
        )

        if order is None:
            logger.warning(
                "checkout_order_failed",
                payment_id=payment.payment_id,
                expense_id=expense.id,
            )
            self.tracker.notifier.success(f"Order placed for {item_name}!")
        else:
            logger.info(
                "checkout_completed",
                payment_id=payment.payment_id,
                order_id=order.id,
                order_number=order.order_number,
                expense_id=expense.id,
            )

        return CheckoutResult(expense=expense, order=order)

    def handle_dismiss(self) -> None:
        """The customer closed the payment sheet; nothing to undo."""
        logger.info("payment_dismissed")
