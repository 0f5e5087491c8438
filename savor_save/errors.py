"""Custom exceptions for the order and expense ledger."""

from decimal import Decimal


class SavorSaveError(Exception):
    """Base exception for all ledger errors."""

    pass


class ValidationError(SavorSaveError):
    """Raised when input is rejected before any local or remote mutation."""

    pass


class InvalidAmountError(ValidationError):
    """Raised when an expense amount is not positive."""

    def __init__(self, amount: Decimal | float | None):
        self.amount = amount
        super().__init__(f"Amount must be greater than zero, got {amount}")


class InvalidDescriptionError(ValidationError):
    """Raised when an expense description is empty."""

    def __init__(self) -> None:
        super().__init__("Description must not be empty")


class SplitMismatchError(ValidationError):
    """Raised when split shares do not add up to the split total."""

    def __init__(self, total: Decimal, shares_sum: Decimal, reason: str | None = None):
        self.total = total
        self.shares_sum = shares_sum
        msg = f"Split amounts must add up to {total}, got {shares_sum}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class InvalidExpenseError(ValidationError):
    """Raised when applying an update would leave an expense inconsistent."""

    def __init__(self, expense_id: str, reason: str):
        self.expense_id = expense_id
        self.reason = reason
        super().__init__(f"Invalid update for expense {expense_id}: {reason}")


class InvalidRatingError(ValidationError):
    """Raised when a rating falls outside 1-5."""

    def __init__(self, rating: int):
        self.rating = rating
        super().__init__(f"Rating must be between 1 and 5, got {rating}")


class RemoteUnavailableError(SavorSaveError):
    """Raised by a store when a persistence call fails."""

    def __init__(self, operation: str, reason: str | None = None):
        self.operation = operation
        self.reason = reason
        msg = f"Store call failed: {operation}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class NotFoundError(SavorSaveError):
    """Raised at the API edge when an entity id does not exist."""

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} not found: {entity_id}")


class StateConflictError(SavorSaveError):
    """Raised when an operation is not allowed in the entity's current state."""

    pass


class InvalidStateError(StateConflictError):
    """Raised when an action is attempted from a disallowed status."""

    def __init__(self, action: str, status: str):
        self.action = action
        self.status = status
        super().__init__(f"Cannot {action} in status '{status}'")


class AlreadyRatedError(StateConflictError):
    """Raised when rating an order that already carries a rating."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} has already been rated")


class InvalidTransitionError(StateConflictError):
    """Raised in strict mode for a backward move or a move out of a terminal status."""

    def __init__(self, current: str, new: str):
        self.current = current
        self.new = new
        super().__init__(f"Cannot move order from '{current}' to '{new}'")
