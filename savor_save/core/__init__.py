"""Ledger, budget, split and order tracking logic."""

from savor_save.core.budget import BudgetMonitor, compute_usage, period_window, pre_check
from savor_save.core.checkout import Checkout
from savor_save.core.ledger import ExpenseLedger
from savor_save.core.optimistic import OptimisticOperation, OptimisticRunner
from savor_save.core.orders import (
    OrderTracker,
    OrderTransitions,
    apply_transition,
    can_transition,
    derive_tracking_state,
)
from savor_save.core.split import split_equally, validate_manual_split

__all__ = [
    "BudgetMonitor",
    "Checkout",
    "ExpenseLedger",
    "OptimisticOperation",
    "OptimisticRunner",
    "OrderTracker",
    "OrderTransitions",
    "apply_transition",
    "can_transition",
    "compute_usage",
    "derive_tracking_state",
    "period_window",
    "pre_check",
    "split_equally",
    "validate_manual_split",
]
