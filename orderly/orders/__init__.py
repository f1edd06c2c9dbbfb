from orderly.orders.models import (
    Deliverer,
    DelivererStatus,
    Order,
    OrderItem,
    OrderStatus,
    Product,
)
from orderly.orders.service import OrderService, calculate_total
from orderly.orders.state_machine import (
    MILESTONES,
    VALID_TRANSITIONS,
    assert_can_transition,
    can_transition,
    is_terminal,
)

__all__ = [
    # Models
    "Order",
    "OrderItem",
    "OrderStatus",
    "Deliverer",
    "DelivererStatus",
    "Product",
    # State machine
    "VALID_TRANSITIONS",
    "MILESTONES",
    "can_transition",
    "assert_can_transition",
    "is_terminal",
    # Service
    "OrderService",
    "calculate_total",
]
