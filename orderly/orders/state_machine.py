"""
Order status transitions.

    Pending -> Confirmed -> InProgress -> OnTheWay -> Delivered
       |           |
       +-----------+--> Cancelled

Delivered and Cancelled are terminal.
"""

from typing import Dict, FrozenSet

from orderly.exceptions import InvalidStatusTransitionException
from orderly.orders.models import OrderStatus

VALID_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED}),
    OrderStatus.IN_PROGRESS: frozenset({OrderStatus.ON_THE_WAY}),
    OrderStatus.ON_THE_WAY: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Timestamp field stamped when an order enters the status
MILESTONES: Dict[OrderStatus, str] = {
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.IN_PROGRESS: "in_progress_at",
    OrderStatus.ON_THE_WAY: "on_the_way_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, frozenset())


def is_terminal(status: OrderStatus) -> bool:
    return not VALID_TRANSITIONS.get(status)


def assert_can_transition(current: OrderStatus, target: OrderStatus) -> None:
    if not can_transition(current, target):
        raise InvalidStatusTransitionException(current, target)
