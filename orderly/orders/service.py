from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, List, Optional

from orderly.config.properties import ConfigurationProperties, get_config
from orderly.core.logging import get_logger
from orderly.data.entity import next_timestamp
from orderly.data.filters import CallerContext
from orderly.data.repository import Page
from orderly.data.unit_of_work import UnitOfWork, UnitOfWorkFactory
from orderly.exceptions import (
    ArgumentException,
    EntityNotFoundException,
)
from orderly.orders.models import Deliverer, DelivererStatus, Order, OrderItem, OrderStatus
from orderly.orders.state_machine import (
    MILESTONES,
    assert_can_transition,
    can_transition,
    is_terminal,
)

logger = get_logger("orders.service")

CENT = Decimal("0.01")


def calculate_total(items: Iterable[OrderItem]) -> Decimal:
    """Sum of quantity x unit price, rounded to cents."""
    total = sum((_decimal(item.unit_price) * item.quantity for item in items), Decimal("0"))
    return total.quantize(CENT, rounding=ROUND_HALF_UP)


class OrderService:
    """
    Order lifecycle: placement, lookup, status changes, deliverer assignment.

    Each call runs in its own unit of work. The caller is passed explicitly and
    scopes every read and write.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        strict_transitions: bool = True,
        page_size: int = 20,
    ):
        if uow_factory is None:
            raise ArgumentException("uow_factory is required")
        self._uow_factory = uow_factory
        self.strict_transitions = strict_transitions
        self.page_size = page_size

    @classmethod
    def from_config(
        cls,
        uow_factory: UnitOfWorkFactory,
        config: Optional[ConfigurationProperties] = None,
    ) -> "OrderService":
        config = config or get_config()
        return cls(
            uow_factory,
            strict_transitions=config.get_bool("orders.strict_transitions", True),
            page_size=config.get_int("orders.page_size", 20),
        )

    async def place_order(self, order: Order, caller: CallerContext) -> Order:
        """
        Persist a new order in Pending status.

        Returns the same order with its id, item ids and total filled in. Item
        prices are rounded to cents so the total matches the stored items. A
        rejected order is left exactly as the caller built it.
        """
        self._validate_new_order(order)

        prices = [_price(item.unit_price) for item in order.order_items]
        total = sum(
            (price * item.quantity for price, item in zip(prices, order.order_items)),
            Decimal("0"),
        )

        async with self._uow_factory() as uow:
            await uow.repository(Order).add(order, caller)
            # rows are built from the entity at commit
            order.status = OrderStatus.PENDING
            for item, price in zip(order.order_items, prices):
                item.unit_price = price
            order.total_amount = total.quantize(CENT, rounding=ROUND_HALF_UP)
            await uow.commit()

        logger.info(
            f"Placed order {order.id} for user {order.user_id} "
            f"({len(order.order_items)} item(s), total {order.total_amount})"
        )
        return order

    async def get_order(self, order_id: int, caller: CallerContext) -> Order:
        _require_id(order_id, "Order")
        async with self._uow_factory() as uow:
            return await self._load_order(uow, order_id, caller)

    async def get_all_orders(self, caller: CallerContext) -> List[Order]:
        async with self._uow_factory() as uow:
            return await uow.repository(Order).find_all(caller)

    async def get_orders_page(
        self,
        caller: CallerContext,
        page: int = 0,
        size: Optional[int] = None,
        status: Optional[OrderStatus] = None,
    ) -> Page[Order]:
        filters = {}
        if status is not None:
            filters["status"] = _status(status)
        async with self._uow_factory() as uow:
            return await uow.repository(Order).find_page(
                caller, page=page, size=size or self.page_size, **filters
            )

    async def update_order_status(
        self, order_id: int, new_status: OrderStatus, caller: CallerContext
    ) -> Order:
        """
        Move an order to ``new_status`` and stamp the matching milestone.

        Raises:
            ArgumentException: non-positive id or unknown status
            EntityNotFoundException: order absent or not visible to the caller
            InvalidStatusTransitionException: illegal edge while strict transitions are on
        """
        _require_id(order_id, "Order")
        target = _status(new_status)

        async with self._uow_factory() as uow:
            order = await self._load_order(uow, order_id, caller)
            if order.status == target:
                logger.debug(f"Order {order_id} is already {target.value}")
                return order

            previous = order.status
            self._apply_status(order, target)
            await uow.repository(Order).update(order, caller)
            if is_terminal(target) and order.deliverer_id is not None:
                await self._release_deliverer(uow, order)
            await uow.commit()

        logger.info(f"Order {order_id}: {previous.value} -> {target.value}")
        return order

    async def assign_deliverer(
        self, order_id: int, deliverer_id: int, caller: CallerContext
    ) -> Order:
        """Hand a confirmed order to a deliverer and move it to InProgress."""
        _require_id(order_id, "Order")
        _require_id(deliverer_id, "Deliverer")

        async with self._uow_factory() as uow:
            order = await self._load_order(uow, order_id, caller)
            deliverers = uow.repository(Deliverer)
            deliverer = await deliverers.get_by_id(deliverer_id, caller)
            if deliverer is None:
                raise EntityNotFoundException("Deliverer", deliverer_id)
            if deliverer.status == DelivererStatus.OFFLINE:
                raise ArgumentException(f"Deliverer {deliverer_id} is offline")
            if order.deliverer_id is not None and order.deliverer_id != deliverer_id:
                raise ArgumentException(
                    f"Order {order_id} is already assigned to deliverer {order.deliverer_id}"
                )

            self._apply_status(order, OrderStatus.IN_PROGRESS)
            order.deliverer_id = deliverer.id
            await uow.repository(Order).update(order, caller)

            deliverer.status = DelivererStatus.DELIVERING
            await deliverers.update(deliverer, caller)
            await uow.commit()

        logger.info(f"Order {order_id} assigned to deliverer {deliverer_id}")
        return order

    async def cancel_order(self, order_id: int, caller: CallerContext) -> Order:
        return await self.update_order_status(order_id, OrderStatus.CANCELLED, caller)

    async def delete_order(self, order_id: int, caller: CallerContext) -> None:
        """Soft-delete an order and its items."""
        _require_id(order_id, "Order")
        async with self._uow_factory() as uow:
            order = await self._load_order(uow, order_id, caller)
            await uow.repository(Order).soft_delete(order, caller)
            await uow.commit()
        logger.info(f"Deleted order {order_id}")

    def _validate_new_order(self, order: Any) -> None:
        if order is None:
            raise ArgumentException("Order must not be None")
        if not isinstance(order, Order):
            raise ArgumentException(f"Expected Order, got {type(order).__name__}")
        if not order.is_new:
            raise ArgumentException("New orders should not have an ID assigned")
        if not isinstance(order.user_id, int) or order.user_id <= 0:
            raise ArgumentException("UserId is required")
        if not order.order_items:
            raise ArgumentException("Order must contain at least one item")
        for position, item in enumerate(order.order_items, start=1):
            if item.quantity is None or item.quantity <= 0:
                raise ArgumentException(f"Item {position}: quantity must be greater than zero")
            if item.unit_price is None or _decimal(item.unit_price) < 0:
                raise ArgumentException(f"Item {position}: unit price must not be negative")

    def _apply_status(self, order: Order, target: OrderStatus) -> None:
        current = order.status
        if self.strict_transitions:
            assert_can_transition(current, target)
        elif not can_transition(current, target):
            logger.warning(
                f"Order {order.id}: allowing non-standard transition "
                f"{current.value} -> {target.value}"
            )

        order.status = target
        milestone = MILESTONES.get(target)
        if milestone is not None:
            setattr(order, milestone, next_timestamp(order.created_at))

    async def _load_order(
        self, uow: UnitOfWork, order_id: int, caller: CallerContext
    ) -> Order:
        order = await uow.repository(Order).get_by_id(order_id, caller)
        if order is None:
            raise EntityNotFoundException("Order", order_id)
        return order

    async def _release_deliverer(self, uow: UnitOfWork, order: Order) -> None:
        # the customer closing an order cannot see the deliverer's profile
        system = CallerContext.system()
        deliverers = uow.repository(Deliverer)
        deliverer = await deliverers.get_by_id(order.deliverer_id, system)
        if deliverer is None:
            logger.warning(
                f"Order {order.id}: deliverer {order.deliverer_id} no longer exists"
            )
            return

        if order.status == OrderStatus.DELIVERED:
            deliverer.delivery_count += 1
        deliverer.status = DelivererStatus.AVAILABLE
        await deliverers.update(deliverer, system)


def _require_id(value: Any, entity_name: str) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ArgumentException(f"{entity_name} ID must be greater than zero")


def _status(value: Any) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(value)
    except ValueError:
        raise ArgumentException(f"Unknown order status: {value!r}") from None


def _price(value: Any) -> Decimal:
    return _decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError):
        raise ArgumentException(f"Invalid amount: {value!r}") from None
