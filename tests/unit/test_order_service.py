"""
Unit tests for OrderService.
"""

from decimal import Decimal

import pytest

from orderly.data import CallerContext, Role
from orderly.exceptions import (
    ArgumentException,
    EntityNotFoundException,
    InvalidStatusTransitionException,
)
from orderly.orders import (
    Deliverer,
    DelivererStatus,
    Order,
    OrderItem,
    OrderService,
    OrderStatus,
    calculate_total,
)


async def confirmed_order(order_service, caller, new_order):
    order = await order_service.place_order(new_order(), caller)
    return await order_service.update_order_status(order.id, OrderStatus.CONFIRMED, caller)


async def add_deliverer(uow_factory, admin, **fields):
    deliverer = Deliverer(user_id=fields.pop("user_id", 40), name="Sam", **fields)
    async with uow_factory() as uow:
        await uow.repository(Deliverer).add(deliverer, admin)
        await uow.commit()
    return deliverer


class TestConstruction:
    def test_requires_factory(self):
        with pytest.raises(ArgumentException):
            OrderService(None)

    def test_from_config(self, uow_factory):
        class Config:
            def get_bool(self, key, default):
                return {"orders.strict_transitions": False}.get(key, default)

            def get_int(self, key, default):
                return {"orders.page_size": 5}.get(key, default)

        service = OrderService.from_config(uow_factory, Config())

        assert service.strict_transitions is False
        assert service.page_size == 5


class TestPlaceOrder:
    """Tests for OrderService.place_order."""

    @pytest.mark.asyncio
    async def test_returns_pending_order_with_id(self, order_service, alice, new_order):
        order = await order_service.place_order(
            new_order(items=((3, 2, "9.99"), (5, 1, "4.50"))), alice
        )

        assert order.id is not None and order.id > 0
        assert order.status == OrderStatus.PENDING
        assert len(order.order_items) == 2
        assert order.created_at is not None

    @pytest.mark.asyncio
    async def test_total_from_items(self, order_service, alice):
        order = Order(
            user_id=7,
            order_items=[OrderItem(product_id=3, quantity=2, unit_price=Decimal("9.99"))],
        )

        placed = await order_service.place_order(order, alice)
        loaded = await order_service.get_order(placed.id, alice)

        assert placed.total_amount == Decimal("19.98")
        assert loaded.total_amount == Decimal("19.98")

    @pytest.mark.asyncio
    async def test_float_prices_are_normalised(self, order_service, alice):
        order = Order(
            user_id=7,
            order_items=[OrderItem(product_id=1, quantity=3, unit_price=0.1)],
        )

        placed = await order_service.place_order(order, alice)

        assert placed.total_amount == Decimal("0.30")
        assert placed.order_items[0].unit_price == Decimal("0.1")

    @pytest.mark.asyncio
    async def test_status_forced_to_pending(self, order_service, alice, new_order):
        order = await order_service.place_order(new_order(status=OrderStatus.DELIVERED), alice)
        assert order.status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_none_rejected(self, order_service, alice):
        with pytest.raises(ArgumentException):
            await order_service.place_order(None, alice)

    @pytest.mark.asyncio
    async def test_order_with_id_rejected(self, order_service, alice, new_order):
        with pytest.raises(ArgumentException, match="New orders should not have an ID assigned"):
            await order_service.place_order(new_order(id=1), alice)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("user_id", [0, -3])
    async def test_user_id_required(self, order_service, alice, new_order, user_id):
        with pytest.raises(ArgumentException, match="UserId is required"):
            await order_service.place_order(new_order(user_id=user_id), alice)

    @pytest.mark.asyncio
    async def test_items_required(self, order_service, alice):
        with pytest.raises(ArgumentException, match="at least one item"):
            await order_service.place_order(Order(user_id=7), alice)

    @pytest.mark.asyncio
    async def test_bad_items_rejected(self, order_service, alice, new_order):
        with pytest.raises(ArgumentException, match="quantity"):
            await order_service.place_order(new_order(items=((1, 0, "1.00"),)), alice)
        with pytest.raises(ArgumentException, match="unit price"):
            await order_service.place_order(new_order(items=((1, 1, "-1.00"),)), alice)

    @pytest.mark.asyncio
    async def test_other_users_order_rejected(self, order_service, bob, new_order):
        with pytest.raises(ArgumentException):
            await order_service.place_order(new_order(user_id=7), bob)

    @pytest.mark.asyncio
    async def test_rejected_order_left_untouched(self, order_service, bob):
        order = Order(
            user_id=7,
            status=OrderStatus.DELIVERED,
            order_items=[OrderItem(product_id=1, quantity=3, unit_price=0.335)],
        )

        with pytest.raises(ArgumentException):
            await order_service.place_order(order, bob)

        assert order.id is None
        assert order.status == OrderStatus.DELIVERED
        assert order.total_amount == Decimal("0.00")
        assert order.order_items[0].unit_price == 0.335

    @pytest.mark.asyncio
    async def test_sub_cent_prices_rounded_before_total(self, order_service, alice):
        order = Order(
            user_id=7,
            order_items=[
                OrderItem(product_id=1, quantity=3, unit_price=Decimal("0.335")),
                OrderItem(product_id=2, quantity=7, unit_price=Decimal("1.004")),
            ],
        )

        placed = await order_service.place_order(order, alice)
        loaded = await order_service.get_order(placed.id, alice)

        assert placed.order_items[0].unit_price == Decimal("0.34")
        assert placed.total_amount == Decimal("8.02")
        assert loaded.total_amount == sum(
            (item.unit_price * item.quantity for item in loaded.order_items), Decimal("0")
        )


class TestGetOrder:
    """Tests for get_order and get_all_orders."""

    @pytest.mark.asyncio
    async def test_get_existing(self, order_service, alice, new_order):
        placed = await order_service.place_order(new_order(), alice)
        loaded = await order_service.get_order(placed.id, alice)

        assert loaded.id == placed.id
        assert loaded.order_items[0].product_id == 3

    @pytest.mark.asyncio
    async def test_missing_order(self, order_service, alice):
        with pytest.raises(EntityNotFoundException, match="Order with ID 999 not found"):
            await order_service.get_order(999, alice)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("order_id", [0, -1])
    async def test_invalid_id(self, order_service, alice, order_id):
        with pytest.raises(ArgumentException, match="Order ID must be greater than zero"):
            await order_service.get_order(order_id, alice)

    @pytest.mark.asyncio
    async def test_other_users_order_not_found(self, order_service, alice, bob, new_order):
        placed = await order_service.place_order(new_order(), alice)

        with pytest.raises(EntityNotFoundException):
            await order_service.get_order(placed.id, bob)

    @pytest.mark.asyncio
    async def test_get_all_empty(self, order_service, alice):
        assert await order_service.get_all_orders(alice) == []

    @pytest.mark.asyncio
    async def test_get_all_scoped(self, order_service, alice, bob, admin, new_order):
        await order_service.place_order(new_order(user_id=7), alice)
        await order_service.place_order(new_order(user_id=7), alice)
        await order_service.place_order(new_order(user_id=8), bob)

        assert len(await order_service.get_all_orders(alice)) == 2
        assert len(await order_service.get_all_orders(bob)) == 1
        assert len(await order_service.get_all_orders(admin)) == 3

    @pytest.mark.asyncio
    async def test_orders_page(self, order_service, alice, new_order):
        for _ in range(3):
            await order_service.place_order(new_order(), alice)
        first = (await order_service.get_all_orders(alice))[0]
        await order_service.update_order_status(first.id, OrderStatus.CONFIRMED, alice)

        page = await order_service.get_orders_page(alice, page=0, size=2)
        pending = await order_service.get_orders_page(alice, status=OrderStatus.PENDING)
        confirmed = await order_service.get_orders_page(alice, status="Confirmed")

        assert len(page.items) == 2
        assert page.total == 3
        assert pending.total == 2
        assert [o.id for o in confirmed.items] == [first.id]

    @pytest.mark.asyncio
    async def test_orders_page_unknown_status(self, order_service, alice):
        with pytest.raises(ArgumentException, match="Unknown order status"):
            await order_service.get_orders_page(alice, status="Lost")


class TestUpdateOrderStatus:
    """Tests for update_order_status."""

    @pytest.mark.asyncio
    async def test_confirm_stamps_timestamp(self, order_service, alice, new_order):
        placed = await order_service.place_order(new_order(), alice)

        updated = await order_service.update_order_status(
            placed.id, OrderStatus.CONFIRMED, alice
        )

        assert updated.status == OrderStatus.CONFIRMED
        assert updated.confirmed_at is not None
        assert updated.confirmed_at > placed.created_at
        assert updated.updated_at > placed.updated_at

        stored = await order_service.get_order(placed.id, alice)
        assert stored.status == OrderStatus.CONFIRMED
        assert stored.confirmed_at == updated.confirmed_at

    @pytest.mark.asyncio
    async def test_full_lifecycle_milestones(self, order_service, admin, alice, new_order):
        placed = await order_service.place_order(new_order(), alice)

        for status in (
            OrderStatus.CONFIRMED,
            OrderStatus.IN_PROGRESS,
            OrderStatus.ON_THE_WAY,
            OrderStatus.DELIVERED,
        ):
            order = await order_service.update_order_status(placed.id, status, admin)

        assert order.status == OrderStatus.DELIVERED
        assert order.confirmed_at < order.delivered_at
        assert order.in_progress_at is not None
        assert order.on_the_way_at is not None
        assert order.cancelled_at is None

    @pytest.mark.asyncio
    async def test_illegal_transition_rejected(self, order_service, alice, new_order):
        placed = await order_service.place_order(new_order(), alice)

        with pytest.raises(InvalidStatusTransitionException):
            await order_service.update_order_status(placed.id, OrderStatus.DELIVERED, alice)

        stored = await order_service.get_order(placed.id, alice)
        assert stored.status == OrderStatus.PENDING
        assert stored.delivered_at is None

    @pytest.mark.asyncio
    async def test_permissive_mode_allows_any_transition(self, uow_factory, alice, new_order):
        service = OrderService(uow_factory, strict_transitions=False)
        placed = await service.place_order(new_order(), alice)

        updated = await service.update_order_status(placed.id, OrderStatus.DELIVERED, alice)

        assert updated.status == OrderStatus.DELIVERED
        assert updated.delivered_at is not None

    @pytest.mark.asyncio
    async def test_same_status_is_noop(self, order_service, alice, new_order):
        placed = await order_service.place_order(new_order(), alice)

        same = await order_service.update_order_status(placed.id, OrderStatus.PENDING, alice)

        assert same.updated_at == placed.updated_at

    @pytest.mark.asyncio
    async def test_status_by_value(self, order_service, alice, new_order):
        placed = await order_service.place_order(new_order(), alice)
        updated = await order_service.update_order_status(placed.id, "Confirmed", alice)

        assert updated.status is OrderStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_invalid_id(self, order_service, alice):
        with pytest.raises(ArgumentException, match="Order ID must be greater than zero"):
            await order_service.update_order_status(0, OrderStatus.CONFIRMED, alice)

    @pytest.mark.asyncio
    async def test_missing_order(self, order_service, alice):
        with pytest.raises(EntityNotFoundException, match="Order with ID 999 not found"):
            await order_service.update_order_status(999, OrderStatus.CONFIRMED, alice)

    @pytest.mark.asyncio
    async def test_cancel(self, order_service, alice, new_order):
        placed = await order_service.place_order(new_order(), alice)

        cancelled = await order_service.cancel_order(placed.id, alice)

        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.cancelled_at is not None

        with pytest.raises(InvalidStatusTransitionException):
            await order_service.update_order_status(placed.id, OrderStatus.CONFIRMED, alice)


class TestDeliverers:
    """Tests for deliverer assignment and release."""

    @pytest.mark.asyncio
    async def test_assign_moves_to_in_progress(
        self, order_service, uow_factory, alice, admin, new_order
    ):
        order = await confirmed_order(order_service, alice, new_order)
        deliverer = await add_deliverer(uow_factory, admin)

        assigned = await order_service.assign_deliverer(order.id, deliverer.id, admin)

        assert assigned.status == OrderStatus.IN_PROGRESS
        assert assigned.deliverer_id == deliverer.id
        assert assigned.in_progress_at is not None

        async with uow_factory() as uow:
            stored = await uow.repository(Deliverer).get_by_id(deliverer.id, admin)
        assert stored.status == DelivererStatus.DELIVERING

    @pytest.mark.asyncio
    async def test_assigned_deliverer_sees_order(
        self, order_service, uow_factory, alice, admin, new_order
    ):
        order = await confirmed_order(order_service, alice, new_order)
        deliverer = await add_deliverer(uow_factory, admin, user_id=41)
        await order_service.assign_deliverer(order.id, deliverer.id, admin)

        courier = CallerContext(user_id=41, role=Role.DELIVERER, deliverer_id=deliverer.id)
        stranger = CallerContext(user_id=42, role=Role.DELIVERER, deliverer_id=deliverer.id + 1)

        assert (await order_service.get_order(order.id, courier)).id == order.id
        assert await order_service.get_all_orders(stranger) == []

        on_the_way = await order_service.update_order_status(
            order.id, OrderStatus.ON_THE_WAY, courier
        )
        assert on_the_way.status == OrderStatus.ON_THE_WAY

    @pytest.mark.asyncio
    async def test_assign_requires_confirmed_order(
        self, order_service, uow_factory, alice, admin, new_order
    ):
        placed = await order_service.place_order(new_order(), alice)
        deliverer = await add_deliverer(uow_factory, admin)

        with pytest.raises(InvalidStatusTransitionException):
            await order_service.assign_deliverer(placed.id, deliverer.id, admin)

    @pytest.mark.asyncio
    async def test_offline_deliverer_rejected(
        self, order_service, uow_factory, alice, admin, new_order
    ):
        order = await confirmed_order(order_service, alice, new_order)
        deliverer = await add_deliverer(uow_factory, admin, status=DelivererStatus.OFFLINE)

        with pytest.raises(ArgumentException, match="offline"):
            await order_service.assign_deliverer(order.id, deliverer.id, admin)

    @pytest.mark.asyncio
    async def test_unknown_deliverer(self, order_service, alice, admin, new_order):
        order = await confirmed_order(order_service, alice, new_order)

        with pytest.raises(EntityNotFoundException, match="Deliverer with ID 77 not found"):
            await order_service.assign_deliverer(order.id, 77, admin)

    @pytest.mark.asyncio
    async def test_delivery_releases_deliverer(
        self, order_service, uow_factory, alice, admin, new_order
    ):
        order = await confirmed_order(order_service, alice, new_order)
        deliverer = await add_deliverer(uow_factory, admin)
        await order_service.assign_deliverer(order.id, deliverer.id, admin)
        await order_service.update_order_status(order.id, OrderStatus.ON_THE_WAY, admin)

        # the customer marks it delivered
        await order_service.update_order_status(order.id, OrderStatus.DELIVERED, alice)

        async with uow_factory() as uow:
            stored = await uow.repository(Deliverer).get_by_id(deliverer.id, admin)
        assert stored.status == DelivererStatus.AVAILABLE
        assert stored.delivery_count == 1


class TestDeleteOrder:
    @pytest.mark.asyncio
    async def test_delete_hides_order(self, order_service, alice, new_order):
        placed = await order_service.place_order(new_order(), alice)

        await order_service.delete_order(placed.id, alice)

        with pytest.raises(EntityNotFoundException):
            await order_service.get_order(placed.id, alice)
        assert await order_service.get_all_orders(alice) == []

    @pytest.mark.asyncio
    async def test_delete_missing(self, order_service, alice):
        with pytest.raises(EntityNotFoundException):
            await order_service.delete_order(999, alice)


class TestCalculateTotal:
    def test_rounds_to_cents(self):
        items = [
            OrderItem(quantity=3, unit_price=Decimal("0.335")),
            OrderItem(quantity=1, unit_price=Decimal("1.00")),
        ]
        assert calculate_total(items) == Decimal("2.01")

    def test_empty(self):
        assert calculate_total([]) == Decimal("0.00")
