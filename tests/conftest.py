"""
Shared fixtures: an in-memory SQLite store behind the real adapter, plus
deterministic retry and cache collaborators.
"""

from decimal import Decimal

import pytest
import pytest_asyncio

from orderly.data import (
    CallerContext,
    MemoryCache,
    OwnerFilter,
    ResiliencePolicy,
    Role,
    SQLAlchemyAdapter,
    UnitOfWorkFactory,
)
from orderly.orders import Order, OrderItem, OrderService


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest_asyncio.fixture
async def adapter():
    """In-memory SQLite with tables for every registered entity."""
    adapter = SQLAlchemyAdapter()
    await adapter.connect("sqlite+aiosqlite:///:memory:")
    await adapter.create_all()

    yield adapter

    await adapter.disconnect()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def policy(sleep):
    return ResiliencePolicy(max_attempts=3, base_delay=0.01, sleep=sleep)


@pytest.fixture
def cache():
    return MemoryCache(ttl=60)


@pytest.fixture
def uow_factory(adapter, policy, cache):
    return UnitOfWorkFactory(adapter, OwnerFilter(), policy, cache=cache)


@pytest.fixture
def order_service(uow_factory):
    return OrderService(uow_factory)


@pytest.fixture
def alice():
    return CallerContext(user_id=7)


@pytest.fixture
def bob():
    return CallerContext(user_id=8)


@pytest.fixture
def admin():
    return CallerContext(user_id=1, role=Role.ADMIN)


def make_order(user_id=7, items=((3, 2, "9.99"),), **fields):
    """Order with (product_id, quantity, unit_price) items."""
    return Order(
        user_id=user_id,
        delivery_address=fields.pop("delivery_address", "1 Main Street"),
        order_items=[
            OrderItem(product_id=product_id, quantity=quantity, unit_price=Decimal(price))
            for product_id, quantity, price in items
        ],
        **fields,
    )


@pytest.fixture
def new_order():
    return make_order
