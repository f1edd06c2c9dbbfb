from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from orderly.data.entity import BaseEntity, Column, Entity, HasMany


class OrderStatus(Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    IN_PROGRESS = "InProgress"
    ON_THE_WAY = "OnTheWay"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class DelivererStatus(Enum):
    AVAILABLE = "Available"
    DELIVERING = "Delivering"
    OFFLINE = "Offline"


@Entity()
@dataclass
class Product(BaseEntity):
    """Catalogue entry. Not owned by any user."""

    name: str = ""
    description: str = Column("", length=1000)
    price: Decimal = Decimal("0.00")
    category: str = Column("", index=True, length=100)
    is_available: bool = True
    stock_quantity: int = 0


@Entity()
@dataclass
class OrderItem(BaseEntity):
    """Order line. ``unit_price`` is the price at the time of ordering."""

    order_id: int = Column(0, index=True, immutable=True)
    product_id: int = 0
    quantity: int = 0
    unit_price: Decimal = Decimal("0.00")


@Entity()
@dataclass
class Order(BaseEntity):
    """Customer order with its line items."""

    user_id: int = Column(0, index=True, immutable=True)
    delivery_address: str = Column("", length=500)
    current_location: Optional[str] = Column(length=500)
    contact_phone: Optional[str] = Column(length=32)
    special_instructions: Optional[str] = Column(length=1000)
    total_amount: Decimal = Decimal("0.00")
    status: OrderStatus = Column(OrderStatus.PENDING, index=True)
    deliverer_id: Optional[int] = Column(index=True)
    confirmed_at: Optional[datetime] = None
    in_progress_at: Optional[datetime] = None
    on_the_way_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    order_items: List[OrderItem] = HasMany(OrderItem, "order_id")


@Entity()
@dataclass
class Deliverer(BaseEntity):
    """Delivery person profile, one per user account."""

    user_id: int = Column(0, unique=True, immutable=True)
    name: str = ""
    email: str = ""
    phone_number: Optional[str] = Column(length=32)
    location: Optional[str] = Column(length=500)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    status: DelivererStatus = DelivererStatus.AVAILABLE
    rating: float = 0.0
    delivery_count: int = 0
    max_concurrent_deliveries: int = 1
