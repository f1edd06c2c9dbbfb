from orderly.application import OrderingContext
from orderly.config import get_config, reload_config
from orderly.core.logging import configure_logging, get_logger
from orderly.data import (
    BaseEntity,
    CallerContext,
    Column,
    Entity,
    HasMany,
    MemoryCache,
    OwnerFilter,
    Page,
    Repository,
    ResiliencePolicy,
    Role,
    SQLAlchemyAdapter,
    UnitOfWork,
    UnitOfWorkFactory,
    initialize_database,
)
from orderly.exceptions import (
    ArgumentException,
    EntityNotFoundException,
    InvalidStatusTransitionException,
    OrderlyException,
    StoreConnectionException,
    StoreUnavailableException,
    UnitOfWorkClosedException,
)
from orderly.orders import (
    Deliverer,
    DelivererStatus,
    Order,
    OrderItem,
    OrderService,
    OrderStatus,
    Product,
)
from orderly.version import get_version

__version__ = get_version()

__all__ = [
    # Application
    "OrderingContext",
    "get_config",
    "reload_config",
    "configure_logging",
    "get_logger",
    # Data
    "BaseEntity",
    "Entity",
    "Column",
    "HasMany",
    "CallerContext",
    "Role",
    "OwnerFilter",
    "ResiliencePolicy",
    "MemoryCache",
    "Repository",
    "Page",
    "UnitOfWork",
    "UnitOfWorkFactory",
    "SQLAlchemyAdapter",
    "initialize_database",
    # Orders
    "Order",
    "OrderItem",
    "OrderStatus",
    "Deliverer",
    "DelivererStatus",
    "Product",
    "OrderService",
    # Exceptions
    "OrderlyException",
    "ArgumentException",
    "EntityNotFoundException",
    "InvalidStatusTransitionException",
    "StoreConnectionException",
    "StoreUnavailableException",
    "UnitOfWorkClosedException",
]
