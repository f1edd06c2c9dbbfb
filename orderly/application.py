"""
Process-level wiring.

OrderingContext builds the shared collaborators once per process: the store
adapter, resilience policy, entity cache, ownership filter and metrics, and
hands out an OrderService backed by a UnitOfWorkFactory over them.
"""

from typing import Optional

from orderly.config.properties import (
    ConfigurationProperties,
    get_config,
    log_config_sources,
)
from orderly.core.logging import configure_logging_from_config, get_logger
from orderly.core.metrics import MetricsStorage
from orderly.data import initialize_database
from orderly.data.adapters.base import DatabaseAdapter
from orderly.data.cache import Cache, MemoryCache
from orderly.data.filters import OwnerFilter, OwnershipFilter
from orderly.data.resilience import ResiliencePolicy
from orderly.data.unit_of_work import UnitOfWorkFactory
from orderly.orders.service import OrderService

logger = get_logger("application")


class OrderingContext:
    """
    Owns the process-wide collaborators.

    Usage:
        async with OrderingContext() as context:
            order = await context.orders.place_order(order, caller)
    """

    def __init__(
        self,
        config: Optional[ConfigurationProperties] = None,
        ownership_filter: Optional[OwnershipFilter] = None,
        configure_logging: bool = False,
    ):
        self.config = config or get_config()
        self.ownership_filter = ownership_filter or OwnerFilter()
        self.configure_logging = configure_logging
        self.metrics = MetricsStorage()
        self.adapter: Optional[DatabaseAdapter] = None
        self.cache: Optional[Cache] = None
        self.uow_factory: Optional[UnitOfWorkFactory] = None
        self.orders: Optional[OrderService] = None

    async def __aenter__(self) -> "OrderingContext":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    @property
    def started(self) -> bool:
        return self.adapter is not None

    async def start(self) -> None:
        if self.started:
            return

        if self.configure_logging:
            configure_logging_from_config(self.config)
        log_config_sources(self.config)

        policy = ResiliencePolicy.from_config(self.config, metrics=self.metrics)
        if self.config.get_bool("cache.enabled", True):
            self.cache = MemoryCache.from_config(self.config, metrics=self.metrics)
        else:
            logger.info("Entity cache disabled")

        self.adapter = await initialize_database(self.config)
        self.uow_factory = UnitOfWorkFactory(
            self.adapter,
            self.ownership_filter,
            policy,
            cache=self.cache,
            metrics=self.metrics,
        )
        self.orders = OrderService.from_config(self.uow_factory, self.config)

    async def stop(self) -> None:
        if self.adapter is not None:
            await self.adapter.disconnect()
        if self.cache is not None:
            await self.cache.clear()
        self.adapter = None
        self.uow_factory = None
        self.orders = None
