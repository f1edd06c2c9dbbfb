from typing import Optional

from orderly.config.properties import ConfigurationProperties, get_config
from orderly.core.logging import get_logger
from orderly.data.adapters.base import DatabaseAdapter
from orderly.data.adapters.sqlalchemy import SQLAlchemyAdapter
from orderly.data.cache import Cache, MemoryCache, entity_key, entity_tag
from orderly.data.entity import (
    BaseEntity,
    Column,
    Entity,
    EntityMetadata,
    FieldMetadata,
    HasMany,
    get_all_entities,
    get_entity_metadata,
    is_entity,
)
from orderly.data.filters import (
    CallerContext,
    OwnerFilter,
    OwnershipFilter,
    Role,
    UnrestrictedFilter,
)
from orderly.data.repository import Page, Repository
from orderly.data.resilience import ResiliencePolicy, is_transient
from orderly.data.unit_of_work import UnitOfWork, UnitOfWorkFactory
from orderly.version import get_version

logger = get_logger("data")


async def initialize_database(
    config: Optional[ConfigurationProperties] = None,
) -> SQLAlchemyAdapter:
    """
    Connect a database adapter and create tables for registered entities.
    Reads the database.* keys from configuration.
    """

    config = config or get_config()

    database_url = config.get("database.url")
    if not database_url:
        raise ValueError("database.url is not configured")

    adapter = SQLAlchemyAdapter()

    # Connect with pool configuration
    await adapter.connect(
        database_url,
        echo=config.get_bool("database.echo"),
        pool_size=config.get("database.pool.size"),
        max_overflow=config.get("database.pool.max_overflow"),
        pool_timeout=config.get("database.pool.timeout"),
        pool_recycle=config.get("database.pool.recycle"),
        enable_pooling=config.get_bool("database.pool.enabled", True),
    )

    # Create tables for all registered entities
    if config.get_bool("database.create_tables", True):
        entities = get_all_entities()
        for entity_meta in entities.values():
            await adapter.create_table_if_not_exists(entity_meta)
        logger.debug(f"Ensured tables for {len(entities)} entities")

    logger.info(f"orderly {get_version()} data layer ready")
    return adapter


__all__ = [
    # Entity
    "BaseEntity",
    "Entity",
    "Column",
    "HasMany",
    "EntityMetadata",
    "FieldMetadata",
    "get_entity_metadata",
    "get_all_entities",
    "is_entity",
    # Ownership
    "CallerContext",
    "Role",
    "OwnershipFilter",
    "OwnerFilter",
    "UnrestrictedFilter",
    # Policies
    "ResiliencePolicy",
    "is_transient",
    "Cache",
    "MemoryCache",
    "entity_key",
    "entity_tag",
    # Repository
    "Repository",
    "Page",
    "UnitOfWork",
    "UnitOfWorkFactory",
    # Adapters
    "DatabaseAdapter",
    "SQLAlchemyAdapter",
    # Initialization
    "initialize_database",
]
