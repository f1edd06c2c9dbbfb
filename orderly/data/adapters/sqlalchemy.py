from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    make_url,
)
from sqlalchemy import Column as SAColumn
from sqlalchemy.exc import DBAPIError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool, StaticPool

from orderly.core.logging import get_logger
from orderly.data.adapters.base import DatabaseAdapter
from orderly.data.entity import (
    BaseEntity,
    EntityMetadata,
    FieldMetadata,
    get_all_entities,
    get_entity_metadata,
    owning_relation,
)
from orderly.exceptions import StoreConnectionException

logger = get_logger("data.adapters.sqlalchemy")

ENUM_LENGTH = 32
DEFAULT_STRING_LENGTH = 255


class SQLAlchemyAdapter(DatabaseAdapter):
    """Async SQLAlchemy Core adapter. Tables are built from entity metadata."""

    def __init__(self):
        self.engine: Optional[AsyncEngine] = None
        self.metadata = MetaData()
        self._tables: Dict[type, Table] = {}

    async def connect(
        self,
        url: str,
        echo: bool = False,
        pool_size: Optional[int] = None,
        max_overflow: Optional[int] = None,
        pool_timeout: Optional[int] = None,
        pool_recycle: Optional[int] = None,
        enable_pooling: bool = True,
    ) -> None:
        parsed = make_url(url)
        engine_kwargs: Dict[str, Any] = {"echo": echo}

        if parsed.get_backend_name() == "sqlite":
            # :memory: databases live on one connection; share it
            if parsed.database in (None, "", ":memory:"):
                engine_kwargs["poolclass"] = StaticPool
            else:
                engine_kwargs["poolclass"] = NullPool
        elif not enable_pooling:
            engine_kwargs["poolclass"] = NullPool
        else:
            engine_kwargs["poolclass"] = AsyncAdaptedQueuePool
            pool_options = {
                "pool_size": pool_size,
                "max_overflow": max_overflow,
                "pool_timeout": pool_timeout,
                "pool_recycle": pool_recycle,
            }
            engine_kwargs.update({k: v for k, v in pool_options.items() if v is not None})

        self.engine = create_async_engine(url, **engine_kwargs)
        logger.info(
            f"Connected to {parsed.render_as_string(hide_password=True)} "
            f"({engine_kwargs['poolclass'].__name__})"
        )

    async def disconnect(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            logger.info("Disconnected from database")

    def get_table(self, entity_class: type) -> Table:
        meta = get_entity_metadata(entity_class)
        table = self._tables.get(meta.entity_class)
        if table is None:
            table = self._build_table(meta)
            self._tables[meta.entity_class] = table
            # child rows are scoped through their parent, which must share the metadata
            owner = owning_relation(meta.table_name)
            if owner is not None:
                self.get_table(owner[0].entity_class)
        return table

    async def create_table_if_not_exists(self, entity_meta: EntityMetadata) -> None:
        tables = [self.get_table(entity_meta.entity_class)]
        tables.extend(self.get_table(r.child) for r in entity_meta.relations.values())

        async with self.transaction() as conn:
            for table in tables:
                await conn.run_sync(table.create, checkfirst=True)

    async def create_all(self) -> None:
        for entity_meta in get_all_entities().values():
            await self.create_table_if_not_exists(entity_meta)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[AsyncConnection]:
        conn = await self._acquire()
        try:
            yield conn
        finally:
            await conn.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        conn = await self._acquire()
        try:
            async with conn.begin():
                yield conn
        finally:
            await conn.close()

    async def _acquire(self) -> AsyncConnection:
        if self.engine is None:
            raise RuntimeError("Database adapter is not connected")
        try:
            return await self.engine.connect()
        except (OSError, DBAPIError, PoolTimeoutError) as e:
            raise StoreConnectionException(
                f"Could not acquire a database connection: {e}"
            ) from e

    def to_row(self, entity_meta: EntityMetadata, entity: BaseEntity) -> Dict[str, Any]:
        row = {}
        for name, field_meta in entity_meta.fields.items():
            if field_meta.primary_key:
                continue
            value = getattr(entity, name)
            if field_meta.enum_type is not None and value is not None:
                value = field_meta.enum_type(value).value
            row[name] = value
        return row

    def from_row(self, entity_meta: EntityMetadata, row: Any) -> BaseEntity:
        mapping = row._mapping
        values = {}
        for name, field_meta in entity_meta.fields.items():
            value = mapping[name]
            if value is not None:
                value = _coerce(field_meta, value)
            values[name] = value
        return entity_meta.entity_class(**values)

    def _build_table(self, meta: EntityMetadata) -> Table:
        columns = []
        for field_meta in meta.fields.values():
            if field_meta.primary_key:
                columns.append(
                    SAColumn(field_meta.name, Integer, primary_key=True, autoincrement=True)
                )
                continue
            columns.append(
                SAColumn(
                    field_meta.name,
                    _column_type(field_meta),
                    nullable=field_meta.nullable,
                    unique=field_meta.unique,
                    index=field_meta.index,
                )
            )
        return Table(meta.table_name, self.metadata, *columns)


def _column_type(field_meta: FieldMetadata):
    python_type = field_meta.python_type
    if field_meta.enum_type is not None:
        return String(ENUM_LENGTH)
    if python_type is bool:
        return Boolean()
    if python_type is int:
        return Integer()
    if python_type is float:
        return Float()
    if python_type is Decimal:
        return Numeric(12, 2)
    if python_type is datetime:
        return DateTime(timezone=True)
    if python_type is date:
        return Date()
    return String(field_meta.length or DEFAULT_STRING_LENGTH)


def _coerce(field_meta: FieldMetadata, value: Any) -> Any:
    if field_meta.enum_type is not None:
        return field_meta.enum_type(value)
    if field_meta.python_type is datetime and value.tzinfo is None:
        # SQLite drops the offset; everything is stored as UTC
        return value.replace(tzinfo=timezone.utc)
    if field_meta.python_type is Decimal and not isinstance(value, Decimal):
        return Decimal(str(value))
    return value
