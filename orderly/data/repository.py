"""
Generic repository over one entity type.

Reads hit the store immediately, scoped by the ownership filter and wrapped in
the resilience policy. Writes are staged on the owning unit of work and reach
the store only when it commits. ``get_by_id`` results are cached per caller
scope when a cache is configured.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Generic, List, Optional, TypeVar

from sqlalchemy import Select, Table, false, func, select

from orderly.core.logging import get_logger
from orderly.data.cache import entity_key, entity_tag
from orderly.data.entity import (
    BaseEntity,
    as_utc,
    children_of,
    get_entity_metadata,
    next_timestamp,
    owning_relation,
    utcnow,
)
from orderly.data.filters import CallerContext
from orderly.exceptions import ArgumentException, EntityNotFoundException

if TYPE_CHECKING:
    from orderly.data.unit_of_work import UnitOfWork

logger = get_logger("data.repository")

T = TypeVar("T", bound=BaseEntity)
R = TypeVar("R")

INSERT = "insert"
UPDATE = "update"
SOFT_DELETE = "soft_delete"


@dataclass
class Change:
    """A write staged on a unit of work."""

    kind: str
    entity_class: type
    entity: BaseEntity
    caller: CallerContext


@dataclass
class Page(Generic[T]):
    items: List[T]
    page: int
    size: int
    total: int

    @property
    def pages(self) -> int:
        return (self.total + self.size - 1) // self.size if self.size else 0


class Repository(Generic[T]):
    """
    CRUD and soft delete for one entity type, bound to a unit of work.

    Obtain instances through ``UnitOfWork.repository(EntityClass)``.
    """

    def __init__(self, entity_class: type, uow: "UnitOfWork"):
        self.entity_class = entity_class
        self.meta = get_entity_metadata(entity_class)
        self._uow = uow
        self._adapter = uow.adapter
        self._filter = uow.ownership_filter
        self._policy = uow.resilience_policy
        self._cache = uow.cache
        self._metrics = uow.metrics
        self.table: Table = self._adapter.get_table(entity_class)

    async def get_by_id(
        self, entity_id: int, caller: CallerContext, include_deleted: bool = False
    ) -> Optional[T]:
        """
        Find an entity visible to ``caller``.

        Returns None when the row is absent, soft-deleted (unless
        ``include_deleted``) or outside the caller's scope.
        """
        self._uow._ensure_open()
        self._require_id(entity_id)

        if self._cache is None or include_deleted:
            return await self._run(
                "get_by_id", lambda: self._load_one(entity_id, caller, include_deleted)
            )

        key = entity_key(self.table.name, entity_id, self._filter.scope_key(caller))
        cached = await self._cache.get(key)
        if cached is not None:
            return cached

        tag = entity_tag(self.table.name, entity_id)
        versions = await self._cache.tag_versions([tag])
        entity = await self._run(
            "get_by_id", lambda: self._load_one(entity_id, caller, False)
        )
        if entity is not None:
            tags = [tag, *self._parent_tags(entity)]
            await self._cache.set(key, entity, tags=tags, versions=versions)
        return entity

    async def exists_by_id(self, entity_id: int, caller: CallerContext) -> bool:
        self._uow._ensure_open()
        self._require_id(entity_id)

        async def load():
            stmt = self._scoped(
                select(self.table.c.id).where(self.table.c.id == entity_id), caller, False
            )
            async with self._adapter.connection() as conn:
                return (await conn.execute(stmt)).first() is not None

        return await self._run("exists_by_id", load)

    async def find_all(
        self, caller: CallerContext, include_deleted: bool = False, **filters: Any
    ) -> List[T]:
        """All visible entities matching ``filters`` (field=value), ordered by id."""
        self._uow._ensure_open()
        clauses = self._filter_clauses(filters)

        async def load():
            stmt = self._scoped(select(self.table), caller, include_deleted, *clauses)
            stmt = stmt.order_by(self.table.c.id)
            async with self._adapter.connection() as conn:
                return await self._fetch(conn, stmt, include_deleted)

        return await self._run("find_all", load)

    async def find_page(
        self,
        caller: CallerContext,
        page: int = 0,
        size: int = 20,
        include_deleted: bool = False,
        **filters: Any,
    ) -> Page[T]:
        self._uow._ensure_open()
        if page < 0:
            raise ArgumentException("Page index must not be negative")
        if size <= 0:
            raise ArgumentException("Page size must be greater than zero")
        clauses = self._filter_clauses(filters)

        async def load():
            stmt = self._scoped(select(self.table), caller, include_deleted, *clauses)
            stmt = stmt.order_by(self.table.c.id).offset(page * size).limit(size)
            count_stmt = self._count_statement(caller, include_deleted, clauses)
            async with self._adapter.connection() as conn:
                total = (await conn.execute(count_stmt)).scalar_one()
                items = await self._fetch(conn, stmt, include_deleted)
            return Page(items=items, page=page, size=size, total=total)

        return await self._run("find_page", load)

    async def count(
        self, caller: CallerContext, include_deleted: bool = False, **filters: Any
    ) -> int:
        self._uow._ensure_open()
        clauses = self._filter_clauses(filters)

        async def load():
            stmt = self._count_statement(caller, include_deleted, clauses)
            async with self._adapter.connection() as conn:
                return (await conn.execute(stmt)).scalar_one()

        return await self._run("count", load)

    async def add(self, entity: T, caller: CallerContext) -> T:
        """
        Stage a new entity and its owned children for insertion.

        The id is assigned when the unit of work commits. Nothing is written
        here; a child added on its own has its parent row checked for visibility.
        """
        self._uow._ensure_open()
        self._check_type(entity)
        if not entity.is_new:
            raise ArgumentException(
                f"New {self.meta.name} should not have an ID assigned (got {entity.id})"
            )
        children = children_of(entity)
        for child in children:
            if not child.is_new:
                raise ArgumentException(
                    f"New {type(child).__name__} should not have an ID assigned (got {child.id})"
                )
        if self._uow._is_staged(entity):
            raise ArgumentException(f"{self.meta.name} is already staged in this unit of work")
        if not self._filter.permits(entity, caller):
            raise ArgumentException(f"{self.meta.name} is outside the caller's scope")
        if not await self._parent_visible(entity, caller):
            raise ArgumentException(
                f"{self.meta.name} belongs to a parent outside the caller's scope"
            )

        now = utcnow()
        for obj in (entity, *children):
            obj.created_at = now
            obj.updated_at = now
            obj.is_deleted = False
            obj.deleted_at = None

        self._uow._stage(Change(INSERT, self.entity_class, entity, caller))
        return entity

    async def update(self, entity: T, caller: CallerContext) -> T:
        """
        Stage the entity's current field values as an update of its row.

        Raises:
            ArgumentException: entity has no id or its new values leave the caller's scope
            EntityNotFoundException: no visible, non-deleted row with that id
        """
        self._uow._ensure_open()
        self._check_type(entity)
        if entity.is_new:
            raise ArgumentException(f"{self.meta.name} must have an ID to be updated")
        if not self._filter.permits(entity, caller):
            raise ArgumentException(f"{self.meta.name} is outside the caller's scope")

        current = await self._run("update", lambda: self._resolve(entity.id, caller))
        if current is None or current.is_deleted:
            raise EntityNotFoundException(self.meta.name, entity.id)
        for name in self.meta.immutable_fields:
            if getattr(entity, name) != current._mapping[name]:
                raise ArgumentException(
                    f"{self.meta.name}.{name} cannot be changed after creation"
                )

        entity.updated_at = next_timestamp(_latest(entity.updated_at, current.updated_at))
        self._uow._stage(Change(UPDATE, self.entity_class, entity, caller))
        await self._invalidate(entity.id)
        return entity

    async def soft_delete(self, entity: T, caller: CallerContext) -> T:
        """
        Stage a soft delete of the entity and its owned children.

        Deleting an already deleted entity succeeds without a write and keeps
        the stored ``deleted_at``.
        """
        self._uow._ensure_open()
        self._check_type(entity)
        if entity.is_new:
            raise ArgumentException(f"{self.meta.name} must have an ID to be deleted")
        if self._uow._is_staged(entity, SOFT_DELETE):
            return entity

        current = await self._run("soft_delete", lambda: self._resolve(entity.id, caller))
        if current is None:
            raise EntityNotFoundException(self.meta.name, entity.id)

        if current.is_deleted:
            logger.debug(f"{self.meta.name} {entity.id} is already deleted")
            for obj in (entity, *children_of(entity)):
                obj.is_deleted = True
                obj.deleted_at = as_utc(current.deleted_at)
            return entity

        deleted_at = utcnow()
        updated_at = next_timestamp(_latest(entity.updated_at, current.updated_at))
        for obj in (entity, *children_of(entity)):
            obj.is_deleted = True
            obj.deleted_at = deleted_at
            obj.updated_at = updated_at

        self._uow._stage(Change(SOFT_DELETE, self.entity_class, entity, caller))
        await self._invalidate(entity.id)
        return entity

    def _check_type(self, entity: Any) -> None:
        if entity is None:
            raise ArgumentException(f"{self.meta.name} must not be None")
        if not isinstance(entity, self.entity_class):
            raise ArgumentException(
                f"Expected {self.meta.name}, got {type(entity).__name__}"
            )

    def _require_id(self, entity_id: Any) -> None:
        if not isinstance(entity_id, int) or isinstance(entity_id, bool) or entity_id <= 0:
            raise ArgumentException(
                f"{self.meta.name} ID must be a positive integer (got {entity_id!r})"
            )

    def _filter_clauses(self, filters: dict) -> list:
        clauses = []
        for name, value in filters.items():
            if name not in self.table.c:
                raise ArgumentException(f"{self.meta.name} has no field '{name}'")
            if isinstance(value, Enum):
                value = value.value
            column = self.table.c[name]
            clauses.append(column.is_(None) if value is None else column == value)
        return clauses

    def _scoped(
        self,
        stmt: Select,
        caller: CallerContext,
        include_deleted: bool,
        *clauses: Any,
    ) -> Select:
        table = self.table
        if not include_deleted:
            stmt = stmt.where(table.c.is_deleted == false())
        predicate = self._filter.predicate(table, caller)
        if predicate is not None:
            stmt = stmt.where(predicate)
        if clauses:
            stmt = stmt.where(*clauses)
        return stmt

    def _count_statement(self, caller, include_deleted, clauses) -> Select:
        stmt = select(func.count()).select_from(self.table)
        return self._scoped(stmt, caller, include_deleted, *clauses)

    async def _run(self, operation: str, fn: Callable[[], Awaitable[R]]) -> R:
        name = f"{self.meta.name}.{operation}"
        if self._metrics is None:
            return await self._policy.execute(fn, name=name)
        labels = {"entity": self.meta.name, "operation": operation}
        with self._metrics.timed("repository_operation", labels):
            return await self._policy.execute(fn, name=name)

    async def _load_one(
        self, entity_id: int, caller: CallerContext, include_deleted: bool
    ) -> Optional[T]:
        stmt = self._scoped(
            select(self.table).where(self.table.c.id == entity_id), caller, include_deleted
        )
        async with self._adapter.connection() as conn:
            entities = await self._fetch(conn, stmt, include_deleted)
        return entities[0] if entities else None

    async def _resolve(self, entity_id: int, caller: CallerContext):
        """Row state of a write target, or None when the caller cannot see it."""
        columns = self.table.c
        fixed = [columns[name] for name in self.meta.immutable_fields]
        stmt = self._scoped(
            select(
                columns.id, columns.updated_at, columns.is_deleted, columns.deleted_at, *fixed
            ).where(columns.id == entity_id),
            caller,
            True,
        )
        async with self._adapter.connection() as conn:
            return (await conn.execute(stmt)).first()

    async def _parent_visible(self, entity: T, caller: CallerContext) -> bool:
        """For a child entity added on its own, whether its parent row is visible."""
        owner = owning_relation(self.table.name)
        if owner is None:
            return True

        parent_meta, relation = owner
        parent = self._adapter.get_table(parent_meta.entity_class)
        stmt = select(parent.c.id).where(
            parent.c.id == getattr(entity, relation.foreign_key),
            parent.c.is_deleted == false(),
        )
        predicate = self._filter.predicate(parent, caller)
        if predicate is not None:
            stmt = stmt.where(predicate)

        async def load():
            async with self._adapter.connection() as conn:
                return (await conn.execute(stmt)).first() is not None

        return await self._run("add", load)

    def _parent_tags(self, entity: T) -> List[str]:
        # parent writes drop cached children
        owner = owning_relation(self.table.name)
        if owner is None:
            return []
        parent_meta, relation = owner
        return [entity_tag(parent_meta.table_name, getattr(entity, relation.foreign_key))]

    async def _fetch(self, conn, stmt: Select, include_deleted: bool) -> List[T]:
        rows = (await conn.execute(stmt)).all()
        entities = [self._adapter.from_row(self.meta, row) for row in rows]
        if entities and self.meta.relations:
            await self._load_children(conn, entities, include_deleted)
        return entities

    async def _load_children(self, conn, parents: List[T], include_deleted: bool) -> None:
        by_id = {parent.id: parent for parent in parents}
        for relation in self.meta.relations.values():
            child_meta = get_entity_metadata(relation.child)
            child_table = self._adapter.get_table(relation.child)
            fk = child_table.c[relation.foreign_key]

            stmt = select(child_table).where(fk.in_(list(by_id))).order_by(child_table.c.id)
            if not include_deleted:
                stmt = stmt.where(child_table.c.is_deleted == false())

            grouped = {parent_id: [] for parent_id in by_id}
            for row in (await conn.execute(stmt)).all():
                child = self._adapter.from_row(child_meta, row)
                grouped[getattr(child, relation.foreign_key)].append(child)
            for parent_id, children in grouped.items():
                setattr(by_id[parent_id], relation.name, children)

    async def _invalidate(self, entity_id: int) -> None:
        if self._cache is not None:
            await self._cache.invalidate_tags([entity_tag(self.table.name, entity_id)])


def _latest(*values: Optional[datetime]) -> Optional[datetime]:
    present = [as_utc(v) for v in values if v is not None]
    return max(present) if present else None
