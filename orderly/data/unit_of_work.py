"""
Unit of work: one per request, never shared.

Repositories stage writes here. ``commit()`` replays them in issue order inside
one store transaction. Ids are copied onto the staged entities only after the
transaction succeeds, so a failed commit leaves every entity as it was staged.
"""

from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy import false, insert, update

from orderly.core.logging import get_logger
from orderly.core.metrics import MetricsStorage
from orderly.data.adapters.base import DatabaseAdapter
from orderly.data.cache import Cache, entity_tag
from orderly.data.entity import BaseEntity, get_entity_metadata, owning_relation
from orderly.data.filters import OwnershipFilter
from orderly.data.repository import (
    INSERT,
    SOFT_DELETE,
    UPDATE,
    Change,
    Repository,
)
from orderly.data.resilience import ResiliencePolicy
from orderly.exceptions import EntityNotFoundException, UnitOfWorkClosedException

logger = get_logger("data.unit_of_work")

# Columns an update never overwrites; they change only on insert or soft delete.
PROTECTED_ON_UPDATE = ("created_at", "is_deleted", "deleted_at")

Assignment = Tuple[BaseEntity, str, Any]


class UnitOfWork:
    """
    Groups repository writes into one atomic commit.

    Usage:
        async with factory() as uow:
            orders = uow.repository(Order)
            await orders.add(order, caller)
            await uow.commit()
    """

    def __init__(
        self,
        adapter: DatabaseAdapter,
        ownership_filter: OwnershipFilter,
        resilience_policy: ResiliencePolicy,
        cache: Optional[Cache] = None,
        metrics: Optional[MetricsStorage] = None,
    ):
        self.adapter = adapter
        self.ownership_filter = ownership_filter
        self.resilience_policy = resilience_policy
        self.cache = cache
        self.metrics = metrics
        self._repositories: Dict[type, Repository] = {}
        self._pending: List[Change] = []
        self._closed = False

    async def __aenter__(self) -> "UnitOfWork":
        self._ensure_open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._pending:
            logger.debug(f"Discarding {len(self._pending)} uncommitted change(s)")
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def has_changes(self) -> bool:
        return bool(self._pending)

    def repository(self, entity_class: type) -> Repository:
        self._ensure_open()
        repo = self._repositories.get(entity_class)
        if repo is None:
            repo = Repository(entity_class, self)
            self._repositories[entity_class] = repo
        return repo

    async def commit(self) -> int:
        """
        Persist every staged change in one transaction.

        Returns the number of changes written. On failure nothing is visible in
        the store, no ids are assigned and the staged changes are kept.
        """
        self._ensure_open()
        if not self._pending:
            return 0

        changes = list(self._pending)
        # Inserts are not safe to replay once a statement has reached the store
        idempotent = not any(change.kind == INSERT for change in changes)

        async def flush():
            return await self._flush(changes)

        if self.metrics is not None:
            with self.metrics.timed("unit_of_work_commit", {}):
                assigned = await self.resilience_policy.execute(
                    flush, idempotent=idempotent, name="commit"
                )
        else:
            assigned = await self.resilience_policy.execute(
                flush, idempotent=idempotent, name="commit"
            )

        for obj, field_name, value in assigned:
            setattr(obj, field_name, value)
        self._pending.clear()

        if self.cache is not None:
            await self.cache.invalidate_tags(_written_tags(changes))

        logger.debug(f"Committed {len(changes)} change(s)")
        return len(changes)

    def rollback(self) -> int:
        """Discard staged changes. Returns how many were discarded."""
        self._ensure_open()
        discarded = len(self._pending)
        self._pending.clear()
        if discarded:
            logger.debug(f"Rolled back {discarded} staged change(s)")
        return discarded

    def close(self) -> None:
        self._pending.clear()
        self._repositories.clear()
        self._closed = True

    def _ensure_open(self) -> None:
        if self._closed:
            raise UnitOfWorkClosedException("Unit of work is closed")

    def _stage(self, change: Change) -> None:
        self._pending.append(change)

    def _is_staged(self, entity: BaseEntity, kind: Optional[str] = None) -> bool:
        return any(
            change.entity is entity and (kind is None or change.kind == kind)
            for change in self._pending
        )

    async def _flush(self, changes: List[Change]) -> List[Assignment]:
        assigned: List[Assignment] = []
        async with self.adapter.transaction() as conn:
            for change in changes:
                if change.kind == INSERT:
                    await self._insert(conn, change, assigned)
                elif change.kind == UPDATE:
                    await self._update(conn, change)
                elif change.kind == SOFT_DELETE:
                    await self._soft_delete(conn, change)
                else:
                    raise ValueError(f"Unknown change kind: {change.kind}")
        return assigned

    async def _insert(self, conn, change: Change, assigned: List[Assignment]) -> None:
        meta = get_entity_metadata(change.entity_class)
        table = self.adapter.get_table(change.entity_class)
        result = await conn.execute(
            insert(table).values(**self.adapter.to_row(meta, change.entity))
        )
        parent_id = result.inserted_primary_key[0]
        assigned.append((change.entity, "id", parent_id))

        for relation in meta.relations.values():
            child_meta = get_entity_metadata(relation.child)
            child_table = self.adapter.get_table(relation.child)
            for child in getattr(change.entity, relation.name) or []:
                row = self.adapter.to_row(child_meta, child)
                row[relation.foreign_key] = parent_id
                child_result = await conn.execute(insert(child_table).values(**row))
                assigned.append((child, relation.foreign_key, parent_id))
                assigned.append((child, "id", child_result.inserted_primary_key[0]))

    async def _update(self, conn, change: Change) -> None:
        meta = get_entity_metadata(change.entity_class)
        table = self.adapter.get_table(change.entity_class)
        entity = change.entity

        values = self.adapter.to_row(meta, entity)
        for name in (*PROTECTED_ON_UPDATE, *meta.immutable_fields):
            values.pop(name, None)

        stmt = update(table).where(table.c.id == entity.id, table.c.is_deleted == false())
        predicate = self.ownership_filter.predicate(table, change.caller)
        if predicate is not None:
            stmt = stmt.where(predicate)

        result = await conn.execute(stmt.values(**values))
        if result.rowcount == 0:
            raise EntityNotFoundException(meta.name, entity.id)

    async def _soft_delete(self, conn, change: Change) -> None:
        meta = get_entity_metadata(change.entity_class)
        table = self.adapter.get_table(change.entity_class)
        entity = change.entity
        values = {
            "is_deleted": True,
            "deleted_at": entity.deleted_at,
            "updated_at": entity.updated_at,
        }

        stmt = update(table).where(table.c.id == entity.id, table.c.is_deleted == false())
        predicate = self.ownership_filter.predicate(table, change.caller)
        if predicate is not None:
            stmt = stmt.where(predicate)

        result = await conn.execute(stmt.values(**values))
        if result.rowcount == 0:
            # deleted concurrently; its children went with it
            return

        for relation in meta.relations.values():
            child_table = self.adapter.get_table(relation.child)
            await conn.execute(
                update(child_table)
                .where(
                    child_table.c[relation.foreign_key] == entity.id,
                    child_table.c.is_deleted == false(),
                )
                .values(**values)
            )


class UnitOfWorkFactory:
    """Creates units of work sharing one adapter, filter, policy and cache."""

    def __init__(
        self,
        adapter: DatabaseAdapter,
        ownership_filter: OwnershipFilter,
        resilience_policy: ResiliencePolicy,
        cache: Optional[Cache] = None,
        metrics: Optional[MetricsStorage] = None,
    ):
        self.adapter = adapter
        self.ownership_filter = ownership_filter
        self.resilience_policy = resilience_policy
        self.cache = cache
        self.metrics = metrics

    def __call__(self) -> UnitOfWork:
        return UnitOfWork(
            self.adapter,
            self.ownership_filter,
            self.resilience_policy,
            cache=self.cache,
            metrics=self.metrics,
        )


def _written_tags(changes: List[Change]) -> Set[str]:
    tags = set()
    for change in changes:
        table = get_entity_metadata(change.entity_class).table_name
        tags.add(entity_tag(table, change.entity.id))
        # a parent view embeds its children
        owner = owning_relation(table)
        if owner is not None:
            parent_meta, relation = owner
            parent_id = getattr(change.entity, relation.foreign_key)
            tags.add(entity_tag(parent_meta.table_name, parent_id))
    return tags
