"""
Ownership filtering.

The caller is passed explicitly into every repository call. A filter turns
(table, caller) into a WHERE clause for reads and write-target resolution,
and answers whether an in-memory entity may be created by the caller.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import Table, false, or_, select
from sqlalchemy.sql.elements import ColumnElement

from orderly.data.entity import BaseEntity, owning_relation


class Role:
    CUSTOMER = "Customer"
    DELIVERER = "Deliverer"
    ADMIN = "Admin"
    SYSTEM = "System"


@dataclass(frozen=True)
class CallerContext:
    """Identity of the caller a repository or service call is made for."""

    user_id: int
    role: str = Role.CUSTOMER
    deliverer_id: Optional[int] = None

    @classmethod
    def system(cls) -> "CallerContext":
        return cls(user_id=0, role=Role.SYSTEM)


class OwnershipFilter(ABC):
    """Restricts which rows a caller may see or mutate. Must be side-effect free."""

    @abstractmethod
    def predicate(self, table: Table, caller: CallerContext) -> Optional[ColumnElement]:
        """WHERE clause restricting ``table`` to the caller's rows, or None for all rows."""

    @abstractmethod
    def permits(self, entity: BaseEntity, caller: CallerContext) -> bool:
        """Whether ``entity`` lies inside the caller's scope."""

    @abstractmethod
    def scope_key(self, caller: CallerContext) -> str:
        """Callers with equal scope keys see exactly the same rows."""


class UnrestrictedFilter(OwnershipFilter):
    """Every row is visible to every caller."""

    def predicate(self, table, caller):
        return None

    def permits(self, entity, caller):
        return True

    def scope_key(self, caller):
        return "*"


class OwnerFilter(OwnershipFilter):
    """
    Scope rows by an owner column.

    - privileged roles (Admin, System) see everything
    - a caller sees rows whose ``owner_field`` equals its user id
    - a deliverer additionally sees rows whose ``deliverer_field`` equals its
      deliverer id
    - rows of an owned child table (e.g. order_items) follow their parent row
    - other tables without ``owner_field`` are not owned and stay visible to all

    ``permits`` only sees the in-memory entity, so a child's parent is checked
    by the repository against the store.
    """

    def __init__(
        self,
        owner_field: str = "user_id",
        deliverer_field: Optional[str] = "deliverer_id",
        privileged_roles: Iterable[str] = (Role.ADMIN, Role.SYSTEM),
    ):
        self.owner_field = owner_field
        self.deliverer_field = deliverer_field
        self.privileged_roles = frozenset(privileged_roles)

    def is_privileged(self, caller: CallerContext) -> bool:
        return caller.role in self.privileged_roles

    def predicate(self, table, caller):
        if self.is_privileged(caller):
            return None
        if self.owner_field not in table.c:
            return self._child_predicate(table, caller)

        clause = table.c[self.owner_field] == caller.user_id
        if self._sees_assigned(caller) and self.deliverer_field in table.c:
            clause = or_(clause, table.c[self.deliverer_field] == caller.deliverer_id)
        return clause

    def permits(self, entity, caller):
        if self.is_privileged(caller) or not hasattr(entity, self.owner_field):
            return True
        if getattr(entity, self.owner_field) == caller.user_id:
            return True
        return (
            self._sees_assigned(caller)
            and getattr(entity, self.deliverer_field, None) == caller.deliverer_id
        )

    def scope_key(self, caller):
        if self.is_privileged(caller):
            return "all"
        if self._sees_assigned(caller):
            return f"user:{caller.user_id}:deliverer:{caller.deliverer_id}"
        return f"user:{caller.user_id}"

    def _child_predicate(self, table, caller):
        owner = owning_relation(table.name)
        if owner is None:
            return None

        parent_meta, relation = owner
        parent = table.metadata.tables.get(parent_meta.table_name)
        if parent is None:
            # parent table unknown to this metadata; nothing is provably visible
            return false()
        parent_clause = self.predicate(parent, caller)
        if parent_clause is None:
            return None
        return table.c[relation.foreign_key].in_(select(parent.c.id).where(parent_clause))

    def _sees_assigned(self, caller: CallerContext) -> bool:
        return (
            self.deliverer_field is not None
            and caller.role == Role.DELIVERER
            and caller.deliverer_id is not None
        )
