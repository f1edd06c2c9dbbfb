"""
Entity base class and the @Entity decorator.

Every persisted type is a dataclass extending BaseEntity, which carries the
identity, audit and soft-delete fields. @Entity() reads the dataclass fields
into EntityMetadata so the adapter can build tables and convert rows.
"""

import dataclasses
import re
import typing
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type

from orderly.exceptions import EntityException

ENTITY_ATTR = "__orderly_entity__"
COLUMN_KEY = "orderly.column"
RELATION_KEY = "orderly.relation"

SUPPORTED_TYPES = (int, str, float, bool, Decimal, datetime, date)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC. SQLite drops the offset on the way out."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def next_timestamp(previous: Optional[datetime]) -> datetime:
    """Current UTC time, nudged forward so it is strictly after ``previous``."""
    now = utcnow()
    previous = as_utc(previous)
    if previous is None:
        return now
    if now <= previous:
        now = previous + timedelta(microseconds=1)
    return now


@dataclass
class BaseEntity:
    """Identity, audit and soft-delete fields shared by all entities."""

    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None

    @property
    def is_new(self) -> bool:
        return self.id is None or self.id == 0


@dataclass(frozen=True)
class ColumnOptions:
    unique: bool = False
    index: bool = False
    length: Optional[int] = None
    immutable: bool = False


@dataclass(frozen=True)
class Relation:
    """Exclusively owned child collection, stored in the child's table."""

    name: str
    child: type
    foreign_key: str


@dataclass
class FieldMetadata:
    name: str
    python_type: type
    nullable: bool = False
    primary_key: bool = False
    unique: bool = False
    index: bool = False
    length: Optional[int] = None
    immutable: bool = False

    @property
    def enum_type(self) -> Optional[Type[Enum]]:
        if isinstance(self.python_type, type) and issubclass(self.python_type, Enum):
            return self.python_type
        return None


@dataclass
class EntityMetadata:
    entity_class: type
    table_name: str
    fields: Dict[str, FieldMetadata]
    relations: Dict[str, Relation] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.entity_class.__name__

    def has_field(self, name: str) -> bool:
        return name in self.fields

    @property
    def immutable_fields(self) -> List[str]:
        """Columns fixed at insert; updates must carry the stored value."""
        return [name for name, f in self.fields.items() if f.immutable]


def Column(
    default: Any = dataclasses.MISSING,
    *,
    default_factory: Any = dataclasses.MISSING,
    unique: bool = False,
    index: bool = False,
    length: Optional[int] = None,
    immutable: bool = False,
):
    """Dataclass field carrying column options."""
    options = ColumnOptions(
        unique=unique, index=index, length=length, immutable=immutable
    )
    if default is dataclasses.MISSING and default_factory is dataclasses.MISSING:
        default = None
    return field(
        default=default,
        default_factory=default_factory,
        metadata={COLUMN_KEY: options},
    )


def HasMany(child: type, foreign_key: str):
    """
    Declare an owned child collection.

    Children are inserted with their parent, loaded with it, and soft-deleted
    with it. The child entity holds the foreign key field.
    """
    return field(
        default_factory=list,
        metadata={RELATION_KEY: (child, foreign_key)},
    )


_entity_registry: Dict[type, EntityMetadata] = {}


def Entity(table: Optional[str] = None):
    """
    Register a dataclass as a persisted entity.

    Args:
        table: Table name. Defaults to the pluralized snake_case class name.
    """

    def decorator(cls):
        if not dataclasses.is_dataclass(cls):
            raise EntityException(f"{cls.__name__} is not a dataclass")
        if not issubclass(cls, BaseEntity):
            raise EntityException(f"{cls.__name__} must extend BaseEntity")

        try:
            hints = typing.get_type_hints(cls)
        except NameError as e:
            raise EntityException(
                f"Cannot resolve annotations of {cls.__name__}: {e}"
            ) from e

        fields: Dict[str, FieldMetadata] = {}
        relations: Dict[str, Relation] = {}

        for f in dataclasses.fields(cls):
            if RELATION_KEY in f.metadata:
                child, foreign_key = f.metadata[RELATION_KEY]
                relations[f.name] = _build_relation(cls, f.name, child, foreign_key)
                continue

            python_type, nullable = _unwrap_optional(hints[f.name])
            if not _is_supported(python_type):
                raise EntityException(
                    f"Unsupported type {python_type!r} for {cls.__name__}.{f.name}"
                )

            options = f.metadata.get(COLUMN_KEY, ColumnOptions())
            fields[f.name] = FieldMetadata(
                name=f.name,
                python_type=python_type,
                nullable=nullable,
                primary_key=f.name == "id",
                unique=options.unique,
                index=options.index,
                length=options.length,
                immutable=options.immutable,
            )

        meta = EntityMetadata(
            entity_class=cls,
            table_name=table or _table_name(cls.__name__),
            fields=fields,
            relations=relations,
        )
        setattr(cls, ENTITY_ATTR, meta)
        _entity_registry[cls] = meta
        return cls

    return decorator


def _build_relation(parent: type, name: str, child: type, foreign_key: str) -> Relation:
    if not is_entity(child):
        raise EntityException(
            f"{parent.__name__}.{name}: {getattr(child, '__name__', child)} is not an entity"
        )
    if not get_entity_metadata(child).has_field(foreign_key):
        raise EntityException(
            f"{parent.__name__}.{name}: {child.__name__} has no field '{foreign_key}'"
        )
    return Relation(name=name, child=child, foreign_key=foreign_key)


def _unwrap_optional(annotation: Any):
    if typing.get_origin(annotation) is typing.Union:
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return args[0], True
    return annotation, False


def _is_supported(python_type: Any) -> bool:
    if not isinstance(python_type, type):
        return False
    return issubclass(python_type, Enum) or python_type in SUPPORTED_TYPES


def _table_name(class_name: str) -> str:
    snake = re.sub(r"(?<!^)(?=[A-Z])", "_", class_name).lower()
    if re.search(r"[^aeiou]y$", snake):
        return snake[:-1] + "ies"
    if snake.endswith(("s", "x", "ch", "sh")):
        return snake + "es"
    return snake + "s"


def get_entity_metadata(entity_class: type) -> EntityMetadata:
    meta = getattr(entity_class, ENTITY_ATTR, None)
    if meta is None or meta.entity_class is not entity_class:
        raise EntityException(f"{entity_class.__name__} is not a registered entity")
    return meta


def is_entity(cls: Any) -> bool:
    meta = getattr(cls, ENTITY_ATTR, None)
    return meta is not None and meta.entity_class is cls


def get_all_entities() -> Dict[type, EntityMetadata]:
    return dict(_entity_registry)


def children_of(entity: BaseEntity) -> List[BaseEntity]:
    """All owned children of an entity, across its relations."""
    meta = get_entity_metadata(type(entity))
    children: List[BaseEntity] = []
    for relation in meta.relations.values():
        children.extend(getattr(entity, relation.name) or [])
    return children


def owning_relation(table_name: str) -> Optional[Tuple[EntityMetadata, Relation]]:
    """Parent metadata and relation whose children live in ``table_name``, if any."""
    for meta in _entity_registry.values():
        for relation in meta.relations.values():
            if get_entity_metadata(relation.child).table_name == table_name:
                return meta, relation
    return None
