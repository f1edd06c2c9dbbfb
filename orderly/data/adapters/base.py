from abc import ABC, abstractmethod
from typing import Any, AsyncContextManager, Dict

from orderly.data.entity import BaseEntity, EntityMetadata


class DatabaseAdapter(ABC):
    """Store seam used by repositories and units of work."""

    @abstractmethod
    async def connect(self, url: str, **options) -> None:
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    @abstractmethod
    def get_table(self, entity_class: type) -> Any:
        """Table object statements for ``entity_class`` are built against."""

    @abstractmethod
    async def create_table_if_not_exists(self, entity_meta: EntityMetadata) -> None:
        pass

    @abstractmethod
    def connection(self) -> AsyncContextManager[Any]:
        """Connection for reads. Raises StoreConnectionException if none can be acquired."""

    @abstractmethod
    def transaction(self) -> AsyncContextManager[Any]:
        """Connection inside a transaction, committed on clean exit, rolled back otherwise."""

    @abstractmethod
    def to_row(self, entity_meta: EntityMetadata, entity: BaseEntity) -> Dict[str, Any]:
        pass

    @abstractmethod
    def from_row(self, entity_meta: EntityMetadata, row: Any) -> BaseEntity:
        pass
