from orderly.data.adapters.base import DatabaseAdapter
from orderly.data.adapters.sqlalchemy import SQLAlchemyAdapter

__all__ = ["DatabaseAdapter", "SQLAlchemyAdapter"]
