"""
Exception hierarchy for orderly.

Argument errors are raised before any store access. Lookups in the data layer
return None for absent rows; EntityNotFoundException is the service-level
translation of that result.
"""

from typing import Any, Optional


class OrderlyException(Exception):
    """Base exception for all orderly errors."""

    pass


class EntityException(OrderlyException):
    """Raised when an entity class is declared incorrectly."""

    pass


class ArgumentException(OrderlyException, ValueError):
    """Invalid input shape: null order, non-positive id, pre-assigned id."""

    pass


class EntityNotFoundException(OrderlyException, LookupError):
    """Entity is absent or outside the caller's ownership scope."""

    def __init__(self, entity_name: str, entity_id: Any):
        self.entity_name = entity_name
        self.entity_id = entity_id
        super().__init__(f"{entity_name} with ID {entity_id} not found")


class InvalidStatusTransitionException(OrderlyException):
    """Requested status change is not an edge of the order state machine."""

    def __init__(self, current: Any, target: Any):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot transition order from {_label(current)} to {_label(target)}"
        )


class StoreConnectionException(OrderlyException):
    """
    A connection to the store could not be acquired.

    Raised before any statement is sent, so retrying is safe even for
    non-idempotent work.
    """

    pass


class StoreUnavailableException(OrderlyException):
    """Transient store failures persisted past the retry budget."""

    def __init__(self, operation: str, attempts: int, last_error: Optional[BaseException]):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Store unavailable for '{operation}' after {attempts} attempt(s): {last_error}"
        )


class UnitOfWorkClosedException(OrderlyException):
    """Raised when a closed unit of work is used again."""

    pass


def _label(value: Any) -> str:
    return getattr(value, "value", str(value))
