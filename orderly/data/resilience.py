"""
Retry policy for store operations.

The policy takes the operation as a value and runs it, retrying transient
failures with bounded exponential backoff. Terminal failures are re-raised
untouched. When the budget is exhausted the last failure is chained onto a
StoreUnavailableException.

Non-idempotent work (a commit that inserts rows) is only retried when the
failure happened while acquiring a connection, before anything reached the
store. Retrying later failures could insert the same rows twice.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, DisconnectionError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from orderly.core.logging import get_logger
from orderly.core.metrics import MetricsStorage
from orderly.exceptions import StoreConnectionException, StoreUnavailableException

logger = get_logger("data.resilience")

T = TypeVar("T")

TRANSIENT_MARKERS = (
    "database is locked",
    "database is busy",
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "could not connect",
    "server closed the connection",
    "gone away",
    "lost connection",
    "too many connections",
)


def is_transient(error: BaseException) -> bool:
    """Classify a failure as worth retrying."""
    if isinstance(
        error,
        (StoreConnectionException, TimeoutError, ConnectionError, PoolTimeoutError, DisconnectionError),
    ):
        return True
    if isinstance(error, DBAPIError):
        if error.connection_invalidated:
            return True
        if isinstance(error, OperationalError):
            message = str(error.orig or error).lower()
            return any(marker in message for marker in TRANSIENT_MARKERS)
    return False


class ResiliencePolicy:
    """Bounded retry with exponential backoff."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.1,
        max_delay: float = 2.0,
        multiplier: float = 2.0,
        classifier: Callable[[BaseException], bool] = is_transient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: Optional[MetricsStorage] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.classifier = classifier
        self._sleep = sleep
        self._metrics = metrics

    @classmethod
    def from_config(cls, config, **overrides) -> "ResiliencePolicy":
        options = {
            "max_attempts": config.get_int("resilience.max_attempts", 3),
            "base_delay": config.get_float("resilience.base_delay", 0.1),
            "max_delay": config.get_float("resilience.max_delay", 2.0),
            "multiplier": config.get_float("resilience.multiplier", 2.0),
        }
        options.update(overrides)
        return cls(**options)

    @classmethod
    def no_retry(cls) -> "ResiliencePolicy":
        return cls(max_attempts=1)

    def delay_for(self, attempt: int) -> float:
        """Backoff before retrying after the given (1-based) failed attempt."""
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        idempotent: bool = True,
        name: str = "operation",
    ) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as error:
                if not self.classifier(error):
                    raise

                retryable = idempotent or isinstance(error, StoreConnectionException)
                if not retryable or attempt >= self.max_attempts:
                    logger.error(
                        f"'{name}' failed after {attempt} attempt(s): {error!r}"
                    )
                    raise StoreUnavailableException(name, attempt, error) from error

                delay = self.delay_for(attempt)
                logger.warning(
                    f"Transient failure in '{name}' (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.3f}s: {error!r}"
                )
                if self._metrics is not None:
                    self._metrics.counter("store_retries_total").inc({"operation": name})
                await self._sleep(delay)
