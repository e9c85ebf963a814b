from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from sqlalchemy import exc as sa_exc

from agencyhub.core.config import get_settings
from agencyhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


# Connection exceptions (08xxx), admin/crash shutdown (57P01-57P03) and too-many-connections.
_TRANSIENT_SQLSTATE_PREFIXES = ("08",)
_TRANSIENT_SQLSTATES = frozenset({"57P01", "57P02", "57P03", "53300"})
_TRANSIENT_MESSAGES = (
    "connection refused",
    "connection terminated",
    "connection was closed",
    "connection is closed",
    "timeout",
    "timed out",
)


def sqlstate_of(exc: BaseException) -> str | None:
    # SQLAlchemy wraps asyncpg errors; the SQLSTATE may sit on the wrapper or the driver cause.
    current: BaseException | None = exc
    seen: set[int] = set()
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        for attr in ("sqlstate", "pgcode"):
            value = getattr(current, attr, None)
            if isinstance(value, str) and value:
                return value
        current = getattr(current, "orig", None) or current.__cause__
    return None


def is_transient_connection_error(exc: BaseException) -> bool:
    # Only connection-level failures qualify; constraint, syntax and business errors never do.
    if isinstance(exc, sa_exc.TimeoutError):
        # Pool checkout timeout: the pool is saturated or the server is unreachable.
        return True
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, sa_exc.DBAPIError):
        if exc.connection_invalidated:
            return True
        state = sqlstate_of(exc)
        if state is not None:
            return state in _TRANSIENT_SQLSTATES or state.startswith(_TRANSIENT_SQLSTATE_PREFIXES)
        if isinstance(exc, (sa_exc.OperationalError, sa_exc.InterfaceError)):
            cause = exc.orig if exc.orig is not None else exc.__cause__
            if isinstance(cause, (OSError, TimeoutError)):
                return True
            message = str(exc).lower()
            return any(marker in message for marker in _TRANSIENT_MESSAGES)
        return False
    if isinstance(exc, OSError):
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Number of retries after the first attempt, with linearly increasing delay.
    max_retries: int
    delay_ms: int

    def delay_for(self, attempt: int) -> float:
        return (self.delay_ms / 1000.0) * attempt


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(max_retries=max(0, settings.db_retry_max), delay_ms=settings.db_retry_delay_ms)


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[BaseException], bool] | None = None,
    on_exhausted: Callable[[BaseException], Awaitable[None]] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "operation",
) -> Any:
    # Retry transient failures only; the exhaustion hook runs before the final error escapes.
    policy = policy or default_retry_policy()
    retryable = retryable or is_transient_connection_error
    attempt = 0
    while True:
        try:
            return await func()
        except Exception as exc:  # noqa: BLE001 - non-retryable errors are re-raised untouched
            if not retryable(exc):
                raise
            if attempt >= policy.max_retries:
                increment_counter("db_retry_exhausted_total")
                if on_exhausted is not None:
                    await on_exhausted(exc)
                raise
            attempt += 1
            increment_counter("db_retries_total")
            logger.warning(
                "transient_failure_retry label=%s attempt=%s max_retries=%s error=%s",
                label,
                attempt,
                policy.max_retries,
                type(exc).__name__,
            )
            await sleep(policy.delay_for(attempt))


@dataclass
class BulkheadLease:
    # Track bulkhead ownership to avoid double-releasing.
    semaphore: asyncio.Semaphore
    released: bool = False

    def release(self) -> None:
        if self.released:
            return
        self.semaphore.release()
        self.released = True


class Bulkhead:
    def __init__(self, name: str, limit: int) -> None:
        # Use asyncio semaphores to cap concurrent provisioning runs in inline mode.
        self._name = name
        self._limit = max(1, limit)
        self._sem = asyncio.Semaphore(self._limit)

    @property
    def name(self) -> str:
        return self._name

    @property
    def limit(self) -> int:
        return self._limit

    async def acquire(self) -> BulkheadLease:
        # Wait for a slot; provisioning jobs queue up rather than being rejected.
        await self._sem.acquire()
        return BulkheadLease(self._sem)
