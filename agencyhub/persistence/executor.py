from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Sequence, TypeVar, Union
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.sql import Executable

from agencyhub.core.errors import DatabaseConnectionError
from agencyhub.persistence.registry import PoolHandle, PoolRegistry
from agencyhub.services.resilience import (
    RetryPolicy,
    default_retry_policy,
    is_transient_connection_error,
    retry_async,
)


logger = logging.getLogger(__name__)

StatementLike = Union[str, Executable]
T = TypeVar("T")

# Transaction-local so the audit context never leaks onto a pooled connection.
_SET_AUDIT_CONTEXT = text("SELECT set_config('app.current_user_id', :user_id, true)")


@dataclass(frozen=True)
class Statement:
    sql: StatementLike
    params: Mapping[str, Any] | None = None


@dataclass
class QueryResult:
    rows: list[dict[str, Any]] = field(default_factory=list)
    rowcount: int = 0

    def first(self) -> dict[str, Any] | None:
        return self.rows[0] if self.rows else None

    def scalar(self) -> Any:
        row = self.first()
        if row is None:
            return None
        return next(iter(row.values()), None)

    def scalars(self) -> list[Any]:
        return [next(iter(row.values()), None) for row in self.rows]


def _coerce(statement: StatementLike) -> Executable:
    if isinstance(statement, str):
        return text(statement.strip())
    return statement


def _validate_user_context(user_id: str) -> str:
    # Audit context is a user UUID; anything else is a caller bug, not data.
    try:
        return str(UUID(str(user_id)))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid audit user id: {user_id!r}") from exc


async def _run(conn: AsyncConnection, statement: StatementLike, params: Mapping[str, Any] | None) -> QueryResult:
    if params:
        result = await conn.execute(_coerce(statement), dict(params))
    else:
        result = await conn.execute(_coerce(statement))
    rows: list[dict[str, Any]] = []
    if result.returns_rows:
        rows = [dict(row) for row in result.mappings().all()]
    rowcount = result.rowcount if result.rowcount is not None and result.rowcount >= 0 else len(rows)
    return QueryResult(rows=rows, rowcount=rowcount)


class Transaction:
    """Statement runner bound to one open transaction."""

    def __init__(self, conn: AsyncConnection) -> None:
        self._conn = conn

    async def execute(
        self, statement: StatementLike, params: Mapping[str, Any] | None = None
    ) -> QueryResult:
        return await _run(self._conn, statement, params)


class QueryExecutor:
    """Runs statements and transactions against registry pools.

    Transient connection failures are retried with linear backoff; once the
    retries are spent against a tenant pool that pool is evicted before the
    error surfaces, so the next caller starts with fresh connections. Every
    other failure propagates on the first occurrence.
    """

    def __init__(
        self,
        registry: PoolRegistry,
        *,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._policy = policy
        self._sleep = sleep

    @property
    def registry(self) -> PoolRegistry:
        return self._registry

    def _policy_or_default(self) -> RetryPolicy:
        return self._policy or default_retry_policy()

    async def _with_retry(self, pool: PoolHandle, func: Callable[[], Awaitable[Any]], *, label: str) -> Any:
        async def _on_exhausted(exc: BaseException) -> None:
            if not pool.is_control:
                logger.warning("evicting_pool_after_retries database=%s error=%s", pool.name, type(exc).__name__)
                await self._registry.evict(pool.name)

        try:
            return await retry_async(
                func,
                policy=self._policy_or_default(),
                retryable=is_transient_connection_error,
                on_exhausted=_on_exhausted,
                sleep=self._sleep,
                label=f"{label}:{pool.name}",
            )
        except Exception as exc:
            if is_transient_connection_error(exc):
                raise DatabaseConnectionError(
                    f"Database {pool.name} unavailable after retries", database=pool.name
                ) from exc
            raise

    async def execute(
        self,
        pool: PoolHandle,
        statement: StatementLike,
        params: Mapping[str, Any] | None = None,
        *,
        user_context: str | None = None,
        autocommit: bool = False,
    ) -> QueryResult:
        audit_user = _validate_user_context(user_context) if user_context else None
        if audit_user and autocommit:
            raise ValueError("user_context requires a transaction; autocommit is not allowed")

        async def _attempt() -> QueryResult:
            async with pool.connect() as conn:
                if autocommit:
                    # Statements such as CREATE DATABASE refuse to run inside a transaction block.
                    autocommit_conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
                    return await _run(autocommit_conn, statement, params)
                async with conn.begin():
                    if audit_user:
                        await conn.execute(_SET_AUDIT_CONTEXT, {"user_id": audit_user})
                    return await _run(conn, statement, params)

        return await self._with_retry(pool, _attempt, label="execute")

    async def run_transaction(
        self,
        pool: PoolHandle,
        work: Callable[[Transaction], Awaitable[T]],
        *,
        user_context: str | None = None,
        label: str = "transaction",
    ) -> T:
        # The unit of work may be replayed on a transient failure, so it must not keep side state.
        audit_user = _validate_user_context(user_context) if user_context else None

        async def _attempt() -> T:
            async with pool.connect() as conn:
                async with conn.begin():
                    if audit_user:
                        await conn.execute(_SET_AUDIT_CONTEXT, {"user_id": audit_user})
                    return await work(Transaction(conn))

        return await self._with_retry(pool, _attempt, label=label)

    async def execute_transaction(
        self,
        pool: PoolHandle,
        statements: Sequence[Statement],
        *,
        user_context: str | None = None,
    ) -> list[QueryResult]:
        if not statements:
            raise ValueError("execute_transaction requires at least one statement")

        async def _work(tx: Transaction) -> list[QueryResult]:
            return [await tx.execute(item.sql, item.params) for item in statements]

        logger.debug("executing_transaction database=%s statements=%s", pool.name, len(statements))
        return await self.run_transaction(pool, _work, user_context=user_context)

    async def execute_on(
        self,
        database: str,
        statement: StatementLike,
        params: Mapping[str, Any] | None = None,
        **options: Any,
    ) -> QueryResult:
        # Resolve the pool per call so an evicted pool is rebuilt on the next request.
        pool = await self._registry.get_pool(database)
        return await self.execute(pool, statement, params, **options)

    async def execute_control(
        self,
        statement: StatementLike,
        params: Mapping[str, Any] | None = None,
        **options: Any,
    ) -> QueryResult:
        pool = await self._registry.control()
        return await self.execute(pool, statement, params, **options)

    async def run_control(self, work: Callable[[Transaction], Awaitable[T]], *, label: str = "transaction") -> T:
        pool = await self._registry.control()
        return await self.run_transaction(pool, work, label=label)
