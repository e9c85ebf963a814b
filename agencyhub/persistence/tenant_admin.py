from __future__ import annotations

import logging

from sqlalchemy import exc as sa_exc
from sqlalchemy import text

from agencyhub.persistence.executor import QueryExecutor
from agencyhub.persistence.targets import create_database_sql, validate_database_name
from agencyhub.services.resilience import sqlstate_of


logger = logging.getLogger(__name__)

_DATABASE_EXISTS = text("SELECT 1 FROM pg_database WHERE datname = :name")
# A concurrent CREATE DATABASE usually trips the pg_database unique index (23505) rather than 42P04.
_DUPLICATE_DATABASE = frozenset({"42P04", "23505"})


class TenantDatabaseAdmin:
    """Server-level operations on tenant databases, issued through the control pool."""

    def __init__(self, executor: QueryExecutor) -> None:
        self._executor = executor

    async def database_exists(self, name: str) -> bool:
        database = validate_database_name(name)
        result = await self._executor.execute_control(_DATABASE_EXISTS, {"name": database})
        return result.first() is not None

    async def create_database_if_missing(self, name: str) -> bool:
        """Create the database unless it already exists. Returns True when created."""
        database = validate_database_name(name)
        if await self.database_exists(database):
            logger.info("tenant_database_exists database=%s", database)
            return False
        try:
            await self._executor.execute_control(create_database_sql(database), autocommit=True)
        except (sa_exc.ProgrammingError, sa_exc.IntegrityError) as exc:
            # Another worker won the race between the existence check and CREATE.
            if sqlstate_of(exc) in _DUPLICATE_DATABASE:
                logger.info("tenant_database_exists database=%s", database)
                return False
            raise
        logger.info("tenant_database_created database=%s", database)
        return True
