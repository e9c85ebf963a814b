from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from sqlalchemy import exc as sa_exc
from sqlalchemy import text

from agencyhub.core.config import get_settings
from agencyhub.persistence.executor import QueryExecutor
from agencyhub.persistence.migrations import capabilities_for_revision
from agencyhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

TWO_FACTOR = "two_factor"

_READ_REVISION = text("SELECT version_num FROM alembic_version LIMIT 1")


@dataclass(frozen=True)
class _Entry:
    capabilities: frozenset[str]
    expires_at: float


class CapabilityCache:
    """Per-tenant schema capabilities, resolved once and kept for a TTL.

    The stored capability record (joined into the tenant lookup) is the normal
    source. Tenants provisioned before records existed fall back to reading
    their Alembic revision once; the answer is cached like any other.
    """

    def __init__(
        self,
        executor: QueryExecutor,
        *,
        ttl_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        script_location: Path | None = None,
    ) -> None:
        self._executor = executor
        self._ttl_s = float(ttl_s if ttl_s is not None else get_settings().capability_cache_ttl_s)
        self._clock = clock
        self._script_location = script_location
        self._entries: dict[str, _Entry] = {}

    async def for_tenant(self, tenant: dict[str, Any]) -> frozenset[str]:
        tenant_id = tenant["id"]
        now = self._clock()
        entry = self._entries.get(tenant_id)
        if entry is not None and entry.expires_at > now:
            increment_counter("capability_cache_hits_total")
            return entry.capabilities
        increment_counter("capability_cache_misses_total")
        if tenant.get("capabilities") is not None:
            capabilities = frozenset(tenant["capabilities"])
        else:
            revision = await self._read_revision(tenant["database_name"])
            capabilities = frozenset(
                capabilities_for_revision(revision, script_location=self._script_location)
            )
        self._entries[tenant_id] = _Entry(capabilities=capabilities, expires_at=now + self._ttl_s)
        return capabilities

    def invalidate(self, tenant_id: str | None = None) -> None:
        if tenant_id is None:
            self._entries.clear()
        else:
            self._entries.pop(tenant_id, None)

    async def _read_revision(self, database_name: str) -> str | None:
        try:
            result = await self._executor.execute_on(database_name, _READ_REVISION)
        except sa_exc.ProgrammingError:
            # Never migrated through Alembic: no optional features.
            logger.warning("tenant_revision_unknown database=%s", database_name)
            return None
        revision = result.scalar()
        logger.info("tenant_capabilities_derived database=%s revision=%s", database_name, revision)
        return revision
