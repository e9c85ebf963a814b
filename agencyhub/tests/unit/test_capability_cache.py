from __future__ import annotations

import pytest
from sqlalchemy import exc as sa_exc

from agencyhub.core.config import get_settings
from agencyhub.persistence.executor import QueryResult
from agencyhub.persistence.migrations import capabilities_for_revision
from agencyhub.services.capabilities import TWO_FACTOR, CapabilityCache


class _RevisionReader:
    """Answers the alembic_version lookup per database and counts lookups."""

    def __init__(self, revisions: dict[str, str | None]) -> None:
        self._revisions = revisions
        self.calls: list[str] = []

    async def execute_on(self, database, statement, params=None, **options):
        self.calls.append(database)
        revision = self._revisions[database]
        if revision is None:
            raise sa_exc.ProgrammingError(str(statement), {}, Exception('relation "alembic_version" does not exist'))
        return QueryResult(rows=[{"version_num": revision}], rowcount=1)


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_capabilities_accumulate_along_the_revision_chain() -> None:
    location = get_settings().tenant_migrations_dir
    assert capabilities_for_revision("t0002_two_factor", script_location=location) == (TWO_FACTOR,)
    assert capabilities_for_revision("t0001_identity", script_location=location) == ()
    assert capabilities_for_revision(None, script_location=location) == ()


@pytest.mark.asyncio
async def test_stored_record_is_used_without_touching_the_tenant() -> None:
    reader = _RevisionReader({})
    cache = CapabilityCache(reader, ttl_s=60, clock=_Clock())

    tenant = {"id": "t1", "database_name": "agency_acme_1", "capabilities": [TWO_FACTOR]}
    assert await cache.for_tenant(tenant) == frozenset({TWO_FACTOR})
    assert reader.calls == []


@pytest.mark.asyncio
async def test_fallback_reads_revision_once_per_ttl() -> None:
    reader = _RevisionReader({"agency_acme_1": "t0002_two_factor"})
    clock = _Clock()
    cache = CapabilityCache(reader, ttl_s=60, clock=clock)
    tenant = {"id": "t1", "database_name": "agency_acme_1", "capabilities": None}

    first = await cache.for_tenant(tenant)
    second = await cache.for_tenant(tenant)
    clock.now += 61
    third = await cache.for_tenant(tenant)

    assert first == second == third == frozenset({TWO_FACTOR})
    assert reader.calls == ["agency_acme_1", "agency_acme_1"]


@pytest.mark.asyncio
async def test_unmigrated_tenant_has_no_optional_features() -> None:
    reader = _RevisionReader({"agency_old_1": None})
    cache = CapabilityCache(reader, ttl_s=60, clock=_Clock())

    tenant = {"id": "old", "database_name": "agency_old_1", "capabilities": None}
    assert await cache.for_tenant(tenant) == frozenset()


@pytest.mark.asyncio
async def test_invalidate_forces_a_fresh_lookup() -> None:
    reader = _RevisionReader({"agency_acme_1": "t0001_identity"})
    cache = CapabilityCache(reader, ttl_s=60, clock=_Clock())
    tenant = {"id": "t1", "database_name": "agency_acme_1", "capabilities": None}

    await cache.for_tenant(tenant)
    cache.invalidate("t1")
    await cache.for_tenant(tenant)
    cache.invalidate()
    await cache.for_tenant(tenant)

    assert len(reader.calls) == 3
