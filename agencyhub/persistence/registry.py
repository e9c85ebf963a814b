from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from agencyhub.core.config import Settings, get_settings
from agencyhub.persistence.targets import (
    database_name_of,
    redact_url,
    tenant_url,
    validate_database_name,
)
from agencyhub.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

EngineFactory = Callable[..., AsyncEngine]
WarmUp = Callable[[AsyncEngine], Awaitable[None]]


@dataclass
class PoolHandle:
    """A live pool for one database plus the thin façade the executor talks to."""

    name: str
    engine: AsyncEngine
    is_control: bool = False
    created_at: float = field(default_factory=time.monotonic)
    last_used_at: float = field(default_factory=time.monotonic)

    def touch(self) -> None:
        self.last_used_at = time.monotonic()

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[AsyncConnection]:
        self.touch()
        async with self.engine.connect() as conn:
            yield conn

    @asynccontextmanager
    async def begin(self) -> AsyncIterator[AsyncConnection]:
        self.touch()
        async with self.engine.begin() as conn:
            yield conn

    def stats(self) -> dict[str, int | None]:
        # Expose pool counters without querying Postgres internals.
        pool = self.engine.sync_engine.pool
        checked_out_fn = getattr(pool, "checkedout", None)
        checked_in_fn = getattr(pool, "checkedin", None)
        overflow_fn = getattr(pool, "overflow", None)
        size_fn = getattr(pool, "size", None)
        return {
            "size": int(size_fn()) if callable(size_fn) else None,
            "checked_out": int(checked_out_fn()) if callable(checked_out_fn) else None,
            "checked_in": int(checked_in_fn()) if callable(checked_in_fn) else None,
            "overflow": int(overflow_fn()) if callable(overflow_fn) else None,
        }


async def ping(engine: AsyncEngine) -> None:
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


class PoolRegistry:
    """Process-wide cache of connection pools keyed by database name.

    Constructed explicitly (see ``agencyhub.runtime``) and torn down with
    ``close_all()``; there is no module-level instance. Pool construction for a
    given name is single-flight: concurrent first access to the same database
    waits on a per-name lock, while different databases warm up in parallel.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        engine_factory: EngineFactory | None = None,
        warm_up: WarmUp | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._engine_factory = engine_factory or create_async_engine
        if warm_up is None and self._settings.db_pool_warmup:
            warm_up = ping
        self._warm_up = warm_up
        self._control: PoolHandle | None = None
        # Insertion order doubles as recency order for LRU eviction.
        self._pools: OrderedDict[str, PoolHandle] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}
        self._control_lock = asyncio.Lock()
        self._closed = False

    @property
    def base_url(self) -> str:
        return self._settings.database_url

    @property
    def control_database(self) -> str | None:
        return database_name_of(self._settings.database_url)

    @property
    def closed(self) -> bool:
        return self._closed

    def _engine_kwargs(self, *, control: bool) -> dict[str, Any]:
        settings = self._settings
        kwargs: dict[str, Any] = {"pool_pre_ping": True}
        if settings.database_url.startswith("sqlite"):
            return kwargs
        # Tenant pools get a smaller cap than the control plane to bound total connections.
        if control:
            kwargs["pool_size"] = max(1, int(settings.control_pool_size))
            kwargs["max_overflow"] = max(0, int(settings.control_max_overflow))
        else:
            kwargs["pool_size"] = max(1, int(settings.tenant_pool_size))
            kwargs["max_overflow"] = max(0, int(settings.tenant_max_overflow))
        kwargs["pool_timeout"] = settings.db_pool_timeout_s
        kwargs["pool_recycle"] = settings.db_pool_recycle_s
        server_settings = {"application_name": settings.db_application_name}
        if settings.db_statement_timeout_ms > 0:
            server_settings["statement_timeout"] = str(int(settings.db_statement_timeout_ms))
        kwargs["connect_args"] = {"server_settings": server_settings}
        return kwargs

    async def _open(self, name: str, url: str | URL, *, control: bool) -> PoolHandle:
        engine = self._engine_factory(url, **self._engine_kwargs(control=control))
        if self._warm_up is not None:
            try:
                await self._warm_up(engine)
            except Exception:
                await engine.dispose()
                raise
        increment_counter("db_pools_created_total")
        logger.info("pool_created database=%s control=%s target=%s", name, control, redact_url(url))
        return PoolHandle(name=name, engine=engine, is_control=control)

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("PoolRegistry is closed")

    async def start(self) -> PoolHandle:
        return await self.control()

    async def control(self) -> PoolHandle:
        # The control-plane pool is created once and never evicted.
        self._ensure_open()
        if self._control is not None:
            self._control.touch()
            return self._control
        async with self._control_lock:
            if self._control is None:
                name = self.control_database or "control"
                self._control = await self._open(name, self._settings.database_url, control=True)
        return self._control

    async def get_pool(self, name: str) -> PoolHandle:
        self._ensure_open()
        database = validate_database_name(name)
        if database == self.control_database:
            return await self.control()
        handle = self._pools.get(database)
        if handle is not None:
            self._pools.move_to_end(database)
            handle.touch()
            return handle
        lock = self._locks.setdefault(database, asyncio.Lock())
        async with lock:
            # Re-check after waiting: another task may have finished construction.
            handle = self._pools.get(database)
            if handle is None:
                self._ensure_open()
                handle = await self._open(
                    database,
                    tenant_url(self._settings.database_url, database),
                    control=False,
                )
                if self._closed:
                    # Shutdown raced the cold start; never leak a pool past close_all().
                    await self._dispose(handle, reason="shutdown")
                    raise RuntimeError("PoolRegistry is closed")
                self._pools[database] = handle
                set_gauge("db_tenant_pools_open", len(self._pools))
                await self._enforce_capacity(keep=database)
            else:
                self._pools.move_to_end(database)
                handle.touch()
        return handle

    def cached(self, name: str) -> PoolHandle | None:
        return self._pools.get(name)

    def names(self) -> list[str]:
        return list(self._pools.keys())

    async def _dispose(self, handle: PoolHandle, *, reason: str) -> None:
        # Checked-out connections are closed when returned, so in-flight work finishes safely.
        try:
            await handle.engine.dispose()
        except Exception:  # noqa: BLE001 - a failing dispose must not block eviction
            logger.warning("pool_dispose_failed database=%s reason=%s", handle.name, reason, exc_info=True)
        increment_counter(f"db_pools_disposed_total.{reason}")
        logger.info("pool_disposed database=%s reason=%s", handle.name, reason)

    def _release_lock(self, name: str) -> None:
        # A held lock still has waiters that will re-check the pool map.
        lock = self._locks.get(name)
        if lock is not None and not lock.locked():
            del self._locks[name]

    async def _enforce_capacity(self, *, keep: str) -> None:
        limit = max(1, int(self._settings.tenant_pool_max_count))
        while len(self._pools) > limit:
            oldest = next(iter(self._pools))
            if oldest == keep:
                break
            handle = self._pools.pop(oldest)
            self._release_lock(oldest)
            await self._dispose(handle, reason="capacity")
        set_gauge("db_tenant_pools_open", len(self._pools))

    async def evict(self, name: str) -> bool:
        # Called after fatal connection errors; the next get_pool() builds a fresh pool.
        handle = self._pools.pop(name, None)
        if handle is None:
            return False
        self._release_lock(name)
        await self._dispose(handle, reason="evicted")
        set_gauge("db_tenant_pools_open", len(self._pools))
        return True

    async def prune_idle(self, max_idle_seconds: float | None = None) -> list[str]:
        # Dispose tenant pools nobody has touched recently.
        window = (
            max_idle_seconds
            if max_idle_seconds is not None
            else float(self._settings.tenant_pool_idle_timeout_s)
        )
        now = time.monotonic()
        stale = [name for name, handle in self._pools.items() if now - handle.last_used_at > window]
        for name in stale:
            handle = self._pools.pop(name, None)
            if handle is not None:
                self._release_lock(name)
                await self._dispose(handle, reason="idle")
        set_gauge("db_tenant_pools_open", len(self._pools))
        return stale

    async def close_all(self) -> None:
        # Graceful shutdown; safe to call more than once.
        if self._closed:
            return
        self._closed = True
        pools = list(self._pools.values())
        self._pools.clear()
        self._locks.clear()
        for handle in pools:
            await self._dispose(handle, reason="shutdown")
        if self._control is not None:
            control, self._control = self._control, None
            await self._dispose(control, reason="shutdown")
        set_gauge("db_tenant_pools_open", 0)
        logger.info("pool_registry_closed")

    def stats(self) -> dict[str, Any]:
        tenant_pools = {name: handle.stats() for name, handle in self._pools.items()}
        return {
            "control": self._control.stats() if self._control is not None else None,
            "tenant_pool_count": len(tenant_pools),
            "tenant_pool_max_count": self._settings.tenant_pool_max_count,
            "tenant_connections_checked_out": sum(
                stats["checked_out"] or 0 for stats in tenant_pools.values()
            ),
            "tenant_pools": tenant_pools,
        }
