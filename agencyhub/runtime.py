from __future__ import annotations

import logging
from dataclasses import dataclass

from agencyhub.core.config import Settings, get_settings
from agencyhub.persistence.executor import QueryExecutor
from agencyhub.persistence.migrations import AlembicMigrationRunner
from agencyhub.persistence.registry import EngineFactory, PoolRegistry
from agencyhub.persistence.repos.directory import SqlTenantDirectory
from agencyhub.persistence.tenant_admin import TenantDatabaseAdmin
from agencyhub.services.auth.lockout import LockoutPolicy
from agencyhub.services.auth.resolver import AuthResolver
from agencyhub.services.capabilities import CapabilityCache
from agencyhub.services.provisioning.orchestrator import ProvisioningOrchestrator
from agencyhub.services.provisioning.queue import ProvisioningQueue
from agencyhub.services.provisioning.signup import SignupService
from agencyhub.services.provisioning.tenant_seed import TenantSeeder


logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Object graph for one process: the registry plus every service built on it."""

    settings: Settings
    registry: PoolRegistry
    executor: QueryExecutor
    directory: SqlTenantDirectory
    capabilities: CapabilityCache
    resolver: AuthResolver
    admin: TenantDatabaseAdmin
    seeder: TenantSeeder
    migrations: AlembicMigrationRunner
    orchestrator: ProvisioningOrchestrator
    queue: ProvisioningQueue
    signup: SignupService

    async def aclose(self) -> None:
        # Let inline jobs finish before their pools go away.
        await self.queue.aclose()
        await self.registry.close_all()
        logger.info("runtime_closed")


def build_runtime(
    settings: Settings | None = None,
    *,
    engine_factory: EngineFactory | None = None,
    worker_id: str | None = None,
) -> Runtime:
    settings = settings or get_settings()
    registry = PoolRegistry(settings, engine_factory=engine_factory)
    executor = QueryExecutor(registry)
    directory = SqlTenantDirectory(executor)
    capabilities = CapabilityCache(
        executor,
        ttl_s=settings.capability_cache_ttl_s,
        script_location=settings.tenant_migrations_dir,
    )
    resolver = AuthResolver(
        executor,
        directory,
        capabilities=capabilities,
        lockout_policy=LockoutPolicy.from_settings(settings),
        settings=settings,
    )
    admin = TenantDatabaseAdmin(executor)
    seeder = TenantSeeder(executor)
    migrations = AlembicMigrationRunner(settings)
    orchestrator = ProvisioningOrchestrator(
        directory,
        admin=admin,
        seeder=seeder,
        migrations=migrations,
        settings=settings,
        worker_id=worker_id,
    )
    queue = ProvisioningQueue(settings, inline_runner=orchestrator.run)
    signup = SignupService(directory, queue, settings=settings)
    return Runtime(
        settings=settings,
        registry=registry,
        executor=executor,
        directory=directory,
        capabilities=capabilities,
        resolver=resolver,
        admin=admin,
        seeder=seeder,
        migrations=migrations,
        orchestrator=orchestrator,
        queue=queue,
        signup=signup,
    )


async def start_runtime(settings: Settings | None = None, **kwargs) -> Runtime:
    # Opens the control-plane pool up front so a bad DATABASE_URL fails at boot.
    runtime = build_runtime(settings, **kwargs)
    try:
        await runtime.registry.start()
    except Exception:
        await runtime.aclose()
        raise
    logger.info("runtime_started mode=%s", runtime.settings.provisioning_execution_mode)
    return runtime
