from __future__ import annotations

import os
import uuid

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import text

from agencyhub.core.config import CONTROL_MIGRATIONS_DIR, Settings, get_settings
from agencyhub.persistence.targets import quote_identifier
from agencyhub.runtime import start_runtime


TEST_DATABASE_ENV = "AGENCYHUB_TEST_DATABASE_URL"


@pytest.fixture(scope="session")
def control_database_url() -> str:
    # Integration tests need a throwaway Postgres the test role may CREATE DATABASE on.
    url = os.environ.get(TEST_DATABASE_ENV)
    if not url:
        pytest.skip(f"{TEST_DATABASE_ENV} is not set")
    config = Config()
    config.set_main_option("script_location", str(CONTROL_MIGRATIONS_DIR))
    config.attributes["database_url"] = url
    command.upgrade(config, "head")
    return url


@pytest.fixture
async def runtime(monkeypatch, control_database_url, created_databases):
    monkeypatch.setenv("DATABASE_URL", control_database_url)
    monkeypatch.setenv("PROVISIONING_EXECUTION_MODE", "inline")
    monkeypatch.setenv("DB_POOL_WARMUP", "true")
    get_settings.cache_clear()
    runtime = await start_runtime(Settings(), worker_id="it-worker")
    yield runtime
    await runtime.queue.drain()
    for name in created_databases:
        await runtime.registry.evict(name)
    for name in created_databases:
        await runtime.executor.execute_control(
            text(f"DROP DATABASE IF EXISTS {quote_identifier(name)}"), autocommit=True
        )
    await runtime.aclose()


@pytest.fixture
def unique_subdomain() -> str:
    return f"it{uuid.uuid4().hex[:10]}"


@pytest.fixture
def created_databases() -> list[str]:
    # Tenant databases a test provisions; dropped when the runtime fixture tears down.
    return []
