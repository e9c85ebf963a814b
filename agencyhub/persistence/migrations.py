from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory

from agencyhub.core.config import Settings, get_settings
from agencyhub.persistence.targets import tenant_url, validate_database_name


logger = logging.getLogger(__name__)

# Revisions that introduce optional tenant features. A tenant at or beyond the
# revision has the capability; older tenants run with the feature disabled.
REVISION_CAPABILITIES: dict[str, tuple[str, ...]] = {
    "t0002_two_factor": ("two_factor",),
}


@dataclass(frozen=True)
class MigrationOutcome:
    database_name: str
    revision: str | None
    capabilities: tuple[str, ...]
    duration_ms: float


def _script_directory(script_location: Path) -> ScriptDirectory:
    config = Config()
    config.set_main_option("script_location", str(script_location))
    return ScriptDirectory.from_config(config)


def capabilities_for_revision(revision: str | None, *, script_location: Path | None = None) -> tuple[str, ...]:
    # Walk the revision chain from the tenant's revision down to base.
    if not revision:
        return ()
    location = script_location or get_settings().tenant_migrations_dir
    script = _script_directory(location)
    features: set[str] = set()
    for rev in script.iterate_revisions(revision, "base"):
        features.update(REVISION_CAPABILITIES.get(rev.revision, ()))
    return tuple(sorted(features))


class AlembicMigrationRunner:
    """Applies the packaged tenant migrations to one tenant database at a time."""

    def __init__(self, settings: Settings | None = None, *, script_location: Path | None = None) -> None:
        self._settings = settings or get_settings()
        self._script_location = script_location or self._settings.tenant_migrations_dir

    @property
    def script_location(self) -> Path:
        return self._script_location

    def head_revision(self) -> str | None:
        return _script_directory(self._script_location).get_current_head()

    def _config(self, database_name: str) -> Config:
        config = Config()
        config.set_main_option("script_location", str(self._script_location))
        # Hand the URL over as an attribute; ini interpolation would mangle '%' in passwords.
        url = tenant_url(self._settings.database_url, database_name)
        config.attributes["database_url"] = url.render_as_string(hide_password=False)
        return config

    async def upgrade(self, database_name: str) -> MigrationOutcome:
        database = validate_database_name(database_name)
        config = self._config(database)
        started = time.monotonic()
        # env.py drives its own event loop, so alembic runs on a worker thread.
        await asyncio.to_thread(command.upgrade, config, "head")
        revision = self.head_revision()
        duration_ms = (time.monotonic() - started) * 1000.0
        capabilities = capabilities_for_revision(revision, script_location=self._script_location)
        logger.info(
            "tenant_migrated database=%s revision=%s capabilities=%s duration_ms=%.1f",
            database,
            revision,
            ",".join(capabilities) or "-",
            duration_ms,
        )
        return MigrationOutcome(
            database_name=database,
            revision=revision,
            capabilities=capabilities,
            duration_ms=duration_ms,
        )
