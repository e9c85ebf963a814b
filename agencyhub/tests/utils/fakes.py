from __future__ import annotations

import asyncio
import copy
import itertools
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Callable, Iterable

from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import make_url

from agencyhub.core.errors import JobStateConflictError, ValidationError
from agencyhub.domain import state
from agencyhub.persistence.migrations import MigrationOutcome
from agencyhub.persistence.registry import PoolHandle


def utc(year: int = 2026, month: int = 1, day: int = 1, hour: int = 12, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


class FakeResult:
    def __init__(self, rows: list[dict[str, Any]] | None = None, rowcount: int | None = None) -> None:
        self._rows = rows
        self.rowcount = rowcount if rowcount is not None else len(rows or [])

    @property
    def returns_rows(self) -> bool:
        return self._rows is not None

    def mappings(self) -> "FakeResult":
        return self

    def all(self) -> list[dict[str, Any]]:
        return list(self._rows or [])


class FakeConnection:
    def __init__(self, engine: "FakeEngine") -> None:
        self._engine = engine
        self.isolation_level: str | None = None

    async def execute(self, statement: Any, params: dict[str, Any] | None = None) -> FakeResult:
        self._engine.executed.append((str(statement), params, self.isolation_level))
        return self._engine.handler(statement, params)

    async def execution_options(self, **options: Any) -> "FakeConnection":
        self.isolation_level = options.get("isolation_level")
        return self

    @asynccontextmanager
    async def begin(self):
        self._engine.transactions += 1
        yield self


class FakeEngine:
    """Stands in for an AsyncEngine: scripted connect failures and statement results."""

    def __init__(self, url: Any = None, **kwargs: Any) -> None:
        self.url = url
        self.kwargs = kwargs
        self.disposed = False
        self.connect_errors: list[BaseException] = []
        self.connect_attempts = 0
        self.transactions = 0
        self.executed: list[tuple[str, Any, str | None]] = []
        self.handler: Callable[[Any, Any], FakeResult] = lambda statement, params: FakeResult(rows=[])
        self.sync_engine = SimpleNamespace(
            pool=SimpleNamespace(
                size=lambda: kwargs.get("pool_size", 0),
                checkedout=lambda: 0,
                checkedin=lambda: 0,
                overflow=lambda: 0,
            )
        )

    @asynccontextmanager
    async def connect(self):
        self.connect_attempts += 1
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        yield FakeConnection(self)

    @asynccontextmanager
    async def begin(self):
        async with self.connect() as conn:
            async with conn.begin():
                yield conn

    async def dispose(self) -> None:
        self.disposed = True


class FakeEngineFactory:
    """Records every engine the registry builds."""

    def __init__(self, delay_s: float = 0.0) -> None:
        self.engines: list[FakeEngine] = []
        self._delay_s = delay_s

    def __call__(self, url: Any, **kwargs: Any) -> FakeEngine:
        engine = FakeEngine(url, **kwargs)
        self.engines.append(engine)
        return engine

    async def warm_up(self, engine: FakeEngine) -> None:
        # Yield long enough that concurrent callers pile up behind the first one.
        await asyncio.sleep(self._delay_s)

    def for_database(self, name: str) -> list[FakeEngine]:
        return [engine for engine in self.engines if make_url(engine.url).database == name]


def transient_error() -> BaseException:
    return sa_exc.OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))


def integrity_error() -> BaseException:
    return sa_exc.IntegrityError("INSERT", {}, Exception("duplicate key value violates unique constraint"))


class FakeRegistry:
    def __init__(self, control_name: str = "agencyhub") -> None:
        self.control_pool = PoolHandle(name=control_name, engine=FakeEngine(), is_control=True)
        self.pools: dict[str, PoolHandle] = {}

    async def control(self) -> PoolHandle:
        return self.control_pool

    async def get_pool(self, name: str) -> PoolHandle:
        if name not in self.pools:
            self.pools[name] = PoolHandle(name=name, engine=FakeEngine())
        return self.pools[name]


class FakeExecutor:
    def __init__(self, registry: FakeRegistry | None = None) -> None:
        self.registry = registry or FakeRegistry()


@dataclass
class StoredIdentity:
    id: str
    email: str
    password_hash: str | None
    is_active: bool = True
    email_confirmed: bool = True
    failed_login_attempts: int = 0
    locked_until: datetime | None = None
    last_sign_in_at: datetime | None = None
    two_factor_enabled: bool = False
    full_name: str | None = None
    roles: list[str] = field(default_factory=list)


class IdentityStore:
    """In-memory replacement for the identities repository functions, keyed by database."""

    def __init__(self) -> None:
        self.platform: dict[str, StoredIdentity] = {}
        self.tenants: dict[str, dict[str, StoredIdentity]] = {}
        self.crypt_hashes: dict[str, str] = {}

    def add_platform(self, identity: StoredIdentity) -> StoredIdentity:
        self.platform[identity.email.lower()] = identity
        return identity

    def add_tenant(self, database: str, identity: StoredIdentity) -> StoredIdentity:
        self.tenants.setdefault(database, {})[identity.email.lower()] = identity
        return identity

    def _by_id(self, pool: PoolHandle, user_id: str) -> StoredIdentity:
        source = self.platform if pool.is_control else self.tenants[pool.name]
        return next(identity for identity in source.values() if identity.id == user_id)

    @staticmethod
    def _row(identity: StoredIdentity) -> dict[str, Any]:
        return {
            "id": identity.id,
            "email": identity.email,
            "password_hash": identity.password_hash,
            "is_active": identity.is_active,
            "email_confirmed": identity.email_confirmed,
            "failed_login_attempts": identity.failed_login_attempts,
            "locked_until": identity.locked_until,
            "full_name": identity.full_name,
        }

    async def find_platform_identity(self, executor, pool, email_normalized):
        identity = self.platform.get(email_normalized)
        if identity is None or not identity.is_active:
            return None
        return self._row(identity)

    async def find_tenant_identity(self, executor, pool, email_normalized, *, two_factor):
        identity = self.tenants.get(pool.name, {}).get(email_normalized)
        if identity is None:
            return None
        row = self._row(identity)
        row.pop("full_name")
        if two_factor:
            row["two_factor_enabled"] = identity.two_factor_enabled
        return row

    async def load_tenant_roles(self, executor, pool, user_id):
        return sorted(role for role in self._by_id(pool, user_id).roles if role != "super_admin")

    async def load_tenant_profile(self, executor, pool, user_id):
        return {"full_name": self._by_id(pool, user_id).full_name, "phone": None}

    async def record_failed_login(self, executor, pool, user_id, *, lock_for):
        # Increment and lock without yielding, as the UPDATE ... RETURNING does in one statement.
        identity = self._by_id(pool, user_id)
        identity.failed_login_attempts += 1
        locked_until = lock_for(identity.failed_login_attempts)
        if locked_until is not None:
            identity.locked_until = locked_until
        return identity.failed_login_attempts, locked_until

    async def record_successful_login(self, executor, pool, user_id, *, signed_in_at):
        identity = self._by_id(pool, user_id)
        identity.failed_login_attempts = 0
        identity.locked_until = None
        identity.last_sign_in_at = signed_in_at

    async def verify_crypt_hash(self, executor, pool, password, password_hash):
        return self.crypt_hashes.get(password_hash) == password

    def install(self, monkeypatch, module) -> None:
        for name in (
            "find_platform_identity",
            "find_tenant_identity",
            "load_tenant_roles",
            "load_tenant_profile",
            "record_failed_login",
            "record_successful_login",
            "verify_crypt_hash",
        ):
            monkeypatch.setattr(module, name, getattr(self, name))


class FakeDirectory:
    """In-memory tenant directory with the same compare-and-set semantics as the SQL one."""

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self.tenants: dict[str, dict[str, Any]] = {}
        self.jobs: dict[str, dict[str, Any]] = {}
        self.events: list[dict[str, Any]] = []
        self.seeds: dict[str, dict[str, Any]] = {}
        self.capabilities: dict[str, dict[str, Any]] = {}
        self.login_attempts: list[dict[str, Any]] = []
        self.fail_on: dict[str, BaseException] = {}
        self._ticks = itertools.count()
        self._clock = clock

    def now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        # Strictly increasing timestamps keep "earlier signup" comparisons deterministic.
        return utc() + timedelta(milliseconds=next(self._ticks))

    def _maybe_fail(self, operation: str) -> None:
        error = self.fail_on.pop(operation, None)
        if error is not None:
            raise error

    def add_tenant(self, **fields: Any) -> dict[str, Any]:
        tenant = {
            "id": fields.pop("id"),
            "name": fields.pop("name", "Agency"),
            "domain": fields.pop("domain"),
            "database_name": fields.pop("database_name"),
            "owner_user_id": fields.pop("owner_user_id", None),
            "subscription_plan": fields.pop("subscription_plan", "trial"),
            "status": fields.pop("status", state.AGENCY_ACTIVE),
            "is_active": fields.pop("is_active", True),
            "is_ephemeral": fields.pop("is_ephemeral", False),
            "deleted_at": fields.pop("deleted_at", None),
            "created_at": self.now(),
        }
        tenant.update(fields)
        self.tenants[tenant["id"]] = tenant
        return tenant

    def add_job(self, **fields: Any) -> dict[str, Any]:
        now = self.now()
        job = {
            "idempotency_key": None,
            "request_hash": None,
            "status": state.PENDING,
            "payload": {},
            "result": None,
            "current_step": None,
            "error_message": None,
            "error_code": None,
            "error_details": None,
            "stack_trace": None,
            "progress_percentage": 0,
            "worker_id": None,
            "attempt_count": 0,
            "timeout_seconds": 300,
            "created_at": now,
            "started_at": None,
            "completed_at": None,
            "updated_at": now,
        }
        job.update(fields)
        self.jobs[job["id"]] = job
        return job

    def statuses(self, job_id: str) -> list[str]:
        return [event["status"] for event in self.events if event["job_id"] == job_id]

    def progress(self, job_id: str) -> list[int]:
        return [event["progress_percentage"] for event in self.events if event["job_id"] == job_id]

    def _event(self, job_id: str, *, status: str, progress: int, message: str | None, worker_id: str | None) -> None:
        self.events.append(
            {
                "id": len(self.events) + 1,
                "job_id": job_id,
                "status": status,
                "progress_percentage": progress,
                "message": message,
                "worker_id": worker_id,
                "created_at": self.now(),
            }
        )

    @staticmethod
    def _matches(domain: str, raw: str, subdomain: str) -> bool:
        lowered = domain.lower()
        return lowered == raw.lower() or lowered == subdomain or lowered.startswith(subdomain + ".")

    async def get_tenant(self, tenant_id: str) -> dict[str, Any] | None:
        tenant = self.tenants.get(tenant_id)
        return copy.deepcopy(tenant) if tenant else None

    async def list_tenants(self, *, include_inactive: bool = False) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(tenant)
            for tenant in self.tenants.values()
            if tenant.get("deleted_at") is None and (include_inactive or tenant["is_active"])
        ]

    async def get_job(self, job_id: str) -> dict[str, Any] | None:
        job = self.jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def list_job_events(self, job_id: str) -> list[dict[str, Any]]:
        return [event for event in self.events if event["job_id"] == job_id]

    async def find_job_by_idempotency_key(self, idempotency_key: str) -> dict[str, Any] | None:
        matches = [job for job in self.jobs.values() if job["idempotency_key"] == idempotency_key]
        if not matches:
            return None
        return copy.deepcopy(max(matches, key=lambda job: job["created_at"]))

    async def find_tenant_by_domain(self, domain: str) -> dict[str, Any] | None:
        for tenant in self.tenants.values():
            if tenant["domain"].lower() == domain.lower():
                return copy.deepcopy(tenant)
        return None

    async def find_conflicting_tenants(
        self, subdomain: str, *, exclude_tenant_id: str | None = None
    ) -> list[dict[str, Any]]:
        rows = []
        for tenant in self.tenants.values():
            if tenant["id"] == exclude_tenant_id or tenant.get("deleted_at") is not None:
                continue
            if tenant["status"] not in (state.AGENCY_ACTIVE, state.AGENCY_PENDING):
                continue
            if not self._matches(tenant["domain"], subdomain, subdomain):
                continue
            open_jobs = [
                job
                for job in self.jobs.values()
                if job["tenant_id"] == tenant["id"] and job["status"] in state.NON_TERMINAL_STATUSES
            ]
            for job in open_jobs or [None]:
                rows.append(
                    {
                        "id": tenant["id"],
                        "domain": tenant["domain"],
                        "status": tenant["status"],
                        "job_id": job["id"] if job else None,
                        "idempotency_key": job["idempotency_key"] if job else None,
                        "job_created_at": job["created_at"] if job else None,
                    }
                )
        return rows

    async def find_tenants_for_login(self, raw_domain: str, subdomain: str) -> list[dict[str, Any]]:
        rows = []
        for tenant in self.tenants.values():
            if tenant["status"] != state.AGENCY_ACTIVE or not tenant["is_active"] or tenant.get("deleted_at"):
                continue
            if not self._matches(tenant["domain"], raw_domain, subdomain):
                continue
            record = self.capabilities.get(tenant["id"])
            rows.append(
                {
                    "id": tenant["id"],
                    "domain": tenant["domain"],
                    "database_name": tenant["database_name"],
                    "is_ephemeral": tenant["is_ephemeral"],
                    "schema_revision": record["schema_revision"] if record else None,
                    "capabilities": list(record["capabilities"]) if record else None,
                }
            )
        return rows[:10]

    async def create_tenant_with_job(
        self, *, tenant: dict[str, Any], job: dict[str, Any], seed: dict[str, Any]
    ) -> dict[str, Any]:
        self._maybe_fail("create_tenant_with_job")
        if await self.find_tenant_by_domain(tenant["domain"]) is not None:
            raise integrity_error()
        for other in self.jobs.values():
            if (
                other["idempotency_key"] == job["idempotency_key"]
                and other["status"] not in state.RETRYABLE_TERMINAL_STATUSES
            ):
                raise integrity_error()
        self.add_tenant(**tenant)
        created = self.add_job(**job)
        self.seeds[tenant["id"]] = dict(seed)
        self._event(job["id"], status=state.PENDING, progress=0, message="Signup accepted", worker_id=None)
        return copy.deepcopy(created)

    async def create_retry_job(self, *, job: dict[str, Any], seed: dict[str, Any]) -> dict[str, Any]:
        self._maybe_fail("create_retry_job")
        for other in self.jobs.values():
            if (
                other["idempotency_key"] == job["idempotency_key"]
                and other["status"] not in state.RETRYABLE_TERMINAL_STATUSES
            ):
                raise integrity_error()
        created = self.add_job(**job)
        self.seeds[seed["tenant_id"]] = dict(seed)
        self._event(job["id"], status=state.PENDING, progress=0, message="Signup resubmitted", worker_id=None)
        return copy.deepcopy(created)

    async def transition_job(
        self,
        job_id: str,
        *,
        to_status: str,
        from_statuses: Iterable[str],
        progress: int | None = None,
        message: str | None = None,
        worker_id: str | None = None,
        fields: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        self._maybe_fail(f"transition:{to_status}")
        job = self.jobs.get(job_id)
        if job is None or job["status"] not in set(from_statuses):
            raise JobStateConflictError(
                f"Job {job_id} cannot move to {to_status} from {job['status'] if job else None}"
            )
        job["status"] = to_status
        job["updated_at"] = self.now()
        if to_status in state.IN_PROGRESS_STATUSES:
            job["current_step"] = to_status
        if progress is not None:
            job["progress_percentage"] = max(job["progress_percentage"], progress)
        if worker_id is not None:
            job["worker_id"] = worker_id
        if fields:
            job.update(fields)
        self._event(
            job_id,
            status=to_status,
            progress=job["progress_percentage"],
            message=message,
            worker_id=worker_id,
        )
        return copy.deepcopy(job)

    async def mark_failed(
        self,
        job_id: str,
        *,
        step: str,
        message: str,
        error_code: str,
        error_details: dict[str, Any],
        stack_trace: str | None,
        worker_id: str | None,
    ) -> dict[str, Any]:
        return await self.transition_job(
            job_id,
            to_status=state.FAILED,
            from_statuses=state.allowed_sources(state.FAILED),
            message=f"{step}: {message}",
            worker_id=worker_id,
            fields={
                "error_message": message,
                "error_code": error_code,
                "error_details": error_details,
                "stack_trace": stack_trace,
                "completed_at": self.now(),
            },
        )

    async def finalize(
        self,
        job_id: str,
        tenant_id: str,
        *,
        result: dict[str, Any],
        worker_id: str | None,
        purge_owner_seed: bool,
    ) -> dict[str, Any]:
        self._maybe_fail("finalize")
        job = self.jobs[job_id]
        if job["status"] not in state.allowed_sources(state.COMPLETED):
            raise JobStateConflictError(f"Job {job_id} cannot complete from {job['status']}")
        job.update(
            status=state.COMPLETED,
            current_step=None,
            progress_percentage=state.PROGRESS_COMPLETED,
            result=result,
            completed_at=self.now(),
        )
        self.tenants[tenant_id].update(status=state.AGENCY_ACTIVE, is_active=True)
        if purge_owner_seed:
            self.seeds.pop(tenant_id, None)
        self._event(
            job_id,
            status=state.COMPLETED,
            progress=state.PROGRESS_COMPLETED,
            message="Tenant database ready",
            worker_id=worker_id,
        )
        return copy.deepcopy(job)

    async def list_open_jobs(self) -> list[dict[str, Any]]:
        return [copy.deepcopy(job) for job in self.jobs.values() if job["status"] in state.NON_TERMINAL_STATUSES]

    async def get_owner_seed(self, tenant_id: str) -> dict[str, Any] | None:
        seed = self.seeds.get(tenant_id)
        return dict(seed) if seed else None

    async def store_capabilities(self, tenant_id: str, *, revision: str | None, capabilities: Iterable[str]) -> None:
        self.capabilities[tenant_id] = {
            "tenant_id": tenant_id,
            "schema_revision": revision,
            "capabilities": sorted(set(capabilities)),
        }

    async def get_capabilities(self, tenant_id: str) -> dict[str, Any] | None:
        return self.capabilities.get(tenant_id)

    async def record_login_attempt(self, **attempt: Any) -> None:
        self._maybe_fail("record_login_attempt")
        self.login_attempts.append(attempt)


class FakeAdmin:
    def __init__(self) -> None:
        self.databases: set[str] = set()
        self.create_calls = 0
        self.fail_with: BaseException | None = None

    async def database_exists(self, name: str) -> bool:
        return name in self.databases

    async def create_database_if_missing(self, name: str) -> bool:
        self.create_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        if name in self.databases:
            return False
        self.databases.add(name)
        return True


class FakeMigrations:
    def __init__(self, revision: str = "t0002_two_factor", capabilities: tuple[str, ...] = ("two_factor",)) -> None:
        self.revision = revision
        self.capabilities = capabilities
        self.upgraded: list[str] = []
        self.fail_with: BaseException | None = None

    async def upgrade(self, database_name: str) -> MigrationOutcome:
        if self.fail_with is not None:
            raise self.fail_with
        self.upgraded.append(database_name)
        return MigrationOutcome(
            database_name=database_name,
            revision=self.revision,
            capabilities=self.capabilities,
            duration_ms=1.0,
        )


class FakeSeeder:
    """Tenant databases as dicts of users and role grants; inserts are no-ops on rerun."""

    def __init__(self, admin: FakeAdmin | None = None) -> None:
        self._admin = admin
        self.users: dict[str, dict[str, dict[str, Any]]] = {}
        self.roles: dict[str, set[tuple[str, str]]] = {}
        self.settings: dict[str, dict[str, Any]] = {}
        self.fail_with: BaseException | None = None

    def _require(self, database_name: str) -> None:
        if self._admin is not None and database_name not in self._admin.databases:
            raise ValidationError(f"database {database_name} does not exist", code="MISSING_DATABASE")

    async def seed_owner(self, database_name: str, *, owner, agency) -> bool:
        if self.fail_with is not None:
            raise self.fail_with
        self._require(database_name)
        users = self.users.setdefault(database_name, {})
        self.settings.setdefault(database_name, {"agency_id": agency.agency_id, "domain": agency.domain})
        if owner.user_id in users:
            return False
        users[owner.user_id] = {
            "email": owner.email,
            "password_hash": owner.password_hash,
            "email_confirmed": True,
        }
        return True

    async def assign_owner_role(self, database_name: str, *, user_id: str, role: str) -> bool:
        self._require(database_name)
        grants = self.roles.setdefault(database_name, set())
        if (user_id, role) in grants:
            return False
        grants.add((user_id, role))
        return True


class FakeQueue:
    def __init__(self) -> None:
        self.enqueued: list[Any] = []

    async def enqueue(self, payload) -> str:
        self.enqueued.append(payload)
        return payload.job_id
