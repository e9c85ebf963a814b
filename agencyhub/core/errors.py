from __future__ import annotations

from datetime import datetime


class AgencyHubError(Exception):
    """Base error for agencyhub."""


class ValidationError(AgencyHubError):
    """Bad input or domain conflict, raised before any state is created."""

    def __init__(self, message: str, *, code: str = "VALIDATION_ERROR") -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class InvalidDatabaseNameError(ValidationError):
    """Database identifier rejected by the allow-list sanitizer."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_DATABASE_NAME")


class ProvisioningError(AgencyHubError):
    """A provisioning pipeline step failed; the job is marked failed."""

    def __init__(self, message: str, *, step: str, job_id: str | None = None) -> None:
        super().__init__(message)
        self.step = step
        self.job_id = job_id


class JobStateConflictError(AgencyHubError):
    """A job status transition was refused because the stored status moved on."""


class DatabaseError(AgencyHubError):
    """Database layer failure."""


class DatabaseConnectionError(DatabaseError):
    """Transient connection failure that survived the executor's retries."""

    def __init__(self, message: str, *, database: str) -> None:
        super().__init__(message)
        self.database = database


class AuthenticationError(AgencyHubError):
    """Generic invalid-credentials result; never says which part was wrong."""

    def __init__(self, message: str = "Invalid email or password") -> None:
        super().__init__(message)


class LockoutError(AgencyHubError):
    """Identity is temporarily locked after repeated failed attempts."""

    def __init__(self, *, locked_until: datetime, retry_after_minutes: int) -> None:
        super().__init__(
            "Account is locked due to too many failed login attempts. "
            f"Please try again in {retry_after_minutes} minutes."
        )
        self.locked_until = locked_until
        self.retry_after_minutes = retry_after_minutes
