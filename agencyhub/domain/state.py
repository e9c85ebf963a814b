from __future__ import annotations

from typing import Literal


JobStatus = Literal[
    "pending",
    "validating",
    "creating_database",
    "seeding_data",
    "assigning_permissions",
    "completed",
    "failed",
    "cancelled",
    "timeout",
]

PENDING = "pending"
VALIDATING = "validating"
CREATING_DATABASE = "creating_database"
SEEDING_DATA = "seeding_data"
ASSIGNING_PERMISSIONS = "assigning_permissions"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"
TIMEOUT = "timeout"

# Pipeline order for a successful run.
PIPELINE_SEQUENCE = (
    PENDING,
    VALIDATING,
    CREATING_DATABASE,
    SEEDING_DATA,
    ASSIGNING_PERMISSIONS,
    COMPLETED,
)
IN_PROGRESS_STATUSES = frozenset({VALIDATING, CREATING_DATABASE, SEEDING_DATA, ASSIGNING_PERMISSIONS})
TERMINAL_STATUSES = frozenset({COMPLETED, FAILED, CANCELLED, TIMEOUT})
# Terminal states that leave the idempotency key free for a fresh attempt.
RETRYABLE_TERMINAL_STATUSES = frozenset({FAILED, CANCELLED, TIMEOUT})
NON_TERMINAL_STATUSES = frozenset({PENDING}) | IN_PROGRESS_STATUSES

# Allowed predecessors for each target state.
_ALLOWED_FROM: dict[str, frozenset[str]] = {
    # Redelivery after a crash restarts the pipeline from validation.
    VALIDATING: frozenset({PENDING}) | IN_PROGRESS_STATUSES,
    CREATING_DATABASE: frozenset({VALIDATING}),
    SEEDING_DATA: frozenset({CREATING_DATABASE, SEEDING_DATA}),
    ASSIGNING_PERMISSIONS: frozenset({SEEDING_DATA}),
    COMPLETED: frozenset({ASSIGNING_PERMISSIONS}),
    FAILED: NON_TERMINAL_STATUSES,
    CANCELLED: frozenset({PENDING, VALIDATING}),
    TIMEOUT: frozenset({PENDING, VALIDATING}),
}

# Coarse progress checkpoints reported to polling callers.
PROGRESS_VALIDATING = 10
PROGRESS_CREATING_DATABASE = 30
PROGRESS_SEEDING_SCHEMA = 50
PROGRESS_SEEDING_ADMIN = 70
PROGRESS_ASSIGNING_PERMISSIONS = 90
PROGRESS_COMPLETED = 100

AGENCY_PENDING = "pending"
AGENCY_ACTIVE = "active"
AGENCY_SUSPENDED = "suspended"
AGENCY_CANCELLED = "cancelled"


def allowed_sources(target: str) -> frozenset[str]:
    try:
        return _ALLOWED_FROM[target]
    except KeyError as exc:
        raise ValueError(f"Unknown job status {target!r}") from exc


def can_transition(current: str, target: str) -> bool:
    return current in allowed_sources(target)


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES
