from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from agencyhub.core.config import Settings, get_settings


@dataclass(frozen=True)
class LockoutPolicy:
    max_failed_attempts: int
    lockout_minutes: int
    progressive: bool = True
    max_lockout_minutes: int = 1440

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "LockoutPolicy":
        settings = settings or get_settings()
        return cls(
            max_failed_attempts=max(1, settings.auth_max_failed_attempts),
            lockout_minutes=max(1, settings.auth_lockout_minutes),
            progressive=settings.auth_progressive_lockout,
            max_lockout_minutes=max(1, settings.auth_max_lockout_minutes),
        )

    def lock_window(self, failed_attempts: int) -> timedelta | None:
        # No lock below the threshold; each failure past it doubles the window when progressive.
        if failed_attempts < self.max_failed_attempts:
            return None
        minutes = self.lockout_minutes
        if self.progressive:
            overshoot = failed_attempts - self.max_failed_attempts
            minutes = self.lockout_minutes * (2 ** min(overshoot, 16))
        return timedelta(minutes=min(minutes, self.max_lockout_minutes))

    def locked_until_after_failure(self, failed_attempts: int, now: datetime) -> datetime | None:
        window = self.lock_window(failed_attempts)
        return now + window if window is not None else None


def is_locked(locked_until: datetime | None, now: datetime) -> bool:
    return locked_until is not None and locked_until > now


def retry_after_minutes(locked_until: datetime, now: datetime) -> int:
    # Whole minutes, rounded up; a lock that is still active always reports at least one.
    remaining = (locked_until - now).total_seconds()
    return max(1, math.ceil(remaining / 60.0))
