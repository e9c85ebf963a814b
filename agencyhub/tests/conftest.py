from __future__ import annotations

import pytest

from agencyhub.core.config import get_settings
from agencyhub.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch) -> None:
    # Cheap bcrypt and no warm-up pings keep unit tests fast and offline.
    monkeypatch.setenv("BCRYPT_ROUNDS", "4")
    monkeypatch.setenv("DB_POOL_WARMUP", "false")
    monkeypatch.setenv("DB_RETRY_DELAY_MS", "0")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def reset_counters() -> None:
    # Allow tests to assert on counters without cross-test leakage.
    reset_telemetry()
    yield
    reset_telemetry()
