from __future__ import annotations

import logging

from agencyhub.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
# Driver and pool chatter drowns out pipeline events at INFO.
_NOISY_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "asyncpg")


def configure_logging(level: str | None = None) -> None:
    # Configure root logging once per process entry point (worker, scripts).
    settings = get_settings()
    resolved = (level or settings.log_level).upper()
    logging.basicConfig(level=resolved, format=_LOG_FORMAT, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, logging.getLogger().level))
