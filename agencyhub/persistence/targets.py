from __future__ import annotations

import re

from sqlalchemy.engine import URL, make_url

from agencyhub.core.errors import InvalidDatabaseNameError


# PostgreSQL truncates identifiers at 63 bytes; reject instead of silently truncating.
MAX_DATABASE_NAME_LENGTH = 63
_DATABASE_NAME_RE = re.compile(r"^[a-z_][a-z0-9_]*$")
# Server-owned databases must never be routed to or created by tenant code paths.
_RESERVED_DATABASE_NAMES = frozenset({"postgres", "template0", "template1"})


def validate_database_name(name: str) -> str:
    # Single allow-list gate for every database identifier that reaches a URL or DDL.
    if not isinstance(name, str):
        raise InvalidDatabaseNameError("Database name must be a string")
    cleaned = name.strip()
    if not cleaned:
        raise InvalidDatabaseNameError("Database name is empty")
    if len(cleaned) > MAX_DATABASE_NAME_LENGTH:
        raise InvalidDatabaseNameError(
            f"Database name exceeds {MAX_DATABASE_NAME_LENGTH} characters"
        )
    if not _DATABASE_NAME_RE.match(cleaned):
        raise InvalidDatabaseNameError(
            "Database name may only contain lowercase letters, digits and underscores"
        )
    if cleaned in _RESERVED_DATABASE_NAMES:
        raise InvalidDatabaseNameError(f"Database name {cleaned!r} is reserved")
    return cleaned


def quote_identifier(name: str) -> str:
    # Validated names contain no quotes, but quote anyway so DDL never sees a bare identifier.
    validated = validate_database_name(name)
    return '"' + validated.replace('"', '""') + '"'


def create_database_sql(name: str) -> str:
    # The only place DDL text is assembled from a tenant-derived identifier.
    return f"CREATE DATABASE {quote_identifier(name)}"


def database_name_of(url: str | URL) -> str | None:
    return make_url(url).database


def tenant_url(base_url: str | URL, database_name: str) -> URL:
    # Swap only the database segment; credentials, host and driver come from the base target.
    return make_url(base_url).set(database=validate_database_name(database_name))


def redact_url(url: str | URL) -> str:
    # Render connection targets for logs without the password.
    return make_url(url).render_as_string(hide_password=True)
