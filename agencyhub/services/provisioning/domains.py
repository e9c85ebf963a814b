from __future__ import annotations

import re

from agencyhub.core.errors import ValidationError
from agencyhub.persistence.targets import MAX_DATABASE_NAME_LENGTH, validate_database_name


MIN_SUBDOMAIN_LENGTH = 3
MAX_SUBDOMAIN_LENGTH = 63
MIN_AGENCY_NAME_LENGTH = 2
MAX_AGENCY_NAME_LENGTH = 100
DATABASE_PREFIX = "agency_"

RESERVED_SUBDOMAINS = frozenset(
    {
        # System paths
        "admin", "api", "app", "auth", "billing", "blog", "cdn", "dashboard",
        "dev", "docs", "help", "login", "mail", "panel", "portal", "support",
        "system", "test", "www", "static", "assets", "images", "files",
        "ftp", "sftp", "ssh", "vpn", "proxy", "cache", "db", "database",
        "server", "host", "node", "cluster", "backend", "frontend", "web",
        # Platform
        "agencyhub", "platform",
        # Protected terms
        "account", "accounts", "status", "health", "oauth", "security",
        "root", "superuser", "superadmin", "sysadmin", "administrator",
        # Business
        "pricing", "plans", "enterprise", "team", "teams",
        "legal", "terms", "privacy", "about", "contact", "careers",
        # Test patterns
        "demo", "example", "sample", "staging", "production", "sandbox",
    }
)

BLOCKED_TERMS = (
    "fuck", "shit", "porn", "xxx", "sex", "nude", "nsfw",
    "hack", "phishing", "scam", "spam", "malware",
    "nazi", "hitler", "terrorist",
)

_SUBDOMAIN_RE = re.compile(r"^[a-z0-9-]+$")


def extract_subdomain(domain: str | None) -> str:
    if not domain:
        return ""
    return domain.strip().lower().split(".", 1)[0]


def sanitize_subdomain(value: str) -> str:
    # Collapse anything outside [a-z0-9-] into single hyphens and trim the ends.
    cleaned = re.sub(r"[^a-z0-9-]", "-", (value or "").lower())
    cleaned = re.sub(r"-+", "-", cleaned).strip("-")
    return cleaned[:MAX_SUBDOMAIN_LENGTH]


def contains_blocked_term(value: str) -> bool:
    lowered = (value or "").lower()
    collapsed = re.sub(r"[-_]", "", lowered)
    return any(term in collapsed or term in lowered for term in BLOCKED_TERMS)


def validate_subdomain(domain: str) -> str:
    """Return the bare subdomain for ``domain`` or raise ``ValidationError``."""
    if not domain or not domain.strip():
        raise ValidationError("Workspace URL is required", code="DOMAIN_REQUIRED")
    subdomain = extract_subdomain(domain)
    if len(subdomain) < MIN_SUBDOMAIN_LENGTH:
        raise ValidationError(
            f"URL must be at least {MIN_SUBDOMAIN_LENGTH} characters", code="DOMAIN_TOO_SHORT"
        )
    if len(subdomain) > MAX_SUBDOMAIN_LENGTH:
        raise ValidationError(
            f"URL cannot exceed {MAX_SUBDOMAIN_LENGTH} characters", code="DOMAIN_TOO_LONG"
        )
    if not _SUBDOMAIN_RE.match(subdomain):
        raise ValidationError(
            "URL can only contain lowercase letters, numbers, and hyphens",
            code="DOMAIN_INVALID_FORMAT",
        )
    if not subdomain[0].isalnum():
        raise ValidationError("URL must start with a letter or number", code="DOMAIN_INVALID_START")
    if not subdomain[-1].isalnum():
        raise ValidationError("URL must end with a letter or number", code="DOMAIN_INVALID_END")
    if "--" in subdomain:
        raise ValidationError("URL cannot contain consecutive hyphens", code="DOMAIN_CONSECUTIVE_HYPHENS")
    if subdomain in RESERVED_SUBDOMAINS:
        raise ValidationError("This URL is reserved", code="DOMAIN_RESERVED")
    if contains_blocked_term(subdomain):
        raise ValidationError("This URL is not allowed", code="DOMAIN_INAPPROPRIATE")
    return subdomain


def validate_agency_name(name: str) -> str:
    trimmed = (name or "").strip()
    if len(trimmed) < MIN_AGENCY_NAME_LENGTH:
        raise ValidationError(
            f"Name must be at least {MIN_AGENCY_NAME_LENGTH} characters", code="AGENCY_NAME_INVALID"
        )
    if len(trimmed) > MAX_AGENCY_NAME_LENGTH:
        raise ValidationError(
            f"Name cannot exceed {MAX_AGENCY_NAME_LENGTH} characters", code="AGENCY_NAME_INVALID"
        )
    if contains_blocked_term(trimmed):
        raise ValidationError("Name contains inappropriate content", code="AGENCY_NAME_INVALID")
    return trimmed


def generate_database_name(domain: str, tenant_id: str) -> str:
    # agency_<subdomain with underscores>_<first 8 id chars>, within Postgres' 63-byte limit.
    sanitized = re.sub(r"[^a-z0-9]", "_", extract_subdomain(domain))
    sanitized = re.sub(r"_+", "_", sanitized).strip("_") or "agency"
    suffix = "_" + re.sub(r"[^a-z0-9]", "", tenant_id.lower())[:8]
    max_len = MAX_DATABASE_NAME_LENGTH - len(DATABASE_PREFIX) - len(suffix)
    return validate_database_name(f"{DATABASE_PREFIX}{sanitized[:max_len]}{suffix}")
