from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

import bcrypt
from sqlalchemy import exc as sa_exc

from agencyhub.core.config import get_settings


logger = logging.getLogger(__name__)

BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")
# bcrypt silently ignores input past 72 bytes; reject it at signup instead.
MAX_PASSWORD_BYTES = 72

# Verifies a legacy hash against the database that stored it.
CryptVerifier = Callable[[str, str], Awaitable[bool]]

_dummy_hash: bytes | None = None


def is_bcrypt_hash(password_hash: str | None) -> bool:
    return bool(password_hash) and password_hash.startswith(BCRYPT_PREFIXES)


def hash_password(password: str, *, rounds: int | None = None) -> str:
    encoded = password.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password exceeds {MAX_PASSWORD_BYTES} bytes")
    cost = rounds if rounds is not None else get_settings().bcrypt_rounds
    return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=cost)).decode("ascii")


def _checkpw(password: str, password_hash: str) -> bool:
    encoded = password.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, password_hash.encode("ascii"))
    except ValueError:
        # Malformed stored hash: treat as a mismatch.
        return False


async def verify_password(password: str, password_hash: str | None, *, crypt_verifier: CryptVerifier) -> bool:
    """Check a password against either supported hash scheme.

    bcrypt hashes are verified in-process (off the event loop). Anything else
    is a legacy pgcrypto ``crypt()`` hash and is delegated to the database
    that holds the identity, so migrating schemes never forces a reset.
    """
    if not password or not password_hash:
        return False
    if is_bcrypt_hash(password_hash):
        return await asyncio.to_thread(_checkpw, password, password_hash)
    try:
        return await crypt_verifier(password, password_hash)
    except sa_exc.DBAPIError as exc:
        # crypt() rejects unknown salt formats; an unusable stored hash never matches.
        logger.warning("legacy_hash_verification_failed error=%s", type(exc).__name__)
        return False


async def burn_verification_time(password: str) -> None:
    # Spend one bcrypt check when no identity matched so response timing stays flat.
    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = bcrypt.hashpw(b"agencyhub-timing-pad", bcrypt.gensalt(rounds=get_settings().bcrypt_rounds))
    await asyncio.to_thread(_checkpw, password or "", _dummy_hash.decode("ascii"))
