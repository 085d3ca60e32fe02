# =============================================================================
# Auth Service — API Key Generation, Hashing and Scopes
# =============================================================================
#
# Pure functions for API key management, shared by the auth dependency,
# the admin endpoints and tests.
#
# Keys are 32 random bytes, so an unsalted SHA-256 digest is enough to
# store them: it is deterministic (needed for the lookup by hash) and
# there is no low-entropy secret to brute-force.
#
# Scopes map onto the router groups. A key with no scopes may call
# everything.
# =============================================================================

from __future__ import annotations

import hashlib
import secrets
from datetime import UTC, datetime

KNOWN_SCOPES: frozenset[str] = frozenset(
    {"emails", "faq", "knowledge", "stripe", "settings", "admin"}
)

KEY_PREFIX = "dc-"


def generate_api_key() -> tuple[str, str, str]:
    """
    Generate a new API key.

    Returns:
        (raw_key, key_prefix, key_hash):
        - raw_key: Full key, shown to the caller once
        - key_prefix: First 8 chars, safe to show in admin listings
        - key_hash: SHA-256 hex digest stored in the database
    """
    raw_key = f"{KEY_PREFIX}{secrets.token_hex(32)}"
    return raw_key, raw_key[:8], hash_api_key(raw_key)


def hash_api_key(raw_key: str) -> str:
    """SHA-256 hex digest of a raw key (64 chars)."""
    return hashlib.sha256(raw_key.encode()).hexdigest()


def validate_scopes(scopes: list[str] | None) -> list[str]:
    """
    Deduplicate scopes, preserving order.

    Raises:
        ValueError: a scope is not one of KNOWN_SCOPES.
    """
    if not scopes:
        return []
    unknown = sorted(set(scopes) - KNOWN_SCOPES)
    if unknown:
        raise ValueError(
            f"Unknown scopes: {unknown}. Valid scopes: {sorted(KNOWN_SCOPES)}"
        )
    return list(dict.fromkeys(scopes))


def is_expired(expires_at: datetime | None, now: datetime | None = None) -> bool:
    if expires_at is None:
        return False
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    return expires_at < (now or datetime.now(UTC))


def normalise_email(email: str) -> str:
    return email.strip().lower()
