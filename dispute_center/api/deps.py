# =============================================================================
# API Dependencies — Authentication and Caller Identity
# =============================================================================
#
# FastAPI dependencies shared by every router:
#
# 1. get_current_api_key()     — extract & validate the Bearer token
# 2. check_scope()             — verify router-level permission
# 3. get_current_user_email()  — whose FAQs/keys/analyses this request uses
# 4. get_google_access_token() — the caller's Gmail token
#
# Every piece of stored data is owned by a user email. With auth enabled
# the owner is the API key's owner_email and cannot be overridden; with
# auth disabled (local development, single tenant) the X-User-Email
# header picks the user, falling back to settings.default_user_email.
#
# The Google OAuth dance happens in the frontend. The API only receives
# the resulting access token, per request, and never stores it.
# =============================================================================

from __future__ import annotations

import logging
from datetime import UTC, datetime

from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dispute_center.config import settings
from dispute_center.db.engine import get_async_session
from dispute_center.db.models import ApiKey
from dispute_center.services.auth import hash_api_key, is_expired, normalise_email

logger = logging.getLogger(__name__)

# Security scheme for OpenAPI docs (shows "Authorize" button in Swagger UI)
_bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_api_key(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(
        _bearer_scheme,
    ),
    session: AsyncSession = Depends(get_async_session),
) -> ApiKey | None:
    """
    Validate the API key.

    When auth_enabled=False: returns None (anonymous access).
    When auth_enabled=True:
    - Extracts Bearer token from Authorization header
    - SHA-256 hashes and looks up in api_keys table
    - Validates: is_active, not expired
    - Checks rate limit via Redis
    - Updates last_used_at
    - Stores ApiKey on request.state for audit middleware

    Raises:
        HTTPException 401: Missing or invalid API key
        HTTPException 403: Key is inactive or expired
        HTTPException 429: Rate limit exceeded
    """
    if not settings.auth_enabled:
        return None

    if credentials is None:
        raise HTTPException(
            status_code=401,
            detail="Missing API key. Provide "
            "'Authorization: Bearer <key>' header.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    key_hash = hash_api_key(credentials.credentials)
    result = await session.execute(select(ApiKey).where(ApiKey.key_hash == key_hash))
    api_key = result.scalar_one_or_none()

    if api_key is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid API key.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not api_key.is_active:
        raise HTTPException(status_code=403, detail="API key has been deactivated.")

    if is_expired(api_key.expires_at):
        raise HTTPException(status_code=403, detail="API key has expired.")

    # Imported lazily to avoid circular imports
    from dispute_center.services.rate_limiter import check_rate_limit
    await check_rate_limit(api_key)

    api_key.last_used_at = datetime.now(UTC)

    request.state.api_key = api_key
    request.state.user_email = api_key.owner_email

    return api_key


def check_scope(api_key: ApiKey | None, required_scope: str) -> None:
    """
    Verify the API key has the required scope.

    Raises HTTPException 403 if the scope is missing.
    No-op when auth is disabled (api_key is None) or the key has no
    scopes (full access).
    """
    if api_key is None or not api_key.scopes:
        return

    if required_scope not in api_key.scopes:
        raise HTTPException(
            status_code=403,
            detail=f"API key does not have '{required_scope}' scope.",
        )


async def get_current_user_email(
    request: Request,
    api_key: ApiKey | None = Depends(get_current_api_key),
    x_user_email: str | None = Header(default=None),
) -> str:
    """The email address that owns the data this request reads and writes."""
    if api_key is not None:
        user_email = normalise_email(api_key.owner_email)
    elif x_user_email and x_user_email.strip():
        user_email = normalise_email(x_user_email)
    else:
        user_email = normalise_email(settings.default_user_email)

    request.state.user_email = user_email
    return user_email


def get_google_access_token(
    x_google_access_token: str | None = Header(default=None),
) -> str:
    """
    The caller's Google OAuth access token for Gmail reads.

    Raises:
        HTTPException 401: header missing or blank.
    """
    if not x_google_access_token or not x_google_access_token.strip():
        raise HTTPException(
            status_code=401,
            detail="Missing Google access token. Provide the "
            "'X-Google-Access-Token' header.",
        )
    return x_google_access_token.strip()
