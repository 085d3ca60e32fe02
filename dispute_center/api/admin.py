# =============================================================================
# Admin API — API Key Management
# =============================================================================
#
# ENDPOINTS (all require the "admin" scope):
#   POST   /admin/keys           — issue a key for a user
#   GET    /admin/keys           — list keys
#   DELETE /admin/keys/{key_id}  — revoke a key
#
# The raw key is returned once, at creation; afterwards only its 8-char
# prefix is visible. Every key belongs to an owner_email, and requests
# made with it read and write that user's data.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dispute_center.api.deps import check_scope, get_current_api_key
from dispute_center.db.engine import get_async_session
from dispute_center.db.models import ApiKey
from dispute_center.models.requests import CreateApiKeyRequest
from dispute_center.models.responses import (
    ApiKeyCreatedResponse,
    ApiKeyListResponse,
    ApiKeyResponse,
)
from dispute_center.services.auth import generate_api_key, normalise_email, validate_scopes

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


def _to_key_response(key: ApiKey) -> ApiKeyResponse:
    """Key metadata without the hash."""
    return ApiKeyResponse(
        id=key.id,
        name=key.name,
        owner_email=key.owner_email,
        key_prefix=key.key_prefix,
        scopes=key.scopes,
        rate_limit_rpm=key.rate_limit_rpm,
        is_active=key.is_active,
        created_at=key.created_at,
        expires_at=key.expires_at,
        last_used_at=key.last_used_at,
    )


@router.post(
    "/keys",
    response_model=ApiKeyCreatedResponse,
    status_code=201,
    summary="Create a new API key",
    description=(
        "Generate a key for `owner_email` with optional scopes, rate limit "
        "and expiry. The raw key is only returned in this response."
    ),
)
async def create_api_key(
    request: CreateApiKeyRequest,
    api_key: ApiKey | None = Depends(get_current_api_key),
    session: AsyncSession = Depends(get_async_session),
) -> ApiKeyCreatedResponse:
    check_scope(api_key, "admin")

    try:
        scopes = validate_scopes(request.scopes)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    raw_key, key_prefix, key_hash = generate_api_key()
    new_key = ApiKey(
        name=request.name,
        owner_email=normalise_email(request.owner_email),
        key_prefix=key_prefix,
        key_hash=key_hash,
        scopes=scopes or None,
        rate_limit_rpm=request.rate_limit_rpm,
        is_active=True,
        expires_at=request.expires_at,
    )
    session.add(new_key)
    await session.commit()
    await session.refresh(new_key)

    logger.info(
        "API key created: id=%d, name='%s', owner=%s, prefix='%s'",
        new_key.id, new_key.name, new_key.owner_email, new_key.key_prefix,
    )
    return ApiKeyCreatedResponse(
        **_to_key_response(new_key).model_dump(),
        raw_key=raw_key,
    )


@router.get("/keys", response_model=ApiKeyListResponse, summary="List all API keys")
async def list_api_keys(
    api_key: ApiKey | None = Depends(get_current_api_key),
    session: AsyncSession = Depends(get_async_session),
) -> ApiKeyListResponse:
    check_scope(api_key, "admin")
    result = await session.execute(select(ApiKey).order_by(ApiKey.created_at.desc()))
    keys = list(result.scalars().all())
    return ApiKeyListResponse(keys=[_to_key_response(k) for k in keys], total=len(keys))


@router.delete("/keys/{key_id}", status_code=204, summary="Delete an API key")
async def delete_api_key(
    key_id: int,
    api_key: ApiKey | None = Depends(get_current_api_key),
    session: AsyncSession = Depends(get_async_session),
) -> None:
    check_scope(api_key, "admin")
    target = await session.get(ApiKey, key_id)
    if target is None:
        raise HTTPException(status_code=404, detail=f"API key {key_id} not found.")
    await session.delete(target)
    await session.commit()
    logger.info("API key deleted: id=%d, name='%s'", key_id, target.name)
