# =============================================================================
# Stripe API — Secret Key Storage, Disputes and Dashboard Metrics
# =============================================================================
#
# ENDPOINTS:
#   GET    /stripe/key       — is a key stored? (masked)
#   PUT    /stripe/key       — validate with Stripe, then store
#   DELETE /stripe/key       — forget the key
#   GET    /stripe/disputes  — disputes, open ones only by default
#   GET    /stripe/metrics   — dashboard counters
#
# Each user brings their own Stripe secret key. It is validated against
# GET /v1/balance before being stored and is never returned unmasked.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from dispute_center.api.deps import check_scope, get_current_api_key, get_current_user_email
from dispute_center.api.errors import error_body
from dispute_center.db.engine import get_async_session
from dispute_center.db.models import ApiKey, StripeKey
from dispute_center.models.requests import StripeKeyRequest
from dispute_center.models.responses import (
    DisputeListResponse,
    DisputeMetricsResponse,
    StripeKeyResponse,
)
from dispute_center.services.stripe import (
    StripeClient,
    dispute_metrics,
    filter_open_disputes,
    mask_key,
    summarise_dispute,
    validate_key,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/stripe", tags=["Stripe"])


async def _stored_key(session: AsyncSession, user_email: str) -> StripeKey | None:
    result = await session.execute(select(StripeKey).where(StripeKey.user_email == user_email))
    return result.scalar_one_or_none()


def _key_response(row: StripeKey | None) -> StripeKeyResponse:
    if row is None:
        return StripeKeyResponse(has_key=False)
    return StripeKeyResponse(
        has_key=True,
        masked_key=mask_key(row.api_key),
        updated_at=row.updated_at,
    )


# ---------------------------------------------------------------------------
# Key management
# ---------------------------------------------------------------------------


@router.get("/key", response_model=StripeKeyResponse, summary="Get the stored Stripe key")
async def get_key(
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    session: AsyncSession = Depends(get_async_session),
) -> StripeKeyResponse:
    check_scope(api_key, "stripe")
    return _key_response(await _stored_key(session, user_email))


@router.put(
    "/key",
    response_model=StripeKeyResponse,
    summary="Store a Stripe secret key",
    description="The key is checked against Stripe first; a rejected key is a 400.",
)
async def put_key(
    request: StripeKeyRequest,
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    session: AsyncSession = Depends(get_async_session),
) -> StripeKeyResponse:
    check_scope(api_key, "stripe")
    secret = request.api_key.strip()

    if not await validate_key(secret):
        raise HTTPException(
            status_code=400,
            detail=error_body("Invalid Stripe API key", "Stripe rejected the key"),
        )

    row = await _stored_key(session, user_email)
    if row is None:
        row = StripeKey(user_email=user_email, api_key=secret)
        session.add(row)
    else:
        row.api_key = secret

    await session.commit()
    await session.refresh(row)
    logger.info("Stripe key stored for %s (%s)", user_email, mask_key(secret))
    return _key_response(row)


@router.delete("/key", status_code=204, summary="Delete the stored Stripe key")
async def delete_key(
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    session: AsyncSession = Depends(get_async_session),
) -> None:
    check_scope(api_key, "stripe")
    await session.execute(delete(StripeKey).where(StripeKey.user_email == user_email))
    await session.commit()
    logger.info("Stripe key deleted for %s", user_email)


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


@router.get(
    "/disputes",
    response_model=DisputeListResponse,
    summary="List disputes",
    description=(
        "Lists the latest 100 disputes with charge and customer expanded. "
        "By default only disputes still awaiting a response are returned."
    ),
)
async def list_disputes(
    open_only: bool = Query(default=True),
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    session: AsyncSession = Depends(get_async_session),
) -> DisputeListResponse:
    check_scope(api_key, "stripe")
    row = await _stored_key(session, user_email)
    if row is None:
        raise HTTPException(
            status_code=404,
            detail=error_body("Stripe key not configured", "PUT /stripe/key first"),
        )

    async with StripeClient(row.api_key) as stripe:
        disputes = await stripe.list_disputes(limit=100)

    if open_only:
        disputes = filter_open_disputes(disputes)

    summaries = [summarise_dispute(d) for d in disputes]
    return DisputeListResponse(disputes=summaries, total=len(summaries))


@router.get(
    "/metrics",
    response_model=DisputeMetricsResponse,
    summary="Dispute dashboard counters",
    description=(
        "Counts open disputes per status (up to 100 each). Counts are null "
        "(and has_stripe_key false) when no key is stored."
    ),
)
async def metrics(
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    session: AsyncSession = Depends(get_async_session),
) -> DisputeMetricsResponse:
    check_scope(api_key, "stripe")
    row = await _stored_key(session, user_email)
    if row is None:
        return DisputeMetricsResponse(**dispute_metrics(None))

    async with StripeClient(row.api_key) as stripe:
        disputes = await stripe.list_open_disputes(limit=100)
    return DisputeMetricsResponse(**dispute_metrics(disputes))
