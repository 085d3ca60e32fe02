# =============================================================================
# FAQ API — The Support Team's Answer Library
# =============================================================================
#
# ENDPOINTS:
#   GET    /faq            — list the user's FAQs
#   POST   /faq            — create or update (upsert) a FAQ
#   DELETE /faq/{faq_id}   — delete a FAQ
#   POST   /faq/match      — rank FAQs against a question (no LLM)
#   POST   /faq/simulate   — AI answer to a hypothetical email
#   POST   /faq/generate   — propose FAQs from a batch of emails
#   POST   /faq/pattern    — generic question pattern for one email
#
# Upsert rules for POST /faq:
#   - with `id`: update that FAQ (404 if it is not the caller's)
#   - without: update the FAQ with exactly the same question, else create
#   use_count and created_at of an existing FAQ are never overwritten.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dispute_center.agents.analyst import (
    generate_generic_faqs,
    generate_pattern,
    simulate_reply,
)
from dispute_center.api.deps import check_scope, get_current_api_key, get_current_user_email
from dispute_center.api.errors import llm_errors
from dispute_center.config import settings
from dispute_center.db.engine import get_async_session
from dispute_center.db.models import ApiKey, Faq
from dispute_center.models.requests import (
    FaqMatchRequest,
    FaqUpsertRequest,
    GenerateFaqsRequest,
    PatternRequest,
    SimulateRequest,
)
from dispute_center.models.responses import (
    FaqListResponse,
    FaqMatchResponse,
    FaqResponse,
    GenerateFaqsResponse,
    PatternResponse,
    SimulateResponse,
)
from dispute_center.services.matching import find_concepts, rank_faq_matches
from dispute_center.services.usage import UsageTracker, record_usage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/faq", tags=["FAQ"])


async def load_user_faqs(session: AsyncSession, user_email: str) -> list[Faq]:
    """All FAQs of a user, most used first."""
    result = await session.execute(
        select(Faq)
        .where(Faq.user_email == user_email)
        .order_by(Faq.use_count.desc(), Faq.id)
    )
    return list(result.scalars().all())


async def _get_faq_or_404(session: AsyncSession, user_email: str, faq_id: int) -> Faq:
    faq = await session.get(Faq, faq_id)
    if faq is None or faq.user_email != user_email:
        raise HTTPException(status_code=404, detail=f"FAQ {faq_id} not found")
    return faq


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


@router.get("", response_model=FaqListResponse, summary="List FAQs")
async def list_faqs(
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    session: AsyncSession = Depends(get_async_session),
) -> FaqListResponse:
    check_scope(api_key, "faq")
    faqs = await load_user_faqs(session, user_email)
    return FaqListResponse(
        faqs=[FaqResponse.model_validate(f) for f in faqs],
        total=len(faqs),
    )


@router.post(
    "",
    response_model=FaqResponse,
    summary="Create or update a FAQ",
    description=(
        "Upsert by `id` when given, otherwise by exact question text. "
        "Concept tags are derived from the question and similar patterns "
        "when not supplied."
    ),
)
async def save_faq(
    request: FaqUpsertRequest,
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    session: AsyncSession = Depends(get_async_session),
) -> FaqResponse:
    check_scope(api_key, "faq")
    question = request.question.strip()

    if request.id is not None:
        faq = await _get_faq_or_404(session, user_email, request.id)
    else:
        result = await session.execute(
            select(Faq).where(Faq.user_email == user_email, Faq.question == question)
        )
        faq = result.scalars().first()

    created = faq is None
    if created:
        faq = Faq(user_email=user_email, use_count=0)
        session.add(faq)

    faq.question = question
    faq.answer = request.answer
    faq.category = request.category or "General"
    faq.email_ids = list(dict.fromkeys(request.email_ids))
    faq.similar_patterns = request.similar_patterns
    faq.concepts = (
        request.concepts
        if request.concepts is not None
        else find_concepts(" ".join([question, *request.similar_patterns]))
    )
    faq.confidence = request.confidence
    faq.requires_customer_specific_info = request.requires_customer_specific_info

    await session.commit()
    await session.refresh(faq)

    logger.info("FAQ %s: id=%d, question='%s'", "created" if created else "updated",
                faq.id, question[:80])
    return FaqResponse.model_validate(faq)


@router.delete("/{faq_id}", status_code=204, summary="Delete a FAQ")
async def delete_faq(
    faq_id: int,
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    session: AsyncSession = Depends(get_async_session),
) -> None:
    check_scope(api_key, "faq")
    faq = await _get_faq_or_404(session, user_email, faq_id)
    await session.delete(faq)
    await session.commit()
    logger.info("FAQ deleted: id=%d", faq_id)


# ---------------------------------------------------------------------------
# Matching (heuristic, no LLM)
# ---------------------------------------------------------------------------


@router.post(
    "/match",
    response_model=FaqMatchResponse,
    summary="Rank FAQs against a question",
    description=(
        "Scores every FAQ with the concept-confidence heuristic (0-100). "
        "`requires_human_response` is true when no FAQ reaches "
        "`min_confidence`."
    ),
)
async def match_faqs(
    request: FaqMatchRequest,
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    session: AsyncSession = Depends(get_async_session),
) -> FaqMatchResponse:
    check_scope(api_key, "faq")
    faqs = await load_user_faqs(session, user_email)
    min_confidence = (
        settings.faq_match_min_confidence
        if request.min_confidence is None else request.min_confidence
    )
    result = rank_faq_matches(request.question, faqs, min_confidence)

    return FaqMatchResponse(
        question=result.question,
        concepts=result.concepts,
        matches=[
            {
                "faq": FaqResponse.model_validate(m.faq),
                "confidence": m.confidence,
                "concepts": m.concepts,
            }
            for m in result.matches
        ],
        requires_human_response=result.requires_human_response,
    )


# ---------------------------------------------------------------------------
# LLM helpers for building the library
# ---------------------------------------------------------------------------


@router.post(
    "/simulate",
    response_model=SimulateResponse,
    summary="Simulate an AI answer to a customer email",
)
async def simulate(
    request: SimulateRequest,
    background_tasks: BackgroundTasks,
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
) -> SimulateResponse:
    check_scope(api_key, "faq")
    tracker = UsageTracker()
    async with llm_errors("simulate reply", user_email, tracker):
        result = await simulate_reply(request.email_content, request.email, tracker=tracker)
    background_tasks.add_task(record_usage, user_email, tracker.drain())
    return SimulateResponse(**result)


@router.post(
    "/generate",
    response_model=GenerateFaqsResponse,
    summary="Generate FAQs from emails",
    description=(
        "Groups the emails into generic FAQs. Questions too similar to an "
        "existing FAQ (pattern similarity above `faq_duplicate_threshold`) "
        "are dropped. Nothing is saved."
    ),
)
async def generate_faqs(
    request: GenerateFaqsRequest,
    background_tasks: BackgroundTasks,
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    session: AsyncSession = Depends(get_async_session),
) -> GenerateFaqsResponse:
    check_scope(api_key, "faq")
    existing = [f.question for f in await load_user_faqs(session, user_email)]
    tracker = UsageTracker()

    async with llm_errors("generate FAQs", user_email, tracker):
        result = await generate_generic_faqs(
            [e.model_dump() for e in request.emails],
            existing,
            duplicate_threshold=settings.faq_duplicate_threshold,
            tracker=tracker,
        )

    background_tasks.add_task(record_usage, user_email, tracker.drain())
    return GenerateFaqsResponse(**result)


@router.post(
    "/pattern",
    response_model=PatternResponse,
    summary="Generic question pattern for an email",
)
async def pattern(
    request: PatternRequest,
    background_tasks: BackgroundTasks,
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
) -> PatternResponse:
    check_scope(api_key, "faq")
    tracker = UsageTracker()
    async with llm_errors("generate pattern", user_email, tracker):
        result = await generate_pattern(request.subject, request.content, tracker=tracker)
    background_tasks.add_task(record_usage, user_email, tracker.drain())
    return PatternResponse(**result)
