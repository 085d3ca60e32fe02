# =============================================================================
# Emails API — Inbox, Analysis, Triage and Replies
# =============================================================================
#
# ENDPOINTS:
#   GET  /emails/inbox                 — one page of Gmail threads
#   POST /emails/refresh               — re-read specific threads
#   POST /emails/analyze               — LLM analysis (cached per thread)
#   GET  /emails/analyze/{thread_id}   — read a stored analysis
#   POST /emails/irrelevant            — mark a thread as not support
#   POST /emails/triage                — analyse + match + draft in one go
#   POST /emails/auto-reply            — reply from already-matched FAQs
#   POST /emails/check-new             — threads with mail the client lacks
#   GET  /emails/last-email-time       — last contact with one address
#   GET  /emails/count                 — mailbox size estimate
#
# Gmail is read with the caller's access token (X-Google-Access-Token).
# Listing the inbox is throttled per user and skips threads the user has
# marked irrelevant. Analyses come from the cache while fresh; a fresh
# analysis is stored before it is returned.
# =============================================================================

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dispute_center.agents.analyst import analyse_email, analyse_irrelevance
from dispute_center.agents.orchestrator import triage_email
from dispute_center.agents.responder import auto_reply
from dispute_center.api.deps import (
    check_scope,
    get_current_api_key,
    get_current_user_email,
    get_google_access_token,
)
from dispute_center.api.errors import error_body, llm_errors
from dispute_center.api.faq import load_user_faqs
from dispute_center.config import settings
from dispute_center.db.engine import get_async_session
from dispute_center.db.models import ApiKey, Faq, IrrelevantEmail
from dispute_center.models.requests import (
    AnalyzeEmailRequest,
    AutoReplyRequest,
    CheckNewEmailsRequest,
    MarkIrrelevantRequest,
    RefreshEmailsRequest,
    TriageRequest,
)
from dispute_center.models.responses import (
    AnalysisResponse,
    CheckNewEmailsResponse,
    EmailCountResponse,
    InboxResponse,
    IrrelevantEmailResponse,
    LastEmailTimeResponse,
    RefreshEmailsResponse,
    ReplyResponse,
    TriageResponse,
)
from dispute_center.services.analysis_cache import (
    analysis_to_dict,
    cached_info,
    fresh_info,
    get_cached_analyses,
    get_cached_analysis,
    load_analysis,
    store_analysis,
)
from dispute_center.services.gmail import (
    EmailMessage,
    GmailClient,
    check_new_threads,
    count_emails,
    fetch_emails,
    last_email_time,
    list_threads_with_retry,
)
from dispute_center.services.rate_limiter import check_fetch_interval
from dispute_center.services.text import is_large_content
from dispute_center.services.usage import UsageTracker, record_usage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/emails", tags=["Emails"])


async def _irrelevant_thread_ids(session: AsyncSession, user_email: str) -> set[str]:
    result = await session.execute(
        select(IrrelevantEmail.thread_id).where(IrrelevantEmail.user_email == user_email)
    )
    return set(result.scalars().all())


def _failures(failures: list[tuple[str, str]]) -> list[dict[str, str]]:
    return [{"thread_id": thread_id, "error": error} for thread_id, error in failures]


def _reject_large(content: str) -> None:
    if is_large_content(content):
        raise HTTPException(
            status_code=413,
            detail=error_body(
                "Email content too large to analyse",
                f"{len(content)} characters (limit {settings.large_content_chars})",
            ),
        )


# ---------------------------------------------------------------------------
# GET /emails/inbox — List a page of threads
# ---------------------------------------------------------------------------


@router.get(
    "/inbox",
    response_model=InboxResponse,
    summary="List inbox threads",
    description=(
        "Fetch one page of Gmail threads, each represented by its latest "
        "message. Threads marked irrelevant are left out and fresh cached "
        "analyses are attached. Limited to one call per user every "
        "`inbox_min_interval_ms` (429 with `retry_after_ms`)."
    ),
)
async def list_inbox(
    page_token: str | None = Query(default=None),
    query: str | None = Query(default=None, description="Gmail search query"),
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    access_token: str = Depends(get_google_access_token),
    session: AsyncSession = Depends(get_async_session),
) -> InboxResponse:
    check_scope(api_key, "emails")
    await check_fetch_interval(user_email)

    irrelevant = await _irrelevant_thread_ids(session, user_email)

    async with GmailClient(access_token) as gmail:
        page = await list_threads_with_retry(
            gmail, settings.inbox_page_size, page_token=page_token, query=query,
        )
        thread_ids = [
            t["id"] for t in page.get("threads") or []
            if t.get("id") and t["id"] not in irrelevant
        ]
        emails, failures = await fetch_emails(gmail, thread_ids)

    cached = await get_cached_analyses(session, user_email, [e.thread_id for e in emails])

    logger.info(
        "Inbox for %s: %d threads listed, %d fetched, %d failed, %d cached analyses",
        user_email, len(page.get("threads") or []), len(emails), len(failures), len(cached),
    )

    return InboxResponse(
        emails=[_email_with_analysis(e, cached) for e in emails],
        next_page_token=page.get("nextPageToken"),
        failed_threads=_failures(failures),
    )


def _email_with_analysis(email: EmailMessage, cached: dict[str, Any]) -> dict[str, Any]:
    data = email.to_dict()
    row = cached.get(email.thread_id)
    data["analysis"] = analysis_to_dict(row, cached_info(row.analysed_at)) if row else None
    return data


# ---------------------------------------------------------------------------
# POST /emails/refresh — Re-read threads
# ---------------------------------------------------------------------------


@router.post(
    "/refresh",
    response_model=RefreshEmailsResponse,
    summary="Refresh specific threads from Gmail",
)
async def refresh_emails(
    request: RefreshEmailsRequest,
    api_key: ApiKey | None = Depends(get_current_api_key),
    access_token: str = Depends(get_google_access_token),
) -> RefreshEmailsResponse:
    """Fetch the given threads again, in batches; failures are reported per thread."""
    check_scope(api_key, "emails")

    thread_ids = list(dict.fromkeys(request.thread_ids))
    async with GmailClient(access_token) as gmail:
        emails, failures = await fetch_emails(
            gmail, thread_ids, batch_size=settings.refresh_batch_size,
        )

    logger.info("Refreshed %d/%d threads", len(emails), len(thread_ids))
    return RefreshEmailsResponse(
        refreshed_emails=[e.to_dict() for e in emails],
        success_count=len(emails),
        error_count=len(failures),
        errors=_failures(failures),
    )


# ---------------------------------------------------------------------------
# POST /emails/analyze — Analyse one email
# ---------------------------------------------------------------------------


@router.post(
    "/analyze",
    response_model=AnalysisResponse,
    summary="Analyse an email",
    description=(
        "Return the cached analysis for the thread while it is fresh, "
        "otherwise ask the LLM and cache the result. `cache.source` says "
        "which happened."
    ),
)
async def analyze_email(
    http_request: Request,
    request: AnalyzeEmailRequest,
    background_tasks: BackgroundTasks,
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    session: AsyncSession = Depends(get_async_session),
) -> AnalysisResponse:
    check_scope(api_key, "emails")
    email = request.email
    http_request.state.audit_thread_id = email.thread_id

    cached = await get_cached_analysis(
        session, user_email, email.thread_id, force_refresh=request.force_refresh,
    )
    if cached is not None:
        row, info = cached
        return AnalysisResponse(**analysis_to_dict(row, info))

    _reject_large(email.content)
    faqs = await load_user_faqs(session, user_email)
    tracker = UsageTracker()

    async with llm_errors("analyse email", user_email, tracker):
        result = await analyse_email(
            subject=email.subject,
            content=email.content,
            faqs=faqs,
            tracker=tracker,
        )

    row = await store_analysis(
        session,
        user_email,
        email.thread_id,
        analysis=result.analysis,
        matched_faq=result.matched_faq,
        confidence=result.confidence,
        generated_reply=result.generated_reply,
    )
    background_tasks.add_task(record_usage, user_email, tracker.drain())

    logger.info(
        "Analysed thread %s: support=%s, human=%s, confidence=%.2f",
        email.thread_id,
        result.analysis.get("is_support"),
        result.analysis.get("requires_human_response"),
        result.confidence,
    )
    return AnalysisResponse(**analysis_to_dict(row, fresh_info()))


@router.get(
    "/analyze/{thread_id}",
    response_model=AnalysisResponse,
    summary="Get the stored analysis of a thread",
    description=(
        "Returns the stored analysis even when it has expired; "
        "`cache.expires_in_days` is then negative."
    ),
)
async def get_analysis(
    thread_id: str,
    http_request: Request,
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    session: AsyncSession = Depends(get_async_session),
) -> AnalysisResponse:
    check_scope(api_key, "emails")
    http_request.state.audit_thread_id = thread_id

    row = await load_analysis(session, user_email, thread_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Analysis not found")
    return AnalysisResponse(**analysis_to_dict(row, cached_info(row.analysed_at)))


# ---------------------------------------------------------------------------
# POST /emails/irrelevant — Mark as not a support request
# ---------------------------------------------------------------------------


@router.post(
    "/irrelevant",
    response_model=IrrelevantEmailResponse,
    summary="Mark an email as irrelevant",
    description=(
        "Ask the LLM to classify why the email is not a support request and "
        "remember the thread so the inbox stops listing it."
    ),
)
async def mark_irrelevant(
    http_request: Request,
    request: MarkIrrelevantRequest,
    background_tasks: BackgroundTasks,
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    session: AsyncSession = Depends(get_async_session),
) -> IrrelevantEmailResponse:
    check_scope(api_key, "emails")
    http_request.state.audit_thread_id = request.thread_id
    tracker = UsageTracker()

    async with llm_errors("analyse irrelevant email", user_email, tracker):
        result = await analyse_irrelevance(
            subject=request.subject,
            content=request.content,
            tracker=tracker,
        )

    existing = await session.execute(
        select(IrrelevantEmail).where(
            IrrelevantEmail.user_email == user_email,
            IrrelevantEmail.thread_id == request.thread_id,
        )
    )
    row = existing.scalars().first()
    if row is None:
        row = IrrelevantEmail(user_email=user_email, thread_id=request.thread_id)
        session.add(row)

    row.email_id = request.email_id
    row.reason = result.reason
    row.category = result.category
    row.confidence = result.confidence
    row.details = result.details

    await session.commit()
    await session.refresh(row)
    background_tasks.add_task(record_usage, user_email, tracker.drain())

    logger.info(
        "Thread %s from %s marked irrelevant (%s)",
        request.thread_id, request.sender, result.category.value,
    )
    return IrrelevantEmailResponse(
        id=row.id,
        email_id=row.email_id,
        thread_id=row.thread_id,
        reason=row.reason,
        category=result.category.value,
        confidence=row.confidence,
        details=row.details,
        created_at=row.created_at,
    )


# ---------------------------------------------------------------------------
# POST /emails/triage — Full pipeline
# ---------------------------------------------------------------------------


@router.post(
    "/triage",
    response_model=TriageResponse,
    summary="Triage an email and draft a reply when possible",
    description=(
        "Runs the triage graph: screen → analyse → match → draft. The reply "
        "is drafted only for support emails that do not need a human and "
        "whose best FAQ match reaches the auto-reply threshold."
    ),
)
async def triage(
    http_request: Request,
    request: TriageRequest,
    background_tasks: BackgroundTasks,
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    session: AsyncSession = Depends(get_async_session),
) -> TriageResponse:
    check_scope(api_key, "emails")
    email = request.email
    http_request.state.audit_thread_id = email.thread_id

    cached = await get_cached_analysis(
        session, user_email, email.thread_id, force_refresh=request.force_refresh,
    )
    faqs = await load_user_faqs(session, user_email)
    tracker = UsageTracker()

    async with llm_errors("triage email", user_email, tracker):
        state = await triage_email(
            subject=email.subject,
            content=email.content,
            faqs=faqs,
            cached_analysis=cached[0].analysis if cached else None,
            min_confidence=request.min_confidence,
            tracker=tracker,
        )

    decision = state.get("decision", "no_match")
    reply = state.get("reply")
    info = None
    confidence = state.get("confidence", 0.0)

    if state.get("analysis_source") == "fresh":
        await store_analysis(
            session,
            user_email,
            email.thread_id,
            analysis=state["analysis"],
            matched_faq=state.get("matched_faq"),
            confidence=confidence,
            generated_reply=reply,
        )
        info = fresh_info()
    elif cached is not None:
        row, info = cached
        confidence = row.confidence
        if reply:
            row.generated_reply = reply

    if decision == "drafted":
        await _bump_use_count(session, state.get("matches") or [])

    background_tasks.add_task(record_usage, user_email, tracker.drain())

    return TriageResponse(
        thread_id=email.thread_id,
        decision=decision,
        reply=reply,
        confidence=confidence,
        match_confidence=state.get("match_confidence", 0.0),
        matches=state.get("matches") or [],
        analysis=state.get("analysis"),
        cache=info.to_dict() if info else None,
    )


async def _bump_use_count(session: AsyncSession, matches: list[dict[str, Any]]) -> None:
    """Count a use of the FAQ the reply was drafted from."""
    faq_id = matches[0].get("faq_id") if matches else None
    if faq_id is None:
        return
    faq = await session.get(Faq, faq_id)
    if faq is not None:
        faq.use_count = (faq.use_count or 0) + 1


# ---------------------------------------------------------------------------
# POST /emails/auto-reply — Reply from matched FAQs
# ---------------------------------------------------------------------------


@router.post(
    "/auto-reply",
    response_model=ReplyResponse,
    summary="Draft a reply from matched FAQs",
)
async def generate_auto_reply(
    request: AutoReplyRequest,
    background_tasks: BackgroundTasks,
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
) -> ReplyResponse:
    check_scope(api_key, "emails")
    tracker = UsageTracker()

    async with llm_errors("generate auto-reply", user_email, tracker):
        reply = await auto_reply(
            subject=request.email.subject,
            content=request.email.content,
            matched_faqs=[f.model_dump() for f in request.matched_faqs],
            tracker=tracker,
        )

    model = tracker.entries[-1].model if tracker.entries else None
    background_tasks.add_task(record_usage, user_email, tracker.drain())
    return ReplyResponse(reply=reply, model=model)


# ---------------------------------------------------------------------------
# Mailbox checks
# ---------------------------------------------------------------------------


@router.post(
    "/check-new",
    response_model=CheckNewEmailsResponse,
    summary="Check for new threads",
    description=(
        "Lists threads with mail after `last_email_timestamp` and returns the "
        "ids not in `existing_thread_ids`. Not throttled like /emails/inbox."
    ),
)
async def check_new(
    request: CheckNewEmailsRequest,
    api_key: ApiKey | None = Depends(get_current_api_key),
    access_token: str = Depends(get_google_access_token),
) -> CheckNewEmailsResponse:
    check_scope(api_key, "emails")
    async with GmailClient(access_token) as gmail:
        result = await check_new_threads(
            gmail, request.last_email_timestamp, request.existing_thread_ids,
        )
    return CheckNewEmailsResponse(
        has_new_emails=result.new_emails_count > 0,
        new_emails_count=result.new_emails_count,
        new_thread_ids=result.new_thread_ids,
        total_found=result.total_found,
        has_more=result.has_more,
    )


@router.get(
    "/last-email-time",
    response_model=LastEmailTimeResponse,
    summary="Last email exchanged with an address",
)
async def get_last_email_time(
    email: str = Query(..., min_length=3, description="Customer email address"),
    api_key: ApiKey | None = Depends(get_current_api_key),
    access_token: str = Depends(get_google_access_token),
) -> LastEmailTimeResponse:
    check_scope(api_key, "emails")
    async with GmailClient(access_token) as gmail:
        contact = await last_email_time(gmail, email)
    return LastEmailTimeResponse(
        last_email_time=contact.last_email_time,
        is_from_customer=contact.is_from_customer,
    )


@router.get(
    "/count",
    response_model=EmailCountResponse,
    summary="Estimated number of messages in the mailbox",
)
async def get_email_count(
    api_key: ApiKey | None = Depends(get_current_api_key),
    access_token: str = Depends(get_google_access_token),
) -> EmailCountResponse:
    check_scope(api_key, "emails")
    async with GmailClient(access_token) as gmail:
        count = await count_emails(gmail)
    return EmailCountResponse(count=count)
