# =============================================================================
# Knowledge API — Question Extraction, Reply Drafting, Bulk Jobs, Usage
# =============================================================================
#
# ENDPOINTS:
#   POST /knowledge/extract-questions  — match an email to FAQs, propose new ones
#   POST /knowledge/generate-reply     — draft a formatted reply from a FAQ
#   POST /knowledge/summarize-thread   — key points, sentiment, action items
#   POST /knowledge/insights           — trends across many support emails
#   POST /knowledge/jobs               — analyse many emails in the background
#   GET  /knowledge/jobs/{job_id}      — poll a background job
#   GET  /knowledge/usage              — the caller's AI token/cost ledger
#
# Bulk jobs go through Celery (workers/tasks.py); the job row is committed
# before the task is queued so a fast worker always finds it.
# =============================================================================

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from dispute_center.agents.analyst import extract_questions, generate_insights, summarise_thread
from dispute_center.agents.responder import ReplyFormatting, draft_reply
from dispute_center.api.deps import check_scope, get_current_api_key, get_current_user_email
from dispute_center.api.errors import llm_errors
from dispute_center.api.faq import load_user_faqs
from dispute_center.db.engine import get_async_session
from dispute_center.db.models import AnalysisJob, ApiKey, JobStatus
from dispute_center.models.requests import (
    ExtractQuestionsRequest,
    GenerateReplyRequest,
    InsightsRequest,
    StartJobRequest,
    SummarizeThreadRequest,
)
from dispute_center.models.responses import (
    ExtractQuestionsResponse,
    InsightsResponse,
    JobResponse,
    ReplyResponse,
    ThreadSummaryResponse,
    UsageResponse,
)
from dispute_center.services.analysis_cache import load_analysis
from dispute_center.services.usage import UsageTracker, record_usage, summarise_usage
from dispute_center.workers.tasks import analyse_emails

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/knowledge", tags=["Knowledge"])


def _job_response(job: AnalysisJob) -> JobResponse:
    return JobResponse(
        id=job.id,
        status=job.status.value,
        celery_task_id=job.celery_task_id,
        total_emails=job.total_emails,
        processed_emails=job.processed_emails,
        failed_emails=job.failed_emails,
        errors=job.errors or [],
        error_message=job.error_message,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


# ---------------------------------------------------------------------------
# POST /knowledge/extract-questions
# ---------------------------------------------------------------------------


@router.post(
    "/extract-questions",
    response_model=ExtractQuestionsResponse,
    summary="Extract questions from an email",
    description=(
        "Matches the email against the caller's FAQs and proposes generic "
        "new questions. With `thread_id`, the result is also stored on the "
        "thread's cached analysis."
    ),
)
async def extract(
    http_request: Request,
    request: ExtractQuestionsRequest,
    background_tasks: BackgroundTasks,
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    session: AsyncSession = Depends(get_async_session),
) -> ExtractQuestionsResponse:
    check_scope(api_key, "knowledge")
    http_request.state.audit_thread_id = request.thread_id

    faqs = await load_user_faqs(session, user_email)
    tracker = UsageTracker()
    async with llm_errors("extract questions", user_email, tracker):
        result = await extract_questions(request.content, faqs, tracker=tracker)

    if request.thread_id:
        row = await load_analysis(session, user_email, request.thread_id)
        if row is not None:
            row.questions = [*result["matched_faqs"], *result["new_questions"]]

    background_tasks.add_task(record_usage, user_email, tracker.drain())
    logger.info(
        "Extracted questions: %d matched, %d new",
        len(result["matched_faqs"]), len(result["new_questions"]),
    )
    return ExtractQuestionsResponse(**result)


# ---------------------------------------------------------------------------
# POST /knowledge/generate-reply
# ---------------------------------------------------------------------------


@router.post(
    "/generate-reply",
    response_model=ReplyResponse,
    summary="Draft a reply from a matched FAQ",
)
async def generate_reply(
    http_request: Request,
    request: GenerateReplyRequest,
    background_tasks: BackgroundTasks,
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    session: AsyncSession = Depends(get_async_session),
) -> ReplyResponse:
    """Draft a reply using the caller's greeting, signature and instructions."""
    check_scope(api_key, "knowledge")
    http_request.state.audit_thread_id = request.thread_id

    formatting = (
        ReplyFormatting(**request.formatting.model_dump()) if request.formatting else None
    )
    tracker = UsageTracker()
    async with llm_errors("generate reply", user_email, tracker):
        reply = await draft_reply(
            subject=request.subject,
            content=request.content,
            matched_faq=request.matched_faq.model_dump(),
            questions=[q.model_dump() for q in request.questions],
            answered_faqs=[f.model_dump() for f in request.answered_faqs],
            formatting=formatting,
            tracker=tracker,
        )

    if request.thread_id:
        row = await load_analysis(session, user_email, request.thread_id)
        if row is not None:
            row.generated_reply = reply

    model = tracker.entries[-1].model if tracker.entries else None
    background_tasks.add_task(record_usage, user_email, tracker.drain())
    return ReplyResponse(reply=reply, model=model)


# ---------------------------------------------------------------------------
# POST /knowledge/summarize-thread, POST /knowledge/insights
# ---------------------------------------------------------------------------


@router.post(
    "/summarize-thread",
    response_model=ThreadSummaryResponse,
    summary="Summarise one email thread",
)
async def summarize_thread(
    request: SummarizeThreadRequest,
    background_tasks: BackgroundTasks,
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
) -> ThreadSummaryResponse:
    check_scope(api_key, "knowledge")
    tracker = UsageTracker()
    async with llm_errors("summarise thread", user_email, tracker):
        summary = await summarise_thread(
            request.subject, request.sender, request.content, tracker=tracker,
        )
    background_tasks.add_task(record_usage, user_email, tracker.drain())
    return ThreadSummaryResponse(**summary)


@router.post(
    "/insights",
    response_model=InsightsResponse,
    summary="Insights across many support emails",
    description=(
        "Key customer points, overall sentiment, common questions with a "
        "typical answer, and recommended actions. Bodies are truncated "
        "before they reach the model; `token_limit` caps the completion at "
        "half its value (4000 at most)."
    ),
)
async def insights(
    request: InsightsRequest,
    background_tasks: BackgroundTasks,
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
) -> InsightsResponse:
    check_scope(api_key, "knowledge")
    tracker = UsageTracker()
    async with llm_errors("generate insights", user_email, tracker):
        result = await generate_insights(
            [e.model_dump() for e in request.emails],
            token_limit=request.token_limit,
            tracker=tracker,
        )
    background_tasks.add_task(record_usage, user_email, tracker.drain())
    logger.info("Generated insights from %d emails", len(request.emails))
    return InsightsResponse(**result)


# ---------------------------------------------------------------------------
# Background jobs
# ---------------------------------------------------------------------------


@router.post(
    "/jobs",
    response_model=JobResponse,
    status_code=202,
    summary="Analyse many emails in the background",
    description=(
        "Queues a Celery job. Emails that already have a fresh cached "
        "analysis are skipped unless `force_refresh` is set. Poll "
        "GET /knowledge/jobs/{job_id} for progress."
    ),
)
async def start_job(
    request: StartJobRequest,
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    session: AsyncSession = Depends(get_async_session),
) -> JobResponse:
    check_scope(api_key, "knowledge")

    emails = list({e.thread_id: e for e in request.emails}.values())
    job = AnalysisJob(
        user_email=user_email,
        status=JobStatus.PENDING,
        total_emails=len(emails),
        processed_emails=0,
        failed_emails=0,
        errors=[],
    )
    session.add(job)
    await session.commit()

    task = analyse_emails.delay(
        job_id=job.id,
        user_email=user_email,
        emails=[
            {"thread_id": e.thread_id, "subject": e.subject, "content": e.content}
            for e in emails
        ],
        force_refresh=request.force_refresh,
    )
    job.celery_task_id = task.id
    await session.commit()
    await session.refresh(job)

    logger.info(
        "Analysis job %d queued for %s: %d emails, task_id=%s",
        job.id, user_email, len(emails), task.id,
    )
    return _job_response(job)


@router.get(
    "/jobs/{job_id}",
    response_model=JobResponse,
    summary="Get background job status",
)
async def get_job(
    job_id: int,
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    session: AsyncSession = Depends(get_async_session),
) -> JobResponse:
    check_scope(api_key, "knowledge")
    job = await session.get(AnalysisJob, job_id)
    if job is None or job.user_email != user_email:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return _job_response(job)


# ---------------------------------------------------------------------------
# GET /knowledge/usage
# ---------------------------------------------------------------------------


@router.get(
    "/usage",
    response_model=UsageResponse,
    summary="AI usage and estimated cost",
)
async def usage(
    days: int | None = Query(
        default=None, ge=1, le=365, description="Look back this many days (default: all time)",
    ),
    api_key: ApiKey | None = Depends(get_current_api_key),
    user_email: str = Depends(get_current_user_email),
    session: AsyncSession = Depends(get_async_session),
) -> UsageResponse:
    check_scope(api_key, "knowledge")
    since = datetime.now(UTC) - timedelta(days=days) if days else None
    summary = await summarise_usage(session, user_email, since=since)
    return UsageResponse(**summary)
