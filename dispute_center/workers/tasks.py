# =============================================================================
# Celery Task Definitions — Bulk Email Analysis
# =============================================================================
#
# `analyse_emails` analyses a list of emails for one user and writes each
# analysis into the email_analyses cache, exactly as POST /emails/analyze
# would, so later inbox listings pick them up.
#
# PIPELINE:
#   1. Job → PROCESSING
#   2. Load the user's FAQs; skip threads with a fresh cached analysis
#      (unless force_refresh)
#   3. For each batch of llm_batch_size emails:
#        analyse concurrently → store results → record usage → update
#        progress → pause batch_delay_seconds (not after the last batch)
#   4. Job → COMPLETED (per-email failures are listed in job.errors)
#
# Celery workers are synchronous: database access uses the sync engine,
# and each batch of LLM calls runs in its own event loop via asyncio.run()
# with a provider created for that loop.
#
# RETRY STRATEGY:
# Per-email LLM failures are recorded and do not fail the job. Anything
# else (database down, provider misconfigured) marks the job FAILED and
# retries up to 3 times, 60 s apart.
# =============================================================================

import asyncio
import logging
import time
from typing import Any

from sqlalchemy import select, update

from dispute_center.agents.analyst import EmailAnalysisResult, analyse_email
from dispute_center.config import settings
from dispute_center.db.engine import get_sync_session
from dispute_center.db.models import AnalysisJob, EmailAnalysis, Faq, JobStatus
from dispute_center.services.analysis_cache import is_fresh, store_analysis_sync
from dispute_center.services.batching import BatchResult, chunked, run_in_batches
from dispute_center.services.llm import create_llm_provider
from dispute_center.services.usage import UsageTracker, record_usage_sync
from dispute_center.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _update_job(job_id: int, **values: Any) -> None:
    """Write job fields in their own transaction so the API sees them at once."""
    with get_sync_session() as session:
        session.execute(
            update(AnalysisJob).where(AnalysisJob.id == job_id).values(**values)
        )
        session.commit()


def _load_faqs(user_email: str) -> list[dict[str, Any]]:
    """The user's FAQs as plain dicts, usable after the session closes."""
    with get_sync_session() as session:
        rows = session.execute(
            select(Faq).where(Faq.user_email == user_email)
        ).scalars().all()
        return [
            {"id": f.id, "question": f.question, "answer": f.answer, "category": f.category}
            for f in rows
        ]


def _pending_emails(
    user_email: str,
    emails: list[dict[str, Any]],
    force_refresh: bool,
) -> list[dict[str, Any]]:
    """Drop emails whose thread already has a fresh analysis."""
    if force_refresh:
        return emails

    thread_ids = [e["thread_id"] for e in emails]
    with get_sync_session() as session:
        rows = session.execute(
            select(EmailAnalysis.thread_id, EmailAnalysis.analysed_at).where(
                EmailAnalysis.user_email == user_email,
                EmailAnalysis.thread_id.in_(thread_ids),
            )
        ).all()
    fresh = {thread_id for thread_id, analysed_at in rows if is_fresh(analysed_at)}
    return [e for e in emails if e["thread_id"] not in fresh]


async def _analyse_batch(
    batch: list[dict[str, Any]],
    faqs: list[dict[str, Any]],
    tracker: UsageTracker,
) -> BatchResult[dict[str, Any], EmailAnalysisResult]:
    llm = create_llm_provider()

    async def analyse(email: dict[str, Any]) -> EmailAnalysisResult:
        return await analyse_email(
            subject=email["subject"],
            content=email["content"],
            faqs=faqs,
            llm=llm,
            tracker=tracker,
        )

    return await run_in_batches(batch, analyse, batch_size=len(batch), delay_seconds=0)


# ---------------------------------------------------------------------------
# Analysis Task
# ---------------------------------------------------------------------------


@celery_app.task(
    bind=True,
    name="analyse_emails",
    max_retries=3,
    default_retry_delay=60,
)
def analyse_emails(
    self,
    job_id: int,
    user_email: str,
    emails: list[dict[str, Any]],
    force_refresh: bool = False,
) -> dict:
    """
    Analyse `emails` (dicts with thread_id, subject, content) for a user.

    Returns:
        dict summary: job id, processed, failed and skipped counts.
    """
    task_id = self.request.id
    logger.info(
        "Starting analysis job %d for %s: %d emails, task_id=%s",
        job_id, user_email, len(emails), task_id,
    )

    try:
        _update_job(
            job_id,
            status=JobStatus.PROCESSING,
            celery_task_id=task_id,
            processed_emails=0,
            failed_emails=0,
            errors=[],
            error_message=None,
        )

        faqs = _load_faqs(user_email)
        pending = _pending_emails(user_email, emails, force_refresh)
        skipped = len(emails) - len(pending)
        processed = skipped
        failed = 0
        errors: list[dict[str, str]] = []

        if skipped:
            logger.info("[%s] %d emails already have a fresh analysis", task_id, skipped)
            _update_job(job_id, processed_emails=processed)

        batches = chunked(pending, settings.llm_batch_size)
        for index, batch in enumerate(batches):
            tracker = UsageTracker()
            outcome = asyncio.run(_analyse_batch(batch, faqs, tracker))

            with get_sync_session() as session:
                for email, result in zip(batch, outcome.results):
                    if result is None:
                        continue
                    store_analysis_sync(
                        session,
                        user_email,
                        email["thread_id"],
                        analysis=result.analysis,
                        matched_faq=result.matched_faq,
                        confidence=result.confidence,
                        generated_reply=result.generated_reply,
                    )
                record_usage_sync(session, user_email, tracker.drain())
                session.commit()

            errors.extend(
                {"thread_id": email["thread_id"], "error": message}
                for email, message in outcome.failures
            )
            failed += len(outcome.failures)
            processed += len(batch) - len(outcome.failures)

            _update_job(
                job_id,
                processed_emails=processed,
                failed_emails=failed,
                errors=errors,
            )
            logger.info(
                "[%s] Batch %d/%d done: %d ok, %d failed",
                task_id, index + 1, len(batches),
                len(batch) - len(outcome.failures), len(outcome.failures),
            )

            if index < len(batches) - 1:
                time.sleep(settings.batch_delay_seconds)

        _update_job(job_id, status=JobStatus.COMPLETED)

        summary = {
            "job_id": job_id,
            "status": "completed",
            "processed_emails": processed,
            "failed_emails": failed,
            "skipped_emails": skipped,
        }
        logger.info("[%s] Analysis job complete: %s", task_id, summary)
        return summary

    except Exception as exc:
        logger.exception("[%s] Analysis job %d failed: %s", task_id, job_id, exc)
        _update_job(job_id, status=JobStatus.FAILED, error_message=str(exc)[:1000])
        raise self.retry(exc=exc)
