# =============================================================================
# Email Analysis Cache — TTL Cache of LLM Analyses
# =============================================================================
#
# Analysing an email costs an LLM call, and support inboxes are re-listed
# constantly. Analyses are therefore stored per (user, Gmail thread id) and
# reused until they are `analysis_cache_days` old.
#
# Every analysis handed to a client carries a CacheInfo:
#   source          — "cache" (served from the table) or "fresh" (just made)
#   age_days        — whole days since analysis (cache hits only)
#   expires_in_days — whole days until the entry goes stale
# Day counts follow Math.round semantics (halves toward +inf, so -2.5
# becomes -2); an expired entry read through the direct lookup endpoint
# reports a negative expires_in_days.
# =============================================================================

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from dispute_center.config import settings
from dispute_center.db.models import EmailAnalysis

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 24 * 60 * 60

# Keys every stored analysis payload carries, with the value used when the
# LLM leaves one out
ANALYSIS_DEFAULTS: dict[str, Any] = {
    "suggested_questions": [],
    "sentiment": "neutral",
    "key_points": [],
    "concepts": [],
    "requires_human_response": False,
    "reason": "",
    "is_support": True,
}


@dataclass(frozen=True)
class CacheInfo:
    """Provenance of an analysis returned to a client."""

    source: Literal["cache", "fresh"]
    expires_in_days: int
    age_days: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "source": self.source,
            "expires_in_days": self.expires_in_days,
        }
        if self.age_days is not None:
            data["age_days"] = self.age_days
        return data


def _days(seconds: float) -> int:
    """Whole days, Math.round style: halves go toward +inf."""
    return math.floor(seconds / _SECONDS_PER_DAY + 0.5)


def cache_ttl() -> timedelta:
    return timedelta(days=settings.analysis_cache_days)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_fresh(analysed_at: datetime, now: datetime | None = None) -> bool:
    """True while the entry is younger than the TTL."""
    age = (now or _utcnow()) - _as_aware(analysed_at)
    return age < cache_ttl()


def cached_info(analysed_at: datetime, now: datetime | None = None) -> CacheInfo:
    """CacheInfo for an entry served from the table."""
    age_seconds = ((now or _utcnow()) - _as_aware(analysed_at)).total_seconds()
    ttl_seconds = cache_ttl().total_seconds()
    return CacheInfo(
        source="cache",
        age_days=_days(age_seconds),
        expires_in_days=_days(ttl_seconds - age_seconds),
    )


def fresh_info() -> CacheInfo:
    """CacheInfo for an analysis produced by this request."""
    return CacheInfo(
        source="fresh",
        expires_in_days=_days(cache_ttl().total_seconds()),
    )


def question_texts(values: Any) -> list[str]:
    """
    Suggested questions as plain strings.

    Objects of the form {"question": ...} are unwrapped; anything else
    that is not a non-blank string is dropped.
    """
    if not isinstance(values, list):
        return []
    texts = []
    for value in values:
        if isinstance(value, dict):
            value = value.get("question")
        if isinstance(value, str) and value.strip():
            texts.append(value.strip())
    return texts


def normalise_analysis(raw: dict[str, Any]) -> dict[str, Any]:
    """Fill in defaults for the keys the LLM omitted. Unknown keys are kept."""
    analysis = dict(raw)
    for key, default in ANALYSIS_DEFAULTS.items():
        if analysis.get(key) is None:
            analysis[key] = list(default) if isinstance(default, list) else default
    analysis["suggested_questions"] = question_texts(analysis["suggested_questions"])
    return analysis


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


async def load_analysis(
    session: AsyncSession,
    user_email: str,
    thread_id: str,
) -> EmailAnalysis | None:
    """Return the stored row regardless of age."""
    return await session.get(EmailAnalysis, (user_email, thread_id))


async def get_cached_analysis(
    session: AsyncSession,
    user_email: str,
    thread_id: str,
    force_refresh: bool = False,
    now: datetime | None = None,
) -> tuple[EmailAnalysis, CacheInfo] | None:
    """
    Look up a fresh cached analysis.

    Returns None on a miss, on an expired entry, or when force_refresh is
    set.
    """
    if force_refresh:
        return None

    row = await load_analysis(session, user_email, thread_id)
    if row is None:
        return None

    now = now or _utcnow()
    if not is_fresh(row.analysed_at, now):
        logger.debug("Cached analysis for thread %s has expired", thread_id)
        return None

    logger.debug("Using cached analysis for thread %s", thread_id)
    return row, cached_info(row.analysed_at, now)


async def get_cached_analyses(
    session: AsyncSession,
    user_email: str,
    thread_ids: list[str],
    now: datetime | None = None,
) -> dict[str, EmailAnalysis]:
    """Fresh cached analyses for many threads, keyed by thread id."""
    if not thread_ids:
        return {}
    result = await session.execute(
        select(EmailAnalysis).where(
            EmailAnalysis.user_email == user_email,
            EmailAnalysis.thread_id.in_(thread_ids),
        )
    )
    now = now or _utcnow()
    return {
        row.thread_id: row
        for row in result.scalars().all()
        if is_fresh(row.analysed_at, now)
    }


async def store_analysis(
    session: AsyncSession,
    user_email: str,
    thread_id: str,
    analysis: dict[str, Any],
    matched_faq: dict[str, Any] | None = None,
    confidence: float = 0.0,
    generated_reply: str | None = None,
    questions: list[dict[str, Any]] | None = None,
    now: datetime | None = None,
) -> EmailAnalysis:
    """
    Insert or overwrite the analysis for a thread and reset its age.

    `questions` is left untouched on an existing row when not given.
    """
    row = await load_analysis(session, user_email, thread_id)
    if row is None:
        row = EmailAnalysis(user_email=user_email, thread_id=thread_id)
        session.add(row)

    _apply(row, analysis, matched_faq, confidence, generated_reply, questions, now)
    await session.flush()
    logger.debug("Stored analysis for thread %s", thread_id)
    return row


def store_analysis_sync(
    session: Session,
    user_email: str,
    thread_id: str,
    analysis: dict[str, Any],
    matched_faq: dict[str, Any] | None = None,
    confidence: float = 0.0,
    generated_reply: str | None = None,
    now: datetime | None = None,
) -> EmailAnalysis:
    """Celery variant of store_analysis on a sync session."""
    row = session.get(EmailAnalysis, (user_email, thread_id))
    if row is None:
        row = EmailAnalysis(user_email=user_email, thread_id=thread_id)
        session.add(row)

    _apply(row, analysis, matched_faq, confidence, generated_reply, None, now)
    session.flush()
    return row


def _apply(
    row: EmailAnalysis,
    analysis: dict[str, Any],
    matched_faq: dict[str, Any] | None,
    confidence: float,
    generated_reply: str | None,
    questions: list[dict[str, Any]] | None,
    now: datetime | None,
) -> None:
    row.analysis = normalise_analysis(analysis)
    row.matched_faq = matched_faq
    row.confidence = confidence or 0.0
    row.generated_reply = generated_reply
    if questions is not None:
        row.questions = questions
    row.analysed_at = now or _utcnow()


def analysis_to_dict(row: EmailAnalysis, info: CacheInfo) -> dict[str, Any]:
    """Shape a cached row for API responses."""
    return {
        "thread_id": row.thread_id,
        "analysed_at": row.analysed_at,
        "analysis": row.analysis,
        "matched_faq": row.matched_faq,
        "confidence": row.confidence,
        "generated_reply": row.generated_reply,
        "questions": row.questions,
        "cache": info.to_dict(),
    }
