# =============================================================================
# AI Usage Ledger — Token and Cost Accounting
# =============================================================================
#
# Every LLM call made on behalf of a user is written to `ai_usage_logs`:
# which function made it, the model, token counts, estimated cost and
# whether it succeeded.
#
# FLOW:
#   1. The request handler creates a UsageTracker and passes it to the agents
#   2. Each agent call appends a UsageEntry (success or failure)
#   3. The handler schedules record_usage() as a FastAPI background task;
#      Celery workers call record_usage_sync() with their own session
#
# Recording never fails the request: errors are logged at WARNING and
# swallowed, the same way other background persistence behaves.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from dispute_center.db.engine import async_session_factory
from dispute_center.db.models import AIUsageLog
from dispute_center.services.llm import LLMResponse
from dispute_center.services.pricing import estimate_cost

logger = logging.getLogger(__name__)


@dataclass
class UsageEntry:
    """One LLM call."""

    function_name: str
    model: str
    provider_type: str
    input_tokens: int = 0
    output_tokens: int = 0
    status: str = "success"
    error: str | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def estimated_cost_usd(self) -> float | None:
        return estimate_cost(
            self.provider_type, self.model, self.input_tokens, self.output_tokens,
        )

    def to_row(self, user_email: str) -> AIUsageLog:
        return AIUsageLog(
            user_email=user_email,
            function_name=self.function_name,
            model=self.model,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            total_tokens=self.total_tokens,
            estimated_cost_usd=self.estimated_cost_usd,
            status=self.status,
            error=self.error,
        )


@dataclass
class UsageTracker:
    """Collects UsageEntry objects during one request or job."""

    entries: list[UsageEntry] = field(default_factory=list)

    def success(self, function_name: str, provider: Any, response: LLMResponse) -> None:
        self.entries.append(UsageEntry(
            function_name=function_name,
            model=response.model,
            provider_type=getattr(provider, "provider_type", "unknown"),
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
        ))

    def failure(self, function_name: str, provider: Any, error: Exception) -> None:
        self.entries.append(UsageEntry(
            function_name=function_name,
            model=getattr(provider, "_model", "unknown"),
            provider_type=getattr(provider, "provider_type", "unknown"),
            status="failed",
            error=str(error)[:2000],
        ))

    @property
    def input_tokens(self) -> int:
        return sum(e.input_tokens for e in self.entries)

    @property
    def output_tokens(self) -> int:
        return sum(e.output_tokens for e in self.entries)

    def drain(self) -> list[UsageEntry]:
        entries, self.entries = self.entries, []
        return entries


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


async def record_usage(user_email: str, entries: list[UsageEntry]) -> None:
    """
    Persist usage entries in the background.

    Uses its own DB session: the request session is closed by the time
    background tasks run.
    """
    if not entries:
        return
    try:
        async with async_session_factory() as session:
            session.add_all([entry.to_row(user_email) for entry in entries])
            await session.commit()
    except Exception as e:
        logger.warning("Failed to persist AI usage (%d entries): %s", len(entries), e)


def record_usage_sync(session: Session, user_email: str, entries: list[UsageEntry]) -> None:
    """Celery variant: adds rows to the caller's sync session."""
    try:
        session.add_all([entry.to_row(user_email) for entry in entries])
        session.flush()
    except Exception as e:
        session.rollback()
        logger.warning("Failed to persist AI usage (%d entries): %s", len(entries), e)


async def summarise_usage(
    session: AsyncSession,
    user_email: str,
    since: datetime | None = None,
) -> dict[str, Any]:
    """
    Aggregate a user's AI usage, overall and per function.

    Calls with unknown pricing add no cost; they are counted in
    `unpriced_calls`.
    """
    conditions = [AIUsageLog.user_email == user_email]
    if since is not None:
        conditions.append(AIUsageLog.created_at >= since)

    result = await session.execute(
        select(
            AIUsageLog.function_name,
            func.count(AIUsageLog.id),
            func.coalesce(func.sum(AIUsageLog.input_tokens), 0),
            func.coalesce(func.sum(AIUsageLog.output_tokens), 0),
            func.coalesce(func.sum(AIUsageLog.estimated_cost_usd), 0.0),
            func.count(AIUsageLog.id).filter(AIUsageLog.status == "failed"),
            func.count(AIUsageLog.id).filter(AIUsageLog.estimated_cost_usd.is_(None)),
        )
        .where(*conditions)
        .group_by(AIUsageLog.function_name)
        .order_by(AIUsageLog.function_name)
    )

    by_function = []
    for name, calls, input_tokens, output_tokens, cost, failed, unpriced in result.all():
        by_function.append({
            "function_name": name,
            "calls": calls,
            "failed_calls": failed,
            "unpriced_calls": unpriced,
            "input_tokens": int(input_tokens),
            "output_tokens": int(output_tokens),
            "total_tokens": int(input_tokens) + int(output_tokens),
            "estimated_cost_usd": round(float(cost), 6),
        })

    return {
        "user_email": user_email,
        "since": since,
        "total_calls": sum(f["calls"] for f in by_function),
        "failed_calls": sum(f["failed_calls"] for f in by_function),
        "unpriced_calls": sum(f["unpriced_calls"] for f in by_function),
        "total_tokens": sum(f["total_tokens"] for f in by_function),
        "estimated_cost_usd": round(sum(f["estimated_cost_usd"] for f in by_function), 6),
        "by_function": by_function,
    }
