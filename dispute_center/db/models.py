# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# Every support artefact is owned by a user (the support agent's email
# address). There are no foreign keys between the support tables: FAQs,
# analyses and irrelevance verdicts reference Gmail ids, which live outside
# this database.
#
# SCHEMA OVERVIEW:
#
#   faqs              — question/answer pairs used for auto-reply matching
#   email_analyses    — TTL cache of LLM analyses, keyed by Gmail thread id
#   irrelevant_emails — emails an agent dismissed, with the LLM's reason
#   stripe_keys       — one Stripe secret key per user
#   email_templates   — dispute correspondence templates per user
#   analysis_jobs     — progress of Celery batch-analysis jobs
#   ai_usage_logs     — token usage and estimated cost per LLM call
#   api_keys          — hashed API keys (auth)
#   audit_logs        — one row per API request
#
# JSONB is used wherever the LLM returns open-ended structures (analysis
# payloads, lists of questions) so new fields need no migration.
# =============================================================================

import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""

    pass


class Faq(Base):
    """
    A stored question/answer pair.

    `question` is unique per user: saving a FAQ whose question already exists
    updates the existing row instead of creating a duplicate.
    """

    __tablename__ = "faqs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_email: Mapped[str] = mapped_column(String(320), nullable=False)

    question: Mapped[str] = mapped_column(Text, nullable=False)
    answer: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(
        String(100), nullable=False, default="General",
    )

    # Gmail ids of the emails this FAQ was derived from / answers
    email_ids: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)

    # Alternative phrasings produced by the pattern generator
    similar_patterns: Mapped[list] = mapped_column(
        JSONB, nullable=False, default=list,
    )

    # Concept tags (see services/matching.py DISTINCT_CONCEPTS)
    concepts: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)

    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    requires_customer_specific_info: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )
    use_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Faq(id={self.id}, question='{self.question[:40]}')>"


class EmailAnalysis(Base):
    """
    Cached LLM analysis of a Gmail thread.

    Fresh while `analysed_at` is younger than the configured TTL
    (see services/analysis_cache.py). Re-analysing overwrites the row.
    """

    __tablename__ = "email_analyses"

    # Gmail thread ids are only unique within one mailbox
    user_email: Mapped[str] = mapped_column(String(320), primary_key=True)
    thread_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # suggestedQuestions, sentiment, keyPoints, concepts,
    # requiresHumanResponse, reason, isSupport
    analysis: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    matched_faq: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    generated_reply: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Questions extracted by /knowledge/extract-questions, if any
    questions: Mapped[list | None] = mapped_column(JSONB, nullable=True)

    analysed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )


class IrrelevanceCategory(str, enum.Enum):
    """Why an email is not a support request."""

    SPAM = "spam"
    PERSONAL = "personal"
    AUTOMATED = "automated"
    INTERNAL = "internal"
    TOO_SPECIFIC = "too_specific"
    OTHER = "other"


class IrrelevantEmail(Base):
    """An email dismissed as not relevant. Hidden from the inbox listing."""

    __tablename__ = "irrelevant_emails"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_email: Mapped[str] = mapped_column(String(320), nullable=False)
    email_id: Mapped[str] = mapped_column(String(255), nullable=False)
    thread_id: Mapped[str] = mapped_column(String(255), nullable=False)

    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[IrrelevanceCategory] = mapped_column(
        Enum(IrrelevanceCategory),
        nullable=False,
        default=IrrelevanceCategory.OTHER,
    )
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class StripeKey(Base):
    """
    A user's Stripe secret key.

    Validated against Stripe before it is stored. Never returned by the
    API except as a masked suffix.
    """

    __tablename__ = "stripe_keys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    api_key: Mapped[str] = mapped_column(String(255), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class EmailTemplate(Base):
    """A reusable dispute correspondence template (supports {{firstName}})."""

    __tablename__ = "email_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_email: Mapped[str] = mapped_column(String(320), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class JobStatus(str, enum.Enum):
    """
    Batch analysis job lifecycle.

        PENDING → PROCESSING → COMPLETED
                             → FAILED
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AnalysisJob(Base):
    """Progress of a Celery job analysing a batch of emails."""

    __tablename__ = "analysis_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_email: Mapped[str] = mapped_column(String(320), nullable=False)
    celery_task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus), nullable=False, default=JobStatus.PENDING,
    )
    total_emails: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_emails: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_emails: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # [{"thread_id": ..., "error": ...}] for emails that could not be analysed
    errors: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class AIUsageLog(Base):
    """
    One row per LLM call: token usage, estimated cost and outcome.

    Cost is null when the model has no entry in the pricing registry.
    """

    __tablename__ = "ai_usage_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_email: Mapped[str] = mapped_column(String(320), nullable=False)
    function_name: Mapped[str] = mapped_column(String(100), nullable=False)
    model: Mapped[str] = mapped_column(String(200), nullable=False)

    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_cost_usd: Mapped[float | None] = mapped_column(Float, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False)  # success|failed
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


# ---------------------------------------------------------------------------
# Auth tables
# ---------------------------------------------------------------------------


class ApiKey(Base):
    """
    An API key. Only the SHA-256 hash is stored; the raw key is shown once.

    `owner_email` is the support agent the key acts for. All FAQ, analysis
    and Stripe data is scoped to it.
    """

    __tablename__ = "api_keys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    owner_email: Mapped[str] = mapped_column(String(320), nullable=False)

    key_prefix: Mapped[str] = mapped_column(String(8), nullable=False)
    key_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # Null/empty = all scopes. Otherwise e.g. ["emails", "faq", "admin"]
    scopes: Mapped[list[str] | None] = mapped_column(
        JSONB, nullable=True, default=list,
    )

    # Per-key override of settings.rate_limit_rpm
    rate_limit_rpm: Mapped[int | None] = mapped_column(Integer, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    last_used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<ApiKey(id={self.id}, name='{self.name}', "
            f"prefix='{self.key_prefix}', active={self.is_active})>"
        )


class AuditLog(Base):
    """One row per API request: who called what, how it ended, how long."""

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    api_key_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("api_keys.id", ondelete="SET NULL"),
        nullable=True,
    )
    user_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    endpoint: Mapped[str] = mapped_column(String(200), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    path: Mapped[str] = mapped_column(String(500), nullable=False)

    # Gmail thread touched by the request, when the handler records one
    thread_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    client_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


# ---------------------------------------------------------------------------
# Indexes
# ---------------------------------------------------------------------------

faq_user_question_idx = Index(
    "idx_faq_user_question",
    Faq.user_email,
    Faq.question,
    unique=True,
)

email_analysis_analysed_idx = Index(
    "idx_email_analysis_analysed_at",
    EmailAnalysis.analysed_at,
)

irrelevant_email_user_thread_idx = Index(
    "idx_irrelevant_email_user_thread",
    IrrelevantEmail.user_email,
    IrrelevantEmail.thread_id,
)

email_template_user_idx = Index(
    "idx_email_template_user",
    EmailTemplate.user_email,
    EmailTemplate.position,
)

ai_usage_user_created_idx = Index(
    "idx_ai_usage_user_created",
    AIUsageLog.user_email,
    AIUsageLog.created_at,
)

api_key_hash_idx = Index(
    "idx_api_key_hash",
    ApiKey.key_hash,
    unique=True,
)

audit_log_user_idx = Index(
    "idx_audit_log_user_created",
    AuditLog.user_email,
    AuditLog.created_at,
)
