# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of the JSON bodies the API returns. Response models keep stored
# secrets (Stripe keys, API key hashes) off the wire and publish the
# response schemas at /docs.
#
# Analysis payloads stay loose (dict[str, Any]): their keys come from LLM
# output and only the defaults in services/analysis_cache.py are certain.
# =============================================================================

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


# ---------------------------------------------------------------------------
# Emails
# ---------------------------------------------------------------------------


class CacheInfoResponse(BaseModel):
    source: str = Field(description="'cache' or 'fresh'")
    expires_in_days: int
    age_days: int | None = None


class ThreadMessageResponse(BaseModel):
    id: str
    sender: str
    received_at: datetime
    content: str
    content_type: str | None = None


class EmailResponse(BaseModel):
    """An email thread, represented by its latest message."""

    id: str
    thread_id: str
    subject: str
    sender: str
    received_at: datetime
    content: str
    content_type: str | None = None
    is_large_content: bool = False
    thread_messages: list[ThreadMessageResponse] = Field(default_factory=list)
    analysis: dict[str, Any] | None = Field(
        default=None,
        description="Fresh cached analysis for the thread, when one exists",
    )


class FetchFailure(BaseModel):
    thread_id: str
    error: str


class InboxResponse(BaseModel):
    """Response for GET /emails/inbox."""

    emails: list[EmailResponse]
    next_page_token: str | None = None
    failed_threads: list[FetchFailure] = Field(default_factory=list)


class RefreshEmailsResponse(BaseModel):
    """Response for POST /emails/refresh."""

    refreshed_emails: list[EmailResponse]
    success_count: int
    error_count: int
    errors: list[FetchFailure] = Field(default_factory=list)


class AnalysisResponse(BaseModel):
    """Response for POST /emails/analyze and GET /emails/analyze/{thread_id}."""

    thread_id: str
    analysed_at: datetime | None = None
    analysis: dict[str, Any]
    matched_faq: dict[str, Any] | None = None
    confidence: float = 0.0
    generated_reply: str | None = None
    questions: list[dict[str, Any]] | None = None
    cache: CacheInfoResponse


class IrrelevantEmailResponse(BaseModel):
    """Response for POST /emails/irrelevant."""

    id: int
    email_id: str
    thread_id: str
    reason: str
    category: str
    confidence: float
    details: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TriageMatch(BaseModel):
    faq_id: int | None = None
    question: str
    answer: str | None = None
    category: str | None = None
    confidence: float


class TriageResponse(BaseModel):
    """
    Response for POST /emails/triage.

    `decision` is one of drafted, not_support, requires_human, no_match,
    too_large. `reply` is set only when the decision is drafted.

    `confidence` is the analysis confidence (0-1, as stored in the cache);
    `match_confidence` is the best FAQ match score (0-100) that the
    auto-reply threshold is compared against.
    """

    thread_id: str
    decision: str
    reply: str | None = None
    confidence: float = 0.0
    match_confidence: float = 0.0
    matches: list[TriageMatch] = Field(default_factory=list)
    analysis: dict[str, Any] | None = None
    cache: CacheInfoResponse | None = None


class CheckNewEmailsResponse(BaseModel):
    """Response for POST /emails/check-new."""

    has_new_emails: bool
    new_emails_count: int
    new_thread_ids: list[str]
    total_found: int
    has_more: bool


class LastEmailTimeResponse(BaseModel):
    """Response for GET /emails/last-email-time. Nulls mean no mail was exchanged."""

    last_email_time: datetime | None = None
    is_from_customer: bool | None = None


class EmailCountResponse(BaseModel):
    count: int


class ReplyResponse(BaseModel):
    """A drafted reply (auto-reply, generate-reply)."""

    reply: str
    model: str | None = None


# ---------------------------------------------------------------------------
# FAQ
# ---------------------------------------------------------------------------


class FaqResponse(BaseModel):
    id: int
    question: str
    answer: str
    category: str
    email_ids: list[str]
    similar_patterns: list[str]
    concepts: list[str]
    confidence: float
    requires_customer_specific_info: bool
    use_count: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class FaqListResponse(BaseModel):
    faqs: list[FaqResponse]
    total: int


class FaqMatchItem(BaseModel):
    faq: FaqResponse
    confidence: int = Field(description="Concept confidence, 0-100")
    concepts: list[str]


class FaqMatchResponse(BaseModel):
    """Response for POST /faq/match."""

    question: str
    concepts: list[str]
    matches: list[FaqMatchItem]
    requires_human_response: bool


class SimulatedFaq(BaseModel):
    id: str
    question: str
    answer: str


class SimulatedMatch(BaseModel):
    faq: SimulatedFaq
    confidence: float
    suggested_reply: str


class SimulateResponse(BaseModel):
    """Response for POST /faq/simulate."""

    matches: list[SimulatedMatch]
    requires_human_response: bool
    reason: str
    analysis: dict[str, Any]


class GeneratedFaq(BaseModel):
    question: str
    category: str = "General"
    email_ids: list[str] = Field(default_factory=list)
    confidence: float = 0.0
    requires_customer_specific_info: bool = False


class GenerateFaqsResponse(BaseModel):
    """Response for POST /faq/generate."""

    faqs: list[GeneratedFaq]
    total_emails: int
    total_generated: int


class PatternResponse(BaseModel):
    """Response for POST /faq/pattern."""

    generic_pattern: str
    similar_patterns: list[str]
    suggested_category: str
    requires_customer_info: bool
    reasoning: str


# ---------------------------------------------------------------------------
# Knowledge
# ---------------------------------------------------------------------------


class ExtractedFaqMatch(BaseModel):
    faq_id: int | str | None = None
    question: str
    answer: str | None = None
    category: str
    confidence: float = 0.0
    match_reasoning: str | None = None


class NewQuestion(BaseModel):
    question: str
    category: str = "support"
    confidence: float = 0.0
    requires_customer_specific_info: bool = False
    reasoning: str | None = None


class ExtractQuestionsResponse(BaseModel):
    """Response for POST /knowledge/extract-questions."""

    matched_faqs: list[ExtractedFaqMatch]
    new_questions: list[NewQuestion]


class ThreadSummaryResponse(BaseModel):
    """Response for POST /knowledge/summarize-thread."""

    key_points: list[str]
    customer_sentiment: str
    category: str
    action_items: list[str]


class CommonQuestion(BaseModel):
    question: str
    typical_answer: str = ""
    frequency: int = 1


class SentimentSummary(BaseModel):
    overall: str
    details: str


class InsightsResponse(BaseModel):
    """Response for POST /knowledge/insights."""

    key_customer_points: list[str]
    customer_sentiment: SentimentSummary
    common_questions: list[CommonQuestion]
    recommended_actions: list[str]


class JobResponse(BaseModel):
    """Status of a background analysis job (POST and GET /knowledge/jobs)."""

    id: int
    status: str
    celery_task_id: str | None = None
    total_emails: int
    processed_emails: int
    failed_emails: int
    errors: list[dict[str, Any]] = Field(default_factory=list)
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class FunctionUsage(BaseModel):
    function_name: str
    calls: int
    failed_calls: int
    unpriced_calls: int = 0
    input_tokens: int
    output_tokens: int
    total_tokens: int
    estimated_cost_usd: float | None = None


class UsageResponse(BaseModel):
    """Response for GET /knowledge/usage."""

    total_calls: int
    failed_calls: int = 0
    unpriced_calls: int = Field(
        default=0, description="Calls whose model has no known price",
    )
    total_tokens: int
    estimated_cost_usd: float = 0.0
    since: datetime | None = None
    by_function: list[FunctionUsage]


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------


class StripeKeyResponse(BaseModel):
    """The stored key is only ever returned masked."""

    has_key: bool
    masked_key: str | None = None
    updated_at: datetime | None = None


class DisputeResponse(BaseModel):
    id: str
    amount: int | None = None
    currency: str | None = None
    reason: str | None = None
    status: str | None = None
    created: datetime | None = None
    evidence_due_by: datetime | None = None
    charge_id: str | None = None
    customer_email: str | None = None
    customer_name: str | None = None


class DisputeListResponse(BaseModel):
    disputes: list[DisputeResponse]
    total: int


class DisputeMetricsResponse(BaseModel):
    """Response for GET /stripe/metrics. Counts are null without a key."""

    active_disputes: int | None = None
    response_drafts: int | None = None
    has_stripe_key: bool


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class EmailTemplateResponse(BaseModel):
    id: int | None = None
    name: str
    subject: str
    body: str
    order: int


class EmailTemplatesResponse(BaseModel):
    templates: list[EmailTemplateResponse]
    is_default: bool = Field(
        default=False,
        description="True when the user has not saved templates yet",
    )


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class ApiKeyResponse(BaseModel):
    """API key metadata (never includes the raw key or hash)."""

    id: int
    name: str
    owner_email: str
    key_prefix: str
    scopes: list[str] | None = None
    rate_limit_rpm: int | None = None
    is_active: bool
    created_at: datetime
    expires_at: datetime | None = None
    last_used_at: datetime | None = None


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Returned once at creation: the only time raw_key is visible."""

    raw_key: str


class ApiKeyListResponse(BaseModel):
    keys: list[ApiKeyResponse]
    total: int
