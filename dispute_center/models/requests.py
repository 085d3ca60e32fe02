# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of the JSON bodies accepted by the API. FastAPI validates against
# them (422 on mismatch) and publishes them in the OpenAPI docs.
#
# Field names are snake_case throughout: `email_ids`, `answer`,
# `thread_id`.
# =============================================================================

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Emails
# ---------------------------------------------------------------------------


class EmailInput(BaseModel):
    """An email as the frontend holds it after listing the inbox."""

    thread_id: str = Field(..., min_length=1)
    subject: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    id: str | None = None
    sender: str | None = None


class AnalyzeEmailRequest(BaseModel):
    """
    Request body for POST /emails/analyze.

    Example:
        {
            "email": {"thread_id": "18c1f", "subject": "Refund?",
                      "content": "How do I get a refund?"},
            "force_refresh": false
        }
    """

    email: EmailInput
    force_refresh: bool = Field(
        default=False,
        description="Ignore a fresh cached analysis and ask the LLM again.",
    )


class RefreshEmailsRequest(BaseModel):
    """Request body for POST /emails/refresh — re-read threads from Gmail."""

    thread_ids: list[str] = Field(..., min_length=1, max_length=200)


class MarkIrrelevantRequest(BaseModel):
    """Request body for POST /emails/irrelevant."""

    email_id: str = Field(..., min_length=1)
    thread_id: str = Field(..., min_length=1)
    subject: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    sender: str = Field(..., min_length=1)


class TriageRequest(BaseModel):
    """Request body for POST /emails/triage."""

    email: EmailInput
    force_refresh: bool = False
    min_confidence: int | None = Field(
        default=None,
        ge=0,
        le=100,
        description="Override the auto-reply confidence threshold (0-100).",
    )


class MatchedFaqInput(BaseModel):
    question: str = Field(..., min_length=1)
    answer: str = Field(..., min_length=1)
    confidence: float | None = None


class AutoReplyEmail(BaseModel):
    subject: str
    content: str


class AutoReplyRequest(BaseModel):
    """Request body for POST /emails/auto-reply."""

    email: AutoReplyEmail
    matched_faqs: list[MatchedFaqInput] = Field(..., min_length=1)


class CheckNewEmailsRequest(BaseModel):
    """Request body for POST /emails/check-new."""

    last_email_timestamp: datetime = Field(
        ..., description="Look for mail after this instant (naive values are UTC).",
    )
    existing_thread_ids: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# FAQ
# ---------------------------------------------------------------------------


class FaqUpsertRequest(BaseModel):
    """
    Request body for POST /faq.

    With `id`, updates that FAQ. Without it, updates the FAQ with exactly
    the same question, or creates a new one.
    """

    id: int | None = None
    question: str = Field(..., min_length=3, max_length=2000)
    answer: str = Field(..., min_length=1)
    category: str = Field(default="General", max_length=100)
    email_ids: list[str] = Field(default_factory=list)
    similar_patterns: list[str] = Field(default_factory=list)
    concepts: list[str] | None = Field(
        default=None,
        description="Concept tags. Derived from the question when omitted.",
    )
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    requires_customer_specific_info: bool = False

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "question": "How do I reset my password?",
                    "answer": "Use the 'Forgot password' link on the login page.",
                    "category": "Account",
                    "email_ids": ["18c1f2a9b"],
                },
            ],
        },
    )


class FaqMatchRequest(BaseModel):
    """Request body for POST /faq/match."""

    question: str = Field(..., min_length=1, max_length=2000)
    min_confidence: int | None = Field(default=None, ge=0, le=100)


class SimulateRequest(BaseModel):
    """Request body for POST /faq/simulate."""

    email_content: str = Field(..., min_length=1)
    email: str = Field(..., min_length=1, description="Sender address")


class GenerateFaqsEmail(BaseModel):
    id: str
    subject: str = ""
    content: str = ""


class GenerateFaqsRequest(BaseModel):
    """Request body for POST /faq/generate."""

    emails: list[GenerateFaqsEmail] = Field(..., min_length=1, max_length=100)


class PatternRequest(BaseModel):
    """Request body for POST /faq/pattern."""

    subject: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Knowledge
# ---------------------------------------------------------------------------


class ExtractQuestionsRequest(BaseModel):
    """
    Request body for POST /knowledge/extract-questions.

    When `thread_id` is given, the extracted questions are also stored on
    the thread's cached analysis.
    """

    content: str = Field(..., min_length=1)
    thread_id: str | None = None


class ReplyFormattingInput(BaseModel):
    greeting: str = "Hi there"
    signature: str = "Sincerely, Our Team"
    custom_prompt: str = "Please keep responses friendly and human sounding."


class QuestionInput(BaseModel):
    question: str


class AnsweredFaqInput(BaseModel):
    question: str
    answer: str


class GenerateReplyRequest(BaseModel):
    """Request body for POST /knowledge/generate-reply."""

    subject: str
    content: str
    matched_faq: AnsweredFaqInput
    questions: list[QuestionInput] = Field(default_factory=list)
    answered_faqs: list[AnsweredFaqInput] = Field(default_factory=list)
    formatting: ReplyFormattingInput | None = None
    thread_id: str | None = None


class SummarizeThreadRequest(BaseModel):
    """Request body for POST /knowledge/summarize-thread."""

    subject: str = ""
    sender: str = ""
    content: str = Field(..., min_length=1)


class InsightsEmail(BaseModel):
    subject: str = ""
    body: str = ""
    category: str | None = None
    sentiment: str | None = None


class InsightsRequest(BaseModel):
    """Request body for POST /knowledge/insights."""

    emails: list[InsightsEmail] = Field(..., min_length=1, max_length=500)
    token_limit: int = Field(default=20000, ge=1000, le=128000)


class StartJobRequest(BaseModel):
    """Request body for POST /knowledge/jobs — analyse many emails in the background."""

    emails: list[EmailInput] = Field(..., min_length=1, max_length=500)
    force_refresh: bool = False


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------


class StripeKeyRequest(BaseModel):
    """Request body for PUT /stripe/key."""

    api_key: str = Field(..., min_length=8, max_length=255)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class EmailTemplateInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    subject: str = Field(..., min_length=1, max_length=500)
    body: str = Field(..., min_length=1)
    order: int | None = Field(default=None, ge=0)


class SaveTemplatesRequest(BaseModel):
    """Request body for PUT /settings/email-templates — replaces all templates."""

    templates: list[EmailTemplateInput] = Field(..., min_length=1, max_length=50)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class CreateApiKeyRequest(BaseModel):
    """Request body for POST /admin/keys."""

    name: str = Field(..., min_length=1, max_length=200)
    owner_email: str = Field(..., min_length=3, max_length=320)
    scopes: list[str] | None = Field(
        default=None,
        description="Subset of emails, faq, knowledge, stripe, settings, admin. "
        "Omit for full access.",
    )
    rate_limit_rpm: int | None = Field(default=None, gt=0)
    expires_at: datetime | None = None
