# =============================================================================
# Analyst Agent — Structured LLM Analyses of Support Emails
# =============================================================================
#
# Every function here sends one prompt that demands a JSON object, parses
# it with parse_json_content() and fills defaults for the keys the model
# left out. All keys are snake_case; the prompts spell them out.
#
# FUNCTIONS:
#   analyse_email          — questions, sentiment, concepts, support flag
#   analyse_irrelevance    — why an email is not a support request
#   extract_questions      — match an email to stored FAQs, propose new ones
#   generate_generic_faqs  — group many emails into reusable FAQs
#   generate_pattern       — a generic question pattern for one email
#   simulate_reply         — a one-off AI answer for the FAQ playground
#   summarise_thread       — key points, sentiment, category, action items
#   generate_insights      — trends and common questions across many emails
#
# Usage (tokens, cost, failures) goes into the optional UsageTracker; the
# caller decides when to persist it.
# =============================================================================

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from dispute_center.config import settings
from dispute_center.db.models import IrrelevanceCategory
from dispute_center.services.analysis_cache import normalise_analysis
from dispute_center.services.llm import (
    LLMProvider,
    LLMResponse,
    LLMResponseError,
    get_llm_provider,
    parse_json_content,
)
from dispute_center.services.matching import filter_new_questions
from dispute_center.services.text import estimate_tokens, truncate_content
from dispute_center.services.usage import UsageTracker

logger = logging.getLogger(__name__)

SENTIMENTS = ("positive", "negative", "neutral")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class EmailAnalysisResult:
    """Output of analyse_email."""

    analysis: dict[str, Any]
    matched_faq: dict[str, Any] | None
    confidence: float
    generated_reply: str | None
    model: str


@dataclass
class IrrelevanceResult:
    reason: str
    category: IrrelevanceCategory
    confidence: float
    details: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "category": self.category.value,
            "confidence": self.confidence,
            "details": self.details,
        }


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

ANALYSE_EMAIL_SYSTEM = (
    "You are an expert at analysing customer support emails. Your task is to:\n"
    "1. Identify key questions and patterns\n"
    "2. Match with existing FAQs if possible\n"
    "3. Generate suggested questions for new FAQs if needed\n"
    "4. Analyse sentiment and key points\n\n"
    "Return a JSON object with:\n"
    "{\n"
    '  "suggested_questions": string[],\n'
    '  "sentiment": "positive" | "negative" | "neutral",\n'
    '  "key_points": string[],\n'
    '  "concepts": string[],\n'
    '  "requires_human_response": boolean,\n'
    '  "reason": string,\n'
    '  "is_support": boolean,\n'
    '  "matched_faq": {"id": number, "question": string} | null,\n'
    '  "confidence": number between 0 and 1,\n'
    '  "generated_reply": string | null\n'
    "}"
)

IRRELEVANCE_SYSTEM = (
    "You are an AI assistant analysing why an email is not relevant to "
    "customer support. Return a JSON object with the following structure:\n"
    "{\n"
    '  "reason": "Brief explanation of why the email is not relevant",\n'
    '  "category": "spam" | "personal" | "automated" | "internal" | '
    '"too_specific" | "other",\n'
    '  "confidence": number between 0 and 1,\n'
    '  "details": "Detailed explanation of the analysis"\n'
    "}"
)

EXTRACT_QUESTIONS_SYSTEM = (
    "You are an expert at analysing customer inquiries and matching them "
    "with existing FAQ questions. You excel at understanding the core intent "
    "of questions and matching them to more general existing FAQs.\n\n"
    "For example:\n"
    '- "How do I get my money back for this broken app?" → matches '
    '"How can I request a refund"\n'
    '- "Why isn\'t my subscription working on my new phone?" → matches '
    '"How do I manage my subscription"\n\n'
    "Always try to match to existing FAQs first by understanding the "
    "underlying intent. Only suggest new questions if the core intent is "
    "truly unique. Always respond with valid JSON."
)

EXTRACT_QUESTIONS_FORMAT = (
    "Respond with a JSON object in this exact format:\n"
    "{\n"
    '  "matched_faqs": [{"faq_id": number, "question": string, '
    '"confidence": number, "match_reasoning": string}],\n'
    '  "new_questions": [{"question": string, "category": string, '
    '"confidence": number, "requires_customer_specific_info": boolean, '
    '"reasoning": string}]\n'
    "}"
)

GENERIC_FAQS_SYSTEM = (
    "You are an expert at analysing customer support emails and generating "
    "generic, reusable FAQ questions. Given a set of customer emails, "
    "identify common underlying themes and generate generic questions that "
    "could help multiple users.\n\n"
    "Rules:\n"
    "1. Questions should be generic enough to help multiple users\n"
    "2. Avoid customer-specific details\n"
    "3. Group similar questions together\n"
    "4. Identify which emails would be helped by each FAQ\n"
    "5. Categorise questions (e.g., Setup, Usage, Billing)\n\n"
    "Return a JSON object in this format:\n"
    "{\n"
    '  "generic_faqs": [{\n'
    '    "question": string,\n'
    '    "category": string,\n'
    '    "email_ids": string[],\n'
    '    "confidence": number between 0 and 1,\n'
    '    "requires_customer_specific_info": boolean\n'
    "  }]\n"
    "}"
)

PATTERN_SYSTEM = (
    "You are an AI expert at analysing customer support emails and "
    "identifying reusable question patterns. Always respond in valid JSON."
)

PATTERN_PROMPT = """Analyse this customer support email and generate a generic question pattern that could help identify similar questions in the future.

Email Subject: {subject}
Email Content: {content}

Your task:
1. Identify the core question or request
2. Create a generic pattern that would match similar questions
3. Suggest 3-5 similar variations of this question pattern
4. Determine if this requires customer-specific information
5. Suggest a category: one of support, setup, billing, feature, bug

For example, "How do I connect my Spotify account to the app?" becomes
"How to integrate/connect {{third_party_service}} with the system".

Return a JSON object with exactly these fields:
{{
  "generic_pattern": string,
  "similar_patterns": string[],
  "suggested_category": string,
  "requires_customer_info": boolean,
  "reasoning": string
}}"""

SIMULATE_SYSTEM = (
    "You are a helpful customer support agent. Analyse the incoming customer "
    "email to:\n"
    "1. Identify the main topic and intent\n"
    "2. Determine customer sentiment\n"
    "3. Extract key points\n"
    "4. Generate a professional, helpful response\n\n"
    "Respond with ONLY a JSON object in this format:\n"
    "{\n"
    '  "analysis": {"sentiment": string, "key_points": string[], "topic": string},\n'
    '  "response": {"suggested_reply": string, "confidence": number 0-100, '
    '"requires_human_response": boolean, "reason": string}\n'
    "}"
)

SUMMARISE_THREAD_SYSTEM = (
    "You are an expert at analysing customer support emails. Analyse the "
    "email thread and provide a structured summary with:\n"
    "1. Key points (3-5 bullet points)\n"
    "2. Customer sentiment (positive, neutral, or negative with a brief explanation)\n"
    "3. Category (e.g. \"Subscription Issue\", \"Technical Support\", \"Product Feedback\")\n"
    "4. Action items (if any)\n\n"
    "Respond with ONLY a JSON object in this format:\n"
    "{\n"
    '  "key_points": string[],\n'
    '  "customer_sentiment": string,\n'
    '  "category": string,\n'
    '  "action_items": string[]\n'
    "}"
)

INSIGHTS_SYSTEM = (
    "You are an expert customer support analyst. Provide detailed, actionable "
    "insights that match the exact format requested. Ensure all insights are "
    "specific and backed by the email data."
)

INSIGHTS_PROMPT = """Analyse these {count} customer support emails and provide comprehensive insights.

Emails to analyse:
{emails}

Return a JSON object with this structure:
{{
  "key_customer_points": string[],
  "customer_sentiment": {{
    "overall": "one-line summary of overall sentiment",
    "details": "a paragraph on sentiment trends and notable patterns"
  }},
  "common_questions": [
    {{"question": string, "typical_answer": string, "frequency": number}}
  ],
  "recommended_actions": string[]
}}

Focus on:
1. Clear patterns in customer issues and questions
2. Specific areas of customer confusion or frustration
3. Actionable recommendations for improvement
4. Accurate frequency counts for common questions"""

DEFAULT_KEY_POINTS = ["No key points identified", "Analysis needs more data"]
DEFAULT_ACTIONS = ["Gather more customer feedback", "Implement systematic support tracking"]


# ---------------------------------------------------------------------------
# LLM helpers
# ---------------------------------------------------------------------------


async def _complete_json(
    function_name: str,
    system: str,
    user_content: str,
    llm: LLMProvider | None,
    tracker: UsageTracker | None,
    temperature: float | None = None,
    max_tokens: int | None = None,
) -> tuple[dict[str, Any], LLMResponse]:
    """Call the LLM in JSON mode, record usage, parse the object."""
    llm = llm or get_llm_provider()
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            "%s: ~%d prompt tokens", function_name, estimate_tokens(system + user_content),
        )
    try:
        response = await llm.complete(
            messages=[{"role": "user", "content": user_content}],
            system=system,
            temperature=temperature,
            max_tokens=max_tokens,
            json_mode=True,
        )
    except Exception as e:
        if tracker is not None:
            tracker.failure(function_name, llm, e)
        raise

    if tracker is not None:
        tracker.success(function_name, llm, response)

    try:
        return parse_json_content(response.content), response
    except LLMResponseError:
        logger.warning(
            "%s: unparseable LLM response: %.200s", function_name, response.content,
        )
        raise


def _faq_field(faq: Any, name: str, default: Any = None) -> Any:
    if isinstance(faq, dict):
        return faq.get(name, default)
    return getattr(faq, name, default)


def _faq_summary(faq: Any) -> dict[str, Any]:
    return {
        "id": _faq_field(faq, "id"),
        "question": _faq_field(faq, "question"),
        "answer": _faq_field(faq, "answer"),
        "category": _faq_field(faq, "category"),
    }


def _as_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _clamp01(value: Any) -> float:
    return min(1.0, max(0.0, _as_float(value)))


# ---------------------------------------------------------------------------
# Analyses
# ---------------------------------------------------------------------------


async def analyse_email(
    subject: str,
    content: str,
    faqs: Sequence[Any] = (),
    llm: LLMProvider | None = None,
    tracker: UsageTracker | None = None,
) -> EmailAnalysisResult:
    """
    Full support analysis of one email against the user's FAQs.

    Missing keys get defaults: no questions, neutral sentiment, no human
    response required, is_support True.
    """
    truncated = truncate_content(subject, content)
    payload = {
        "subject": truncated.subject,
        "content": truncated.content,
        "existing_faqs": [_faq_summary(f) for f in faqs],
    }

    data, response = await _complete_json(
        "analyse-email",
        ANALYSE_EMAIL_SYSTEM,
        json.dumps(payload, default=str),
        llm,
        tracker,
    )

    analysis = normalise_analysis({
        key: data.get(key)
        for key in (
            "suggested_questions", "sentiment", "key_points", "concepts",
            "requires_human_response", "reason", "is_support",
        )
    })
    if analysis["sentiment"] not in SENTIMENTS:
        analysis["sentiment"] = "neutral"

    matched_faq = data.get("matched_faq")
    if not isinstance(matched_faq, dict):
        matched_faq = None

    return EmailAnalysisResult(
        analysis=analysis,
        matched_faq=matched_faq,
        confidence=_clamp01(data.get("confidence")),
        generated_reply=data.get("generated_reply") or None,
        model=response.model,
    )


async def analyse_irrelevance(
    subject: str,
    content: str,
    llm: LLMProvider | None = None,
    tracker: UsageTracker | None = None,
) -> IrrelevanceResult:
    """Ask the LLM why an email is not a support request."""
    truncated = truncate_content(subject, content)
    data, _ = await _complete_json(
        "analyse-irrelevant",
        IRRELEVANCE_SYSTEM,
        "Please analyse this email and explain why it's not relevant:\n\n"
        f"Subject: {truncated.subject}\n\nContent: {truncated.content}",
        llm,
        tracker,
        temperature=0.3,
    )

    try:
        category = IrrelevanceCategory(str(data.get("category", "other")).lower())
    except ValueError:
        category = IrrelevanceCategory.OTHER

    return IrrelevanceResult(
        reason=str(data.get("reason") or ""),
        category=category,
        confidence=_clamp01(data.get("confidence")),
        details=data.get("details"),
    )


async def extract_questions(
    content: str,
    faqs: Sequence[Any],
    llm: LLMProvider | None = None,
    tracker: UsageTracker | None = None,
) -> dict[str, Any]:
    """
    Match an email to existing FAQs and propose generic new questions.

    Matched FAQs are enriched with the stored answer and category; matches
    pointing at unknown FAQ ids keep a null answer and category "support".
    """
    by_id = {str(_faq_field(f, "id")): f for f in faqs}
    faq_lines = "\n".join(
        f"- {_faq_field(f, 'question')} (id: {_faq_field(f, 'id')})" for f in faqs
    ) or "(none yet)"
    truncated = truncate_content("", content)

    prompt = (
        "Analyse this email content and match it with existing FAQs. Focus on "
        "understanding the core intent of the inquiry and match it to more "
        "general existing FAQs when possible.\n\n"
        f"Existing FAQ questions:\n{faq_lines}\n\n"
        "Guidelines:\n"
        "1. Look for the underlying intent, not exact wording matches\n"
        "2. Prefer a more general existing FAQ over a new specific question\n"
        "3. Only suggest new questions if the core intent is truly unique\n"
        "4. Make new questions as generic as possible\n\n"
        f"Email Content:\n{truncated.content}\n\n"
        f"{EXTRACT_QUESTIONS_FORMAT}"
    )

    data, _ = await _complete_json(
        "extract-questions", EXTRACT_QUESTIONS_SYSTEM, prompt, llm, tracker,
        temperature=0.1,
    )

    matched = []
    for match in data.get("matched_faqs") or []:
        if not isinstance(match, dict):
            continue
        stored = by_id.get(str(match.get("faq_id")))
        matched.append({
            "faq_id": match.get("faq_id"),
            "question": match.get("question") or _faq_field(stored, "question", ""),
            "confidence": _clamp01(match.get("confidence")),
            "match_reasoning": match.get("match_reasoning"),
            "answer": _faq_field(stored, "answer") if stored is not None else None,
            "category": (
                _faq_field(stored, "category") if stored is not None else None
            ) or "support",
        })

    new_questions = [
        {
            "question": q.get("question", ""),
            "category": q.get("category") or "support",
            "confidence": _clamp01(q.get("confidence")),
            "requires_customer_specific_info": bool(
                q.get("requires_customer_specific_info", False)
            ),
            "reasoning": q.get("reasoning"),
        }
        for q in data.get("new_questions") or []
        if isinstance(q, dict) and q.get("question")
    ]

    return {"matched_faqs": matched, "new_questions": new_questions}


async def generate_generic_faqs(
    emails: Sequence[dict[str, Any]],
    existing_questions: Sequence[str],
    duplicate_threshold: float = 0.7,
    llm: LLMProvider | None = None,
    tracker: UsageTracker | None = None,
) -> dict[str, Any]:
    """
    Group emails into generic FAQs, dropping near-duplicates of stored ones.

    Args:
        emails: dicts with id, subject, content.
        existing_questions: Questions already in the FAQ library.
        duplicate_threshold: pattern similarity above which a generated
            question counts as a duplicate.
    """
    payload = [
        {
            "id": e.get("id"),
            "subject": truncate_content(e.get("subject", ""), e.get("content", "")).subject,
            "content": truncate_content("", e.get("content", "")).content,
        }
        for e in emails
    ]
    data, _ = await _complete_json(
        "generate-faqs", GENERIC_FAQS_SYSTEM, json.dumps(payload), llm, tracker,
        temperature=0.1,
    )

    generated = [
        f for f in data.get("generic_faqs") or []
        if isinstance(f, dict) and f.get("question")
    ]
    keep = set(filter_new_questions(
        [f["question"] for f in generated], existing_questions, duplicate_threshold,
    ))

    faqs = [
        {
            "question": f["question"],
            "category": f.get("category") or "General",
            "email_ids": [str(i) for i in f.get("email_ids") or []],
            "confidence": _clamp01(f.get("confidence")),
            "requires_customer_specific_info": bool(
                f.get("requires_customer_specific_info", False)
            ),
        }
        for f in generated
        if f["question"] in keep
    ]

    logger.info(
        "Generated %d FAQs from %d emails (%d new after de-duplication)",
        len(generated), len(emails), len(faqs),
    )
    return {
        "faqs": faqs,
        "total_emails": len(emails),
        "total_generated": len(generated),
    }


async def generate_pattern(
    subject: str,
    content: str,
    llm: LLMProvider | None = None,
    tracker: UsageTracker | None = None,
) -> dict[str, Any]:
    """
    Generic question pattern for one email.

    Raises:
        LLMResponseError: generic_pattern or suggested_category missing.
    """
    truncated = truncate_content(subject, content)
    data, _ = await _complete_json(
        "generate-pattern",
        PATTERN_SYSTEM,
        PATTERN_PROMPT.format(subject=truncated.subject, content=truncated.content),
        llm,
        tracker,
        temperature=0.1,
    )

    if not data.get("generic_pattern") or not data.get("suggested_category"):
        raise LLMResponseError(
            "The AI response was not in the expected format",
            raw_content=json.dumps(data),
        )

    return {
        "generic_pattern": data["generic_pattern"],
        "similar_patterns": [str(p) for p in data.get("similar_patterns") or []],
        "suggested_category": data["suggested_category"],
        "requires_customer_info": bool(data.get("requires_customer_info", False)),
        "reasoning": data.get("reasoning") or "",
    }


async def simulate_reply(
    email_content: str,
    sender: str,
    llm: LLMProvider | None = None,
    tracker: UsageTracker | None = None,
) -> dict[str, Any]:
    """
    Answer a hypothetical customer email without consulting the FAQ library.

    Returns a single AI-generated match so the playground can render it
    like a FAQ match.
    """
    truncated = truncate_content("", email_content)
    data, _ = await _complete_json(
        "simulate",
        SIMULATE_SYSTEM,
        f"Subject: Customer Inquiry\n\nFrom: {sender}\n\nBody: {truncated.content}",
        llm,
        tracker,
        temperature=0.7,
    )

    analysis = data.get("analysis") or {}
    response = data.get("response") or {}
    confidence = min(100.0, max(0.0, _as_float(response.get("confidence"))))
    suggested_reply = response.get("suggested_reply") or ""

    return {
        "matches": [{
            "faq": {
                "id": "ai-generated",
                "question": email_content,
                "answer": suggested_reply,
            },
            "confidence": confidence,
            "suggested_reply": suggested_reply,
        }],
        "requires_human_response": bool(response.get("requires_human_response", False)),
        "reason": response.get("reason") or "",
        "analysis": {
            "sentiment": analysis.get("sentiment") or "neutral",
            "key_points": analysis.get("key_points") or [],
            "concepts": [analysis["topic"]] if analysis.get("topic") else [],
        },
    }


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v]


async def summarise_thread(
    subject: str,
    sender: str,
    content: str,
    llm: LLMProvider | None = None,
    tracker: UsageTracker | None = None,
) -> dict[str, Any]:
    """Structured summary of one thread for the knowledge view."""
    truncated = truncate_content(subject or "No Subject", content or "No Body")
    data, _ = await _complete_json(
        "summarize-thread",
        SUMMARISE_THREAD_SYSTEM,
        f"Subject: {truncated.subject}\n\nFrom: {sender or 'No Sender'}\n\n"
        f"Body: {truncated.content}",
        llm,
        tracker,
        temperature=0.1,
    )
    return {
        "key_points": _string_list(data.get("key_points")),
        "customer_sentiment": str(data.get("customer_sentiment") or "neutral"),
        "category": str(data.get("category") or "General"),
        "action_items": _string_list(data.get("action_items")),
    }


def _insight_email(email: dict[str, Any]) -> dict[str, Any]:
    body = email.get("body") or email.get("content") or ""
    limit = settings.insights_body_chars
    if len(body) > limit:
        body = body[:limit] + "... [truncated]"
    return {
        "subject": email.get("subject") or "No subject",
        "body": body,
        "category": email.get("category") or "uncategorized",
        "sentiment": email.get("sentiment") or "neutral",
    }


async def generate_insights(
    emails: Sequence[dict[str, Any]],
    token_limit: int = 20000,
    llm: LLMProvider | None = None,
    tracker: UsageTracker | None = None,
) -> dict[str, Any]:
    """
    Trends across many support emails: key points, overall sentiment,
    common questions with typical answers, recommended actions.

    Bodies are cut to `insights_body_chars`. Sections the model leaves
    out are replaced by placeholder text rather than left empty.
    """
    payload = [_insight_email(e) for e in emails]
    data, _ = await _complete_json(
        "generate-insights",
        INSIGHTS_SYSTEM,
        INSIGHTS_PROMPT.format(count=len(payload), emails=json.dumps(payload, indent=2)),
        llm,
        tracker,
        temperature=0.3,
        max_tokens=min(token_limit // 2, 4000),
    )

    sentiment = data.get("customer_sentiment")
    if not isinstance(sentiment, dict):
        sentiment = {}

    common_questions = [
        {
            "question": str(q["question"]),
            "typical_answer": str(q.get("typical_answer") or ""),
            "frequency": max(1, int(_as_float(q.get("frequency"), 1))),
        }
        for q in data.get("common_questions") or []
        if isinstance(q, dict) and q.get("question")
    ]

    return {
        "key_customer_points": (
            _string_list(data.get("key_customer_points")) or list(DEFAULT_KEY_POINTS)
        ),
        "customer_sentiment": {
            "overall": sentiment.get("overall") or "Insufficient data for sentiment analysis",
            "details": (
                sentiment.get("details") or "More data needed for detailed sentiment analysis"
            ),
        },
        "common_questions": common_questions,
        "recommended_actions": (
            _string_list(data.get("recommended_actions")) or list(DEFAULT_ACTIONS)
        ),
    }
