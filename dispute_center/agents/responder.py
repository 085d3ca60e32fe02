# =============================================================================
# Responder Agent — Customer Reply Drafting
# =============================================================================
#
# Turns matched FAQ answers into a ready-to-send email reply. Unlike the
# analyst, replies are free text and drafted at a warmer temperature
# (settings.reply_temperature).
#
#   draft_reply — one primary FAQ match plus related questions/answers,
#                 formatted with the agent's greeting, signature and
#                 custom instructions
#   auto_reply  — a list of matched FAQs, no formatting preferences
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from dispute_center.config import settings
from dispute_center.services.llm import LLMProvider, LLMResponseError, get_llm_provider
from dispute_center.services.text import truncate_content
from dispute_center.services.usage import UsageTracker

logger = logging.getLogger(__name__)

RESPONDER_SYSTEM = (
    "You are an experienced customer support agent who writes clear, "
    "helpful, and empathetic responses."
)


@dataclass
class ReplyFormatting:
    """How the support agent likes replies to open and close."""

    greeting: str = "Hi there"
    signature: str = "Sincerely, Our Team"
    custom_prompt: str = "Please keep responses friendly and human sounding."


DEFAULT_FORMATTING = ReplyFormatting()


def _field(item: Any, name: str) -> Any:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


async def _complete_text(
    function_name: str,
    prompt: str,
    llm: LLMProvider | None,
    tracker: UsageTracker | None,
) -> str:
    llm = llm or get_llm_provider()
    try:
        response = await llm.complete(
            messages=[{"role": "user", "content": prompt}],
            system=RESPONDER_SYSTEM,
            temperature=settings.reply_temperature,
        )
    except Exception as e:
        if tracker is not None:
            tracker.failure(function_name, llm, e)
        raise

    if tracker is not None:
        tracker.success(function_name, llm, response)

    reply = response.content.strip()
    if not reply:
        raise LLMResponseError("Empty reply from LLM")
    return reply


def build_reply_prompt(
    subject: str,
    content: str,
    matched_faq: Any,
    questions: Sequence[Any] = (),
    answered_faqs: Sequence[Any] = (),
    formatting: ReplyFormatting = DEFAULT_FORMATTING,
) -> str:
    truncated = truncate_content(subject, content)
    lines = [
        "You are a helpful customer support agent. Generate a professional "
        "and empathetic email reply.",
        "",
        "Context:",
        f'- Original Email Subject: "{truncated.subject}"',
        f'- Original Email Content: "{truncated.content}"',
        f'- Main Question Matched: "{_field(matched_faq, "question")}"',
        f'- Answer to Main Question: "{_field(matched_faq, "answer")}"',
    ]
    if questions:
        joined = ", ".join(f'"{_field(q, "question") or q}"' for q in questions)
        lines.append(f"- Other Questions from Email: {joined}")
    if answered_faqs:
        joined = " | ".join(
            f'Q: "{_field(f, "question")}" A: "{_field(f, "answer")}"'
            for f in answered_faqs
        )
        lines.append(f"- Related FAQ Answers: {joined}")

    lines += [
        "",
        "Email Formatting Guidelines:",
        f'- Use this greeting style: "{formatting.greeting}"',
        f'- Use this signature style: "{formatting.signature}"',
        f"- Additional formatting instructions: {formatting.custom_prompt}",
        "",
        "Instructions:",
        "1. Start with the greeting, replacing [Name] with the sender's name if known",
        "2. Acknowledge their specific concern or question",
        "3. Give a clear answer that incorporates all relevant FAQ information",
        "4. Add related information from the other matched FAQs",
        "5. End with the signature, replacing [Name] where applicable",
        "6. Format the response with appropriate spacing and paragraphs",
        "",
        "Generate the email reply:",
    ]
    return "\n".join(lines)


async def draft_reply(
    subject: str,
    content: str,
    matched_faq: Any,
    questions: Sequence[Any] = (),
    answered_faqs: Sequence[Any] = (),
    formatting: ReplyFormatting | None = None,
    llm: LLMProvider | None = None,
    tracker: UsageTracker | None = None,
) -> str:
    """Draft a reply built around one matched FAQ."""
    prompt = build_reply_prompt(
        subject, content, matched_faq, questions, answered_faqs,
        formatting or DEFAULT_FORMATTING,
    )
    return await _complete_text("generate-reply", prompt, llm, tracker)


async def auto_reply(
    subject: str,
    content: str,
    matched_faqs: Sequence[Any],
    llm: LLMProvider | None = None,
    tracker: UsageTracker | None = None,
) -> str:
    """Draft a reply answering every question covered by `matched_faqs`."""
    if not matched_faqs:
        raise ValueError("At least one matched FAQ is required")

    truncated = truncate_content(subject, content)
    faq_block = "\n".join(
        f"Q: {_field(f, 'question')}\nA: {_field(f, 'answer')}\n"
        f"Confidence: {_field(f, 'confidence')}\n"
        for f in matched_faqs
    )
    prompt = (
        "Generate an email reply based on the following:\n\n"
        f"Original Email:\nSubject: {truncated.subject}\n"
        f"Content: {truncated.content}\n\n"
        f"Matched FAQs:\n{faq_block}\n"
        "Instructions:\n"
        "1. Write a professional and empathetic response\n"
        "2. Address all questions from the original email\n"
        "3. Use the matched FAQ answers as reference\n"
        "4. Keep the tone helpful and friendly\n"
        "5. Format with appropriate paragraphs and spacing"
    )
    return await _complete_text("auto-reply", prompt, llm, tracker)
