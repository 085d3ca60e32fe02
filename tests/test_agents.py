# =============================================================================
# Unit Tests — Analyst & Responder Agents
# =============================================================================
#
# Tests the agent components without requiring API keys or databases.
# The LLM provider is an AsyncMock returning canned LLMResponse objects.
# =============================================================================

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from dispute_center.agents.analyst import (
    analyse_email,
    analyse_irrelevance,
    extract_questions,
    generate_generic_faqs,
    generate_insights,
    generate_pattern,
    simulate_reply,
    summarise_thread,
)
from dispute_center.agents.responder import ReplyFormatting, auto_reply, draft_reply
from dispute_center.config import settings
from dispute_center.db.models import IrrelevanceCategory
from dispute_center.services.llm import LLMResponse, LLMResponseError, parse_json_content
from dispute_center.services.usage import UsageTracker


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _mock_llm(content) -> AsyncMock:
    """Provider whose completion returns `content` (dicts are JSON-encoded)."""
    mock_llm = AsyncMock()
    mock_llm.provider_type = "openai_compatible"
    mock_llm._model = "gpt-4o-mini"
    mock_llm.complete.return_value = LLMResponse(
        content=json.dumps(content) if isinstance(content, dict) else content,
        model="gpt-4o-mini",
        input_tokens=120,
        output_tokens=40,
    )
    return mock_llm


FAQS = [
    SimpleNamespace(
        id=1, question="How can I request a refund",
        answer="Reply to this email within 30 days.", category="Billing",
    ),
    SimpleNamespace(
        id=2, question="How do I reset my password",
        answer="Use the 'Forgot password' link.", category="Account",
    ),
]


# ---------------------------------------------------------------------------
# Test: JSON parsing
# ---------------------------------------------------------------------------


class TestParseJsonContent:

    def test_plain_object(self):
        assert parse_json_content('{"a": 1}') == {"a": 1}

    def test_fenced_object(self):
        assert parse_json_content('```json\n{"a": 1}\n```') == {"a": 1}

    def test_array_rejected(self):
        with pytest.raises(LLMResponseError, match="not a JSON object"):
            parse_json_content("[1, 2]")

    def test_empty_rejected(self):
        with pytest.raises(LLMResponseError, match="Empty"):
            parse_json_content("   ")

    def test_invalid_json_keeps_raw_content(self):
        with pytest.raises(LLMResponseError) as exc_info:
            parse_json_content("Sure! Here you go")
        assert exc_info.value.raw_content == "Sure! Here you go"


# ---------------------------------------------------------------------------
# Test: analyse_email
# ---------------------------------------------------------------------------


class TestAnalyseEmail:

    def test_defaults_and_clamping(self):
        mock_llm = _mock_llm({
            "suggested_questions": ["How can I request a refund?"],
            "sentiment": "furious",
            "confidence": 1.4,
            "matched_faq": "FAQ #1",
        })
        tracker = UsageTracker()

        result = _run(analyse_email(
            "Refund please", "I want my money back", FAQS, llm=mock_llm, tracker=tracker,
        ))

        assert result.analysis["sentiment"] == "neutral"
        assert result.analysis["is_support"] is True
        assert result.analysis["requires_human_response"] is False
        assert result.analysis["key_points"] == []
        assert result.confidence == 1.0
        assert result.matched_faq is None
        assert result.generated_reply is None
        assert result.model == "gpt-4o-mini"
        assert [e.function_name for e in tracker.entries] == ["analyse-email"]

    def test_prompt_carries_faqs_in_json_mode(self):
        mock_llm = _mock_llm({"sentiment": "negative"})

        _run(analyse_email("Refund please", "I want my money back", FAQS, llm=mock_llm))

        kwargs = mock_llm.complete.call_args.kwargs
        assert kwargs["json_mode"] is True
        payload = json.loads(kwargs["messages"][0]["content"])
        assert payload["subject"] == "Refund please"
        assert [f["id"] for f in payload["existing_faqs"]] == [1, 2]

    def test_question_objects_flattened(self):
        mock_llm = _mock_llm({
            "suggested_questions": [{"question": "How do I reset my password?"}, None],
        })
        result = _run(analyse_email("Password", "Forgot it", llm=mock_llm))
        assert result.analysis["suggested_questions"] == ["How do I reset my password?"]

    def test_explicit_not_support_kept(self):
        mock_llm = _mock_llm({"is_support": False, "matched_faq": {"id": 1, "question": "q"}})
        result = _run(analyse_email("Hi", "Lunch?", llm=mock_llm))
        assert result.analysis["is_support"] is False
        assert result.matched_faq == {"id": 1, "question": "q"}

    def test_provider_failure_recorded(self):
        mock_llm = _mock_llm({})
        mock_llm.complete.side_effect = TimeoutError("upstream timeout")
        tracker = UsageTracker()

        with pytest.raises(TimeoutError):
            _run(analyse_email("s", "c", llm=mock_llm, tracker=tracker))

        assert tracker.entries[0].status == "failed"
        assert tracker.entries[0].error == "upstream timeout"

    def test_unparseable_response_still_billed(self):
        """Tokens were spent, so the call is recorded as a success."""
        mock_llm = _mock_llm("I cannot answer that")
        tracker = UsageTracker()

        with pytest.raises(LLMResponseError):
            _run(analyse_email("s", "c", llm=mock_llm, tracker=tracker))

        assert tracker.entries[0].status == "success"
        assert tracker.entries[0].input_tokens == 120


# ---------------------------------------------------------------------------
# Test: other analyses
# ---------------------------------------------------------------------------


class TestAnalyseIrrelevance:

    def test_category_normalised(self):
        mock_llm = _mock_llm({"reason": "Marketing", "category": "SPAM", "confidence": 0.9})
        result = _run(analyse_irrelevance("Big sale", "50% off", llm=mock_llm))
        assert result.category is IrrelevanceCategory.SPAM
        assert result.to_dict()["category"] == "spam"

    def test_unknown_category_is_other(self):
        mock_llm = _mock_llm({"reason": "?", "category": "newsletter"})
        result = _run(analyse_irrelevance("s", "c", llm=mock_llm))
        assert result.category is IrrelevanceCategory.OTHER
        assert result.confidence == 0.0


class TestExtractQuestions:

    def test_matches_enriched_from_stored_faqs(self):
        mock_llm = _mock_llm({
            "matched_faqs": [
                {"faq_id": 1, "question": "How can I request a refund",
                 "confidence": 0.9, "match_reasoning": "refund intent"},
                {"faq_id": 99, "confidence": 2},
            ],
            "new_questions": [
                {"question": "Do you ship abroad?"},
                {"question": ""},
            ],
        })

        result = _run(extract_questions("Refund and shipping?", FAQS, llm=mock_llm))

        known, unknown = result["matched_faqs"]
        assert known["answer"] == "Reply to this email within 30 days."
        assert known["category"] == "Billing"
        assert unknown["answer"] is None
        assert unknown["category"] == "support"
        assert unknown["confidence"] == 1.0

        assert result["new_questions"] == [{
            "question": "Do you ship abroad?",
            "category": "support",
            "confidence": 0.0,
            "requires_customer_specific_info": False,
            "reasoning": None,
        }]

    def test_low_temperature(self):
        mock_llm = _mock_llm({})
        _run(extract_questions("content", [], llm=mock_llm))
        assert mock_llm.complete.call_args.kwargs["temperature"] == 0.1


class TestGenerateGenericFaqs:

    def test_duplicates_of_existing_questions_dropped(self):
        mock_llm = _mock_llm({
            "generic_faqs": [
                {"question": "How do I reset my password?", "email_ids": [1]},
                {"question": "How long does shipping take?", "category": "Shipping",
                 "email_ids": [2, 3], "confidence": 0.8},
            ],
        })

        result = _run(generate_generic_faqs(
            [{"id": "1", "subject": "pw", "content": "reset?"},
             {"id": "2", "subject": "ship", "content": "when?"}],
            existing_questions=["How do I reset my password"],
            llm=mock_llm,
        ))

        assert result["total_emails"] == 2
        assert result["total_generated"] == 2
        assert result["faqs"] == [{
            "question": "How long does shipping take?",
            "category": "Shipping",
            "email_ids": ["2", "3"],
            "confidence": 0.8,
            "requires_customer_specific_info": False,
        }]


class TestGeneratePattern:

    def test_pattern_returned(self):
        mock_llm = _mock_llm({
            "generic_pattern": "How to connect {third_party_service}",
            "similar_patterns": ["Link {service} account"],
            "suggested_category": "setup",
        })
        result = _run(generate_pattern("Spotify", "How do I connect Spotify?", llm=mock_llm))
        assert result["suggested_category"] == "setup"
        assert result["requires_customer_info"] is False
        assert result["reasoning"] == ""

    def test_missing_fields_rejected(self):
        mock_llm = _mock_llm({"similar_patterns": []})
        with pytest.raises(LLMResponseError, match="expected format"):
            _run(generate_pattern("s", "c", llm=mock_llm))


class TestSimulateReply:

    def test_single_ai_match(self):
        mock_llm = _mock_llm({
            "analysis": {"sentiment": "negative", "key_points": ["late"], "topic": "shipping"},
            "response": {"suggested_reply": "Sorry for the delay!", "confidence": 150,
                         "requires_human_response": False, "reason": "Simple"},
        })

        result = _run(simulate_reply("Where is my order?", "bob@example.com", llm=mock_llm))

        match = result["matches"][0]
        assert match["faq"] == {
            "id": "ai-generated",
            "question": "Where is my order?",
            "answer": "Sorry for the delay!",
        }
        assert match["confidence"] == 100.0
        assert result["analysis"]["concepts"] == ["shipping"]
        assert mock_llm.complete.call_args.kwargs["temperature"] == 0.7


class TestSummariseThread:

    def test_summary_fields(self):
        mock_llm = _mock_llm({
            "key_points": ["Charged twice", "Wants refund"],
            "customer_sentiment": "negative, frustrated by the double charge",
            "category": "Billing",
            "action_items": ["Refund duplicate charge"],
        })
        tracker = UsageTracker()

        summary = _run(summarise_thread(
            "Double charge", "bob@example.com", "You charged me twice",
            llm=mock_llm, tracker=tracker,
        ))

        assert summary["category"] == "Billing"
        assert summary["action_items"] == ["Refund duplicate charge"]
        kwargs = mock_llm.complete.call_args.kwargs
        assert kwargs["temperature"] == 0.1
        assert "From: bob@example.com" in kwargs["messages"][0]["content"]
        assert tracker.entries[0].function_name == "summarize-thread"

    def test_missing_fields_defaulted(self):
        summary = _run(summarise_thread("", "", "hello", llm=_mock_llm({})))
        assert summary == {
            "key_points": [],
            "customer_sentiment": "neutral",
            "category": "General",
            "action_items": [],
        }


class TestGenerateInsights:

    def test_placeholders_for_missing_sections(self):
        mock_llm = _mock_llm({
            "common_questions": [
                {"question": "How do I cancel?", "typical_answer": "Settings > Billing"},
                {"question": "Refund?", "typical_answer": "Yes", "frequency": 4},
                {"typical_answer": "orphan"},
            ],
        })

        result = _run(generate_insights(
            [{"subject": "Cancel", "body": "How do I cancel?"}], llm=mock_llm,
        ))

        assert result["key_customer_points"] == [
            "No key points identified", "Analysis needs more data",
        ]
        assert result["customer_sentiment"] == {
            "overall": "Insufficient data for sentiment analysis",
            "details": "More data needed for detailed sentiment analysis",
        }
        assert [q["frequency"] for q in result["common_questions"]] == [1, 4]
        assert result["recommended_actions"] == [
            "Gather more customer feedback", "Implement systematic support tracking",
        ]

    def test_bodies_truncated_and_completion_capped(self):
        mock_llm = _mock_llm({})
        with patch.object(settings, "insights_body_chars", 10):
            _run(generate_insights(
                [{"subject": "Long", "body": "x" * 50}, {"body": "short"}],
                token_limit=20000,
                llm=mock_llm,
            ))

        kwargs = mock_llm.complete.call_args.kwargs
        prompt = kwargs["messages"][0]["content"]
        assert "xxxxxxxxxx... [truncated]" in prompt
        assert "x" * 11 not in prompt
        assert '"subject": "No subject"' in prompt
        assert "these 2 customer support emails" in prompt
        assert kwargs["max_tokens"] == 4000
        assert kwargs["temperature"] == 0.3

    def test_small_token_limit_halved(self):
        mock_llm = _mock_llm({})
        _run(generate_insights([{"body": "hi"}], token_limit=3000, llm=mock_llm))
        assert mock_llm.complete.call_args.kwargs["max_tokens"] == 1500


# ---------------------------------------------------------------------------
# Test: Responder
# ---------------------------------------------------------------------------


class TestResponder:

    def test_draft_uses_formatting(self):
        mock_llm = _mock_llm("  Hello Bob,\n\nHere is how...  ")
        tracker = UsageTracker()

        reply = _run(draft_reply(
            "Refund", "Can I get a refund?", FAQS[0],
            questions=[{"question": "How long does it take?"}],
            formatting=ReplyFormatting(greeting="Hey [Name]", signature="Cheers, Ana"),
            llm=mock_llm,
            tracker=tracker,
        ))

        assert reply == "Hello Bob,\n\nHere is how..."
        kwargs = mock_llm.complete.call_args.kwargs
        prompt = kwargs["messages"][0]["content"]
        assert 'greeting style: "Hey [Name]"' in prompt
        assert '"How long does it take?"' in prompt
        assert "Reply to this email within 30 days." in prompt
        assert kwargs["temperature"] == settings.reply_temperature
        assert tracker.entries[0].function_name == "generate-reply"

    def test_empty_reply_is_an_error(self):
        with pytest.raises(LLMResponseError):
            _run(draft_reply("s", "c", FAQS[0], llm=_mock_llm("   ")))

    def test_auto_reply_lists_every_faq(self):
        mock_llm = _mock_llm("Thanks for reaching out")
        _run(auto_reply("Help", "Two questions", [
            {"question": "Q1", "answer": "A1", "confidence": 0.9},
            {"question": "Q2", "answer": "A2", "confidence": 0.7},
        ], llm=mock_llm))

        prompt = mock_llm.complete.call_args.kwargs["messages"][0]["content"]
        assert "Q: Q1\nA: A1" in prompt
        assert "Q: Q2\nA: A2" in prompt

    def test_auto_reply_needs_matches(self):
        with pytest.raises(ValueError):
            _run(auto_reply("s", "c", [], llm=_mock_llm("x")))
