# =============================================================================
# Unit Tests — Triage Graph
# =============================================================================
#
# Runs the compiled LangGraph pipeline end to end with a mocked provider.
# Each test pins one of the final decisions:
#   too_large | not_support | requires_human | no_match | drafted
# =============================================================================

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

from dispute_center.agents.orchestrator import route_after_match, triage_email
from dispute_center.services.llm import LLMResponse
from dispute_center.services.usage import UsageTracker


def _run(coro):
    return asyncio.run(coro)


def _response(content) -> LLMResponse:
    return LLMResponse(
        content=json.dumps(content) if isinstance(content, dict) else content,
        model="gpt-4o-mini",
        input_tokens=50,
        output_tokens=25,
    )


def _mock_llm(*contents) -> AsyncMock:
    mock_llm = AsyncMock()
    mock_llm.provider_type = "openai_compatible"
    mock_llm._model = "gpt-4o-mini"
    mock_llm.complete.side_effect = [_response(c) for c in contents]
    return mock_llm


def _faq(id, question, concepts=None):
    return SimpleNamespace(
        id=id,
        question=question,
        answer=f"Answer {id}",
        category="Account",
        concepts=concepts or [],
        similar_patterns=[],
    )


RESET_FAQ = _faq(2, "reset password", concepts=["password"])


class TestTriageDecisions:

    def test_oversized_email_stops_before_llm(self):
        mock_llm = _mock_llm()
        state = _run(triage_email("Logs", "x" * 500_001, [RESET_FAQ], llm=mock_llm))
        assert state["decision"] == "too_large"
        assert state["reply"] is None
        mock_llm.complete.assert_not_called()

    def test_non_support_without_cache_skips_llm(self):
        mock_llm = _mock_llm()
        state = _run(triage_email(
            "Weekly newsletter", "Our top picks this week", [RESET_FAQ], llm=mock_llm,
        ))
        assert state["decision"] == "not_support"
        mock_llm.complete.assert_not_called()

    def test_cached_analysis_drafts_without_reanalysing(self):
        mock_llm = _mock_llm("Hi there, use the reset link.")
        tracker = UsageTracker()

        state = _run(triage_email(
            "Password reset",
            "Hello, could you help me?",
            [RESET_FAQ],
            cached_analysis={"suggested_questions": ["reset password"]},
            llm=mock_llm,
            tracker=tracker,
        ))

        assert state["decision"] == "drafted"
        assert state["analysis_source"] == "cache"
        assert state["reply"] == "Hi there, use the reset link."
        assert state["match_confidence"] == 100.0
        assert state["matches"][0]["faq_id"] == 2
        assert mock_llm.complete.call_count == 1
        assert [e.function_name for e in tracker.entries] == ["generate-reply"]

    def test_fresh_analysis_then_draft(self):
        mock_llm = _mock_llm(
            {"suggested_questions": ["reset password"], "sentiment": "negative"},
            "Here is how to reset it.",
        )
        tracker = UsageTracker()

        state = _run(triage_email(
            "Password help", "I need help, I forgot it", [RESET_FAQ],
            llm=mock_llm, tracker=tracker,
        ))

        assert state["decision"] == "drafted"
        assert state["analysis_source"] == "fresh"
        assert state["analysis"]["sentiment"] == "negative"
        assert [e.function_name for e in tracker.entries] == ["analyse-email", "generate-reply"]

    def test_llm_confidence_kept_apart_from_match_score(self):
        """The analysis keeps the LLM's 0-1 confidence and FAQ pick."""
        mock_llm = _mock_llm(
            {
                "suggested_questions": ["reset password"],
                "confidence": 0.9,
                "matched_faq": {"id": 2, "question": "reset password"},
            },
            "Drafted.",
        )

        state = _run(triage_email(
            "Help: reset password", "I forgot it", [RESET_FAQ], llm=mock_llm,
        ))

        assert state["decision"] == "drafted"
        assert state["match_confidence"] == 100.0
        assert state["confidence"] == 0.9
        assert 0.0 <= state["confidence"] <= 1.0
        assert state["matched_faq"] == {"id": 2, "question": "reset password"}

    def test_question_objects_from_llm_are_matched(self):
        mock_llm = _mock_llm(
            {"suggested_questions": [{"question": "reset password"}, {"topic": "x"}]},
            "Drafted.",
        )

        state = _run(triage_email(
            "Password help", "I need help, I forgot it", [RESET_FAQ], llm=mock_llm,
        ))

        assert state["analysis"]["suggested_questions"] == ["reset password"]
        assert state["match_confidence"] == 100.0
        assert state["decision"] == "drafted"

    def test_question_objects_in_cached_analysis_are_matched(self):
        state = _run(triage_email(
            "Password help", "help", [RESET_FAQ],
            cached_analysis={"suggested_questions": [{"question": "reset password"}]},
            llm=_mock_llm("Drafted."),
        ))
        assert state["match_confidence"] == 100.0
        assert state["decision"] == "drafted"

    def test_requires_human(self):
        mock_llm = _mock_llm()
        state = _run(triage_email(
            "Password reset", "help", [RESET_FAQ],
            cached_analysis={"requires_human_response": True},
            llm=mock_llm,
        ))
        assert state["decision"] == "requires_human"
        assert state["reply"] is None
        mock_llm.complete.assert_not_called()

    def test_no_faqs_means_no_match(self):
        state = _run(triage_email(
            "Password reset", "help", [],
            cached_analysis={"suggested_questions": ["reset password"]},
            llm=_mock_llm(),
        ))
        assert state["decision"] == "no_match"
        assert state["matches"] == []

    def test_weak_match_below_threshold(self):
        """65 clears the match floor (50) but not the draft threshold (70)."""
        weak = _faq(5, "how do i reset my password", concepts=["password"])
        state = _run(triage_email(
            "Password reset", "help", [weak],
            cached_analysis={"suggested_questions": ["reset password"]},
            llm=_mock_llm(),
        ))
        assert state["decision"] == "no_match"
        assert state["match_confidence"] == 65.0

    def test_lower_threshold_allows_draft(self):
        weak = _faq(5, "how do i reset my password", concepts=["password"])
        state = _run(triage_email(
            "Password reset", "help", [weak],
            cached_analysis={"suggested_questions": ["reset password"]},
            min_confidence=60,
            llm=_mock_llm("Drafted."),
        ))
        assert state["decision"] == "drafted"


class TestRouteAfterMatch:

    def test_not_support_wins(self):
        state = {"analysis": {"is_support": False}, "matches": [{}], "match_confidence": 100}
        assert route_after_match(state) == "not_support"

    def test_missing_support_flag_defaults_to_support(self):
        state = {"analysis": {}, "matches": [{}], "match_confidence": 90, "min_confidence": 70}
        assert route_after_match(state) == "draft"
