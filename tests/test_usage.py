# =============================================================================
# Unit Tests — Pricing, Usage Ledger and Prompt Text Helpers
# =============================================================================

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from dispute_center.services.llm import LLMResponse
from dispute_center.services.pricing import estimate_cost, get_pricing
from dispute_center.services.text import estimate_tokens, is_large_content, truncate_content
from dispute_center.services.usage import UsageEntry, UsageTracker, record_usage_sync

# ---------------------------------------------------------------------------
# 1. Pricing
# ---------------------------------------------------------------------------


class TestPricing:

    def test_gpt_4o_mini_per_million(self):
        cost = estimate_cost("openai_compatible", "gpt-4o-mini", 1_000_000, 1_000_000)
        assert cost == pytest.approx(0.75)

    def test_per_thousand_model(self):
        cost = estimate_cost("openai_compatible", "gpt-4", 1_000, 1_000)
        assert cost == pytest.approx(0.09)

    def test_dated_snapshot_falls_back_to_longest_prefix(self):
        """'gpt-4o-mini-2024-07-18' is priced as gpt-4o-mini, not gpt-4o."""
        assert get_pricing("openai_compatible", "gpt-4o-mini-2024-07-18") == get_pricing(
            "openai_compatible", "gpt-4o-mini",
        )

    def test_unknown_model_is_none(self):
        assert estimate_cost("openai_compatible", "llama3", 10, 10) is None

    def test_provider_must_match(self):
        assert get_pricing("anthropic", "gpt-4o") is None


# ---------------------------------------------------------------------------
# 2. Usage Tracker
# ---------------------------------------------------------------------------


class TestUsageTracker:

    def test_success_and_failure_entries(self):
        provider = SimpleNamespace(provider_type="openai_compatible", _model="gpt-4o-mini")
        tracker = UsageTracker()
        tracker.success(
            "analyse-email", provider,
            LLMResponse(content="{}", model="gpt-4o-mini", input_tokens=100, output_tokens=20),
        )
        tracker.failure("generate-reply", provider, TimeoutError("timed out"))

        assert tracker.input_tokens == 100
        assert tracker.output_tokens == 20
        ok, failed = tracker.entries
        assert ok.total_tokens == 120
        assert ok.estimated_cost_usd == pytest.approx(100 * 0.15e-6 + 20 * 0.60e-6)
        assert failed.status == "failed"
        assert failed.model == "gpt-4o-mini"
        assert failed.error == "timed out"

    def test_drain_empties_tracker(self):
        tracker = UsageTracker(entries=[UsageEntry("f", "m", "openai_compatible")])
        drained = tracker.drain()
        assert len(drained) == 1
        assert tracker.entries == []

    def test_to_row_for_unknown_model_has_null_cost(self):
        row = UsageEntry("simulate", "mystery", "openai_compatible", 5, 5).to_row("a@x.com")
        assert row.user_email == "a@x.com"
        assert row.total_tokens == 10
        assert row.estimated_cost_usd is None

    def test_sync_recording_swallows_errors(self):
        session = MagicMock()
        session.flush.side_effect = RuntimeError("db down")
        record_usage_sync(session, "a@x.com", [UsageEntry("f", "gpt-4o", "openai_compatible")])
        session.rollback.assert_called_once()


# ---------------------------------------------------------------------------
# 3. Prompt Text
# ---------------------------------------------------------------------------


class TestTruncation:

    def test_short_text_untouched(self):
        result = truncate_content("Hello", "Short body", max_subject_chars=100, max_content_chars=100)
        assert (result.subject, result.content, result.truncated) == ("Hello", "Short body", False)

    def test_subject_cut_with_ellipsis(self):
        result = truncate_content("x" * 20, "", max_subject_chars=10, max_content_chars=100)
        assert result.subject == "x" * 10 + "..."
        assert result.truncated is True

    def test_content_keeps_head_and_tail(self):
        """100-char limit keeps the first 60 and last 40 characters."""
        content = "a" * 100 + "b" * 50
        result = truncate_content("", content, max_subject_chars=10, max_content_chars=100)

        assert result.content.startswith("a" * 60 + "\n\n[... 50 characters truncated ...]")
        assert result.content.endswith("\n\n" + "b" * 40)

    def test_large_content_threshold(self):
        with patch("dispute_center.services.text.settings") as mock_settings:
            mock_settings.large_content_chars = 10
            assert is_large_content("x" * 11) is True
            assert is_large_content("x" * 10) is False
            assert is_large_content(None) is False

    def test_estimate_tokens_empty(self):
        assert estimate_tokens("") == 0
