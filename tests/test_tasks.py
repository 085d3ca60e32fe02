# =============================================================================
# Unit Tests — Celery Bulk Analysis Task
# =============================================================================
#
# The task body is called directly (task.run), with the sync database
# helpers and the LLM batch patched out. No broker or worker required.
# =============================================================================

from __future__ import annotations

from contextlib import contextmanager
from unittest.mock import AsyncMock, MagicMock, call, patch

import pytest

from dispute_center.agents.analyst import EmailAnalysisResult
from dispute_center.config import settings
from dispute_center.db.models import JobStatus
from dispute_center.services.batching import BatchResult
from dispute_center.workers.tasks import analyse_emails

EMAILS = [
    {"thread_id": f"t-{n}", "subject": f"Subject {n}", "content": f"Body {n}"}
    for n in range(1, 5)
]


def _result(confidence=0.5) -> EmailAnalysisResult:
    return EmailAnalysisResult(
        analysis={"sentiment": "neutral"},
        matched_faq=None,
        confidence=confidence,
        generated_reply=None,
        model="gpt-4o-mini",
    )


@contextmanager
def _fake_sync_session():
    yield MagicMock()


class TestAnalyseEmailsTask:

    def test_batches_progress_and_summary(self):
        """4 emails, 1 already fresh, batches of 2 → 2 batches, 1 pause."""
        pending = EMAILS[1:]
        outcomes = [
            BatchResult(results=[_result(), None], failures=[(EMAILS[2], "LLM timeout")]),
            BatchResult(results=[_result(0.9)], failures=[]),
        ]

        with (
            patch("dispute_center.workers.tasks._update_job") as mock_update,
            patch("dispute_center.workers.tasks._load_faqs", return_value=[]),
            patch("dispute_center.workers.tasks._pending_emails", return_value=pending),
            patch(
                "dispute_center.workers.tasks._analyse_batch",
                new=AsyncMock(side_effect=outcomes),
            ),
            patch("dispute_center.workers.tasks.get_sync_session", new=_fake_sync_session),
            patch("dispute_center.workers.tasks.store_analysis_sync") as mock_store,
            patch("dispute_center.workers.tasks.record_usage_sync") as mock_usage,
            patch("dispute_center.workers.tasks.time.sleep") as mock_sleep,
            patch.object(settings, "llm_batch_size", 2),
            patch.object(settings, "batch_delay_seconds", 1.0),
        ):
            summary = analyse_emails.run(
                job_id=7, user_email="agent@example.com", emails=EMAILS,
            )

        assert summary == {
            "job_id": 7,
            "status": "completed",
            "processed_emails": 3,
            "failed_emails": 1,
            "skipped_emails": 1,
        }
        assert [c.args[2] for c in mock_store.call_args_list] == ["t-2", "t-4"]
        assert mock_usage.call_count == 2
        mock_sleep.assert_called_once_with(1.0)

        first, *_, last = mock_update.call_args_list
        assert first.kwargs["status"] == JobStatus.PROCESSING
        assert last == call(7, status=JobStatus.COMPLETED)
        assert call(
            7, processed_emails=2, failed_emails=1,
            errors=[{"thread_id": "t-3", "error": "LLM timeout"}],
        ) in mock_update.call_args_list

    def test_unexpected_error_marks_job_failed(self):
        with (
            patch("dispute_center.workers.tasks._update_job") as mock_update,
            patch(
                "dispute_center.workers.tasks._load_faqs",
                side_effect=RuntimeError("database unavailable"),
            ),
        ):
            with pytest.raises(RuntimeError):
                analyse_emails.run(job_id=3, user_email="a@x.com", emails=EMAILS)

        assert mock_update.call_args_list[-1] == call(
            3, status=JobStatus.FAILED, error_message="database unavailable",
        )
