# =============================================================================
# Unit Tests — Stripe Disputes
# =============================================================================

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import httpx
import pytest

from dispute_center.services.stripe import (
    StripeApiError,
    StripeClient,
    dispute_metrics,
    filter_open_disputes,
    mask_key,
    summarise_dispute,
    validate_key,
)


def _run(coro):
    return asyncio.run(coro)


DISPUTES = [
    {"id": "dp_1", "status": "needs_response"},
    {"id": "dp_2", "status": "warning_needs_response"},
    {"id": "dp_3", "status": "won"},
    {"id": "dp_4", "status": "needs_response"},
]


class TestDisputeHelpers:

    def test_open_disputes(self):
        assert [d["id"] for d in filter_open_disputes(DISPUTES)] == ["dp_1", "dp_2", "dp_4"]

    def test_metrics(self):
        assert dispute_metrics(DISPUTES) == {
            "active_disputes": 2,
            "response_drafts": 1,
            "has_stripe_key": True,
        }

    def test_metrics_without_key_are_null(self):
        assert dispute_metrics(None) == {
            "active_disputes": None,
            "response_drafts": None,
            "has_stripe_key": False,
        }

    def test_summarise_expanded_dispute(self):
        dispute = {
            "id": "dp_1",
            "amount": 4900,
            "currency": "usd",
            "reason": "fraudulent",
            "status": "needs_response",
            "created": 1_767_225_600,
            "evidence_details": {"due_by": 1_768_435_200},
            "charge": {
                "id": "ch_1",
                "customer": {"email": "buyer@example.com", "name": "Buyer"},
                "billing_details": {"email": "billing@example.com", "name": "Billing"},
            },
        }
        summary = summarise_dispute(dispute)

        assert summary["charge_id"] == "ch_1"
        assert summary["customer_email"] == "buyer@example.com"
        assert summary["customer_name"] == "Buyer"
        assert summary["created"] == datetime(2026, 1, 1, tzinfo=UTC)
        assert summary["evidence_due_by"] == datetime(2026, 1, 15, tzinfo=UTC)

    def test_summarise_unexpanded_charge(self):
        summary = summarise_dispute({"id": "dp_2", "charge": "ch_9"})
        assert summary["charge_id"] == "ch_9"
        assert summary["customer_email"] is None
        assert summary["created"] is None

    def test_billing_details_fallback(self):
        summary = summarise_dispute({
            "id": "dp_3",
            "charge": {"id": "ch_3", "customer": "cus_1", "billing_details": {"email": "b@x.com"}},
        })
        assert summary["customer_email"] == "b@x.com"

    def test_mask_key(self):
        assert mask_key("sk_live_abcdefgh1234") == "sk_live_...1234"

    def test_mask_key_without_prefix(self):
        assert mask_key("rk5678") == "...5678"


class TestStripeClient:

    def test_list_disputes_auth_and_expand(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["version"] = request.headers["Stripe-Version"]
            seen["expand"] = request.url.params.get_list("expand[]")
            seen["limit"] = request.url.params["limit"]
            return httpx.Response(200, json={"object": "list", "data": DISPUTES})

        async def go():
            async with StripeClient(
                "sk_test_123",
                base_url="https://stripe.test/v1",
                api_version="2024-12-18.acacia",
                transport=httpx.MockTransport(handler),
            ) as stripe:
                return await stripe.list_disputes(limit=100)

        disputes = _run(go())
        assert len(disputes) == 4
        assert seen["auth"].startswith("Basic ")
        assert seen["version"] == "2024-12-18.acacia"
        assert seen["expand"] == ["data.charge", "data.charge.customer"]
        assert seen["limit"] == "100"

    def test_open_disputes_listed_per_status(self):
        """100 recent closed disputes must not hide an older open one."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request.url.params)
            status = request.url.params.get("status")
            if status is None:
                data = [{"id": f"dp_{n}", "status": "lost"} for n in range(100)]
            elif status == "needs_response":
                data = [{"id": "dp_old", "status": "needs_response"}]
            else:
                data = []
            return httpx.Response(200, json={"object": "list", "data": data})

        async def go():
            async with StripeClient(
                "sk_test_123", base_url="https://stripe.test/v1",
                transport=httpx.MockTransport(handler),
            ) as stripe:
                return await stripe.list_open_disputes()

        disputes = _run(go())

        assert [d["id"] for d in disputes] == ["dp_old"]
        assert [p["status"] for p in requests] == ["needs_response", "warning_needs_response"]
        assert all(p["limit"] == "100" for p in requests)
        assert all(not p.get_list("expand[]") for p in requests)
        assert dispute_metrics(disputes)["active_disputes"] == 1

    def test_error_carries_code(self):
        def handler(request):
            return httpx.Response(
                400, json={"error": {"message": "No such dispute", "code": "resource_missing"}},
            )

        async def go():
            async with StripeClient(
                "sk_test_123", base_url="https://stripe.test/v1",
                transport=httpx.MockTransport(handler),
            ) as stripe:
                await stripe.list_disputes()

        with pytest.raises(StripeApiError) as exc_info:
            _run(go())
        assert exc_info.value.status_code == 400
        assert exc_info.value.code == "resource_missing"


class TestValidateKey:

    def test_accepted_key(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json={"object": "balance"}))
        assert _run(validate_key("sk_test_ok", transport=transport)) is True

    def test_rejected_key(self):
        transport = httpx.MockTransport(
            lambda r: httpx.Response(401, json={"error": {"message": "Invalid API Key"}}),
        )
        assert _run(validate_key("sk_test_bad", transport=transport)) is False

    def test_server_error_propagates(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(500, text="boom"))
        with pytest.raises(StripeApiError):
            _run(validate_key("sk_test_x", transport=transport))
