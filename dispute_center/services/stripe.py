# =============================================================================
# Stripe REST Client — Dispute Listing
# =============================================================================
#
# Each support agent brings their own Stripe secret key. Requests go
# straight to the Stripe REST API over httpx:
#   - HTTP basic auth with the secret key as username and an empty password
#   - a pinned `Stripe-Version` header so response shapes do not drift
#
# Only two endpoints are used:
#   GET /v1/disputes  — list disputes, expanding charge and customer
#   GET /v1/balance   — cheapest authenticated call, used to validate a key
#                       before it is stored
#
# A dispute is "open" (needs staff attention) while its status is
# needs_response or warning_needs_response.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

import httpx

from dispute_center.config import settings

logger = logging.getLogger(__name__)

OPEN_DISPUTE_STATUSES: tuple[str, ...] = ("needs_response", "warning_needs_response")

DISPUTE_EXPAND: tuple[str, ...] = ("data.charge", "data.charge.customer")


class StripeApiError(Exception):
    """Stripe answered with a non-2xx status (or could not be reached)."""

    def __init__(self, status_code: int, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code


class StripeClient:
    """
    Async Stripe client bound to one secret key.

    Usage:
        async with StripeClient(api_key) as stripe:
            disputes = await stripe.list_disputes()
    """

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        api_version: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.stripe_api_base_url,
            auth=(api_key, ""),
            headers={"Stripe-Version": api_version or settings.stripe_api_version},
            timeout=timeout or settings.http_timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> StripeClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            response = await self._client.get(path, params=params)
        except httpx.HTTPError as e:
            raise StripeApiError(503, f"Stripe request failed: {e}") from e

        if response.status_code >= 400:
            code = None
            try:
                error = response.json().get("error", {})
                message = error.get("message") or response.text
                code = error.get("code")
            except ValueError:
                message = response.text
            raise StripeApiError(response.status_code, message or "Stripe API error", code)
        return response.json()

    async def list_disputes(
        self,
        limit: int = 100,
        status: str | None = None,
        expand: Iterable[str] = DISPUTE_EXPAND,
    ) -> list[dict[str, Any]]:
        """GET /disputes. Returns the `data` list of the first page."""
        params: dict[str, Any] = {"limit": limit}
        expand = list(expand)
        if expand:
            params["expand[]"] = expand
        if status:
            params["status"] = status
        body = await self._get("/disputes", params=params)
        return body.get("data") or []

    async def list_open_disputes(self, limit: int = 100) -> list[dict[str, Any]]:
        """
        Open disputes, one status-filtered listing per open status.

        Filtering on the server keeps open disputes visible however many
        closed ones are more recent. Charge and customer are not expanded.
        """
        disputes: list[dict[str, Any]] = []
        for status in OPEN_DISPUTE_STATUSES:
            disputes.extend(await self.list_disputes(limit=limit, status=status, expand=()))
        return disputes

    async def retrieve_balance(self) -> dict[str, Any]:
        """GET /balance."""
        return await self._get("/balance")


# ---------------------------------------------------------------------------
# Dispute helpers
# ---------------------------------------------------------------------------


def filter_open_disputes(disputes: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """Keep disputes whose status still requires a response."""
    return [d for d in disputes if d.get("status") in OPEN_DISPUTE_STATUSES]


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def summarise_dispute(dispute: dict[str, Any]) -> dict[str, Any]:
    """
    Flatten a dispute (with expanded charge/customer) for the dispute table.

    Charge and customer may be ids (not expanded) or objects.
    """
    charge = dispute.get("charge")
    charge_obj = charge if isinstance(charge, dict) else {}
    customer = charge_obj.get("customer")
    customer_obj = customer if isinstance(customer, dict) else {}
    billing = charge_obj.get("billing_details") or {}
    evidence_details = dispute.get("evidence_details") or {}

    return {
        "id": dispute.get("id"),
        "amount": dispute.get("amount"),
        "currency": dispute.get("currency"),
        "reason": dispute.get("reason"),
        "status": dispute.get("status"),
        "created": _timestamp(dispute.get("created")),
        "evidence_due_by": _timestamp(evidence_details.get("due_by")),
        "charge_id": charge_obj.get("id") if charge_obj else charge,
        "customer_email": customer_obj.get("email") or billing.get("email"),
        "customer_name": customer_obj.get("name") or billing.get("name"),
    }


def dispute_metrics(disputes: Iterable[dict[str, Any]] | None) -> dict[str, Any]:
    """
    Dashboard counters.

    `disputes` is None when the user has no Stripe key; counts are then
    None rather than 0.
    """
    if disputes is None:
        return {"active_disputes": None, "response_drafts": None, "has_stripe_key": False}

    disputes = list(disputes)
    return {
        "active_disputes": sum(1 for d in disputes if d.get("status") == "needs_response"),
        "response_drafts": sum(
            1 for d in disputes if d.get("status") == "warning_needs_response"
        ),
        "has_stripe_key": True,
    }


def mask_key(api_key: str) -> str:
    """'sk_live_abc...wxyz' style mask; only the last four characters survive."""
    if not api_key:
        return ""
    prefix = api_key.split("_", 2)
    head = "_".join(prefix[:2]) + "_" if len(prefix) == 3 else ""
    return f"{head}...{api_key[-4:]}"


async def validate_key(api_key: str, transport: httpx.AsyncBaseTransport | None = None) -> bool:
    """True if Stripe accepts the key. Network failures propagate."""
    async with StripeClient(api_key, transport=transport) as client:
        try:
            await client.retrieve_balance()
        except StripeApiError as e:
            if e.status_code in (401, 403):
                logger.info("Rejected Stripe key %s", mask_key(api_key))
                return False
            raise
    return True
