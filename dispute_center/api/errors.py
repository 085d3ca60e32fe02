# =============================================================================
# API Error Handling — Uniform {"error", "details"} Bodies
# =============================================================================
#
# Every failure leaves the API as JSON of the form
#
#   {"error": "<short message>", "details": <optional extra context>}
#
# Status codes:
#   4xx            — HTTPException raised by handlers and dependencies
#   422            — request body/query validation
#   502            — the LLM answered with something unusable
#   503            — LLM provider not configured (missing API key)
#   Gmail / Stripe — the upstream status code is passed through
#   500            — anything else
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from dispute_center.services.gmail import GmailApiError
from dispute_center.services.llm import LLMResponseError
from dispute_center.services.stripe import StripeApiError
from dispute_center.services.usage import UsageTracker, record_usage

logger = logging.getLogger(__name__)


def error_body(error: str, details: Any = None) -> dict[str, Any]:
    body: dict[str, Any] = {"error": error}
    if details is not None:
        body["details"] = details
    return body


@asynccontextmanager
async def llm_errors(
    action: str,
    user_email: str | None = None,
    tracker: UsageTracker | None = None,
) -> AsyncIterator[None]:
    """
    Translate failures of an LLM-backed operation into HTTP errors.

    Usage recorded by `tracker` up to the failure is persisted before the
    error propagates; background tasks do not run for failed requests.

    Usage:
        async with llm_errors("analyse email", user_email, tracker):
            result = await analyse_email(..., tracker=tracker)
    """
    try:
        yield
    except Exception as e:
        if tracker is not None and user_email:
            await record_usage(user_email, tracker.drain())
        error = http_error_for(action, e)
        if error is e:
            raise
        raise error from e


def http_error_for(action: str, exc: Exception) -> Exception:
    """Map an LLM-path failure to an HTTPException. Vendor and HTTP errors pass through."""
    if isinstance(exc, (HTTPException, GmailApiError, StripeApiError)):
        return exc
    if isinstance(exc, LLMResponseError):
        logger.warning("Unusable LLM output during %s: %s", action, exc)
        return HTTPException(
            status_code=502,
            detail=error_body(f"Failed to {action}", str(exc)),
        )
    if isinstance(exc, ValueError):
        # Missing API key or configuration error
        logger.error("Configuration error during %s: %s", action, exc)
        return HTTPException(
            status_code=503,
            detail=error_body("Service configuration error", str(exc)),
        )
    logger.error("LLM call failed during %s: %s", action, exc, exc_info=exc)
    return HTTPException(
        status_code=502,
        detail=error_body(f"Failed to {action}", f"LLM service error: {exc}"),
    )


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException,
) -> JSONResponse:
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        content = exc.detail
    else:
        content = error_body(str(exc.detail))
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(content),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError,
) -> JSONResponse:
    logger.info("Validation error on %s: %s", request.url.path, exc.errors())
    return JSONResponse(
        status_code=422,
        content=error_body("Invalid request", jsonable_encoder(exc.errors())),
    )


async def gmail_exception_handler(request: Request, exc: GmailApiError) -> JSONResponse:
    logger.warning("Gmail API error %d on %s: %s", exc.status_code, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body("Gmail API error", exc.message),
    )


async def stripe_exception_handler(request: Request, exc: StripeApiError) -> JSONResponse:
    logger.warning("Stripe API error %d on %s: %s", exc.status_code, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body("Stripe API error", exc.message),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=error_body("Internal server error", str(exc)),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(GmailApiError, gmail_exception_handler)
    app.add_exception_handler(StripeApiError, stripe_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
