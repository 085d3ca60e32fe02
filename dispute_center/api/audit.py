# =============================================================================
# Audit Logging Middleware — One Row per API Request
# =============================================================================
#
# Customer emails and payment disputes are sensitive: every request is
# recorded with who made it (API key and user email), what it touched
# (path, and the Gmail thread when a handler sets one), the outcome and
# the latency.
#
# Handlers enrich the row through request.state:
#   request.state.api_key         — set by get_current_api_key
#   request.state.user_email      — set by get_current_user_email
#   request.state.audit_thread_id — set by email handlers
#
# The row is written with its own session after the response is built.
# A failed write is logged and never affects the response.
# =============================================================================

from __future__ import annotations

import logging
import time

from starlette.middleware.base import (
    BaseHTTPMiddleware,
    RequestResponseEndpoint,
)
from starlette.requests import Request
from starlette.responses import Response

from dispute_center.config import settings
from dispute_center.db.engine import async_session_factory
from dispute_center.db.models import AuditLog

logger = logging.getLogger(__name__)

_SKIP_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}


def endpoint_name(path: str) -> str:
    """Router group of a path: '/emails/analyze/abc' -> 'emails'."""
    parts = path.strip("/").split("/")
    return parts[0] if parts else ""


class AuditLoggingMiddleware(BaseHTTPMiddleware):
    """Persist an AuditLog row for every non-trivial request."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        if not settings.audit_logging_enabled or request.url.path in _SKIP_PATHS:
            return await call_next(request)

        start_time = time.monotonic()
        response = await call_next(request)
        elapsed_ms = int((time.monotonic() - start_time) * 1000)

        api_key = getattr(request.state, "api_key", None)
        thread_id = getattr(request.state, "audit_thread_id", None)

        try:
            async with async_session_factory() as session:
                session.add(AuditLog(
                    api_key_id=api_key.id if api_key else None,
                    user_email=getattr(request.state, "user_email", None),
                    endpoint=endpoint_name(request.url.path),
                    method=request.method,
                    path=request.url.path[:500],
                    thread_id=thread_id[:255] if thread_id else None,
                    client_ip=request.client.host if request.client else None,
                    status_code=response.status_code,
                    response_time_ms=elapsed_ms,
                ))
                await session.commit()
        except Exception as e:
            logger.warning("Failed to write audit log: %s", e)

        return response
