# =============================================================================
# FastAPI Application — Entry Point
# =============================================================================
#
# Run locally:
#   uvicorn dispute_center.main:app --reload
#
# Worker:
#   celery -A dispute_center.workers.celery_app worker --loglevel=info
#
# Middleware order (outermost first): CORS → audit logging → routes.
# =============================================================================

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dispute_center.api.admin import router as admin_router
from dispute_center.api.audit import AuditLoggingMiddleware
from dispute_center.api.disputes import router as disputes_router
from dispute_center.api.emails import router as emails_router
from dispute_center.api.errors import register_exception_handlers
from dispute_center.api.faq import router as faq_router
from dispute_center.api.knowledge import router as knowledge_router
from dispute_center.api.settings import router as settings_router
from dispute_center.config import settings
from dispute_center.models.responses import HealthResponse

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description=(
        "Support inbox triage, FAQ matching, AI reply drafting and Stripe "
        "dispute tracking."
    ),
    debug=settings.debug,
)

app.add_middleware(AuditLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(emails_router)
app.include_router(faq_router)
app.include_router(knowledge_router)
app.include_router(disputes_router)
app.include_router(settings_router)
app.include_router(admin_router)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health() -> HealthResponse:
    """Liveness check. Touches neither the database nor Redis."""
    return HealthResponse(version=settings.app_version, service=settings.app_name)


logger.info(
    "%s %s started (llm_provider=%s, model=%s, auth_enabled=%s)",
    settings.app_name, settings.app_version,
    settings.llm_provider, settings.llm_model, settings.auth_enabled,
)
