# =============================================================================
# Database Package
# =============================================================================
#   - engine.py: async engine for FastAPI, lazy sync engine for Celery
#   - models.py: ORM models (FAQs, analysis cache, Stripe keys, auth, audit)
# =============================================================================
