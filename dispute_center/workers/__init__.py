# =============================================================================
# Workers Package — Celery
# =============================================================================
#   - celery_app.py: Celery application and configuration
#   - tasks.py: batch email analysis job
# =============================================================================
