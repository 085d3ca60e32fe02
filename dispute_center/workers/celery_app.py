# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Celery runs the long analysis jobs started from POST /knowledge/jobs:
# a support inbox can hold hundreds of unanalysed threads, far more LLM
# calls than a request should wait for.
#
# ARCHITECTURE:
# ┌──────────┐     ┌───────┐     ┌──────────────┐     ┌────────────┐
# │ FastAPI  │────▶│ Redis │────▶│ Celery Worker│────▶│ PostgreSQL │
# │ (producer)│    │ db 0  │     │ (consumer)    │    │ jobs/cache │
# └──────────┘     └───────┘     └──────────────┘     └────────────┘
#
# Progress is written to the analysis_jobs table, which the API polls;
# the Redis result backend (db 1) only keeps the final summary.
# =============================================================================

from celery import Celery

from dispute_center.config import settings

celery_app = Celery(
    "dispute_center.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # JSON only: pickle can execute code during deserialisation
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Re-queue a job if its worker dies mid-run
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Jobs are long and LLM-bound; one at a time per worker process
    worker_prefetch_multiplier=1,

    # 500 emails in batches of 5 with a 1 s pause stays well inside these
    task_soft_time_limit=1800,
    task_time_limit=2400,

    result_expires=3600,

    include=["dispute_center.workers.tasks"],
)
