# =============================================================================
# Dispute Center
# =============================================================================
# Customer-support and dispute back end. Reads a support inbox from Gmail,
# matches incoming questions against a FAQ knowledge base, drafts replies
# with an LLM and surfaces open Stripe disputes to staff.
#
# Package structure:
#   dispute_center/
#   ├── api/          → FastAPI route handlers (emails, faq, knowledge,
#   │                    stripe, settings, admin)
#   ├── agents/       → LLM prompts and the LangGraph triage pipeline
#   ├── db/           → Database engine, session, and ORM models
#   ├── models/       → Pydantic V2 request/response schemas
#   ├── services/     → Business logic (FAQ matching, analysis cache, Gmail
#   │                    and Stripe clients, batching, LLM providers)
#   └── workers/      → Celery task definitions and configuration
# =============================================================================
