# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter for a specific feature:
#   - emails.py: inbox listing, analysis, irrelevance, triage, auto-reply
#   - faq.py: FAQ CRUD, matching, simulation, generation
#   - knowledge.py: question extraction, reply drafting, batch jobs, usage
#   - disputes.py: Stripe key management, dispute listing and metrics
#   - settings.py: dispute email templates
#   - admin.py: API key management
#
# Shared plumbing: deps.py (auth, caller identity), errors.py (error
# bodies and handlers), audit.py (request audit middleware).
# =============================================================================
