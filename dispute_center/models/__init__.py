# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
#   - requests.py: request bodies
#   - responses.py: response bodies
# =============================================================================
