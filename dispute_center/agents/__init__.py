# =============================================================================
# Agents Package — LLM Prompts and Triage Orchestration
# =============================================================================
#   - analyst.py: email analysis, irrelevance, question extraction, FAQ
#     generation, pattern generation, reply simulation
#   - responder.py: reply drafting with the user's formatting settings
#   - orchestrator.py: LangGraph pipeline screen → analyse → match → draft
# =============================================================================
