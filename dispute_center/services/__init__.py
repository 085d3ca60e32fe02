# =============================================================================
# Services Package — Business Logic
# =============================================================================
# Contains the core business logic, separated from API handlers:
#   - matching.py: FAQ similarity heuristics (concepts, Dice, Levenshtein)
#   - analysis_cache.py: TTL cache of LLM email analyses
#   - batching.py: fixed-size batches with delays, exponential backoff
#   - gmail.py: Gmail REST client and message JSON helpers
#   - stripe.py: Stripe REST client and dispute summaries
#   - llm.py: Multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
#   - text.py: prompt truncation and token estimates
#   - pricing.py / usage.py: AI spend estimates and usage ledger
#   - auth.py / rate_limiter.py: API keys, rate limiting, fetch throttle
# =============================================================================
