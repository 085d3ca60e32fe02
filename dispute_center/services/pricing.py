# =============================================================================
# Model Pricing Registry — Cost Estimation for the AI Usage Ledger
# =============================================================================
#
# Maps (provider_type, model_name) → per-token costs in USD. Every LLM call
# recorded by services/usage.py gets an estimated cost from here.
#
# Costs are stored per TOKEN, so a cost is a plain multiply-add.
# estimate_cost() returns None for unknown models: unknown cost is not
# zero cost, and the usage summary reports such calls separately.
#
# Prices follow the vendors' published per-1K / per-1M rates. Update this
# dict when prices change.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelPricing:
    """Per-token costs for a model."""

    input_cost_per_token: float    # USD per input token
    output_cost_per_token: float   # USD per output token
    provider_label: str            # Human-readable provider name


# ---------------------------------------------------------------------------
# Pricing Registry
# ---------------------------------------------------------------------------
# provider_type matches LLMProvider.provider_type: "anthropic" or
# "openai_compatible".
# ---------------------------------------------------------------------------

PRICING_REGISTRY: dict[tuple[str, str], ModelPricing] = {
    # --- OpenAI (per 1K tokens) ---
    ("openai_compatible", "gpt-4"): ModelPricing(
        0.03 / 1_000, 0.06 / 1_000, "OpenAI",
    ),
    ("openai_compatible", "gpt-3.5-turbo"): ModelPricing(
        0.0015 / 1_000, 0.002 / 1_000, "OpenAI",
    ),
    ("openai_compatible", "gpt-4-turbo-preview"): ModelPricing(
        0.01 / 1_000, 0.03 / 1_000, "OpenAI",
    ),

    # --- OpenAI (per 1M tokens) ---
    ("openai_compatible", "gpt-4o"): ModelPricing(
        2.50 / 1_000_000, 10.00 / 1_000_000, "OpenAI",
    ),
    ("openai_compatible", "gpt-4o-mini"): ModelPricing(
        0.15 / 1_000_000, 0.60 / 1_000_000, "OpenAI",
    ),

    # --- Anthropic (per 1M tokens) ---
    ("anthropic", "claude-sonnet-4-6"): ModelPricing(
        3.00 / 1_000_000, 15.00 / 1_000_000, "Anthropic",
    ),
    ("anthropic", "claude-opus-4-6"): ModelPricing(
        15.00 / 1_000_000, 75.00 / 1_000_000, "Anthropic",
    ),
    ("anthropic", "claude-haiku-4-5"): ModelPricing(
        0.80 / 1_000_000, 4.00 / 1_000_000, "Anthropic",
    ),
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def get_pricing(provider_type: str, model: str) -> ModelPricing | None:
    """
    Look up pricing for a provider+model combination.

    Dated model snapshots ("gpt-4o-mini-2024-07-18") fall back to the
    longest registered model name they start with.
    """
    pricing = PRICING_REGISTRY.get((provider_type, model))
    if pricing is not None:
        return pricing

    candidates = [
        name for (ptype, name) in PRICING_REGISTRY
        if ptype == provider_type and model.startswith(name + "-")
    ]
    if not candidates:
        return None
    return PRICING_REGISTRY[(provider_type, max(candidates, key=len))]


def estimate_cost(
    provider_type: str,
    model: str,
    input_tokens: int,
    output_tokens: int,
) -> float | None:
    """
    Estimated cost in USD for a completion, or None for an unknown model.

    Args:
        provider_type: "anthropic" or "openai_compatible".
        model: Model name as returned by the LLM API.
        input_tokens: Tokens consumed by the prompt.
        output_tokens: Tokens generated in the response.
    """
    pricing = get_pricing(provider_type, model)
    if pricing is None:
        return None
    return (
        pricing.input_cost_per_token * input_tokens
        + pricing.output_cost_per_token * output_tokens
    )
