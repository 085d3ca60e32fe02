# =============================================================================
# LangGraph Orchestrator — Email Triage Pipeline
# =============================================================================
#
# Decides, for one incoming email, whether a reply can be drafted without
# a human, and drafts it when it can.
#
# GRAPH TOPOLOGY:
#
#   START ──▶ screen ──┬──▶ analyse ──▶ match ──┬──▶ draft ──▶ END
#                      │                 ▲      │
#                      ├─────────────────┘      └──▶ END
#                      └──▶ END
#
#   screen  — free checks: oversized body, keyword support heuristic.
#             A cached analysis skips straight to match.
#   analyse — LLM analysis (agents/analyst.py)
#   match   — concept-confidence ranking of the user's FAQs (0-100,
#             kept apart from the LLM's own 0-1 confidence)
#   draft   — reply from the best match (agents/responder.py)
#
# The decision in the final state says why the pipeline stopped:
#   drafted | not_support | requires_human | no_match | too_large
#
# The graph is compiled once at module level. State is a plain TypedDict;
# the LLM provider and usage tracker ride along in it, so no checkpointer
# may be configured.
# =============================================================================

from __future__ import annotations

import logging
from typing import Any

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from dispute_center.agents.analyst import analyse_email
from dispute_center.agents.responder import ReplyFormatting, draft_reply
from dispute_center.config import settings
from dispute_center.services.analysis_cache import normalise_analysis
from dispute_center.services.llm import LLMProvider
from dispute_center.services.matching import FaqMatch, is_support_email, rank_faq_matches
from dispute_center.services.text import is_large_content
from dispute_center.services.usage import UsageTracker

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# State Schema
# ---------------------------------------------------------------------------


class TriageState(TypedDict, total=False):
    """State flowing through the triage graph. Nodes return partial updates."""

    # --- Input (set by caller) ---
    subject: str
    content: str
    faqs: list[Any]
    cached_analysis: dict[str, Any] | None
    min_confidence: int
    formatting: ReplyFormatting | None
    llm_override: LLMProvider | None
    tracker: UsageTracker | None

    # --- Set by nodes ---
    keyword_support: bool
    analysis: dict[str, Any]
    analysis_source: str          # "cache" | "fresh"
    matched_faq: dict[str, Any] | None   # the LLM's pick
    confidence: float                    # the LLM's confidence, 0-1
    matches: list[dict[str, Any]]
    match_confidence: float              # best heuristic score, 0-100

    # --- Output ---
    decision: str
    reply: str | None


# ---------------------------------------------------------------------------
# Node Functions
# ---------------------------------------------------------------------------


async def screen_node(state: TriageState) -> dict:
    """Cheap checks before any LLM call."""
    content = state.get("content", "")
    if is_large_content(content):
        logger.info("Triage: content too large (%d chars)", len(content))
        return {"decision": "too_large", "reply": None}

    keyword_support = is_support_email(state.get("subject", ""), content)
    update: dict[str, Any] = {"keyword_support": keyword_support}

    cached = state.get("cached_analysis")
    if cached:
        update["analysis"] = normalise_analysis(cached)
        update["analysis_source"] = "cache"
    elif not keyword_support:
        update["decision"] = "not_support"
        update["reply"] = None
    return update


async def analyse_node(state: TriageState) -> dict:
    """LLM analysis of the email."""
    result = await analyse_email(
        subject=state.get("subject", ""),
        content=state.get("content", ""),
        faqs=state.get("faqs", []),
        llm=state.get("llm_override"),
        tracker=state.get("tracker"),
    )
    return {
        "analysis": result.analysis,
        "analysis_source": "fresh",
        "matched_faq": result.matched_faq,
        "confidence": result.confidence,
    }


def _faq_key(faq: Any) -> Any:
    return getattr(faq, "id", None) or id(faq)


def _serialise_match(match: FaqMatch) -> dict[str, Any]:
    faq = match.faq
    return {
        "faq_id": getattr(faq, "id", None),
        "question": faq.question,
        "answer": getattr(faq, "answer", None),
        "category": getattr(faq, "category", None),
        "confidence": match.confidence,
    }


async def match_node(state: TriageState) -> dict:
    """
    Rank FAQs against the subject and each suggested question.

    A FAQ's confidence is its best score over those candidate questions.
    """
    analysis = state.get("analysis") or {}
    faqs = state.get("faqs", [])
    candidates = [state.get("subject", ""), *analysis.get("suggested_questions", [])]

    best: dict[Any, FaqMatch] = {}
    order: list[Any] = []
    for question in candidates:
        if not question:
            continue
        for match in rank_faq_matches(
            question, faqs, settings.faq_match_min_confidence,
        ).matches:
            key = _faq_key(match.faq)
            if key not in best:
                order.append(key)
                best[key] = match
            elif match.confidence > best[key].confidence:
                best[key] = match

    ranked = sorted((best[k] for k in order), key=lambda m: m.confidence, reverse=True)
    matches = [_serialise_match(m) for m in ranked]
    top = matches[0] if matches else None

    logger.info(
        "Triage match: %d FAQs scored, best=%s",
        len(matches), top["confidence"] if top else None,
    )
    return {
        "matches": matches,
        "match_confidence": float(top["confidence"]) if top else 0.0,
    }


async def draft_node(state: TriageState) -> dict:
    """Draft the reply from the best match."""
    matches = state.get("matches", [])
    analysis = state.get("analysis") or {}
    reply = await draft_reply(
        subject=state.get("subject", ""),
        content=state.get("content", ""),
        matched_faq=matches[0],
        questions=analysis.get("suggested_questions", []),
        answered_faqs=matches[1:],
        formatting=state.get("formatting"),
        llm=state.get("llm_override"),
        tracker=state.get("tracker"),
    )
    return {"reply": reply, "decision": "drafted"}


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


def route_after_screen(state: TriageState) -> str:
    if state.get("decision"):
        return END
    if state.get("analysis_source") == "cache":
        return "match"
    return "analyse"


def route_after_match(state: TriageState) -> str:
    """Draft only for support emails with a strong enough FAQ match."""
    analysis = state.get("analysis") or {}
    if not analysis.get("is_support", True):
        return "not_support"
    if analysis.get("requires_human_response"):
        return "requires_human"
    threshold = state.get("min_confidence", settings.auto_reply_min_confidence)
    if not state.get("matches") or state.get("match_confidence", 0) < threshold:
        return "no_match"
    return "draft"


def _stop(decision: str):
    async def node(state: TriageState) -> dict:
        logger.info("Triage stopped: %s", decision)
        return {"decision": decision, "reply": None}
    return node


# ---------------------------------------------------------------------------
# Graph Assembly
# ---------------------------------------------------------------------------

_builder = StateGraph(TriageState)
_builder.add_node("screen", screen_node)
_builder.add_node("analyse", analyse_node)
_builder.add_node("match", match_node)
_builder.add_node("draft", draft_node)
_builder.add_node("not_support", _stop("not_support"))
_builder.add_node("requires_human", _stop("requires_human"))
_builder.add_node("no_match", _stop("no_match"))

_builder.add_edge(START, "screen")
_builder.add_conditional_edges(
    "screen", route_after_screen, {"analyse": "analyse", "match": "match", END: END},
)
_builder.add_edge("analyse", "match")
_builder.add_conditional_edges(
    "match",
    route_after_match,
    {
        "draft": "draft",
        "not_support": "not_support",
        "requires_human": "requires_human",
        "no_match": "no_match",
    },
)
_builder.add_edge("draft", END)
_builder.add_edge("not_support", END)
_builder.add_edge("requires_human", END)
_builder.add_edge("no_match", END)

graph = _builder.compile()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def triage_email(
    subject: str,
    content: str,
    faqs: list[Any],
    cached_analysis: dict[str, Any] | None = None,
    min_confidence: int | None = None,
    formatting: ReplyFormatting | None = None,
    llm: LLMProvider | None = None,
    tracker: UsageTracker | None = None,
) -> TriageState:
    """
    Run the triage graph for one email and return the final state.

    Args:
        subject: Email subject.
        content: Email body (any length; truncated before prompting).
        faqs: The user's FAQ rows.
        cached_analysis: A still-fresh analysis payload, if one exists.
        min_confidence: Auto-reply threshold (default from settings).
        formatting: Greeting/signature preferences for the draft.
        llm: Provider override (defaults to the singleton).
        tracker: Collects LLM usage for the caller to persist.
    """
    initial_state: TriageState = {
        "subject": subject,
        "content": content,
        "faqs": faqs,
        "cached_analysis": cached_analysis,
        "min_confidence": (
            settings.auto_reply_min_confidence if min_confidence is None else min_confidence
        ),
        "formatting": formatting,
        "tracker": tracker,
    }
    if llm is not None:
        initial_state["llm_override"] = llm

    logger.info("Invoking triage graph: subject='%s'", subject[:80])
    result = await graph.ainvoke(initial_state)
    logger.info("Triage complete: decision=%s", result.get("decision"))
    return result
