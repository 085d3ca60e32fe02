# =============================================================================
# FAQ Matching — Word-Overlap and Concept Heuristics
# =============================================================================
#
# Cheap, deterministic scoring used before (and instead of) asking the LLM:
#
#   concept_confidence()  — 0-100 score of a user question against a FAQ.
#                           Concept tags (username, password, ...) gate the
#                           score: questions about different concepts never
#                           rise above 30 however many words they share.
#   email_confidence()    — 0-1 score of an email (subject + body) against a
#                           FAQ question; subject overlap weighs 60 %.
#   pattern_similarity()  — normalised Levenshtein, used to drop generated
#                           FAQs that duplicate existing ones.
#   jaccard_similarity()  — word-set overlap for grouping similar emails.
#   is_support_email()    — keyword screen run before any LLM call.
#
# All functions are pure; nothing here touches the database or network.
# =============================================================================

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

# ---------------------------------------------------------------------------
# Concepts
# ---------------------------------------------------------------------------
# Order matters: find_concepts() reports concepts in this order.
# ---------------------------------------------------------------------------

DISTINCT_CONCEPTS: dict[str, tuple[str, ...]] = {
    "username": ("username", "user name", "login name", "account name"),
    "password": ("password", "pwd", "pass", "reset password"),
    "email": ("email", "e-mail", "mail"),
    "account": ("account", "profile"),
    "payment": ("payment", "billing", "charge", "subscription"),
}

SUPPORT_KEYWORDS: tuple[str, ...] = (
    "help", "support", "issue", "problem", "error", "question",
    "not working", "broken", "failed", "stuck", "can't", "cannot",
    "how to", "how do i", "assistance", "bug", "feature request",
)

# Score returned when the two texts share no concept
NO_CONCEPT_MATCH_CONFIDENCE = 30

_NON_WORD_RE = re.compile(r"[^\w\s]")


def find_concepts(text: str) -> list[str]:
    """Return the concepts whose terms occur (as substrings) in `text`."""
    lowered = (text or "").lower()
    return [
        concept
        for concept, terms in DISTINCT_CONCEPTS.items()
        if any(term in lowered for term in terms)
    ]


def is_support_email(subject: str, content: str) -> bool:
    """Keyword screen: does the email look like a support request?"""
    lowered_subject = (subject or "").lower()
    lowered_content = (content or "").lower()
    return any(
        keyword in lowered_subject or keyword in lowered_content
        for keyword in SUPPORT_KEYWORDS
    )


# ---------------------------------------------------------------------------
# Word-set helpers
# ---------------------------------------------------------------------------


def _normalise(text: str) -> str:
    """Lowercase, drop punctuation, trim."""
    return _NON_WORD_RE.sub("", (text or "").lower()).strip()


def _word_set(text: str) -> set[str]:
    return {word for word in text.split() if word}


def _round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ---------------------------------------------------------------------------
# Similarity measures
# ---------------------------------------------------------------------------


def dice_similarity(a: str, b: str) -> float:
    """
    Sørensen–Dice coefficient of the lowercase, whitespace-split word sets.

    Punctuation is kept ("password?" != "password"). Two empty inputs
    score 0.
    """
    words_a = _word_set((a or "").lower())
    words_b = _word_set((b or "").lower())
    total = len(words_a) + len(words_b)
    if total == 0:
        return 0.0
    return 2 * len(words_a & words_b) / total


def jaccard_similarity(a: str, b: str) -> float:
    """|A∩B| / |A∪B| over punctuation-stripped word sets (0 when both empty)."""
    words_a = _word_set(_normalise(a))
    words_b = _word_set(_normalise(b))
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance with unit cost insert/delete/substitute."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            if char_a == char_b:
                current.append(previous[j - 1])
            else:
                current.append(
                    min(previous[j - 1], current[j - 1], previous[j]) + 1
                )
        previous = current
    return previous[-1]


def pattern_similarity(a: str, b: str) -> float:
    """
    1 - levenshtein / max(len) on lowercased, trimmed strings.

    Identical normalised strings (including two empty ones) score 1.
    """
    p1 = (a or "").lower().strip()
    p2 = (b or "").lower().strip()
    if p1 == p2:
        return 1.0
    max_length = max(len(p1), len(p2))
    return 1 - levenshtein_distance(p1, p2) / max_length


def concept_confidence(
    user_question: str,
    faq_question: str,
    user_concepts: Sequence[str],
    faq_concepts: Sequence[str],
) -> int:
    """
    Confidence (0-100) that `faq_question` answers `user_question`.

    Returns NO_CONCEPT_MATCH_CONFIDENCE when the concept lists share
    nothing, including when either list is empty. Otherwise 70 % word
    similarity plus a flat 30 for the concept match.
    """
    if not any(concept in faq_concepts for concept in user_concepts):
        return NO_CONCEPT_MATCH_CONFIDENCE

    base_confidence = dice_similarity(user_question, faq_question) * 100
    return _round_half_up(base_confidence * 0.7 + 100 * 0.3)


def email_confidence(subject: str, content: str, faq_question: str) -> float:
    """
    Confidence (0-1) that an email asks `faq_question`.

    Overlap of subject words (resp. content words) with question words,
    divided by the larger of the two sets; subject weighs 0.6, content 0.4.
    """
    subject_words = _word_set(_normalise(subject))
    content_words = _word_set(_normalise(content))
    question_words = _word_set(_normalise(faq_question))

    def overlap_score(words: set[str]) -> float:
        denominator = max(len(words), len(question_words))
        if denominator == 0:
            return 0.0
        return len(words & question_words) / denominator

    return overlap_score(subject_words) * 0.6 + overlap_score(content_words) * 0.4


def filter_new_questions(
    candidates: Iterable[str],
    existing: Iterable[str],
    threshold: float = 0.7,
) -> list[str]:
    """Drop candidates whose pattern similarity to any existing question exceeds threshold."""
    existing_list = list(existing)
    return [
        candidate
        for candidate in candidates
        if not any(
            pattern_similarity(candidate, question) > threshold
            for question in existing_list
        )
    ]


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------


@dataclass
class FaqMatch:
    """A FAQ scored against a user question."""

    faq: Any
    confidence: int
    concepts: list[str] = field(default_factory=list)


@dataclass
class MatchResult:
    """Ranked matches for one question."""

    question: str
    concepts: list[str]
    matches: list[FaqMatch]

    @property
    def requires_human_response(self) -> bool:
        return not self.matches

    @property
    def best(self) -> FaqMatch | None:
        return self.matches[0] if self.matches else None


def faq_concepts(faq: Any) -> list[str]:
    """
    Concepts of a stored FAQ.

    Uses the FAQ's stored concept tags when it has any, otherwise derives
    them from its question and similar patterns.
    """
    stored = list(getattr(faq, "concepts", None) or [])
    if stored:
        return stored
    patterns = getattr(faq, "similar_patterns", None) or []
    return find_concepts(" ".join([faq.question, *patterns]))


def rank_faq_matches(
    question: str,
    faqs: Iterable[Any],
    min_confidence: int = 0,
) -> MatchResult:
    """
    Score every FAQ against `question` and keep those >= min_confidence.

    FAQs are any objects with `question` (and optionally `concepts` /
    `similar_patterns`) attributes. Results are sorted by confidence,
    highest first; ties keep their input order.
    """
    user_concepts = find_concepts(question)
    matches: list[FaqMatch] = []
    for faq in faqs:
        concepts = faq_concepts(faq)
        confidence = concept_confidence(
            question, faq.question, user_concepts, concepts,
        )
        if confidence >= min_confidence:
            matches.append(FaqMatch(faq=faq, confidence=confidence, concepts=concepts))

    matches.sort(key=lambda m: m.confidence, reverse=True)
    return MatchResult(question=question, concepts=user_concepts, matches=matches)
