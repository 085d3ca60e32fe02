# =============================================================================
# Prompt Text Helpers — Truncation and Token Estimates
# =============================================================================
#
# Support emails can be enormous (forwarded chains, HTML newsletters). Before
# an email goes into a prompt, its subject and body are cut down:
#
#   subject — first max_subject_chars characters, then "..."
#   content — 60 % head + 40 % tail of max_content_chars, joined by a
#             "[... N characters truncated ...]" marker (N = chars dropped
#             beyond the limit)
#
# Token counts use tiktoken's cl100k_base encoding, the tokenizer of the
# OpenAI chat models this service defaults to.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass

import tiktoken

from dispute_center.config import settings

logger = logging.getLogger(__name__)

_ENCODING_NAME = "cl100k_base"

_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    """Lazily initialize and cache the tiktoken encoder."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding(_ENCODING_NAME)
    return _encoder


def estimate_tokens(text: str) -> int:
    """Number of cl100k_base tokens in `text`."""
    if not text:
        return 0
    return len(_get_encoder().encode(text, disallowed_special=()))


@dataclass
class TruncatedText:
    subject: str
    content: str
    truncated: bool


def truncate_content(
    subject: str,
    content: str,
    max_subject_chars: int | None = None,
    max_content_chars: int | None = None,
) -> TruncatedText:
    """Shorten subject and content so an email fits comfortably in a prompt."""
    max_subject = max_subject_chars or settings.max_subject_chars
    max_content = max_content_chars or settings.max_content_chars

    subject = subject or ""
    content = content or ""
    truncated = False

    if len(subject) > max_subject:
        subject = subject[:max_subject] + "..."
        truncated = True

    if len(content) > max_content:
        head = content[: int(max_content * 0.6)]
        tail_length = int(max_content * 0.4)
        tail = content[-tail_length:] if tail_length else ""
        dropped = len(content) - max_content
        content = f"{head}\n\n[... {dropped} characters truncated ...]\n\n{tail}"
        truncated = True
        logger.debug("Truncated email content by %d characters", dropped)

    return TruncatedText(subject=subject, content=content, truncated=truncated)


def is_large_content(content: str | None) -> bool:
    """True for bodies too large to analyse at all."""
    return len(content or "") > settings.large_content_chars
