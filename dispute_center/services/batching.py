# =============================================================================
# Batching — Throttled Outbound Calls
# =============================================================================
#
# Gmail (~250 requests/minute/user) and the LLM provider both punish
# bursts. Outbound calls are fanned out in fixed-size batches: items in a
# batch run concurrently, then the next batch waits `delay_seconds`. No
# delay follows the last batch.
#
# A failing item never aborts the run. Its error message is collected in
# BatchResult.failures and its slot in BatchResult.results holds None,
# so results stay aligned with the input order.
#
# Listing Gmail threads additionally retries with exponential backoff
# (with_backoff), capped at max_delay seconds per wait.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    """Split items into consecutive lists of at most `size` elements."""
    if size <= 0:
        raise ValueError("Batch size must be positive")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


@dataclass
class BatchResult(Generic[T, R]):
    """Outcome of run_in_batches."""

    results: list[R | None] = field(default_factory=list)
    failures: list[tuple[T, str]] = field(default_factory=list)

    @property
    def succeeded(self) -> list[R]:
        return [r for r in self.results if r is not None]


async def run_in_batches(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    batch_size: int,
    delay_seconds: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> BatchResult[T, R]:
    """
    Run `worker` over items in batches of `batch_size`.

    Args:
        items: Inputs, processed in order.
        worker: Async callable applied to each item.
        batch_size: Items run concurrently per batch.
        delay_seconds: Pause between consecutive batches.
        sleep: Injected for tests.

    Returns:
        BatchResult with one result slot per item (None for failures).
    """
    outcome: BatchResult[T, R] = BatchResult()
    batches = chunked(items, batch_size)

    for index, batch in enumerate(batches):
        settled = await asyncio.gather(
            *(worker(item) for item in batch),
            return_exceptions=True,
        )
        for item, result in zip(batch, settled):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("Batch item %r failed: %s", item, result)
                outcome.failures.append((item, str(result) or type(result).__name__))
                outcome.results.append(None)
            else:
                outcome.results.append(result)

        logger.debug(
            "Batch %d/%d complete: %d items",
            index + 1, len(batches), len(batch),
        )

        if index < len(batches) - 1 and delay_seconds > 0:
            await sleep(delay_seconds)

    return outcome


def backoff_delay(attempt: int, base_delay: float = 2.0, max_delay: float = 10.0) -> float:
    """Seconds to wait before retry `attempt` (1-based): min(base·2^attempt, max)."""
    return min(base_delay * (2 ** attempt), max_delay)


async def with_backoff(
    call: Callable[[], Awaitable[R]],
    max_retries: int = 3,
    base_delay: float = 2.0,
    max_delay: float = 10.0,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> R:
    """
    Await `call()`, retrying up to `max_retries` times on failure.

    Waits 4 s, 8 s, 10 s with the defaults. The last error is re-raised.
    """
    attempt = 0
    while True:
        try:
            return await call()
        except retry_on as e:
            if attempt >= max_retries:
                raise
            attempt += 1
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.info(
                "Retrying in %.1fs (attempt %d/%d): %s",
                delay, attempt, max_retries, e,
            )
            await sleep(delay)
