"""
Bounded, isolated batch execution.

WHAT: Runs one coroutine per item with a concurrency ceiling and tallies
the outcomes.

WHY: Billing and dunning batches touch many independent subscriptions.
One broken item must never stop the rest, and a large backlog must not
open more database connections than the pool holds.

HOW: asyncio.Semaphore around each worker, asyncio.gather over all items.
Workers report their own outcome; an exception escaping a worker is
logged and counted as a failure.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ItemOutcome(str, Enum):
    """Result of processing one batch item."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class BatchResult:
    """Counters for one batch run."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    def record(self, outcome: ItemOutcome) -> None:
        self.processed += 1
        if outcome == ItemOutcome.SUCCEEDED:
            self.succeeded += 1
        elif outcome == ItemOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
        }


async def run_isolated(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[ItemOutcome]],
    concurrency: int = 5,
) -> BatchResult:
    """
    Run `worker` over `items` with at most `concurrency` in flight.

    Args:
        items: Batch items (usually primary keys)
        worker: Coroutine returning the item's outcome
        concurrency: Maximum concurrent workers (minimum 1)

    Returns:
        BatchResult with one recorded outcome per item
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))
    result = BatchResult()

    async def guarded(item: T) -> None:
        async with semaphore:
            try:
                outcome = await worker(item)
            except Exception:
                logger.exception(f"Batch item {item!r} failed", extra={"item": item})
                outcome = ItemOutcome.FAILED
            result.record(outcome)

    await asyncio.gather(*(guarded(item) for item in items))
    return result
