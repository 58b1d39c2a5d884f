"""Bounded-concurrency batch runner.

Provider calls are issued in explicit chunks that are awaited together,
with a short pause between chunks to stay under provider rate limits.
A failing item never cancels its siblings; failures are collected and
logged, and the caller receives whatever succeeded.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class BatchOutcome(Generic[T, R]):
    """Settled results of a batched run."""
    results: List[Tuple[T, R]] = field(default_factory=list)
    failures: List[Tuple[T, BaseException]] = field(default_factory=list)

    @property
    def values(self) -> List[R]:
        return [value for _, value in self.results]


class BoundedBatchRunner:
    """Runs an async worker over items in fixed-size chunks."""

    def __init__(self, batch_size: int = 5, delay_seconds: float = 0.0, name: str = "batch"):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.batch_size = batch_size
        self.delay_seconds = max(0.0, delay_seconds)
        self.name = name

    async def run(
        self,
        items: Sequence[T],
        worker: Callable[[T], Awaitable[R]],
        on_result: Optional[Callable[[T, R], Awaitable[Any]]] = None,
    ) -> BatchOutcome:
        """
        Apply ``worker`` to every item, ``batch_size`` at a time.

        Args:
            items: Items to process, in order
            worker: Coroutine function called once per item
            on_result: Optional coroutine awaited for each success, in item order

        Returns:
            BatchOutcome with successes and failures
        """
        outcome = BatchOutcome()
        items = list(items)

        for start in range(0, len(items), self.batch_size):
            batch = items[start:start + self.batch_size]

            results = await asyncio.gather(
                *[worker(item) for item in batch],
                return_exceptions=True,
            )

            for item, result in zip(batch, results):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if isinstance(result, BaseException):
                    logger.warning(f"{self.name}: item {item!r} failed: {result}")
                    outcome.failures.append((item, result))
                    continue

                outcome.results.append((item, result))
                if on_result:
                    try:
                        await on_result(item, result)
                    except Exception as e:
                        logger.error(f"{self.name}: result callback failed for {item!r}: {e}")

            if self.delay_seconds and start + self.batch_size < len(items):
                await asyncio.sleep(self.delay_seconds)

        return outcome
