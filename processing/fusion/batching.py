"""
Bounded-concurrency batch execution.

Items are split into fixed-size batches that run one after another. Inside a
batch every item runs concurrently, capped by a ConcurrencyLimiter. A failing
item never takes down its batch: outcomes are collected per input index.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from config.logging import logger
from config.settings import settings


Worker = Callable[[Any], Union[Any, Awaitable[Any]]]
ProgressCallback = Callable[[int, int, float], None]
BatchCallback = Callable[[list["ItemOutcome"]], None]


class ConcurrencyLimiter:
    """
    Permit pool capping in-flight work.

    Waiters are admitted in FIFO order. Usable as an async context manager or
    through run().
    """

    def __init__(self, max_concurrent: int):
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self.max_concurrent = max_concurrent
        self.in_flight = 0
        self.peak_in_flight = 0
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _get_semaphore(self) -> asyncio.Semaphore:
        # A semaphore binds to one event loop; each asyncio.run() gets a fresh one
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._loop is not loop:
            self._semaphore = asyncio.Semaphore(self.max_concurrent)
            self._loop = loop
        return self._semaphore

    async def __aenter__(self) -> "ConcurrencyLimiter":
        await self._get_semaphore().acquire()
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.in_flight -= 1
        self._get_semaphore().release()
        return False

    async def run(self, fn: Worker, *args, **kwargs) -> Any:
        """Run fn under a permit. Plain functions and coroutines both work."""
        async with self:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result


@dataclass
class ItemOutcome:
    """Settled result of one item."""
    index: int
    item: Any
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None


@dataclass
class BatchReport:
    """Outcomes of a process_batches() call, in input order."""
    outcomes: list[ItemOutcome] = field(default_factory=list)
    total_batches: int = 0
    completed_batches: int = 0
    processing_time_ms: int = 0

    @property
    def succeeded(self) -> list[ItemOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> list[ItemOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def values(self) -> list[Any]:
        return [o.value for o in self.outcomes if o.ok]

    @property
    def progress(self) -> float:
        if not self.total_batches:
            return 100.0
        return self.completed_batches / self.total_batches * 100


class BatchOrchestrator:
    """
    Runs a worker over items in sequential batches with bounded concurrency.

    Example:
        orchestrator = BatchOrchestrator(batch_size=5, concurrency=3, inter_batch_delay_ms=0)
        report = orchestrator.run_batches(records, fetch_one)
    """

    def __init__(
        self,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        inter_batch_delay_ms: Optional[int] = None,
        limiter: Optional[ConcurrencyLimiter] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            batch_size: Items per batch (default: settings.BATCH_SIZE)
            concurrency: Max in-flight items (default: settings.MAX_CONCURRENT_REQUESTS)
            inter_batch_delay_ms: Pause between batches (default: settings.DELAY_BETWEEN_BATCHES_MS)
            limiter: Shared limiter; overrides concurrency
            sleep: Coroutine used for the inter-batch pause
        """
        self.batch_size = batch_size if batch_size is not None else settings.BATCH_SIZE
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")

        if limiter is None:
            limiter = ConcurrencyLimiter(
                concurrency if concurrency is not None else settings.MAX_CONCURRENT_REQUESTS
            )
        self.limiter = limiter

        self.inter_batch_delay_ms = (
            inter_batch_delay_ms
            if inter_batch_delay_ms is not None
            else settings.DELAY_BETWEEN_BATCHES_MS
        )
        if self.inter_batch_delay_ms < 0:
            raise ValueError(f"inter_batch_delay_ms must be >= 0, got {self.inter_batch_delay_ms}")
        self._sleep = sleep

    async def process_batches(
        self,
        items: Iterable[Any],
        worker: Worker,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        inter_batch_delay_ms: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_batch: Optional[BatchCallback] = None,
    ) -> BatchReport:
        """
        Run worker once per item and collect every outcome.

        Args:
            items: Work items
            worker: Callable taking one item; may be sync or async
            batch_size: Per-call override
            concurrency: Per-call override (uses a fresh limiter)
            inter_batch_delay_ms: Per-call override
            on_progress: Called after each batch with (completed, total, percent)
            on_batch: Called with a batch's outcomes once it has settled,
                before the inter-batch pause

        Returns:
            BatchReport with one ItemOutcome per item, in input order
        """
        size = batch_size if batch_size is not None else self.batch_size
        if size < 1:
            raise ValueError(f"batch_size must be >= 1, got {size}")
        limiter = ConcurrencyLimiter(concurrency) if concurrency is not None else self.limiter
        delay_ms = inter_batch_delay_ms if inter_batch_delay_ms is not None else self.inter_batch_delay_ms

        start = time.perf_counter()
        items = list(items)
        report = BatchReport(total_batches=(len(items) + size - 1) // size)

        for batch_number, offset in enumerate(range(0, len(items), size), 1):
            batch = items[offset:offset + size]
            results = await asyncio.gather(
                *(limiter.run(worker, item) for item in batch),
                return_exceptions=True,
            )

            batch_outcomes = []
            for position, (item, result) in enumerate(zip(batch, results)):
                index = offset + position
                if isinstance(result, Exception):
                    logger.warning(f"Item {index} failed: {type(result).__name__}: {result}")
                    outcome = ItemOutcome(index=index, item=item, ok=False, error=result)
                elif isinstance(result, BaseException):
                    raise result
                else:
                    outcome = ItemOutcome(index=index, item=item, ok=True, value=result)
                batch_outcomes.append(outcome)
            report.outcomes.extend(batch_outcomes)

            report.completed_batches = batch_number
            failed = sum(1 for o in batch_outcomes if not o.ok)
            logger.info(
                f"Batch {batch_number}/{report.total_batches} done "
                f"({report.progress:.0f}%) - {len(batch_outcomes) - failed} ok, {failed} failed"
            )
            if on_batch:
                on_batch(batch_outcomes)
            if on_progress:
                on_progress(report.completed_batches, report.total_batches, report.progress)

            if batch_number < report.total_batches and delay_ms > 0:
                await self._sleep(delay_ms / 1000)

        report.processing_time_ms = int((time.perf_counter() - start) * 1000)
        return report

    def run_batches(self, items: Iterable[Any], worker: Worker, **kwargs) -> BatchReport:
        """Synchronous wrapper around process_batches()."""
        return asyncio.run(self.process_batches(items, worker, **kwargs))
