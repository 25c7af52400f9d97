"""Bounded-concurrency batch execution with per-item failure isolation."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import asdict, dataclass
from typing import Generic, TypeVar

import structlog

from taskmcp_core.logging import log_debug, log_info, log_warning

T = TypeVar("T")
R = TypeVar("R")

_logger = structlog.stdlib.get_logger(__name__)


@dataclass(frozen=True)
class BatchOptions:
    """Batch processor configuration.

    Attributes:
        max_concurrency: Operations allowed in flight at once, across batches.
        batch_size: Items per sub-batch.
        batch_delay: Seconds to pause between sub-batches.
        enable_metrics: Log a metrics summary when a run completes.
    """

    max_concurrency: int = 5
    batch_size: int = 10
    batch_delay: float = 0.0
    enable_metrics: bool = True

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.batch_delay < 0:
            raise ValueError("batch_delay must be >= 0")


HIGH_THROUGHPUT_OPTIONS = BatchOptions(max_concurrency=8, batch_size=15)
RATE_LIMITED_OPTIONS = BatchOptions(max_concurrency=3, batch_size=5, batch_delay=0.1)


@dataclass(frozen=True)
class BatchFailure(Generic[T]):
    """One item that raised, with its position in the input sequence."""

    index: int
    original_item: T
    error: Exception


@dataclass(frozen=True)
class BatchMetrics:
    """Throughput figures for one ``process_batches`` run.

    Durations are in seconds.
    """

    total_items: int
    total_batches: int
    total_duration: float
    average_batch_duration: float
    successful_operations: int
    failed_operations: int
    operations_per_second: float
    peak_concurrency: int


@dataclass(frozen=True)
class BatchResult(Generic[T, R]):
    """Outcome of a batch run.

    ``successful`` and ``failed`` are in completion order. Every input item
    appears in exactly one of them.
    """

    successful: list[R]
    failed: list[BatchFailure[T]]
    metrics: BatchMetrics

    @property
    def has_failures(self) -> bool:
        return bool(self.failed)

    @property
    def failed_items(self) -> list[T]:
        return [failure.original_item for failure in self.failed]


@dataclass(frozen=True)
class ProcessorMetrics:
    """Live processor state plus the metrics of the last completed run."""

    active_operations: int
    last_run: BatchMetrics | None


@dataclass
class _RunCounters:
    in_flight: int = 0
    peak: int = 0


def _partition(count: int, batch_size: int) -> list[range]:
    return [
        range(start, min(start + batch_size, count))
        for start in range(0, count, batch_size)
    ]


class BatchProcessor:
    """Drive work items through an async operation in bounded sub-batches.

    The concurrency cap is held by one semaphore per processor, so it bounds
    every run on this instance, not just a single sub-batch. A slot is freed
    as soon as its item settles.

    The semaphore belongs to the event loop that drives the processor. A run
    on a different loop replaces it, so runs on two loops never share a cap.
    """

    def __init__(self, options: BatchOptions | None = None) -> None:
        self.options = BatchOptions() if options is None else options
        self._semaphore: asyncio.Semaphore | None = None
        self._semaphore_loop: asyncio.AbstractEventLoop | None = None
        self._active_operations = 0
        self._last_metrics: BatchMetrics | None = None

    @property
    def active_operations(self) -> int:
        return self._active_operations

    def _loop_semaphore(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self.options.max_concurrency)
            self._semaphore_loop = loop
        return self._semaphore

    def get_metrics(self) -> ProcessorMetrics:
        """Return in-flight count and the last run's metrics."""
        return ProcessorMetrics(
            active_operations=self._active_operations,
            last_run=self._last_metrics,
        )

    async def process_batches(
        self,
        items: Sequence[T],
        operation: Callable[[T], Awaitable[R]],
    ) -> BatchResult[T, R]:
        """Attempt ``operation`` exactly once for every item.

        Item errors are collected into ``failed`` and never raised. Retries,
        if wanted, belong inside ``operation``.
        """
        work = list(items)
        batches = _partition(len(work), self.options.batch_size)
        successful: list[R] = []
        failed: list[BatchFailure[T]] = []
        batch_durations: list[float] = []
        counters = _RunCounters()
        semaphore = self._loop_semaphore()

        log_debug(
            _logger,
            "batch.started",
            total_items=len(work),
            batch_count=len(batches),
            batch_size=self.options.batch_size,
            max_concurrency=self.options.max_concurrency,
        )

        started = time.monotonic()
        for batch_index, batch in enumerate(batches):
            batch_started = time.monotonic()
            await asyncio.gather(
                *(
                    self._run_item(
                        index,
                        work[index],
                        operation,
                        semaphore,
                        successful,
                        failed,
                        counters,
                    )
                    for index in batch
                )
            )
            batch_durations.append(time.monotonic() - batch_started)

            if self.options.batch_delay > 0 and batch_index < len(batches) - 1:
                await asyncio.sleep(self.options.batch_delay)

        total_duration = time.monotonic() - started
        processed = len(successful) + len(failed)
        metrics = BatchMetrics(
            total_items=len(work),
            total_batches=len(batches),
            total_duration=total_duration,
            average_batch_duration=(
                sum(batch_durations) / len(batch_durations) if batch_durations else 0.0
            ),
            successful_operations=len(successful),
            failed_operations=len(failed),
            operations_per_second=(
                processed / total_duration if total_duration > 0 else 0.0
            ),
            peak_concurrency=counters.peak,
        )
        self._last_metrics = metrics

        if self.options.enable_metrics:
            log_info(_logger, "batch.completed", **asdict(metrics))

        return BatchResult(successful=successful, failed=failed, metrics=metrics)

    async def _run_item(
        self,
        index: int,
        item: T,
        operation: Callable[[T], Awaitable[R]],
        semaphore: asyncio.Semaphore,
        successful: list[R],
        failed: list[BatchFailure[T]],
        counters: _RunCounters,
    ) -> None:
        async with semaphore:
            self._active_operations += 1
            counters.in_flight += 1
            counters.peak = max(counters.peak, counters.in_flight)
            try:
                result = await operation(item)
            except Exception as exc:
                failed.append(BatchFailure(index=index, original_item=item, error=exc))
                log_warning(
                    _logger,
                    "batch.item_failed",
                    index=index,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            else:
                successful.append(result)
            finally:
                self._active_operations -= 1
                counters.in_flight -= 1
