"""Bounded concurrent fan-out for concept enrichment.

Concepts are split into disjoint fixed-size batches; each batch is one unit
of work that writes its results into the concept objects it was handed.
Units go to a bounded queue served by a fixed worker pool. When the queue is
full the submitting coroutine runs the unit itself, which throttles
submission to the pool's pace.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from refsync.adapters.snowstorm.errors import EnrichmentError
from refsync.core.batching import split_by_count

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

logger = logging.getLogger(__name__)

T = TypeVar("T")

_STOP = None


@dataclass
class EnrichmentReport:
    batches: int = 0
    completed: int = 0
    inline: int = 0
    timed_out: bool = False
    failures: list[BaseException] = field(default_factory=list)


class ConcurrentEnricher(Generic[T]):
    def __init__(
        self,
        *,
        name: str,
        workers: int,
        batch_size: int,
        timeout: float,
        queue_size: int | None = None,
    ) -> None:
        if workers <= 0 or batch_size <= 0:
            msg = "workers and batch_size must be positive"
            raise ValueError(msg)
        self.name = name
        self.workers = workers
        self.batch_size = batch_size
        self.timeout = timeout
        self.queue_size = queue_size if queue_size is not None else workers

    async def run(
        self,
        items: Sequence[T],
        unit: Callable[[list[T]], Awaitable[None]],
        *,
        correlation_id: str | None = None,
    ) -> EnrichmentReport:
        """Run ``unit`` over disjoint batches of ``items``.

        Submission and the join share one ``timeout``, including units the
        caller runs itself; on expiry the outstanding work is cancelled and
        whatever finished is kept.

        Raises:
            EnrichmentError: One or more units failed
        """
        batches = split_by_count(list(items), self.batch_size)
        report = EnrichmentReport(batches=len(batches))
        if not batches:
            return report

        started = time.monotonic()
        queue: asyncio.Queue[list[T] | None] = asyncio.Queue(maxsize=self.queue_size)
        pool_size = min(self.workers, len(batches))
        tasks = [
            asyncio.create_task(
                self._worker(queue, unit, report, correlation_id), name=f"{self.name}-{i}"
            )
            for i in range(pool_size)
        ]

        async def _submit_and_join() -> None:
            for batch in batches:
                try:
                    queue.put_nowait(batch)
                except asyncio.QueueFull:
                    report.inline += 1
                    await self._run_unit(batch, unit, report, correlation_id)
            await self._join(queue, tasks)

        try:
            await asyncio.wait_for(_submit_and_join(), timeout=self.timeout)
        except TimeoutError:
            report.timed_out = True
            logger.warning(
                "enrichment_join_timeout",
                extra={
                    "correlation_id": correlation_id,
                    "enricher": self.name,
                    "batches": report.batches,
                    "completed": report.completed,
                    "timeout_sec": self.timeout,
                },
            )
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        logger.debug(
            "enrichment_finished",
            extra={
                "correlation_id": correlation_id,
                "enricher": self.name,
                "batches": report.batches,
                "completed": report.completed,
                "inline": report.inline,
                "failures": len(report.failures),
                "elapsed_sec": round(time.monotonic() - started, 3),
            },
        )

        if report.failures:
            first = report.failures[0]
            msg = f"{self.name} enrichment failed for {len(report.failures)} batch(es): {first}"
            raise EnrichmentError(msg, report.failures) from first
        return report

    async def _join(self, queue: asyncio.Queue[list[T] | None], tasks: list[asyncio.Task]) -> None:
        for _ in tasks:
            await queue.put(_STOP)
        await asyncio.gather(*tasks)

    async def _worker(
        self,
        queue: asyncio.Queue[list[T] | None],
        unit: Callable[[list[T]], Awaitable[None]],
        report: EnrichmentReport,
        correlation_id: str | None,
    ) -> None:
        while True:
            batch = await queue.get()
            try:
                if batch is _STOP:
                    return
                await self._run_unit(batch, unit, report, correlation_id)
            finally:
                queue.task_done()

    async def _run_unit(
        self,
        batch: list[T],
        unit: Callable[[list[T]], Awaitable[None]],
        report: EnrichmentReport,
        correlation_id: str | None,
    ) -> None:
        try:
            await unit(batch)
        except Exception as exc:
            report.failures.append(exc)
            logger.exception(
                "enrichment_unit_failed",
                extra={
                    "correlation_id": correlation_id,
                    "enricher": self.name,
                    "batch_size": len(batch),
                },
            )
        else:
            report.completed += 1
