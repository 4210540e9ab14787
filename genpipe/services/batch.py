"""Bounded-concurrency batch runner with isolate-and-collect semantics.

One failing item never cancels its siblings: every job runs to completion
(or failure) and the outcome is aggregated into a ``BatchReport``.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

Job = tuple[str, Callable[[], Awaitable[Any]]]


class BatchError(BaseModel):
    key: str
    message: str


class BatchReport(BaseModel):
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[BatchError] = Field(default_factory=list)
    results: dict[str, Any] = Field(default_factory=dict, exclude=True)

    def record_skip(self, key: str) -> None:
        self.total += 1
        self.skipped += 1
        logger.info("Skipping %s (already generated)", key)


async def run_batch(
    jobs: Sequence[Job],
    concurrency: int = 2,
    report: BatchReport | None = None,
) -> BatchReport:
    """Run ``jobs`` under a semaphore and collect every outcome.

    Args:
        jobs: ``(key, coroutine factory)`` pairs; factories are only called
            once a semaphore slot is free.
        concurrency: Maximum jobs in flight.
        report: Existing report to extend (e.g. one that already counts
            skipped items).

    Returns:
        The report, with ``results`` keyed by job key for successful jobs.
    """
    report = report or BatchReport()
    semaphore = asyncio.Semaphore(concurrency)

    async def _run(key: str, factory: Callable[[], Awaitable[Any]]) -> tuple[str, Any]:
        async with semaphore:
            return key, await factory()

    outcomes = await asyncio.gather(
        *[_run(key, factory) for key, factory in jobs],
        return_exceptions=True,
    )

    for (key, _), outcome in zip(jobs, outcomes):
        report.total += 1
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            report.failed += 1
            report.errors.append(BatchError(key=key, message=str(outcome) or type(outcome).__name__))
            logger.error("Batch item %s failed: %s", key, outcome)
            continue
        report.succeeded += 1
        report.results[key] = outcome[1]

    logger.info(
        "Batch finished: %d total, %d succeeded, %d failed, %d skipped",
        report.total, report.succeeded, report.failed, report.skipped,
    )
    return report
