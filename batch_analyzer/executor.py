"""
Chunked, cancellable execution of one batch job.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterator, Sequence

from .backend import AnalysisBackend
from .cancellation import Cancellation, OperationCancelled, wait_cancellable
from .job_registry import JobRegistry
from .models import BatchJob, JobStatus, WorkItem

logger = logging.getLogger(__name__)

ItemOperation = Callable[[WorkItem, Cancellation], Awaitable[bool]]


def chunked(items: Sequence[WorkItem], size: int) -> Iterator[Sequence[WorkItem]]:
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    for start in range(0, len(items), size):
        yield items[start : start + size]


async def analyze_item(backend: AnalysisBackend, item: WorkItem, cancellation: Cancellation) -> bool:
    """
    Cache check, then compute on a miss.

    Returns:
        True when a cached or freshly computed analysis exists

    Raises:
        OperationCancelled: If the job was cancelled while a call was in flight
    """
    cached = await wait_cancellable(backend.check_cache(item.id), cancellation)
    if cached is not None:
        logger.debug("Cache hit for %s", item.id)
        return True
    result = await wait_cancellable(backend.compute_and_store(item), cancellation)
    return bool(result)


async def run_batch(
    registry: JobRegistry,
    job: BatchJob,
    items: Sequence[WorkItem],
    concurrency: int,
    operation: ItemOperation,
) -> JobStatus:
    """
    Run ``operation`` over ``items`` with at most ``concurrency`` calls in flight.

    Items are processed in consecutive chunks of ``concurrency``; a chunk
    starts only once the previous one has fully settled and the job has not
    been cancelled. Item failures are counted, never raised.

    Returns:
        The terminal status recorded for the job
    """
    handle = job.cancellation
    chunks = list(chunked(items, concurrency))
    logger.info(
        "Job %s: %d items in %d chunks (concurrency=%d)",
        job.id,
        len(items),
        len(chunks),
        concurrency,
    )

    try:
        for index, chunk in enumerate(chunks):
            if handle.is_signalled():
                logger.info("Job %s cancelled before chunk %d/%d", job.id, index + 1, len(chunks))
                break
            tasks = [asyncio.ensure_future(_run_item(registry, job, item, operation)) for item in chunk]
            outcomes = await asyncio.gather(*tasks, return_exceptions=True)
            for item, outcome in zip(chunk, outcomes):
                if isinstance(outcome, asyncio.CancelledError):
                    _record_cancelled_item(registry, job, item)
                elif isinstance(outcome, BaseException):
                    raise outcome
    except asyncio.CancelledError:
        registry.cancel(job.id)
        raise

    status = JobStatus.CANCELLED if handle.is_signalled() else JobStatus.COMPLETED
    registry.set_status(job.id, status)
    return status


async def _run_item(registry: JobRegistry, job: BatchJob, item: WorkItem, operation: ItemOperation) -> None:
    try:
        ok = await operation(item, job.cancellation)
    except OperationCancelled:
        if job.cancellation.is_signalled():
            logger.debug("Job %s: analysis of %s aborted by cancellation", job.id, item.id)
            registry.update_progress(job.id, current=1)
            return
        logger.warning("Job %s: analysis of %s aborted without a cancel request", job.id, item.id)
        registry.update_progress(job.id, current=1, fail=1)
        return
    except Exception:
        logger.warning("Job %s: analysis of %s failed", job.id, item.id, exc_info=True)
        registry.update_progress(job.id, current=1, fail=1)
        return

    if ok:
        registry.update_progress(job.id, current=1, success=1)
    else:
        logger.warning("Job %s: analysis of %s returned no result", job.id, item.id)
        registry.update_progress(job.id, current=1, fail=1)


def _record_cancelled_item(registry: JobRegistry, job: BatchJob, item: WorkItem) -> None:
    # The item's own task was cancelled while the batch task keeps running.
    if job.cancellation.is_signalled():
        logger.debug("Job %s: analysis of %s cancelled", job.id, item.id)
        registry.update_progress(job.id, current=1)
        return
    logger.warning("Job %s: analysis of %s was cancelled without a cancel request", job.id, item.id)
    registry.update_progress(job.id, current=1, fail=1)
