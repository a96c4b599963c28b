from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Iterable

from .backend import AnalysisBackend
from .concurrency import decide_concurrency
from .config import Settings
from .executor import analyze_item, run_batch
from .job_registry import JobRegistry
from .models import BatchJob, WorkItem

logger = logging.getLogger(__name__)


def dedupe_items(items: Iterable[WorkItem]) -> list[WorkItem]:
    seen: set[str] = set()
    unique: list[WorkItem] = []
    for item in items:
        if item.id in seen:
            continue
        seen.add(item.id)
        unique.append(item)
    return unique


class BatchOrchestrator:
    """
    Launches batch analysis jobs and exposes the controls the UI needs.

    Each launched job runs as a supervised background task on the running
    event loop; its state is observable through the registry at any time.
    """

    def __init__(self, registry: JobRegistry, backend: AnalysisBackend, settings: Settings | None = None):
        self.registry = registry
        self.backend = backend
        self.settings = settings or Settings()
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def launch_batch(self, items: Iterable[WorkItem], label: str | None = None) -> BatchJob | None:
        """
        Start analysing ``items`` in the background.

        Returns:
            The new job, or None when there was nothing to analyse
        """
        unique = dedupe_items(items)
        if not unique:
            logger.debug("Ignoring empty batch")
            return None

        others_running = self.registry.running_count()
        job = self.registry.create_job(unique, label=label)
        if job is None:
            return None
        concurrency = decide_concurrency(
            others_running,
            solo=self.settings.solo_concurrency,
            shared=self.settings.shared_concurrency,
        )
        operation = partial(analyze_item, self.backend)
        self._spawn(job, run_batch(self.registry, job, unique, concurrency, operation))
        return job

    def cancel_job(self, job_id: str) -> BatchJob | None:
        return self.registry.cancel(job_id)

    def dismiss_job(self, job_id: str) -> bool:
        return self.registry.remove(job_id)

    def observe_jobs(self) -> list[BatchJob]:
        return self.registry.list()

    async def wait(self, job_id: str) -> None:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        pending = [task for task in self._tasks.values() if not task.done()]
        for job_id in list(self._tasks):
            self.registry.cancel(job_id)
        if pending:
            logger.info("Waiting for %d running batch jobs to stop", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

    def _spawn(self, job: BatchJob, coro) -> None:
        task = asyncio.create_task(coro, name=f"batch-{job.id}")
        self._tasks[job.id] = task

        def _finished(t: asyncio.Task[None]) -> None:
            self._tasks.pop(job.id, None)
            if t.cancelled():
                logger.debug("Batch task for job %s cancelled", job.id)
                return
            exc = t.exception()
            if exc is not None:
                logger.error("Batch task for job %s crashed", job.id, exc_info=exc)
                self.registry.cancel(job.id)

        task.add_done_callback(_finished)
