from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Sequence
from uuid import uuid4

from .cancellation import CancellationHandle
from .models import BatchJob, JobProgress, JobStatus, WorkItem

logger = logging.getLogger(__name__)

JobsObserver = Callable[[list[BatchJob]], None]
ProgressUpdater = Callable[[JobProgress], JobProgress]

_COUNTER_FIELDS = ("current", "success", "fail")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_label(items: Sequence[WorkItem]) -> str:
    first = items[0].title or items[0].id
    if len(items) == 1:
        return first
    return f"{first} +{len(items) - 1}"


class JobRegistry:
    """
    Ordered collection of batch jobs shared by the executor and the UI.

    Every mutation goes through this object. Jobs handed out by ``list()``
    and ``get()`` are snapshots: writing to them has no effect on the registry.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._jobs: dict[str, BatchJob] = {}
        self._observers: list[JobsObserver] = []

    def create_job(self, items: Sequence[WorkItem], label: str | None = None) -> BatchJob | None:
        if not items:
            return None
        with self._lock:
            job_id = str(uuid4())
            record = BatchJob(
                id=job_id,
                label=(label or "").strip() or default_label(items),
                started_at=_utcnow(),
                progress=JobProgress(total=len(items)),
                cancellation=CancellationHandle(),
                item_ids=tuple(item.id for item in items),
            )
            self._jobs[job_id] = record
            snapshot = record.snapshot()
        logger.info("Created job %s (%s) with %d items", job_id, snapshot.label, len(items))
        self._notify()
        return snapshot

    def get(self, job_id: str) -> BatchJob | None:
        with self._lock:
            record = self._jobs.get(job_id)
            return record.snapshot() if record else None

    def list(self) -> list[BatchJob]:
        """Running jobs first, most recently started first within each group."""
        with self._lock:
            ordered = sorted(
                enumerate(self._jobs.values()),
                key=lambda pair: (pair[1].status is JobStatus.RUNNING, pair[1].started_at, pair[0]),
                reverse=True,
            )
            return [record.snapshot() for _, record in ordered]

    def running_count(self) -> int:
        with self._lock:
            return sum(1 for record in self._jobs.values() if record.status is JobStatus.RUNNING)

    def update_progress(
        self,
        job_id: str,
        updater: ProgressUpdater | None = None,
        **deltas: int,
    ) -> BatchJob | None:
        """
        Merge a progress change into a job.

        Either pass counter deltas (``current=1, success=1``) or an ``updater``
        that maps the current progress to a new one. Counters never decrease,
        ``total`` never changes, and ``current`` is capped at ``total``.

        Returns:
            Snapshot of the updated job, or None if the job no longer exists
        """
        unknown = set(deltas) - set(_COUNTER_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported progress fields: {', '.join(sorted(unknown))}")

        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                return None
            old = record.progress
            if updater is not None:
                proposed = updater(replace(old))
            else:
                proposed = replace(old)
            for name, delta in deltas.items():
                setattr(proposed, name, getattr(proposed, name) + delta)
            record.progress = self._merge(job_id, old, proposed)
            snapshot = record.snapshot()
        self._notify()
        return snapshot

    def set_status(self, job_id: str, status: JobStatus) -> bool:
        """Apply ``running -> completed`` or ``running -> cancelled``; anything else is ignored."""
        status = JobStatus(status)
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None or record.status is not JobStatus.RUNNING or status is JobStatus.RUNNING:
                return False
            record.status = status
            record.finished_at = _utcnow()
            progress = replace(record.progress)
        logger.info(
            "Job %s %s: %d/%d processed, %d ok, %d failed",
            job_id,
            status.value,
            progress.current,
            progress.total,
            progress.success,
            progress.fail,
        )
        self._notify()
        return True

    def cancel(self, job_id: str) -> BatchJob | None:
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                return None
            handle = record.cancellation
            assert isinstance(handle, CancellationHandle)
            signalled = handle.signal()
        if signalled:
            logger.info("Cancellation requested for job %s", job_id)
        self.set_status(job_id, JobStatus.CANCELLED)
        with self._lock:
            return record.snapshot()

    def remove(self, job_id: str) -> bool:
        # Not gated on terminal status; later updates for a removed job are no-ops.
        with self._lock:
            removed = self._jobs.pop(job_id, None)
        if removed is None:
            return False
        logger.info("Removed job %s (%s)", job_id, removed.status.value)
        self._notify()
        return True

    def subscribe(self, observer: JobsObserver) -> Callable[[], None]:
        """
        Register an observer called with the ordered job list after each mutation.

        Returns:
            Callable that unregisters the observer
        """
        with self._lock:
            self._observers.append(observer)

        def unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return unsubscribe

    def _notify(self) -> None:
        with self._lock:
            observers = list(self._observers)
        if not observers:
            return
        jobs = self.list()
        for observer in observers:
            try:
                observer(jobs)
            except Exception:
                logger.exception("Job observer %r failed", observer)

    @staticmethod
    def _merge(job_id: str, old: JobProgress, proposed: JobProgress) -> JobProgress:
        current = min(max(old.current, proposed.current), old.total)
        success = max(old.success, proposed.success)
        fail = max(old.fail, proposed.fail)
        overflow = success + fail - current
        if overflow > 0:
            # Drop the part of the increment that would outrun ``current``.
            trim_fail = min(overflow, fail - old.fail)
            fail -= trim_fail
            success -= min(overflow - trim_fail, success - old.success)
        merged = JobProgress(total=old.total, current=current, success=success, fail=fail)
        if merged != replace(proposed, total=old.total):
            logger.warning("Clamped progress update for job %s: %s -> %s", job_id, proposed, merged)
        return merged
