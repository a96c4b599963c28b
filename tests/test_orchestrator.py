from __future__ import annotations

import asyncio
import unittest
from unittest.mock import patch

from batch_analyzer.config import Settings
from batch_analyzer.job_registry import JobRegistry
from batch_analyzer.models import JobProgress, JobStatus, WorkItem
from batch_analyzer.orchestrator import BatchOrchestrator, dedupe_items


def _items(count: int, prefix: str = "vid") -> list[WorkItem]:
    return [WorkItem(id=f"{prefix}{i}", title=f"Video {i}") for i in range(1, count + 1)]


class StubBackend:
    def __init__(self, block: bool = False):
        self.block = block
        self.started = 0
        self.computed: list[str] = []

    async def check_cache(self, item_id: str):
        await asyncio.sleep(0)
        return None

    async def compute_and_store(self, item: WorkItem):
        self.started += 1
        if self.block:
            await asyncio.sleep(60)
        self.computed.append(item.id)
        return {"hook": "strong opening"}


class DedupeTest(unittest.TestCase):
    def test_first_occurrence_wins(self) -> None:
        items = [WorkItem(id="a", title="first"), WorkItem(id="b"), WorkItem(id="a", title="second")]
        unique = dedupe_items(items)
        self.assertEqual([(item.id, item.title) for item in unique], [("a", "first"), ("b", "")])


class BatchOrchestratorTest(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.registry = JobRegistry()
        self.backend = StubBackend()
        self.orchestrator = BatchOrchestrator(self.registry, self.backend, Settings())

    async def test_launch_runs_to_completion(self) -> None:
        job = self.orchestrator.launch_batch(_items(5), label="Channel sweep")
        assert job is not None

        await self.orchestrator.wait(job.id)

        [record] = self.orchestrator.observe_jobs()
        self.assertEqual(record.label, "Channel sweep")
        self.assertIs(record.status, JobStatus.COMPLETED)
        self.assertEqual(record.progress, JobProgress(total=5, current=5, success=5, fail=0))
        self.assertEqual(sorted(self.backend.computed), ["vid1", "vid2", "vid3", "vid4", "vid5"])

    async def test_empty_launch_is_noop(self) -> None:
        self.assertIsNone(self.orchestrator.launch_batch([]))
        self.assertEqual(self.orchestrator.observe_jobs(), [])

    async def test_duplicates_are_analysed_once(self) -> None:
        items = _items(3) + _items(2)
        job = self.orchestrator.launch_batch(items)
        assert job is not None

        self.assertEqual(job.progress.total, 3)
        await self.orchestrator.wait(job.id)
        self.assertEqual(len(self.backend.computed), 3)

    async def test_concurrency_depends_on_running_jobs(self) -> None:
        chosen: list[int] = []
        release = asyncio.Event()

        async def fake_run_batch(registry, job, items, concurrency, operation):
            chosen.append(concurrency)
            await release.wait()
            registry.set_status(job.id, JobStatus.COMPLETED)
            return JobStatus.COMPLETED

        with patch("batch_analyzer.orchestrator.run_batch", new=fake_run_batch):
            first = self.orchestrator.launch_batch(_items(4, "a"))
            second = self.orchestrator.launch_batch(_items(4, "b"))
            await asyncio.sleep(0)
            release.set()
            assert first and second
            await self.orchestrator.wait(first.id)
            await self.orchestrator.wait(second.id)

            release.clear()
            third = self.orchestrator.launch_batch(_items(4, "c"))
            await asyncio.sleep(0)
            release.set()
            assert third
            await self.orchestrator.wait(third.id)

        self.assertEqual(chosen, [3, 2, 3])

    async def test_configured_concurrency(self) -> None:
        chosen: list[int] = []

        async def fake_run_batch(registry, job, items, concurrency, operation):
            chosen.append(concurrency)
            return JobStatus.COMPLETED

        orchestrator = BatchOrchestrator(self.registry, self.backend, Settings(solo_concurrency=5))
        with patch("batch_analyzer.orchestrator.run_batch", new=fake_run_batch):
            job = orchestrator.launch_batch(_items(2))
            assert job is not None
            await orchestrator.wait(job.id)

        self.assertEqual(chosen, [5])

    async def test_cancel_and_dismiss(self) -> None:
        self.backend.block = True
        job = self.orchestrator.launch_batch(_items(6))
        assert job is not None
        while self.backend.started < 3:
            await asyncio.sleep(0)

        cancelled = self.orchestrator.cancel_job(job.id)
        assert cancelled is not None
        self.assertIs(cancelled.status, JobStatus.CANCELLED)
        self.assertIs(self.orchestrator.cancel_job(job.id).status, JobStatus.CANCELLED)  # type: ignore[union-attr]

        await self.orchestrator.wait(job.id)
        [record] = self.orchestrator.observe_jobs()
        self.assertEqual(record.progress.current, 3)
        self.assertLessEqual(record.progress.current, record.progress.total)

        self.assertTrue(self.orchestrator.dismiss_job(job.id))
        self.assertEqual(self.orchestrator.observe_jobs(), [])

    async def test_shutdown_cancels_running_jobs(self) -> None:
        self.backend.block = True
        job = self.orchestrator.launch_batch(_items(2))
        assert job is not None
        while self.backend.started < 2:
            await asyncio.sleep(0)

        await self.orchestrator.shutdown()

        record = self.registry.get(job.id)
        assert record is not None
        self.assertIs(record.status, JobStatus.CANCELLED)

    async def test_crashed_batch_is_logged_and_cancelled(self) -> None:
        async def broken_run_batch(registry, job, items, concurrency, operation):
            raise RuntimeError("scheduler bug")

        with patch("batch_analyzer.orchestrator.run_batch", new=broken_run_batch):
            with self.assertLogs("batch_analyzer.orchestrator", level="ERROR"):
                job = self.orchestrator.launch_batch(_items(2))
                assert job is not None
                await self.orchestrator.wait(job.id)
                await asyncio.sleep(0)

        record = self.registry.get(job.id)
        assert record is not None
        self.assertIs(record.status, JobStatus.CANCELLED)


if __name__ == "__main__":
    unittest.main()
