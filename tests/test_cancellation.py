from __future__ import annotations

import asyncio
import threading
import unittest

from batch_analyzer.cancellation import (
    CancellationHandle,
    CancellationState,
    OperationCancelled,
    wait_cancellable,
)


class CancellationHandleTest(unittest.TestCase):
    def test_signal_is_one_shot(self) -> None:
        handle = CancellationHandle()
        self.assertIs(handle.state, CancellationState.PENDING)
        self.assertFalse(handle.is_signalled())

        self.assertTrue(handle.signal())
        self.assertFalse(handle.signal())
        self.assertIs(handle.state, CancellationState.SIGNALLED)
        self.assertTrue(handle.is_signalled())

    def test_raise_if_signalled(self) -> None:
        handle = CancellationHandle()
        handle.raise_if_signalled()
        handle.signal()
        with self.assertRaises(OperationCancelled):
            handle.raise_if_signalled()


class CancellableWaitTest(unittest.IsolatedAsyncioTestCase):
    async def test_wait_returns_after_signal(self) -> None:
        handle = CancellationHandle()
        waiter = asyncio.create_task(handle.wait())
        await asyncio.sleep(0)
        self.assertFalse(waiter.done())

        handle.signal()
        await asyncio.wait_for(waiter, timeout=1)

    async def test_wait_on_signalled_handle_returns_immediately(self) -> None:
        handle = CancellationHandle()
        handle.signal()
        await asyncio.wait_for(handle.wait(), timeout=1)

    async def test_signal_from_another_thread_wakes_waiter(self) -> None:
        handle = CancellationHandle()
        waiter = asyncio.create_task(handle.wait())
        await asyncio.sleep(0)

        thread = threading.Thread(target=handle.signal)
        thread.start()
        thread.join()

        await asyncio.wait_for(waiter, timeout=1)

    async def test_completed_call_returns_result(self) -> None:
        handle = CancellationHandle()

        async def work() -> str:
            await asyncio.sleep(0)
            return "done"

        self.assertEqual(await wait_cancellable(work(), handle), "done")

    async def test_call_errors_propagate(self) -> None:
        handle = CancellationHandle()

        async def work() -> None:
            raise RuntimeError("quota exceeded")

        with self.assertRaises(RuntimeError):
            await wait_cancellable(work(), handle)

    async def test_signal_aborts_in_flight_call(self) -> None:
        handle = CancellationHandle()
        started = asyncio.Event()
        aborted = asyncio.Event()

        async def slow_request() -> str:
            started.set()
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                aborted.set()
                raise
            return "late"

        pending = asyncio.create_task(wait_cancellable(slow_request(), handle))
        await started.wait()
        handle.signal()

        with self.assertRaises(OperationCancelled):
            await asyncio.wait_for(pending, timeout=1)
        self.assertTrue(aborted.is_set())

    async def test_signalled_handle_never_starts_the_call(self) -> None:
        handle = CancellationHandle()
        handle.signal()
        calls = []

        async def work() -> None:
            calls.append(1)

        coro = work()
        with self.assertRaises(OperationCancelled):
            await wait_cancellable(coro, handle)
        coro.close()
        self.assertEqual(calls, [])


if __name__ == "__main__":
    unittest.main()
