"""
One-shot cancellation signal shared by a batch job and its in-flight items.
"""

from __future__ import annotations

import asyncio
import threading
from enum import Enum
from typing import Awaitable, TypeVar, Union

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised when an item's in-flight call is aborted by its job's handle.

    Not a subclass of ``asyncio.CancelledError``: it must stay catchable by the
    executor without tearing down the task that runs the batch.
    """


class CancellationState(str, Enum):
    PENDING = "pending"
    SIGNALLED = "signalled"


class CancellationHandle:
    """
    Broadcast signal that can be raised exactly once.

    ``signal()`` may be called from any thread; coroutines blocked in
    ``wait()`` are woken on their own event loop.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = CancellationState.PENDING
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Event]] = []

    @property
    def state(self) -> CancellationState:
        return self._state

    def is_signalled(self) -> bool:
        return self._state is CancellationState.SIGNALLED

    def signal(self) -> bool:
        """
        Raise the signal.

        Returns:
            True if this call performed the transition, False if the handle
            was already signalled.
        """
        with self._lock:
            if self._state is CancellationState.SIGNALLED:
                return False
            self._state = CancellationState.SIGNALLED
            waiters, self._waiters = self._waiters, []

        try:
            current_loop = asyncio.get_running_loop()
        except RuntimeError:
            current_loop = None

        for loop, event in waiters:
            if loop is current_loop:
                event.set()
            elif not loop.is_closed():
                loop.call_soon_threadsafe(event.set)
        return True

    def raise_if_signalled(self) -> None:
        if self.is_signalled():
            raise OperationCancelled("Cancelled by user")

    async def wait(self) -> None:
        """Block until the handle is signalled."""
        event = asyncio.Event()
        entry = (asyncio.get_running_loop(), event)
        with self._lock:
            if self._state is CancellationState.SIGNALLED:
                return
            self._waiters.append(entry)
        try:
            await event.wait()
        finally:
            with self._lock:
                if entry in self._waiters:
                    self._waiters.remove(entry)

    def view(self) -> "CancellationView":
        return CancellationView(self)

    def __repr__(self) -> str:
        return f"CancellationHandle(state={self._state.value})"


class CancellationView:
    """Read-only side of a handle: observe and wait, never signal."""

    __slots__ = ("_handle",)

    def __init__(self, handle: CancellationHandle) -> None:
        self._handle = handle

    @property
    def state(self) -> CancellationState:
        return self._handle.state

    def is_signalled(self) -> bool:
        return self._handle.is_signalled()

    def raise_if_signalled(self) -> None:
        self._handle.raise_if_signalled()

    async def wait(self) -> None:
        await self._handle.wait()

    def view(self) -> "CancellationView":
        return self

    def __repr__(self) -> str:
        return f"CancellationView(state={self.state.value})"


Cancellation = Union[CancellationHandle, CancellationView]


async def wait_cancellable(awaitable: Awaitable[T], handle: Cancellation) -> T:
    """
    Await ``awaitable`` unless ``handle`` is signalled first.

    If the signal wins the race the in-flight task is cancelled, allowed to
    unwind, and ``OperationCancelled`` is raised. If the call has already
    completed its result is returned even when the signal arrived meanwhile.

    Raises:
        OperationCancelled: If the handle was signalled before completion
    """
    if handle.is_signalled():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise OperationCancelled("Cancelled by user")

    main_task = asyncio.ensure_future(awaitable)
    cancel_task = asyncio.ensure_future(handle.wait())

    try:
        done, _pending = await asyncio.wait(
            {main_task, cancel_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        main_task.cancel()
        cancel_task.cancel()
        raise

    if main_task in done:
        cancel_task.cancel()
        return main_task.result()

    main_task.cancel()
    await asyncio.gather(main_task, return_exceptions=True)
    raise OperationCancelled("Cancelled by user")
