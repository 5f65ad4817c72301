"""Admission control: one FIFO worker for all query work, plus per-ICCID denial."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_Job = Tuple[Callable[[], Awaitable[Any]], "asyncio.Future[Any]"]


class FailureCounter:
    """Consecutive classified failures per identifier; no decay, reset is explicit."""

    def __init__(self, threshold: int = 3) -> None:
        self.threshold = threshold
        self._counts: Dict[str, int] = {}

    def get(self, identifier: str) -> int:
        return self._counts.get(identifier, 0)

    def is_denied(self, identifier: str) -> bool:
        return self.get(identifier) >= self.threshold

    def increment(self, identifier: str) -> int:
        count = self.get(identifier) + 1
        self._counts[identifier] = count
        return count

    def clear(self, identifier: str) -> None:
        self._counts.pop(identifier, None)

    def reset(self, identifier: Optional[str] = None) -> int:
        """Clear one identifier (or all); returns how many entries were dropped."""
        if identifier is None:
            dropped = len(self._counts)
            self._counts.clear()
            return dropped
        return 1 if self._counts.pop(identifier, None) is not None else 0

    def __len__(self) -> int:
        return len(self._counts)


class AdmissionGuard:
    """Single-slot work queue.

    Jobs are coroutine factories; exactly one runs at a time, in submission
    order. The shared browser and CRM session cannot host two navigations at
    once, so every query goes through here.
    """

    def __init__(self) -> None:
        self._queue: Optional["asyncio.Queue[_Job]"] = None
        self._worker: Optional["asyncio.Task[None]"] = None
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def depth(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def _ensure_worker(self) -> "asyncio.Queue[_Job]":
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(self._queue))
        return self._queue

    async def submit(self, job: Callable[[], Awaitable[T]]) -> T:
        queue = self._ensure_worker()
        future: "asyncio.Future[T]" = asyncio.get_running_loop().create_future()
        queue.put_nowait((job, future))
        return await future

    async def _run(self, queue: "asyncio.Queue[_Job]") -> None:
        while True:
            # A caller that stopped waiting still gets its job run to completion.
            job, future = await queue.get()
            self._busy = True
            try:
                value = await job()
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as exc:
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(value)
            finally:
                self._busy = False
                queue.task_done()

    async def close(self) -> None:
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        queue, self._queue = self._queue, None
        while queue is not None and not queue.empty():
            _, future = queue.get_nowait()
            if not future.done():
                future.cancel()


__all__ = ["AdmissionGuard", "FailureCounter"]
