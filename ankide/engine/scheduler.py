"""FIFO turn scheduler.

All prompt submissions go through one asyncio.Queue drained by a
single worker task, so at most one turn is in flight and turns run in
submission order. A failed job only fails its own caller.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .errors import BridgeClosedError

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[Any]]


@dataclass
class _QueuedJob:
    run: Job
    future: asyncio.Future


class TurnScheduler:
    """Single-worker FIFO queue for turn executions."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[_QueuedJob] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._closed = False
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    async def submit(self, job: Job) -> Any:
        """Enqueue a job and wait for its outcome."""
        if self._closed:
            raise BridgeClosedError()
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_QueuedJob(job, future))
        self._ensure_worker()
        return await future

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(
                self._run(), name="codex-turn-scheduler",
            )

    async def _run(self) -> None:
        while True:
            queued = await self._queue.get()
            if queued.future.done():
                # Caller went away (cancelled) before its turn came up.
                self._queue.task_done()
                continue
            self._busy = True
            try:
                result = await queued.run()
            except asyncio.CancelledError:
                if not queued.future.done():
                    queued.future.set_exception(BridgeClosedError())
                raise
            except Exception as exc:
                if not queued.future.done():
                    queued.future.set_exception(exc)
            else:
                if not queued.future.done():
                    queued.future.set_result(result)
            finally:
                self._busy = False
                self._queue.task_done()

    async def close(self) -> None:
        """Stop the worker and fail everything still queued."""
        self._closed = True
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        while not self._queue.empty():
            queued = self._queue.get_nowait()
            if not queued.future.done():
                queued.future.set_exception(BridgeClosedError())
