"""Per-key FIFO task queues.

Inbound signaling for one participant must be handled strictly in receipt
order and never overlap, while different participants proceed independently.
Each key gets a queue and a worker task that runs jobs one at a time.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional


logger = logging.getLogger(__name__)


Job = Callable[[], Awaitable[None]]


class KeyedSequencer:
    def __init__(self, name: str = "sequencer"):
        self._name = name
        self._queues: Dict[str, "asyncio.Queue[Optional[Job]]"] = {}
        self._workers: Dict[str, asyncio.Task[None]] = {}
        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()

    def submit(self, key: str, job: Job) -> None:
        queue = self._queues.get(key)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[key] = queue
            self._workers[key] = asyncio.create_task(self._run(key, queue), name=f"{self._name}-{key}")
        self._pending += 1
        self._idle.clear()
        queue.put_nowait(job)

    def keys(self) -> list[str]:
        return list(self._queues)

    async def wait_idle(self) -> None:
        """Wait until every queued job has finished."""
        await self._idle.wait()

    async def discard(self, key: str) -> None:
        """Drop `key`'s queue; pending jobs are not run.

        Safe to call from inside one of `key`'s own jobs: the worker then exits
        after the current job instead of being cancelled.
        """
        queue = self._queues.pop(key, None)
        worker = self._workers.pop(key, None)
        if queue is None or worker is None:
            return
        dropped = 0
        while not queue.empty():
            queue.get_nowait()
            queue.task_done()
            self._job_done()
            dropped += 1
        if dropped:
            logger.debug("%s dropped jobs key=%s count=%s", self._name, key, dropped)
        if worker is asyncio.current_task():
            queue.put_nowait(None)
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass

    async def close(self) -> None:
        for key in list(self._queues):
            await self.discard(key)

    async def _run(self, key: str, queue: "asyncio.Queue[Optional[Job]]") -> None:
        while True:
            job = await queue.get()
            try:
                if job is None:
                    return
                await job()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s job failed key=%s", self._name, key)
            finally:
                queue.task_done()
                if job is not None:
                    self._job_done()

    def _job_done(self) -> None:
        self._pending -= 1
        if self._pending <= 0:
            self._pending = 0
            self._idle.set()
