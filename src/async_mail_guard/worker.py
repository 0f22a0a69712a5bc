# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Background workers consuming a :class:`~async_mail_guard.job_queue.JobQueue`.

Each worker task repeatedly takes the next ready job and makes exactly one
attempt with :meth:`JobQueue.attempt_job`. A retryable failure puts the job
back into pending with a ``next_retry`` timestamp, so the worker moves on to
other jobs instead of sleeping through the backoff. When nothing is ready the
worker waits until the earliest ``next_retry``, the poll interval, or an
explicit :meth:`QueueWorker.wake`, whichever comes first.

Example:
    Running two workers::

        worker = QueueWorker(queue, send_email, concurrency=2)
        await worker.start()
        queue.add_to_queue("user@example.com", "Hello", "Body")
        worker.wake()
        ...
        await worker.stop()
"""

from __future__ import annotations

import asyncio
import math

from .job_queue import JobQueue, RetryResult, SendCallable
from .logger import get_logger


class QueueWorker:
    """Pool of asyncio tasks draining a job queue.

    Attributes:
        queue: The job queue being consumed.
        send: Coroutine function delivering one job.
        concurrency: Number of worker tasks.
        poll_interval: Upper bound, in seconds, of an idle wait.
    """

    def __init__(
        self,
        queue: JobQueue,
        send: SendCallable,
        *,
        concurrency: int = 1,
        poll_interval: float = 0.5,
    ):
        self.queue = queue
        self.send = send
        self.concurrency = max(1, int(concurrency))
        self.poll_interval = max(0.05, float(poll_interval))
        self.logger = get_logger("QueueWorker")
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        """Spawn the worker tasks on the running loop."""
        if self.running:
            return
        self._stop.clear()
        self.logger.debug("Starting %d queue worker(s)", self.concurrency)
        self._tasks = [
            asyncio.create_task(self._loop(index), name=f"queue-worker-{index}")
            for index in range(self.concurrency)
        ]

    async def stop(self) -> None:
        """Signal the workers to exit and wait for in-flight attempts to finish."""
        self._stop.set()
        self._wake_event.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.logger.debug("Queue workers stopped")

    def wake(self) -> None:
        """Interrupt idle waits, typically right after enqueueing a job."""
        self._wake_event.set()

    async def run_once(self) -> RetryResult | None:
        """Process at most one ready job; return its result or ``None`` if idle."""
        job = self.queue.get_next_job()
        if job is None:
            return None
        return await self.queue.attempt_job(job, self.send)

    async def drain(self) -> list[RetryResult]:
        """Process every job ready right now, without waiting for backoffs."""
        results = []
        while (result := await self.run_once()) is not None:
            results.append(result)
        return results

    async def _loop(self, index: int) -> None:
        self.logger.debug("Queue worker %d started", index)
        while not self._stop.is_set():
            try:
                result = await self.run_once()
            except Exception as exc:
                self.logger.exception("Unhandled error in queue worker %d: %s", index, exc)
                result = None
            if result is None:
                await self._wait_for_wakeup(self._idle_timeout())

    def _idle_timeout(self) -> float:
        ready_in = self.queue.next_ready_in()
        if ready_in is None:
            return self.poll_interval
        return min(ready_in, self.poll_interval)

    async def _wait_for_wakeup(self, timeout: float) -> None:
        if self._stop.is_set():
            return
        if math.isinf(timeout):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        if timeout <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()
