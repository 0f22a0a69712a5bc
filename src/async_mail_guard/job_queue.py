# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Priority job queue with retries and a dead-letter store.

Every job lives in exactly one of three stores:

- **pending**: waiting for its first attempt or for ``next_retry``;
- **processing**: currently being attempted;
- **dead-letter**: retries exhausted or a non-retryable failure.

Jobs leave the queue for good when delivered (``completed``). The
:class:`QueueStats` counters are updated on every transition so that
``pending + processing + completed + failed + dead_letter + purged`` always
equals the number of jobs ever created.

Two processing paths are offered:

- :meth:`JobQueue.attempt_job` performs one attempt and, on a retryable
  failure, puts the job back into pending with ``next_retry`` set. This is
  what :class:`~async_mail_guard.worker.QueueWorker` uses, so a worker never
  sleeps through a backoff.
- :meth:`JobQueue.process_job_with_retry` runs the whole retry cycle in place,
  awaiting each backoff, and accepts an ``asyncio.Event`` that aborts the wait
  and dead-letters the job.

Job timestamps are epoch seconds; retry delays are milliseconds.
"""

from __future__ import annotations

import asyncio
import random
import string
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from .errors import ErrorCategory, ErrorRecord
from .logger import get_logger
from .prometheus import GuardMetrics
from .retry import NON_RETRYABLE_CATEGORIES, RetryPolicy

CANCELLED = "cancelled"
MAX_ATTEMPTS_EXCEEDED = "Max retry attempts exceeded"


class JobPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_RANK = {
    JobPriority.HIGH: 0,
    JobPriority.MEDIUM: 1,
    JobPriority.LOW: 2,
}


class JobBusyError(RuntimeError):
    """Raised when a job is handed to a processing method while already being attempted."""


@dataclass
class ErrorHistoryEntry:
    timestamp: float
    error: str
    code: str | None
    category: ErrorCategory


@dataclass
class EmailJob:
    """An outbound email and its delivery bookkeeping.

    Attributes:
        id: Queue-assigned identifier.
        recipient: Destination address.
        subject: Message subject.
        content: Message body.
        attachments: Opaque attachment descriptors passed to ``send``.
        priority: ``high``, ``medium`` or ``low``.
        created_at: Enqueue time (epoch seconds).
        attempts: Attempts made so far.
        last_attempt: Time of the latest attempt.
        next_retry: Earliest time of the next attempt; ``None`` means now.
        error_history: One entry per failed attempt, oldest first.
        cancelled: Set when a cancellation moved the job to dead-letter.
    """

    id: str
    recipient: str
    subject: str
    content: str
    attachments: list[dict[str, Any]] = field(default_factory=list)
    priority: JobPriority = JobPriority.MEDIUM
    created_at: float = 0.0
    attempts: int = 0
    last_attempt: float | None = None
    next_retry: float | None = None
    error_history: list[ErrorHistoryEntry] = field(default_factory=list)
    cancelled: bool = False

    def is_ready(self, now: float) -> bool:
        return self.next_retry is None or self.next_retry <= now

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["priority"] = self.priority.value
        for entry in data["error_history"]:
            entry["category"] = entry["category"].value
        return data


@dataclass
class QueueStats:
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    dead_letter: int = 0
    purged: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class RetryResult:
    """Outcome of a processing call.

    Attributes:
        success: Whether the job was delivered.
        attempts: Attempts made on the job so far.
        total_time: Milliseconds spent in the call.
        final_error: Last error message when the job is not delivered.
        delivered_at: Delivery time (epoch seconds) on success.
        next_retry: Set by :meth:`JobQueue.attempt_job` when a retry was scheduled.
    """

    success: bool
    attempts: int
    total_time: float
    final_error: str | None = None
    delivered_at: float | None = None
    next_retry: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


SendCallable = Callable[[EmailJob], Awaitable[None]]


def _generate_job_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"job_{int(time.time() * 1000)}_{suffix}"


class JobQueue:
    """Pending/processing/dead-letter stores driven by a :class:`RetryPolicy`.

    Attributes:
        policy: Classification, should-retry and backoff decisions.
        stats: Live :class:`QueueStats`; use :meth:`get_queue_stats` for a copy.
    """

    def __init__(self, policy: RetryPolicy | None = None, *, metrics: GuardMetrics | None = None):
        self.policy = policy or RetryPolicy()
        self.metrics = metrics
        self.logger = get_logger("JobQueue")
        self.stats = QueueStats()
        self._pending: dict[str, EmailJob] = {}
        self._processing: dict[str, EmailJob] = {}
        self._dead_letter: dict[str, EmailJob] = {}
        self._running: set[str] = set()

    # ------------------------------------------------------------------ utils
    def _refresh_gauges(self) -> None:
        if self.metrics:
            self.metrics.set_queue_sizes(
                len(self._pending), len(self._processing), len(self._dead_letter)
            )

    def _finish(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.inc_finished(outcome)
        self._refresh_gauges()

    # ------------------------------------------------------------------ enqueue
    def add_to_queue(
        self,
        recipient: str,
        subject: str,
        content: str,
        *,
        priority: JobPriority | str = JobPriority.MEDIUM,
        attachments: list[dict[str, Any]] | None = None,
        next_retry: float | None = None,
    ) -> str:
        """Create a job in the pending store and return its id."""
        job = EmailJob(
            id=_generate_job_id(),
            recipient=recipient,
            subject=subject,
            content=content,
            attachments=list(attachments or []),
            priority=JobPriority(priority),
            created_at=time.time(),
            next_retry=next_retry,
        )
        while job.id in self._pending or job.id in self._processing or job.id in self._dead_letter:
            job.id = _generate_job_id()
        self._pending[job.id] = job
        self.stats.pending += 1
        self._refresh_gauges()
        self.logger.debug("Queued job %s for %s (priority=%s)", job.id, recipient, job.priority.value)
        return job.id

    def get_next_job(self) -> EmailJob | None:
        """Move the best ready job from pending to processing and return it.

        Ready jobs have no ``next_retry`` or one in the past. The highest
        priority wins; equal priorities keep insertion order.
        """
        now = time.time()
        ready = [job for job in self._pending.values() if job.is_ready(now)]
        if not ready:
            return None
        job = min(ready, key=lambda j: PRIORITY_RANK[j.priority])
        self._processing[job.id] = self._pending.pop(job.id)
        self.stats.pending -= 1
        self.stats.processing += 1
        self._refresh_gauges()
        return job

    def next_ready_in(self) -> float | None:
        """Seconds until the earliest pending job becomes ready, ``None`` if pending is empty."""
        if not self._pending:
            return None
        now = time.time()
        return max(0.0, min((job.next_retry or now) - now for job in self._pending.values()))

    # --------------------------------------------------------------- processing
    def _claim(self, job: EmailJob) -> None:
        if job.id in self._running:
            raise JobBusyError(f"Job {job.id} is already being processed")
        if job.id in self._pending:
            self._processing[job.id] = self._pending.pop(job.id)
            self.stats.pending -= 1
            self.stats.processing += 1
        elif job.id not in self._processing:
            raise KeyError(f"Job {job.id} is not pending or processing")
        self._running.add(job.id)

    def _release(self, job: EmailJob) -> None:
        self._running.discard(job.id)
        del self._processing[job.id]
        self.stats.processing -= 1

    def _record_failure(self, job: EmailJob, exc: Exception) -> ErrorCategory:
        record = ErrorRecord.from_error(exc)
        category = self.policy.categorize(record)
        job.error_history.append(
            ErrorHistoryEntry(
                timestamp=time.time(),
                error=record.message or type(exc).__name__,
                code=record.code,
                category=category,
            )
        )
        if self.metrics:
            self.metrics.inc_attempt_error(category.value)
        return category

    def _complete(self, job: EmailJob, started: float) -> RetryResult:
        self._release(job)
        self.stats.completed += 1
        self._finish("completed")
        delivered_at = time.time()
        self.logger.info("Delivered job %s to %s after %d attempt(s)", job.id, job.recipient, job.attempts)
        return RetryResult(
            success=True,
            attempts=job.attempts,
            total_time=(time.monotonic() - started) * 1000,
            delivered_at=delivered_at,
        )

    def _to_dead_letter(self, job: EmailJob, reason: str) -> None:
        self._release(job)
        self._dead_letter[job.id] = job
        self.stats.dead_letter += 1
        self._finish("dead_letter")
        self.logger.error(
            "Job %s moved to dead-letter after %d attempt(s): %s", job.id, job.attempts, reason
        )

    def _cancel(self, job: EmailJob, stage: str) -> None:
        job.cancelled = True
        self.logger.warning("Job %s cancelled %s", job.id, stage)
        self._to_dead_letter(job, CANCELLED)

    async def attempt_job(self, job: EmailJob, send: SendCallable) -> RetryResult:
        """Make one delivery attempt and route the job accordingly.

        On a retryable failure the job goes back to pending with
        ``next_retry`` set and the result carries that timestamp; otherwise it
        is completed or dead-lettered.
        """
        started = time.monotonic()
        self._claim(job)
        job.attempts += 1
        job.last_attempt = time.time()
        try:
            await send(job)
        except asyncio.CancelledError:
            self._cancel(job, "during delivery")
            raise
        except Exception as exc:
            category = self._record_failure(job, exc)
            error = job.error_history[-1].error
        else:
            return self._complete(job, started)

        if not self.policy.should_retry(job.attempts, category):
            self._to_dead_letter(job, f"{category.value}: {error}")
            return RetryResult(
                success=False,
                attempts=job.attempts,
                total_time=(time.monotonic() - started) * 1000,
                final_error=error or MAX_ATTEMPTS_EXCEEDED,
            )

        delay_ms = self.policy.calculate_retry_delay(job.attempts, category)
        job.next_retry = time.time() + delay_ms / 1000
        self._release(job)
        self._pending[job.id] = job
        self.stats.pending += 1
        self._refresh_gauges()
        self.logger.warning(
            "%s error for job %s (attempt %d/%d): %s - retrying in %dms",
            category.value,
            job.id,
            job.attempts,
            self.policy.max_attempts,
            error,
            delay_ms,
        )
        return RetryResult(
            success=False,
            attempts=job.attempts,
            total_time=(time.monotonic() - started) * 1000,
            final_error=error,
            next_retry=job.next_retry,
        )

    async def _wait(self, seconds: float, cancel: asyncio.Event | None) -> bool:
        """Sleep for ``seconds``; return ``True`` if ``cancel`` fired first."""
        if cancel is None:
            await asyncio.sleep(seconds)
            return False
        try:
            await asyncio.wait_for(cancel.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def process_job_with_retry(
        self,
        job: EmailJob,
        send: SendCallable,
        *,
        cancel: asyncio.Event | None = None,
    ) -> RetryResult:
        """Attempt ``job`` until delivered, out of attempts or non-retryable.

        Args:
            job: A job obtained from :meth:`get_next_job` (or still pending).
            send: Coroutine function delivering the job; any exception is a failure.
            cancel: Optional event; when set during a backoff the wait is
                aborted and the job is dead-lettered with ``cancelled=True``.
                Cancelling the calling task has the same effect, after which
                the ``CancelledError`` propagates.

        Returns:
            A :class:`RetryResult`; the job ends completed, failed or dead-lettered.

        Raises:
            JobBusyError: The job is already being processed.
            KeyError: The job is not in pending or processing.
        """
        started = time.monotonic()
        self._claim(job)
        final_error: str | None = None
        terminal = False

        while job.attempts < self.policy.max_attempts:
            job.attempts += 1
            job.last_attempt = time.time()
            try:
                await send(job)
            except asyncio.CancelledError:
                self._cancel(job, "during delivery")
                raise
            except Exception as exc:
                category = self._record_failure(job, exc)
                final_error = job.error_history[-1].error
            else:
                return self._complete(job, started)

            if not self.policy.should_retry(job.attempts, category):
                terminal = category in NON_RETRYABLE_CATEGORIES
                break

            delay_ms = self.policy.calculate_retry_delay(job.attempts, category)
            job.next_retry = time.time() + delay_ms / 1000
            self.logger.warning(
                "%s error for job %s (attempt %d/%d): %s - retrying in %dms",
                category.value,
                job.id,
                job.attempts,
                self.policy.max_attempts,
                final_error,
                delay_ms,
            )
            try:
                cancelled = await self._wait(delay_ms / 1000, cancel)
            except asyncio.CancelledError:
                self._cancel(job, "during backoff")
                raise
            if cancelled:
                self._cancel(job, "during backoff")
                return RetryResult(
                    success=False,
                    attempts=job.attempts,
                    total_time=(time.monotonic() - started) * 1000,
                    final_error=CANCELLED,
                )

        if job.attempts >= self.policy.max_attempts or terminal:
            final_error = final_error or MAX_ATTEMPTS_EXCEEDED
            self._to_dead_letter(job, final_error)
        else:
            self._release(job)
            self.stats.failed += 1
            self._finish("failed")
            self.logger.error("Job %s failed after %d attempt(s)", job.id, job.attempts)

        return RetryResult(
            success=False,
            attempts=job.attempts,
            total_time=(time.monotonic() - started) * 1000,
            final_error=final_error,
        )

    # ------------------------------------------------------------- management
    def retry_job(self, job_id: str) -> bool:
        """Move a dead-lettered job back to pending with a clean slate."""
        job = self._dead_letter.pop(job_id, None)
        if job is None:
            return False
        job.attempts = 0
        job.error_history = []
        job.cancelled = False
        job.next_retry = time.time()
        self.stats.dead_letter -= 1
        self._pending[job_id] = job
        self.stats.pending += 1
        self._refresh_gauges()
        self.logger.info("Revived job %s from dead-letter", job_id)
        return True

    def get_job(self, job_id: str) -> EmailJob | None:
        return (
            self._pending.get(job_id)
            or self._processing.get(job_id)
            or self._dead_letter.get(job_id)
        )

    def get_queue_stats(self) -> QueueStats:
        return QueueStats(**asdict(self.stats))

    def get_pending_jobs(self) -> list[EmailJob]:
        return list(self._pending.values())

    def get_dead_letter_jobs(self) -> list[EmailJob]:
        return list(self._dead_letter.values())

    def clear_dead_letter_queue(self) -> int:
        """Drop every dead-lettered job and return how many were removed."""
        count = len(self._dead_letter)
        self._dead_letter.clear()
        self.stats.dead_letter -= count
        self.stats.purged += count
        self._refresh_gauges()
        return count


# Alias kept for callers using the delivery-manager name
RetryManager = JobQueue
