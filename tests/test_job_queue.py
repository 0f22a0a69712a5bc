# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for JobQueue: ordering, retry cycle, dead-letter and accounting."""

import asyncio
import re

import pytest

from async_mail_guard.errors import ErrorCategory
from async_mail_guard.job_queue import (
    MAX_ATTEMPTS_EXCEEDED,
    JobBusyError,
    JobPriority,
    JobQueue,
    RetryManager,
)
from async_mail_guard.prometheus import GuardMetrics
from async_mail_guard.retry import RetryConfig, RetryPolicy


def fast_policy(**kwargs):
    """Policy whose retries wait the 100 ms minimum."""
    return RetryPolicy(RetryConfig(base_delay_ms=1, max_delay_ms=5, jitter=False, **kwargs))


def failing(message, succeed_after=None):
    calls = []

    async def send(job):
        calls.append(job.id)
        if succeed_after is not None and len(calls) > succeed_after:
            return
        raise RuntimeError(message)

    send.calls = calls
    return send


async def ok_send(job):
    return None


def created(stats):
    return stats.pending + stats.processing + stats.completed + stats.failed + stats.dead_letter + stats.purged


class TestEnqueue:
    def test_job_id_format_and_defaults(self):
        queue = JobQueue()
        job_id = queue.add_to_queue("user@example.com", "Hi", "Body")
        assert re.fullmatch(r"job_\d+_[a-z0-9]{9}", job_id)

        job = queue.get_job(job_id)
        assert job.recipient == "user@example.com"
        assert job.priority is JobPriority.MEDIUM
        assert job.attempts == 0
        assert job.error_history == []
        assert job.next_retry is None
        assert queue.get_queue_stats().pending == 1

    def test_priority_accepts_strings(self):
        queue = JobQueue()
        job_id = queue.add_to_queue("a@example.com", "s", "c", priority="high")
        assert queue.get_job(job_id).priority is JobPriority.HIGH
        with pytest.raises(ValueError):
            queue.add_to_queue("a@example.com", "s", "c", priority="urgent")


class TestGetNextJob:
    def test_priority_order(self):
        queue = JobQueue()
        low = queue.add_to_queue("a@example.com", "low", "c", priority="low")
        high = queue.add_to_queue("b@example.com", "high", "c", priority="high")
        medium = queue.add_to_queue("c@example.com", "medium", "c", priority="medium")
        order = [queue.get_next_job().id for _ in range(3)]
        assert order == [high, medium, low]
        assert queue.get_next_job() is None

    def test_fifo_within_priority(self):
        queue = JobQueue()
        ids = [queue.add_to_queue(f"u{i}@example.com", "s", "c") for i in range(4)]
        assert [queue.get_next_job().id for _ in range(4)] == ids

    def test_moves_job_to_processing(self):
        queue = JobQueue()
        job_id = queue.add_to_queue("a@example.com", "s", "c")
        job = queue.get_next_job()
        assert job.id == job_id
        stats = queue.get_queue_stats()
        assert (stats.pending, stats.processing) == (0, 1)
        assert queue.get_pending_jobs() == []
        assert queue.get_job(job_id) is job

    def test_skips_jobs_not_yet_ready(self, monkeypatch):
        monkeypatch.setattr("async_mail_guard.job_queue.time.time", lambda: 1000.0)
        queue = JobQueue()
        later = queue.add_to_queue("a@example.com", "s", "c", priority="high", next_retry=1010.0)
        now = queue.add_to_queue("b@example.com", "s", "c", priority="low")
        assert queue.get_next_job().id == now
        assert queue.get_next_job() is None
        assert queue.next_ready_in() == pytest.approx(10.0)

        monkeypatch.setattr("async_mail_guard.job_queue.time.time", lambda: 1010.0)
        assert queue.get_next_job().id == later

    def test_next_ready_in_empty(self):
        assert JobQueue().next_ready_in() is None


class TestProcessJobWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        queue = JobQueue(fast_policy())
        job_id = queue.add_to_queue("a@example.com", "s", "c")
        job = queue.get_next_job()
        result = await queue.process_job_with_retry(job, ok_send)
        assert result.success is True
        assert result.attempts == 1
        assert result.delivered_at is not None
        assert result.final_error is None
        assert queue.get_job(job_id) is None
        assert queue.get_queue_stats().completed == 1

    @pytest.mark.asyncio
    async def test_permanent_failure_dead_letters_after_one_attempt(self):
        queue = JobQueue(fast_policy())
        queue.add_to_queue("a@example.com", "s", "c")
        job = queue.get_next_job()
        send = failing("550 Mailbox unavailable")
        result = await queue.process_job_with_retry(job, send)

        assert result.success is False
        assert result.attempts == 1
        assert result.final_error == "550 Mailbox unavailable"
        assert len(send.calls) == 1
        assert [e.category for e in job.error_history] == [ErrorCategory.PERMANENT]
        stats = queue.get_queue_stats()
        assert (stats.dead_letter, stats.processing, stats.failed) == (1, 0, 0)
        assert queue.get_dead_letter_jobs() == [job]

    @pytest.mark.asyncio
    async def test_authentication_failure_is_single_attempt(self):
        queue = JobQueue(fast_policy())
        queue.add_to_queue("a@example.com", "s", "c")
        job = queue.get_next_job()
        result = await queue.process_job_with_retry(job, failing("535 Authentication failed"))
        assert result.attempts == 1
        assert job.error_history[0].category is ErrorCategory.AUTHENTICATION
        assert queue.get_queue_stats().dead_letter == 1

    @pytest.mark.asyncio
    async def test_retryable_failure_uses_every_attempt(self):
        queue = JobQueue(fast_policy())
        queue.add_to_queue("a@example.com", "s", "c")
        job = queue.get_next_job()
        send = failing("Connection reset by peer")
        result = await queue.process_job_with_retry(job, send)

        assert result.success is False
        assert result.attempts == 3
        assert len(send.calls) == 3
        assert result.final_error == "Connection reset by peer"
        assert result.total_time >= 200
        assert all(e.category is ErrorCategory.NETWORK for e in job.error_history)
        assert queue.get_queue_stats().dead_letter == 1

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self):
        queue = JobQueue(fast_policy())
        queue.add_to_queue("a@example.com", "s", "c")
        job = queue.get_next_job()
        result = await queue.process_job_with_retry(job, failing("temporary failure", succeed_after=1))
        assert result.success is True
        assert result.attempts == 2
        assert len(job.error_history) == 1
        assert queue.get_queue_stats().completed == 1

    @pytest.mark.asyncio
    async def test_empty_message_falls_back_to_exception_name(self):
        async def send(job):
            raise ConnectionResetError()

        queue = JobQueue(fast_policy(max_attempts=1))
        queue.add_to_queue("a@example.com", "s", "c")
        result = await queue.process_job_with_retry(queue.get_next_job(), send)
        assert result.final_error == "ConnectionResetError"

    @pytest.mark.asyncio
    async def test_zero_attempts_allowed(self):
        queue = JobQueue(fast_policy(max_attempts=0))
        queue.add_to_queue("a@example.com", "s", "c")
        result = await queue.process_job_with_retry(queue.get_next_job(), ok_send)
        assert result.attempts == 0
        assert result.final_error == MAX_ATTEMPTS_EXCEEDED
        assert queue.get_queue_stats().dead_letter == 1

    @pytest.mark.asyncio
    async def test_pending_job_can_be_processed_directly(self):
        queue = JobQueue(fast_policy())
        job_id = queue.add_to_queue("a@example.com", "s", "c")
        result = await queue.process_job_with_retry(queue.get_job(job_id), ok_send)
        assert result.success is True
        stats = queue.get_queue_stats()
        assert (stats.pending, stats.processing, stats.completed) == (0, 0, 1)

    @pytest.mark.asyncio
    async def test_cancellation_during_backoff(self):
        queue = JobQueue(RetryPolicy(RetryConfig(base_delay_ms=10_000, jitter=False)))
        queue.add_to_queue("a@example.com", "s", "c")
        job = queue.get_next_job()
        cancel = asyncio.Event()

        async def send(job):
            cancel.set()
            raise RuntimeError("network error")

        result = await asyncio.wait_for(queue.process_job_with_retry(job, send, cancel=cancel), timeout=2)
        assert result.success is False
        assert result.final_error == "cancelled"
        assert result.attempts == 1
        assert job.cancelled is True
        assert queue.get_dead_letter_jobs() == [job]

    @pytest.mark.asyncio
    async def test_task_cancelled_during_backoff(self):
        queue = JobQueue(RetryPolicy(RetryConfig(base_delay_ms=5000, jitter=False)))
        queue.add_to_queue("a@example.com", "s", "c")
        job = queue.get_next_job()
        attempted = asyncio.Event()

        async def send(job):
            attempted.set()
            raise RuntimeError("network error")

        task = asyncio.create_task(queue.process_job_with_retry(job, send))
        await attempted.wait()
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        stats = queue.get_queue_stats()
        assert (stats.processing, stats.dead_letter) == (0, 1)
        assert created(stats) == 1
        assert job.cancelled is True
        assert queue.get_dead_letter_jobs() == [job]
        # the job is no longer marked busy and can be revived and processed
        assert queue.retry_job(job.id) is True
        assert (await queue.process_job_with_retry(queue.get_next_job(), ok_send)).success is True

    @pytest.mark.asyncio
    async def test_task_cancelled_during_send(self):
        queue = JobQueue(fast_policy())
        queue.add_to_queue("a@example.com", "s", "c")
        job = queue.get_next_job()
        started = asyncio.Event()

        async def hanging_send(job):
            started.set()
            await asyncio.Event().wait()

        task = asyncio.create_task(queue.attempt_job(job, hanging_send))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        stats = queue.get_queue_stats()
        assert (stats.pending, stats.processing, stats.dead_letter) == (0, 0, 1)
        assert job.cancelled is True
        assert job.error_history == []

    @pytest.mark.asyncio
    async def test_same_job_cannot_run_twice(self):
        queue = JobQueue(fast_policy())
        queue.add_to_queue("a@example.com", "s", "c")
        job = queue.get_next_job()
        release = asyncio.Event()

        async def slow_send(job):
            await release.wait()

        task = asyncio.create_task(queue.process_job_with_retry(job, slow_send))
        await asyncio.sleep(0)
        with pytest.raises(JobBusyError):
            await queue.process_job_with_retry(job, slow_send)
        release.set()
        result = await task
        assert result.success is True

    @pytest.mark.asyncio
    async def test_finished_job_cannot_be_processed(self):
        queue = JobQueue(fast_policy())
        queue.add_to_queue("a@example.com", "s", "c")
        job = queue.get_next_job()
        await queue.process_job_with_retry(job, ok_send)
        with pytest.raises(KeyError):
            await queue.process_job_with_retry(job, ok_send)


class TestAttemptJob:
    @pytest.mark.asyncio
    async def test_retryable_failure_goes_back_to_pending(self, monkeypatch):
        clock = {"now": 5000.0}
        monkeypatch.setattr("async_mail_guard.job_queue.time.time", lambda: clock["now"])
        queue = JobQueue(fast_policy())
        job_id = queue.add_to_queue("a@example.com", "s", "c")

        result = await queue.attempt_job(queue.get_next_job(), failing("ETIMEDOUT"))
        assert result.success is False
        assert result.next_retry == pytest.approx(5000.1)
        stats = queue.get_queue_stats()
        assert (stats.pending, stats.processing) == (1, 0)
        assert queue.get_next_job() is None

        clock["now"] = result.next_retry
        job = queue.get_next_job()
        assert job.id == job_id
        assert job.attempts == 1

    @pytest.mark.asyncio
    async def test_exhausted_attempts_dead_letter(self, monkeypatch):
        clock = {"now": 5000.0}
        monkeypatch.setattr("async_mail_guard.job_queue.time.time", lambda: clock["now"])
        queue = JobQueue(fast_policy(max_attempts=2))
        queue.add_to_queue("a@example.com", "s", "c")
        send = failing("timeout")

        first = await queue.attempt_job(queue.get_next_job(), send)
        clock["now"] = first.next_retry
        second = await queue.attempt_job(queue.get_next_job(), send)

        assert second.next_retry is None
        assert second.attempts == 2
        assert second.final_error == "timeout"
        assert queue.get_queue_stats().dead_letter == 1

    @pytest.mark.asyncio
    async def test_success(self):
        queue = JobQueue(fast_policy())
        queue.add_to_queue("a@example.com", "s", "c")
        result = await queue.attempt_job(queue.get_next_job(), ok_send)
        assert result.success is True
        assert queue.get_queue_stats().completed == 1


class TestManagement:
    @pytest.mark.asyncio
    async def test_retry_job_revives_dead_letter(self):
        queue = JobQueue(fast_policy())
        job_id = queue.add_to_queue("a@example.com", "s", "c")
        await queue.process_job_with_retry(queue.get_next_job(), failing("550 rejected"))
        before = queue.get_queue_stats()

        assert queue.retry_job(job_id) is True
        after = queue.get_queue_stats()
        assert after.dead_letter == before.dead_letter - 1
        assert after.pending == before.pending + 1

        job = queue.get_job(job_id)
        assert job.attempts == 0
        assert job.error_history == []
        assert job.cancelled is False
        assert queue.get_next_job() is job

    def test_retry_unknown_job(self):
        assert JobQueue().retry_job("job_missing") is False

    @pytest.mark.asyncio
    async def test_clear_dead_letter_keeps_accounting(self):
        queue = JobQueue(fast_policy())
        for _ in range(3):
            queue.add_to_queue("a@example.com", "s", "c")
        for _ in range(2):
            await queue.process_job_with_retry(queue.get_next_job(), failing("permanent failure"))

        assert queue.clear_dead_letter_queue() == 2
        assert queue.get_dead_letter_jobs() == []
        stats = queue.get_queue_stats()
        assert stats.dead_letter == 0
        assert stats.purged == 2
        assert created(stats) == 3

    @pytest.mark.asyncio
    async def test_every_job_is_accounted_for(self):
        queue = JobQueue(fast_policy())
        for i in range(6):
            queue.add_to_queue(f"u{i}@example.com", "s", "c")

        outcomes = [ok_send, failing("550 no"), failing("535 Authentication failed"), ok_send]
        for send in outcomes:
            await queue.process_job_with_retry(queue.get_next_job(), send)
        queue.get_next_job()

        stats = queue.get_queue_stats()
        assert (stats.pending, stats.processing, stats.completed, stats.dead_letter) == (1, 1, 2, 2)
        assert created(stats) == 6

    def test_stats_are_a_copy(self):
        queue = JobQueue()
        stats = queue.get_queue_stats()
        stats.pending = 99
        assert queue.get_queue_stats().pending == 0

    @pytest.mark.asyncio
    async def test_job_to_dict(self):
        queue = JobQueue(fast_policy(max_attempts=1))
        job_id = queue.add_to_queue("a@example.com", "s", "c", attachments=[{"filename": "a.txt"}])
        await queue.process_job_with_retry(queue.get_next_job(), failing("network down"))
        data = queue.get_job(job_id).to_dict()
        assert data["priority"] == "medium"
        assert data["attachments"] == [{"filename": "a.txt"}]
        assert data["error_history"][0]["category"] == "network"

    @pytest.mark.asyncio
    async def test_metrics(self):
        metrics = GuardMetrics()
        queue = JobQueue(fast_policy(), metrics=metrics)
        queue.add_to_queue("a@example.com", "s", "c")
        queue.add_to_queue("b@example.com", "s", "c")
        await queue.process_job_with_retry(queue.get_next_job(), failing("550 no"))
        sample = metrics.registry.get_sample_value
        assert sample("amg_job_attempts_total", {"category": "permanent"}) == 1
        assert sample("amg_jobs_finished_total", {"outcome": "dead_letter"}) == 1
        assert sample("amg_queue_jobs", {"store": "pending"}) == 1
        assert sample("amg_queue_jobs", {"store": "dead_letter"}) == 1


def test_retry_manager_alias():
    assert RetryManager is JobQueue
