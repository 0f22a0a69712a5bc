# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration for the mail guard.

:class:`MailGuard` wires the building blocks of the package together:

- a :class:`~async_mail_guard.factory.RateLimiterFactory` holding the ``ip``,
  ``email`` and ``global`` limiters plus any limiter declared in configuration;
- a :class:`~async_mail_guard.retry.RetryPolicy` shared by the queue and the
  error translator;
- a :class:`~async_mail_guard.job_queue.JobQueue` drained by a
  :class:`~async_mail_guard.worker.QueueWorker`;
- a :class:`~async_mail_guard.translator.DeliveryErrorTranslator` reporting
  failures that need an operator.

The transport is not part of the guard: callers inject a ``send`` coroutine
function receiving an :class:`~async_mail_guard.job_queue.EmailJob`.

Example:
    Guarding a contact form::

        guard = MailGuard(settings=load_settings(), send=smtp_send)
        await guard.start()

        gate = guard.check_request(client_ip)
        if gate.allowed:
            job_id, result = guard.submit({
                "recipient": "user@example.com",
                "subject": "Hello",
                "content": "Body",
            })

        await guard.stop()
"""

from __future__ import annotations

from typing import Any

from .config_loader import GuardSettings
from .factory import PRESETS, RateLimiterFactory
from .job_queue import EmailJob, JobPriority, JobQueue, SendCallable
from .logger import get_logger
from .prometheus import GuardMetrics
from .rate_limit import RateLimiter, RateLimitResult, RateLimitType, breach_message
from .retry import RetryPolicy
from .translator import DeliveryErrorTranslator
from .worker import QueueWorker

REQUIRED_JOB_FIELDS = ("recipient", "subject", "content")


class TransportNotConfiguredError(RuntimeError):
    """Raised by the default ``send`` when no transport was injected."""

    def __init__(self, message: str = "Email transport not configured"):
        super().__init__(message)


async def _missing_transport(job: EmailJob) -> None:
    raise TransportNotConfiguredError()


class MailGuard:
    """Rate-limited, retrying front door for outbound email.

    Attributes:
        settings: Resolved :class:`GuardSettings`.
        metrics: Prometheus metrics collector.
        factory: Limiter registry.
        policy: Retry policy shared by the queue and the translator.
        queue: The job queue.
        worker: Background workers draining ``queue``.
        translator: Error translator for failed deliveries.
    """

    def __init__(
        self,
        *,
        settings: GuardSettings | None = None,
        send: SendCallable | None = None,
        metrics: GuardMetrics | None = None,
        logger=None,
    ):
        """Build every component from ``settings``.

        Args:
            settings: Configuration; defaults to :class:`GuardSettings` defaults.
            send: Coroutine function delivering one job. Without it every job
                fails with a configuration error and is dead-lettered.
            metrics: Prometheus collector; a fresh one is created if omitted.
            logger: Custom logger instance. If None, uses the default logger.
        """
        self.settings = settings or GuardSettings()
        self.logger = logger or get_logger()
        self.metrics = metrics or GuardMetrics()
        self.factory = RateLimiterFactory(environment=self.settings.environment, metrics=self.metrics)
        for name in PRESETS:
            self.factory.get_limiter(name, self.settings.limiters.get(name))
        for name, config in self.settings.limiters.items():
            self.factory.get_limiter(name, config)
        for limiter in self.factory.limiters():
            limiter.cleanup_interval = self.settings.cleanup_interval

        self.policy = RetryPolicy(self.settings.retry)
        self.queue = JobQueue(self.policy, metrics=self.metrics)
        self.translator = DeliveryErrorTranslator(self.policy, locale=self.settings.locale)
        self._send = send or _missing_transport
        self.worker = QueueWorker(
            self.queue,
            self._deliver,
            concurrency=self.settings.worker_concurrency,
            poll_interval=self.settings.poll_interval,
        )

    # ----------------------------------------------------------------- limits
    def limiter(self, name: str) -> RateLimiter | None:
        return self.factory.get(name)

    def check_request(self, client_ip: str) -> RateLimitResult:
        """Gate an inbound request on the ``ip`` and then the ``global`` limiter.

        The global limiter is only consulted when the IP limiter admits the
        request, so a rejected caller does not consume global capacity.
        """
        result = self.factory.get_limiter("ip").check_limit(client_ip or "unknown")
        if not result.allowed:
            return result
        global_result = self.factory.get_limiter("global").check_limit("global")
        if not global_result.allowed:
            return global_result
        return result

    def submit(self, job_spec: dict[str, Any]) -> tuple[str | None, RateLimitResult]:
        """Apply the ``email`` limiter to the recipient and enqueue on admission.

        Returns:
            ``(job_id, result)``; ``job_id`` is ``None`` when the recipient is
            over its limit.

        Raises:
            ValueError: A required field is missing or the priority is unknown.
        """
        missing = [name for name in REQUIRED_JOB_FIELDS if not job_spec.get(name)]
        if missing:
            raise ValueError(f"Missing required field(s): {', '.join(missing)}")
        recipient = str(job_spec["recipient"])
        priority = JobPriority(job_spec.get("priority") or JobPriority.MEDIUM)

        result = self.factory.get_limiter("email").check_limit(recipient)
        if not result.allowed:
            self.logger.warning("Rejected job for %s: %s", recipient, breach_message(result.breach_level))
            return None, result

        job_id = self.queue.add_to_queue(
            recipient,
            str(job_spec["subject"]),
            str(job_spec["content"]),
            priority=priority,
            attachments=job_spec.get("attachments"),
        )
        self.worker.wake()
        return job_id, result

    async def _deliver(self, job: EmailJob) -> None:
        try:
            await self._send(job)
        except Exception as exc:
            report = self.translator.handle_error(exc)
            self.logger.debug("Delivery of %s failed (%s)", job.id, report.category.value)
            raise

    # --------------------------------------------------------------- commands
    def _require_limiter(self, payload: dict[str, Any]) -> RateLimiter:
        name = payload.get("limiter")
        limiter = self.factory.get(name) if name else None
        if limiter is None:
            raise KeyError(f"unknown limiter: {name}")
        return limiter

    async def handle_command(self, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute an external control command.

        Supported commands:
        - ``addJob``: rate-check the recipient and enqueue
        - ``queueStats``, ``getJob``, ``listDeadLetter``: queue inspection
        - ``retryJob``, ``clearDeadLetter``: dead-letter management
        - ``breaches``, ``limiterStats``: limiter inspection
        - ``addWhitelist``, ``removeWhitelist``: whitelist management

        Args:
            cmd: Command name to execute.
            payload: Command-specific parameters.

        Returns:
            dict: Command result with ``ok`` status and command-specific data.
        """
        payload = payload or {}
        try:
            return self._dispatch(cmd, payload)
        except (KeyError, ValueError) as exc:
            message = exc.args[0] if exc.args else str(exc)
            return {"ok": False, "error": str(message)}

    def _dispatch(self, cmd: str, payload: dict[str, Any]) -> dict[str, Any]:
        match cmd:
            case "addJob":
                job_id, result = self.submit(payload)
                if job_id is None:
                    return {
                        "ok": False,
                        "error": breach_message(result.breach_level),
                        "rate_limit": result.to_dict(),
                    }
                return {"ok": True, "id": job_id, "rate_limit": result.to_dict()}
            case "queueStats":
                return {"ok": True, **self.queue.get_queue_stats().to_dict()}
            case "getJob":
                job = self.queue.get_job(payload.get("id", ""))
                if job is None:
                    return {"ok": False, "error": "job not found"}
                data: dict[str, Any] = {"ok": True, "job": job.to_dict()}
                if job.error_history:
                    data["message"] = self.translator.user_message(job.error_history[-1].category)
                return data
            case "listDeadLetter":
                return {"ok": True, "jobs": [job.to_dict() for job in self.queue.get_dead_letter_jobs()]}
            case "retryJob":
                job_id = payload.get("id", "")
                if self.queue.retry_job(job_id):
                    self.worker.wake()
                    return {"ok": True, "id": job_id}
                return {"ok": False, "error": "job not found in dead-letter"}
            case "clearDeadLetter":
                return {"ok": True, "removed": self.queue.clear_dead_letter_queue()}
            case "breaches":
                limiter = self._require_limiter(payload)
                notifications = limiter.get_breach_notifications(payload.get("since"))
                return {"ok": True, "breaches": [n.to_dict() for n in notifications]}
            case "limiterStats":
                limiter = self._require_limiter(payload)
                return {"ok": True, **limiter.get_statistics()}
            case "addWhitelist":
                limiter = self._require_limiter(payload)
                identifier = payload.get("identifier")
                if not identifier:
                    return {"ok": False, "error": "identifier required"}
                entry = limiter.add_to_whitelist(
                    identifier,
                    RateLimitType(payload.get("type") or limiter.config.type),
                    payload.get("reason") or "",
                    payload.get("expiry"),
                )
                return {"ok": True, "entry": entry.to_dict()}
            case "removeWhitelist":
                limiter = self._require_limiter(payload)
                removed = limiter.remove_from_whitelist(
                    payload.get("identifier", ""),
                    RateLimitType(payload.get("type") or limiter.config.type),
                )
                if removed:
                    return {"ok": True}
                return {"ok": False, "error": "identifier not whitelisted"}
            case _:
                return {"ok": False, "error": "unknown command"}

    # ---------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the queue workers and the periodic limiter sweeps."""
        self.logger.debug("Starting MailGuard...")
        for limiter in self.factory.limiters():
            limiter.start_cleanup()
        await self.worker.start()
        self.logger.debug("MailGuard started with %d limiter(s)", len(self.factory.names()))

    async def stop(self) -> None:
        """Stop the workers, waiting for in-flight attempts, then the sweeps."""
        await self.worker.stop()
        for limiter in self.factory.limiters():
            limiter.stop_cleanup()
        self.logger.debug("MailGuard stopped")
