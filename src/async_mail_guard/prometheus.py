# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for admission control and the retry queue.

Exposes counters for rate-limit decisions and breaches, job attempts and
outcomes, and a gauge for the size of each job store. All metrics live in a
dedicated :class:`CollectorRegistry` so several guards can coexist in one
process (and in tests).

Example:
    Exposing the metrics::

        metrics = GuardMetrics()
        limiter = RateLimiter(config, name="ip", metrics=metrics)
        ...
        payload = metrics.generate_latest()
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class GuardMetrics:
    """Wrapper around the Prometheus registry used by the guard.

    Attributes:
        registry: The collector registry holding every metric below.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.rate_limit_checks = Counter(
            "amg_rate_limit_checks_total",
            "Rate limit decisions",
            ["limiter", "outcome"],
            registry=self.registry,
        )
        self.breaches = Counter(
            "amg_rate_limit_breaches_total",
            "Rate limit breach notifications",
            ["limiter", "level"],
            registry=self.registry,
        )
        self.attempt_errors = Counter(
            "amg_job_attempts_total",
            "Failed delivery attempts by error category",
            ["category"],
            registry=self.registry,
        )
        self.finished = Counter(
            "amg_jobs_finished_total",
            "Jobs that reached a terminal state",
            ["outcome"],
            registry=self.registry,
        )
        self.queue_jobs = Gauge(
            "amg_queue_jobs",
            "Jobs currently held in each store",
            ["store"],
            registry=self.registry,
        )

    def inc_rate_limit_check(self, limiter: str, allowed: bool) -> None:
        """Count one admission decision for ``limiter``."""
        outcome = "allowed" if allowed else "rejected"
        self.rate_limit_checks.labels(limiter=limiter or "default", outcome=outcome).inc()

    def inc_breach(self, limiter: str, level: str) -> None:
        self.breaches.labels(limiter=limiter or "default", level=level).inc()

    def inc_attempt_error(self, category: str) -> None:
        self.attempt_errors.labels(category=category).inc()

    def inc_finished(self, outcome: str) -> None:
        self.finished.labels(outcome=outcome).inc()

    def set_queue_sizes(self, pending: int, processing: int, dead_letter: int) -> None:
        """Update the gauges tracking the three job stores."""
        self.queue_jobs.labels(store="pending").set(pending)
        self.queue_jobs.labels(store="processing").set(processing)
        self.queue_jobs.labels(store="dead_letter").set(dead_letter)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
