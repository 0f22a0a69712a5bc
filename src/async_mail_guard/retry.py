# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Retry decisions and exponential backoff for failed deliveries.

The policy is pure: given an :class:`~async_mail_guard.errors.ErrorCategory`
and an attempt number it answers whether to retry and how long to wait.
Delays are expressed in milliseconds.

Backoff rules:
    - ``authentication``, ``permanent`` and ``configuration`` never retry
      and get a delay of 0.
    - Otherwise ``base_delay_ms * backoff_multiplier ** (attempt - 1)``.
    - ``rate_limit`` delays are floored at 60 seconds and are not capped by
      ``max_delay_ms``; every other category is capped.
    - A uniform +/-10% jitter is applied, the ``rate_limit`` floor is applied
      again afterwards, and the result is never below 100 ms.

Example:
    Deciding on a network failure::

        policy = RetryPolicy()
        if policy.should_retry(1, ErrorCategory.NETWORK):
            delay_ms = policy.calculate_retry_delay(1, ErrorCategory.NETWORK)
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from .errors import (
    DEFAULT_NON_RETRYABLE_ERRORS,
    DEFAULT_RATE_LIMIT_ERRORS,
    DEFAULT_RETRYABLE_ERRORS,
    ErrorCategory,
    ErrorClassifier,
)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 30000
DEFAULT_BACKOFF_MULTIPLIER = 2.0
RATE_LIMIT_FLOOR_MS = 60000
MIN_DELAY_MS = 100
JITTER_RATIO = 0.1

NON_RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.AUTHENTICATION,
    ErrorCategory.CONFIGURATION,
    ErrorCategory.PERMANENT,
})
RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.TRANSIENT,
    ErrorCategory.NETWORK,
    ErrorCategory.TIMEOUT,
})


@dataclass
class RetryConfig:
    """Retry settings.

    Attributes:
        max_attempts: Total attempts allowed per job, first one included.
        base_delay_ms: Delay before the first retry.
        max_delay_ms: Ceiling for every category except ``rate_limit``.
        backoff_multiplier: Growth factor between consecutive retries.
        jitter: Whether to apply the +/-10% jitter.
        retryable_errors: Phrases marking a failure as worth retrying.
        non_retryable_errors: Phrases marking an authentication failure.
        rate_limit_errors: Phrases marking provider throttling.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay_ms: float = DEFAULT_BASE_DELAY_MS
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    jitter: bool = True
    retryable_errors: tuple[str, ...] = field(default=DEFAULT_RETRYABLE_ERRORS)
    non_retryable_errors: tuple[str, ...] = field(default=DEFAULT_NON_RETRYABLE_ERRORS)
    rate_limit_errors: tuple[str, ...] = field(default=DEFAULT_RATE_LIMIT_ERRORS)

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("retry delays must be >= 0")
        if self.backoff_multiplier <= 0:
            raise ValueError("backoff_multiplier must be > 0")
        self.retryable_errors = tuple(self.retryable_errors)
        self.non_retryable_errors = tuple(self.non_retryable_errors)
        self.rate_limit_errors = tuple(self.rate_limit_errors)


class RetryPolicy:
    """Should-retry and delay calculation driven by error categories.

    Attributes:
        config: The :class:`RetryConfig` in use.
        classifier: An :class:`ErrorClassifier` built from the config phrase lists.
    """

    def __init__(self, config: RetryConfig | None = None, *, rng: random.Random | None = None):
        self.config = config or RetryConfig()
        self.classifier = ErrorClassifier(
            retryable_errors=self.config.retryable_errors,
            non_retryable_errors=self.config.non_retryable_errors,
            rate_limit_errors=self.config.rate_limit_errors,
        )
        self._rng = rng or random.Random()

    @property
    def max_attempts(self) -> int:
        return self.config.max_attempts

    def categorize(self, error) -> ErrorCategory:
        return self.classifier.categorize(error)

    def should_retry(self, attempts: int, category: ErrorCategory) -> bool:
        """Return ``True`` when another attempt is allowed after ``attempts`` tries."""
        if attempts >= self.config.max_attempts:
            return False
        return category in RETRYABLE_CATEGORIES

    def calculate_retry_delay(self, attempt: int, category: ErrorCategory) -> float:
        """Return the delay in milliseconds before retry number ``attempt``.

        Args:
            attempt: The attempt that just failed (1 for the first one).
            category: The category of that failure.

        Returns:
            Delay in milliseconds; 0 for categories that never retry.
        """
        if category in NON_RETRYABLE_CATEGORIES:
            return 0

        cfg = self.config
        delay = cfg.base_delay_ms * cfg.backoff_multiplier ** (max(attempt, 1) - 1)

        if category is ErrorCategory.RATE_LIMIT:
            delay = max(delay, RATE_LIMIT_FLOOR_MS)
        else:
            delay = min(delay, cfg.max_delay_ms)

        if cfg.jitter:
            spread = delay * JITTER_RATIO
            delay += self._rng.uniform(-spread, spread)

        # jitter must never push a throttled retry under the floor
        if category is ErrorCategory.RATE_LIMIT:
            delay = max(delay, RATE_LIMIT_FLOOR_MS)

        return max(delay, MIN_DELAY_MS)
