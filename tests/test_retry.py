# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for RetryPolicy."""

import random

import pytest

from async_mail_guard.errors import ErrorCategory
from async_mail_guard.retry import (
    DEFAULT_MAX_ATTEMPTS,
    MIN_DELAY_MS,
    RATE_LIMIT_FLOOR_MS,
    RetryConfig,
    RetryPolicy,
)


class TestRetryConfig:
    """Tests for configuration defaults and validation."""

    def test_defaults(self):
        config = RetryConfig()
        assert config.max_attempts == DEFAULT_MAX_ATTEMPTS == 3
        assert config.base_delay_ms == 1000
        assert config.max_delay_ms == 30000
        assert config.backoff_multiplier == 2
        assert config.jitter is True

    def test_phrase_lists_become_tuples(self):
        config = RetryConfig(rate_limit_errors=["slow down"])
        assert config.rate_limit_errors == ("slow down",)

    def test_rejects_negative_values(self):
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=-1)
        with pytest.raises(ValueError):
            RetryConfig(base_delay_ms=-5)
        with pytest.raises(ValueError):
            RetryConfig(backoff_multiplier=0)


class TestShouldRetry:
    """Tests for should_retry."""

    @pytest.mark.parametrize(
        "category",
        [ErrorCategory.TRANSIENT, ErrorCategory.NETWORK, ErrorCategory.TIMEOUT, ErrorCategory.RATE_LIMIT],
    )
    def test_retryable_categories(self, category):
        policy = RetryPolicy()
        assert policy.should_retry(1, category) is True
        assert policy.should_retry(2, category) is True
        assert policy.should_retry(3, category) is False

    @pytest.mark.parametrize(
        "category",
        [ErrorCategory.AUTHENTICATION, ErrorCategory.CONFIGURATION, ErrorCategory.PERMANENT],
    )
    def test_non_retryable_categories(self, category):
        assert RetryPolicy().should_retry(1, category) is False

    def test_zero_attempts_never_retries(self):
        policy = RetryPolicy(RetryConfig(max_attempts=0))
        assert policy.should_retry(0, ErrorCategory.NETWORK) is False


class TestCalculateRetryDelay:
    """Tests for the backoff computation."""

    def test_exponential_growth_without_jitter(self):
        policy = RetryPolicy(RetryConfig(jitter=False))
        assert policy.calculate_retry_delay(1, ErrorCategory.NETWORK) == 1000
        assert policy.calculate_retry_delay(2, ErrorCategory.NETWORK) == 2000
        assert policy.calculate_retry_delay(3, ErrorCategory.NETWORK) == 4000

    def test_capped_at_max_delay(self):
        policy = RetryPolicy(RetryConfig(jitter=False))
        assert policy.calculate_retry_delay(10, ErrorCategory.TRANSIENT) == 30000

    def test_rate_limit_floor_and_no_cap(self):
        policy = RetryPolicy(RetryConfig(jitter=False, base_delay_ms=1000))
        assert policy.calculate_retry_delay(1, ErrorCategory.RATE_LIMIT) == RATE_LIMIT_FLOOR_MS
        assert policy.calculate_retry_delay(8, ErrorCategory.RATE_LIMIT) == 128000

    def test_rate_limit_floor_survives_jitter(self):
        policy = RetryPolicy(rng=random.Random(7))
        for attempt in (1, 2, 3):
            for _ in range(50):
                assert policy.calculate_retry_delay(attempt, ErrorCategory.RATE_LIMIT) >= RATE_LIMIT_FLOOR_MS

    def test_jitter_stays_within_ten_percent(self):
        policy = RetryPolicy(rng=random.Random(42))
        for _ in range(200):
            delay = policy.calculate_retry_delay(2, ErrorCategory.TIMEOUT)
            assert 1800 <= delay <= 2200

    def test_minimum_delay(self):
        policy = RetryPolicy(RetryConfig(base_delay_ms=1, jitter=False))
        assert policy.calculate_retry_delay(1, ErrorCategory.NETWORK) == MIN_DELAY_MS

    @pytest.mark.parametrize(
        "category",
        [ErrorCategory.AUTHENTICATION, ErrorCategory.CONFIGURATION, ErrorCategory.PERMANENT],
    )
    def test_non_retryable_delay_is_zero(self, category):
        assert RetryPolicy().calculate_retry_delay(1, category) == 0


def test_policy_categorize_uses_configured_phrases():
    policy = RetryPolicy(RetryConfig(rate_limit_errors=("quota exceeded",)))
    assert policy.categorize("Daily quota exceeded") is ErrorCategory.RATE_LIMIT
    assert policy.classifier.rate_limit_errors == ("quota exceeded",)
