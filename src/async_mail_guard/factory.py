# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Preset limiters and a name-to-instance registry.

The three presets are used across the service:

=========  ==============  =========  =============
Preset     Strategy        Requests   Window
=========  ==============  =========  =============
ip         sliding_window  5          60 s
email      fixed_window    50         24 h
global     sliding_window  100        60 s
=========  ==============  =========  =============

A :class:`RateLimiterFactory` instance is owned by the application (there is
no module-level singleton); asking it twice for the same name returns the same
limiter, so every caller observes the same accumulated counters.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any

from .logger import get_logger
from .prometheus import GuardMetrics
from .rate_limit import RateLimitConfig, RateLimiter, RateLimitStrategy, RateLimitType

IP_PRESET = RateLimitConfig(
    window_ms=60 * 1000,
    max_requests=5,
    strategy=RateLimitStrategy.SLIDING_WINDOW,
    type=RateLimitType.IP,
)
EMAIL_PRESET = RateLimitConfig(
    window_ms=24 * 60 * 60 * 1000,
    max_requests=50,
    strategy=RateLimitStrategy.FIXED_WINDOW,
    type=RateLimitType.EMAIL,
)
GLOBAL_PRESET = RateLimitConfig(
    window_ms=60 * 1000,
    max_requests=100,
    strategy=RateLimitStrategy.SLIDING_WINDOW,
    type=RateLimitType.GLOBAL,
)
PRESETS = {
    "ip": IP_PRESET,
    "email": EMAIL_PRESET,
    "global": GLOBAL_PRESET,
}
ENVIRONMENTS = ("production", "development", "test")


def adjust_for_environment(config: RateLimitConfig, environment: str) -> RateLimitConfig:
    """Relax ``config`` outside production.

    ``test`` uses a one-minute window and ten times the requests,
    ``development`` doubles the requests, ``production`` keeps ``config``.
    """
    if environment == "test":
        return replace(config, window_ms=60 * 1000, max_requests=config.max_requests * 10)
    if environment == "development":
        return replace(config, max_requests=config.max_requests * 2)
    if environment != "production":
        raise ValueError(f"Unknown environment: {environment}")
    return config


class RateLimiterFactory:
    """Build preset limiters and keep them in a registry keyed by name.

    Attributes:
        environment: One of ``production``, ``development``, ``test``.
        metrics: Optional metrics collector handed to every limiter.
    """

    def __init__(self, *, environment: str = "production", metrics: GuardMetrics | None = None):
        if environment not in ENVIRONMENTS:
            raise ValueError(f"Unknown environment: {environment}")
        self.environment = environment
        self.metrics = metrics
        self.logger = get_logger("RateLimiterFactory")
        self._limiters: dict[str, RateLimiter] = {}

    def _build(self, name: str, config: RateLimitConfig) -> RateLimiter:
        return RateLimiter(config, name=name, metrics=self.metrics)

    def _preset(self, preset: str, overrides: dict[str, Any]) -> RateLimiter:
        config = adjust_for_environment(PRESETS[preset], self.environment)
        if overrides:
            config = replace(config, **overrides)
        return self._build(preset, config)

    def create_ip_limiter(self, **overrides: Any) -> RateLimiter:
        """Return a new per-IP limiter (5 requests per minute, sliding)."""
        return self._preset("ip", overrides)

    def create_email_limiter(self, **overrides: Any) -> RateLimiter:
        """Return a new per-address limiter (50 per day, fixed window)."""
        return self._preset("email", overrides)

    def create_global_limiter(self, **overrides: Any) -> RateLimiter:
        """Return a new global limiter (100 per minute, sliding)."""
        return self._preset("global", overrides)

    def get_limiter(self, name: str, config: RateLimitConfig | None = None) -> RateLimiter:
        """Return the limiter registered as ``name``, creating it on first use.

        When ``config`` is omitted and ``name`` is a preset, the preset is
        used. ``config`` is ignored once the limiter exists.

        Raises:
            KeyError: ``name`` is unknown and no ``config`` was given.
        """
        limiter = self._limiters.get(name)
        if limiter is not None:
            return limiter
        if config is None:
            if name not in PRESETS:
                raise KeyError(f"No limiter registered as {name!r}")
            limiter = self._preset(name, {})
        else:
            limiter = self._build(name, config)
        self._limiters[name] = limiter
        self.logger.debug("Registered limiter %s (%s)", name, limiter.config.strategy.value)
        return limiter

    def get(self, name: str) -> RateLimiter | None:
        return self._limiters.get(name)

    def names(self) -> list[str]:
        return list(self._limiters)

    def limiters(self) -> list[RateLimiter]:
        return list(self._limiters.values())

    def destroy_all(self) -> None:
        for limiter in self._limiters.values():
            limiter.destroy()
        self._limiters.clear()
