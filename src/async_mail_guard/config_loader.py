# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loading from an INI file with environment fallbacks.

Example:
    Configuration file format (config.ini)::

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = secret

        [logging]
        level = INFO

        [guard]
        environment = production
        locale = pt
        worker_concurrency = 2
        poll_interval_seconds = 0.5
        cleanup_interval_seconds = 300

        [retry]
        max_attempts = 3
        base_delay_ms = 1000
        max_delay_ms = 30000
        backoff_multiplier = 2
        jitter = true
        rate_limit_errors = rate limit, too many messages, 429

        # Overrides a preset (ip, email, global) or declares a new limiter
        [limiter.contact]
        window_ms = 3600000
        max_requests = 5
        strategy = sliding_window
        type = ip

Environment variables (all prefixed with AMG_):
    AMG_CONFIG - Path to config.ini file (default: config.ini)
    AMG_LOG_LEVEL - Logging level (default: INFO)
    AMG_HOST - Server host (default: 0.0.0.0)
    AMG_PORT - Server port (default: 8000)
    AMG_API_TOKEN - API authentication token
    AMG_ENVIRONMENT - production, development or test (default: production)
    AMG_LOCALE - Locale of end-user messages (default: pt)
    AMG_WORKER_CONCURRENCY - Number of queue workers (default: 1)
    AMG_MAX_ATTEMPTS - Attempts per job (default: 3)
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path

from .errors import DEFAULT_NON_RETRYABLE_ERRORS, DEFAULT_RATE_LIMIT_ERRORS, DEFAULT_RETRYABLE_ERRORS
from .factory import ENVIRONMENTS, PRESETS
from .logger import get_logger
from .rate_limit import RateLimitConfig, RateLimitStrategy, RateLimitType, parse_strategy
from .retry import RetryConfig

LIMITER_SECTION_PREFIX = "limiter."

logger = get_logger("ConfigLoader")


@dataclass
class GuardSettings:
    """Resolved settings for a mail guard instance.

    Attributes:
        host: HTTP bind address.
        port: HTTP port.
        api_token: Token required in ``X-API-Token``; ``None`` disables auth.
        log_level: Root logging level.
        environment: Preset adjustment (production, development, test).
        locale: Locale of end-user error messages.
        worker_concurrency: Number of queue worker tasks.
        poll_interval: Idle wait upper bound for workers, in seconds.
        cleanup_interval: Limiter sweep period, in seconds.
        retry: Retry policy settings.
        limiters: Limiter configurations keyed by name (preset overrides
            and custom limiters).
    """

    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str | None = None
    log_level: str = "INFO"
    environment: str = "production"
    locale: str = "pt"
    worker_concurrency: int = 1
    poll_interval: float = 0.5
    cleanup_interval: float = 300.0
    retry: RetryConfig = field(default_factory=RetryConfig)
    limiters: dict[str, RateLimitConfig] = field(default_factory=dict)


def _split_list(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def parse_limiter_section(parser: configparser.ConfigParser, section: str) -> RateLimitConfig:
    """Build a :class:`RateLimitConfig` from one ``[limiter.<name>]`` section.

    Missing keys fall back to the preset of the same name, if any.

    Raises:
        InvalidStrategyError: The section names an unknown strategy.
        ValueError: A required key is missing for a non-preset limiter.
    """
    name = section[len(LIMITER_SECTION_PREFIX):]
    base = PRESETS.get(name)
    values = parser[section]

    def pick(key: str, current):
        if key in values:
            return values[key].strip()
        if current is None:
            raise ValueError(f"Limiter '{name}' missing required field '{key}'")
        return current

    window_ms = int(pick("window_ms", base.window_ms if base else None))
    max_requests = int(pick("max_requests", base.max_requests if base else None))
    strategy = parse_strategy(pick("strategy", base.strategy.value if base else RateLimitStrategy.SLIDING_WINDOW.value))
    limit_type = RateLimitType(pick("type", base.type.value if base else RateLimitType.GLOBAL.value))

    return RateLimitConfig(window_ms=window_ms, max_requests=max_requests, strategy=strategy, type=limit_type)


def parse_retry_section(parser: configparser.ConfigParser, max_attempts: str | None = None) -> RetryConfig:
    """Build a :class:`RetryConfig` from the ``[retry]`` section."""
    section = parser["retry"] if parser.has_section("retry") else {}

    def get(key: str, default):
        return section.get(key, default)

    attempts = max_attempts if max_attempts is not None else get("max_attempts", None)
    return RetryConfig(
        max_attempts=int(attempts) if attempts is not None else RetryConfig.max_attempts,
        base_delay_ms=float(get("base_delay_ms", RetryConfig.base_delay_ms)),
        max_delay_ms=float(get("max_delay_ms", RetryConfig.max_delay_ms)),
        backoff_multiplier=float(get("backoff_multiplier", RetryConfig.backoff_multiplier)),
        jitter=_parse_bool(get("jitter", None), True),
        retryable_errors=_split_list(get("retryable_errors", ",".join(DEFAULT_RETRYABLE_ERRORS))),
        non_retryable_errors=_split_list(get("non_retryable_errors", ",".join(DEFAULT_NON_RETRYABLE_ERRORS))),
        rate_limit_errors=_split_list(get("rate_limit_errors", ",".join(DEFAULT_RATE_LIMIT_ERRORS))),
    )


def load_settings(config_path: str | os.PathLike | None = None) -> GuardSettings:
    """Load settings from ``config_path`` (or ``AMG_CONFIG``) and ``AMG_*`` variables.

    Values from the INI file win; environment variables are fallbacks, and
    built-in defaults apply when neither is present. A missing file is not
    an error.

    Raises:
        InvalidStrategyError: A ``[limiter.*]`` section names an unknown strategy.
        ValueError: A value cannot be parsed.
    """
    path = Path(config_path or os.getenv("AMG_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    if path.exists():
        parser.read(path)
        logger.info("Loaded configuration from %s", path)
    else:
        logger.debug("No configuration file at %s, using defaults", path)

    def get(section: str, option: str, env: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        if env:
            return os.getenv(env)
        return None

    defaults = GuardSettings()
    environment = get("guard", "environment", "AMG_ENVIRONMENT") or defaults.environment
    if environment not in ENVIRONMENTS:
        raise ValueError(f"Unknown environment: {environment}")

    limiters = {
        section[len(LIMITER_SECTION_PREFIX):]: parse_limiter_section(parser, section)
        for section in parser.sections()
        if section.startswith(LIMITER_SECTION_PREFIX)
    }
    if limiters:
        logger.info("Parsed %d limiter section(s) from config", len(limiters))

    port = get("server", "port", "AMG_PORT")
    concurrency = get("guard", "worker_concurrency", "AMG_WORKER_CONCURRENCY")
    poll = get("guard", "poll_interval_seconds")
    cleanup = get("guard", "cleanup_interval_seconds")
    return GuardSettings(
        host=get("server", "host", "AMG_HOST") or defaults.host,
        port=int(port) if port else defaults.port,
        api_token=get("server", "api_token", "AMG_API_TOKEN") or None,
        log_level=(get("logging", "level", "AMG_LOG_LEVEL") or defaults.log_level).upper(),
        environment=environment,
        locale=get("guard", "locale", "AMG_LOCALE") or defaults.locale,
        worker_concurrency=int(concurrency) if concurrency else defaults.worker_concurrency,
        poll_interval=float(poll) if poll else defaults.poll_interval,
        cleanup_interval=float(cleanup) if cleanup else defaults.cleanup_interval,
        retry=parse_retry_section(parser, get("retry", "max_attempts", "AMG_MAX_ATTEMPTS")),
        limiters=limiters,
    )
