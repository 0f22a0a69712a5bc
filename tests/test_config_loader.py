# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for configuration loading."""

import pytest

from async_mail_guard.config_loader import load_settings
from async_mail_guard.errors import DEFAULT_RATE_LIMIT_ERRORS
from async_mail_guard.rate_limit import InvalidStrategyError, RateLimitStrategy, RateLimitType

ENV_VARS = (
    "AMG_CONFIG", "AMG_LOG_LEVEL", "AMG_HOST", "AMG_PORT", "AMG_API_TOKEN",
    "AMG_ENVIRONMENT", "AMG_LOCALE", "AMG_WORKER_CONCURRENCY", "AMG_MAX_ATTEMPTS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def write_config(tmp_path, text):
    path = tmp_path / "config.ini"
    path.write_text(text)
    return path


def test_defaults_without_file(tmp_path):
    settings = load_settings(tmp_path / "missing.ini")
    assert settings.host == "0.0.0.0"
    assert settings.port == 8000
    assert settings.api_token is None
    assert settings.environment == "production"
    assert settings.locale == "pt"
    assert settings.retry.max_attempts == 3
    assert settings.limiters == {}


def test_full_file(tmp_path):
    path = write_config(tmp_path, """
[server]
host = 127.0.0.1
port = 9000
api_token = secret

[logging]
level = debug

[guard]
environment = test
locale = en
worker_concurrency = 4
poll_interval_seconds = 0.2
cleanup_interval_seconds = 60

[retry]
max_attempts = 5
base_delay_ms = 500
max_delay_ms = 10000
backoff_multiplier = 3
jitter = false
rate_limit_errors = slow down, 421
""")
    settings = load_settings(path)
    assert (settings.host, settings.port, settings.api_token) == ("127.0.0.1", 9000, "secret")
    assert settings.log_level == "DEBUG"
    assert settings.environment == "test"
    assert settings.locale == "en"
    assert settings.worker_concurrency == 4
    assert settings.poll_interval == 0.2
    assert settings.cleanup_interval == 60.0
    retry = settings.retry
    assert retry.max_attempts == 5
    assert retry.base_delay_ms == 500
    assert retry.max_delay_ms == 10000
    assert retry.backoff_multiplier == 3
    assert retry.jitter is False
    assert retry.rate_limit_errors == ("slow down", "421")


def test_environment_fallbacks(tmp_path, monkeypatch):
    monkeypatch.setenv("AMG_PORT", "7000")
    monkeypatch.setenv("AMG_API_TOKEN", "from-env")
    monkeypatch.setenv("AMG_ENVIRONMENT", "development")
    monkeypatch.setenv("AMG_MAX_ATTEMPTS", "7")
    monkeypatch.setenv("AMG_LOG_LEVEL", "warning")
    settings = load_settings(tmp_path / "missing.ini")
    assert settings.port == 7000
    assert settings.api_token == "from-env"
    assert settings.environment == "development"
    assert settings.retry.max_attempts == 7
    assert settings.log_level == "WARNING"
    assert settings.retry.rate_limit_errors == DEFAULT_RATE_LIMIT_ERRORS


def test_file_wins_over_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("AMG_PORT", "7000")
    path = write_config(tmp_path, "[server]\nport = 9000\n")
    assert load_settings(path).port == 9000


def test_config_path_from_environment(tmp_path, monkeypatch):
    path = write_config(tmp_path, "[guard]\nlocale = en\n")
    monkeypatch.setenv("AMG_CONFIG", str(path))
    assert load_settings().locale == "en"


def test_limiter_sections(tmp_path):
    path = write_config(tmp_path, """
[limiter.ip]
max_requests = 20

[limiter.contact]
window_ms = 3600000
max_requests = 5
strategy = token_bucket
type = email
""")
    limiters = load_settings(path).limiters
    # preset keys not given in the section are inherited
    assert limiters["ip"].max_requests == 20
    assert limiters["ip"].window_ms == 60_000
    assert limiters["ip"].type is RateLimitType.IP
    contact = limiters["contact"]
    assert contact.strategy is RateLimitStrategy.TOKEN_BUCKET
    assert contact.type is RateLimitType.EMAIL
    assert contact.window_ms == 3_600_000


def test_custom_limiter_requires_window(tmp_path):
    path = write_config(tmp_path, "[limiter.contact]\nmax_requests = 5\n")
    with pytest.raises(ValueError, match="window_ms"):
        load_settings(path)


def test_invalid_strategy(tmp_path):
    path = write_config(tmp_path, "[limiter.ip]\nstrategy = leaky_bucket\n")
    with pytest.raises(InvalidStrategyError):
        load_settings(path)


def test_unknown_environment(tmp_path):
    path = write_config(tmp_path, "[guard]\nenvironment = staging\n")
    with pytest.raises(ValueError, match="Unknown environment"):
        load_settings(path)
