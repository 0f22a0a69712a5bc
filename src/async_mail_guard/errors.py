# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Classification of delivery failures into retry categories.

Every failure raised by a ``send`` collaborator is normalised into an
:class:`ErrorRecord` (lower-cased code and message) and matched against a
priority-ordered list of predicates. The first predicate that matches decides
the :class:`ErrorCategory`; later rules are narrower fallbacks for the earlier
ones, so the order of :meth:`ErrorClassifier._build_rules` must not change.

Example:
    Categorising an SMTP failure::

        classifier = ErrorClassifier()
        classifier.categorize(Exception("550 Mailbox unavailable"))
        # ErrorCategory.PERMANENT
"""

from __future__ import annotations

import errno
import socket
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import aiosmtplib

DEFAULT_RETRYABLE_ERRORS = (
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "ECONNREFUSED",
    "timeout",
    "connection",
    "network",
    "temporary",
)
DEFAULT_NON_RETRYABLE_ERRORS = (
    "authentication failed",
    "invalid credentials",
    "authentication credentials invalid",
    "535",
    "530",
)
DEFAULT_RATE_LIMIT_ERRORS = (
    "rate limit",
    "too many messages",
    "429",
    "451",
    "452",
    "454",
)


class ErrorCategory(str, Enum):
    """Failure categories driving the retry policy.

    Attributes:
        TRANSIENT: Unknown or temporary failure, retried.
        NETWORK: Connection refused/reset, DNS failure, unreachable network.
        TIMEOUT: The remote side did not answer in time.
        RATE_LIMIT: The provider throttled us; retried with a long floor.
        AUTHENTICATION: Credentials rejected; never retried.
        CONFIGURATION: Broken setup; never retried.
        PERMANENT: The message was rejected for good; never retried.
    """

    TRANSIENT = "transient"
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"
    PERMANENT = "permanent"


def coerce_error(value: Any) -> BaseException:
    """Return ``value`` as an exception instance, wrapping non-exceptions."""
    if isinstance(value, BaseException):
        return value
    return Exception(str(value))


def _extract_code(exc: BaseException) -> str | None:
    """Best-effort extraction of a symbolic or SMTP code from an exception."""
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        return str(exc.code)
    code = getattr(exc, "code", None) or getattr(exc, "smtp_code", None)
    if code is not None:
        return str(code)
    # gaierror carries EAI_* numbers, not errno values
    if isinstance(exc, socket.gaierror):
        return "ENOTFOUND"
    if isinstance(exc, TimeoutError):
        return "ETIMEDOUT"
    errno_value = getattr(exc, "errno", None)
    if isinstance(errno_value, int) and errno_value in errno.errorcode:
        return errno.errorcode[errno_value]
    return None


def _extract_message(exc: BaseException) -> str:
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        return exc.message
    return str(exc)


@dataclass(frozen=True)
class ErrorRecord:
    """Normalised view of a failure.

    Attributes:
        message: The original error message.
        code: The SMTP code or errno symbol, if any.
        text: Lower-cased ``code`` and ``message`` joined, used for matching.
    """

    message: str
    code: str | None
    text: str

    @classmethod
    def from_error(cls, error: Any) -> ErrorRecord:
        exc = coerce_error(error)
        code = _extract_code(exc)
        message = _extract_message(exc)
        text = " ".join(part for part in (code, message) if part).lower()
        return cls(message=message, code=code, text=text)

    def contains(self, *needles: str) -> bool:
        return any(needle.lower() in self.text for needle in needles)


Rule = tuple[Callable[[ErrorRecord], bool], Callable[[ErrorRecord], ErrorCategory]]


class ErrorClassifier:
    """Map raw failures onto an :class:`ErrorCategory`.

    The three phrase lists are configurable (see
    :class:`async_mail_guard.retry.RetryConfig`); the built-in signals
    (429, 55x, ETIMEDOUT, ECONN*) are fixed.
    """

    def __init__(
        self,
        *,
        retryable_errors: Iterable[str] = DEFAULT_RETRYABLE_ERRORS,
        non_retryable_errors: Iterable[str] = DEFAULT_NON_RETRYABLE_ERRORS,
        rate_limit_errors: Iterable[str] = DEFAULT_RATE_LIMIT_ERRORS,
    ):
        self.retryable_errors = tuple(retryable_errors)
        self.non_retryable_errors = tuple(non_retryable_errors)
        self.rate_limit_errors = tuple(rate_limit_errors)
        self._rules = self._build_rules()

    def _build_rules(self) -> list[Rule]:
        def fixed(category: ErrorCategory) -> Callable[[ErrorRecord], ErrorCategory]:
            return lambda record: category

        return [
            (lambda r: r.contains("429", "connection limit", "too many connections"),
             fixed(ErrorCategory.RATE_LIMIT)),
            (lambda r: r.contains(
                "550", "551", "552", "permanent failure", "mailbox unavailable",
                "message size exceeds", "size limit"),
             fixed(ErrorCategory.PERMANENT)),
            (lambda r: r.contains("etimedout", "timeout", "timed out"),
             fixed(ErrorCategory.TIMEOUT)),
            (lambda r: r.contains(
                "econnrefused", "econnreset", "enotfound", "enetunreach", "network unreachable"),
             fixed(ErrorCategory.NETWORK)),
            (lambda r: r.contains(*self.non_retryable_errors),
             fixed(ErrorCategory.AUTHENTICATION)),
            (lambda r: r.contains(*self.rate_limit_errors),
             fixed(ErrorCategory.RATE_LIMIT)),
            (lambda r: r.contains(*self.retryable_errors),
             self._retryable_subcategory),
            (lambda r: r.contains("permanent", "550", "551"),
             fixed(ErrorCategory.PERMANENT)),
            (lambda r: r.contains("config", "setup", "invalid"),
             fixed(ErrorCategory.CONFIGURATION)),
        ]

    @staticmethod
    def _retryable_subcategory(record: ErrorRecord) -> ErrorCategory:
        if record.contains("timeout", "etimedout"):
            return ErrorCategory.TIMEOUT
        if record.contains("network", "connection"):
            return ErrorCategory.NETWORK
        return ErrorCategory.TRANSIENT

    def categorize(self, error: Any) -> ErrorCategory:
        """Return the category of ``error`` (exception, string or any value)."""
        record = error if isinstance(error, ErrorRecord) else ErrorRecord.from_error(error)
        for matches, category in self._rules:
            if matches(record):
                return category(record)
        return ErrorCategory.TRANSIENT
