# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""User-facing and operator-facing messages for delivery failures.

:class:`DeliveryErrorTranslator` turns an error category into a localised
message for the person who submitted the email and a detailed message for
operators. ``authentication`` and ``configuration`` failures point at a
deployment or credentials problem and are flagged ``needs_attention`` so the
caller can alert out of band.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .errors import ErrorCategory, ErrorRecord
from .logger import get_logger
from .retry import RetryPolicy

ATTENTION_CATEGORIES = frozenset({ErrorCategory.AUTHENTICATION, ErrorCategory.CONFIGURATION})

USER_MESSAGES: dict[str, dict[ErrorCategory | None, str]] = {
    "pt": {
        ErrorCategory.RATE_LIMIT: (
            "O sistema está a processar muitas solicitações. "
            "Por favor, tente novamente dentro de alguns minutos."
        ),
        ErrorCategory.TIMEOUT: (
            "A ligação ao servidor de email demorou demasiado tempo. Por favor, tente novamente."
        ),
        ErrorCategory.NETWORK: (
            "Problema de conectividade com o servidor de email. "
            "Por favor, verifique a sua ligação e tente novamente."
        ),
        ErrorCategory.AUTHENTICATION: (
            "Ocorreu um erro de configuração no serviço de email. A nossa equipa foi notificada."
        ),
        ErrorCategory.CONFIGURATION: (
            "Serviço de email temporariamente indisponível. Por favor, tente novamente mais tarde."
        ),
        ErrorCategory.PERMANENT: (
            "Não foi possível entregar o email para o endereço fornecido. "
            "Por favor, verifique o endereço e tente novamente."
        ),
        None: "Ocorreu um erro ao enviar o email. Por favor, tente novamente mais tarde.",
    },
    "en": {
        ErrorCategory.RATE_LIMIT: (
            "The system is handling too many requests. Please try again in a few minutes."
        ),
        ErrorCategory.TIMEOUT: "The connection to the mail server took too long. Please try again.",
        ErrorCategory.NETWORK: (
            "We could not reach the mail server. Please check your connection and try again."
        ),
        ErrorCategory.AUTHENTICATION: (
            "The email service is misconfigured. Our team has been notified."
        ),
        ErrorCategory.CONFIGURATION: (
            "The email service is temporarily unavailable. Please try again later."
        ),
        ErrorCategory.PERMANENT: (
            "The email could not be delivered to the address provided. "
            "Please check the address and try again."
        ),
        None: "Something went wrong while sending the email. Please try again later.",
    },
}
SUPPORTED_LOCALES = tuple(USER_MESSAGES)

OPERATOR_DETAILS = {
    ErrorCategory.AUTHENTICATION: (
        "AUTHENTICATION ERROR: SMTP credentials are invalid or expired. Immediate attention required."
    ),
    ErrorCategory.CONFIGURATION: "CONFIGURATION ERROR: SMTP configuration is invalid.",
    ErrorCategory.RATE_LIMIT: (
        "RATE LIMIT: SMTP provider rate limit exceeded. Consider implementing throttling."
    ),
    ErrorCategory.PERMANENT: (
        "PERMANENT FAILURE: Email permanently rejected. Check recipient address and sender reputation."
    ),
}
TRANSIENT_DETAIL = "TRANSIENT ERROR: Temporary failure, retry recommended."


@dataclass(frozen=True)
class TranslatedError:
    user_message: str
    operator_message: str
    needs_attention: bool


@dataclass(frozen=True)
class DeliveryErrorReport:
    """Everything a caller needs to react to a single failed send.

    Attributes:
        category: Classified error category.
        should_retry: Whether a first failed attempt would be retried.
        retry_delay: Suggested delay in milliseconds when ``should_retry``.
        user_message: Localised text for the end user.
        operator_message: Detailed text for operators.
        needs_attention: ``True`` for authentication/configuration failures.
    """

    category: ErrorCategory
    should_retry: bool
    retry_delay: float | None
    user_message: str
    operator_message: str
    needs_attention: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "should_retry": self.should_retry,
            "retry_delay": self.retry_delay,
            "user_message": self.user_message,
            "operator_message": self.operator_message,
            "needs_attention": self.needs_attention,
        }


class DeliveryErrorTranslator:
    """Stateless mapping from error categories to message pairs."""

    def __init__(self, policy: RetryPolicy | None = None, *, locale: str = "pt"):
        if locale not in USER_MESSAGES:
            raise ValueError(f"Unsupported locale: {locale}")
        self.policy = policy or RetryPolicy()
        self.locale = locale
        self.logger = get_logger("DeliveryErrorTranslator")

    @staticmethod
    def needs_attention(category: ErrorCategory) -> bool:
        return category in ATTENTION_CATEGORIES

    def user_message(self, category: ErrorCategory, locale: str | None = None) -> str:
        messages = USER_MESSAGES[locale or self.locale]
        return messages.get(category, messages[None])

    @staticmethod
    def operator_message(category: ErrorCategory, error: Any, original: Any = None) -> str:
        timestamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        message = ErrorRecord.from_error(error).message
        detail = OPERATOR_DETAILS.get(category)
        text = f"[{timestamp}] Email sending failed - {detail or TRANSIENT_DETAIL} Error: {message}"
        if detail is None and original is not None:
            text += f" | Original: {ErrorRecord.from_error(original).message}"
        return text

    def translate(self, category: ErrorCategory, error: Any, original: Any = None) -> TranslatedError:
        """Return the user/operator message pair for an already classified failure."""
        category = ErrorCategory(category)
        return TranslatedError(
            user_message=self.user_message(category),
            operator_message=self.operator_message(category, error, original),
            needs_attention=self.needs_attention(category),
        )

    def handle_error(self, error: Any, original: Any = None) -> DeliveryErrorReport:
        """Classify ``error`` and build a full report, treating it as a first attempt."""
        category = self.policy.categorize(error)
        translated = self.translate(category, error, original)
        should_retry = self.policy.should_retry(1, category)
        if translated.needs_attention:
            self.logger.error(translated.operator_message)
        return DeliveryErrorReport(
            category=category,
            should_retry=should_retry,
            retry_delay=self.policy.calculate_retry_delay(1, category) if should_retry else None,
            user_message=translated.user_message,
            operator_message=translated.operator_message,
            needs_attention=translated.needs_attention,
        )
