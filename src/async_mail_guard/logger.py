# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the mail guard.

Handlers, format and level are configured once by the entry point
(``async-mail-guard serve`` or :mod:`async_mail_guard.server`) through
``logging.basicConfig()``; library modules only ask for a named logger.

Example:
    Typical usage in a module::

        from async_mail_guard.logger import get_logger

        logger = get_logger("RateLimiter")
        logger.warning("Rate limit breach detected")
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "AsyncMailGuard") -> logging.Logger:
    """Return the logger registered under ``name``.

    Args:
        name: The logger name. Defaults to "AsyncMailGuard".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger for an application entry point."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        force=True,
    )
