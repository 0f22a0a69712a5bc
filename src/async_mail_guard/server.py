# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module builds a :class:`~async_mail_guard.core.MailGuard` from
``config.ini`` and ``AMG_*`` environment variables and exposes it as a
FastAPI application.

Usage:
    uvicorn async_mail_guard.server:app --host 0.0.0.0 --port 8000

No transport is wired here: jobs accepted by this app are dead-lettered with a
configuration error until the guard is embedded with a real ``send`` (see
:func:`async_mail_guard.api.build_app`).

Environment variables:
    AMG_CONFIG: Path to the INI configuration (default: config.ini)
"""

from __future__ import annotations

from .api import build_app
from .config_loader import load_settings
from .logger import configure_logging

_settings = load_settings()
configure_logging(_settings.log_level)

# Create the configured application
app = build_app(_settings)
