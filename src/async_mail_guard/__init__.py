"""Rate limiting, retries and error reporting for outbound email.

This package guards an email-sending service with features including:

- In-memory rate limiting (fixed window, sliding window, token bucket)
  with whitelisting and breach notifications
- Preset limiters per IP, per recipient address and global
- A priority job queue with exponential backoff and a dead-letter store
- Classification of delivery failures and user/operator messages
- Prometheus metrics for monitoring
- FastAPI REST API for job submission and inspection

Example:
    Basic usage with the FastAPI application::

        from async_mail_guard.core import MailGuard
        from async_mail_guard.api import create_app

        guard = MailGuard(send=smtp_send)
        app = create_app(guard, api_token="secret")

Authors:
    Softwell S.r.l.
    Giovanni Porcari
"""
