# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the mail guard.

This module exposes a :class:`~async_mail_guard.core.MailGuard` over HTTP:

- Pydantic models describing request/response payloads
- A factory function creating and configuring the FastAPI application
- Authentication via API token in the ``X-API-Token`` header
- A middleware gating job submission on the ``ip`` and ``global`` limiters

Rejected requests get a JSON error body and ``X-RateLimit-*`` headers. The
status is ``429`` except for rejections at the ``warning`` breach level, which
answer ``200`` with the error body so that clients slightly over the limit are
told to slow down without failing hard.

Example:
    Creating and running the API application::

        from async_mail_guard.core import MailGuard
        from async_mail_guard.api import create_app

        guard = MailGuard(send=smtp_send)
        app = create_app(guard, api_token="secret-token")

        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from __future__ import annotations

import logging
import math
from collections.abc import AsyncGenerator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .config_loader import GuardSettings
from .core import MailGuard
from .job_queue import SendCallable
from .rate_limit import BreachLevel, RateLimitResult, breach_message

logger = logging.getLogger(__name__)

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
GATED_PATHS = frozenset({"/commands/add-job"})


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the guard."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class AttachmentPayload(BaseModel):
    """Opaque attachment descriptor handed to the transport."""
    filename: str
    content_type: Optional[str] = None
    url: Optional[str] = None
    content: Optional[str] = None


class JobPayload(BaseModel):
    """Payload accepted by the ``addJob`` command."""
    recipient: str = Field(min_length=3)
    subject: str = Field(min_length=1)
    content: str = Field(min_length=1)
    priority: Literal["high", "medium", "low"] = "medium"
    attachments: Optional[list[AttachmentPayload]] = None


class AddJobResponse(CommandStatus):
    id: Optional[str] = None
    rate_limit: Optional[dict[str, Any]] = None


class QueueStatsResponse(CommandStatus):
    pending: int
    processing: int
    completed: int
    failed: int
    dead_letter: int
    purged: int


class ErrorHistoryRecord(BaseModel):
    timestamp: float
    error: str
    code: Optional[str] = None
    category: str


class JobRecord(BaseModel):
    """Full representation of a job tracked by the queue."""
    id: str
    recipient: str
    subject: str
    content: str
    attachments: list[dict[str, Any]] = Field(default_factory=list)
    priority: str
    created_at: float
    attempts: int
    last_attempt: Optional[float] = None
    next_retry: Optional[float] = None
    error_history: list[ErrorHistoryRecord] = Field(default_factory=list)
    cancelled: bool = False


class JobResponse(CommandStatus):
    job: JobRecord
    message: Optional[str] = None


class JobsResponse(CommandStatus):
    jobs: list[JobRecord]


class RemovedResponse(CommandStatus):
    removed: int


class BreachRecord(BaseModel):
    identifier: str
    type: str
    breach_level: str
    timestamp: float
    metadata: dict[str, Any]


class BreachesResponse(CommandStatus):
    breaches: list[BreachRecord]


class LimiterStatsResponse(CommandStatus):
    name: str
    strategy: str
    type: str
    window_ms: int
    max_requests: int
    total_entries: int
    whitelist_entries: int
    breach_notifications: int
    average_usage: float


class WhitelistPayload(BaseModel):
    """Whitelist entry to add; ``expiry`` is epoch milliseconds."""
    identifier: str
    reason: str = ""
    type: Optional[Literal["ip", "email", "global", "user"]] = None
    expiry: Optional[float] = None


class WhitelistResponse(CommandStatus):
    entry: dict[str, Any]


def client_identifier(request: Request) -> str:
    """Return the caller IP: first ``X-Forwarded-For`` hop, else the peer host."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """``X-RateLimit-*`` headers for ``result``; empty for unlimited results."""
    if result.is_unlimited:
        return {}
    headers = {
        "X-RateLimit-Limit": str(int(result.limit)),
        "X-RateLimit-Remaining": str(int(result.remaining)),
        "X-RateLimit-Reset": str(math.ceil(result.reset_time / 1000)),
    }
    if not result.allowed and result.retry_after is not None:
        headers["Retry-After"] = str(result.retry_after)
    return headers


def rejection_status(level: BreachLevel | None) -> int:
    if level == BreachLevel.WARNING:
        return status.HTTP_200_OK
    return status.HTTP_429_TOO_MANY_REQUESTS


def rejection_response(result: RateLimitResult) -> JSONResponse:
    """JSON response for a rejected ``result``, headers included."""
    data = result.to_dict()
    return JSONResponse(
        status_code=rejection_status(result.breach_level),
        content={
            "success": False,
            "error": breach_message(result.breach_level),
            "rateLimit": {key: data[key] for key in ("limit", "remaining", "resetTime", "retryAfter")},
            "breachLevel": data["breachLevel"],
        },
        headers=rate_limit_headers(result),
    )


def create_app(
    svc: MailGuard,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        The :class:`async_mail_guard.core.MailGuard` executing each command.
    api_token:
        Optional secret used to protect every endpoint. When provided, the
        ``X-API-Token`` header must match this value on every request.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    api = FastAPI(title="Async Mail Guard", lifespan=lifespan)
    api.state.api_token = api_token
    api.state.service = svc

    async def require_token(request: Request, token: str | None = Depends(api_key_scheme)) -> None:
        """Reject with ``401`` when a token is configured and the header does not match it."""
        expected = getattr(request.app.state, "api_token", None)
        if expected is None:
            return
        if not token or token != expected:
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

    auth_dependency = Depends(require_token)
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.middleware("http")
    async def rate_limit_gate(request: Request, call_next):
        """Apply the ``ip`` and ``global`` limiters to gated submission paths."""
        if request.method != "POST" or request.url.path not in GATED_PATHS:
            return await call_next(request)
        result = svc.check_request(client_identifier(request))
        if not result.allowed:
            logger.warning(
                "Request from %s rejected on %s (%s)",
                result.identifier,
                request.url.path,
                result.breach_level.value if result.breach_level else "none",
            )
            return rejection_response(result)
        response = await call_next(request)
        for name, value in rate_limit_headers(result).items():
            response.headers.setdefault(name, value)
        return response

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def status_endpoint():
        """Return a simple health status payload."""
        return BasicOkResponse(ok=True)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the guard."""
        return Response(content=svc.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    @router.post("/add-job", response_model=AddJobResponse, response_model_exclude_none=True)
    async def add_job(payload: JobPayload):
        """Rate-check the recipient and enqueue the job."""
        data = payload.model_dump(exclude_none=True)
        job_id, result = svc.submit(data)
        if job_id is None:
            return rejection_response(result)
        return JSONResponse(
            content={"ok": True, "id": job_id, "rate_limit": result.to_dict()},
            headers=rate_limit_headers(result),
        )

    @api.get("/queue/stats", response_model=QueueStatsResponse, dependencies=[auth_dependency])
    async def queue_stats():
        """Return the queue counters."""
        result = await svc.handle_command("queueStats", {})
        return QueueStatsResponse.model_validate(result)

    @api.get("/queue/jobs/{job_id}", response_model=JobResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_job(job_id: str):
        """Return a job from any store, with the user message for its last error."""
        result = await svc.handle_command("getJob", {"id": job_id})
        if not result.get("ok"):
            raise HTTPException(404, f"Job '{job_id}' not found")
        return JobResponse.model_validate(result)

    @api.get("/queue/dead-letter", response_model=JobsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_dead_letter():
        """List dead-lettered jobs."""
        result = await svc.handle_command("listDeadLetter", {})
        return JobsResponse.model_validate(result)

    @api.post("/queue/dead-letter/{job_id}/retry", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def retry_job(job_id: str):
        """Move a dead-lettered job back to pending."""
        result = await svc.handle_command("retryJob", {"id": job_id})
        if not result.get("ok"):
            raise HTTPException(404, f"Job '{job_id}' not in dead-letter")
        return BasicOkResponse(ok=True)

    @api.delete("/queue/dead-letter", response_model=RemovedResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def clear_dead_letter():
        """Drop every dead-lettered job."""
        result = await svc.handle_command("clearDeadLetter", {})
        return RemovedResponse.model_validate(result)

    @api.get("/limiters/{name}/breaches", response_model=BreachesResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_breaches(name: str, since: Optional[float] = None):
        """Return breach notifications of a limiter, optionally since an epoch-ms timestamp."""
        result = await svc.handle_command("breaches", {"limiter": name, "since": since})
        if not result.get("ok"):
            raise HTTPException(404, f"Limiter '{name}' not found")
        return BreachesResponse.model_validate(result)

    @api.get("/limiters/{name}/stats", response_model=LimiterStatsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def limiter_stats(name: str):
        """Return a limiter's statistics."""
        result = await svc.handle_command("limiterStats", {"limiter": name})
        if not result.get("ok"):
            raise HTTPException(404, f"Limiter '{name}' not found")
        return LimiterStatsResponse.model_validate(result)

    @api.post("/limiters/{name}/whitelist", response_model=WhitelistResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def add_whitelist(name: str, payload: WhitelistPayload):
        """Exempt an identifier from a limiter."""
        if svc.limiter(name) is None:
            raise HTTPException(404, f"Limiter '{name}' not found")
        result = await svc.handle_command("addWhitelist", {"limiter": name, **payload.model_dump()})
        return WhitelistResponse.model_validate(result)

    @api.delete("/limiters/{name}/whitelist/{identifier}", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def remove_whitelist(name: str, identifier: str):
        """Remove an identifier from a limiter's whitelist."""
        if svc.limiter(name) is None:
            raise HTTPException(404, f"Limiter '{name}' not found")
        result = await svc.handle_command("removeWhitelist", {"limiter": name, "identifier": identifier})
        if not result.get("ok"):
            raise HTTPException(404, f"'{identifier}' is not whitelisted on '{name}'")
        return BasicOkResponse(ok=True)

    api.include_router(router)
    return api


def build_app(settings: GuardSettings, send: SendCallable | None = None) -> FastAPI:
    """Create a guard from ``settings`` and an app whose lifespan starts and stops it."""
    guard = MailGuard(settings=settings, send=send)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the guard."""
        await guard.start()
        yield
        await guard.stop()

    return create_app(guard, api_token=settings.api_token, lifespan=lifespan)
