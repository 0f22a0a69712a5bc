# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""In-memory admission control with three interchangeable strategies.

A :class:`RateLimiter` decides whether an operation identified by a string
(IP address, email address, ``"global"``...) may proceed right now. State is
kept per key in :class:`RateLimitEntry` records created on first use and
reclaimed by a periodic sweep once untouched for twice the window.

Strategies:
    - ``fixed_window``: counters aligned on ``floor(now / window) * window``.
    - ``sliding_window``: timestamps of admitted requests in the trailing window.
    - ``token_bucket``: ``max_requests`` tokens refilled continuously over
      ``window_ms``.

All timestamps handled by this module are epoch milliseconds.

Example:
    Gating a contact form::

        limiter = RateLimiter(RateLimitConfig(
            window_ms=60_000,
            max_requests=5,
            strategy=RateLimitStrategy.SLIDING_WINDOW,
            type=RateLimitType.IP,
        ))
        result = limiter.check_limit(client_ip)
        if not result.allowed:
            raise TooManyRequests(result.retry_after)
"""

from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .logger import get_logger
from .prometheus import GuardMetrics

CLEANUP_INTERVAL_SECONDS = 5 * 60
MAX_BREACH_NOTIFICATIONS = 1000


class RateLimitStrategy(str, Enum):
    """Counting algorithm used by a limiter."""

    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW = "sliding_window"
    TOKEN_BUCKET = "token_bucket"


class RateLimitType(str, Enum):
    """Kind of identifier a limiter is keyed on."""

    IP = "ip"
    EMAIL = "email"
    GLOBAL = "global"
    USER = "user"


class BreachLevel(str, Enum):
    """Advisory severity of a caller over its limit."""

    WARNING = "warning"
    CRITICAL = "critical"
    BLOCK = "block"


class InvalidStrategyError(ValueError):
    """Raised when a limiter is configured with an unknown strategy."""

    def __init__(self, strategy: Any):
        super().__init__(f"Unknown rate limit strategy: {strategy}")
        self.strategy = strategy


def parse_strategy(value: Any) -> RateLimitStrategy:
    """Return ``value`` as a :class:`RateLimitStrategy` or raise :class:`InvalidStrategyError`."""
    try:
        return RateLimitStrategy(value)
    except ValueError as exc:
        raise InvalidStrategyError(value) from exc


@dataclass(frozen=True)
class RateLimitConfig:
    """Immutable limiter configuration.

    Attributes:
        window_ms: Length of the window in milliseconds.
        max_requests: Requests admitted per window (bucket capacity for
            ``token_bucket``).
        strategy: Counting algorithm.
        type: Kind of identifier, used for the default key and the whitelist.
        key_generator: Optional ``identifier -> key`` mapping replacing the
            default ``"<type>:<identifier>"``.
        on_limit_reached: Optional ``(key, level)`` callback fired for every
            breach notification.
    """

    window_ms: int
    max_requests: int
    strategy: RateLimitStrategy = RateLimitStrategy.SLIDING_WINDOW
    type: RateLimitType = RateLimitType.GLOBAL
    key_generator: Callable[[str], str] | None = None
    on_limit_reached: Callable[[str, BreachLevel], None] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "strategy", parse_strategy(self.strategy))
        object.__setattr__(self, "type", RateLimitType(self.type))
        if self.window_ms <= 0:
            raise ValueError("window_ms must be > 0")
        if self.max_requests <= 0:
            raise ValueError("max_requests must be > 0")


@dataclass
class RateLimitEntry:
    """Per-key bookkeeping, mutated on every check for that key."""

    count: int = 0
    window_start: float | None = None
    last_reset: float = 0.0
    last_seen: float = 0.0
    tokens: float | None = None
    last_refill: float | None = None
    requests: deque[float] = field(default_factory=deque)


@dataclass
class WhitelistEntry:
    identifier: str
    type: RateLimitType
    reason: str
    created_at: float
    expiry: float | None = None

    def is_expired(self, now: float) -> bool:
        return self.expiry is not None and self.expiry < now

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "type": self.type.value,
            "reason": self.reason,
            "created_at": self.created_at,
            "expiry": self.expiry,
        }


@dataclass(frozen=True)
class BreachNotification:
    identifier: str
    type: RateLimitType
    breach_level: BreachLevel
    timestamp: float
    metadata: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "type": self.type.value,
            "breach_level": self.breach_level.value,
            "timestamp": self.timestamp,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of :meth:`RateLimiter.check_limit`.

    Attributes:
        allowed: Whether the operation may proceed.
        limit: Configured maximum (``inf`` for whitelisted identifiers).
        remaining: Requests left in the current window (``inf`` when whitelisted).
        reset_time: Epoch milliseconds at which the window resets.
        identifier: The key without its type prefix.
        strategy: Strategy that produced the decision.
        retry_after: Seconds to wait, only set on rejected results.
        breach_level: Advisory severity, never changes ``allowed``.
    """

    allowed: bool
    limit: float
    remaining: float
    reset_time: float
    identifier: str
    strategy: RateLimitStrategy
    retry_after: int | None = None
    breach_level: BreachLevel | None = None

    @property
    def is_unlimited(self) -> bool:
        return math.isinf(self.limit)

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly view; unlimited values are rendered as ``None``."""
        return {
            "allowed": self.allowed,
            "limit": None if math.isinf(self.limit) else self.limit,
            "remaining": None if math.isinf(self.remaining) else self.remaining,
            "resetTime": self.reset_time,
            "retryAfter": self.retry_after,
            "breachLevel": self.breach_level.value if self.breach_level else None,
            "identifier": self.identifier,
            "strategy": self.strategy.value,
        }


def calculate_breach_level(current: float, limit: float) -> BreachLevel | None:
    """Return the breach level for a usage of ``current`` against ``limit``."""
    ratio = current / limit
    if ratio >= 2.0:
        return BreachLevel.BLOCK
    if ratio >= 1.5:
        return BreachLevel.CRITICAL
    if ratio >= 1.0:
        return BreachLevel.WARNING
    return None


BREACH_MESSAGES = {
    BreachLevel.BLOCK: "Too many requests. Please try again later.",
    BreachLevel.CRITICAL: "Rate limit exceeded. Please slow down your requests.",
    BreachLevel.WARNING: "Approaching rate limit. Please consider slowing down.",
    None: "Rate limit exceeded.",
}


def breach_message(level: BreachLevel | None) -> str:
    """Return the client-facing text for a rejection at ``level``."""
    return BREACH_MESSAGES.get(level, BREACH_MESSAGES[None])


def _now_ms() -> float:
    return time.time() * 1000


class RateLimiter:
    """Per-identifier admission control.

    The limiter is synchronous: :meth:`check_limit` never suspends, so on a
    single event loop each read-then-write on an entry is atomic. The only
    mutation not triggered by a check is :meth:`cleanup`, run every
    ``cleanup_interval`` seconds once :meth:`start_cleanup` has been called.

    Attributes:
        config: The immutable :class:`RateLimitConfig`.
        name: Label used in logs and metrics.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        name: str | None = None,
        metrics: GuardMetrics | None = None,
        cleanup_interval: float = CLEANUP_INTERVAL_SECONDS,
    ):
        self.config = config
        self.name = name or config.type.value
        self.metrics = metrics
        self.cleanup_interval = cleanup_interval
        self.logger = get_logger("RateLimiter")
        self._storage: dict[str, RateLimitEntry] = {}
        self._whitelist: dict[str, WhitelistEntry] = {}
        self._breaches: deque[BreachNotification] = deque(maxlen=MAX_BREACH_NOTIFICATIONS)
        self._cleanup_task: asyncio.Task | None = None
        self._checks: dict[RateLimitStrategy, Callable[..., RateLimitResult]] = {
            RateLimitStrategy.FIXED_WINDOW: self._check_fixed_window,
            RateLimitStrategy.SLIDING_WINDOW: self._check_sliding_window,
            RateLimitStrategy.TOKEN_BUCKET: self._check_token_bucket,
        }
        if config.strategy not in self._checks:
            self.logger.error("Refusing to build limiter %s with strategy %s", self.name, config.strategy)
            raise InvalidStrategyError(config.strategy)

    # ----------------------------------------------------------------- checks
    def _key(self, identifier: str) -> str:
        if self.config.key_generator:
            return self.config.key_generator(identifier)
        return f"{self.config.type.value}:{identifier}"

    def check_limit(self, identifier: str, *, weight: int = 1) -> RateLimitResult:
        """Decide whether the operation for ``identifier`` may proceed.

        Args:
            identifier: The caller identity (IP, email address, ...).
            weight: How many requests this operation counts for.

        Returns:
            A :class:`RateLimitResult`; whitelisted identifiers always get an
            allowed result with infinite limit and their counters untouched.

        Raises:
            ValueError: ``weight`` is lower than 1.
        """
        if weight < 1:
            raise ValueError(f"weight must be >= 1, got {weight}")
        now = _now_ms()
        if self.is_whitelisted(identifier, self.config.type):
            return RateLimitResult(
                allowed=True,
                limit=math.inf,
                remaining=math.inf,
                reset_time=now,
                identifier=identifier,
                strategy=self.config.strategy,
            )

        key = self._key(identifier)
        entry = self._storage.get(key)
        if entry is None:
            entry = self._storage[key] = RateLimitEntry(last_reset=now)
        entry.last_seen = now

        result = self._checks[self.config.strategy](key, entry, now, weight)
        if self.metrics:
            self.metrics.inc_rate_limit_check(self.name, result.allowed)
        return result

    def _check_fixed_window(self, key: str, entry: RateLimitEntry, now: float, weight: int) -> RateLimitResult:
        window_ms = self.config.window_ms
        limit = self.config.max_requests
        window_start = math.floor(now / window_ms) * window_ms

        if entry.window_start != window_start:
            entry.count = 0
            entry.window_start = window_start
            entry.last_reset = now

        attempted = entry.count + weight
        allowed = attempted <= limit
        if allowed:
            entry.count = attempted

        metadata = {"count": entry.count, "limit": limit, "strategy": self.config.strategy.value}
        return self._finish(key, allowed, limit - entry.count, window_start + window_ms, now, attempted, metadata)

    def _check_sliding_window(self, key: str, entry: RateLimitEntry, now: float, weight: int) -> RateLimitResult:
        limit = self.config.max_requests
        horizon = now - self.config.window_ms
        requests = entry.requests
        while requests and requests[0] <= horizon:
            requests.popleft()

        attempted = len(requests) + weight
        allowed = attempted <= limit
        if allowed:
            requests.extend([now] * weight)
        entry.count = len(requests)

        metadata = {"count": entry.count, "limit": limit, "strategy": self.config.strategy.value}
        return self._finish(key, allowed, limit - entry.count, now + self.config.window_ms, now, attempted, metadata)

    def _check_token_bucket(self, key: str, entry: RateLimitEntry, now: float, weight: int) -> RateLimitResult:
        capacity = self.config.max_requests
        if entry.tokens is None:
            entry.tokens = float(capacity)
            entry.last_refill = now

        elapsed = now - (entry.last_refill if entry.last_refill is not None else now)
        entry.tokens = min(float(capacity), entry.tokens + elapsed / self.config.window_ms * capacity)
        entry.last_refill = now

        # usage the bucket would reach if this request were served
        attempted = capacity - entry.tokens + weight
        allowed = entry.tokens >= weight
        if allowed:
            entry.tokens -= weight
        entry.count = math.ceil(capacity - entry.tokens)

        metadata = {
            "tokensRemaining": entry.tokens,
            "weight": weight,
            "strategy": self.config.strategy.value,
        }
        return self._finish(
            key, allowed, math.floor(entry.tokens), now + self.config.window_ms, now, attempted, metadata
        )

    def _finish(
        self,
        key: str,
        allowed: bool,
        remaining: float,
        reset_time: float,
        now: float,
        attempted: float,
        metadata: dict[str, Any],
    ) -> RateLimitResult:
        breach_level = calculate_breach_level(attempted, self.config.max_requests)
        if not allowed and breach_level:
            self._record_breach(key, breach_level, metadata, now)

        prefix = f"{self.config.type.value}:"
        identifier = key[len(prefix):] if key.startswith(prefix) else key
        return RateLimitResult(
            allowed=allowed,
            limit=self.config.max_requests,
            remaining=max(0, remaining),
            reset_time=reset_time,
            identifier=identifier,
            strategy=self.config.strategy,
            retry_after=None if allowed else math.ceil((reset_time - now) / 1000),
            breach_level=breach_level,
        )

    def _record_breach(self, key: str, level: BreachLevel, metadata: dict[str, Any], now: float) -> None:
        self._breaches.append(
            BreachNotification(
                identifier=key,
                type=self.config.type,
                breach_level=level,
                timestamp=now,
                metadata=metadata,
            )
        )
        self.logger.warning(
            "Rate limit breach detected on %s: key=%s type=%s level=%s metadata=%s",
            self.name,
            key,
            self.config.type.value,
            level.value,
            metadata,
        )
        if self.metrics:
            self.metrics.inc_breach(self.name, level.value)
        if self.config.on_limit_reached:
            try:
                self.config.on_limit_reached(key, level)
            except Exception:
                self.logger.exception("Breach callback failed for %s", key)

    # -------------------------------------------------------------- whitelist
    @staticmethod
    def _whitelist_key(identifier: str, type: RateLimitType) -> str:
        return f"{RateLimitType(type).value}:{identifier}"

    def add_to_whitelist(
        self,
        identifier: str,
        type: RateLimitType,
        reason: str,
        expiry: float | None = None,
    ) -> WhitelistEntry:
        """Exempt ``identifier`` until ``expiry`` (epoch ms) or forever."""
        entry = WhitelistEntry(
            identifier=identifier,
            type=RateLimitType(type),
            reason=reason,
            created_at=_now_ms(),
            expiry=expiry,
        )
        self._whitelist[self._whitelist_key(identifier, type)] = entry
        self.logger.info("Whitelisted %s:%s (%s)", entry.type.value, identifier, reason)
        return entry

    def remove_from_whitelist(self, identifier: str, type: RateLimitType) -> bool:
        return self._whitelist.pop(self._whitelist_key(identifier, type), None) is not None

    def is_whitelisted(self, identifier: str, type: RateLimitType) -> bool:
        key = self._whitelist_key(identifier, type)
        entry = self._whitelist.get(key)
        if entry is None:
            return False
        if entry.is_expired(_now_ms()):
            del self._whitelist[key]
            return False
        return True

    def get_whitelist(self) -> list[WhitelistEntry]:
        return list(self._whitelist.values())

    # ---------------------------------------------------------------- breaches
    def get_breach_notifications(self, since: float | None = None) -> list[BreachNotification]:
        """Return recorded breaches, optionally only those at or after ``since`` (epoch ms)."""
        if since is None:
            return list(self._breaches)
        return [n for n in self._breaches if n.timestamp >= since]

    def clear_breach_notifications(self) -> None:
        self._breaches.clear()

    # ------------------------------------------------------------- management
    def get_entry(self, identifier: str) -> RateLimitEntry | None:
        return self._storage.get(self._key(identifier))

    def get_statistics(self) -> dict[str, Any]:
        """Summarise the limiter state.

        ``average_usage`` is the mean count over entries seen within the
        last two windows.
        """
        now = _now_ms()
        horizon = self.config.window_ms * 2
        active = [e.count for e in self._storage.values() if now - e.last_seen < horizon]
        return {
            "name": self.name,
            "strategy": self.config.strategy.value,
            "type": self.config.type.value,
            "window_ms": self.config.window_ms,
            "max_requests": self.config.max_requests,
            "total_entries": len(self._storage),
            "whitelist_entries": len(self._whitelist),
            "breach_notifications": len(self._breaches),
            "average_usage": sum(active) / len(active) if active else 0,
        }

    def reset(self, identifier: str) -> None:
        self._storage.pop(self._key(identifier), None)

    def reset_all(self) -> None:
        self._storage.clear()

    def cleanup(self) -> int:
        """Run one sweep and return the number of rate-limit entries removed.

        Deletes entries untouched for more than two windows and expired
        whitelist entries. The breach log is bounded by construction.
        """
        now = _now_ms()
        expiration = self.config.window_ms * 2
        stale = [key for key, entry in self._storage.items() if now - entry.last_seen > expiration]
        for key in stale:
            del self._storage[key]

        expired = [key for key, entry in self._whitelist.items() if entry.is_expired(now)]
        for key in expired:
            del self._whitelist[key]

        self.logger.debug(
            "Limiter %s sweep removed %d entries and %d whitelist entries",
            self.name,
            len(stale),
            len(expired),
        )
        return len(stale)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            self.cleanup()

    def start_cleanup(self) -> None:
        """Schedule the periodic sweep on the running event loop."""
        if self._cleanup_task and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    def stop_cleanup(self) -> None:
        if self._cleanup_task:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    def destroy(self) -> None:
        """Stop the sweep and drop every counter, whitelist entry and breach."""
        self.stop_cleanup()
        self._storage.clear()
        self._whitelist.clear()
        self._breaches.clear()
