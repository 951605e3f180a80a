"""
Resume Pipeline — Request Rate Limiting

Fixed-window admission control for the HTTP surface, keyed by
identity + route.

Two paths, same decision contract:
  - Redis (flag FF_REDIS_RATE_LIMIT): one Lua script increments
    `ratelimit:{identity}:{route}:{window_index}` and, on the first hit of
    the window, sets a PEXPIRE of window + 1s in the same round trip. A key
    can never be left without an expiry.
  - Local: in-process buckets `{count, reset_at}` over the same aligned
    windows, bounded in number with oldest-first eviction. Used when the flag is off, REDIS_URL is unset,
    or any Redis call fails.

A Redis failure never opens an unlimited window: the request is counted
by the local path instead.

Config in pipeline_config.yaml:
    rate_limit:
      start_per_minute: 5
      respond_per_minute: 30
      max_buckets: 50000

Usage:
    limiter = RateLimiter(redis_enabled=True, client_factory=get_redis_client)
    decision = await limiter.decide("user-1", "POST:/v1/pipeline/start", 5, 60_000)
    if not decision.allowed:
        raise RateLimitExceeded(decision)
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Any, Callable

logger = logging.getLogger("resume_pipeline.rate_limit")

# INCR and the first-hit expiry in one atomic step
_INCR_WITH_EXPIRY = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
return count
"""

EXPIRY_MARGIN_MS = 1000
MAX_DENIED_SCOPE_ENTRIES = 200
MAX_KEY_SEGMENT = 128


class RateLimitExceeded(Exception):
    """Raised by the HTTP layer when a request is denied admission."""

    code = "RATE_LIMITED"

    def __init__(self, decision: "RateLimitDecision"):
        self.decision = decision
        super().__init__(
            f"Rate limit exceeded ({decision.limit} per window). "
            f"Retry after {decision.retry_after}s."
        )


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int
    limit: int
    reset_at_ms: float
    backend: str  # "redis" | "local"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def headers(self) -> dict[str, str]:
        h = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(math.ceil(self.reset_at_ms / 1000))),
        }
        if not self.allowed:
            h["Retry-After"] = str(self.retry_after)
        return h


def _trim(value: str, max_len: int = MAX_KEY_SEGMENT) -> str:
    value = value.strip()
    return value[:max_len]


def _window(now_ms: float, window_ms: int) -> tuple[int, float]:
    """Window index and its end, aligned to multiples of window_ms. Both paths use this."""
    index = int(now_ms // window_ms)
    return index, (index + 1) * window_ms


def _decision(count: int, limit: int, reset_at_ms: float, now_ms: float, backend: str) -> RateLimitDecision:
    allowed = count <= limit
    return RateLimitDecision(
        allowed=allowed,
        remaining=max(0, limit - count),
        retry_after=0 if allowed else max(1, math.ceil((reset_at_ms - now_ms) / 1000)),
        limit=limit,
        reset_at_ms=reset_at_ms,
        backend=backend,
    )


# ═══════════════════════════════════════════════════════════════════
# Metrics
# ═══════════════════════════════════════════════════════════════════

class _LimiterMetrics:
    """Thread-safe decision counters."""

    def __init__(self):
        self._lock = threading.Lock()
        self._allowed = 0
        self._denied = 0
        self._fallbacks = 0
        self._redis_decisions = 0
        self._local_decisions = 0
        self._denied_by_scope: OrderedDict[str, int] = OrderedDict()

    def record(self, decision: RateLimitDecision, route: str):
        with self._lock:
            if decision.backend == "redis":
                self._redis_decisions += 1
            else:
                self._local_decisions += 1
            if decision.allowed:
                self._allowed += 1
                return
            self._denied += 1
            self._denied_by_scope[route] = self._denied_by_scope.get(route, 0) + 1
            while len(self._denied_by_scope) > MAX_DENIED_SCOPE_ENTRIES:
                self._denied_by_scope.popitem(last=False)

    def record_fallback(self):
        with self._lock:
            self._fallbacks += 1

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            top = sorted(self._denied_by_scope.items(), key=lambda kv: kv[1], reverse=True)[:10]
            return {
                "allowed_decisions": self._allowed,
                "denied_decisions": self._denied,
                "redis_decisions": self._redis_decisions,
                "local_decisions": self._local_decisions,
                "redis_fallbacks": self._fallbacks,
                "denied_by_scope": [{"scope": s, "count": c} for s, c in top],
            }


# ═══════════════════════════════════════════════════════════════════
# Rate Limiter
# ═══════════════════════════════════════════════════════════════════

class RateLimiter:
    """
    Dual-path fixed-window limiter.

    `client_factory` returns a redis.asyncio client or None; it is called
    per decision so a client created after startup is picked up. `clock`
    returns wall time in milliseconds (Redis windows are shared across
    processes, so monotonic time is not usable).
    """

    def __init__(
        self,
        redis_enabled: bool = False,
        client_factory: Callable[[], Any] | None = None,
        max_buckets: int = 50_000,
        clock: Callable[[], float] | None = None,
    ):
        self.redis_enabled = redis_enabled
        self._client_factory = client_factory
        self.max_buckets = max_buckets
        self._clock = clock or (lambda: time.time() * 1000)
        self._buckets: OrderedDict[str, list[float]] = OrderedDict()  # key → [count, reset_at_ms]
        self._lock = threading.Lock()
        self._metrics = _LimiterMetrics()

    async def decide(self, identity: str, route: str, limit: int, window_ms: int) -> RateLimitDecision:
        identity = _trim(identity or "anonymous", 64)
        route = _trim(route)

        decision = None
        if self.redis_enabled:
            decision = await self._decide_redis(identity, route, limit, window_ms)
        if decision is None:
            decision = self._decide_local(identity, route, limit, window_ms)

        self._metrics.record(decision, route)
        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded: %s %s", identity, route,
                extra={"structured": {
                    "identity": identity, "route": route, "limit": limit,
                    "backend": decision.backend, "retry_after": decision.retry_after,
                }},
            )
        return decision

    async def _decide_redis(self, identity: str, route: str, limit: int, window_ms: int) -> RateLimitDecision | None:
        client = self._client_factory() if self._client_factory else None
        if client is None:
            self._metrics.record_fallback()
            return None

        now = self._clock()
        window_index, reset_at = _window(now, window_ms)
        key = f"ratelimit:{identity}:{route}:{window_index}"
        try:
            count = int(await client.eval(_INCR_WITH_EXPIRY, 1, key, window_ms + EXPIRY_MARGIN_MS))
        except Exception as e:  # any Redis failure degrades to the local path
            self._metrics.record_fallback()
            logger.warning("Redis rate limit failed, using local fallback: %s", e)
            return None

        return _decision(count, limit, reset_at, now, "redis")

    def _decide_local(self, identity: str, route: str, limit: int, window_ms: int) -> RateLimitDecision:
        key = f"{identity}:{route}"
        now = self._clock()
        with self._lock:
            entry = self._buckets.get(key)
            if entry is None or now >= entry[1]:
                self._buckets.pop(key, None)
                # Keep memory bounded under key-space abuse
                while len(self._buckets) >= self.max_buckets:
                    self._buckets.popitem(last=False)
                entry = [0, _window(now, window_ms)[1]]
                self._buckets[key] = entry
            else:
                self._buckets.move_to_end(key)
            entry[0] += 1
            count, reset_at = int(entry[0]), entry[1]
        return _decision(count, limit, reset_at, now, "local")

    def purge_expired(self) -> int:
        """Drop local buckets whose window has passed. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, reset_at) in self._buckets.items() if now >= reset_at]
            for k in expired:
                del self._buckets[k]
        return len(expired)

    @property
    def active_buckets(self) -> int:
        with self._lock:
            return len(self._buckets)

    @property
    def metrics(self) -> dict[str, Any]:
        snap = self._metrics.snapshot()
        snap["active_buckets"] = self.active_buckets
        snap["max_buckets"] = self.max_buckets
        snap["redis_enabled"] = self.redis_enabled
        return snap

    def reset(self):
        """Clear buckets and counters. For testing."""
        with self._lock:
            self._buckets.clear()
        self._metrics = _LimiterMetrics()


def identity_from_request(user_id: str | None, client_ip: str | None) -> str:
    """X-User-Id header wins, then the client IP, then 'anonymous'."""
    if user_id and user_id.strip():
        return f"user:{_trim(user_id, 64)}"
    if client_ip and client_ip.strip():
        return f"ip:{_trim(client_ip, 64)}"
    return "anonymous"
