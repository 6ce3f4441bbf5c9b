from __future__ import annotations

import hashlib
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Protocol, Sequence, Tuple

import redis
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse


logger = logging.getLogger("transit.ratelimit")


class TokenBucketLimiter(Protocol):
    capacity: int
    period_secs: float

    def allow(self, key: str, cost: int = 1) -> Tuple[bool, int]:
        """Consume ``cost`` tokens for ``key``; returns (allowed, retry_after_secs)."""
        ...

    def close(self) -> None:
        ...


class MemoryTokenBucket:
    """Per-process token bucket. Each instance owns its own bucket table."""

    def __init__(self, capacity: int, period_secs: float, clock: Callable[[], float] = time.monotonic):
        if capacity <= 0 or period_secs <= 0:
            raise ValueError("capacity and period_secs must be positive")
        self.capacity = int(capacity)
        self.period_secs = float(period_secs)
        self._rate = self.capacity / self.period_secs
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._last_sweep = clock()

    def size(self) -> int:
        return len(self._buckets)

    def _evict_idle(self, now: float) -> None:
        # Keys idle for a full period are back at capacity
        if now - self._last_sweep < self.period_secs:
            return
        self._last_sweep = now
        cutoff = now - self.period_secs
        for key in [k for k, (_, last) in self._buckets.items() if last <= cutoff]:
            del self._buckets[key]

    def allow(self, key: str, cost: int = 1) -> Tuple[bool, int]:
        now = self._clock()
        with self._lock:
            self._evict_idle(now)
            tokens, last = self._buckets.get(key, (float(self.capacity), now))
            tokens = min(float(self.capacity), tokens + max(0.0, now - last) * self._rate)
            if tokens >= cost:
                self._buckets[key] = (tokens - cost, now)
                return True, 0
            self._buckets[key] = (tokens, now)
            retry_after = max(1, int(math.ceil((cost - tokens) / self._rate)))
            return False, retry_after

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()

    def close(self) -> None:
        self.reset()


_TOKEN_BUCKET_LUA = """
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])
local state = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(state[1])
local ts = tonumber(state[2])
if tokens == nil or ts == nil then
  tokens = capacity
  ts = now
end
tokens = math.min(capacity, tokens + math.max(0, now - ts) * rate)
local allowed = 0
local retry = 0
if tokens >= cost then
  tokens = tokens - cost
  allowed = 1
else
  retry = math.ceil((cost - tokens) / rate)
end
redis.call('HSET', key, 'tokens', tostring(tokens), 'ts', tostring(now))
redis.call('EXPIRE', key, ttl)
return {allowed, retry}
"""


class RedisTokenBucket:
    """Token bucket shared across processes. Fails open when Redis is unreachable."""

    def __init__(self, client: "redis.Redis", capacity: int, period_secs: float, prefix: str = "rl_transit"):
        if capacity <= 0 or period_secs <= 0:
            raise ValueError("capacity and period_secs must be positive")
        self.client = client
        self.capacity = int(capacity)
        self.period_secs = float(period_secs)
        self.prefix = prefix
        self._rate = self.capacity / self.period_secs
        self._ttl = max(1, int(math.ceil(self.period_secs)) + 10)
        self._script = client.register_script(_TOKEN_BUCKET_LUA)

    @classmethod
    def from_url(cls, url: str, capacity: int, period_secs: float, prefix: str = "rl_transit") -> "RedisTokenBucket":
        return cls(redis.Redis.from_url(url, decode_responses=True), capacity, period_secs, prefix=prefix)

    def allow(self, key: str, cost: int = 1) -> Tuple[bool, int]:
        try:
            allowed, retry = self._script(
                keys=[f"{self.prefix}:{key}"],
                args=[self.capacity, self._rate, time.time(), cost, self._ttl],
            )
        except redis.RedisError:
            logger.warning("rate limiter redis unavailable; allowing request")
            return True, 0
        if int(allowed) == 1:
            return True, 0
        return False, max(1, int(retry))

    def close(self) -> None:
        try:
            self.client.close()
        except redis.RedisError:
            pass


def build_limiter(
    backend: str,
    capacity: int,
    period_secs: float,
    redis_url: Optional[str] = None,
    prefix: str = "rl_transit",
) -> TokenBucketLimiter:
    if (backend or "memory").lower() == "redis":
        if not redis_url:
            raise ValueError("redis_url is required for the redis rate limit backend")
        return RedisTokenBucket.from_url(redis_url, capacity, period_secs, prefix=prefix)
    return MemoryTokenBucket(capacity, period_secs)


@dataclass(frozen=True)
class RateLimitRule:
    name: str
    path_prefix: str
    limiter: TokenBucketLimiter


def identity_key(request: Request) -> str:
    auth = request.headers.get("authorization")
    if auth:
        return "token:" + hashlib.sha256(auth.encode("utf-8")).hexdigest()[:24]
    client = request.client.host if request.client else "unknown"
    return f"ip:{client}"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Applies the first rule whose path prefix matches the request path."""

    def __init__(
        self,
        app,
        rules: Sequence[RateLimitRule],
        exempt_paths: Iterable[str] = ("/health", "/metrics"),
        key_func: Callable[[Request], str] = identity_key,
    ):
        super().__init__(app)
        self.rules = list(rules)
        self.exempt_paths = set(exempt_paths)
        self.key_func = key_func

    def _match(self, path: str) -> Optional[RateLimitRule]:
        for rule in self.rules:
            if path.startswith(rule.path_prefix):
                return rule
        return None

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in self.exempt_paths:
            return await call_next(request)
        rule = self._match(path)
        if rule is None:
            return await call_next(request)
        allowed, retry_after = rule.limiter.allow(f"{rule.name}:{self.key_func(request)}")
        if not allowed:
            return JSONResponse(
                status_code=429,
                content={"error": {"code": "rate_limited", "message": "Too many requests", "details": {"retry_after": retry_after, "bucket": rule.name}}},
                headers={"Retry-After": str(retry_after)},
            )
        return await call_next(request)
