from .rate_limit import (
    TokenBucketLimiter,
    MemoryTokenBucket,
    RedisTokenBucket,
    RateLimitMiddleware,
    RateLimitRule,
    build_limiter,
    identity_key,
)
from .webhook_sig import sign_webhook, verify_webhook, compute_signature
from .env import env_bool, env_list, env_int_map

__all__ = [
    "TokenBucketLimiter",
    "MemoryTokenBucket",
    "RedisTokenBucket",
    "RateLimitMiddleware",
    "RateLimitRule",
    "build_limiter",
    "identity_key",
    "sign_webhook",
    "verify_webhook",
    "compute_signature",
    "env_bool",
    "env_list",
    "env_int_map",
]
