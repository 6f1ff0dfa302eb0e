# Redis-backed fixed-window rate limiter for write endpoints.
# - Per-IP counters; keys rl:v1:ip:{ip}:{scope} with a TTL-based fixed window.
# - Fail-open if Redis is unavailable, so booking and payment paths stay usable in dev or outages.
import os
import logging
from typing import Callable, Literal, Optional

import redis
from fastapi import Request, HTTPException, status

from .redis_client import get_redis, is_redis_enabled

logger = logging.getLogger("driveshare.rate_limit")

Scope = Literal["login", "signup", "write", "payment"]

_DEFAULT_LIMITS = {
    "login": ("RATE_LIMIT_LOGIN_PER_WINDOW", 10),
    "signup": ("RATE_LIMIT_SIGNUP_PER_WINDOW", 5),
    "write": ("RATE_LIMIT_WRITE_PER_WINDOW", 30),
    "payment": ("RATE_LIMIT_PAYMENT_PER_WINDOW", 60),
}


def _to_int(val: Optional[str], default: int) -> int:
    try:
        return int(val) if val is not None else default
    except ValueError:
        return default


def _window_seconds() -> int:
    return _to_int(os.getenv("RATE_LIMIT_WINDOW_SECONDS"), 60)


def _limit_for_scope(scope: Scope) -> int:
    env_name, default = _DEFAULT_LIMITS.get(scope, _DEFAULT_LIMITS["write"])
    return _to_int(os.getenv(env_name), default)


def _client_ip(request: Request) -> str:
    # Connection address only; X-Forwarded-For is not trusted here
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def rate_limit(scope: Scope) -> Callable[[Request], None]:
    """
    Fixed-window rate limiting dependency.

    Window: RATE_LIMIT_WINDOW_SECONDS (default 60s). Per-scope caps:
    login 10, signup 5, write 30, payment 60 (override with RATE_LIMIT_<SCOPE>_PER_WINDOW).
    Returns 429 with a retry_after hint when the cap is exceeded.
    """
    window = _window_seconds()
    limit = _limit_for_scope(scope)

    def _dependency(request: Request) -> None:
        if not is_redis_enabled():
            return

        r = get_redis()
        if r is None:
            return

        ip = _client_ip(request)
        key = f"rl:v1:ip:{ip}:{scope}"
        try:
            current = r.incr(key, amount=1)
            if current == 1:
                r.expire(key, window)
            if current > limit:
                ttl = r.ttl(key)
                retry_after = ttl if isinstance(ttl, int) and ttl > 0 else window
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail={
                        "error": "rate_limited",
                        "scope": scope,
                        "limit": limit,
                        "window_seconds": window,
                        "retry_after": retry_after,
                    },
                )
        except redis.RedisError as exc:
            logger.warning("Rate limit fail-open (scope=%s, ip=%s): %s", scope, ip, exc)
            return

    return _dependency
