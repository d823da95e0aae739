"""Fixed-window rate limiting.

Backed by Redis when REDIS_URL is set so limits hold across workers and
deploys; otherwise an in-process store is used (single worker, dev, tests).
"""
from __future__ import annotations

import logging
import math
import os
import threading
import time
from typing import Dict, Mapping, Optional

from pydantic import BaseModel
import redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class RateLimitConfig(BaseModel):
    max_requests: int
    window_ms: int


class RateLimitResult(BaseModel):
    allowed: bool
    remaining: int
    reset_at: int  # epoch ms
    retry_after_ms: Optional[int] = None


MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS

RATE_LIMITS: Dict[str, RateLimitConfig] = {
    # per session (or IP when no session)
    "chat": RateLimitConfig(max_requests=30, window_ms=MINUTE_MS),
    # per IP, catches sessionId rotation
    "chat_ip": RateLimitConfig(max_requests=60, window_ms=MINUTE_MS),
    "ingest": RateLimitConfig(max_requests=5, window_ms=HOUR_MS),
    "scrape": RateLimitConfig(max_requests=3, window_ms=HOUR_MS),
    "admin": RateLimitConfig(max_requests=60, window_ms=MINUTE_MS),
    "widget_config": RateLimitConfig(max_requests=60, window_ms=MINUTE_MS),
}

MEMORY_PRUNE_THRESHOLD = 1000

_memory_store: Dict[str, Dict[str, int]] = {}
_memory_lock = threading.Lock()
_redis_client = None


def _now_ms() -> int:
    return int(time.time() * 1000)


def _redis():
    global _redis_client
    url = os.getenv("REDIS_URL", "").strip()
    if not url:
        return None
    if _redis_client is None:
        _redis_client = redis.Redis.from_url(url, socket_timeout=2, socket_connect_timeout=2)
    return _redis_client


def reset_memory_store() -> None:
    with _memory_lock:
        _memory_store.clear()


def _check_memory(identifier: str, config: RateLimitConfig) -> RateLimitResult:
    now = _now_ms()
    with _memory_lock:
        if len(_memory_store) > MEMORY_PRUNE_THRESHOLD:
            for key in [k for k, v in _memory_store.items() if v["reset_at"] < now]:
                del _memory_store[key]

        entry = _memory_store.get(identifier)
        if entry is None or entry["reset_at"] < now:
            entry = {"count": 1, "reset_at": now + config.window_ms}
            _memory_store[identifier] = entry
            return RateLimitResult(allowed=True, remaining=config.max_requests - 1, reset_at=entry["reset_at"])

        entry["count"] += 1
        if entry["count"] > config.max_requests:
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=entry["reset_at"],
                retry_after_ms=entry["reset_at"] - now,
            )
        return RateLimitResult(
            allowed=True,
            remaining=config.max_requests - entry["count"],
            reset_at=entry["reset_at"],
        )


def _check_redis(client, identifier: str, config: RateLimitConfig) -> RateLimitResult:
    key = f"rl:{identifier}"
    pipe = client.pipeline()
    pipe.incr(key)
    pipe.pttl(key)
    count, ttl = pipe.execute()
    if count == 1 or ttl is None or ttl < 0:
        client.pexpire(key, config.window_ms)
        ttl = config.window_ms
    now = _now_ms()
    reset_at = now + int(ttl)
    if count > config.max_requests:
        return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at, retry_after_ms=int(ttl))
    return RateLimitResult(allowed=True, remaining=config.max_requests - count, reset_at=reset_at)


def check_rate_limit(identifier: str, config: RateLimitConfig) -> RateLimitResult:
    client = _redis()
    if client is None:
        return _check_memory(identifier, config)
    try:
        return _check_redis(client, identifier, config)
    except RedisError as e:
        # Fail closed: an unreachable store must not lift the limit
        logger.error("ratelimit: redis unavailable, denying %s: %s", identifier.split(":")[0], e)
        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_at=_now_ms() + config.window_ms,
            retry_after_ms=60_000,
        )


def get_client_ip(headers: Mapping[str, str]) -> str:
    forwarded = (headers.get("x-forwarded-for") or "").split(",")[0].strip()
    return forwarded or headers.get("x-real-ip") or "unknown"


def get_client_identifier(session_id: Optional[str], headers: Mapping[str, str]) -> str:
    """Prefer the widget's session id, fall back to the client IP."""
    if session_id:
        return f"session:{session_id}"
    return f"ip:{get_client_ip(headers)}"


def retry_after_seconds(result: RateLimitResult) -> int:
    return math.ceil((result.retry_after_ms or 60_000) / 1000)


def rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    headers = {"X-RateLimit-Remaining": str(result.remaining), "X-RateLimit-Reset": str(result.reset_at)}
    if not result.allowed:
        headers["Retry-After"] = str(retry_after_seconds(result))
    return headers
