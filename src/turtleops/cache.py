from __future__ import annotations

"""
Redis cache helpers for turtleops.

The cache layer is optional. When Redis is not configured or unreachable, all
functions return ``None``/no-op to keep the rest of the app running.

Environment:
- TURTLEOPS_REDIS_URL: Redis connection URL (e.g., redis://turtleops-redis:6379/0)
- TURTLEOPS_REDIS_TTL_SECONDS: default cache TTL (seconds, default: 30)
"""

import hashlib
import json
import logging
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from turtleops.config import env_int, env_str

logger = logging.getLogger(__name__)

_REDIS_CLIENT: "redis.Redis | None" = None


def get_cache_ttl() -> int:
    return env_int("TURTLEOPS_REDIS_TTL_SECONDS", 30)


def get_redis_url() -> str:
    return env_str("TURTLEOPS_REDIS_URL", "")


def get_redis_client() -> "redis.Redis | None":
    global _REDIS_CLIENT
    url = get_redis_url()
    if not url:
        return None
    if _REDIS_CLIENT is None:
        _REDIS_CLIENT = redis.from_url(url, decode_responses=True)
    return _REDIS_CLIENT


def reset_cache_client() -> None:
    global _REDIS_CLIENT
    _REDIS_CLIENT = None


def cache_key(prefix: str, **parts: Any) -> str:
    """
    Stable key for a prefix + keyword parts, e.g. filters of a report.
    """
    raw = json.dumps(parts, sort_keys=True, default=str)
    digest = hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]
    return f"turtleops:{prefix}:{digest}"


async def cache_get_json(key: str) -> Any | None:
    client = get_redis_client()
    if client is None:
        return None
    try:
        payload = await client.get(key)
        if not payload:
            return None
    except RedisError as e:
        logger.debug("cache get failed for %s: %s", key, e)
        return None
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        return None


async def cache_set_json(key: str, value: Any, ttl_seconds: int | None = None) -> None:
    client = get_redis_client()
    if client is None:
        return None
    ttl = int(ttl_seconds or get_cache_ttl())
    payload = json.dumps(value, default=str)
    try:
        await client.setex(key, ttl, payload)
    except RedisError as e:
        logger.debug("cache set failed for %s: %s", key, e)
        return None


async def cache_delete_prefix(prefix: str) -> None:
    """Drop every key under ``turtleops:<prefix>:`` (after writes)."""
    client = get_redis_client()
    if client is None:
        return None
    try:
        keys = [k async for k in client.scan_iter(match=f"turtleops:{prefix}:*")]
        if keys:
            await client.delete(*keys)
    except RedisError as e:
        logger.debug("cache invalidation failed for %s: %s", prefix, e)
    return None
