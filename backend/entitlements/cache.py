"""Redis-backed cache helpers.

The cache is never the source of truth: every reader falls back to the
database on a miss, so Redis outages are logged and otherwise ignored.
"""
import json
import logging
from typing import Any

import redis

from entitlements.config import settings

log = logging.getLogger(__name__)

redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)

PLANS_KEY = "subscription:plans"
GOOGLE_TOKEN_KEY = "google:access_token"


def user_key(user_id: int) -> str:
    return f"user:{user_id}"


def get_value(key: str) -> str | None:
    try:
        return redis_client.get(key)
    except redis.RedisError as e:
        log.warning(f"[Cache] GET {key} failed: {e}")
        return None


def set_value(key: str, value: str, ttl_seconds: int | None = None) -> None:
    try:
        if ttl_seconds is not None and ttl_seconds <= 0:
            # Nothing worth caching
            return
        redis_client.set(key, value, ex=ttl_seconds)
    except redis.RedisError as e:
        log.warning(f"[Cache] SET {key} failed: {e}")


def delete(key: str) -> None:
    try:
        redis_client.delete(key)
    except redis.RedisError as e:
        log.warning(f"[Cache] DEL {key} failed: {e}")


def get_json(key: str) -> Any | None:
    raw = get_value(key)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        log.warning(f"[Cache] Discarding corrupt entry for {key}")
        delete(key)
        return None


def set_json(key: str, value: Any, ttl_seconds: int | None = None) -> None:
    set_value(key, json.dumps(value, default=str), ttl_seconds)
