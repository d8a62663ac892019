"""Caching helpers for user sync summaries.

Key pattern:
    summary:{user_id}
"""

import json
import logging
from typing import Any, Dict, Optional

import redis
from redis import Redis

from .config import REDIS_URL, CACHE_TTL_SECONDS

_redis: Optional[Redis] = None
logger = logging.getLogger("caching")


def get_redis() -> Redis:
    """
    Return a singleton Redis client

    Returns:
        redis.Redis client
    """
    global _redis
    if _redis is None:
        _redis = redis.Redis.from_url(REDIS_URL)
    return _redis


def summary_cache_key(user_id) -> str:
    return f"summary:{user_id}"


def get_cached_summary(user_id) -> Optional[Dict[str, Any]]:
    """
    Retrieve a cached user summary payload

    Args:
        user_id (int): GitHub user id

    Returns:
        dict or None
    """
    try:
        raw = get_redis().get(summary_cache_key(user_id))
    except Exception as exc:
        logger.warning("get_cached_summary redis error=%s", type(exc).__name__)
        return None

    if not raw:
        return None

    try:
        return json.loads(raw)
    except (TypeError, json.JSONDecodeError) as exc:
        logger.warning("get_cached_summary decode error=%s", type(exc).__name__)
        return None


def set_cached_summary(user_id, payload) -> None:
    """
    Cache a summary payload with TTL

    Args:
        user_id (int): GitHub user id
        payload (dict): Serializable payload
    """
    if CACHE_TTL_SECONDS <= 0:
        return
    try:
        get_redis().setex(summary_cache_key(user_id), CACHE_TTL_SECONDS, json.dumps(payload, default=str))
    except Exception as exc:
        logger.warning("set_cached_summary redis error=%s", type(exc).__name__)


def invalidate_summary(user_id) -> None:
    """
    Drop the cached summary for a user after a sync rewrote it

    Args:
        user_id (int): GitHub user id
    """
    try:
        get_redis().delete(summary_cache_key(user_id))
    except Exception as exc:
        logger.warning("invalidate_summary redis error=%s", type(exc).__name__)
