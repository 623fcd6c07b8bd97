"""Redis client for the cached dashboard view"""
import json
import logging
from typing import Optional, Dict, Any

import redis

from pixelbill.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def _dashboard_key(external_id: str) -> str:
    return f"dashboard:{external_id}"


def get_cached_dashboard(external_id: str) -> Optional[Dict[str, Any]]:
    """Return the cached dashboard view for a user, or None on miss or Redis failure"""
    try:
        raw = get_redis_client().get(_dashboard_key(external_id))
    except redis.RedisError as e:
        logger.warning(f"Dashboard cache read failed for {external_id}: {e}")
        return None
    return json.loads(raw) if raw else None


def set_cached_dashboard(external_id: str, view: Dict[str, Any]) -> None:
    """Cache the dashboard view for a user"""
    try:
        get_redis_client().setex(_dashboard_key(external_id), settings.DASHBOARD_CACHE_TTL, json.dumps(view))
    except redis.RedisError as e:
        logger.warning(f"Dashboard cache write failed for {external_id}: {e}")


def invalidate_dashboard_cache(external_id: Optional[str]) -> None:
    """Drop the cached dashboard view so the next read reflects the store"""
    if not external_id:
        return
    try:
        get_redis_client().delete(_dashboard_key(external_id))
    except redis.RedisError as e:
        logger.warning(f"Dashboard cache invalidation failed for {external_id}: {e}")
