"""
Redis helpers for the Fulfillment service.

Redis only holds the per-key request counters behind the external API rate
limit. When Redis is unreachable the limit is not enforced.
"""
import logging
from datetime import datetime
from typing import Optional

import redis

from .config import REDIS_URL

logger = logging.getLogger(__name__)

# Initialize Redis client
redis_client = redis.from_url(REDIS_URL, decode_responses=True)

RATE_LIMIT_WINDOW = 3600  # 1 hour


def rate_limit_key(api_key_id: int, now: Optional[datetime] = None) -> str:
    """Counter key for the clock hour containing ``now``."""
    now = now or datetime.utcnow()
    return f"ratelimit:api_key:{api_key_id}:{now:%Y%m%d%H}"


def increment_counter(key: str, ttl: int) -> Optional[int]:
    """
    Increment a counter, starting its TTL on first use.

    Args:
        key: Counter key
        ttl: Time to live in seconds

    Returns:
        The new count, or None if Redis could not be reached
    """
    try:
        count = redis_client.incr(key)
        if count == 1:
            redis_client.expire(key, ttl)
        return count
    except redis.RedisError as e:
        logger.warning(f"Cache counter error for {key}: {e}")
        return None


def hit_rate_window(api_key_id: int) -> Optional[int]:
    """Count one request against the key's current hourly window."""
    return increment_counter(rate_limit_key(api_key_id), RATE_LIMIT_WINDOW)
