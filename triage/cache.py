import redis
import json
import hashlib
from functools import wraps
from typing import Callable
import os
import logging

logger = logging.getLogger(__name__)

# Connection pool (reuse connections)
# Lazy connection: nothing is dialed until the first cache read, so the API
# still starts when Redis is down.
redis_pool = redis.ConnectionPool(
    host=os.getenv('REDIS_HOST', 'redis'),
    port=int(os.getenv('REDIS_PORT', '6379')),
    db=int(os.getenv('REDIS_CACHE_DB', '1')),
    password=os.getenv('REDIS_PASSWORD') or None,
    decode_responses=True,
    socket_connect_timeout=2,
    socket_timeout=2
)

redis_client = redis.Redis(connection_pool=redis_pool)

# Latest weekly bulletins, dropped whenever a new one is appended.
SUMMARIES_CACHE_PREFIX = "summaries"

_KEYABLE = (str, int, float, bool, type(None))


def cache_key(*args, **kwargs) -> str:
    """
    Generate a consistent cache key from the plain-value arguments.

    Objects such as a store or a services bundle differ per request, so they
    are left out; only ids, limits and filters decide the key.
    """
    plain_args = [a for a in args if isinstance(a, _KEYABLE)]
    plain_kwargs = sorted((k, v) for k, v in kwargs.items() if isinstance(v, _KEYABLE))
    key_data = str(plain_args) + str(plain_kwargs)
    return hashlib.md5(key_data.encode()).hexdigest()


def cached(expire: int = 300, key_prefix: str = ""):
    """
    Cache a JSON-serializable result in Redis for `expire` seconds.

    Redis failures never fail the request: reads fall through to the wrapped
    function and writes are skipped, both with a warning.
    """
    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs):
            key = f"{key_prefix}:{cache_key(*args, **kwargs)}"

            try:
                cached_value = redis_client.get(key)
                if cached_value:
                    return json.loads(cached_value)
            except (redis.RedisError, ValueError) as e:
                logger.warning(f"Cache read failed: {e}")

            result = func(*args, **kwargs)

            try:
                redis_client.setex(key, expire, json.dumps(result))
            except (redis.RedisError, TypeError) as e:
                logger.warning(f"Cache write failed: {e}")

            return result
        return wrapper
    return decorator


def invalidate(key_prefix: str) -> int:
    """Drop every cached entry under `key_prefix`. Returns how many were removed."""
    removed = 0
    try:
        for key in redis_client.scan_iter(match=f"{key_prefix}:*"):
            removed += redis_client.delete(key)
    except redis.RedisError as e:
        logger.warning(f"Cache invalidation failed: {e}")
    return removed
