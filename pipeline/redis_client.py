# redis_client.py
import redis
from django.conf import settings

_pool = None


def get_client():
    """Shared connection pool; built lazily so importing never touches Redis."""
    global _pool
    if _pool is None:
        _pool = redis.ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            decode_responses=False,
        )
    return redis.Redis(connection_pool=_pool)
