"""Process-wide synchronous Redis client.

The API creates its client in the app lifespan and installs it here; the
worker creates one lazily from REDIS_URL on first use.
"""

import redis

from relay.config import get_settings
from relay.logging import get_logger

logger = get_logger(__name__)

_client: redis.Redis | None = None


def create_redis_client(url: str) -> redis.Redis:
    return redis.Redis.from_url(url, decode_responses=True, socket_timeout=5)


def get_redis() -> redis.Redis | None:
    """Shared client, or None when REDIS_URL is not configured."""
    global _client
    if _client is None:
        settings = get_settings()
        if not settings.redis_url:
            return None
        _client = create_redis_client(settings.redis_url)
        logger.info("redis_client_initialized", redis_url=settings.redis_url[:30] + "...")
    return _client


def set_redis(client: redis.Redis | None) -> None:
    """Install a client (app startup, tests)."""
    global _client
    _client = client
