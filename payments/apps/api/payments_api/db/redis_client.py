"""Redis client configuration."""

from typing import Optional
from urllib.parse import urlparse

import redis


class RedisClient:
    """Singleton Redis client."""

    _instance: Optional[redis.Redis] = None

    @classmethod
    def get_client(cls, redis_url: str = "redis://localhost:6379/0", password: Optional[str] = None) -> redis.Redis:
        """
        Get Redis client instance.

        - redis_url: e.g. redis://host:6379/0 or rediss://...
        - password: applied only if the URL carries none

        Returns:
            redis.Redis: Redis client
        """
        if cls._instance is None:
            parsed = urlparse(redis_url)

            kwargs = {
                "decode_responses": True,
                "socket_connect_timeout": 5,
                "socket_timeout": 5,
                "health_check_interval": 30,
            }
            if not parsed.password and password:
                kwargs["password"] = password

            cls._instance = redis.from_url(redis_url, **kwargs)

        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset Redis client (for testing)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None
