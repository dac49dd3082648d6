"""Cache package for Redis integration."""
from .redis_client import get_redis, init_redis, close_redis, health_check

__all__ = [
    "get_redis",
    "init_redis",
    "close_redis",
    "health_check",
]
