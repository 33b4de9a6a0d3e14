"""
Redis client wrapper used as a TTL key-value cache.
"""

import json
from typing import Any, Optional

import redis

from ..models.errors import UpstreamUnavailableError
from .config import RedisConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class CacheError(UpstreamUnavailableError):
    """Custom exception for cache errors."""
    pass


class RedisCache:
    """Redis-backed JSON cache with per-key TTL."""

    def __init__(self, config: RedisConfig, client: Optional[redis.Redis] = None):
        """
        Initialize the Redis cache.

        Args:
            config: RedisConfig instance with connection parameters
            client: Prebuilt redis client (created from config.url if None)
        """
        self.config = config
        self.prefix = config.key_prefix
        self.client = client or redis.Redis.from_url(config.url,
                                                     decode_responses=True,
                                                     socket_timeout=config.socket_timeout)

        logger.info(f'Initialized Redis cache with prefix: {self.prefix}')

    def _make_key(self, key: str) -> str:
        return f'{self.prefix}:{key}'

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        """
        Store a JSON-serializable value with a TTL.

        Args:
            key: Cache key (prefix is added)
            value: JSON-serializable value
            ttl_seconds: Time to live, must be positive

        Raises:
            CacheError: If the TTL is not positive or Redis fails
        """
        if ttl_seconds <= 0:
            raise CacheError(f'Refusing to cache {key} with non-positive TTL {ttl_seconds}')

        try:
            self.client.setex(self._make_key(key), ttl_seconds, json.dumps(value, default=str))
            logger.debug(f'Cached {key} with TTL {ttl_seconds}s')
        except redis.RedisError as e:
            logger.error(f'Redis set error for {key}: {e}')
            raise CacheError(f'Failed to cache {key}: {e}')

    def get(self, key: str) -> Optional[Any]:
        """
        Fetch a cached value.

        Returns:
            Decoded value, or None on a miss

        Raises:
            CacheError: If Redis fails or the entry is not valid JSON
        """
        try:
            data = self.client.get(self._make_key(key))
        except redis.RedisError as e:
            logger.error(f'Redis get error for {key}: {e}')
            raise CacheError(f'Failed to read {key}: {e}')

        if data is None:
            return None
        try:
            return json.loads(data)
        except json.JSONDecodeError as e:
            logger.error(f'Corrupt cache entry for {key}: {e}')
            raise CacheError(f'Corrupt cache entry for {key}: {e}')

    def delete(self, key: str) -> bool:
        """
        Remove a cached value.

        Returns:
            True if a key was removed
        """
        try:
            removed = self.client.delete(self._make_key(key))
            logger.debug(f'Removed {key} from cache')
            return removed > 0
        except redis.RedisError as e:
            logger.error(f'Redis delete error for {key}: {e}')
            raise CacheError(f'Failed to delete {key}: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the Redis service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return bool(self.client.ping())
        except Exception as e:
            logger.error(f'Redis health check failed: {e}')
            return False
