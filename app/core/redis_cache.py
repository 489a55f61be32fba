import json
import logging
from typing import Optional, Dict, Any

import redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class RedisCache:
    """
    Redis-backed store for webhook de-duplication and delivery counters.

    Connection is lazy and every operation degrades gracefully: when Redis
    is unreachable reads return None and writes are skipped, so callers
    must treat the cache as an optimisation, never as the source of truth.
    """

    def __init__(self, redis_url: str, password: Optional[str] = None):
        self._redis_url = redis_url
        self._password = password or None
        self._client: Optional[redis.Redis] = None
        self._connected = False

    def _ensure_connected(self) -> Optional[redis.Redis]:
        """Return a live client or None"""
        if self._connected and self._client is not None:
            return self._client

        try:
            client_kwargs: Dict[str, Any] = {
                'decode_responses': False,
                'socket_connect_timeout': 2,
                'socket_timeout': 2,
                'retry_on_timeout': False,
            }
            # Password from settings takes precedence over the URL password
            if self._password:
                client_kwargs['password'] = self._password

            self._client = redis.from_url(self._redis_url, **client_kwargs)
            self._client.ping()
            self._connected = True
            logger.info("RedisCache: Connected to Redis")
        except (RedisError, ValueError) as e:
            logger.warning(f"RedisCache: Connection failed - {e}")
            self._client = None
            self._connected = False
        return self._client

    def _reset(self):
        self._connected = False

    def get(self, key: str) -> Optional[Dict]:
        """Get cached JSON value"""
        client = self._ensure_connected()
        if client is None:
            logger.warning(f"RedisCache: Cannot get key {key} - Redis not available")
            return None

        try:
            data = client.get(key)
            if data is None:
                logger.debug(f"Cache miss: {key}")
                return None
            try:
                return json.loads(data.decode('utf-8'))
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.warning(f"RedisCache: Failed to decode value for key {key}: {e}")
                client.delete(key)
                return None
        except RedisError as e:
            logger.error(f"RedisCache: Error getting key {key}: {e}")
            self._reset()
            return None

    def set(self, key: str, value: Dict | int, ttl_minutes: int):
        """Set cache value with TTL in minutes"""
        client = self._ensure_connected()
        if client is None:
            logger.warning(f"RedisCache: Cannot set key {key} - Redis not available")
            return

        try:
            if isinstance(value, int):
                serialized = str(value).encode('utf-8')
            else:
                serialized = json.dumps(value).encode('utf-8')
            client.setex(key, ttl_minutes * 60, serialized)
            logger.debug(f"Cache set: {key}, TTL: {ttl_minutes} minutes")
        except RedisError as e:
            logger.error(f"RedisCache: Error setting key {key}: {e}")
            self._reset()

    def exists(self, key: str) -> bool:
        client = self._ensure_connected()
        if client is None:
            return False

        try:
            return bool(client.exists(key))
        except RedisError as e:
            logger.error(f"RedisCache: Error checking key {key}: {e}")
            self._reset()
            return False

    def delete(self, key: str):
        """Delete cache entry"""
        client = self._ensure_connected()
        if client is None:
            logger.warning(f"RedisCache: Cannot delete key {key} - Redis not available")
            return

        try:
            client.delete(key)
            logger.debug(f"Cache deleted: {key}")
        except RedisError as e:
            logger.error(f"RedisCache: Error deleting key {key}: {e}")
            self._reset()

    def incr(self, key: str, ttl_seconds: Optional[int] = None) -> Optional[int]:
        """
        Atomically increment a counter.

        The TTL is only applied when the counter is created, so a window
        starts at the first increment and is not extended by later ones.

        Returns:
            The new value, or None if Redis is unavailable
        """
        client = self._ensure_connected()
        if client is None:
            logger.warning(f"RedisCache: Cannot increment key {key} - Redis not available")
            return None

        try:
            new_value = client.incr(key)
            if ttl_seconds and new_value == 1:
                client.expire(key, ttl_seconds)
            logger.debug(f"RedisCache: Incremented {key} to {new_value}")
            return new_value
        except RedisError as e:
            logger.error(f"RedisCache: Error incrementing key {key}: {e}")
            self._reset()
            return None

    def ping(self) -> bool:
        """Check if Redis connection is alive"""
        client = self._ensure_connected()
        if client is None:
            return False
        try:
            return bool(client.ping())
        except RedisError:
            self._reset()
            return False
