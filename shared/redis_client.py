"""
Redis client.

Async Redis wrapper with key prefixing and JSON helpers, used for the task
queue, the batch details cache and the recovery sweep cooldown.
"""

import json
from typing import Any, Optional

import redis.asyncio as redis

from shared.config import settings
from shared.errors import RetryableError, ConfigError

KEY_PREFIX = "pipeline:cache:"


class RedisClient:
    """Redis client wrapper with retry-friendly error mapping."""

    def __init__(self):
        """Initialize Redis client."""
        try:
            # Raw bytes; callers decode (the queue stores UTF-8 encoded JSON)
            self.client = redis.from_url(settings.redis_url, decode_responses=False)
            self.prefix = KEY_PREFIX
        except Exception as e:
            raise ConfigError(f"Failed to initialize Redis client: {str(e)}") from e

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        """
        Set a string value.

        Args:
            key: Key (prefix is added)
            value: String value
            ex: Optional TTL in seconds
        """
        try:
            result = await self.client.set(self._key(key), value.encode("utf-8"), ex=ex)
            return bool(result)
        except Exception as e:
            raise RetryableError(f"Failed to set Redis key {key}: {str(e)}") from e

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        """
        SET NX EX: store the value only if the key does not exist.

        Returns:
            True if the key was set by this call, False if it already existed
        """
        try:
            result = await self.client.set(self._key(key), value.encode("utf-8"), ex=ttl, nx=True)
            return bool(result)
        except Exception as e:
            raise RetryableError(f"Failed to set Redis key {key}: {str(e)}") from e

    async def get(self, key: str) -> Optional[str]:
        """Get a string value, or None when the key is missing."""
        try:
            value = await self.client.get(self._key(key))
        except Exception as e:
            raise RetryableError(f"Failed to get Redis key {key}: {str(e)}") from e
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else value

    async def delete(self, key: str) -> bool:
        """Delete a key. Returns True if something was deleted."""
        try:
            return bool(await self.client.delete(self._key(key)))
        except Exception as e:
            raise RetryableError(f"Failed to delete Redis key {key}: {str(e)}") from e

    async def set_json(self, key: str, data: Any, ttl: Optional[int] = None) -> bool:
        """Serialize data as JSON and store it."""
        return await self.set(key, json.dumps(data, default=str), ex=ttl)

    async def get_json(self, key: str) -> Optional[Any]:
        """Load a JSON value stored with set_json."""
        value = await self.get(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise RetryableError(f"Failed to decode JSON for key {key}: {str(e)}") from e

    async def health_check(self) -> bool:
        """Ping Redis."""
        try:
            return bool(await self.client.ping())
        except Exception:
            return False


# Singleton instance
redis_client = RedisClient()
