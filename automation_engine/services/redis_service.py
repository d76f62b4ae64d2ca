"""Redis-backed counters for the notification pipeline."""

import asyncio
import time
from typing import Optional

import redis.asyncio as redis
import structlog

from automation_engine.config import Settings, get_settings

logger = structlog.get_logger(__name__)


class RedisService:
    """Recent-notification counters with graceful degradation.

    Every operation is bounded by ``redis_timeout_seconds`` and returns a
    neutral value when Redis is unreachable. After a failed connect, further
    attempts are skipped for ``redis_retry_interval_seconds``.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._client: Optional[redis.Redis] = None
        self._retry_at = 0.0

    async def get_client(self) -> Optional[redis.Redis]:
        """Get or create the Redis client.

        Returns:
            Redis client or None if connection fails
        """
        if self._client is not None:
            return self._client
        if time.monotonic() < self._retry_at:
            return None

        timeout = self.settings.redis_timeout_seconds
        client = redis.from_url(
            self.settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=timeout,
            socket_timeout=timeout,
        )
        try:
            await asyncio.wait_for(client.ping(), timeout)
        except Exception as e:
            self._retry_at = time.monotonic() + self.settings.redis_retry_interval_seconds
            logger.warning("redis_connection_failed", error=str(e) or type(e).__name__)
            await client.aclose()
            return None

        self._client = client
        logger.info("redis_connected", url=self.settings.redis_url.split("@")[-1])
        return client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("redis_connection_closed")

    @staticmethod
    def _recent_key(user_id: str) -> str:
        return f"recent_notifications:{user_id}"

    async def increment_recent_notifications(self, user_id: str) -> int:
        """Count one delivered notification in the user's rolling window.

        Returns:
            New count, or 0 if Redis is unavailable
        """
        client = await self.get_client()
        if client is None:
            return 0

        try:
            key = self._recent_key(user_id)
            count = await asyncio.wait_for(client.incr(key), self.settings.redis_timeout_seconds)
            if count == 1:
                await asyncio.wait_for(
                    client.expire(key, self.settings.recent_notification_window_seconds),
                    self.settings.redis_timeout_seconds,
                )
            return int(count)
        except Exception as e:
            logger.warning(
                "redis_increment_recent_failed", error=str(e) or type(e).__name__, user_id=user_id
            )
            return 0

    async def get_recent_notification_count(self, user_id: str) -> int:
        """Notifications delivered to the user in the current window."""
        client = await self.get_client()
        if client is None:
            return 0

        try:
            value = await asyncio.wait_for(
                client.get(self._recent_key(user_id)), self.settings.redis_timeout_seconds
            )
            return int(value) if value is not None else 0
        except Exception as e:
            logger.warning(
                "redis_get_recent_failed", error=str(e) or type(e).__name__, user_id=user_id
            )
            return 0
