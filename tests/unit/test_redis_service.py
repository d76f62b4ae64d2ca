"""Unit tests for Redis service."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from automation_engine.config import Settings
from automation_engine.services.redis_service import RedisService


@pytest.fixture
def redis_service(settings):
    """Create Redis service instance for testing."""
    return RedisService(settings)


@pytest.fixture
def mock_redis_client():
    """Create mock Redis client."""
    return AsyncMock()


@pytest.fixture
def fast_redis_service():
    """Redis service with a short command timeout."""
    return RedisService(Settings(_env_file=None, openai_api_key="", redis_timeout_seconds=0.01))


async def hang(*args):
    await asyncio.Event().wait()


class TestRecentNotifications:
    """Tests for the recent-notification counter."""

    @pytest.mark.asyncio
    async def test_first_increment_sets_window(self, redis_service, mock_redis_client, settings):
        mock_redis_client.incr.return_value = 1
        with patch.object(redis_service, "get_client", AsyncMock(return_value=mock_redis_client)):
            count = await redis_service.increment_recent_notifications("user-1")

        assert count == 1
        mock_redis_client.incr.assert_awaited_once_with("recent_notifications:user-1")
        mock_redis_client.expire.assert_awaited_once_with(
            "recent_notifications:user-1", settings.recent_notification_window_seconds
        )

    @pytest.mark.asyncio
    async def test_later_increments_keep_window(self, redis_service, mock_redis_client):
        mock_redis_client.incr.return_value = 3
        with patch.object(redis_service, "get_client", AsyncMock(return_value=mock_redis_client)):
            assert await redis_service.increment_recent_notifications("user-1") == 3

        mock_redis_client.expire.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_count(self, redis_service, mock_redis_client):
        mock_redis_client.get.return_value = "7"
        with patch.object(redis_service, "get_client", AsyncMock(return_value=mock_redis_client)):
            assert await redis_service.get_recent_notification_count("user-1") == 7

    @pytest.mark.asyncio
    async def test_missing_key_is_zero(self, redis_service, mock_redis_client):
        mock_redis_client.get.return_value = None
        with patch.object(redis_service, "get_client", AsyncMock(return_value=mock_redis_client)):
            assert await redis_service.get_recent_notification_count("user-1") == 0

    @pytest.mark.asyncio
    async def test_redis_unavailable_graceful_degradation(self, redis_service):
        """Counters read as zero when Redis is unavailable."""
        with patch.object(redis_service, "get_client", AsyncMock(return_value=None)):
            assert await redis_service.increment_recent_notifications("user-1") == 0
            assert await redis_service.get_recent_notification_count("user-1") == 0

    @pytest.mark.asyncio
    async def test_command_errors_are_contained(self, redis_service, mock_redis_client):
        mock_redis_client.incr.side_effect = ConnectionError("reset")
        mock_redis_client.get.side_effect = ConnectionError("reset")
        with patch.object(redis_service, "get_client", AsyncMock(return_value=mock_redis_client)):
            assert await redis_service.increment_recent_notifications("user-1") == 0
            assert await redis_service.get_recent_notification_count("user-1") == 0


class TestConnection:
    """Tests for client lifecycle."""

    @pytest.mark.asyncio
    async def test_connection_failure_returns_none(self, redis_service):
        client = AsyncMock()
        client.ping.side_effect = ConnectionError("refused")
        with patch("automation_engine.services.redis_service.redis.from_url", return_value=client):
            assert await redis_service.get_client() is None

    @pytest.mark.asyncio
    async def test_client_is_reused_and_closed(self, redis_service):
        client = AsyncMock()
        with patch(
            "automation_engine.services.redis_service.redis.from_url", return_value=client
        ) as from_url:
            assert await redis_service.get_client() is client
            assert await redis_service.get_client() is client

        from_url.assert_called_once()
        await redis_service.close()
        client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_client_uses_socket_timeouts(self, redis_service, settings):
        with patch(
            "automation_engine.services.redis_service.redis.from_url", return_value=AsyncMock()
        ) as from_url:
            await redis_service.get_client()

        kwargs = from_url.call_args.kwargs
        assert kwargs["socket_connect_timeout"] == settings.redis_timeout_seconds
        assert kwargs["socket_timeout"] == settings.redis_timeout_seconds

    @pytest.mark.asyncio
    async def test_failed_client_is_closed(self, redis_service):
        client = AsyncMock()
        client.ping.side_effect = ConnectionError("refused")
        with patch("automation_engine.services.redis_service.redis.from_url", return_value=client):
            await redis_service.get_client()

        client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_hung_ping_times_out(self, fast_redis_service):
        client = AsyncMock()
        client.ping.side_effect = hang
        with patch("automation_engine.services.redis_service.redis.from_url", return_value=client):
            assert await asyncio.wait_for(fast_redis_service.get_client(), 1) is None

        client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reconnect_waits_for_retry_interval(self, redis_service):
        client = AsyncMock()
        client.ping.side_effect = ConnectionError("refused")
        with patch(
            "automation_engine.services.redis_service.redis.from_url", return_value=client
        ) as from_url:
            assert await redis_service.get_client() is None
            assert await redis_service.get_recent_notification_count("user-1") == 0

        from_url.assert_called_once()


class TestCommandTimeouts:
    """Tests for commands against an unresponsive server."""

    @pytest.mark.asyncio
    async def test_hung_get_reads_zero(self, fast_redis_service, mock_redis_client):
        mock_redis_client.get.side_effect = hang
        with patch.object(
            fast_redis_service, "get_client", AsyncMock(return_value=mock_redis_client)
        ):
            count = await asyncio.wait_for(
                fast_redis_service.get_recent_notification_count("user-1"), 1
            )

        assert count == 0

    @pytest.mark.asyncio
    async def test_hung_increment_reads_zero(self, fast_redis_service, mock_redis_client):
        mock_redis_client.incr.side_effect = hang
        with patch.object(
            fast_redis_service, "get_client", AsyncMock(return_value=mock_redis_client)
        ):
            count = await asyncio.wait_for(
                fast_redis_service.increment_recent_notifications("user-1"), 1
            )

        assert count == 0
