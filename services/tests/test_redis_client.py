"""Tests for the shared Redis connection."""

from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from docklytask.redis import client as redis_client


@pytest.fixture(autouse=True)
def _no_shared_client(monkeypatch):
    monkeypatch.setattr(redis_client, "_redis", None)


def _fake_client(ping=True):
    client = AsyncMock()
    if isinstance(ping, Exception):
        client.ping.side_effect = ping
    else:
        client.ping.return_value = ping
    return client


class TestInitRedis:
    @patch("docklytask.redis.client.aioredis.from_url")
    async def test_url_override_and_timeouts(self, mock_from_url):
        mock_from_url.return_value = _fake_client()

        client = await redis_client.init_redis("redis://cache:6380/2")

        assert client is redis_client.get_redis_client()
        url = mock_from_url.call_args.args[0]
        options = mock_from_url.call_args.kwargs
        assert url == "redis://cache:6380/2"
        assert options["decode_responses"] is True
        assert options["socket_timeout"] == options["socket_connect_timeout"]

    @patch("docklytask.redis.client.aioredis.from_url")
    async def test_defaults_to_configured_url(self, mock_from_url):
        mock_from_url.return_value = _fake_client()

        await redis_client.init_redis()

        assert mock_from_url.call_args.args[0].startswith("redis://")

    @patch("docklytask.redis.client.aioredis.from_url")
    async def test_unreachable_server_does_not_stop_startup(self, mock_from_url):
        mock_from_url.return_value = _fake_client(RedisConnectionError("refused"))

        client = await redis_client.init_redis("redis://nowhere:6379")

        assert redis_client.get_redis_client() is client
        assert await redis_client.get_redis_health() is False


class TestRedisLifecycle:
    def test_client_before_init_raises(self):
        with pytest.raises(RuntimeError, match="not initialized"):
            redis_client.get_redis_client()

    async def test_health_without_client(self):
        assert await redis_client.get_redis_health() is False

    async def test_health_pings(self, monkeypatch):
        monkeypatch.setattr(redis_client, "_redis", _fake_client())
        assert await redis_client.get_redis_health() is True

    async def test_close_releases_client(self, monkeypatch):
        fake = _fake_client()
        monkeypatch.setattr(redis_client, "_redis", fake)

        await redis_client.close_redis()
        await redis_client.close_redis()

        fake.aclose.assert_awaited_once()
        with pytest.raises(RuntimeError):
            redis_client.get_redis_client()
