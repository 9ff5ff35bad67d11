"""Tests for the presence gateways: Redis pub/sub wiring and the in-memory recorder."""
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from structlog.testing import capture_logs

from gateway.presence import ONLINE_USERS_KEY, InMemoryPresenceGateway, RedisPresenceGateway
from job_queue.consumer import MESSAGE_RECEIVED_EVENT


class TestRedisPresenceGateway:
    @pytest.fixture
    def redis_gateway(self):
        gw = RedisPresenceGateway(redis_url="redis://localhost:6379")
        gw._redis = MagicMock()
        gw._redis.publish = AsyncMock(return_value=1)
        gw._redis.scard = AsyncMock(return_value=4)
        gw._redis.aclose = AsyncMock()
        return gw

    @pytest.mark.asyncio
    async def test_notify_publishes_envelope_on_user_channel(self, redis_gateway):
        delivered = await redis_gateway.notify("u_bob", MESSAGE_RECEIVED_EVENT, {"is_synthetic": True})

        assert delivered is True
        channel, raw = redis_gateway._redis.publish.call_args.args
        assert channel == "user:u_bob"
        envelope = json.loads(raw)
        assert envelope["event"] == MESSAGE_RECEIVED_EVENT
        assert envelope["payload"] == {"is_synthetic": True}
        assert "sent_at" in envelope

    @pytest.mark.asyncio
    async def test_notify_without_subscribers_still_succeeds(self, redis_gateway):
        redis_gateway._redis.publish = AsyncMock(return_value=0)
        assert await redis_gateway.notify("u_offline", MESSAGE_RECEIVED_EVENT, {}) is True

    @pytest.mark.asyncio
    async def test_notify_broker_error_returns_false(self, redis_gateway):
        redis_gateway._redis.publish = AsyncMock(side_effect=RedisConnectionError("reset"))

        with capture_logs() as logs:
            delivered = await redis_gateway.notify("u_bob", MESSAGE_RECEIVED_EVENT, {})

        assert delivered is False
        [entry] = [e for e in logs if e["event"] == "presence_notify_failed"]
        assert entry["user_id"] == "u_bob"
        assert "reset" in entry["error"]

    @pytest.mark.asyncio
    async def test_custom_channel_prefix(self):
        gw = RedisPresenceGateway(channel_prefix="ws")
        gw._redis = MagicMock()
        gw._redis.publish = AsyncMock(return_value=1)

        await gw.notify("u_carol", "ping", {})

        assert gw._redis.publish.call_args.args[0] == "ws:u_carol"
        assert gw.channel_for("u_carol") == "ws:u_carol"

    @pytest.mark.asyncio
    async def test_online_count_reads_presence_set(self, redis_gateway):
        assert await redis_gateway.online_count() == 4
        redis_gateway._redis.scard.assert_awaited_once_with(ONLINE_USERS_KEY)

    @pytest.mark.asyncio
    async def test_online_count_broker_error_is_zero(self, redis_gateway):
        redis_gateway._redis.scard = AsyncMock(side_effect=RedisConnectionError("down"))

        with capture_logs() as logs:
            assert await redis_gateway.online_count() == 0

        assert any(e["event"] == "presence_count_failed" for e in logs)

    @pytest.mark.asyncio
    async def test_connect_pings_and_close_releases(self, monkeypatch):
        client = MagicMock()
        client.ping = AsyncMock(return_value=True)
        client.aclose = AsyncMock()
        from_url = MagicMock(return_value=client)
        monkeypatch.setattr("redis.asyncio.from_url", from_url)

        gw = RedisPresenceGateway(redis_url="redis://:secret@cache:6379/2")
        await gw.connect()
        from_url.assert_called_once_with("redis://:secret@cache:6379/2", decode_responses=True)
        client.ping.assert_awaited_once()

        await gw.close()
        client.aclose.assert_awaited_once()
        assert gw._redis is None


class TestInMemoryPresenceGateway:
    @pytest.mark.asyncio
    async def test_records_events_per_user(self):
        gw = InMemoryPresenceGateway()
        await gw.notify("u_bob", "a", {"n": 1})
        await gw.notify("u_alice", "b", {"n": 2})

        assert gw.events_for("u_bob") == [("a", {"n": 1})]
        assert len(gw.events) == 2

    @pytest.mark.asyncio
    async def test_online_count(self):
        gw = InMemoryPresenceGateway()
        gw.online.update({"u_alice", "u_bob"})
        assert await gw.online_count() == 2
