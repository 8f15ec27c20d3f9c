"""Tests for the Redis change-notification transport (Redis is mocked)."""
import asyncio
import json
from unittest.mock import AsyncMock, Mock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from smartassist.core.config import Settings
from smartassist.domain.dashboard import ChangeEvent, Table
from smartassist.infrastructure import redis as redis_module
from smartassist.infrastructure.notifications import LocalNotificationChannel
from smartassist.infrastructure.redis import RedisNotificationChannel
from smartassist.services.dispatcher import ChangeDispatcher
from smartassist.services.engine import build_engine


pytestmark = pytest.mark.anyio


class FakePubSub:
    """Stand-in for ``redis.asyncio.client.PubSub`` replaying canned messages.

    After the messages it either raises ``error`` or stays open like an idle
    connection.
    """

    def __init__(self, messages, error=None):
        self.messages = messages
        self.error = error
        self.psubscribe = AsyncMock()
        self.punsubscribe = AsyncMock()
        self.aclose = AsyncMock()

    async def listen(self):
        for message in self.messages:
            yield message
        if self.error is not None:
            raise self.error
        await asyncio.Event().wait()


def mock_client(pubsub=None):
    client = Mock()
    client.publish = AsyncMock(return_value=1)
    client.ping = AsyncMock(return_value=True)
    client.pubsub.return_value = pubsub or FakePubSub([])
    return client


def signal(table=Table.HELP_REQUESTS, student_id="S1"):
    return ChangeEvent(table=table.value, student_id=student_id, row_id="h1")


class TestPublish:

    async def test_publish_uses_table_channel(self):
        client = mock_client()
        channel = RedisNotificationChannel(client, channel_prefix="test:")

        await channel.publish(signal())

        name, payload = client.publish.await_args.args
        assert name == "test:help_requests"
        assert json.loads(payload)["student_id"] == "S1"


class TestHandleMessage:

    def test_decodes_and_delivers(self):
        channel = RedisNotificationChannel(mock_client(), channel_prefix="test:")
        received = []
        channel.subscribe([Table.HELP_REQUESTS], received.append)

        channel.handle_message({"type": "pmessage", "data": signal().model_dump_json()})

        assert len(received) == 1
        assert received[0].row_id == "h1"

    def test_ignores_subscription_confirmations(self):
        channel = RedisNotificationChannel(mock_client(), channel_prefix="test:")
        received = []
        channel.subscribe([Table.HELP_REQUESTS], received.append)

        channel.handle_message({"type": "psubscribe", "data": 1})

        assert received == []

    def test_drops_malformed_payload(self):
        channel = RedisNotificationChannel(mock_client(), channel_prefix="test:")
        received = []
        channel.subscribe([Table.HELP_REQUESTS], received.append)

        channel.handle_message({"type": "pmessage", "data": "{not json"})

        assert received == []


class TestLifecycle:

    async def test_reader_fans_out_messages(self):
        pubsub = FakePubSub([
            {"type": "psubscribe", "data": 1},
            {"type": "pmessage", "data": signal(Table.CODE_LOGS, "S2").model_dump_json()},
        ])
        channel = RedisNotificationChannel(mock_client(pubsub), channel_prefix="test:")
        received = []
        channel.subscribe([Table.CODE_LOGS], received.append)

        await channel.start()
        await asyncio.sleep(0.01)
        await channel.close()

        pubsub.psubscribe.assert_awaited_once_with("test:*")
        pubsub.punsubscribe.assert_awaited_once()
        assert [e.student_id for e in received] == ["S2"]
        assert channel.listener_count == 0

    async def test_reader_resubscribes_after_connection_loss(self):
        dropped = FakePubSub([], error=RedisConnectionError("connection reset"))
        healthy = FakePubSub([{"type": "pmessage", "data": signal().model_dump_json()}])
        client = mock_client()
        client.pubsub.side_effect = [dropped, healthy]
        channel = RedisNotificationChannel(client, channel_prefix="test:", reconnect_delay=0.01)
        received = []
        channel.subscribe([Table.HELP_REQUESTS], received.append)

        await channel.start()
        await asyncio.sleep(0.1)

        assert channel.listening is True
        assert client.pubsub.call_count == 2
        healthy.psubscribe.assert_awaited_once_with("test:*")
        dropped.aclose.assert_awaited_once()
        # Table-wide catch-up first, then the live signal
        assert [(e.table, e.row_id) for e in received] == [("help_requests", None), ("help_requests", "h1")]

        await channel.close()
        assert channel.listening is False

    async def test_catch_up_reaches_scoped_listeners(self):
        client = mock_client()
        client.pubsub.side_effect = [
            FakePubSub([], error=RedisConnectionError("connection reset")),
            FakePubSub([]),
        ]
        channel = RedisNotificationChannel(client, channel_prefix="test:", reconnect_delay=0.01)
        dispatcher = ChangeDispatcher(channel)
        received = []
        dispatcher.subscribe_self("S1", received.append)

        await channel.start()
        await asyncio.sleep(0.1)
        await channel.close()

        assert sorted(e.table for e in received) == ["help_requests", "student_progress"]

    async def test_not_listening_before_start(self):
        channel = RedisNotificationChannel(mock_client(), channel_prefix="test:")

        assert channel.listening is False

    async def test_connect_fails_without_redis(self):
        channel = RedisNotificationChannel(channel_prefix="test:")

        with patch.object(redis_module, "get_redis_client", AsyncMock(return_value=None)):
            with pytest.raises(RedisConnectionError):
                await channel.connect()

    async def test_get_redis_client_returns_none_when_unreachable(self):
        broken = Mock()
        broken.ping = AsyncMock(side_effect=RedisConnectionError("refused"))

        with patch.object(redis_module.aioredis, "Redis", return_value=broken):
            assert await redis_module.get_redis_client(host="unreachable", port=1) is None


class TestEngineFallback:

    async def test_falls_back_to_local_channel(self):
        config = Settings(notify_backend="redis", store_backend="memory")

        with patch.object(redis_module, "get_redis_client", AsyncMock(return_value=None)):
            engine = await build_engine(config)

        assert type(engine.channel) is LocalNotificationChannel
        await engine.close()

    async def test_uses_redis_when_reachable(self):
        config = Settings(notify_backend="redis", store_backend="memory")

        with patch.object(redis_module, "get_redis_client", AsyncMock(return_value=mock_client())):
            engine = await build_engine(config)

        assert isinstance(engine.channel, RedisNotificationChannel)
        assert engine.store.channel is engine.channel
        await engine.close()
