"""Tests for the durable queue: delivery policy, dead-lettering, Redis Streams wiring."""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from job_queue.message_queue import (
    HandlerResult, InMemoryMessageQueue, QueueMessage, RedisMessageQueue, dead_letter_name,
)
from tests.factories import QUEUE


def _recording_handler(*results):
    """Handler returning the given results in order, recording what it saw."""
    seen = []
    outcomes = list(results)

    async def handler(message: QueueMessage):
        seen.append(message)
        outcome = outcomes.pop(0) if outcomes else HandlerResult.ACK
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    handler.seen = seen
    return handler


class TestQueueMessage:
    def test_fields_round_trip(self):
        message = QueueMessage(payload={"scheduled_message_id": "sm_1"}, delivery_count=2)
        restored = QueueMessage.from_fields(message.to_fields())
        assert restored == message

    def test_non_json_payload_kept_as_string(self):
        fields = QueueMessage(payload={}).to_fields()
        fields["payload"] = "{not json"
        assert QueueMessage.from_fields(fields).payload == "{not json"

    def test_expiry(self):
        published = datetime(2026, 1, 1, tzinfo=timezone.utc)
        message = QueueMessage(ttl_seconds=60, published_at=published.isoformat())
        assert not message.is_expired(published + timedelta(seconds=59))
        assert message.is_expired(published + timedelta(seconds=60))

    def test_zero_ttl_never_expires(self):
        message = QueueMessage(ttl_seconds=0, published_at="2000-01-01T00:00:00+00:00")
        assert not message.is_expired()

    def test_dead_letter_name(self):
        assert dead_letter_name("message_sending_queue") == "message_sending_queue:dlq"


class TestDeliveryPolicy:
    @pytest.mark.asyncio
    async def test_ack_removes(self, queue):
        await queue.publish(QUEUE, {"n": 1})
        handler = _recording_handler(HandlerResult.ACK)
        assert await queue.drain(QUEUE, handler) == 1
        assert await queue.queue_length(QUEUE) == 0
        assert await queue.dead_letter_length(QUEUE) == 0

    @pytest.mark.asyncio
    async def test_none_counts_as_ack(self, queue):
        await queue.publish(QUEUE, {"n": 1})
        assert await queue.drain(QUEUE, _recording_handler(None)) == 1
        assert await queue.dead_letter_length(QUEUE) == 0

    @pytest.mark.asyncio
    async def test_nack_retry_redelivers_same_message(self, queue):
        published = await queue.publish(QUEUE, {"n": 1})
        handler = _recording_handler(HandlerResult.NACK_RETRY, HandlerResult.ACK)

        assert await queue.drain(QUEUE, handler) == 2

        first, second = handler.seen
        assert first.message_id == second.message_id == published.message_id
        assert (first.delivery_count, second.delivery_count) == (0, 1)
        assert await queue.dead_letter_length(QUEUE) == 0

    @pytest.mark.asyncio
    async def test_handler_exception_is_retry(self, queue):
        await queue.publish(QUEUE, {"n": 1})
        handler = _recording_handler(RuntimeError("boom"), HandlerResult.ACK)

        assert await queue.drain(QUEUE, handler) == 2
        assert handler.seen[1].last_error == "boom"

    @pytest.mark.asyncio
    async def test_nack_drop_dead_letters(self, queue):
        await queue.publish(QUEUE, {"n": 1})
        await queue.drain(QUEUE, _recording_handler(HandlerResult.NACK_DROP))
        [dead] = await queue.peek_dead_letters(QUEUE)
        assert dead.payload == {"n": 1}
        assert dead.last_error == "dropped_by_handler"

    @pytest.mark.asyncio
    async def test_max_deliveries_dead_letters(self):
        queue = InMemoryMessageQueue(max_deliveries=3)
        await queue.publish(QUEUE, {"n": 1})
        handler = _recording_handler(*[HandlerResult.NACK_RETRY] * 10)

        assert await queue.drain(QUEUE, handler) == 3
        [dead] = await queue.peek_dead_letters(QUEUE)
        assert dead.last_error == "max_deliveries_exceeded"

    @pytest.mark.asyncio
    async def test_expired_message_never_reaches_handler(self, queue):
        stale = QueueMessage(
            payload={"n": 1},
            ttl_seconds=60,
            published_at=(datetime.now(timezone.utc) - timedelta(minutes=5)).isoformat(),
        )
        await queue._append(QUEUE, stale)
        handler = _recording_handler()

        await queue.drain(QUEUE, handler)

        assert handler.seen == []
        [dead] = await queue.peek_dead_letters(QUEUE)
        assert dead.last_error == "ttl_expired"


class TestRedisMessageQueue:
    @pytest.fixture
    def redis_queue(self):
        q = RedisMessageQueue(max_deliveries=5, ttl_seconds=3600, claim_idle_ms=1000, block_ms=10)
        q._redis = MagicMock()
        q._redis.xadd = AsyncMock(return_value="1-0")
        q._redis.xgroup_create = AsyncMock()
        q._redis.xautoclaim = AsyncMock(return_value=["0-0", [], []])
        q._redis.xpending_range = AsyncMock(return_value=[])
        pipe = MagicMock()
        pipe.execute = AsyncMock()
        q._redis.pipeline = MagicMock(return_value=pipe)
        q._pipe = pipe
        return q

    @pytest.mark.asyncio
    async def test_publish_appends_envelope(self, redis_queue):
        message = await redis_queue.publish(QUEUE, {"scheduled_message_id": "sm_1"})
        stream, fields = redis_queue._redis.xadd.call_args.args
        assert stream == QUEUE
        assert QueueMessage.from_fields(fields).message_id == message.message_id

    @pytest.mark.asyncio
    async def test_publish_retries_transient_errors(self, redis_queue):
        redis_queue._redis.xadd = AsyncMock(side_effect=[RedisConnectionError("reset"), "1-0"])
        await redis_queue.publish(QUEUE, {"n": 1})
        assert redis_queue._redis.xadd.await_count == 2

    @pytest.mark.asyncio
    async def test_publish_gives_up_after_retries(self, redis_queue):
        redis_queue._redis.xadd = AsyncMock(side_effect=RedisConnectionError("down"))
        with pytest.raises(RedisConnectionError):
            await redis_queue.publish(QUEUE, {"n": 1})
        assert redis_queue._redis.xadd.await_count == 3

    @pytest.mark.asyncio
    async def test_existing_group_tolerated(self, redis_queue):
        redis_queue._redis.xgroup_create = AsyncMock(
            side_effect=ResponseError("BUSYGROUP Consumer Group name already exists"))
        await redis_queue._ensure_group(QUEUE, "workers")

    @pytest.mark.asyncio
    async def test_other_group_errors_raised(self, redis_queue):
        redis_queue._redis.xgroup_create = AsyncMock(side_effect=ResponseError("WRONGTYPE"))
        with pytest.raises(ResponseError):
            await redis_queue._ensure_group(QUEUE, "workers")

    @pytest.mark.asyncio
    async def test_consume_acks_and_deletes(self, redis_queue):
        fields = QueueMessage(payload={"n": 1}).to_fields()
        redis_queue._redis.xreadgroup = AsyncMock(return_value=[[QUEUE, [("5-0", fields)]]])

        async def handler(message):
            redis_queue.stop()
            return HandlerResult.ACK

        await redis_queue.consume(QUEUE, handler, consumer_group="workers", consumer_name="w1")

        redis_queue._pipe.xack.assert_called_once_with(QUEUE, "workers", "5-0")
        redis_queue._pipe.xdel.assert_called_once_with(QUEUE, "5-0")

    @pytest.mark.asyncio
    async def test_reclaimed_entry_counts_previous_deliveries(self, redis_queue):
        fields = QueueMessage(payload={"n": 1}).to_fields()
        redis_queue._redis.xautoclaim = AsyncMock(return_value=["0-0", [("7-0", fields)], []])
        redis_queue._redis.xpending_range = AsyncMock(return_value=[{"times_delivered": 3}])
        seen = []

        async def handler(message):
            seen.append(message)
            redis_queue.stop()
            return HandlerResult.ACK

        await redis_queue.consume(QUEUE, handler, consumer_group="workers", consumer_name="w1")

        assert seen[0].delivery_count == 2
        redis_queue._pipe.xack.assert_called_once_with(QUEUE, "workers", "7-0")
