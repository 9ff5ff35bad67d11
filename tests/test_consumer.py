"""Tests for the Delivery Consumer."""
import asyncio
from datetime import timedelta

import pytest
from structlog.testing import capture_logs

from gateway.presence import InMemoryPresenceGateway
from job_queue.consumer import MESSAGE_RECEIVED_EVENT, DeliveryConsumer
from job_queue.message_queue import HandlerResult, QueueMessage
from models.schemas import DeliveryPayload, MessageKind, ScheduleState
from scheduling.scanner import ReadyScanner
from tests.factories import QUEUE, make_record


def _consumer(store, queue, gateway, clock, **kwargs) -> DeliveryConsumer:
    return DeliveryConsumer(store, queue, gateway, queue_name=QUEUE, max_retries=3, clock=clock, **kwargs)


async def _queue_due_record(store, queue, clock, **record_kwargs):
    record = make_record(send_at=clock() - timedelta(minutes=1), **record_kwargs)
    await store.insert_scheduled([record])
    await ReadyScanner(store, queue, queue_name=QUEUE, clock=clock).scan_once()
    return record


class _FlakyGateway(InMemoryPresenceGateway):
    async def notify(self, user_id, event, payload):
        raise ConnectionError("socket layer gone")


class TestDelivery:
    @pytest.mark.asyncio
    async def test_delivers_and_finalizes(self, store, users, queue, gateway, clock):
        record = await _queue_due_record(store, queue, clock)
        consumer = _consumer(store, queue, gateway, clock)

        assert await queue.drain(QUEUE, consumer.handle) == 1

        sent = await store.get_scheduled(record.id)
        assert sent.state == ScheduleState.SENT
        assert sent.sent_at == clock()
        message = await store.get_message(sent.delivered_message_id)
        assert message.kind == MessageKind.SYNTHETIC
        assert message.source_id == record.id
        assert (message.sender_id, message.receiver_id) == ("u_alice", "u_bob")

        conv = await store.resolve_or_create_conversation("u_bob", "u_alice")
        assert conv.id == message.conversation_id
        assert (await store.get_conversation(conv.id)).last_message_id == message.id
        assert consumer.stats()["delivered"] == 1

    @pytest.mark.asyncio
    async def test_receiver_notified(self, memory_store, queue, gateway, clock):
        await _queue_due_record(memory_store, queue, clock)
        await queue.drain(QUEUE, _consumer(memory_store, queue, gateway, clock).handle)

        [(event, payload)] = gateway.events_for("u_bob")
        assert event == MESSAGE_RECEIVED_EVENT
        assert payload["is_synthetic"] is True
        assert payload["message"]["content"] == "Hey! How's your day going?"
        assert payload["conversation"]["participants"] == ["u_alice", "u_bob"]
        assert gateway.events_for("u_alice") == []

    @pytest.mark.asyncio
    async def test_notify_failure_does_not_fail_delivery(self, memory_store, queue, clock):
        record = await _queue_due_record(memory_store, queue, clock)
        consumer = _consumer(memory_store, queue, _FlakyGateway(), clock)

        await queue.drain(QUEUE, consumer.handle)

        assert (await memory_store.get_scheduled(record.id)).state == ScheduleState.SENT
        assert await queue.dead_letter_length(QUEUE) == 0

    @pytest.mark.asyncio
    async def test_reuses_existing_conversation(self, memory_store, queue, gateway, clock):
        existing = await memory_store.resolve_or_create_conversation("u_bob", "u_alice")
        await _queue_due_record(memory_store, queue, clock)
        await queue.drain(QUEUE, _consumer(memory_store, queue, gateway, clock).handle)
        messages = await memory_store.list_conversation_messages(existing.id)
        assert len(messages) == 1


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_redelivered_payload_creates_one_message(self, store, users, queue, gateway, clock):
        record = await _queue_due_record(store, queue, clock)
        [original] = await queue.peek(QUEUE)
        await queue.publish(QUEUE, original.payload)
        consumer = _consumer(store, queue, gateway, clock)

        assert await queue.drain(QUEUE, consumer.handle) == 2

        sent = await store.get_scheduled(record.id)
        conv = await store.get_conversation((await store.get_message(sent.delivered_message_id)).conversation_id)
        assert len(await store.list_conversation_messages(conv.id)) == 1
        assert consumer.stats()["delivered"] == 1
        assert consumer.stats()["duplicates"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_of_same_record(self, store, users, queue, gateway, clock):
        record = await _queue_due_record(store, queue, clock)
        [original] = await queue.peek(QUEUE)
        consumers = [_consumer(store, queue, gateway, clock) for _ in range(3)]

        results = await asyncio.gather(*[c.handle(original) for c in consumers])

        assert all(r == HandlerResult.ACK for r in results)
        sent = await store.get_scheduled(record.id)
        assert sent.state == ScheduleState.SENT
        message = await store.get_message(sent.delivered_message_id)
        assert len(await store.list_conversation_messages(message.conversation_id)) == 1

    @pytest.mark.asyncio
    async def test_crash_after_message_insert_is_recovered(self, memory_store, queue, gateway, clock):
        record = await _queue_due_record(memory_store, queue, clock)
        conv = await memory_store.resolve_or_create_conversation("u_alice", "u_bob")
        first, _ = await memory_store.create_message_once(
            conv.id, "u_alice", "u_bob", record.content,
            kind=MessageKind.SYNTHETIC, source_id=record.id,
        )

        await queue.drain(QUEUE, _consumer(memory_store, queue, gateway, clock).handle)

        sent = await memory_store.get_scheduled(record.id)
        assert sent.delivered_message_id == first.id
        assert len(await memory_store.list_conversation_messages(conv.id)) == 1

    @pytest.mark.asyncio
    async def test_reused_message_not_pushed_again(self, memory_store, queue, gateway, clock):
        record = await _queue_due_record(memory_store, queue, clock)
        conv = await memory_store.resolve_or_create_conversation("u_alice", "u_bob")
        await memory_store.create_message_once(
            conv.id, "u_alice", "u_bob", record.content,
            kind=MessageKind.SYNTHETIC, source_id=record.id,
        )

        await queue.drain(QUEUE, _consumer(memory_store, queue, gateway, clock).handle)

        assert (await memory_store.get_scheduled(record.id)).state == ScheduleState.SENT
        assert gateway.events == []


class TestGuards:
    @pytest.mark.asyncio
    async def test_malformed_payload_dead_lettered(self, memory_store, queue, gateway, clock):
        await queue.publish(QUEUE, {"hello": "world"})
        consumer = _consumer(memory_store, queue, gateway, clock)

        await queue.drain(QUEUE, consumer.handle)

        assert await queue.dead_letter_length(QUEUE) == 1
        assert consumer.stats()["dropped"] == 1

    @pytest.mark.asyncio
    async def test_missing_record_dead_lettered(self, memory_store, queue, gateway, clock):
        payload = DeliveryPayload(
            scheduled_message_id="gone", sender_id="u_a", receiver_id="u_b", content="hi",
        )
        await queue.publish(QUEUE, payload.model_dump(mode="json"))

        await queue.drain(QUEUE, _consumer(memory_store, queue, gateway, clock).handle)

        [dead] = await queue.peek_dead_letters(QUEUE)
        assert dead.payload["scheduled_message_id"] == "gone"

    @pytest.mark.asyncio
    async def test_pending_record_entry_is_stale(self, memory_store, queue, gateway, clock):
        record = make_record()
        await memory_store.insert_scheduled([record])
        payload = DeliveryPayload.for_record(record, None, None)
        consumer = _consumer(memory_store, queue, gateway, clock)

        result = await consumer.handle(QueueMessage(payload=payload.model_dump(mode="json")))

        assert result == HandlerResult.ACK
        assert consumer.stats()["stale"] == 1
        assert (await memory_store.get_scheduled(record.id)).state == ScheduleState.PENDING
        assert gateway.events == []


class TestFailures:
    @pytest.mark.asyncio
    async def test_retries_until_failed(self, store, users, queue, gateway, clock):
        record = await _queue_due_record(store, queue, clock)

        async def broken(*args, **kwargs):
            raise RuntimeError("messages table locked")

        store.create_message_once = broken
        consumer = _consumer(store, queue, gateway, clock)

        assert await queue.drain(QUEUE, consumer.handle) == 3

        failed = await store.get_scheduled(record.id)
        assert failed.state == ScheduleState.FAILED
        assert failed.retry_count == 3
        assert "messages table locked" in failed.last_error
        assert await queue.dead_letter_length(QUEUE) == 1
        assert consumer.stats()["retried"] == 2
        assert consumer.stats()["failed"] == 1
        assert await store.find_due(clock() + timedelta(days=1), max_retries=3) == []

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, memory_store, queue, gateway, clock):
        record = await _queue_due_record(memory_store, queue, clock)
        real = memory_store.resolve_or_create_conversation
        calls = {"n": 0}

        async def flaky(a, b):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ConnectionError("db blip")
            return await real(a, b)

        memory_store.resolve_or_create_conversation = flaky
        await queue.drain(QUEUE, _consumer(memory_store, queue, gateway, clock).handle)

        sent = await memory_store.get_scheduled(record.id)
        assert sent.state == ScheduleState.SENT
        assert sent.retry_count == 1
        assert "db blip" in sent.last_error

    @pytest.mark.asyncio
    async def test_slow_delivery_logged(self, memory_store, queue, gateway, clock):
        await _queue_due_record(memory_store, queue, clock)
        consumer = _consumer(memory_store, queue, gateway, clock, slow_delivery_seconds=0)

        with capture_logs() as logs:
            await queue.drain(QUEUE, consumer.handle)

        assert any(entry["event"] == "delivery_slow" for entry in logs)

    @pytest.mark.asyncio
    async def test_finalize_error_counts_as_failure(self, store, users, queue, gateway, clock):
        record = await _queue_due_record(store, queue, clock)
        real = store.transition

        async def sent_write_fails(scheduled_id, from_state, to_state, **fields):
            if to_state == ScheduleState.SENT:
                raise ConnectionError("db connection reset")
            return await real(scheduled_id, from_state, to_state, **fields)

        store.transition = sent_write_fails
        consumer = _consumer(store, queue, gateway, clock)

        assert await queue.drain(QUEUE, consumer.handle) == 3

        failed = await store.get_scheduled(record.id)
        assert failed.state == ScheduleState.FAILED
        assert failed.retry_count == 3
        assert "finalize failed" in failed.last_error
        assert "db connection reset" in failed.last_error
        assert await queue.dead_letter_length(QUEUE) == 1
        # The message row is written once and pushed once across all attempts
        assert len(gateway.events_for("u_bob")) == 1
        [(event, payload)] = gateway.events_for("u_bob")
        conv = await store.get_conversation(payload["conversation"]["id"])
        assert len(await store.list_conversation_messages(conv.id)) == 1


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_background_consumer_processes_queue(self, memory_store, queue, gateway, clock):
        record = await _queue_due_record(memory_store, queue, clock)
        consumer = _consumer(memory_store, queue, gateway, clock)

        await consumer.start_background()
        for _ in range(100):
            if (await memory_store.get_scheduled(record.id)).state == ScheduleState.SENT:
                break
            await asyncio.sleep(0.01)
        await consumer.stop()

        assert (await memory_store.get_scheduled(record.id)).state == ScheduleState.SENT
        assert not consumer.running
