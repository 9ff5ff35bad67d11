"""
Delivery Consumer — Pulls delivery payloads from the queue and turns each
into a real conversation message.

Runs as one or more async tasks inside the application process. Each
instance handles one message at a time; for throughput, run several
instances (same consumer group) in one or many processes.

Topology:
  ┌──────────────┐       ┌──────────────────┐       ┌────────────┐
  │ Ready-Scanner│──pub──▶│ message_sending  │──────▶│  Consumer  │
  └──────────────┘       │ queue            │       │  Worker(s) │
                         └──────────────────┘       └─────┬──────┘
                                  ▲ NACK_RETRY            │
                                  └───────────────────────┤
                         ┌──────────────────┐             │
                         │  DLQ             │◀─ NACK_DROP ┘
                         └──────────────────┘

The queue is at-least-once, so every step is safe to repeat:
  - the record is re-read first; anything not ``queued`` is acknowledged
  - the message insert is keyed by the scheduled record id
  - the final ``queued → sent`` write is conditional
"""
from __future__ import annotations

import asyncio
import time
import structlog
from datetime import datetime
from typing import Callable, Optional

from database.directory import ConversationDirectory
from database.store_base import BaseMessagingStore
from gateway.presence import PresenceGateway
from job_queue.message_queue import HandlerResult, MessageQueue, QueueMessage
from models.errors import DeliveryError, MalformedPayloadError
from models.schemas import (
    Conversation, DeliveryPayload, Message, MessageKind, ScheduledMessage,
    ScheduleState, utcnow,
)

logger = structlog.get_logger()

MESSAGE_RECEIVED_EVENT = "message_received"


class DeliveryConsumer:
    """
    Consumes delivery payloads and finalizes their scheduling records.

    Usage:
        consumer = DeliveryConsumer(store, queue, gateway)
        await consumer.start()              # blocks, runs until stop()
        await consumer.start_background()   # returns immediately, runs as task
        await consumer.stop()
    """

    def __init__(
        self,
        store: BaseMessagingStore,
        queue: MessageQueue,
        gateway: PresenceGateway,
        queue_name: str = "message_sending_queue",
        consumer_group: str = "delivery-workers",
        consumer_name: str = "",
        max_retries: int = 3,
        slow_delivery_seconds: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.queue = queue
        self.gateway = gateway
        self.directory = ConversationDirectory(store)
        self.queue_name = queue_name
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name
        self.max_retries = max_retries
        self.slow_delivery_seconds = slow_delivery_seconds
        self._clock = clock
        self._tasks: list[asyncio.Task] = []
        self._running = False
        self.counters = {
            "processed": 0,
            "delivered": 0,
            "duplicates": 0,
            "stale": 0,
            "retried": 0,
            "failed": 0,
            "dropped": 0,
        }

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self):
        """Start consuming — blocks until stop() is called."""
        self._running = True
        logger.info("delivery_consumer_starting",
                    queue=self.queue_name,
                    group=self.consumer_group)

        await self.queue.consume(
            queue=self.queue_name,
            handler=self.handle,
            consumer_group=self.consumer_group,
            consumer_name=self.consumer_name,
        )

    async def start_background(self) -> asyncio.Task:
        """Start consuming in a background task. Returns the task handle."""
        self._running = True
        task = asyncio.create_task(self.start(), name=f"delivery_consumer_{len(self._tasks)}")
        self._tasks.append(task)
        return task

    async def stop(self):
        """Gracefully stop all consumer tasks."""
        self._running = False
        self.queue.stop()
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("delivery_consumer_stopped", **self.counters)

    @property
    def running(self) -> bool:
        return self._running

    def stats(self) -> dict[str, int]:
        return dict(self.counters)

    # ── Handler ───────────────────────────────────────────────

    async def handle(self, message: QueueMessage) -> HandlerResult:
        """Process one delivery; timed so a hung handler shows up in logs."""
        self.counters["processed"] += 1
        started = time.monotonic()
        try:
            return await self._handle(message)
        finally:
            elapsed = time.monotonic() - started
            if elapsed >= self.slow_delivery_seconds:
                logger.warning("delivery_slow",
                               message_id=message.message_id,
                               seconds=round(elapsed, 3))

    async def _handle(self, message: QueueMessage) -> HandlerResult:
        try:
            payload = DeliveryPayload.parse(message.payload)
        except MalformedPayloadError as e:
            logger.error("delivery_payload_malformed",
                         message_id=message.message_id,
                         error=str(e))
            self.counters["dropped"] += 1
            return HandlerResult.NACK_DROP

        record = await self.store.get_scheduled(payload.scheduled_message_id)
        if record is None:
            logger.error("scheduled_message_not_found",
                         scheduled_id=payload.scheduled_message_id,
                         message_id=message.message_id)
            self.counters["dropped"] += 1
            return HandlerResult.NACK_DROP

        if record.state == ScheduleState.SENT:
            logger.info("delivery_duplicate",
                        scheduled_id=record.id,
                        delivered_message_id=record.delivered_message_id)
            self.counters["duplicates"] += 1
            return HandlerResult.ACK

        if record.state != ScheduleState.QUEUED:
            # Reverted by reconciliation or already failed; a fresh entry will follow if needed
            logger.info("delivery_stale",
                        scheduled_id=record.id,
                        state=record.state.value)
            self.counters["stale"] += 1
            return HandlerResult.ACK

        logger.debug("delivery_processing",
                     scheduled_id=record.id,
                     sender=payload.sender_display_name or record.sender_id,
                     receiver=payload.receiver_display_name or record.receiver_id,
                     delivery_count=message.delivery_count)

        try:
            conversation, delivered, created = await self._materialize(record)
        except Exception as e:
            return await self._record_failure(record, e)

        # A reused message was already pushed on an earlier delivery
        if created:
            await self._notify(record, payload, conversation, delivered)

        try:
            return await self._finalize(record, delivered)
        except Exception as e:
            return await self._record_failure(record, DeliveryError(f"finalize failed: {e}"))

    async def _materialize(self, record: ScheduledMessage) -> tuple[Conversation, Message, bool]:
        try:
            conversation = await self.directory.resolve_or_create(record.sender_id, record.receiver_id)
        except Exception as e:
            raise DeliveryError(f"conversation lookup failed: {e}") from e

        try:
            delivered, created = await self.store.create_message_once(
                conversation_id=conversation.id,
                sender_id=record.sender_id,
                receiver_id=record.receiver_id,
                content=record.content,
                kind=MessageKind.SYNTHETIC,
                source_id=record.id,
            )
        except Exception as e:
            raise DeliveryError(f"message persistence failed: {e}") from e
        if not created:
            logger.info("delivery_message_reused", scheduled_id=record.id, message_id=delivered.id)

        try:
            await self.directory.record_activity(conversation.id, delivered.id)
        except Exception as e:
            raise DeliveryError(f"conversation update failed: {e}") from e

        return conversation, delivered, created

    async def _notify(self, record: ScheduledMessage, payload: DeliveryPayload,
                      conversation: Conversation, delivered: Message) -> None:
        """Best-effort real-time push; never fails the delivery."""
        try:
            await self.gateway.notify(record.receiver_id, MESSAGE_RECEIVED_EVENT, {
                "message": delivered.model_dump(mode="json"),
                "conversation": conversation.model_dump(mode="json"),
                "sender_display_name": payload.sender_display_name,
                "is_synthetic": True,
            })
        except Exception as e:
            logger.warning("delivery_notify_failed",
                           scheduled_id=record.id,
                           receiver_id=record.receiver_id,
                           error=str(e))

    async def _finalize(self, record: ScheduledMessage, delivered: Message) -> HandlerResult:
        updated = await self.store.transition(
            record.id, ScheduleState.QUEUED, ScheduleState.SENT,
            sent_at=self._clock(),
            delivered_message_id=delivered.id,
        )
        if updated is not None:
            self.counters["delivered"] += 1
            logger.info("delivery_complete",
                        scheduled_id=record.id,
                        message_id=delivered.id,
                        conversation_id=delivered.conversation_id)
            return HandlerResult.ACK

        current: Optional[ScheduledMessage] = await self.store.get_scheduled(record.id)
        if current is not None and current.state == ScheduleState.SENT:
            self.counters["duplicates"] += 1
            logger.info("delivery_finalized_elsewhere", scheduled_id=record.id)
        else:
            # Reverted to pending meanwhile; the next delivery reuses the same message
            self.counters["stale"] += 1
            logger.warning("delivery_finalize_conflict",
                           scheduled_id=record.id,
                           state=current.state.value if current else None)
        return HandlerResult.ACK

    async def _record_failure(self, record: ScheduledMessage, error: Exception) -> HandlerResult:
        logger.error("delivery_failed",
                     scheduled_id=record.id,
                     retry_count=record.retry_count,
                     error=str(error))
        updated = await self.store.record_failure(
            record.id, ScheduleState.QUEUED, str(error),
            max_retries=self.max_retries,
            retry_state=ScheduleState.QUEUED,
        )
        if updated is None:
            self.counters["stale"] += 1
            return HandlerResult.ACK
        if updated.is_terminal:
            self.counters["failed"] += 1
            logger.warning("scheduled_message_failed",
                           scheduled_id=record.id,
                           retry_count=updated.retry_count,
                           last_error=updated.last_error)
            return HandlerResult.NACK_DROP
        self.counters["retried"] += 1
        return HandlerResult.NACK_RETRY
