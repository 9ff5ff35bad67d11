"""
Message Queue — Abstract interface with Redis Streams and in-memory backends.

Queue Topology:
  message_sending_queue       — Delivery payloads awaiting a consumer
  message_sending_queue:dlq   — Dead letters: dropped, expired or exhausted messages

Envelope Schema (one stream entry / queue item):
  {
      "message_id":     unique envelope id (stable across redeliveries),
      "payload":        JSON-encoded business payload,
      "delivery_count": deliveries already attempted,
      "max_deliveries": ceiling before dead-lettering,
      "ttl_seconds":    lifetime measured from published_at,
      "published_at":   ISO timestamp of the first publish,
      "last_error":     reason for the latest redelivery / dead-letter,
  }

Delivery contract:
  The handler returns a HandlerResult.
    ACK         → removed
    NACK_RETRY  → redelivered until max_deliveries or TTL, then dead-lettered
    NACK_DROP   → dead-lettered immediately
  A handler exception counts as NACK_RETRY. Expired messages are
  dead-lettered without reaching the handler. Delivery is at-least-once.
"""
from __future__ import annotations

import asyncio
import json
import uuid
import structlog
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field, asdict, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import QueueConfig

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Envelope & handler result
# ──────────────────────────────────────────────────────────────

class HandlerResult(str, Enum):
    ACK = "ack"
    NACK_RETRY = "nack_retry"
    NACK_DROP = "nack_drop"


@dataclass
class QueueMessage:
    """A unit of work on the queue."""
    payload: dict[str, Any] = field(default_factory=dict)
    message_id: str = ""
    delivery_count: int = 0
    max_deliveries: int = 5
    ttl_seconds: int = 86400
    published_at: str = ""
    last_error: str = ""

    def __post_init__(self):
        if not self.message_id:
            self.message_id = f"msg_{uuid.uuid4().hex[:16]}"
        if not self.published_at:
            self.published_at = _utcnow().isoformat()

    def to_fields(self) -> dict[str, str]:
        d = asdict(self)
        d["payload"] = json.dumps(d["payload"])
        d["delivery_count"] = str(d["delivery_count"])
        d["max_deliveries"] = str(d["max_deliveries"])
        d["ttl_seconds"] = str(d["ttl_seconds"])
        return d

    @classmethod
    def from_fields(cls, data: dict[str, Any]) -> QueueMessage:
        data = dict(data)  # copy
        raw_payload = data.get("payload", "{}")
        if isinstance(raw_payload, str):
            try:
                data["payload"] = json.loads(raw_payload)
            except json.JSONDecodeError:
                # Left as a string: the handler rejects it as malformed
                data["payload"] = raw_payload
        data["delivery_count"] = int(data.get("delivery_count", 0))
        data["max_deliveries"] = int(data.get("max_deliveries", 5))
        data["ttl_seconds"] = int(data.get("ttl_seconds", 86400))
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    def is_expired(self, now: datetime = None) -> bool:
        if self.ttl_seconds <= 0:
            return False
        try:
            published = datetime.fromisoformat(self.published_at)
        except ValueError:
            return False
        if published.tzinfo is None:
            published = published.replace(tzinfo=timezone.utc)
        return (now or _utcnow()) >= published + timedelta(seconds=self.ttl_seconds)

    @property
    def deliveries_exhausted(self) -> bool:
        """True when this delivery was the last one allowed."""
        return self.delivery_count + 1 >= self.max_deliveries

    def redelivery(self, error: str = "") -> QueueMessage:
        """Copy for the next delivery attempt; keeps message_id and published_at."""
        return replace(self, delivery_count=self.delivery_count + 1, last_error=error)


Handler = Callable[[QueueMessage], Awaitable[HandlerResult]]


def dead_letter_name(queue: str) -> str:
    return f"{queue}:dlq"


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """Abstract message queue interface."""

    def __init__(self, max_deliveries: int = 5, ttl_seconds: int = 86400):
        self.max_deliveries = max_deliveries
        self.ttl_seconds = ttl_seconds
        self._running = False

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    async def publish(self, queue: str, payload: dict[str, Any]) -> QueueMessage:
        """Durably append a payload. Returns once the backend accepted it."""
        message = QueueMessage(
            payload=payload,
            max_deliveries=self.max_deliveries,
            ttl_seconds=self.ttl_seconds,
        )
        await self._append(queue, message)
        logger.info("queue_message_published",
                    queue=queue,
                    message_id=message.message_id)
        return message

    @abstractmethod
    async def consume(
        self,
        queue: str,
        handler: Handler,
        consumer_group: str = "default",
        consumer_name: str = "",
    ):
        """
        Start consuming from a queue, one message at a time.
        Blocks until stop() is called or the task is cancelled.
        """
        ...

    def stop(self):
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @abstractmethod
    async def queue_length(self, queue: str) -> int:
        """Return the number of undelivered or unacknowledged messages."""
        ...

    async def dead_letter_length(self, queue: str) -> int:
        return await self.queue_length(dead_letter_name(queue))

    @abstractmethod
    async def peek_dead_letters(self, queue: str, count: int = 10) -> list[QueueMessage]:
        ...

    @abstractmethod
    async def _append(self, queue: str, message: QueueMessage):
        """Write an envelope to the named queue."""
        ...

    # ── Shared delivery policy ────────────────────────────────

    async def _dispatch(self, queue: str, message: QueueMessage, handler: Handler) -> HandlerResult:
        """Run the handler for one delivery and settle the outcome."""
        if message.is_expired():
            await self._dead_letter(queue, message, "ttl_expired")
            return HandlerResult.NACK_DROP

        error = ""
        try:
            result = await handler(message)
        except Exception as e:
            logger.error("queue_handler_error",
                         queue=queue,
                         message_id=message.message_id,
                         error=str(e))
            result, error = HandlerResult.NACK_RETRY, str(e)

        if result is None:
            result = HandlerResult.ACK

        if result == HandlerResult.ACK:
            logger.debug("queue_message_acked", queue=queue, message_id=message.message_id)
        elif result == HandlerResult.NACK_DROP:
            await self._dead_letter(queue, message, error or "dropped_by_handler")
        elif message.deliveries_exhausted:
            await self._dead_letter(queue, message, error or "max_deliveries_exceeded")
        else:
            retry_message = message.redelivery(error)
            await self._append(queue, retry_message)
            logger.info("queue_message_requeued",
                        queue=queue,
                        message_id=message.message_id,
                        delivery_count=retry_message.delivery_count)
        return result

    async def _dead_letter(self, queue: str, message: QueueMessage, reason: str):
        dead = replace(message, last_error=reason)
        await self._append(dead_letter_name(queue), dead)
        logger.warning("queue_message_dead_lettered",
                       queue=queue,
                       message_id=message.message_id,
                       deliveries=message.delivery_count + 1,
                       reason=reason)


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by Redis Streams + consumer groups.

    - Entries are appended with XADD (persisted with the Redis AOF/RDB policy)
    - Consumers read with XREADGROUP; an entry stays in the group's pending
      list until it is acknowledged
    - Entries left pending by a crashed consumer are taken over with
      XAUTOCLAIM once idle for ``claim_idle_ms``
    - Retries are re-appended with an incremented delivery_count; the
      original entry is then acknowledged and deleted
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        max_deliveries: int = 5,
        ttl_seconds: int = 86400,
        claim_idle_ms: int = 60000,
        block_ms: int = 2000,
    ):
        super().__init__(max_deliveries=max_deliveries, ttl_seconds=ttl_seconds)
        self._redis_url = redis_url
        self._redis = None
        self.claim_idle_ms = claim_idle_ms
        self.block_ms = block_ms

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url.split("@")[-1])

    async def close(self):
        self._running = False
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _ensure_group(self, queue: str, group: str):
        """Create consumer group if it doesn't exist."""
        try:
            await self._redis.xgroup_create(queue, group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    @retry(
        retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, max=2),
        reraise=True,
    )
    async def _append(self, queue: str, message: QueueMessage):
        await self._redis.xadd(queue, message.to_fields())

    async def consume(
        self,
        queue: str,
        handler: Handler,
        consumer_group: str = "default",
        consumer_name: str = "",
    ):
        if not consumer_name:
            consumer_name = f"worker_{uuid.uuid4().hex[:8]}"

        await self._ensure_group(queue, consumer_group)
        self._running = True
        logger.info("consumer_started",
                    queue=queue,
                    group=consumer_group,
                    consumer=consumer_name)

        while self._running:
            try:
                entries = await self._claim_abandoned(queue, consumer_group, consumer_name)
                if not entries:
                    entries = await self._read_new(queue, consumer_group, consumer_name)
                for entry_id, fields, previous_deliveries in entries:
                    message = QueueMessage.from_fields(fields)
                    if previous_deliveries:
                        message = replace(
                            message,
                            delivery_count=message.delivery_count + previous_deliveries,
                        )
                    await self._dispatch(queue, message, handler)
                    await self._settle(queue, consumer_group, entry_id)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("consumer_error", queue=queue, error=str(e))
                await asyncio.sleep(1)

        logger.info("consumer_stopped", queue=queue, consumer=consumer_name)

    async def _read_new(self, queue: str, group: str, consumer: str):
        response = await self._redis.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={queue: ">"},
            count=1,
            block=self.block_ms,
        )
        entries = []
        for _stream, stream_messages in response or []:
            for entry_id, fields in stream_messages:
                entries.append((entry_id, fields, 0))
        return entries

    async def _claim_abandoned(self, queue: str, group: str, consumer: str):
        """Take over one entry another consumer received but never acknowledged."""
        response = await self._redis.xautoclaim(
            queue, group, consumer,
            min_idle_time=self.claim_idle_ms,
            start_id="0-0",
            count=1,
        )
        claimed = response[1] if len(response) > 1 else []
        entries = []
        for entry_id, fields in claimed:
            if not fields:
                # Deleted while pending
                await self._settle(queue, group, entry_id)
                continue
            pending = await self._redis.xpending_range(
                queue, group, min=entry_id, max=entry_id, count=1,
            )
            times_delivered = pending[0]["times_delivered"] if pending else 2
            logger.warning("queue_message_reclaimed",
                           queue=queue,
                           entry_id=entry_id,
                           times_delivered=times_delivered)
            # The current delivery is not an earlier one
            entries.append((entry_id, fields, max(times_delivered - 1, 1)))
        return entries

    async def _settle(self, queue: str, group: str, entry_id: str):
        pipe = self._redis.pipeline()
        pipe.xack(queue, group, entry_id)
        pipe.xdel(queue, entry_id)
        await pipe.execute()

    async def queue_length(self, queue: str) -> int:
        return await self._redis.xlen(queue)

    async def peek_dead_letters(self, queue: str, count: int = 10) -> list[QueueMessage]:
        messages = await self._redis.xrange(dead_letter_name(queue), count=count)
        return [QueueMessage.from_fields(fields) for _, fields in messages]


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue backed by asyncio primitives.
    Single-process only — no consumer groups or persistence.
    """

    def __init__(self, max_deliveries: int = 5, ttl_seconds: int = 86400,
                 poll_timeout: float = 0.5):
        super().__init__(max_deliveries=max_deliveries, ttl_seconds=ttl_seconds)
        self._queues: dict[str, asyncio.Queue] = {}
        self._poll_timeout = poll_timeout

    def _get_queue(self, name: str) -> asyncio.Queue:
        if name not in self._queues:
            self._queues[name] = asyncio.Queue()
        return self._queues[name]

    async def connect(self):
        logger.info("inmemory_queue_connected")

    async def close(self):
        self._running = False

    async def _append(self, queue: str, message: QueueMessage):
        await self._get_queue(queue).put(message)

    async def consume(
        self,
        queue: str,
        handler: Handler,
        consumer_group: str = "default",
        consumer_name: str = "",
    ):
        q = self._get_queue(queue)
        self._running = True
        logger.info("consumer_started", queue=queue)

        while self._running:
            try:
                message = await asyncio.wait_for(q.get(), timeout=self._poll_timeout)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            try:
                await self._dispatch(queue, message, handler)
            finally:
                q.task_done()

        logger.info("consumer_stopped", queue=queue)

    async def drain(self, queue: str, handler: Handler) -> int:
        """Deliver everything currently queued, including retries it produces. Returns deliveries made."""
        q = self._get_queue(queue)
        deliveries = 0
        while not q.empty():
            message = q.get_nowait()
            try:
                await self._dispatch(queue, message, handler)
            finally:
                q.task_done()
            deliveries += 1
        return deliveries

    async def queue_length(self, queue: str) -> int:
        return self._get_queue(queue).qsize()

    async def peek(self, queue: str, count: int = 10) -> list[QueueMessage]:
        # asyncio.Queue keeps its items in a deque
        return list(self._get_queue(queue)._queue)[:count]

    async def peek_dead_letters(self, queue: str, count: int = 10) -> list[QueueMessage]:
        return await self.peek(dead_letter_name(queue), count)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_message_queue(queue_config: QueueConfig = None) -> MessageQueue:
    """Factory: create the configured queue backend. The caller owns its lifecycle."""
    config = queue_config or QueueConfig()

    if config.backend == "redis":
        return RedisMessageQueue(
            redis_url=config.redis_url,
            max_deliveries=config.max_deliveries,
            ttl_seconds=config.ttl_seconds,
            claim_idle_ms=config.claim_idle_ms,
            block_ms=config.block_ms,
        )
    if config.backend == "memory":
        return InMemoryMessageQueue(
            max_deliveries=config.max_deliveries,
            ttl_seconds=config.ttl_seconds,
        )
    raise ValueError(f"Unknown queue backend: {config.backend}")
