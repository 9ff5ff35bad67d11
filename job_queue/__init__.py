"""
Durable Queue — Decouples scheduling from delivery.

- The Ready-Scanner PUBLISHES delivery payloads for due records
- The DeliveryConsumer CONSUMES them and materializes real messages
- Supports Redis Streams (production) and in-memory asyncio.Queue (dev)
"""
from job_queue.message_queue import (
    HandlerResult, QueueMessage, MessageQueue,
    RedisMessageQueue, InMemoryMessageQueue,
    create_message_queue, dead_letter_name,
)
from job_queue.consumer import DeliveryConsumer

__all__ = [
    "HandlerResult", "QueueMessage", "MessageQueue",
    "RedisMessageQueue", "InMemoryMessageQueue",
    "create_message_queue", "dead_letter_name",
    "DeliveryConsumer",
]
