"""
Presence / Notification Gateway — real-time fan-out to connected users.

The websocket layer that actually holds client connections lives elsewhere;
it subscribes to one Redis pub/sub channel per user and tracks who is online
in a shared set. This module is the pipeline's side of that contract:

    online users:  SET  online_users            (member = user id)
    events:        PUBLISH <prefix>:<user_id>   {"event": ..., "payload": ..., "sent_at": ...}

notify() is fire-and-forget: broker errors are logged and swallowed, never
raised into the delivery path.
"""
from __future__ import annotations

import json
import structlog
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from redis.exceptions import RedisError

from config.settings import PresenceConfig

logger = structlog.get_logger()

ONLINE_USERS_KEY = "online_users"


class PresenceGateway(ABC):
    """Interface for pushing events to connected users."""

    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    @abstractmethod
    async def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> bool:
        """Push an event to a user. Returns False when it could not be handed off."""
        ...

    @abstractmethod
    async def online_count(self) -> int:
        ...


def _envelope(event: str, payload: dict[str, Any]) -> str:
    return json.dumps({
        "event": event,
        "payload": payload,
        "sent_at": datetime.now(timezone.utc).isoformat(),
    }, default=str)


class RedisPresenceGateway(PresenceGateway):
    """Presence set and per-user pub/sub channels in Redis."""

    def __init__(self, redis_url: str = "redis://localhost:6379", channel_prefix: str = "user"):
        self._redis_url = redis_url
        self._prefix = channel_prefix
        self._redis = None

    def channel_for(self, user_id: str) -> str:
        return f"{self._prefix}:{user_id}"

    async def connect(self) -> None:
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        await self._redis.ping()
        logger.info("presence_gateway_connected", url=self._redis_url.split("@")[-1])

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> bool:
        try:
            receivers = await self._redis.publish(self.channel_for(user_id), _envelope(event, payload))
        except RedisError as e:
            logger.warning("presence_notify_failed", user_id=user_id, event=event, error=str(e))
            return False
        logger.debug("presence_notified", user_id=user_id, event=event, receivers=receivers)
        return True

    async def online_count(self) -> int:
        try:
            return await self._redis.scard(ONLINE_USERS_KEY)
        except RedisError as e:
            logger.error("presence_count_failed", error=str(e))
            return 0


class InMemoryPresenceGateway(PresenceGateway):
    """
    Records events instead of pushing them.
    Used in development and by tests to assert on fan-out.
    """

    def __init__(self):
        self.online: set[str] = set()
        self.events: list[tuple[str, str, dict[str, Any]]] = []   # (user_id, event, payload)

    async def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> bool:
        self.events.append((user_id, event, payload))
        return True

    async def online_count(self) -> int:
        return len(self.online)

    def events_for(self, user_id: str) -> list[tuple[str, dict[str, Any]]]:
        return [(event, payload) for uid, event, payload in self.events if uid == user_id]


def create_presence_gateway(config: PresenceConfig = None) -> PresenceGateway:
    config = config or PresenceConfig()
    if config.backend == "redis":
        return RedisPresenceGateway(redis_url=config.redis_url, channel_prefix=config.channel_prefix)
    if config.backend == "memory":
        return InMemoryPresenceGateway()
    raise ValueError(f"Unknown presence backend: {config.backend}")
