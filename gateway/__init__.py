"""
Presence gateway — pushes delivery events to connected users.
"""
from gateway.presence import (
    PresenceGateway, RedisPresenceGateway, InMemoryPresenceGateway,
    create_presence_gateway,
)

__all__ = [
    "PresenceGateway", "RedisPresenceGateway", "InMemoryPresenceGateway",
    "create_presence_gateway",
]
