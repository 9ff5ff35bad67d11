"""
Conversation Directory — one conversation per unordered participant pair.

resolve_or_create(A, B) and resolve_or_create(B, A) address the same
conversation: lookups go through the canonical pair key, and the store's
UNIQUE constraint (or atomic dict insert) makes concurrent creators converge.
"""
from __future__ import annotations

import structlog

from database.store_base import BaseMessagingStore
from models.schemas import Conversation

logger = structlog.get_logger()


class ConversationDirectory:
    def __init__(self, store: BaseMessagingStore):
        self.store = store

    async def resolve_or_create(self, user_a: str, user_b: str) -> Conversation:
        if user_a == user_b:
            raise ValueError("cannot open a conversation with oneself")
        return await self.store.resolve_or_create_conversation(user_a, user_b)

    async def record_activity(self, conversation_id: str, message_id: str) -> None:
        await self.store.record_conversation_activity(conversation_id, message_id)
        logger.debug("conversation_activity_recorded",
                     conversation_id=conversation_id,
                     message_id=message_id)
