"""
InMemoryMessagingStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlMessagingStore
  - Conditional writes are atomic: every check-and-set runs without an
    await in between, so concurrent tasks on one event loop cannot interleave
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Optional

from database.store_base import BaseMessagingStore
from models.schemas import (
    Conversation, Message, MessageKind, ScheduledMessage, ScheduleState,
    ScheduleStats, UserRef, check_transition, ensure_aware, pair_key, utcnow,
)

logger = structlog.get_logger()

# Fields a caller may set alongside a state change
_TRANSITION_FIELDS = {"sent_at", "delivered_message_id", "last_error"}


def _apply_transition_fields(record: ScheduledMessage, to_state: ScheduleState,
                             fields: dict[str, Any], now: datetime) -> None:
    unknown = set(fields) - _TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"Unsupported transition fields: {sorted(unknown)}")

    record.state = to_state
    record.updated_at = now
    if to_state == ScheduleState.QUEUED and record.queued_at is None:
        record.queued_at = now
    if to_state == ScheduleState.SENT:
        record.sent_at = fields.get("sent_at") or now
        record.delivered_message_id = fields.get("delivered_message_id")
    if "last_error" in fields:
        record.last_error = fields["last_error"][:1000]


class InMemoryMessagingStore(BaseMessagingStore):
    """
    Full-featured in-memory store with the same interface as SqlMessagingStore.
    Returns copies of the stored models so callers cannot mutate state.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._users: dict[str, dict[str, Any]] = {}            # id → user dict
        self._scheduled: dict[str, ScheduledMessage] = {}       # id → record
        self._conversations: dict[str, Conversation] = {}       # id → conversation
        self._messages: dict[str, Message] = {}                 # id → message
        self._conversation_messages: dict[str, list[str]] = defaultdict(list)

        # Indexes
        self._pair_index: dict[str, str] = {}      # pair_key → conversation_id
        self._source_index: dict[str, str] = {}    # source_id → message_id
        logger.info("inmemory_store_initialized")

    # ── Users ─────────────────────────────────────────────

    async def upsert_user(self, user_id: str, username: str,
                          email: str = "", is_active: bool = True) -> UserRef:
        self._users[user_id] = {
            "id": user_id, "username": username,
            "email": email, "is_active": is_active,
        }
        return UserRef(id=user_id, display_name=username)

    async def get_user(self, user_id: str) -> Optional[UserRef]:
        data = self._users.get(user_id)
        return UserRef(id=data["id"], display_name=data["username"]) if data else None

    async def list_active_users(self) -> list[UserRef]:
        return [
            UserRef(id=u["id"], display_name=u["username"])
            for u in self._users.values() if u["is_active"]
        ]

    # ── Scheduled messages ────────────────────────────────

    async def insert_scheduled(self, records: list[ScheduledMessage]) -> list[ScheduledMessage]:
        duplicates = [r.id for r in records if r.id in self._scheduled]
        if duplicates:
            raise ValueError(f"Scheduled messages already exist: {duplicates}")
        for record in records:
            self._scheduled[record.id] = record.model_copy()
        return [r.model_copy() for r in records]

    async def get_scheduled(self, scheduled_id: str) -> Optional[ScheduledMessage]:
        record = self._scheduled.get(scheduled_id)
        return record.model_copy() if record else None

    async def find_due(self, now: datetime, max_retries: int,
                       limit: int = 500) -> list[ScheduledMessage]:
        due = [
            r for r in self._scheduled.values()
            if r.state == ScheduleState.PENDING
            and r.is_due(now)
            and r.retry_count < max_retries
        ]
        due.sort(key=lambda r: r.send_at)
        return [r.model_copy() for r in due[:limit]]

    async def transition(self, scheduled_id: str, from_state: ScheduleState,
                         to_state: ScheduleState, **fields) -> Optional[ScheduledMessage]:
        check_transition(from_state, to_state)
        record = self._scheduled.get(scheduled_id)
        if record is None or record.state != from_state:
            return None
        _apply_transition_fields(record, ScheduleState(to_state), fields, self._clock())
        return record.model_copy()

    async def record_failure(self, scheduled_id: str, expected_state: ScheduleState,
                             error: str, max_retries: int,
                             retry_state: ScheduleState = ScheduleState.PENDING,
                             ) -> Optional[ScheduledMessage]:
        record = self._scheduled.get(scheduled_id)
        if record is None or record.state != expected_state:
            return None
        new_count = record.retry_count + 1
        target = ScheduleState.FAILED if new_count >= max_retries else ScheduleState(retry_state)
        if target != expected_state:
            check_transition(expected_state, target)
        record.retry_count = new_count
        record.last_error = (error or "")[:1000]
        record.state = target
        record.updated_at = self._clock()
        return record.model_copy()

    async def find_stale_queued(self, older_than: datetime,
                                limit: int = 500) -> list[ScheduledMessage]:
        stale = [
            r for r in self._scheduled.values()
            if r.state == ScheduleState.QUEUED and ensure_aware(r.updated_at) < older_than
        ]
        stale.sort(key=lambda r: r.updated_at)
        return [r.model_copy() for r in stale[:limit]]

    async def touch_queued(self, scheduled_id: str,
                           older_than: datetime) -> Optional[ScheduledMessage]:
        record = self._scheduled.get(scheduled_id)
        if (record is None or record.state != ScheduleState.QUEUED
                or ensure_aware(record.updated_at) >= older_than):
            return None
        record.updated_at = self._clock()
        return record.model_copy()

    async def delete_sent_before(self, cutoff: datetime) -> int:
        expired = [
            r.id for r in self._scheduled.values()
            if r.state == ScheduleState.SENT
            and r.sent_at is not None
            and ensure_aware(r.sent_at) < cutoff
        ]
        for rid in expired:
            del self._scheduled[rid]
        return len(expired)

    async def get_statistics(self) -> ScheduleStats:
        stats = ScheduleStats(total=len(self._scheduled))
        for record in self._scheduled.values():
            name = record.state.value
            setattr(stats, name, getattr(stats, name) + 1)
        return stats

    # ── Conversations ─────────────────────────────────────

    async def resolve_or_create_conversation(self, user_a: str, user_b: str) -> Conversation:
        key = pair_key(user_a, user_b)
        existing_id = self._pair_index.get(key)
        if existing_id:
            return self._conversations[existing_id].model_copy()
        conv = Conversation(participants=[user_a, user_b])
        self._conversations[conv.id] = conv
        self._pair_index[key] = conv.id
        logger.info("conversation_created", conversation_id=conv.id, pair_key=key)
        return conv.model_copy()

    async def record_conversation_activity(self, conversation_id: str,
                                           message_id: str) -> None:
        conv = self._conversations.get(conversation_id)
        if conv:
            conv.last_message_id = message_id
            conv.last_activity = self._clock()

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conv = self._conversations.get(conversation_id)
        return conv.model_copy() if conv else None

    # ── Messages ──────────────────────────────────────────

    async def create_message_once(self, conversation_id: str, sender_id: str,
                                  receiver_id: str, content: str,
                                  kind: MessageKind = MessageKind.TEXT,
                                  source_id: Optional[str] = None) -> tuple[Message, bool]:
        if source_id and source_id in self._source_index:
            return self._messages[self._source_index[source_id]].model_copy(), False
        msg = Message(
            conversation_id=conversation_id, sender_id=sender_id,
            receiver_id=receiver_id, content=content,
            kind=kind, source_id=source_id,
        )
        self._messages[msg.id] = msg
        self._conversation_messages[conversation_id].append(msg.id)
        if source_id:
            self._source_index[source_id] = msg.id
        return msg.model_copy(), True

    async def get_message(self, message_id: str) -> Optional[Message]:
        msg = self._messages.get(message_id)
        return msg.model_copy() if msg else None

    async def list_conversation_messages(self, conversation_id: str,
                                         limit: int = 50) -> list[Message]:
        ids = self._conversation_messages.get(conversation_id, [])
        # Last N messages in chronological order
        return [self._messages[mid].model_copy() for mid in ids[-limit:]]

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "users": len(self._users),
            "scheduled_messages": len(self._scheduled),
            "conversations": len(self._conversations),
            "messages": len(self._messages),
        }
