"""
Abstract Messaging Store — Interface for all storage backends.

Implementations:
  - SqlMessagingStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryMessagingStore (dict-based, single-process, no persistence)

The store is the single source of truth for scheduling records. Its only
concurrency-control primitive is ``transition()``: a conditional write that
applies only when the record is still in the expected source state.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from models.schemas import (
    Conversation, Message, MessageKind, ScheduledMessage, ScheduleState,
    ScheduleStats, UserRef,
)


class BaseMessagingStore(ABC):
    """Interface that all messaging store backends must implement."""

    async def connect(self) -> None:
        """Acquire backend resources. No-op for backends that need none."""

    async def close(self) -> None:
        """Release backend resources."""

    # ── Users ─────────────────────────────────────────────────

    @abstractmethod
    async def upsert_user(self, user_id: str, username: str,
                          email: str = "", is_active: bool = True) -> UserRef:
        ...

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserRef]:
        ...

    @abstractmethod
    async def list_active_users(self) -> list[UserRef]:
        ...

    # ── Scheduled messages ────────────────────────────────────

    @abstractmethod
    async def insert_scheduled(self, records: list[ScheduledMessage]) -> list[ScheduledMessage]:
        """Persist a planner batch in one write."""
        ...

    @abstractmethod
    async def get_scheduled(self, scheduled_id: str) -> Optional[ScheduledMessage]:
        ...

    @abstractmethod
    async def find_due(self, now: datetime, max_retries: int,
                       limit: int = 500) -> list[ScheduledMessage]:
        """Pending records with send_at <= now and retry_count < max_retries, oldest first."""
        ...

    @abstractmethod
    async def transition(self, scheduled_id: str, from_state: ScheduleState,
                         to_state: ScheduleState, **fields) -> Optional[ScheduledMessage]:
        """
        Atomically move a record from ``from_state`` to ``to_state``.

        Raises IllegalTransitionError when the pair is not in the transition
        table. Returns None (and writes nothing) when the record is missing
        or no longer in ``from_state``.
        """
        ...

    @abstractmethod
    async def record_failure(self, scheduled_id: str, expected_state: ScheduleState,
                             error: str, max_retries: int,
                             retry_state: ScheduleState = ScheduleState.PENDING,
                             ) -> Optional[ScheduledMessage]:
        """
        Atomically increment retry_count and store ``error``.

        The record moves to ``failed`` once the new count reaches
        ``max_retries``, otherwise to ``retry_state`` (which may equal
        ``expected_state``). Returns None when the record is not in
        ``expected_state``.
        """
        ...

    @abstractmethod
    async def find_stale_queued(self, older_than: datetime,
                                limit: int = 500) -> list[ScheduledMessage]:
        """Queued records whose last write is older than ``older_than``."""
        ...

    @abstractmethod
    async def touch_queued(self, scheduled_id: str,
                           older_than: datetime) -> Optional[ScheduledMessage]:
        """
        Refresh updated_at on a queued record last written before
        ``older_than``. State and retry_count are untouched. Returns None
        when the record is not queued or was refreshed by someone else.
        """
        ...

    @abstractmethod
    async def delete_sent_before(self, cutoff: datetime) -> int:
        """Delete sent records whose sent_at is before ``cutoff``. Returns the count."""
        ...

    @abstractmethod
    async def get_statistics(self) -> ScheduleStats:
        """Record counts per state."""
        ...

    # ── Conversations ─────────────────────────────────────────

    @abstractmethod
    async def resolve_or_create_conversation(self, user_a: str, user_b: str) -> Conversation:
        """Return the one conversation for the unordered pair, creating it if needed."""
        ...

    @abstractmethod
    async def record_conversation_activity(self, conversation_id: str,
                                           message_id: str) -> None:
        ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def create_message_once(self, conversation_id: str, sender_id: str,
                                  receiver_id: str, content: str,
                                  kind: MessageKind = MessageKind.TEXT,
                                  source_id: Optional[str] = None) -> tuple[Message, bool]:
        """
        Persist a message. When ``source_id`` is set and a message with the
        same source already exists, return it instead. The flag is True when
        a new row was written.
        """
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[Message]:
        ...

    @abstractmethod
    async def list_conversation_messages(self, conversation_id: str,
                                         limit: int = 50) -> list[Message]:
        ...
