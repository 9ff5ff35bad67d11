"""
SqlMessagingStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Every state change is a single ``UPDATE … WHERE id = :id AND state = :from``;
the affected row count tells the caller whether its write won. Uniqueness
races (conversation per pair, message per scheduled record) are settled by
UNIQUE constraints: the loser catches IntegrityError and re-reads the winner.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import IntegrityError

from database.models import ConversationRow, MessageRow, ScheduledMessageRow, UserRow
from database.session import Database
from database.store_base import BaseMessagingStore
from models.schemas import (
    Conversation, Message, MessageKind, ScheduledMessage, ScheduleState,
    ScheduleStats, UserRef, check_transition, ensure_aware, pair_key, utcnow,
)

logger = structlog.get_logger()

_TRANSITION_FIELDS = {"sent_at", "delivered_message_id", "last_error"}


class SqlMessagingStore(BaseMessagingStore):
    """
    Persistent messaging store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, database: Database, clock: Callable[[], datetime] = utcnow):
        self._db = database
        self._clock = clock

    async def connect(self) -> None:
        await self._db.connect()

    async def close(self) -> None:
        await self._db.close()

    # ── User operations ────────────────────────────────────

    async def upsert_user(self, user_id: str, username: str,
                          email: str = "", is_active: bool = True) -> UserRef:
        async with self._db.session() as db:
            existing = await db.get(UserRow, user_id)
            if existing:
                existing.username = username
                existing.email = email
                existing.is_active = is_active
            else:
                db.add(UserRow(id=user_id, username=username, email=email, is_active=is_active))
        return UserRef(id=user_id, display_name=username)

    async def get_user(self, user_id: str) -> Optional[UserRef]:
        async with self._db.session() as db:
            row = await db.get(UserRow, user_id)
            return UserRef(id=row.id, display_name=row.username) if row else None

    async def list_active_users(self) -> list[UserRef]:
        async with self._db.session() as db:
            stmt = select(UserRow).where(UserRow.is_active.is_(True)).order_by(UserRow.created_at)
            result = await db.execute(stmt)
            return [UserRef(id=r.id, display_name=r.username) for r in result.scalars()]

    # ── Scheduled message operations ───────────────────────

    async def insert_scheduled(self, records: list[ScheduledMessage]) -> list[ScheduledMessage]:
        async with self._db.session() as db:
            db.add_all([
                ScheduledMessageRow(
                    id=r.id,
                    sender_id=r.sender_id,
                    receiver_id=r.receiver_id,
                    content=r.content,
                    send_at=r.send_at,
                    state=r.state.value,
                    retry_count=r.retry_count,
                    last_error=r.last_error,
                    created_at=r.created_at,
                    updated_at=r.updated_at,
                )
                for r in records
            ])
        return records

    async def get_scheduled(self, scheduled_id: str) -> Optional[ScheduledMessage]:
        async with self._db.session() as db:
            row = await db.get(ScheduledMessageRow, scheduled_id)
            return self._row_to_record(row) if row else None

    async def find_due(self, now: datetime, max_retries: int,
                       limit: int = 500) -> list[ScheduledMessage]:
        async with self._db.session() as db:
            stmt = (
                select(ScheduledMessageRow)
                .where(
                    ScheduledMessageRow.send_at <= now,
                    ScheduledMessageRow.state == ScheduleState.PENDING.value,
                    ScheduledMessageRow.retry_count < max_retries,
                )
                .order_by(ScheduledMessageRow.send_at)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_record(r) for r in result.scalars()]

    async def transition(self, scheduled_id: str, from_state: ScheduleState,
                         to_state: ScheduleState, **fields) -> Optional[ScheduledMessage]:
        check_transition(from_state, to_state)
        to_state = ScheduleState(to_state)
        unknown = set(fields) - _TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Unsupported transition fields: {sorted(unknown)}")

        now = self._clock()
        values: dict[str, Any] = {"state": to_state.value, "updated_at": now}
        if to_state == ScheduleState.QUEUED:
            values["queued_at"] = func.coalesce(ScheduledMessageRow.queued_at, now)
        if to_state == ScheduleState.SENT:
            values["sent_at"] = fields.get("sent_at") or now
            values["delivered_message_id"] = fields.get("delivered_message_id")
        if "last_error" in fields:
            values["last_error"] = fields["last_error"][:1000]

        stmt = (
            update(ScheduledMessageRow)
            .where(
                ScheduledMessageRow.id == scheduled_id,
                ScheduledMessageRow.state == ScheduleState(from_state).value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._db.session() as db:
            result = await db.execute(stmt)
            if result.rowcount != 1:
                return None
            row = await db.get(ScheduledMessageRow, scheduled_id)
            return self._row_to_record(row)

    async def record_failure(self, scheduled_id: str, expected_state: ScheduleState,
                             error: str, max_retries: int,
                             retry_state: ScheduleState = ScheduleState.PENDING,
                             ) -> Optional[ScheduledMessage]:
        expected_state = ScheduleState(expected_state)
        retry_state = ScheduleState(retry_state)
        check_transition(expected_state, ScheduleState.FAILED)
        if retry_state != expected_state:
            check_transition(expected_state, retry_state)

        new_count = ScheduledMessageRow.retry_count + 1
        # state is assigned before retry_count: MySQL evaluates SET left to right
        stmt = (
            update(ScheduledMessageRow)
            .where(
                ScheduledMessageRow.id == scheduled_id,
                ScheduledMessageRow.state == expected_state.value,
            )
            .ordered_values(
                (ScheduledMessageRow.state, case(
                    (new_count >= max_retries, ScheduleState.FAILED.value),
                    else_=retry_state.value,
                )),
                (ScheduledMessageRow.retry_count, new_count),
                (ScheduledMessageRow.last_error, (error or "")[:1000]),
                (ScheduledMessageRow.updated_at, self._clock()),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._db.session() as db:
            result = await db.execute(stmt)
            if result.rowcount != 1:
                return None
            row = await db.get(ScheduledMessageRow, scheduled_id)
            return self._row_to_record(row)

    async def find_stale_queued(self, older_than: datetime,
                                limit: int = 500) -> list[ScheduledMessage]:
        async with self._db.session() as db:
            stmt = (
                select(ScheduledMessageRow)
                .where(
                    ScheduledMessageRow.state == ScheduleState.QUEUED.value,
                    ScheduledMessageRow.updated_at < older_than,
                )
                .order_by(ScheduledMessageRow.updated_at)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_record(r) for r in result.scalars()]

    async def touch_queued(self, scheduled_id: str,
                           older_than: datetime) -> Optional[ScheduledMessage]:
        stmt = (
            update(ScheduledMessageRow)
            .where(
                ScheduledMessageRow.id == scheduled_id,
                ScheduledMessageRow.state == ScheduleState.QUEUED.value,
                ScheduledMessageRow.updated_at < older_than,
            )
            .values(updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        async with self._db.session() as db:
            result = await db.execute(stmt)
            if result.rowcount != 1:
                return None
            row = await db.get(ScheduledMessageRow, scheduled_id)
            return self._row_to_record(row)

    async def delete_sent_before(self, cutoff: datetime) -> int:
        async with self._db.session() as db:
            stmt = (
                delete(ScheduledMessageRow)
                .where(
                    ScheduledMessageRow.state == ScheduleState.SENT.value,
                    ScheduledMessageRow.sent_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            return result.rowcount or 0

    async def get_statistics(self) -> ScheduleStats:
        async with self._db.session() as db:
            stmt = (
                select(ScheduledMessageRow.state, func.count())
                .group_by(ScheduledMessageRow.state)
            )
            result = await db.execute(stmt)
            stats = ScheduleStats()
            for state, count in result.all():
                setattr(stats, state, count)
                stats.total += count
            return stats

    # ── Conversation operations ────────────────────────────

    async def resolve_or_create_conversation(self, user_a: str, user_b: str) -> Conversation:
        key = pair_key(user_a, user_b)
        existing = await self._find_conversation_by_key(key)
        if existing:
            return existing

        first, second = sorted((user_a, user_b))
        try:
            async with self._db.session() as db:
                row = ConversationRow(
                    pair_key=key, participant_a=first, participant_b=second,
                )
                db.add(row)
                await db.flush()
                conv = self._row_to_conversation(row)
            logger.info("conversation_created", conversation_id=conv.id, pair_key=key)
            return conv
        except IntegrityError:
            # Another delivery created it first
            logger.debug("conversation_create_race", pair_key=key)
            existing = await self._find_conversation_by_key(key)
            if existing is None:
                raise
            return existing

    async def _find_conversation_by_key(self, key: str) -> Optional[Conversation]:
        async with self._db.session() as db:
            stmt = select(ConversationRow).where(ConversationRow.pair_key == key)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_conversation(row) if row else None

    async def record_conversation_activity(self, conversation_id: str,
                                           message_id: str) -> None:
        async with self._db.session() as db:
            await db.execute(
                update(ConversationRow)
                .where(ConversationRow.id == conversation_id)
                .values(last_message_id=message_id, last_activity=self._clock())
                .execution_options(synchronize_session=False)
            )

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with self._db.session() as db:
            row = await db.get(ConversationRow, conversation_id)
            return self._row_to_conversation(row) if row else None

    # ── Message operations ─────────────────────────────────

    async def create_message_once(self, conversation_id: str, sender_id: str,
                                  receiver_id: str, content: str,
                                  kind: MessageKind = MessageKind.TEXT,
                                  source_id: Optional[str] = None) -> tuple[Message, bool]:
        if source_id:
            existing = await self._find_message_by_source(source_id)
            if existing:
                return existing, False

        try:
            async with self._db.session() as db:
                row = MessageRow(
                    conversation_id=conversation_id,
                    sender_id=sender_id,
                    receiver_id=receiver_id,
                    content=content,
                    kind=MessageKind(kind).value,
                    source_id=source_id,
                )
                db.add(row)
                await db.flush()
                msg = self._row_to_message(row)
            return msg, True
        except IntegrityError:
            if not source_id:
                raise
            existing = await self._find_message_by_source(source_id)
            if existing is None:
                raise
            return existing, False

    async def _find_message_by_source(self, source_id: str) -> Optional[Message]:
        async with self._db.session() as db:
            stmt = select(MessageRow).where(MessageRow.source_id == source_id)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_message(row) if row else None

    async def get_message(self, message_id: str) -> Optional[Message]:
        async with self._db.session() as db:
            row = await db.get(MessageRow, message_id)
            return self._row_to_message(row) if row else None

    async def list_conversation_messages(self, conversation_id: str,
                                         limit: int = 50) -> list[Message]:
        async with self._db.session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.created_at.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            rows = result.scalars().all()
            return [self._row_to_message(r) for r in reversed(rows)]

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _row_to_record(row: ScheduledMessageRow) -> ScheduledMessage:
        return ScheduledMessage(
            id=row.id,
            sender_id=row.sender_id,
            receiver_id=row.receiver_id,
            content=row.content,
            send_at=ensure_aware(row.send_at),
            state=ScheduleState(row.state),
            queued_at=ensure_aware(row.queued_at),
            sent_at=ensure_aware(row.sent_at),
            delivered_message_id=row.delivered_message_id,
            retry_count=row.retry_count,
            last_error=row.last_error or "",
            created_at=ensure_aware(row.created_at),
            updated_at=ensure_aware(row.updated_at),
        )

    @staticmethod
    def _row_to_conversation(row: ConversationRow) -> Conversation:
        return Conversation(
            id=row.id,
            participants=[row.participant_a, row.participant_b],
            pair_key=row.pair_key,
            last_message_id=row.last_message_id,
            last_activity=ensure_aware(row.last_activity),
            is_active=row.is_active,
            created_at=ensure_aware(row.created_at),
        )

    @staticmethod
    def _row_to_message(row: MessageRow) -> Message:
        return Message(
            id=row.id,
            conversation_id=row.conversation_id,
            sender_id=row.sender_id,
            receiver_id=row.receiver_id,
            content=row.content,
            kind=MessageKind(row.kind),
            source_id=row.source_id,
            created_at=ensure_aware(row.created_at),
        )
