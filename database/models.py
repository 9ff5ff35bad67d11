"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - String primary keys (uuid hex) — no database-specific sequences.
  - Uniqueness that the pipeline relies on lives in the schema:
    conversations.pair_key and messages.source_id are UNIQUE, so concurrent
    resolve-or-create and redelivered materializations converge on one row.
  - Compound indexes match the scanner query (send_at, state, retry_count)
    and the retention sweep (state, sent_at).
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean, String, Integer, DateTime, Text, ForeignKey,
    Index, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Users (read-only from the pipeline's point of view)
# ──────────────────────────────────────────────────────────────

class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    username: Mapped[str] = mapped_column(String(64), nullable=False)
    email: Mapped[str] = mapped_column(String(256), default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_users_active", "is_active"),
    )


# ──────────────────────────────────────────────────────────────
#  Scheduled messages
# ──────────────────────────────────────────────────────────────

class ScheduledMessageRow(Base):
    __tablename__ = "scheduled_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False)
    receiver_id: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    send_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    state: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    queued_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str] = mapped_column(Text, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_scheduled_due", "send_at", "state", "retry_count"),
        Index("ix_scheduled_retention", "state", "sent_at"),
        Index("ix_scheduled_stale", "state", "updated_at"),
        Index("ix_scheduled_sender", "sender_id"),
        Index("ix_scheduled_receiver", "receiver_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Conversations
# ──────────────────────────────────────────────────────────────

class ConversationRow(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    pair_key: Mapped[str] = mapped_column(String(160), nullable=False)
    participant_a: Mapped[str] = mapped_column(String(64), nullable=False)
    participant_b: Mapped[str] = mapped_column(String(64), nullable=False)
    last_message_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    last_activity: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("pair_key", name="uq_conversations_pair_key"),
        Index("ix_conversations_last_activity", "last_activity"),
    )


# ──────────────────────────────────────────────────────────────
#  Messages
# ──────────────────────────────────────────────────────────────

class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(String(64), ForeignKey("conversations.id"), nullable=False)
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False)
    receiver_id: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), default="text")
    source_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("source_id", name="uq_messages_source_id"),
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
        Index("ix_messages_kind", "kind"),
    )
