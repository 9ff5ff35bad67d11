"""
Core data models for the AutoPair messaging pipeline.
These are the universal types shared across all modules.

A ScheduledMessage moves through an explicit state machine:

    pending ──promote──▶ queued ──deliver──▶ sent
       ▲                   │
       └──── retry ────────┤
                           └──exhausted──▶ failed

``sent`` and ``failed`` are terminal. Every store mutation is a
conditional write checked against TRANSITIONS.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from models.errors import IllegalTransitionError, MalformedPayloadError

MAX_CONTENT_LENGTH = 1000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ScheduleState(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class MessageKind(str, Enum):
    TEXT = "text"              # user-authored
    SYNTHETIC = "synthetic"    # materialized from a ScheduledMessage


# ──────────────────────────────────────────────────────────────
#  Transition table
# ──────────────────────────────────────────────────────────────

TERMINAL_STATES = frozenset({ScheduleState.SENT, ScheduleState.FAILED})

TRANSITIONS: dict[ScheduleState, frozenset[ScheduleState]] = {
    ScheduleState.PENDING: frozenset({ScheduleState.QUEUED, ScheduleState.FAILED}),
    ScheduleState.QUEUED: frozenset({ScheduleState.SENT, ScheduleState.PENDING, ScheduleState.FAILED}),
    ScheduleState.SENT: frozenset(),
    ScheduleState.FAILED: frozenset(),
}


def can_transition(from_state: ScheduleState, to_state: ScheduleState) -> bool:
    return ScheduleState(to_state) in TRANSITIONS[ScheduleState(from_state)]


def check_transition(from_state: ScheduleState, to_state: ScheduleState) -> None:
    if not can_transition(from_state, to_state):
        raise IllegalTransitionError(from_state, to_state)


# ──────────────────────────────────────────────────────────────
#  Users
# ──────────────────────────────────────────────────────────────

class UserRef(BaseModel):
    """An identity eligible for pairing."""
    id: str
    display_name: str = ""


# ──────────────────────────────────────────────────────────────
#  ScheduledMessage: the scheduling record
# ──────────────────────────────────────────────────────────────

class ScheduledMessage(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=new_id)
    sender_id: str
    receiver_id: str
    content: str = Field(min_length=1, max_length=MAX_CONTENT_LENGTH)
    send_at: datetime
    state: ScheduleState = ScheduleState.PENDING
    queued_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_message_id: Optional[str] = None
    retry_count: int = 0
    last_error: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _distinct_participants(self) -> ScheduledMessage:
        if self.sender_id == self.receiver_id:
            raise ValueError("sender and receiver must differ")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def is_due(self, now: datetime) -> bool:
        return ensure_aware(self.send_at) <= now


class ScheduleStats(BaseModel):
    total: int = 0
    pending: int = 0
    queued: int = 0
    sent: int = 0
    failed: int = 0


# ──────────────────────────────────────────────────────────────
#  Conversations & messages
# ──────────────────────────────────────────────────────────────

def pair_key(user_a: str, user_b: str) -> str:
    """Canonical, order-independent key for a participant pair."""
    if user_a == user_b:
        raise ValueError("a conversation needs two distinct participants")
    first, second = sorted((user_a, user_b))
    return f"{first}:{second}"


class Conversation(BaseModel):
    id: str = Field(default_factory=new_id)
    participants: list[str]
    pair_key: str = ""
    last_message_id: Optional[str] = None
    last_activity: datetime = Field(default_factory=utcnow)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _canonical_participants(self) -> Conversation:
        if len(set(self.participants)) != 2 or len(self.participants) != 2:
            raise ValueError("a conversation has exactly two distinct participants")
        self.participants = sorted(self.participants)
        if not self.pair_key:
            self.pair_key = pair_key(*self.participants)
        return self


class Message(BaseModel):
    id: str = Field(default_factory=new_id)
    conversation_id: str
    sender_id: str
    receiver_id: str
    content: str = Field(max_length=MAX_CONTENT_LENGTH)
    kind: MessageKind = MessageKind.TEXT
    source_id: Optional[str] = None           # ScheduledMessage.id for synthetic messages
    created_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Queue payload
# ──────────────────────────────────────────────────────────────

class DeliveryPayload(BaseModel):
    """What the scanner publishes and the consumer reads, one per scheduled message."""
    scheduled_message_id: str
    sender_id: str
    receiver_id: str
    content: str = Field(min_length=1, max_length=MAX_CONTENT_LENGTH)
    sender_display_name: str = ""
    receiver_display_name: str = ""

    @classmethod
    def parse(cls, raw: Any) -> DeliveryPayload:
        if not isinstance(raw, dict):
            raise MalformedPayloadError(f"payload must be an object, got {type(raw).__name__}")
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise MalformedPayloadError(str(e)) from e

    @classmethod
    def for_record(cls, record: ScheduledMessage,
                   sender: Optional[UserRef], receiver: Optional[UserRef]) -> DeliveryPayload:
        return cls(
            scheduled_message_id=record.id,
            sender_id=record.sender_id,
            receiver_id=record.receiver_id,
            content=record.content,
            sender_display_name=sender.display_name if sender else "",
            receiver_display_name=receiver.display_name if receiver else "",
        )
