"""
Pairing Planner — Once a day, pairs up every active user and schedules one
greeting per pair at a random time in the next day.

    active users ──shuffle──▶ (u0,u1) (u2,u3) ... (uN-1,u0 if N odd)
                                   │
                                   ▼
                   ScheduledMessage(state=pending, send_at=now+1..24h)

The planner only writes scheduling records; the Ready-Scanner picks them up
when they fall due. Nothing here touches the queue.
"""
from __future__ import annotations

import random
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from database.store_base import BaseMessagingStore
from models.schemas import ScheduledMessage, UserRef, utcnow

logger = structlog.get_logger()

AUTO_MESSAGE_TEMPLATES: tuple[str, ...] = (
    "Hey! How's your day going?",
    "Hope you're having a great time!",
    "Just wanted to say hello! 👋",
    "What's new with you today?",
    "Sending you positive vibes! ✨",
    "Hope your week is going well!",
    "Just checking in on you!",
    "Have a wonderful day ahead!",
    "Thinking of you today! 💭",
    "Hope you're doing amazing!",
    "Wishing you a fantastic day!",
    "Just wanted to brighten your day! ☀️",
    "Hope everything is going great for you!",
    "Sending you good energy today!",
    "Have an awesome day! 🌟",
)


@dataclass
class PlanResult:
    users: int = 0
    pairs: int = 0
    created: int = 0
    error: str = ""
    record_ids: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.error


class PairingPlanner:
    """
    Builds the day's sender/receiver pairs and persists them in one batch.

    Pass a seeded ``random.Random`` and a fixed ``clock`` for reproducible runs.
    """

    def __init__(
        self,
        store: BaseMessagingStore,
        rng: Optional[random.Random] = None,
        templates: Sequence[str] = AUTO_MESSAGE_TEMPLATES,
        clock: Callable[[], datetime] = utcnow,
        min_delay_hours: int = 1,
        max_delay_hours: int = 24,
    ):
        if not templates:
            raise ValueError("at least one message template is required")
        if not 0 < min_delay_hours <= max_delay_hours:
            raise ValueError("delay window must satisfy 0 < min_delay_hours <= max_delay_hours")
        self.store = store
        self.rng = rng or random.Random()
        self.templates = tuple(templates)
        self._clock = clock
        self.min_delay_hours = min_delay_hours
        self.max_delay_hours = max_delay_hours

    def plan_pairs(self, users: Sequence[UserRef]) -> list[tuple[UserRef, UserRef]]:
        """
        Shuffle, then pair neighbours. With an odd count the last user is
        paired with the first, so everyone sends or receives at least once.
        """
        if len(users) < 2:
            return []

        shuffled = list(users)
        # Fisher–Yates
        for i in range(len(shuffled) - 1, 0, -1):
            j = self.rng.randint(0, i)
            shuffled[i], shuffled[j] = shuffled[j], shuffled[i]

        pairs = [(shuffled[i], shuffled[i + 1]) for i in range(0, len(shuffled) - 1, 2)]
        if len(shuffled) % 2:
            pairs.append((shuffled[-1], shuffled[0]))
        return pairs

    def random_send_at(self, now: datetime) -> datetime:
        hours = self.rng.randint(self.min_delay_hours, self.max_delay_hours)
        minutes = self.rng.randint(0, 59)
        return now + timedelta(hours=hours, minutes=minutes)

    def random_content(self) -> str:
        return self.rng.choice(self.templates)

    def build_records(self, pairs: Sequence[tuple[UserRef, UserRef]],
                      now: datetime) -> list[ScheduledMessage]:
        return [
            ScheduledMessage(
                sender_id=sender.id,
                receiver_id=receiver.id,
                content=self.random_content(),
                send_at=self.random_send_at(now),
                created_at=now,
                updated_at=now,
            )
            for sender, receiver in pairs
        ]

    async def run(self) -> PlanResult:
        """Daily entry point. Failures are logged and reported, never retried."""
        result = PlanResult()
        logger.info("planner_run_started")

        try:
            users = await self.store.list_active_users()
        except Exception as e:
            logger.error("planner_user_fetch_failed", error=str(e))
            result.error = str(e)
            return result

        result.users = len(users)
        if len(users) < 2:
            logger.warning("planner_not_enough_users", users=len(users))
            return result

        now = self._clock()
        pairs = self.plan_pairs(users)
        records = self.build_records(pairs, now)
        result.pairs = len(pairs)

        try:
            created = await self.store.insert_scheduled(records)
        except Exception as e:
            logger.error("planner_batch_insert_failed", pairs=len(pairs), error=str(e))
            result.error = str(e)
            return result

        result.created = len(created)
        result.record_ids = [r.id for r in created]
        logger.info("planner_run_complete",
                    users=result.users,
                    pairs=result.pairs,
                    created=result.created)

        try:
            stats = await self.store.get_statistics()
            logger.info("schedule_statistics", **stats.model_dump())
        except Exception as e:
            logger.warning("schedule_statistics_failed", error=str(e))

        return result
