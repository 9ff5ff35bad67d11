"""
Housekeeping jobs: the daily retention sweep and the hourly statistics log.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from database.store_base import BaseMessagingStore
from models.schemas import utcnow

logger = structlog.get_logger()


class RetentionSweep:
    """Deletes sent records once their sent_at falls outside the window."""

    def __init__(self, store: BaseMessagingStore, retention_days: int = 30,
                 clock: Callable[[], datetime] = utcnow):
        if retention_days < 1:
            raise ValueError("retention_days must be at least 1")
        self.store = store
        self.retention_days = retention_days
        self._clock = clock

    def cutoff(self) -> datetime:
        return self._clock() - timedelta(days=self.retention_days)

    async def run(self) -> int:
        cutoff = self.cutoff()
        deleted = await self.store.delete_sent_before(cutoff)
        logger.info("retention_sweep_complete",
                    deleted=deleted,
                    cutoff=cutoff.isoformat(),
                    retention_days=self.retention_days)
        return deleted


class StatsReporter:
    """Logs per-state record counts, plus consumer counters when available."""

    def __init__(self, store: BaseMessagingStore, consumer: Optional[Any] = None):
        self.store = store
        self.consumer = consumer

    async def run(self) -> dict[str, Any]:
        stats = await self.store.get_statistics()
        report: dict[str, Any] = {"schedule": stats.model_dump()}
        if self.consumer is not None:
            report["consumer"] = self.consumer.stats()
        logger.info("hourly_statistics", **report)
        return report
