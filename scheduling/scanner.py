"""
Ready-Scanner — Every minute, finds pending records that have fallen due,
claims them and hands them to the queue.

Ordering per record (claim-then-publish):
  1. pending → queued      conditional write; losing a race means skip
  2. publish payload       one queue entry per successful claim
  3. on publish failure    queued → pending (or failed once retries run out)

A crash between 1 and 2 leaves a record queued with no queue entry, and a
consumer outage leaves it queued with an entry nobody reads. Either way
reconcile_stale() republishes it once it has sat for ``stale_queued_seconds``;
any duplicate entry that produces is absorbed by the consumer's guards.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from database.store_base import BaseMessagingStore
from job_queue.message_queue import MessageQueue
from models.schemas import DeliveryPayload, ScheduledMessage, ScheduleState, UserRef, utcnow

logger = structlog.get_logger()


@dataclass
class ScanResult:
    found: int = 0
    promoted: int = 0
    published: int = 0
    skipped: int = 0
    failed: int = 0
    reconciled: int = 0


class ReadyScanner:

    def __init__(
        self,
        store: BaseMessagingStore,
        queue: MessageQueue,
        queue_name: str = "message_sending_queue",
        max_retries: int = 3,
        clock: Callable[[], datetime] = utcnow,
        stale_queued_seconds: int = 900,
        batch_size: int = 500,
    ):
        self.store = store
        self.queue = queue
        self.queue_name = queue_name
        self.max_retries = max_retries
        self._clock = clock
        self.stale_queued_seconds = stale_queued_seconds
        self.batch_size = batch_size

    async def run(self) -> ScanResult:
        """One scheduled tick: scan, then sweep stale claims."""
        result = await self.scan_once()
        result.reconciled = await self.reconcile_stale()
        return result

    async def scan_once(self) -> ScanResult:
        now = self._clock()
        due = await self.store.find_due(now, self.max_retries, limit=self.batch_size)
        result = ScanResult(found=len(due))
        if not due:
            logger.debug("scan_nothing_due")
            return result

        users: dict[str, Optional[UserRef]] = {}
        for record in due:
            claimed = await self.store.transition(record.id, ScheduleState.PENDING, ScheduleState.QUEUED)
            if claimed is None:
                result.skipped += 1
                continue
            result.promoted += 1

            if await self._publish(claimed, users):
                result.published += 1
            else:
                result.failed += 1

        logger.info("scan_complete",
                    found=result.found,
                    promoted=result.promoted,
                    published=result.published,
                    skipped=result.skipped,
                    failed=result.failed)
        return result

    async def _publish(self, record: ScheduledMessage, users: dict[str, Optional[UserRef]]) -> bool:
        try:
            await self._send(record, users)
        except Exception as e:
            logger.error("scan_publish_failed", scheduled_id=record.id, error=str(e))
            await self._revert(record, f"publish failed: {e}")
            return False

        logger.debug("record_queued", scheduled_id=record.id, send_at=record.send_at.isoformat())
        return True

    async def _send(self, record: ScheduledMessage, users: dict[str, Optional[UserRef]]) -> None:
        sender = await self._user(record.sender_id, users)
        receiver = await self._user(record.receiver_id, users)
        payload = DeliveryPayload.for_record(record, sender, receiver)
        await self.queue.publish(self.queue_name, payload.model_dump(mode="json"))

    async def _revert(self, record: ScheduledMessage, error: str) -> None:
        try:
            reverted = await self.store.record_failure(
                record.id, ScheduleState.QUEUED, error,
                max_retries=self.max_retries,
                retry_state=ScheduleState.PENDING,
            )
        except Exception as e:
            # Left queued; reconcile_stale() republishes it later
            logger.error("scan_revert_failed", scheduled_id=record.id, error=str(e))
            return
        if reverted is not None:
            logger.warning("record_claim_reverted",
                           scheduled_id=record.id,
                           state=reverted.state.value,
                           retry_count=reverted.retry_count)

    async def _user(self, user_id: str, cache: dict[str, Optional[UserRef]]) -> Optional[UserRef]:
        if user_id not in cache:
            cache[user_id] = await self.store.get_user(user_id)
        return cache[user_id]

    async def reconcile_stale(self) -> int:
        """
        Republish records stuck in queued. Returns how many were republished.

        No delivery was attempted for these, so retry_count is left alone; a
        duplicate entry for a record that was merely slow is acknowledged by
        the consumer without a second message.
        """
        cutoff = self._clock() - timedelta(seconds=self.stale_queued_seconds)
        stale = await self.store.find_stale_queued(cutoff, limit=self.batch_size)
        users: dict[str, Optional[UserRef]] = {}
        republished = 0
        for record in stale:
            # Conditional refresh: concurrent sweeps republish each record once
            touched = await self.store.touch_queued(record.id, cutoff)
            if touched is None:
                continue
            try:
                await self._send(touched, users)
            except Exception as e:
                logger.error("stale_republish_failed", scheduled_id=record.id, error=str(e))
                continue
            republished += 1
            logger.warning("stale_queued_republished",
                           scheduled_id=record.id,
                           queued_at=touched.queued_at.isoformat() if touched.queued_at else None,
                           retry_count=touched.retry_count)
        return republished
