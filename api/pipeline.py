"""
Pipeline — wires every component from Settings and owns their lifecycle.

    store ─┬─ PairingPlanner ── cron 02:00 UTC
           ├─ ReadyScanner ──── every 60s, concurrent runs ok ──▶ queue
           ├─ RetentionSweep ── cron 03:00 UTC
           └─ StatsReporter ─── every 1h
    queue ──── DeliveryConsumer × N ──▶ store + gateway

Clients are constructed here and handed down; nothing is a module global.
"""
from __future__ import annotations

import random
import structlog
from datetime import datetime
from typing import Callable, Optional

from config.settings import Settings
from database.store_base import BaseMessagingStore
from database.store_factory import create_store
from gateway.presence import PresenceGateway, create_presence_gateway
from job_queue.consumer import DeliveryConsumer
from job_queue.message_queue import MessageQueue, create_message_queue
from models.errors import StoreUnavailableError
from models.schemas import utcnow
from scheduling.jobs import JobScheduler, daily_job, interval_job
from scheduling.planner import PairingPlanner
from scheduling.retention import RetentionSweep, StatsReporter
from scheduling.scanner import ReadyScanner

logger = structlog.get_logger()


class Pipeline:

    def __init__(
        self,
        settings: Settings,
        store: Optional[BaseMessagingStore] = None,
        queue: Optional[MessageQueue] = None,
        gateway: Optional[PresenceGateway] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        sched = settings.scheduling
        queue_cfg = settings.queue

        self.store = store or create_store(settings.database, echo=settings.debug, clock=clock)
        self.queue = queue or create_message_queue(queue_cfg)
        self.gateway = gateway or create_presence_gateway(settings.presence)

        self.planner = PairingPlanner(
            self.store, rng=rng, clock=clock,
            min_delay_hours=sched.min_delay_hours,
            max_delay_hours=sched.max_delay_hours,
        )
        self.scanner = ReadyScanner(
            self.store, self.queue,
            queue_name=queue_cfg.queue_name,
            max_retries=sched.max_retries,
            clock=clock,
            stale_queued_seconds=sched.stale_queued_seconds,
        )
        self.consumer = DeliveryConsumer(
            self.store, self.queue, self.gateway,
            queue_name=queue_cfg.queue_name,
            consumer_group=queue_cfg.consumer_group,
            max_retries=sched.max_retries,
            slow_delivery_seconds=sched.slow_delivery_seconds,
            clock=clock,
        )
        self.retention = RetentionSweep(self.store, retention_days=sched.retention_days, clock=clock)
        self.stats_reporter = StatsReporter(self.store, self.consumer)

        self.scheduler = JobScheduler()
        self.scheduler.add(daily_job("planner", self.planner.run,
                                     hour=sched.planner_hour, minute=sched.planner_minute))
        self.scheduler.add(interval_job("scanner", self.scanner.run,
                                        seconds=sched.scan_interval_seconds,
                                        max_instances=sched.scan_max_instances))
        self.scheduler.add(daily_job("retention", self.retention.run,
                                     hour=sched.retention_hour, minute=sched.retention_minute))
        self.scheduler.add(interval_job("statistics", self.stats_reporter.run,
                                        seconds=sched.stats_interval_seconds))
        self.jobs = self.scheduler.jobs
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, run_jobs: bool = True) -> None:
        """
        Connect every dependency, then start consumers and jobs.
        A connection failure here is fatal and propagates to the caller.
        """
        try:
            await self.store.connect()
            await self.queue.connect()
            await self.gateway.connect()
        except Exception as e:
            logger.critical("pipeline_start_failed", error=str(e))
            await self._close_clients()
            if isinstance(e, StoreUnavailableError):
                raise
            raise StoreUnavailableError(f"pipeline dependencies unavailable: {e}") from e

        for _ in range(max(self.settings.queue.consumer_instances, 1)):
            await self.consumer.start_background()
        if run_jobs:
            await self.scheduler.start()

        self._started = True
        logger.info("pipeline_started",
                    store=type(self.store).__name__,
                    queue=type(self.queue).__name__,
                    gateway=type(self.gateway).__name__,
                    consumers=self.settings.queue.consumer_instances)

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.consumer.stop()
        await self._close_clients()
        self._started = False
        logger.info("pipeline_stopped", **self.consumer.stats())

    async def _close_clients(self) -> None:
        for name, client in (("gateway", self.gateway), ("queue", self.queue), ("store", self.store)):
            try:
                await client.close()
            except Exception as e:
                logger.error("pipeline_close_failed", client=name, error=str(e))
