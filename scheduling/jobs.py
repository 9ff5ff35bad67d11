"""
Background jobs on APScheduler.

    interval_job  — every N seconds (ready-scanner, statistics)
    daily_job     — cron at HH:MM UTC (planner, retention sweep)

A run's exception is logged and the schedule carries on. Overlap is
governed by ``max_instances``: a fire time that finds that many runs still
active is skipped and counted. The scanner allows several concurrent runs;
everything else allows one.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from apscheduler.events import EVENT_JOB_MAX_INSTANCES, EVENT_JOB_MISSED, JobEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = structlog.get_logger()

JobFn = Callable[[], Awaitable[Any]]


class ScheduledJob:
    """A named coroutine, its trigger, and run counters."""

    def __init__(self, name: str, fn: JobFn, trigger: BaseTrigger, max_instances: int = 1):
        if max_instances < 1:
            raise ValueError("max_instances must be at least 1")
        self.name = name
        self.fn = fn
        self.trigger = trigger
        self.max_instances = max_instances
        self.runs = 0
        self.errors = 0
        self.skipped = 0
        self.last_result: Any = None
        self.last_run_at: Optional[datetime] = None
        self._inflight: set[asyncio.Task] = set()

    @property
    def busy(self) -> bool:
        return bool(self._inflight)

    def next_run_at(self, now: Optional[datetime] = None) -> Optional[datetime]:
        return self.trigger.get_next_fire_time(None, now or datetime.now(timezone.utc))

    async def run_now(self) -> Any:
        """Run once in the caller's task. Exceptions propagate."""
        self.last_run_at = datetime.now(timezone.utc)
        result = await self.fn()
        self.runs += 1
        self.last_result = result
        return result

    async def run_scheduled(self) -> None:
        """Entry point handed to the scheduler: never raises."""
        task = asyncio.current_task()
        self._inflight.add(task)
        try:
            await self.run_now()
        except Exception as e:
            self.errors += 1
            logger.error("job_error", job=self.name, error=str(e), exc_info=True)
        finally:
            self._inflight.discard(task)

    async def cancel_inflight(self) -> None:
        tasks = [t for t in self._inflight if not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._inflight.clear()


def interval_job(name: str, fn: JobFn, seconds: float, max_instances: int = 1) -> ScheduledJob:
    if seconds <= 0:
        raise ValueError("interval seconds must be positive")
    return ScheduledJob(name, fn, IntervalTrigger(seconds=seconds, timezone=timezone.utc), max_instances)


def daily_job(name: str, fn: JobFn, hour: int, minute: int = 0) -> ScheduledJob:
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"invalid time of day {hour:02d}:{minute:02d}")
    return ScheduledJob(name, fn, CronTrigger(hour=hour, minute=minute, timezone=timezone.utc))


class JobScheduler:
    """
    Owns one AsyncIOScheduler for the pipeline's jobs.

    Usage:
        scheduler = JobScheduler()
        scheduler.add(daily_job("planner", planner.run, hour=2))
        await scheduler.start()     # needs a running event loop
        await scheduler.stop()
    """

    def __init__(self):
        self.jobs: dict[str, ScheduledJob] = {}
        self._scheduler: Optional[AsyncIOScheduler] = None

    def add(self, job: ScheduledJob) -> ScheduledJob:
        if job.name in self.jobs:
            raise ValueError(f"duplicate job name: {job.name}")
        self.jobs[job.name] = job
        return job

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def start(self) -> None:
        if self.running:
            return
        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._scheduler.add_listener(self._on_event, EVENT_JOB_MAX_INSTANCES | EVENT_JOB_MISSED)
        for job in self.jobs.values():
            self._scheduler.add_job(
                job.run_scheduled,
                trigger=job.trigger,
                id=job.name,
                name=job.name,
                max_instances=job.max_instances,
                coalesce=True,
                misfire_grace_time=None,
                replace_existing=True,
            )
        self._scheduler.start()
        for job in self.jobs.values():
            next_run = job.next_run_at()
            logger.info("job_scheduled",
                        job=job.name,
                        max_instances=job.max_instances,
                        next_run=next_run.isoformat() if next_run else None)

    async def stop(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            # AsyncIOScheduler defers shutdown to the next loop iteration
            await asyncio.sleep(0)
        self._scheduler = None
        for job in self.jobs.values():
            await job.cancel_inflight()
            logger.info("job_stopped", job=job.name, runs=job.runs, errors=job.errors,
                        skipped=job.skipped)

    def _on_event(self, event: JobEvent) -> None:
        job = self.jobs.get(event.job_id)
        if job is None:
            return
        if event.code == EVENT_JOB_MAX_INSTANCES:
            job.skipped += 1
            logger.warning("job_tick_skipped", job=job.name, reason="previous run still active")
        elif event.code == EVENT_JOB_MISSED:
            logger.warning("job_missed", job=job.name,
                           scheduled_for=str(getattr(event, "scheduled_run_time", "")))
