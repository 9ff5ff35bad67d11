"""
Scheduling — deciding who greets whom and when, and moving records along.

- PairingPlanner creates the day's pending records
- ReadyScanner claims due records and publishes them to the queue
- RetentionSweep / StatsReporter keep the table small and observable
- JobScheduler runs all of the above on APScheduler triggers
"""
from scheduling.planner import PairingPlanner, PlanResult, AUTO_MESSAGE_TEMPLATES
from scheduling.scanner import ReadyScanner, ScanResult
from scheduling.retention import RetentionSweep, StatsReporter
from scheduling.jobs import JobScheduler, ScheduledJob, daily_job, interval_job

__all__ = [
    "PairingPlanner", "PlanResult", "AUTO_MESSAGE_TEMPLATES",
    "ReadyScanner", "ScanResult",
    "RetentionSweep", "StatsReporter",
    "JobScheduler", "ScheduledJob", "daily_job", "interval_job",
]
