"""Cron engine, schedule store and scheduler loop."""

from tickbot.cron.expression import CronExpression, describe_cron, next_run, parse_cron
from tickbot.cron.service import SchedulerService
from tickbot.cron.store import ScheduleStore
from tickbot.cron.types import (
    BUILTIN_TEMPLATES,
    ExecutionStatus,
    ScheduleEntry,
    ScheduleExecutionRecord,
    ScheduleTemplate,
)

__all__ = [
    "BUILTIN_TEMPLATES",
    "CronExpression",
    "ExecutionStatus",
    "ScheduleEntry",
    "ScheduleExecutionRecord",
    "ScheduleStore",
    "ScheduleTemplate",
    "SchedulerService",
    "describe_cron",
    "next_run",
    "parse_cron",
]
