"""Task queue and workers."""

from tickbot.tasks.queue import DEADLINE_EXCEEDED, RetryBackoff, TaskQueue
from tickbot.tasks.types import Task, TaskPriority, TaskStatus, TaskType
from tickbot.tasks.worker import TaskWorker

__all__ = [
    "DEADLINE_EXCEEDED",
    "RetryBackoff",
    "Task",
    "TaskPriority",
    "TaskQueue",
    "TaskStatus",
    "TaskType",
    "TaskWorker",
]
