"""Capability-aware task queue with bounded retries and deadline expiry."""

from __future__ import annotations

import copy
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterable

from loguru import logger

from tickbot.tasks.types import (
    Task,
    TaskPriority,
    TaskStatus,
    TaskType,
    coerce_priority,
    coerce_task_type,
)
from tickbot.utils.helpers import atomic_write_json, now_utc

DEFAULT_MAX_RETRIES = 3
DEADLINE_EXCEEDED = "deadline exceeded"


@dataclass(frozen=True)
class RetryBackoff:
    """Delay before a failed task is offered again: ``base_s * factor**(attempt-1)``.

    The default (``base_s=0``) redelivers immediately.
    """

    base_s: float = 0.0
    factor: float = 2.0
    max_s: float = 300.0

    def delay(self, attempt: int) -> timedelta:
        if self.base_s <= 0 or attempt <= 0:
            return timedelta(0)
        return timedelta(seconds=min(self.max_s, self.base_s * self.factor ** (attempt - 1)))


def _capability_set(capabilities: Iterable[str] | None) -> frozenset[str]:
    if capabilities is None:
        return frozenset()
    if isinstance(capabilities, (str, bytes)):
        raise ValueError("capabilities must be a collection of strings, not a single string")
    caps = frozenset(capabilities)
    if not all(isinstance(c, str) for c in caps):
        raise ValueError("capabilities must be strings")
    return caps


class TaskQueue:
    """Owns every task and serializes all reads-then-writes behind one lock.

    Accessors hand out copies, so callers can never change a task without
    going through a transition method.
    """

    def __init__(
        self,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_backoff: RetryBackoff | None = None,
        path: Path | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff or RetryBackoff()
        self.path = Path(path) if path else None
        self.lock = threading.RLock()
        self._clock = clock or now_utc
        self._tasks: dict[str, Task] = {}
        if self.path is not None:
            self._load()

    # ------------------------------------------------------------ persistence

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except Exception as e:
            logger.warning("Failed to read task queue {}: {}", self.path, e)
            return
        rows = raw.get("tasks") if isinstance(raw, dict) else None
        if not isinstance(rows, list):
            logger.warning("Task queue {} has invalid schema", self.path)
            return

        for row in rows:
            if not isinstance(row, dict):
                continue
            try:
                task = Task.from_dict(row)
            except ValueError as e:
                logger.warning("Skipping task record in {}: {}", self.path, e)
                continue
            self._tasks[task.id] = task
        logger.debug("Task queue: loaded {} task(s) from {}", len(self._tasks), self.path)

    def _save(self) -> None:
        if self.path is None:
            return
        try:
            atomic_write_json(self.path, {"version": 1, "tasks": [t.to_dict() for t in self._tasks.values()]})
        except OSError as e:
            logger.error("Failed to save task queue {}: {}", self.path, e)

    # -------------------------------------------------------------- accessors

    def __len__(self) -> int:
        with self.lock:
            return len(self._tasks)

    def get(self, task_id: str) -> Task | None:
        with self.lock:
            task = self._tasks.get(task_id)
            return copy.copy(task) if task else None

    def all_tasks(self, limit: int | None = 50) -> list[Task]:
        """Newest first."""
        with self.lock:
            tasks = sorted(self._tasks.values(), key=lambda t: t.created_at, reverse=True)
            return [copy.copy(t) for t in tasks[:limit]]

    def pending_tasks(self) -> list[Task]:
        """Pending tasks by priority, then FIFO."""
        with self.lock:
            return [copy.copy(t) for t in self._pending_sorted()]

    def tasks_for_device(self, device_id: str) -> list[Task]:
        with self.lock:
            tasks = [t for t in self._tasks.values() if t.assigned_device_id == device_id and t.status.is_active]
            tasks.sort(key=lambda t: (t.priority.sort_order, t.created_at))
            return [copy.copy(t) for t in tasks]

    def _pending_sorted(self) -> list[Task]:
        # stable sort over insertion order: equal timestamps claim in enqueue order
        pending = [t for t in self._tasks.values() if t.status == TaskStatus.PENDING]
        pending.sort(key=lambda t: (t.priority.sort_order, t.created_at))
        return pending

    # ---------------------------------------------------------------- enqueue

    def enqueue(
        self,
        type: TaskType | str,
        payload: dict[str, Any] | str | None = None,
        required_capabilities: Iterable[str] | None = None,
        priority: TaskPriority | str = TaskPriority.NORMAL,
        deadline: datetime | None = None,
    ) -> Task:
        """Add a pending task. Raises ValueError for an unknown type or priority."""
        task_type = coerce_task_type(type)
        task_priority = coerce_priority(priority)
        caps = _capability_set(required_capabilities)

        if payload is None:
            payload_json = "{}"
        elif isinstance(payload, str):
            payload_json = payload
        elif isinstance(payload, dict):
            payload_json = json.dumps(payload, ensure_ascii=False)
        else:
            raise ValueError("payload must be a dict or a JSON string")

        if deadline is not None and deadline.tzinfo is None:
            raise ValueError("deadline must be timezone-aware")

        with self.lock:
            now = self._clock()
            task = Task(
                type=task_type,
                payload_json=payload_json,
                required_capabilities=caps,
                priority=task_priority,
                deadline=deadline,
                created_at=now,
                updated_at=now,
            )
            self._tasks[task.id] = task
            self._save()

        logger.info("Task enqueued: {} [{}]", task.type.value, task.short_id)
        return copy.copy(task)

    # ------------------------------------------------------------- assignment

    def _is_eligible(self, task: Task, caps: frozenset[str], now: datetime) -> bool:
        if task.status != TaskStatus.PENDING:
            return False
        if task.not_before is not None and task.not_before > now:
            return False
        return task.can_run_on(caps)

    def _assign_locked(self, task: Task, device_id: str, now: datetime) -> None:
        task.status = TaskStatus.ASSIGNED
        task.assigned_device_id = device_id
        task.not_before = None
        task.updated_at = now

    def assign(self, task_id: str, device_id: str, device_capabilities: Iterable[str] | None = None) -> bool:
        """Hand a pending task to ``device_id`` if its capabilities cover the task."""
        caps = _capability_set(device_capabilities)
        with self.lock:
            task = self._tasks.get(task_id)
            if task is None:
                logger.debug("Assign refused: unknown task {}", task_id)
                return False
            now = self._clock()
            if not self._is_eligible(task, caps, now):
                missing = sorted(task.required_capabilities - caps)
                logger.debug(
                    "Assign refused: [{}] status={} missing={}",
                    task.short_id,
                    task.status.value,
                    missing,
                )
                return False
            self._assign_locked(task, device_id, now)
            self._save()

        logger.info("Task assigned: [{}] -> {}", task.short_id, device_id)
        return True

    def claim_next(self, device_id: str, device_capabilities: Iterable[str] | None = None) -> Task | None:
        """Atomically assign the best eligible pending task to the caller."""
        caps = _capability_set(device_capabilities)
        with self.lock:
            now = self._clock()
            for task in self._pending_sorted():
                if self._is_eligible(task, caps, now):
                    self._assign_locked(task, device_id, now)
                    self._save()
                    logger.info("Task claimed: [{}] -> {}", task.short_id, device_id)
                    return copy.copy(task)
        return None

    # ------------------------------------------------------------ transitions

    def _transition(self, task_id: str, allowed: tuple[TaskStatus, ...]) -> Task | None:
        task = self._tasks.get(task_id)
        if task is None:
            logger.debug("Transition refused: unknown task {}", task_id)
            return None
        if task.status not in allowed:
            logger.debug("Transition refused: [{}] is {}", task.short_id, task.status.value)
            return None
        return task

    def mark_running(self, task_id: str) -> bool:
        with self.lock:
            task = self._transition(task_id, (TaskStatus.ASSIGNED,))
            if task is None:
                return False
            task.status = TaskStatus.RUNNING
            task.updated_at = self._clock()
            self._save()
        return True

    def mark_completed(self, task_id: str, result: str | None = None) -> bool:
        with self.lock:
            task = self._transition(task_id, (TaskStatus.ASSIGNED, TaskStatus.RUNNING))
            if task is None:
                return False
            task.status = TaskStatus.COMPLETED
            task.result = result
            task.assigned_device_id = None
            task.updated_at = self._clock()
            self._save()
        logger.info("Task completed: [{}]", task.short_id)
        return True

    def mark_failed(self, task_id: str, error: str) -> bool:
        """Count a failed attempt; re-queue until retries run out."""
        with self.lock:
            task = self._transition(task_id, (TaskStatus.ASSIGNED, TaskStatus.RUNNING))
            if task is None:
                return False
            self._fail_locked(task, error, self._clock())
            self._save()
        return True

    def _fail_locked(self, task: Task, error: str, now: datetime) -> None:
        task.retry_count += 1
        task.error_message = error
        task.assigned_device_id = None
        task.updated_at = now

        if task.retry_count < self.max_retries:
            task.status = TaskStatus.PENDING
            delay = self.retry_backoff.delay(task.retry_count)
            task.not_before = now + delay if delay else None
            logger.warning(
                "Task failed, retry {}/{}: [{}] {}",
                task.retry_count,
                self.max_retries,
                task.short_id,
                error,
            )
        else:
            task.status = TaskStatus.FAILED
            task.not_before = None
            logger.error("Task permanently failed: [{}] {}", task.short_id, error)

    def cancel(self, task_id: str) -> bool:
        """Bookkeeping only: a running task's external work is not interrupted."""
        with self.lock:
            task = self._transition(task_id, (TaskStatus.PENDING, TaskStatus.ASSIGNED, TaskStatus.RUNNING))
            if task is None:
                return False
            task.status = TaskStatus.CANCELLED
            task.assigned_device_id = None
            task.not_before = None
            task.updated_at = self._clock()
            self._save()
        logger.info("Task cancelled: [{}]", task.short_id)
        return True

    # ------------------------------------------------------------ maintenance

    def check_deadlines(self) -> list[str]:
        """Fail every non-terminal task whose deadline has passed; returns their ids."""
        expired: list[str] = []
        with self.lock:
            now = self._clock()
            for task in self._tasks.values():
                if task.status.is_terminal or task.deadline is None or task.deadline >= now:
                    continue
                self._fail_locked(task, DEADLINE_EXCEEDED, now)
                expired.append(task.id)
            if expired:
                self._save()
        return expired

    def cleanup(self, older_than: timedelta = timedelta(days=1)) -> int:
        """Drop terminal tasks last touched before ``now - older_than``."""
        with self.lock:
            cutoff = self._clock() - older_than
            stale = [t.id for t in self._tasks.values() if t.status.is_terminal and t.updated_at < cutoff]
            for task_id in stale:
                del self._tasks[task_id]
            if stale:
                self._save()
        if stale:
            logger.debug("Cleaned up {} old task(s)", len(stale))
        return len(stale)
