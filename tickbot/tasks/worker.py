"""TaskWorker: pulls tasks for one device and reports the executor's outcome."""

from __future__ import annotations

import asyncio
import time
from datetime import timedelta
from typing import Iterable

from loguru import logger

from tickbot.executor import TaskExecutor, TaskOutcome
from tickbot.tasks.queue import TaskQueue
from tickbot.tasks.types import Task


class TaskWorker:
    """Claims work from a TaskQueue and runs it through an executor.

    The queue lock is only held inside the queue's own methods; the executor
    call happens between ``mark_running`` and the final report.
    """

    def __init__(
        self,
        queue: TaskQueue,
        executor: TaskExecutor,
        device_id: str,
        capabilities: Iterable[str] = (),
        *,
        poll_interval_s: float = 5.0,
        sweep_interval_s: float = 60.0,
        cleanup_after: timedelta = timedelta(days=1),
    ):
        self.queue = queue
        self.executor = executor
        self.device_id = device_id
        self.capabilities = frozenset(capabilities)
        self.poll_interval_s = poll_interval_s
        self.sweep_interval_s = sweep_interval_s
        self.cleanup_after = cleanup_after
        self._task: asyncio.Task | None = None
        self._running = False
        self._last_sweep = 0.0

    async def run_once(self) -> Task | None:
        """Claim and execute at most one task. Returns the claimed task, if any."""
        task = self.queue.claim_next(self.device_id, self.capabilities)
        if task is None:
            return None
        if not self.queue.mark_running(task.id):
            # Cancelled between claim and start.
            logger.info("Worker {}: task [{}] no longer startable", self.device_id, task.short_id)
            return task

        outcome = await self._invoke(task)
        try:
            if outcome.ok:
                reported = self.queue.mark_completed(task.id, outcome.result)
            else:
                reported = self.queue.mark_failed(task.id, outcome.error or "unknown error")
        except Exception as exc:
            logger.exception("Worker {}: reporting [{}] failed", self.device_id, task.short_id)
            reported = self.queue.mark_failed(task.id, str(exc) or exc.__class__.__name__)
        if not reported:
            current = self.queue.get(task.id)
            logger.info(
                "Worker {}: result for [{}] discarded (task is {})",
                self.device_id,
                task.short_id,
                current.status.value if current else "gone",
            )
        return task

    async def _invoke(self, task: Task) -> TaskOutcome:
        logger.debug("Worker {}: running [{}] {}", self.device_id, task.short_id, task.type.value)
        try:
            outcome = await self.executor.execute(task.type.value, task.payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Worker {}: executor raised for [{}]", self.device_id, task.short_id)
            return TaskOutcome(error=str(exc) or exc.__class__.__name__)
        return TaskOutcome.coerce(outcome)

    async def drain(self) -> int:
        """Run tasks until nothing is claimable; returns how many were claimed."""
        count = 0
        while await self.run_once() is not None:
            count += 1
        return count

    def sweep(self) -> None:
        expired = self.queue.check_deadlines()
        if expired:
            logger.info("Worker {}: {} task(s) past deadline", self.device_id, len(expired))
        self.queue.cleanup(self.cleanup_after)
        self._last_sweep = time.monotonic()

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Worker {} started (capabilities: {})", self.device_id, sorted(self.capabilities) or "any")

    def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None
            logger.info("Worker {} stopped", self.device_id)

    async def _run_loop(self) -> None:
        try:
            while self._running:
                if time.monotonic() - self._last_sweep >= self.sweep_interval_s:
                    self.sweep()
                try:
                    await self.drain()
                except Exception:
                    logger.exception("Worker {}: loop iteration failed", self.device_id)
                await asyncio.sleep(self.poll_interval_s)
        except asyncio.CancelledError:
            return
