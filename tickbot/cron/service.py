"""Scheduler loop: ticks on an interval and fires due schedules through an executor."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable

from loguru import logger

from tickbot.cron.store import ScheduleStore
from tickbot.cron.types import ExecutionStatus, ScheduleEntry, ScheduleExecutionRecord
from tickbot.executor import ExecutionOutcome, ScheduleExecutor
from tickbot.utils.helpers import now_utc

NO_EXECUTOR_ERROR = "no executor configured"
CANCELLED_ERROR = "cancelled"


class SchedulerService:
    """Periodic due-check over a ScheduleStore.

    Bookkeeping (history record, next run) happens under the store lock;
    the executor call itself runs outside it so a slow prompt never blocks
    CRUD or the next tick.
    """

    def __init__(
        self,
        store: ScheduleStore,
        executor: ScheduleExecutor | None = None,
        *,
        interval_s: float = 60.0,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.executor = executor
        self.interval_s = interval_s
        self._clock = clock or now_utc
        self._task: asyncio.Task | None = None
        self._running = False
        self._current: ScheduleExecutionRecord | None = None

    @property
    def current_execution(self) -> ScheduleExecutionRecord | None:
        return self._current

    def clear_current_execution(self) -> None:
        self._current = None

    def set_executor(self, executor: ScheduleExecutor | None) -> None:
        self.executor = executor

    async def start(self) -> None:
        """Load schedules and start ticking. Calling it twice is a no-op."""
        if self._task and not self._task.done():
            return
        self.store.load()
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "Scheduler started with {} enabled schedule(s), tick every {}s",
            len(self.store.list_schedules(include_disabled=False)),
            self.interval_s,
        )

    def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None
            logger.info("Scheduler stopped")

    async def restart(self) -> None:
        self.stop()
        await self.start()

    async def _run_loop(self) -> None:
        try:
            while self._running:
                await asyncio.sleep(self.interval_s)
                if not self._running:
                    break
                try:
                    await self.tick()
                except Exception:
                    logger.exception("Scheduler tick failed")
        except asyncio.CancelledError:
            return

    async def tick(self, now: datetime | None = None) -> list[ScheduleExecutionRecord]:
        """Fire every enabled schedule whose next run is at or before ``now``."""
        now = now or self._clock()
        records: list[ScheduleExecutionRecord] = []
        for entry in self.store.due(now):
            record = self._begin(entry.id, now)
            if record is None:
                continue
            records.append(await self._execute(entry, record))
        return records

    def _begin(self, entry_id: str, now: datetime) -> ScheduleExecutionRecord | None:
        with self.store.lock:
            entry = self.store.get(entry_id)
            # Deleted, disabled or already advanced by a concurrent tick.
            if entry is None or not entry.enabled or entry.next_run_at is None or entry.next_run_at > now:
                return None
            record = ScheduleExecutionRecord(
                schedule_id=entry.id,
                schedule_name=entry.name,
                started_at=now,
            )
            self.store.append_history(record)
            self.store.mark_fired(entry.id, now)
            self._current = record
            return record

    async def _execute(self, entry: ScheduleEntry, record: ScheduleExecutionRecord) -> ScheduleExecutionRecord:
        logger.info("Scheduler: executing '{}' ({})", entry.name, entry.id)
        # Stays as is only when the executor call is cancelled.
        status, error = ExecutionStatus.FAILURE, CANCELLED_ERROR
        try:
            status, error = await self._invoke(entry)
        finally:
            with self.store.lock:
                record.finish(status, error, at=self._clock())
                self.store.update_history(record)
                self._current = record

        if status == ExecutionStatus.SUCCESS:
            logger.info("Scheduler: '{}' completed", entry.name)
        else:
            logger.warning("Scheduler: '{}' failed: {}", entry.name, error)
        return record

    async def _invoke(self, entry: ScheduleEntry) -> tuple[ExecutionStatus, str | None]:
        if self.executor is None:
            return ExecutionStatus.FAILURE, NO_EXECUTOR_ERROR
        try:
            outcome = await self.executor.execute(entry.prompt, entry.agent_name)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Scheduler: executor raised for '{}'", entry.name)
            return ExecutionStatus.FAILURE, str(exc) or exc.__class__.__name__

        result = ExecutionOutcome.coerce(outcome)
        if result.ok:
            return ExecutionStatus.SUCCESS, None
        return ExecutionStatus.FAILURE, result.error or "executor reported failure"

    async def run_now(self, entry_id: str) -> ScheduleExecutionRecord | None:
        """Fire one schedule immediately, even if disabled; the cadence is left alone."""
        entry = self.store.get(entry_id)
        if entry is None:
            return None
        record = ScheduleExecutionRecord(schedule_id=entry.id, schedule_name=entry.name, started_at=self._clock())
        with self.store.lock:
            self.store.append_history(record)
            self._current = record
        return await self._execute(entry, record)

    def status(self) -> dict[str, Any]:
        entries = self.store.list_schedules()
        enabled = [e for e in entries if e.enabled]
        upcoming = [e.next_run_at for e in enabled if e.next_run_at is not None]
        return {
            "running": self._running,
            "schedules": len(entries),
            "enabled": len(enabled),
            "next_wake_at": min(upcoming) if upcoming else None,
        }
