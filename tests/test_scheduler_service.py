import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from tickbot.cron.service import CANCELLED_ERROR, NO_EXECUTOR_ERROR, SchedulerService
from tickbot.cron.store import ScheduleStore
from tickbot.cron.types import ExecutionStatus
from tickbot.executor import ExecutionOutcome

NOW = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)
NINE = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


class _FakeExecutor:
    """Records every prompt it is asked to run."""

    def __init__(self, outcome: Any = None, exc: BaseException | None = None):
        self.outcome = outcome
        self.exc = exc
        self.calls: list[tuple[str, str]] = []

    async def execute(self, prompt: str, agent_name: str) -> Any:
        self.calls.append((prompt, agent_name))
        if self.exc is not None:
            raise self.exc
        return self.outcome


def _store(tmp_path) -> ScheduleStore:
    return ScheduleStore(tmp_path / "schedules", default_tz="UTC", clock=lambda: NOW)


def _service(store: ScheduleStore, executor=None) -> SchedulerService:
    return SchedulerService(store, executor, interval_s=3600, clock=lambda: NINE + timedelta(seconds=2))


@pytest.mark.asyncio
async def test_tick_fires_due_schedule_and_records_success(tmp_path) -> None:
    store = _store(tmp_path)
    entry = store.create("Morning", "0 9 * * *", "Summarize my day", agent_name="assistant")
    executor = _FakeExecutor(ExecutionOutcome(output="done"))
    service = _service(store, executor)

    records = await service.tick(now=NINE)

    assert executor.calls == [("Summarize my day", "assistant")]
    assert len(records) == 1
    record = records[0]
    assert record.status == ExecutionStatus.SUCCESS
    assert record.schedule_id == entry.id
    assert record.schedule_name == "Morning"
    assert record.started_at == NINE
    assert record.duration == timedelta(seconds=2)

    current = store.get(entry.id)
    assert current.last_run_at == NINE
    assert current.next_run_at == NINE + timedelta(days=1)
    assert [r.id for r in store.history()] == [record.id]
    assert service.current_execution is record


@pytest.mark.asyncio
async def test_tick_before_due_time_does_nothing(tmp_path) -> None:
    store = _store(tmp_path)
    store.create("Morning", "0 9 * * *", "hello")
    executor = _FakeExecutor()
    service = _service(store, executor)

    assert await service.tick(now=NINE - timedelta(minutes=1)) == []
    assert executor.calls == []
    assert store.history() == []


@pytest.mark.asyncio
async def test_due_schedule_fires_once_per_occurrence(tmp_path) -> None:
    store = _store(tmp_path)
    store.create("Morning", "0 9 * * *", "hello")
    executor = _FakeExecutor()
    service = _service(store, executor)

    await service.tick(now=NINE)
    await service.tick(now=NINE + timedelta(minutes=1))

    assert len(executor.calls) == 1


@pytest.mark.asyncio
async def test_reported_failure_is_recorded_and_cadence_continues(tmp_path) -> None:
    store = _store(tmp_path)
    entry = store.create("Morning", "0 9 * * *", "hello")
    service = _service(store, _FakeExecutor(ExecutionOutcome.failure("model unavailable")))

    records = await service.tick(now=NINE)

    assert records[0].status == ExecutionStatus.FAILURE
    assert records[0].error_message == "model unavailable"
    assert store.get(entry.id).next_run_at == NINE + timedelta(days=1)


@pytest.mark.asyncio
async def test_executor_exception_becomes_failure(tmp_path) -> None:
    store = _store(tmp_path)
    store.create("Morning", "0 9 * * *", "hello")
    service = _service(store, _FakeExecutor(exc=RuntimeError("boom")))

    records = await service.tick(now=NINE)

    assert records[0].status == ExecutionStatus.FAILURE
    assert records[0].error_message == "boom"
    assert store.history()[0].status == ExecutionStatus.FAILURE


@pytest.mark.asyncio
async def test_plain_string_outcome_counts_as_success_for_every_due_schedule(tmp_path) -> None:
    store = _store(tmp_path)
    store.create("Morning", "0 9 * * *", "first")
    store.create("Standup", "0 9 * * *", "second")
    executor = _FakeExecutor("ok")
    service = _service(store, executor)

    records = await service.tick(now=NINE)

    assert [c[0] for c in executor.calls] == ["first", "second"]
    assert [r.status for r in records] == [ExecutionStatus.SUCCESS, ExecutionStatus.SUCCESS]
    assert all(r.completed_at is not None for r in store.history())
    assert ExecutionStatus.RUNNING not in {r.status for r in store.history()}


@pytest.mark.asyncio
async def test_unsupported_outcome_becomes_failure(tmp_path) -> None:
    store = _store(tmp_path)
    store.create("Morning", "0 9 * * *", "hello")
    service = _service(store, _FakeExecutor(42))

    records = await service.tick(now=NINE)

    assert records[0].status == ExecutionStatus.FAILURE
    assert records[0].error_message == "executor returned unsupported result int"


@pytest.mark.asyncio
async def test_cancelled_execution_finishes_record_before_propagating(tmp_path) -> None:
    store = _store(tmp_path)
    store.create("Morning", "0 9 * * *", "hello")
    service = _service(store, _FakeExecutor(exc=asyncio.CancelledError()))

    with pytest.raises(asyncio.CancelledError):
        await service.tick(now=NINE)

    record = store.history()[0]
    assert record.status == ExecutionStatus.FAILURE
    assert record.error_message == CANCELLED_ERROR
    assert record.completed_at == NINE + timedelta(seconds=2)
    assert service.current_execution is not None
    assert service.current_execution.status == ExecutionStatus.FAILURE
    assert _store(tmp_path).history()[0].status == ExecutionStatus.FAILURE


@pytest.mark.asyncio
async def test_missing_executor_records_failure(tmp_path) -> None:
    store = _store(tmp_path)
    entry = store.create("Morning", "0 9 * * *", "hello")
    service = _service(store)

    records = await service.tick(now=NINE)

    assert records[0].status == ExecutionStatus.FAILURE
    assert records[0].error_message == NO_EXECUTOR_ERROR
    assert store.get(entry.id).last_run_at == NINE


@pytest.mark.asyncio
async def test_disabled_schedule_is_not_fired(tmp_path) -> None:
    store = _store(tmp_path)
    entry = store.create("Morning", "0 9 * * *", "hello", enabled=False)
    executor = _FakeExecutor()
    service = _service(store, executor)

    assert await service.tick(now=NINE) == []
    assert executor.calls == []
    assert store.get(entry.id).last_run_at is None


@pytest.mark.asyncio
async def test_schedule_deleted_while_executing_still_finishes_record(tmp_path) -> None:
    store = _store(tmp_path)
    entry = store.create("Morning", "0 9 * * *", "hello")

    class _DeletingExecutor:
        async def execute(self, prompt: str, agent_name: str) -> ExecutionOutcome:
            store.delete(entry.id)
            return ExecutionOutcome()

    service = _service(store, _DeletingExecutor())

    records = await service.tick(now=NINE)

    assert store.get(entry.id) is None
    assert records[0].status == ExecutionStatus.SUCCESS
    assert store.history()[0].schedule_name == "Morning"
    assert store.history()[0].status == ExecutionStatus.SUCCESS


@pytest.mark.asyncio
async def test_run_now_leaves_cadence_alone(tmp_path) -> None:
    store = _store(tmp_path)
    entry = store.create("Morning", "0 9 * * *", "hello", enabled=False)
    executor = _FakeExecutor()
    service = _service(store, executor)

    record = await service.run_now(entry.id)

    assert record is not None
    assert record.status == ExecutionStatus.SUCCESS
    assert executor.calls == [("hello", "default")]
    current = store.get(entry.id)
    assert current.next_run_at == NINE
    assert current.last_run_at is None
    assert await service.run_now("missing") is None


@pytest.mark.asyncio
async def test_start_is_idempotent(tmp_path) -> None:
    store = _store(tmp_path)
    service = _service(store, _FakeExecutor())

    await service.start()
    first_task = service._task
    await service.start()

    assert service._task is first_task
    assert service.status()["running"] is True

    service.stop()
    await asyncio.sleep(0)
    assert service.status()["running"] is False


def test_status_reports_next_wake(tmp_path) -> None:
    store = _store(tmp_path)
    store.create("a", "0 9 * * *", "a")
    store.create("b", "30 8 * * *", "b")
    store.create("c", "0 8 * * *", "c", enabled=False)
    service = _service(store)

    info = service.status()

    assert info["schedules"] == 3
    assert info["enabled"] == 2
    assert info["next_wake_at"] == datetime(2026, 10, 19, 8, 30, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_clear_current_execution(tmp_path) -> None:
    store = _store(tmp_path)
    store.create("Morning", "0 9 * * *", "hello")
    service = _service(store, _FakeExecutor())

    await service.tick(now=NINE)
    assert service.current_execution is not None

    service.clear_current_execution()
    assert service.current_execution is None
