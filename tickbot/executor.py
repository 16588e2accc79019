"""Executor boundary.

The scheduler and the task workers never run prompts or tools themselves;
they hand work to an injected executor and only look at success vs failure.
"""

from __future__ import annotations

import importlib
import inspect
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass
class ExecutionOutcome:
    """Result of running a scheduled prompt."""

    ok: bool = True
    output: str | None = None
    error: str | None = None

    @classmethod
    def failure(cls, error: str) -> ExecutionOutcome:
        return cls(ok=False, error=error)

    @classmethod
    def coerce(cls, value: Any) -> ExecutionOutcome:
        """Normalise whatever a schedule executor returned.

        ``None`` and ``True`` are success, ``False`` is failure, and a string is
        success with that string as output. Other objects are read through their
        ``ok``, ``output`` and ``error`` attributes; an object without ``ok`` is
        a failure naming its type.
        """
        if isinstance(value, cls):
            return value
        if value is None:
            return cls()
        if isinstance(value, bool):
            return cls() if value else cls.failure("executor reported failure")
        if isinstance(value, str):
            return cls(output=value)
        if not hasattr(value, "ok"):
            return cls.failure(f"executor returned unsupported result {type(value).__name__}")
        error = getattr(value, "error", None)
        output = getattr(value, "output", None)
        return cls(
            ok=bool(value.ok),
            output=None if output is None else str(output),
            error=None if error is None else str(error),
        )


@dataclass
class TaskOutcome:
    """Result of running a queued task. A non-empty ``error`` means failure."""

    result: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return not self.error

    @classmethod
    def coerce(cls, value: Any) -> TaskOutcome:
        """Normalise a task executor return: a TaskOutcome, a ``(result, error)`` pair, or None.

        Anything else is reported as a failure naming its type.
        """
        if isinstance(value, cls):
            return value
        if value is None:
            return cls()
        if isinstance(value, (tuple, list)) and len(value) == 2:
            result, error = value
            return cls(
                result=None if result is None else str(result),
                error=str(error) if error else None,
            )
        return cls(error=f"executor returned unsupported result {type(value).__name__}")


@runtime_checkable
class ScheduleExecutor(Protocol):
    async def execute(self, prompt: str, agent_name: str) -> ExecutionOutcome | str | bool | None: ...


@runtime_checkable
class TaskExecutor(Protocol):
    async def execute(
        self, task_type: str, payload: dict[str, Any]
    ) -> TaskOutcome | tuple[str | None, str | None] | None: ...


def load_executor(spec: str) -> Any:
    """Resolve ``package.module:attr`` to an executor.

    ``attr`` may be an executor instance, a class, or a zero-argument factory;
    classes and factories are called once.
    """
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"invalid executor path '{spec}' (expected 'module:attr')")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ValueError(f"cannot import executor module '{module_name}': {e}") from e

    target: Any = module
    for part in attr.split("."):
        if not hasattr(target, part):
            raise ValueError(f"executor '{attr}' not found in '{module_name}'")
        target = getattr(target, part)

    if inspect.isclass(target) or (callable(target) and not hasattr(target, "execute")):
        target = target()
    if not hasattr(target, "execute"):
        raise ValueError(f"executor '{spec}' has no execute() method")
    return target
