"""Task types."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from tickbot.utils.helpers import from_iso, now_utc, to_iso


class TaskType(str, Enum):
    LLM_QUERY = "llm_query"
    TOOL_EXECUTION = "tool_execution"
    TTS_PLAYBACK = "tts_playback"
    NOTIFICATION = "notification"
    WORKFLOW_STEP = "workflow_step"
    CUSTOM = "custom"

    @property
    def display_name(self) -> str:
        return _TYPE_NAMES[self]


_TYPE_NAMES = {
    TaskType.LLM_QUERY: "LLM query",
    TaskType.TOOL_EXECUTION: "Tool execution",
    TaskType.TTS_PLAYBACK: "TTS playback",
    TaskType.NOTIFICATION: "Notification",
    TaskType.WORKFLOW_STEP: "Workflow step",
    TaskType.CUSTOM: "Custom",
}


class TaskPriority(str, Enum):
    """Ordered so that ``URGENT < HIGH < NORMAL < LOW`` (urgent sorts first)."""

    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def sort_order(self) -> int:
        return _PRIORITY_ORDER[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, TaskPriority):
            return NotImplemented
        return self.sort_order < other.sort_order

    def __le__(self, other: object) -> bool:
        if not isinstance(other, TaskPriority):
            return NotImplemented
        return self.sort_order <= other.sort_order

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, TaskPriority):
            return NotImplemented
        return self.sort_order > other.sort_order

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, TaskPriority):
            return NotImplemented
        return self.sort_order >= other.sort_order


_PRIORITY_ORDER = {
    TaskPriority.URGENT: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.NORMAL: 2,
    TaskPriority.LOW: 3,
}


class TaskStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)

    @property
    def is_active(self) -> bool:
        return self in (TaskStatus.ASSIGNED, TaskStatus.RUNNING)


def coerce_task_type(value: TaskType | str) -> TaskType:
    try:
        return TaskType(value)
    except ValueError:
        raise ValueError(f"unknown task type '{value}'") from None


def coerce_priority(value: TaskPriority | str) -> TaskPriority:
    try:
        return TaskPriority(value)
    except ValueError:
        raise ValueError(f"unknown task priority '{value}'") from None


@dataclass
class Task:
    """A unit of work waiting for, or held by, a worker."""

    type: TaskType
    payload_json: str = "{}"
    required_capabilities: frozenset[str] = frozenset()
    priority: TaskPriority = TaskPriority.NORMAL
    status: TaskStatus = TaskStatus.PENDING
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    assigned_device_id: str | None = None
    result: str | None = None
    error_message: str | None = None
    deadline: datetime | None = None
    retry_count: int = 0
    created_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)
    not_before: datetime | None = None

    @property
    def payload(self) -> dict[str, Any]:
        """Decoded payload; anything that is not a JSON object yields ``{}``."""
        try:
            data = json.loads(self.payload_json)
        except (TypeError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    @property
    def short_id(self) -> str:
        return self.id[:8]

    def can_run_on(self, capabilities: frozenset[str] | set[str]) -> bool:
        return self.required_capabilities <= capabilities

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "payload": self.payload_json,
            "required_capabilities": sorted(self.required_capabilities),
            "priority": self.priority.value,
            "status": self.status.value,
            "assigned_device_id": self.assigned_device_id,
            "result": self.result,
            "error": self.error_message,
            "deadline": to_iso(self.deadline),
            "retry_count": self.retry_count,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "not_before": to_iso(self.not_before),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        """Rebuild a task; raises ValueError when id, type or status are unusable."""
        task_id = str(payload.get("id") or "").strip()
        if not task_id:
            raise ValueError("task record has no id")

        task_type = coerce_task_type(payload.get("type") or "")
        try:
            status = TaskStatus(payload.get("status") or TaskStatus.PENDING.value)
        except ValueError:
            raise ValueError(f"unknown task status '{payload.get('status')}'") from None
        try:
            priority = coerce_priority(payload.get("priority") or TaskPriority.NORMAL.value)
        except ValueError:
            priority = TaskPriority.NORMAL

        raw_payload = payload.get("payload", payload.get("payloadJSON", "{}"))
        if not isinstance(raw_payload, str):
            raw_payload = json.dumps(raw_payload)

        caps = payload.get("required_capabilities") or payload.get("requiredCapabilities") or []
        if not isinstance(caps, (list, tuple, set)):
            caps = []

        try:
            retry_count = max(0, int(payload.get("retry_count", payload.get("retryCount", 0)) or 0))
        except (TypeError, ValueError):
            retry_count = 0

        created_at = from_iso(payload.get("created_at") or payload.get("createdAt")) or now_utc()
        device = payload.get("assigned_device_id") or payload.get("assignedDeviceId")
        task = cls(
            id=task_id,
            type=task_type,
            payload_json=raw_payload,
            required_capabilities=frozenset(str(c) for c in caps),
            priority=priority,
            status=status,
            assigned_device_id=str(device) if device and status.is_active else None,
            result=payload.get("result"),
            error_message=payload.get("error") or payload.get("errorMessage"),
            deadline=from_iso(payload.get("deadline")),
            retry_count=retry_count,
            created_at=created_at,
            updated_at=from_iso(payload.get("updated_at") or payload.get("updatedAt")) or created_at,
            not_before=from_iso(payload.get("not_before")),
        )
        if status.is_active and task.assigned_device_id is None:
            raise ValueError(f"task {task_id} is {status.value} without a device")
        return task
