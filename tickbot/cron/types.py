"""Schedule types."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from tickbot.cron.expression import describe_cron
from tickbot.utils.helpers import from_iso, now_utc, to_iso


def new_id() -> str:
    return uuid.uuid4().hex


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class ScheduleEntry:
    """A recurring trigger bound to a prompt and an agent."""

    id: str
    name: str
    cron_expression: str
    prompt: str
    agent_name: str = "default"
    icon: str = "⏰"
    enabled: bool = True
    tz: str | None = None
    created_at: datetime = field(default_factory=now_utc)
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None

    @property
    def repeat_summary(self) -> str:
        return describe_cron(self.cron_expression)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "icon": self.icon,
            "cron": self.cron_expression,
            "tz": self.tz,
            "prompt": self.prompt,
            "agent": self.agent_name,
            "enabled": self.enabled,
            "created_at": to_iso(self.created_at),
            "last_run": to_iso(self.last_run_at),
            "next_run": to_iso(self.next_run_at),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any], *, default_id: str | None = None) -> ScheduleEntry:
        """Build an entry from a persisted mapping.

        Older records may lack newer fields, or use the legacy camelCase keys;
        everything except the id and the cron string falls back to a default.
        """
        entry_id = str(payload.get("id") or default_id or "").strip()
        if not entry_id:
            raise ValueError("schedule record has no id")
        cron_text = str(payload.get("cron") or payload.get("cronExpression") or "").strip()
        if not cron_text:
            raise ValueError(f"schedule record {entry_id} has no cron expression")

        prompt = str(payload.get("prompt") or "")
        tz = payload.get("tz")
        enabled = payload.get("enabled", payload.get("isEnabled", True))
        return cls(
            id=entry_id,
            name=str(payload.get("name") or prompt[:30] or entry_id),
            icon=str(payload.get("icon") or "⏰"),
            cron_expression=cron_text,
            tz=tz if isinstance(tz, str) and tz else None,
            prompt=prompt,
            agent_name=str(payload.get("agent") or payload.get("agentName") or "default"),
            enabled=bool(enabled),
            created_at=from_iso(payload.get("created_at") or payload.get("createdAt")) or now_utc(),
            last_run_at=from_iso(payload.get("last_run") or payload.get("lastRunAt")),
            next_run_at=from_iso(payload.get("next_run") or payload.get("nextRunAt")),
        )


@dataclass
class ScheduleExecutionRecord:
    """One firing of a schedule. The name is copied so history outlives the entry."""

    schedule_id: str
    schedule_name: str
    id: str = field(default_factory=new_id)
    started_at: datetime = field(default_factory=now_utc)
    completed_at: datetime | None = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    error_message: str | None = None

    @property
    def duration(self) -> timedelta | None:
        if self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    def finish(self, status: ExecutionStatus, error: str | None = None, at: datetime | None = None) -> None:
        self.status = status
        self.error_message = error
        self.completed_at = at or now_utc()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "schedule_id": self.schedule_id,
            "schedule_name": self.schedule_name,
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
            "status": self.status.value,
            "error": self.error_message,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ScheduleExecutionRecord:
        record_id = str(payload.get("id") or "").strip()
        schedule_id = str(payload.get("schedule_id") or payload.get("scheduleId") or "").strip()
        if not record_id or not schedule_id:
            raise ValueError("execution record is missing its id or schedule id")
        try:
            status = ExecutionStatus(payload.get("status") or ExecutionStatus.FAILURE.value)
        except ValueError:
            status = ExecutionStatus.FAILURE
        return cls(
            id=record_id,
            schedule_id=schedule_id,
            schedule_name=str(payload.get("schedule_name") or payload.get("scheduleName") or ""),
            started_at=from_iso(payload.get("started_at") or payload.get("startedAt")) or now_utc(),
            completed_at=from_iso(payload.get("completed_at") or payload.get("completedAt")),
            status=status,
            error_message=payload.get("error") or payload.get("errorMessage"),
        )


@dataclass(frozen=True)
class ScheduleTemplate:
    id: str
    icon: str
    name: str
    description: str
    cron_expression: str
    prompt: str

    def to_entry(self, agent_name: str = "default") -> ScheduleEntry:
        return ScheduleEntry(
            id=new_id(),
            name=self.name,
            icon=self.icon,
            cron_expression=self.cron_expression,
            prompt=self.prompt,
            agent_name=agent_name,
        )


BUILTIN_TEMPLATES: tuple[ScheduleTemplate, ...] = (
    ScheduleTemplate(
        id="morning-briefing",
        icon="☀️",
        name="Morning briefing",
        description="Every day at 09:00, summarize today's calendar and reminders",
        cron_expression="0 9 * * *",
        prompt="Summarize today's calendar events and reminders",
    ),
    ScheduleTemplate(
        id="weekly-report",
        icon="📊",
        name="Weekly report",
        description="Every Friday at 17:00, summarize this week's board progress",
        cron_expression="0 17 * * 5",
        prompt="Summarize this week's kanban board progress",
    ),
    ScheduleTemplate(
        id="memory-cleanup",
        icon="🧹",
        name="Memory cleanup",
        description="Every Sunday at 03:00, tidy memory and remove duplicates",
        cron_expression="0 3 * * 0",
        prompt="Tidy up memory and remove duplicate entries",
    ),
)


def get_template(template_id: str) -> ScheduleTemplate | None:
    for template in BUILTIN_TEMPLATES:
        if template.id == template_id:
            return template
    return None
