"""Schedule store: one YAML file per schedule plus a capped execution history."""

from __future__ import annotations

import json
import re
import threading
from datetime import datetime, tzinfo
from pathlib import Path
from typing import Any, Callable

import yaml
from loguru import logger

from tickbot.cron.expression import CronExpression, parse_cron
from tickbot.cron.types import ScheduleEntry, ScheduleExecutionRecord, new_id
from tickbot.utils.helpers import atomic_write_json, atomic_write_text, ensure_dir, now_utc

_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")

DEFAULT_MAX_HISTORY = 100

_UPDATABLE_FIELDS = frozenset({"name", "icon", "prompt", "agent_name", "cron_expression", "tz", "enabled"})


def resolve_timezone(name: str | None) -> tzinfo | None:
    """Map an IANA name to a tzinfo; None stays None (local time)."""
    if not name:
        return None
    from zoneinfo import ZoneInfo

    try:
        return ZoneInfo(name)
    except Exception:
        raise ValueError(f"unknown timezone '{name}'") from None


def _normalize_id(entry_id: str) -> str | None:
    stem = Path(str(entry_id).strip()).stem
    if not stem or not _ID_RE.match(stem):
        return None
    return stem


class ScheduleStore:
    """Owns the schedule set and its execution history.

    All mutations go through one re-entrant lock per instance; callers that
    need several steps to be atomic (the scheduler tick) can hold ``lock``.
    """

    def __init__(
        self,
        schedules_dir: Path,
        history_path: Path | None = None,
        *,
        max_history: int = DEFAULT_MAX_HISTORY,
        default_tz: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.schedules_dir = Path(schedules_dir)
        self.history_path = Path(history_path) if history_path else self.schedules_dir.parent / "schedule_history.json"
        self.legacy_store_path = self.schedules_dir.parent / "schedules.json"
        self.max_history = max(1, int(max_history))
        self.default_tz = default_tz
        self.lock = threading.RLock()
        self._clock = clock or now_utc
        self._entries: dict[str, ScheduleEntry] = {}
        self._history: list[ScheduleExecutionRecord] = []
        self._loaded = False

    # ---------------------------------------------------------------- storage

    def _entry_path(self, entry_id: str) -> Path:
        return self.schedules_dir / f"{entry_id}.yaml"

    def _read_entry(self, path: Path) -> ScheduleEntry | None:
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        except Exception as e:
            logger.warning("Failed to read schedule {}: {}", path, e)
            return None
        if not isinstance(payload, dict):
            logger.warning("Schedule {} is not a YAML object", path)
            return None
        try:
            entry = ScheduleEntry.from_dict(payload, default_id=path.stem)
            entry.id = path.stem
        except ValueError as e:
            logger.warning("Skipping schedule {}: {}", path, e)
            return None
        if CronExpression.parse(entry.cron_expression) is None:
            logger.warning("Invalid cron expression in {}: '{}'", path, entry.cron_expression)
            return None
        try:
            resolve_timezone(entry.tz)
        except ValueError as e:
            logger.warning("Invalid timezone in {}: {}", path, e)
            return None
        return entry

    def _write_entry(self, entry: ScheduleEntry) -> None:
        data = yaml.safe_dump(entry.to_dict(), sort_keys=False, allow_unicode=True)
        atomic_write_text(self._entry_path(entry.id), data)

    def _save_history(self) -> None:
        try:
            atomic_write_json(self.history_path, [r.to_dict() for r in self._history])
        except OSError as e:
            logger.error("Failed to save schedule history {}: {}", self.history_path, e)

    def _load_history(self) -> list[ScheduleExecutionRecord]:
        if not self.history_path.exists():
            return []
        try:
            raw = json.loads(self.history_path.read_text(encoding="utf-8"))
        except Exception as e:
            logger.warning("Failed to read schedule history {}: {}", self.history_path, e)
            return []
        if not isinstance(raw, list):
            logger.warning("Schedule history {} is not a list", self.history_path)
            return []

        records: list[ScheduleExecutionRecord] = []
        for row in raw:
            if not isinstance(row, dict):
                continue
            try:
                records.append(ScheduleExecutionRecord.from_dict(row))
            except ValueError:
                continue
        return records[: self.max_history]

    def _migrate_legacy_store_if_needed(self) -> None:
        if not self.legacy_store_path.exists():
            return

        try:
            raw = json.loads(self.legacy_store_path.read_text(encoding="utf-8"))
        except Exception as e:
            logger.warning("Failed to read legacy schedule store {}: {}", self.legacy_store_path, e)
            return
        if not isinstance(raw, list):
            logger.warning("Legacy schedule store {} has invalid schema", self.legacy_store_path)
            return

        migrated = 0
        for row in raw:
            if not isinstance(row, dict):
                continue
            entry_id = _normalize_id(str(row.get("id") or "")) or new_id()
            if self._entry_path(entry_id).exists():
                continue
            try:
                entry = ScheduleEntry.from_dict(row, default_id=entry_id)
            except ValueError:
                continue
            entry.id = entry_id
            self._write_entry(entry)
            migrated += 1

        try:
            self.legacy_store_path.unlink()
        except OSError as e:
            logger.warning("Failed to delete legacy schedule store {}: {}", self.legacy_store_path, e)

        if migrated:
            logger.info("Scheduler: migrated {} legacy schedule(s) to {}", migrated, self.schedules_dir)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def load(self) -> None:
        """(Re)load every schedule file and the history from disk."""
        with self.lock:
            ensure_dir(self.schedules_dir)
            self._migrate_legacy_store_if_needed()

            entries = [e for e in (self._read_entry(p) for p in self.schedules_dir.glob("*.yaml")) if e]
            entries.sort(key=lambda e: (e.created_at, e.id))

            now = self._clock()
            self._entries = {}
            for entry in entries:
                if entry.next_run_at is None or entry.next_run_at <= now:
                    entry.next_run_at = self.next_run_date(entry.cron_expression, now, entry.tz)
                    self._write_entry(entry)
                self._entries[entry.id] = entry

            self._history = self._load_history()
            self._loaded = True
            logger.debug(
                "Scheduler: loaded {} schedule(s), {} history record(s)",
                len(self._entries),
                len(self._history),
            )

    # ------------------------------------------------------------ cron helpers

    def next_run_date(self, cron_expression: str, after: datetime, tz: str | None = None) -> datetime | None:
        expr = CronExpression.parse(cron_expression)
        if expr is None:
            return None
        zone = resolve_timezone(tz or self.default_tz)
        return expr.next_date(after, zone)

    # --------------------------------------------------------------- schedules

    def list_schedules(self, include_disabled: bool = True, agent_name: str | None = None) -> list[ScheduleEntry]:
        with self.lock:
            self._ensure_loaded()
            return [
                e
                for e in self._entries.values()
                if (include_disabled or e.enabled) and (agent_name is None or e.agent_name == agent_name)
            ]

    def get(self, entry_id: str) -> ScheduleEntry | None:
        normalized = _normalize_id(entry_id)
        if normalized is None:
            return None
        with self.lock:
            self._ensure_loaded()
            return self._entries.get(normalized)

    def create(
        self,
        name: str,
        cron_expression: str,
        prompt: str,
        *,
        agent_name: str = "default",
        icon: str = "⏰",
        enabled: bool = True,
        tz: str | None = None,
    ) -> ScheduleEntry:
        """Add a schedule; raises ValueError for a bad cron string or timezone."""
        parse_cron(cron_expression)
        resolve_timezone(tz)

        with self.lock:
            self._ensure_loaded()
            entry_id = new_id()
            while entry_id in self._entries:
                entry_id = new_id()

            now = self._clock()
            entry = ScheduleEntry(
                id=entry_id,
                name=name,
                icon=icon,
                cron_expression=cron_expression.strip(),
                prompt=prompt,
                agent_name=agent_name,
                enabled=enabled,
                tz=tz,
                created_at=now,
            )
            entry.next_run_at = self.next_run_date(entry.cron_expression, now, tz)
            self._write_entry(entry)
            self._entries[entry.id] = entry

        logger.info("Scheduler: added schedule '{}' ({})", entry.name, entry.id)
        return entry

    def update(self, entry_id: str, **changes: Any) -> ScheduleEntry | None:
        """Apply field changes; recomputes the next run when the timing changes."""
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unknown schedule field '{sorted(unknown)[0]}'")
        if "cron_expression" in changes:
            changes["cron_expression"] = parse_cron(changes["cron_expression"]).raw
        if "tz" in changes:
            resolve_timezone(changes["tz"])

        with self.lock:
            entry = self.get(entry_id)
            if entry is None:
                return None

            now = self._clock()
            timing_changed = any(
                k in changes and changes[k] != getattr(entry, k) for k in ("cron_expression", "tz")
            )
            re_enabled = bool(changes.get("enabled", entry.enabled)) and not entry.enabled

            for key, value in changes.items():
                setattr(entry, key, bool(value) if key == "enabled" else value)

            if timing_changed:
                entry.next_run_at = self.next_run_date(entry.cron_expression, now, entry.tz)
            elif re_enabled and (entry.next_run_at is None or entry.next_run_at <= now):
                entry.next_run_at = self.next_run_date(entry.cron_expression, now, entry.tz)

            self._write_entry(entry)

        logger.info("Scheduler: updated schedule '{}' ({})", entry.name, entry.id)
        return entry

    def set_enabled(self, entry_id: str, enabled: bool = True) -> ScheduleEntry | None:
        return self.update(entry_id, enabled=enabled)

    def delete(self, entry_id: str) -> bool:
        """Remove a schedule. Unknown ids are a no-op that returns False."""
        normalized = _normalize_id(entry_id)
        if normalized is None:
            return False
        with self.lock:
            self._ensure_loaded()
            entry = self._entries.pop(normalized, None)
            self._entry_path(normalized).unlink(missing_ok=True)
        if entry is None:
            return False
        logger.info("Scheduler: removed schedule {}", normalized)
        return True

    def due(self, now: datetime) -> list[ScheduleEntry]:
        with self.lock:
            self._ensure_loaded()
            return [
                e
                for e in self._entries.values()
                if e.enabled and e.next_run_at is not None and e.next_run_at <= now
            ]

    def mark_fired(self, entry_id: str, fired_at: datetime) -> ScheduleEntry | None:
        """Record a firing and move the next run forward from ``fired_at``."""
        with self.lock:
            entry = self.get(entry_id)
            if entry is None:
                return None
            entry.last_run_at = fired_at
            entry.next_run_at = self.next_run_date(entry.cron_expression, fired_at, entry.tz)
            self._write_entry(entry)
            return entry

    # ----------------------------------------------------------------- history

    def append_history(self, record: ScheduleExecutionRecord) -> None:
        with self.lock:
            self._ensure_loaded()
            self._history.insert(0, record)
            del self._history[self.max_history :]
            self._save_history()

    def update_history(self, record: ScheduleExecutionRecord) -> bool:
        with self.lock:
            self._ensure_loaded()
            for i, existing in enumerate(self._history):
                if existing.id == record.id:
                    self._history[i] = record
                    self._save_history()
                    return True
            return False

    def history(self, schedule_id: str | None = None, limit: int | None = None) -> list[ScheduleExecutionRecord]:
        with self.lock:
            self._ensure_loaded()
            records = [r for r in self._history if schedule_id is None or r.schedule_id == schedule_id]
        return records[:limit] if limit is not None else records

    def clear_history(self) -> None:
        with self.lock:
            self._history = []
            self._save_history()
