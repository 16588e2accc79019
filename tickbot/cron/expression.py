"""Cron expression parsing and next-occurrence search.

Supports the plain 5-field form ``minute hour day-of-month month day-of-week``
where each field is ``*``, an integer, or a comma-separated list of integers.
Ranges (``1-5``) and steps (``*/5``) are rejected. The occurrence search itself
is delegated to croniter.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo

_INT_RE = re.compile(r"^[0-9]+$")

# Give up when no occurrence exists within this many years (Feb 31, Apr 31).
_MAX_YEARS = 4

# Extra get_next calls allowed for DST gaps and folds before giving up.
_MAX_DST_SKIPS = 16

WEEKDAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")


@dataclass(frozen=True)
class AnyField:
    """Wildcard ``*``."""

    def matches(self, value: int) -> bool:
        return True

    def render(self) -> str:
        return "*"


@dataclass(frozen=True)
class ValueField:
    value: int

    def matches(self, value: int) -> bool:
        return value == self.value

    def render(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class ListField:
    values: tuple[int, ...]

    def matches(self, value: int) -> bool:
        return value in self.values

    def render(self) -> str:
        return ",".join(str(v) for v in self.values)


CronField = AnyField | ValueField | ListField

ANY = AnyField()


def _parse_int(text: str, low: int, high: int) -> int | None:
    if not _INT_RE.match(text):
        return None
    value = int(text)
    if value < low or value > high:
        return None
    return value


def _parse_field(text: str, low: int, high: int) -> CronField | None:
    if text == "*":
        return ANY

    if "," in text:
        values: list[int] = []
        for part in text.split(","):
            value = _parse_int(part, low, high)
            if value is None:
                return None
            values.append(value)
        return ListField(tuple(values))

    value = _parse_int(text, low, high)
    if value is None:
        return None
    return ValueField(value)


def _local_zone() -> tzinfo:
    return datetime.now().astimezone().tzinfo


def cron_weekday(dt: datetime) -> int:
    """Weekday in cron numbering (Sunday = 0)."""
    return (dt.weekday() + 1) % 7


@dataclass(frozen=True)
class CronExpression:
    minute: CronField
    hour: CronField
    day_of_month: CronField
    month: CronField
    day_of_week: CronField
    raw: str = ""

    @classmethod
    def parse(cls, text: str) -> CronExpression | None:
        """Parse a cron string; returns None for anything invalid."""
        if not isinstance(text, str):
            return None
        parts = text.split()
        if len(parts) != 5:
            return None

        minute = _parse_field(parts[0], 0, 59)
        hour = _parse_field(parts[1], 0, 23)
        dom = _parse_field(parts[2], 1, 31)
        month = _parse_field(parts[3], 1, 12)
        dow = _parse_field(parts[4], 0, 6)
        if minute is None or hour is None or dom is None or month is None or dow is None:
            return None

        return cls(
            minute=minute,
            hour=hour,
            day_of_month=dom,
            month=month,
            day_of_week=dow,
            raw=text.strip(),
        )

    @property
    def fields(self) -> tuple[CronField, CronField, CronField, CronField, CronField]:
        return (self.minute, self.hour, self.day_of_month, self.month, self.day_of_week)

    @property
    def canonical(self) -> str:
        return " ".join(f.render() for f in self.fields)

    def matches(self, dt: datetime) -> bool:
        return (
            self.minute.matches(dt.minute)
            and self.hour.matches(dt.hour)
            and self.day_of_month.matches(dt.day)
            and self.month.matches(dt.month)
            and self.day_of_week.matches(cron_weekday(dt))
        )

    def next_date(self, after: datetime, tz: tzinfo | None = None) -> datetime | None:
        """First matching minute strictly after ``after``, or None within the search bound.

        The calendar is ``tz``, falling back to ``after.tzinfo`` and then the
        local zone. Wall-clock times that do not exist in that zone are skipped.
        """
        from croniter import CroniterBadDateError, croniter

        zone = tz or after.tzinfo or _local_zone()
        start = after if after.tzinfo is not None else after.replace(tzinfo=zone)
        start = start.astimezone(zone)
        floor = start.replace(tzinfo=None)
        # Same-zone comparisons ignore fold, so order instants in UTC.
        start_utc = start.astimezone(timezone.utc)

        # day_or=False: day-of-month and day-of-week must both match.
        it = croniter(self.canonical, start, day_or=False, max_years_between_matches=_MAX_YEARS)
        for _ in range(_MAX_DST_SKIPS):
            try:
                candidate = it.get_next(datetime)
            except CroniterBadDateError:
                return None

            naive = candidate.astimezone(zone).replace(tzinfo=None)
            # Drop gap times shifted off their wall clock and the repeated hour of a fold.
            if naive <= floor or not self.matches(naive):
                continue
            resolved = naive.replace(tzinfo=zone, fold=0)
            resolved_utc = resolved.astimezone(timezone.utc)
            # Only a UTC round trip normalises a wall time that falls in a gap.
            if resolved_utc.astimezone(zone).replace(tzinfo=None) != naive:
                continue
            if resolved_utc <= start_utc:
                continue
            return resolved

        return None

    @property
    def human_readable(self) -> str:
        if not isinstance(self.hour, ValueField) or not isinstance(self.minute, ValueField):
            return self.raw or self.canonical
        time_str = f"{self.hour.value:02d}:{self.minute.value:02d}"

        month_any = isinstance(self.month, AnyField)
        dom_any = isinstance(self.day_of_month, AnyField)
        dow_any = isinstance(self.day_of_week, AnyField)

        if month_any and dom_any and dow_any:
            return f"every day at {time_str}"
        if month_any and dom_any and isinstance(self.day_of_week, (ValueField, ListField)):
            days = (
                [self.day_of_week.value]
                if isinstance(self.day_of_week, ValueField)
                else list(self.day_of_week.values)
            )
            names = ", ".join(WEEKDAY_NAMES[d] for d in days)
            return f"every {names} at {time_str}"
        if month_any and dow_any and isinstance(self.day_of_month, ValueField):
            return f"every month on day {self.day_of_month.value} at {time_str}"
        return self.raw or self.canonical


def parse_cron(text: str) -> CronExpression:
    """Parse or raise ``ValueError``; the validating form used at API boundaries."""
    expr = CronExpression.parse(text)
    if expr is None:
        raise ValueError(f"invalid cron expression '{text}'")
    return expr


def is_valid_cron(text: str) -> bool:
    return CronExpression.parse(text) is not None


def describe_cron(text: str) -> str:
    expr = CronExpression.parse(text)
    if expr is None:
        return text
    return expr.human_readable


def next_run(text: str, after: datetime, tz: tzinfo | None = None) -> datetime | None:
    expr = CronExpression.parse(text)
    if expr is None:
        return None
    return expr.next_date(after, tz)
