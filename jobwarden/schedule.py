"""
Schedule engine: cron expressions and shorthand forms.

Evaluation works on the wall-clock fields of the datetime it is given, so
callers convert "now" into the zone the schedule is meant for first.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

from jobwarden.errors import ScheduleParseError

FIELD_NAMES = ("minute", "hour", "day-of-month", "month", "day-of-week")
FIELD_BOUNDS: Dict[str, Tuple[int, int]] = {
    "minute": (0, 59),
    "hour": (0, 23),
    "day-of-month": (1, 31),
    "month": (1, 12),
    "day-of-week": (0, 6),
}
MONTH_NAMES = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}
DAY_NAMES = {
    "sun": 0,
    "mon": 1,
    "tue": 2,
    "wed": 3,
    "thu": 4,
    "fri": 5,
    "sat": 6,
}
SHORTHANDS = {
    "@hourly": "0 * * * *",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@weekly": "0 0 * * 0",
    "@monthly": "0 0 1 * *",
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
}
STARTUP_ALIASES = {"@startup", "@reboot"}
DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
DURATION_RE = re.compile(r"^(?:\d+[smhd])+$")
DURATION_PART_RE = re.compile(r"(\d+)([smhd])")
CRON_FIELD_RE = re.compile(r"^[0-9*,/\-]+$")
MAX_LOOKAHEAD = timedelta(days=366)


@dataclass(frozen=True)
class FieldTerm:
    """One comma-separated member of a cron field."""

    kind: str  # wildcard | exact | range | step | range_step
    start: int = 0
    end: int = 0
    step: int = 1

    def matches(self, value: int) -> bool:
        if self.kind == "wildcard":
            return True
        if self.kind == "step":
            return value % self.step == 0
        if self.kind == "range":
            return self.start <= value <= self.end
        if self.kind == "range_step":
            return self.start <= value <= self.end and (value - self.start) % self.step == 0
        return value == self.start


@dataclass(frozen=True)
class CronField:
    name: str
    raw: str
    terms: Tuple[FieldTerm, ...]

    @property
    def is_wildcard(self) -> bool:
        return self.raw == "*"

    def matches(self, value: int) -> bool:
        return any(term.matches(value) for term in self.terms)


@dataclass(frozen=True)
class CronSchedule:
    expr: str
    minute: CronField
    hour: CronField
    day_of_month: CronField
    month: CronField
    day_of_week: CronField

    kind = "cron"

    @property
    def fields(self) -> Tuple[CronField, ...]:
        return (self.minute, self.hour, self.day_of_month, self.month, self.day_of_week)

    @property
    def cron_expr(self) -> str:
        return " ".join(f.raw for f in self.fields)


@dataclass(frozen=True)
class IntervalSchedule:
    expr: str
    seconds: int

    kind = "interval"

    @property
    def interval(self) -> timedelta:
        return timedelta(seconds=self.seconds)


@dataclass(frozen=True)
class StartupSchedule:
    expr: str = "@startup"

    kind = "startup"


Schedule = Union[CronSchedule, IntervalSchedule, StartupSchedule]


def parse(expr: str) -> Schedule:
    if not isinstance(expr, str) or not expr.strip():
        raise ScheduleParseError("Error: Schedule expression cannot be empty.")
    text = " ".join(expr.split())
    lowered = text.lower()

    if lowered.startswith("@"):
        if lowered in STARTUP_ALIASES:
            return StartupSchedule(expr=text)
        if lowered == "@every" or lowered.startswith("@every "):
            duration = text[len("@every"):].strip()
            if not duration:
                raise ScheduleParseError(
                    f'Error: "{text}" requires a duration such as 30s, 5m, 2h or 1d.',
                    field="interval",
                )
            return IntervalSchedule(expr=text, seconds=parse_duration(duration))
        if lowered in SHORTHANDS:
            return _parse_cron(SHORTHANDS[lowered], text)
        raise ScheduleParseError(f'Error: Unknown schedule shorthand "{text}".', field="shorthand")

    return _parse_cron(text, text)


def parse_duration(text: str) -> int:
    raw = text.strip().lower()
    if not DURATION_RE.match(raw):
        raise ScheduleParseError(
            f'Error: Duration must look like <number><s|m|h|d> (e.g. 90s, 1h30m), got "{text}".',
            field="interval",
        )
    seconds = sum(int(amount) * DURATION_UNITS[unit] for amount, unit in DURATION_PART_RE.findall(raw))
    if seconds <= 0:
        raise ScheduleParseError(f'Error: Duration must be > 0, got "{text}".', field="interval")
    return seconds


def format_duration(seconds: int) -> str:
    parts: List[str] = []
    remaining = int(seconds)
    for unit, size in (("d", 86400), ("h", 3600), ("m", 60), ("s", 1)):
        if remaining >= size:
            amount, remaining = divmod(remaining, size)
            parts.append(f"{amount}{unit}")
    return "".join(parts) or "0s"


def _parse_cron(cron_text: str, expr: str) -> CronSchedule:
    raw_fields = cron_text.split()
    if len(raw_fields) != 5:
        raise ScheduleParseError(
            f'Error: Cron expression must have exactly 5 fields, got {len(raw_fields)} in "{expr}".',
            field="expression",
        )
    fields = [_parse_field(raw, FIELD_NAMES[idx], expr) for idx, raw in enumerate(raw_fields)]
    return CronSchedule(expr, *fields)


def _parse_field(raw: str, name: str, expr: str) -> CronField:
    minimum, maximum = FIELD_BOUNDS[name]
    text = raw.lower()
    if name == "month":
        text = _replace_names(text, MONTH_NAMES, name, expr)
    elif name == "day-of-week":
        text = _replace_names(text, DAY_NAMES, name, expr)

    if not CRON_FIELD_RE.match(text):
        raise ScheduleParseError(f'Error: Invalid token "{raw}" in {name} field of "{expr}".', field=name)

    terms = tuple(_parse_term(part, name, minimum, maximum, expr) for part in text.split(","))
    return CronField(name=name, raw=text, terms=terms)


def _replace_names(text: str, mapping: Dict[str, int], name: str, expr: str) -> str:
    def repl(match: re.Match[str]) -> str:
        token = match.group(0)
        if token not in mapping:
            raise ScheduleParseError(
                f'Error: Invalid name "{token}" in {name} field of "{expr}".', field=name
            )
        return str(mapping[token])

    return re.sub(r"[a-z]+", repl, text)


def _parse_term(part: str, name: str, minimum: int, maximum: int, expr: str) -> FieldTerm:
    if not part:
        raise ScheduleParseError(f'Error: Empty list member in {name} field of "{expr}".', field=name)

    if "/" in part:
        base, step_text = part.split("/", 1)
        if not step_text.isdigit() or int(step_text) <= 0:
            raise ScheduleParseError(f'Error: Invalid step "{part}" in {name} field of "{expr}".', field=name)
        step = int(step_text)
        if step > (maximum - minimum + 1):
            raise ScheduleParseError(f'Error: Step "{step}" too large in {name} field of "{expr}".', field=name)
        if base == "*":
            return FieldTerm("step", minimum, maximum, step)
        if "-" in base:
            start, end = _parse_range(base, name, minimum, maximum, expr)
        else:
            start, end = _parse_value(base, name, minimum, maximum, expr), maximum
        return FieldTerm("range_step", start, end, step)

    if part == "*":
        return FieldTerm("wildcard", minimum, maximum)
    if "-" in part:
        start, end = _parse_range(part, name, minimum, maximum, expr)
        return FieldTerm("range", start, end)
    value = _parse_value(part, name, minimum, maximum, expr)
    return FieldTerm("exact", value, value)


def _parse_range(token: str, name: str, minimum: int, maximum: int, expr: str) -> Tuple[int, int]:
    left, right = token.split("-", 1)
    if not left.isdigit() or not right.isdigit():
        raise ScheduleParseError(f'Error: Invalid range "{token}" in {name} field of "{expr}".', field=name)
    start = int(left)
    end = int(right)
    if start > end:
        raise ScheduleParseError(f'Error: Invalid range "{token}" in {name} field of "{expr}".', field=name)
    if start < minimum or end > maximum:
        raise ScheduleParseError(
            f'Error: Range "{token}" out of bounds {minimum}-{maximum} in {name} field of "{expr}".',
            field=name,
        )
    return start, end


def _parse_value(token: str, name: str, minimum: int, maximum: int, expr: str) -> int:
    if not token.isdigit():
        raise ScheduleParseError(f'Error: Invalid token "{token}" in {name} field of "{expr}".', field=name)
    value = int(token)
    if value < minimum or value > maximum:
        raise ScheduleParseError(
            f'Error: Value "{value}" out of bounds {minimum}-{maximum} in {name} field of "{expr}".',
            field=name,
        )
    return value


def matches(field: Union[str, CronField], value: int) -> bool:
    """Match one raw field (e.g. ``"1-5"`` or ``"*/15"``) against a value."""
    if isinstance(field, CronField):
        return field.matches(value)
    for part in field.strip().lower().split(","):
        if part == "*":
            return True
        if "/" in part:
            base, step_text = part.split("/", 1)
            if not step_text.isdigit() or int(step_text) <= 0:
                continue
            step = int(step_text)
            if base == "*":
                if value % step == 0:
                    return True
                continue
            if "-" in base:
                left, right = base.split("-", 1)
                if left.isdigit() and right.isdigit():
                    start, end = int(left), int(right)
                    if start <= value <= end and (value - start) % step == 0:
                        return True
                continue
            if base.isdigit() and value >= int(base) and (value - int(base)) % step == 0:
                return True
            continue
        if "-" in part:
            left, right = part.split("-", 1)
            if left.isdigit() and right.isdigit() and int(left) <= value <= int(right):
                return True
            continue
        if part.isdigit() and int(part) == value:
            return True
    return False


def cron_weekday(moment: datetime) -> int:
    # datetime.weekday() is Monday=0; cron is Sunday=0.
    return (moment.weekday() + 1) % 7


def _day_matches(schedule: CronSchedule, moment: datetime) -> bool:
    dom = schedule.day_of_month.matches(moment.day)
    dow = schedule.day_of_week.matches(cron_weekday(moment))
    if schedule.day_of_month.is_wildcard or schedule.day_of_week.is_wildcard:
        return dom and dow
    return dom or dow


def _date_matches(schedule: CronSchedule, moment: datetime) -> bool:
    return schedule.month.matches(moment.month) and _day_matches(schedule, moment)


def cron_matches(schedule: CronSchedule, moment: datetime) -> bool:
    return (
        schedule.minute.matches(moment.minute)
        and schedule.hour.matches(moment.hour)
        and _date_matches(schedule, moment)
    )


def is_due(schedule: Schedule, moment: datetime, last_run: Optional[datetime] = None) -> bool:
    if isinstance(schedule, CronSchedule):
        return cron_matches(schedule, moment)
    if isinstance(schedule, IntervalSchedule):
        if last_run is None:
            return True
        return (moment - last_run).total_seconds() >= schedule.seconds
    return False


def next_runs(
    schedule: Schedule,
    start: datetime,
    count: int,
    last_run: Optional[datetime] = None,
) -> List[datetime]:
    """Return up to ``count`` due times strictly after ``start``."""
    if count <= 0:
        return []
    if isinstance(schedule, IntervalSchedule):
        return _next_interval_runs(schedule, start, count, last_run)
    if isinstance(schedule, CronSchedule):
        return _next_cron_runs(schedule, start, count)
    return []


def _next_interval_runs(
    schedule: IntervalSchedule,
    start: datetime,
    count: int,
    last_run: Optional[datetime],
) -> List[datetime]:
    anchor = last_run or start
    step = schedule.interval
    if anchor > start:
        candidate = anchor + step
    else:
        steps = int((start - anchor).total_seconds() // schedule.seconds) + 1
        candidate = anchor + step * steps
    runs: List[datetime] = []
    while len(runs) < count:
        runs.append(candidate)
        candidate += step
    return runs


def _next_cron_runs(schedule: CronSchedule, start: datetime, count: int) -> List[datetime]:
    cursor = start.replace(second=0, microsecond=0) + timedelta(minutes=1)
    limit = start + MAX_LOOKAHEAD
    runs: List[datetime] = []
    while cursor <= limit and len(runs) < count:
        if not _date_matches(schedule, cursor):
            cursor = cursor.replace(hour=0, minute=0) + timedelta(days=1)
            continue
        if not schedule.hour.matches(cursor.hour):
            cursor = cursor.replace(minute=0) + timedelta(hours=1)
            continue
        if schedule.minute.matches(cursor.minute):
            runs.append(cursor)
        cursor += timedelta(minutes=1)
    return runs


def describe(schedule: Optional[Schedule]) -> str:
    if schedule is None:
        return "on demand"
    if isinstance(schedule, StartupSchedule):
        return "once at daemon startup"
    if isinstance(schedule, IntervalSchedule):
        return f"every {format_duration(schedule.seconds)}"
    if schedule.expr.startswith("@"):
        return f"{schedule.expr} ({schedule.cron_expr})"
    return f"cron {schedule.cron_expr}"


def to_dict(schedule: Schedule) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"kind": schedule.kind, "expr": schedule.expr}
    if isinstance(schedule, CronSchedule):
        payload["fields"] = {f.name: f.raw for f in schedule.fields}
    elif isinstance(schedule, IntervalSchedule):
        payload["seconds"] = schedule.seconds
    return payload
