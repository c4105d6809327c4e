from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from croniter import croniter

from jobwarden import schedule
from jobwarden.errors import ScheduleParseError

UTC = timezone.utc


def _dt(*args: int) -> datetime:
    return datetime(*args, tzinfo=UTC)


def test_shorthands_expand_to_cron() -> None:
    expected = {
        "@hourly": "0 * * * *",
        "@daily": "0 0 * * *",
        "@midnight": "0 0 * * *",
        "@weekly": "0 0 * * 0",
        "@monthly": "0 0 1 * *",
        "@yearly": "0 0 1 1 *",
        "@annually": "0 0 1 1 *",
    }
    for expr, cron_expr in expected.items():
        parsed = schedule.parse(expr)
        assert parsed.kind == "cron"
        assert parsed.cron_expr == cron_expr
        assert parsed.expr == expr


def test_every_and_startup_forms() -> None:
    every = schedule.parse("@every 1h30m")
    assert every.kind == "interval"
    assert every.seconds == 5400
    assert schedule.describe(every) == "every 1h30m"

    for alias in ("@startup", "@reboot"):
        assert schedule.parse(alias).kind == "startup"


def test_month_and_day_names() -> None:
    parsed = schedule.parse("0 9 * jan-mar mon-fri")
    assert parsed.cron_expr == "0 9 * 1-3 1-5"
    assert parsed.month.matches(2)
    assert not parsed.month.matches(4)
    assert parsed.day_of_week.matches(5)
    assert not parsed.day_of_week.matches(6)


@pytest.mark.parametrize(
    "expr,field",
    [
        ("61 * * * *", "minute"),
        ("* 24 * * *", "hour"),
        ("* * 0 * *", "day-of-month"),
        ("* * * 13 *", "month"),
        ("* * * * 7", "day-of-week"),
        ("*/0 * * * *", "minute"),
        ("5-1 * * * *", "minute"),
        ("*/99 * * * *", "minute"),
        ("* * * foo *", "month"),
        ("1,,2 * * * *", "minute"),
        ("* * * *", "expression"),
        ("* * * * * *", "expression"),
        ("@fortnightly", "shorthand"),
        ("@every", "interval"),
        ("@every 0s", "interval"),
        ("@every soon", "interval"),
    ],
)
def test_malformed_expressions_rejected(expr: str, field: str) -> None:
    with pytest.raises(ScheduleParseError) as excinfo:
        schedule.parse(expr)
    assert excinfo.value.field == field
    assert str(excinfo.value).startswith("Error:")


def test_empty_expression_rejected() -> None:
    with pytest.raises(ScheduleParseError, match="cannot be empty"):
        schedule.parse("   ")


def test_match_single_field_forms() -> None:
    assert schedule.matches("*", 37)
    assert all(schedule.matches("*/15", v) for v in (0, 15, 30, 45))
    assert not schedule.matches("*/15", 7)
    assert schedule.matches("1-5", 3)
    assert not schedule.matches("1-5", 6)
    assert schedule.matches("1,3,5", 5)
    assert not schedule.matches("1,3,5", 4)
    assert schedule.matches("10-20/5", 15)
    assert not schedule.matches("10-20/5", 25)
    assert schedule.matches("10/20", 50)
    assert not schedule.matches("10/20", 0)


def test_cron_weekday_sunday_is_zero() -> None:
    assert schedule.cron_weekday(_dt(2024, 1, 7)) == 0
    assert schedule.cron_weekday(_dt(2024, 1, 8)) == 1
    assert schedule.cron_weekday(_dt(2024, 1, 13)) == 6


def test_day_of_month_and_week_are_ored_when_both_restricted() -> None:
    friday_13th_rule = schedule.parse("0 0 13 * 5")
    assert schedule.is_due(friday_13th_rule, _dt(2024, 9, 6, 0, 0))  # a Friday
    assert schedule.is_due(friday_13th_rule, _dt(2024, 8, 13, 0, 0))  # a Tuesday the 13th
    assert not schedule.is_due(friday_13th_rule, _dt(2024, 8, 14, 0, 0))

    weekdays_only = schedule.parse("0 0 * * 1-5")
    assert not schedule.is_due(weekdays_only, _dt(2024, 9, 7, 0, 0))  # Saturday


@pytest.mark.parametrize(
    "expr",
    [
        "*/15 * * * *",
        "0 */6 * * *",
        "30 9 * * 1-5",
        "0,30 8-17 * * *",
        "5 4 * * sun",
        "10-40/10 * * * *",
        "0 12 * * */2",
    ],
)
def test_cron_matching_agrees_with_croniter(expr: str) -> None:
    parsed = schedule.parse(expr)
    start = datetime(2024, 9, 1, 0, 0)
    hits = 0
    for offset in range(0, 3 * 24 * 60, 5):
        moment = start + timedelta(minutes=offset)
        ours = schedule.is_due(parsed, moment)
        assert ours == croniter.match(expr, moment), f"{expr} at {moment.isoformat()}"
        hits += ours
    assert hits > 0


def test_next_runs_skips_weekend_and_is_strictly_after_start() -> None:
    parsed = schedule.parse("0 9 * * 1-5")
    runs = schedule.next_runs(parsed, _dt(2024, 9, 6, 10, 0), 3)
    assert runs == [_dt(2024, 9, 9, 9, 0), _dt(2024, 9, 10, 9, 0), _dt(2024, 9, 11, 9, 0)]

    at_match = schedule.next_runs(parsed, _dt(2024, 9, 9, 9, 0), 1)
    assert at_match == [_dt(2024, 9, 10, 9, 0)]


def test_next_runs_are_increasing_and_due() -> None:
    parsed = schedule.parse("*/20 8-9 * * *")
    runs = schedule.next_runs(parsed, _dt(2024, 9, 1, 7, 59, 30), 8)
    assert runs[:3] == [_dt(2024, 9, 1, 8, 0), _dt(2024, 9, 1, 8, 20), _dt(2024, 9, 1, 8, 40)]
    assert all(a < b for a, b in zip(runs, runs[1:]))
    assert all(schedule.is_due(parsed, run) for run in runs)


def test_next_runs_leap_day_and_lookahead_limit() -> None:
    leap_day = schedule.parse("0 0 29 2 *")
    assert schedule.next_runs(leap_day, _dt(2023, 3, 1), 1) == [_dt(2024, 2, 29)]
    # The next 29 February after 2024 is in 2028, beyond the search horizon.
    assert schedule.next_runs(leap_day, _dt(2024, 3, 1), 1) == []


def test_interval_due_and_next_runs() -> None:
    every = schedule.parse("@every 10m")
    now = _dt(2024, 9, 1, 12, 0)
    assert schedule.is_due(every, now, last_run=None)
    assert not schedule.is_due(every, now, last_run=now - timedelta(minutes=9))
    assert schedule.is_due(every, now, last_run=now - timedelta(minutes=10))

    runs = schedule.next_runs(every, now, 2, last_run=now - timedelta(minutes=4))
    assert runs == [_dt(2024, 9, 1, 12, 6), _dt(2024, 9, 1, 12, 16)]


def test_startup_schedule_is_never_due_from_the_clock() -> None:
    startup = schedule.parse("@startup")
    assert not schedule.is_due(startup, _dt(2024, 9, 1, 0, 0))
    assert schedule.next_runs(startup, _dt(2024, 9, 1, 0, 0), 3) == []
    assert schedule.describe(startup) == "once at daemon startup"


def test_describe_and_to_dict() -> None:
    assert schedule.describe(None) == "on demand"
    assert schedule.describe(schedule.parse("@daily")) == "@daily (0 0 * * *)"
    assert schedule.describe(schedule.parse("*/5 * * * *")) == "cron */5 * * * *"

    payload = schedule.to_dict(schedule.parse("0 9 * * mon"))
    assert payload["kind"] == "cron"
    assert payload["fields"]["day-of-week"] == "1"
    assert schedule.to_dict(schedule.parse("@every 90s"))["seconds"] == 90


def test_parse_and_format_duration() -> None:
    assert schedule.parse_duration("90s") == 90
    assert schedule.parse_duration("2d") == 172800
    assert schedule.format_duration(3725) == "1h2m5s"
    with pytest.raises(ScheduleParseError):
        schedule.parse_duration("5 minutes")
