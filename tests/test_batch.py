from __future__ import annotations

from pathlib import Path

import pytest

from jobwarden.batch import BatchUnit, ConcurrencyLimiter, units_for_job
from jobwarden.config import Settings
from jobwarden.errors import ConfigError
from jobwarden.process import ProcessLauncher
from jobwarden.registry import Job, JobRegistry


def _limiter(tmp_path: Path, registry: JobRegistry = None) -> ConcurrencyLimiter:
    return ConcurrencyLimiter(
        ProcessLauncher(),
        tmp_path / "batch-logs",
        poll_interval=0.02,
        registry=registry,
        kill_grace_seconds=0.5,
    )


def test_ten_units_never_more_than_three_running(tmp_path: Path) -> None:
    marks = tmp_path / "marks"
    marks.mkdir()
    units = [
        BatchUnit(key=f"u{n}", command=f"touch {marks}/start-{n}; sleep 0.3; echo done-{n}")
        for n in range(10)
    ]
    result = _limiter(tmp_path).dispatch_all(units, max_concurrent=3, collect=True)

    assert list(result.results) == [f"u{n}" for n in range(10)]
    assert result.peak_running == 3
    assert result.ok
    assert len(list(marks.iterdir())) == 10
    for n in range(10):
        unit = result.results[f"u{n}"]
        assert unit.exit_status == 0
        assert f"done-{n}" in unit.output


def test_failures_do_not_cancel_siblings(tmp_path: Path) -> None:
    units = [
        BatchUnit(key="ok-1", command="exit 0"),
        BatchUnit(key="bad", command="exit 4"),
        BatchUnit(key="unlaunchable", command="true", cwd=tmp_path / "missing"),
        BatchUnit(key="ok-2", command="sleep 0.2"),
    ]
    result = _limiter(tmp_path).dispatch_all(units, max_concurrent=2)

    statuses = {key: unit.status for key, unit in result.results.items()}
    assert statuses == {
        "ok-1": "succeeded",
        "bad": "failed",
        "unlaunchable": "launch_failed",
        "ok-2": "succeeded",
    }
    assert result.results["bad"].exit_status == 4
    assert "does not exist" in result.results["unlaunchable"].error
    assert not result.ok
    assert [unit.key for unit in result.failed] == ["bad", "unlaunchable"]


def test_unit_timeout(tmp_path: Path) -> None:
    result = _limiter(tmp_path).dispatch_all(
        [BatchUnit(key="slow", command="sleep 30"), BatchUnit(key="fast", command="true")],
        max_concurrent=2,
        timeout_seconds=0.3,
    )
    assert result.results["slow"].status == "timed_out"
    assert result.results["fast"].status == "succeeded"


def test_rejects_bad_arguments(tmp_path: Path) -> None:
    limiter = _limiter(tmp_path)
    with pytest.raises(ConfigError):
        limiter.dispatch_all([BatchUnit(key="a", command="true")], max_concurrent=0)
    with pytest.raises(ConfigError, match="unique"):
        limiter.dispatch_all(
            [BatchUnit(key="a", command="true"), BatchUnit(key="a", command="true")],
            max_concurrent=1,
        )


def test_empty_batch_returns_immediately(tmp_path: Path) -> None:
    result = _limiter(tmp_path).dispatch_all([], max_concurrent=4)
    assert result.results == {}
    assert result.peak_running == 0


def test_units_for_job_quotes_inputs() -> None:
    placeholder = Job(name="conv", command="convert {} --out /tmp", env=("MODE=fast",))
    units = units_for_job(placeholder, ["a.txt", "it's here.txt"])
    assert units[0].command == "convert a.txt --out /tmp"
    assert units[1].command == "convert 'it'\"'\"'s here.txt' --out /tmp"
    assert units[0].env == {"MODE": "fast"}

    appended = units_for_job(Job(name="echo", command="echo"), ["x y"])
    assert appended[0].command == "echo 'x y'"
    assert appended[0].key == "x y"


def test_job_batch_records_runs(settings: Settings, tmp_path: Path) -> None:
    registry = JobRegistry(settings.registry_path, timezone=settings.timezone)
    job = registry.add(Job(name="fanout", command="echo item={}"))
    result = _limiter(tmp_path, registry).dispatch_all(
        units_for_job(job, ["a", "b", "c"]), max_concurrent=2, collect=True, job=job
    )

    assert result.ok
    assert "item=a" in result.results["a"].output
    history = registry.history("fanout")
    assert len(history) == 3
    assert {run.trigger for run in history} == {"batch"}
    assert {run.metadata["input"] for run in history} == {"a", "b", "c"}
    assert all(run.status == "succeeded" for run in history)
    assert registry.active_runs() == []
    assert registry.get("fanout").run_count == 3
