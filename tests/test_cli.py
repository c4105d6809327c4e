from __future__ import annotations

import os
import signal
import time
from pathlib import Path
from typing import List

import pytest

from jobwarden import cli
from jobwarden.config import load_settings
from jobwarden.daemon import read_daemon_pid
from jobwarden.errors import (
    EXIT_CONFIG,
    EXIT_JOB_EXISTS,
    EXIT_JOB_NOT_FOUND,
    EXIT_SCHEDULE_PARSE,
)
from jobwarden.process import ProcessLauncher
from jobwarden.registry import JobRegistry


def _run(tmp_path: Path, *args: str) -> int:
    argv: List[str] = [
        "--config",
        str(tmp_path / "jobwarden.yaml"),
        "--state-dir",
        str(tmp_path / "state"),
        *args,
    ]
    return cli.main(argv)


def test_add_list_and_preview(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(tmp_path, "add", "nightly", "echo hi", "--schedule", "0 2 * * *") == 0
    assert _run(tmp_path, "list") == 0
    output = capsys.readouterr().out
    assert "Added job nightly: cron 0 2 * * *" in output
    assert "nightly" in output.splitlines()[-1]

    assert _run(tmp_path, "preview", "nightly", "--count", "2") == 0
    output = capsys.readouterr().out
    assert output.count("T02:00:00") == 2


def test_preview_expression(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(tmp_path, "preview", "--expr", "*/15 * * * *", "--count", "3") == 0
    lines = [line for line in capsys.readouterr().out.splitlines() if line.startswith("- ")]
    assert len(lines) == 3


def test_error_exit_codes(tmp_path: Path) -> None:
    assert _run(tmp_path, "add", "a", "true") == 0
    assert _run(tmp_path, "add", "a", "true") == EXIT_JOB_EXISTS
    assert _run(tmp_path, "add", "b", "true", "--schedule", "* * *") == EXIT_SCHEDULE_PARSE
    assert _run(tmp_path, "add", "c", "true", "--env", "oops") == EXIT_CONFIG
    assert _run(tmp_path, "remove", "ghost") == EXIT_JOB_NOT_FOUND
    assert _run(tmp_path, "history", "ghost") == EXIT_JOB_NOT_FOUND
    assert _run(tmp_path, "preview", "--expr", "99 * * * *") == EXIT_SCHEDULE_PARSE


def test_bad_config_exit_code(tmp_path: Path) -> None:
    (tmp_path / "jobwarden.yaml").write_text("surprise: 1\n", encoding="utf-8")
    assert _run(tmp_path, "list") == EXIT_CONFIG


def test_run_now_wait_mirrors_exit_status(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(tmp_path, "add", "fails", "echo about to fail; exit 3") == 0
    assert _run(tmp_path, "run-now", "fails", "--wait") == 3
    assert _run(tmp_path, "add", "works", "echo fine") == 0
    assert _run(tmp_path, "run-now", "works", "--wait") == 0
    capsys.readouterr()

    assert _run(tmp_path, "history", "fails") == 0
    assert "failed" in capsys.readouterr().out
    assert _run(tmp_path, "logs", "fails", "--lines", "20") == 0
    assert "about to fail" in capsys.readouterr().out

    assert _run(tmp_path, "status", "fails") == 0
    status = capsys.readouterr().out
    assert "Daemon: not running" in status
    assert "Failures: 1 consecutive" in status


def test_run_now_without_wait_is_reconciled_by_status(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert _run(tmp_path, "add", "quick", "true") == 0
    assert _run(tmp_path, "run-now", "quick") == 0
    assert "Started quick" in capsys.readouterr().out

    settings = load_settings(tmp_path / "jobwarden.yaml", state_dir=tmp_path / "state")
    registry = JobRegistry(settings.registry_path)
    (run,) = registry.active_runs("quick")
    assert ProcessLauncher().wait(run.handle, timeout=10)

    assert _run(tmp_path, "status") == 0
    assert registry.active_runs() == []
    assert registry.history("quick")[-1].status == "succeeded"


def test_enable_disable_unblock_remove(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(tmp_path, "add", "job", "exit 1", "--schedule", "@every 5m") == 0
    assert _run(tmp_path, "disable", "job") == 0
    assert _run(tmp_path, "enable", "job") == 0
    assert _run(tmp_path, "run-now", "job", "--wait") == 1
    capsys.readouterr()

    assert _run(tmp_path, "unblock", "job") == 0
    assert "Cleared failure state for job" in capsys.readouterr().out
    assert _run(tmp_path, "unblock", "job") == 0
    assert "no recorded failures" in capsys.readouterr().out

    assert _run(tmp_path, "remove", "job") == 0
    assert _run(tmp_path, "list") == 0
    assert "No jobs registered." in capsys.readouterr().out


def test_batch_command(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = _run(tmp_path, "batch", "--command", "echo got {}", "--max-concurrent", "2", "--collect", "a", "b", "c")
    assert code == 0
    output = capsys.readouterr().out
    assert "3 succeeded, 0 failed" in output
    assert "| got b" in output

    assert _run(tmp_path, "batch", "--command", "test {} = ok", "ok", "nope") == 1


def test_stop_daemon_when_not_running(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(tmp_path, "stop-daemon") == 0
    assert "Daemon is not running." in capsys.readouterr().out


def _wait_until(predicate, timeout: float = 15.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, "condition never became true"
        time.sleep(0.1)


def test_detached_daemon_runs_jobs_and_stops(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (tmp_path / "jobwarden.yaml").write_text("poll_seconds: 0.2\n", encoding="utf-8")
    assert _run(tmp_path, "add", "ticker", "echo tick", "--schedule", "@every 1s") == 0
    settings = load_settings(tmp_path / "jobwarden.yaml", state_dir=tmp_path / "state")
    registry = JobRegistry(settings.registry_path)

    assert _run(tmp_path, "start-daemon", "--detach") == 0
    assert "Daemon started" in capsys.readouterr().out
    pid = read_daemon_pid(settings)
    assert pid is not None
    _wait_until(lambda: any(run.status == "succeeded" for run in registry.history("ticker")))

    assert _run(tmp_path, "stop-daemon", "--wait") == 0
    assert "Daemon stopped." in capsys.readouterr().out
    assert read_daemon_pid(settings) is None
    assert not settings.pid_file.exists()
    assert not settings.stop_file.exists()


def test_daemon_shuts_down_on_sigterm(tmp_path: Path) -> None:
    (tmp_path / "jobwarden.yaml").write_text("poll_seconds: 5\n", encoding="utf-8")
    settings = load_settings(tmp_path / "jobwarden.yaml", state_dir=tmp_path / "state")
    assert _run(tmp_path, "start-daemon", "--detach") == 0
    pid = read_daemon_pid(settings)
    assert pid is not None

    os.kill(pid, signal.SIGTERM)
    _wait_until(lambda: read_daemon_pid(settings) is None)
    log_text = settings.log_file.read_text(encoding="utf-8")
    assert f"Received signal {int(signal.SIGTERM)}" in log_text
    assert "Stop requested; daemon exiting." in log_text
