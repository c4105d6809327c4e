from __future__ import annotations

import os
import shlex
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from jobwarden.errors import LaunchError, TimeoutExceeded
from jobwarden.process import (
    ProcessHandle,
    ProcessLauncher,
    TimeoutEnforcer,
    pid_exists,
    process_started_at,
    read_exit_status,
)


IGNORE_SIGTERM = (
    "import signal, sys, time\n"
    "from pathlib import Path\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "Path(sys.argv[1]).write_text('ready', encoding='utf-8')\n"
    "time.sleep(60)\n"
)


def _write_script(path: Path, body: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body, encoding="utf-8")


def _python(script: Path, *args: str) -> str:
    return " ".join(shlex.quote(part) for part in (sys.executable, str(script), *args))


def _wait_for(path: Path, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while not path.exists():
        assert time.monotonic() < deadline, f"{path} never appeared"
        time.sleep(0.02)


def _wait_for_text(path: Path, text: str, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while not (path.exists() and text in path.read_text(encoding="utf-8")):
        assert time.monotonic() < deadline, f"{text!r} never appeared in {path}"
        time.sleep(0.02)


def test_launch_captures_output_and_exit_status(tmp_path: Path) -> None:
    launcher = ProcessLauncher()
    log_path = tmp_path / "logs" / "echo.log"
    status_path = tmp_path / "status" / "echo.json"
    handle = launcher.launch("echo hello; exit 3", log_path, status_path=status_path)

    assert launcher.wait(handle, timeout=10)
    assert not launcher.is_alive(handle)
    assert launcher.exit_status(handle) == 3
    assert read_exit_status(status_path) == 3
    assert "hello" in log_path.read_text(encoding="utf-8")


def test_launch_applies_cwd_and_env(tmp_path: Path) -> None:
    workdir = tmp_path / "work"
    workdir.mkdir()
    launcher = ProcessLauncher()
    handle = launcher.launch(
        'echo "$GREETING" > out.txt',
        tmp_path / "env.log",
        cwd=workdir,
        env={"GREETING": "hi-there"},
    )
    assert launcher.wait(handle, timeout=10)
    assert (workdir / "out.txt").read_text(encoding="utf-8").strip() == "hi-there"


def test_launch_errors(tmp_path: Path) -> None:
    launcher = ProcessLauncher()
    with pytest.raises(LaunchError, match="cannot be empty"):
        launcher.launch("   ", tmp_path / "x.log")
    with pytest.raises(LaunchError, match="does not exist"):
        launcher.launch("true", tmp_path / "x.log", cwd=tmp_path / "missing")


def test_worker_is_detached_into_its_own_group(tmp_path: Path) -> None:
    launcher = ProcessLauncher()
    handle = launcher.launch("sleep 30", tmp_path / "sleep.log")
    try:
        assert launcher.is_alive(handle)
        assert os.getpgid(handle.pid) == handle.pgid == handle.pid
        assert os.getpgid(handle.pid) != os.getpgid(0)
    finally:
        launcher.terminate(handle, grace_seconds=2)
    assert not launcher.is_alive(handle)


def test_liveness_from_a_fresh_launcher_uses_status_file(tmp_path: Path) -> None:
    status_path = tmp_path / "status.json"
    launcher = ProcessLauncher()
    handle = launcher.launch("exit 0", tmp_path / "t.log", status_path=status_path)
    assert launcher.wait(handle, timeout=10)

    observer = ProcessLauncher()
    assert not observer.is_alive(handle)
    assert observer.exit_status(handle) == 0


def test_terminate_graceful(tmp_path: Path) -> None:
    launcher = ProcessLauncher()
    log_path = tmp_path / "sleep.log"
    handle = launcher.launch("echo started; sleep 30", log_path, status_path=tmp_path / "s.json")
    _wait_for_text(log_path, "started")
    forced = launcher.terminate(handle, grace_seconds=5)
    assert forced is False
    assert not launcher.is_alive(handle)
    assert launcher.exit_status(handle) != 0


def test_terminate_escalates_to_kill(tmp_path: Path) -> None:
    script = tmp_path / "stubborn.py"
    ready = tmp_path / "ready"
    _write_script(script, IGNORE_SIGTERM)
    launcher = ProcessLauncher()
    handle = launcher.launch(f"exec {_python(script, str(ready))}", tmp_path / "stubborn.log")
    _wait_for(ready)

    started = time.monotonic()
    forced = launcher.terminate(handle, grace_seconds=0.5)
    assert forced is True
    assert time.monotonic() - started >= 0.5
    assert not launcher.is_alive(handle)


def test_timeout_enforcer(tmp_path: Path) -> None:
    script = tmp_path / "stubborn.py"
    ready = tmp_path / "ready"
    _write_script(script, IGNORE_SIGTERM)
    launcher = ProcessLauncher()
    enforcer = TimeoutEnforcer(launcher, grace_seconds=0.3)
    handle = launcher.launch(f"exec {_python(script, str(ready))}", tmp_path / "stubborn.log")
    _wait_for(ready)

    deadline = enforcer.deadline(handle.started_at, 60)
    assert enforcer.enforce(handle, deadline, now=handle.started_at + timedelta(seconds=59)) is None
    assert launcher.is_alive(handle)

    with pytest.raises(TimeoutExceeded) as excinfo:
        enforcer.enforce(handle, deadline, now=deadline, job_name="stubborn", run_id="r1")
    assert excinfo.value.forced is True
    assert excinfo.value.timeout_seconds == 60
    assert not launcher.is_alive(handle)


def test_pid_exists() -> None:
    assert pid_exists(os.getpid())
    assert not pid_exists(None)
    assert not pid_exists(0)
    assert not pid_exists(-5)


@pytest.mark.skipif(not Path("/proc/self/stat").exists(), reason="needs /proc")
def test_reused_pid_is_not_treated_as_the_worker(tmp_path: Path) -> None:
    launcher = ProcessLauncher()
    handle = launcher.launch("sleep 30", tmp_path / "sleep.log")
    try:
        started = process_started_at(handle.pid)
        assert started is not None
        assert abs(started - handle.started_at) < timedelta(seconds=5)

        # A launcher that did not spawn the worker identifies it by pid and start time.
        observer = ProcessLauncher()
        assert observer.is_alive(handle)
        stale = ProcessHandle(
            pid=handle.pid,
            started_at=datetime(2000, 1, 1, tzinfo=timezone.utc),
            log_path=handle.log_path,
        )
        assert not observer.is_alive(stale)
        assert observer.terminate(stale, grace_seconds=0.1) is False
        assert launcher.is_alive(handle)
    finally:
        launcher.terminate(handle, grace_seconds=2)
