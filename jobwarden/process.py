"""
Process lifecycle: launch detached workers, probe liveness, enforce timeouts.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Optional

from jobwarden.config import DEFAULT_KILL_GRACE_SECONDS, DEFAULT_LAUNCH_GRACE_SECONDS
from jobwarden.errors import LaunchError, TimeoutExceeded

logger = logging.getLogger(__name__)
UTC = timezone.utc
RUNNER_PATH = Path(__file__).resolve().with_name("runner.py")
DEFAULT_POLL_INTERVAL = 0.05
# Slack between the recorded launch time and the kernel's process start time.
PID_START_TOLERANCE = timedelta(seconds=5)


@dataclass(frozen=True)
class ProcessHandle:
    pid: int
    started_at: datetime
    log_path: Path
    status_path: Optional[Path] = None

    @property
    def pgid(self) -> int:
        # Workers start in their own session, so the group id is the pid.
        return self.pid


def pid_exists(pid: Optional[int]) -> bool:
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return not _is_zombie(pid)


def _is_zombie(pid: int) -> bool:
    stat_path = Path(f"/proc/{pid}/stat")
    try:
        stat = stat_path.read_text(encoding="utf-8")
    except OSError:
        return False
    # Format: "pid (comm) state ..."; comm may contain spaces.
    _, _, rest = stat.rpartition(")")
    return rest.strip().startswith("Z")


def _boot_time() -> float:
    for line in Path("/proc/stat").read_text(encoding="utf-8").splitlines():
        if line.startswith("btime "):
            return float(line.split()[1])
    raise ValueError("no btime in /proc/stat")


def process_started_at(pid: int) -> Optional[datetime]:
    """Kernel start time of ``pid``, or None where /proc is unavailable."""
    try:
        stat = Path(f"/proc/{pid}/stat").read_text(encoding="utf-8")
        _, _, rest = stat.rpartition(")")
        # starttime is field 22 overall; rest begins at field 3 (state).
        ticks = int(rest.split()[19])
        started = _boot_time() + ticks / os.sysconf("SC_CLK_TCK")
    except (OSError, ValueError, IndexError):
        return None
    return datetime.fromtimestamp(started, tz=UTC)


def read_exit_status(status_path: Optional[Path]) -> Optional[int]:
    if status_path is None:
        return None
    try:
        payload = json.loads(status_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    value = payload.get("exit_status") if isinstance(payload, dict) else None
    return value if isinstance(value, int) else None


class ProcessLauncher:
    def __init__(
        self,
        launch_grace_seconds: float = DEFAULT_LAUNCH_GRACE_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.launch_grace_seconds = launch_grace_seconds
        self.poll_interval = poll_interval
        self._children: Dict[int, subprocess.Popen] = {}

    def launch(
        self,
        command: str,
        log_path: Path,
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
        status_path: Optional[Path] = None,
    ) -> ProcessHandle:
        if not isinstance(command, str) or not command.strip():
            raise LaunchError("Error: Command cannot be empty.")
        if cwd is not None and not Path(cwd).is_dir():
            raise LaunchError(f"Error: Working directory does not exist: {cwd}")

        log_path = Path(log_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        if status_path is not None:
            status_path = Path(status_path)
            status_path.parent.mkdir(parents=True, exist_ok=True)
            status_path.unlink(missing_ok=True)

        argv = [sys.executable, str(RUNNER_PATH)]
        if status_path is not None:
            argv += ["--status-file", str(status_path)]
        argv += ["--", command]

        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        started = datetime.now(tz=UTC)
        try:
            with log_path.open("ab") as log_handle:
                proc = subprocess.Popen(
                    argv,
                    cwd=str(cwd) if cwd is not None else None,
                    env=full_env,
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except (OSError, ValueError) as exc:
            raise LaunchError(f"Error: Failed to launch {command!r}: {exc}") from exc

        self._children[proc.pid] = proc
        handle = ProcessHandle(pid=proc.pid, started_at=started, log_path=log_path, status_path=status_path)
        self._confirm_started(handle, proc)
        logger.debug("Launched pid=%s: %s", proc.pid, command)
        return handle

    def _confirm_started(self, handle: ProcessHandle, proc: subprocess.Popen) -> None:
        deadline = time.monotonic() + self.launch_grace_seconds
        while True:
            if proc.poll() is not None or pid_exists(handle.pid):
                return
            if time.monotonic() >= deadline:
                break
            time.sleep(self.poll_interval)
        self._children.pop(handle.pid, None)
        raise LaunchError(
            f"Error: Process {handle.pid} was not observable within {self.launch_grace_seconds:g}s."
        )

    def is_alive(self, handle: ProcessHandle) -> bool:
        proc = self._children.get(handle.pid)
        if proc is not None:
            return proc.poll() is None
        if handle.status_path is not None and handle.status_path.exists():
            return False
        return pid_exists(handle.pid) and self._owns_pid(handle)

    def _owns_pid(self, handle: ProcessHandle) -> bool:
        started = process_started_at(handle.pid)
        if started is None or abs(started - handle.started_at) <= PID_START_TOLERANCE:
            return True
        logger.warning(
            "pid=%s belongs to a process started at %s, not the worker launched at %s",
            handle.pid,
            started.isoformat(),
            handle.started_at.isoformat(),
        )
        return False

    def exit_status(self, handle: ProcessHandle) -> Optional[int]:
        status = read_exit_status(handle.status_path)
        if status is not None:
            return status
        proc = self._children.get(handle.pid)
        if proc is not None:
            return proc.poll()
        return None

    def wait(self, handle: ProcessHandle, timeout: Optional[float] = None) -> bool:
        """Poll until the process is gone; False if ``timeout`` elapsed first."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while self.is_alive(handle):
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(self.poll_interval)
        return True

    def terminate(self, handle: ProcessHandle, grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS) -> bool:
        """SIGTERM, wait ``grace_seconds``, then SIGKILL. Returns True if the kill was needed."""
        if not self.is_alive(handle):
            return False
        self._signal(handle, signal.SIGTERM)
        if self.wait(handle, timeout=grace_seconds):
            logger.info("pid=%s exited after SIGTERM", handle.pid)
            self._kill_leftovers(handle)
            return False
        logger.warning("pid=%s ignored SIGTERM for %.1fs; sending SIGKILL", handle.pid, grace_seconds)
        self._signal(handle, signal.SIGKILL)
        if not self.wait(handle, timeout=max(1.0, grace_seconds)):
            logger.error("pid=%s still alive after SIGKILL", handle.pid)
        return True

    def _kill_leftovers(self, handle: ProcessHandle) -> None:
        # The leader can exit while grandchildren that ignored SIGTERM live on.
        try:
            os.killpg(handle.pgid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            return
        logger.info("Killed leftover processes in group %s", handle.pgid)

    def release(self, handle: ProcessHandle) -> None:
        self._children.pop(handle.pid, None)

    def _signal(self, handle: ProcessHandle, sig: int) -> None:
        try:
            os.killpg(handle.pgid, sig)
            return
        except ProcessLookupError:
            pass
        except PermissionError as exc:
            logger.warning("Cannot signal process group %s: %s", handle.pgid, exc)
        try:
            os.kill(handle.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError as exc:
            logger.warning("Cannot signal pid %s: %s", handle.pid, exc)


class TimeoutEnforcer:
    def __init__(self, launcher: ProcessLauncher, grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS):
        self.launcher = launcher
        self.grace_seconds = grace_seconds

    @staticmethod
    def deadline(started_at: datetime, timeout_seconds: float) -> datetime:
        return started_at + timedelta(seconds=timeout_seconds)

    def enforce(
        self,
        handle: ProcessHandle,
        deadline: datetime,
        now: Optional[datetime] = None,
        job_name: str = "",
        run_id: str = "",
    ) -> None:
        """Terminate ``handle`` if ``deadline`` has passed, raising TimeoutExceeded."""
        now = now or datetime.now(tz=UTC)
        if now < deadline:
            return
        timeout_seconds = (deadline - handle.started_at).total_seconds()
        forced = self.launcher.terminate(handle, self.grace_seconds)
        raise TimeoutExceeded(job_name or str(handle.pid), run_id or str(handle.pid), timeout_seconds, forced)
