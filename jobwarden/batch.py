"""
Bounded fan-out of many work units through the process launcher.
"""

from __future__ import annotations

import logging
import re
import shlex
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Deque, Dict, Iterable, List, Optional, Tuple

from jobwarden.errors import ConfigError, LaunchError
from jobwarden.process import ProcessHandle, ProcessLauncher, TimeoutEnforcer
from jobwarden.registry import (
    RUN_LAUNCH_FAILED,
    RUN_SUCCEEDED,
    RUN_TIMED_OUT,
    TRIGGER_BATCH,
    Job,
    JobRegistry,
    Run,
    new_run_id,
    status_for_exit,
)

logger = logging.getLogger(__name__)
UTC = timezone.utc
DEFAULT_BATCH_POLL_INTERVAL = 0.1
PLACEHOLDER = "{}"
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.\-]")


@dataclass(frozen=True)
class BatchUnit:
    key: str
    command: str
    cwd: Optional[Path] = None
    env: Optional[Dict[str, str]] = None


@dataclass(frozen=True)
class UnitResult:
    key: str
    exit_status: Optional[int]
    status: str
    log_path: Path
    output: Optional[str] = None
    run_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == RUN_SUCCEEDED


@dataclass
class BatchResult:
    results: Dict[str, UnitResult] = field(default_factory=dict)
    peak_running: int = 0

    @property
    def succeeded(self) -> List[UnitResult]:
        return [r for r in self.results.values() if r.succeeded]

    @property
    def failed(self) -> List[UnitResult]:
        return [r for r in self.results.values() if not r.succeeded]

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class _Slot:
    index: int
    unit: BatchUnit
    handle: ProcessHandle
    run: Optional[Run]
    deadline: Optional[datetime]


def units_for_job(job: Job, inputs: Iterable[str]) -> List[BatchUnit]:
    """Expand ``job.command`` once per input; ``{}`` marks where the quoted input goes."""
    units: List[BatchUnit] = []
    for value in inputs:
        quoted = shlex.quote(value)
        if PLACEHOLDER in job.command:
            command = job.command.replace(PLACEHOLDER, quoted)
        else:
            command = f"{job.command} {quoted}"
        units.append(
            BatchUnit(
                key=value,
                command=command,
                cwd=Path(job.workdir) if job.workdir else None,
                env=job.env_map or None,
            )
        )
    return units


class ConcurrencyLimiter:
    def __init__(
        self,
        launcher: ProcessLauncher,
        log_dir: Path,
        poll_interval: float = DEFAULT_BATCH_POLL_INTERVAL,
        registry: Optional[JobRegistry] = None,
        kill_grace_seconds: float = 10,
    ):
        self.launcher = launcher
        self.log_dir = Path(log_dir)
        self.poll_interval = poll_interval
        self.registry = registry
        self.enforcer = TimeoutEnforcer(launcher, kill_grace_seconds)

    def _unit_paths(self, index: int, unit: BatchUnit, stamp: str) -> Tuple[Path, Path]:
        safe = _UNSAFE_CHARS.sub("_", unit.key)[:60] or "unit"
        name = f"batch-{stamp}-{index:04d}-{safe}"
        return self.log_dir / f"{name}.log", self.log_dir / f"{name}.status.json"

    def dispatch_all(
        self,
        units: List[BatchUnit],
        max_concurrent: int,
        collect: bool = False,
        timeout_seconds: Optional[float] = None,
        job: Optional[Job] = None,
    ) -> BatchResult:
        """Run every unit with at most ``max_concurrent`` alive at once.

        A failing or unlaunchable unit is recorded and its siblings keep
        running. Returns once everything that was launched has finished.
        """
        if max_concurrent < 1:
            raise ConfigError("Error: max_concurrent must be >= 1.")
        keys = [unit.key for unit in units]
        if len(set(keys)) != len(keys):
            raise ConfigError("Error: Batch unit keys must be unique.")

        stamp = datetime.now(tz=UTC).strftime("%Y%m%d%H%M%S")
        pending: Deque[Tuple[int, BatchUnit]] = deque(enumerate(units))
        running: List[_Slot] = []
        finished: Dict[int, UnitResult] = {}
        peak = 0
        logger.info("Batch of %s unit(s), max_concurrent=%s", len(units), max_concurrent)

        while pending or running:
            while pending and len(running) < max_concurrent:
                index, unit = pending.popleft()
                slot, failure = self._launch(index, unit, stamp, timeout_seconds, job)
                if slot is not None:
                    running.append(slot)
                else:
                    finished[index] = failure
            peak = max(peak, len(running))

            still_running: List[_Slot] = []
            for slot in running:
                result = self._poll(slot, collect)
                if result is None:
                    still_running.append(slot)
                else:
                    finished[slot.index] = result
            running = still_running
            if running:
                time.sleep(self.poll_interval)

        batch = BatchResult(peak_running=peak)
        for index in range(len(units)):
            result = finished[index]
            batch.results[result.key] = result
        logger.info(
            "Batch finished: %s succeeded, %s failed, peak_running=%s",
            len(batch.succeeded),
            len(batch.failed),
            peak,
        )
        return batch

    def _launch(
        self,
        index: int,
        unit: BatchUnit,
        stamp: str,
        timeout_seconds: Optional[float],
        job: Optional[Job],
    ) -> Tuple[Optional[_Slot], Optional[UnitResult]]:
        log_path, status_path = self._unit_paths(index, unit, stamp)
        env = dict(unit.env or {})
        run_id = None
        if job is not None:
            run_id = new_run_id(job.name, datetime.now(tz=UTC))
            env.update({"JOBWARDEN_RUN_ID": run_id, "JOBWARDEN_JOB_NAME": job.name, "JOBWARDEN_TRIGGER": TRIGGER_BATCH})
        try:
            handle = self.launcher.launch(unit.command, log_path, cwd=unit.cwd, env=env, status_path=status_path)
        except LaunchError as exc:
            logger.error("Batch unit %s failed to launch: %s", unit.key, exc)
            if job is not None and self.registry is not None:
                self.registry.record_launch_failure(job.name, str(exc), log_path, trigger=TRIGGER_BATCH, run_id=run_id)
            return None, UnitResult(
                key=unit.key,
                exit_status=None,
                status=RUN_LAUNCH_FAILED,
                log_path=log_path,
                run_id=run_id,
                error=str(exc),
            )

        run = None
        if job is not None and self.registry is not None:
            run = self.registry.record_run_start(
                job.name, handle, trigger=TRIGGER_BATCH, run_id=run_id, metadata={"input": unit.key}
            )
        deadline = None
        if timeout_seconds:
            deadline = self.enforcer.deadline(handle.started_at, timeout_seconds)
        return _Slot(index, unit, handle, run, deadline), None

    def _poll(self, slot: _Slot, collect: bool) -> Optional[UnitResult]:
        handle = slot.handle
        status: Optional[str] = None
        error: Optional[str] = None
        if self.launcher.is_alive(handle):
            if slot.deadline is None or datetime.now(tz=UTC) < slot.deadline:
                return None
            forced = self.launcher.terminate(handle, self.enforcer.grace_seconds)
            status = RUN_TIMED_OUT
            error = f"timed out after {(slot.deadline - handle.started_at).total_seconds():g}s" + (
                " (killed)" if forced else ""
            )
            logger.warning("Batch unit %s %s", slot.unit.key, error)

        exit_status = self.launcher.exit_status(handle)
        self.launcher.release(handle)
        status = status or status_for_exit(exit_status)
        if slot.run is not None and self.registry is not None:
            self.registry.record_run_end(slot.run, exit_status, status=status, error=error)

        output = None
        if collect:
            try:
                output = handle.log_path.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                logger.warning("Could not read output of %s: %s", slot.unit.key, exc)
        return UnitResult(
            key=slot.unit.key,
            exit_status=exit_status,
            status=status,
            log_path=handle.log_path,
            output=output,
            run_id=slot.run.run_id if slot.run else None,
            error=error,
        )
