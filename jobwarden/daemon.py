"""
Supervisor daemon: fires due jobs and reconciles the runs it cannot wait on.

Each tick evaluates schedules, dispatches due jobs, then sweeps active runs
for timeouts and exits. Workers are detached, so liveness is only ever
observed from outside through the process launcher's probes.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from jobwarden.backoff import RetryPolicy
from jobwarden.config import Settings
from jobwarden.errors import (
    EXIT_INTERRUPTED,
    AlreadyRunningError,
    ConcurrencyExhausted,
    JobNotFoundError,
    LaunchError,
    ScheduleParseError,
    StaleHandle,
    TimeoutExceeded,
)
from jobwarden.notify import make_event
from jobwarden.process import ProcessLauncher, TimeoutEnforcer, pid_exists
from jobwarden.registry import (
    FAILED_STATUSES,
    RUN_LOST,
    RUN_SUCCEEDED,
    RUN_TIMED_OUT,
    TRIGGER_CATCH_UP,
    TRIGGER_SCHEDULE,
    TRIGGER_STARTUP,
    Job,
    JobRegistry,
    Run,
    new_run_id,
    status_for_exit,
)
from jobwarden.schedule import CronSchedule, IntervalSchedule, StartupSchedule, is_due, next_runs

logger = logging.getLogger(__name__)
UTC = timezone.utc

STATE_IDLE = "idle"
STATE_EVALUATING = "evaluating_schedules"
STATE_DISPATCHING = "dispatching"
STATE_SWEEPING = "sweeping"
STATE_STOPPED = "stopped"


def append_log(log_path: Path, message: str) -> None:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(tz=UTC).isoformat()
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(f"[{stamp}] jobwarden: {message}\n")


def build_worker_env(job: Job, run_id: str, trigger: str) -> Dict[str, str]:
    env: Dict[str, str] = {
        "JOBWARDEN_RUN_ID": run_id,
        "JOBWARDEN_JOB_NAME": job.name,
        "JOBWARDEN_TRIGGER": trigger,
    }
    env.update(job.env_map)
    return env


def dispatch_job(
    settings: Settings,
    registry: JobRegistry,
    launcher: ProcessLauncher,
    job: Job,
    trigger: str,
    command: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Run:
    """Launch one run of ``job`` and record it; launch failures are recorded then re-raised."""
    started = datetime.now(tz=settings.timezone)
    run_id = new_run_id(job.name, started)
    log_path = settings.job_log_path(job.name)
    command = command or job.command
    append_log(log_path, f"dispatch run={run_id} trigger={trigger} command={command}")
    try:
        handle = launcher.launch(
            command,
            log_path,
            cwd=Path(job.workdir) if job.workdir else None,
            env=build_worker_env(job, run_id, trigger),
            status_path=settings.run_status_path(run_id),
        )
    except LaunchError as exc:
        append_log(log_path, f"launch failed run={run_id}: {exc}")
        registry.record_launch_failure(job.name, str(exc), log_path, trigger=trigger, run_id=run_id)
        raise
    run = registry.record_run_start(job.name, handle, trigger=trigger, run_id=run_id, metadata=metadata)
    logger.info("Dispatched %s run=%s pid=%s trigger=%s", job.name, run_id, handle.pid, trigger)
    return run


class LivenessMonitor:
    """Sweeps active runs: enforces timeouts and records runs whose process is gone."""

    def __init__(
        self,
        settings: Settings,
        registry: JobRegistry,
        launcher: ProcessLauncher,
        enforcer: TimeoutEnforcer,
        policy: RetryPolicy,
        notifier: Optional[Any] = None,
    ):
        self.settings = settings
        self.registry = registry
        self.launcher = launcher
        self.enforcer = enforcer
        self.policy = policy
        self.notifier = notifier

    def sweep(self, now: Optional[datetime] = None, skip_run_ids: Iterable[str] = ()) -> List[Run]:
        now = now or datetime.now(tz=self.settings.timezone)
        skip: Set[str] = set(skip_run_ids)
        jobs = {job.name: job for job in self.registry.list()}
        finished: List[Run] = []
        for run in self.registry.active_runs():
            if run.run_id in skip:
                continue
            result = self.reconcile(run, jobs.get(run.job_name), now)
            if result is not None:
                finished.append(result)
        return finished

    def timeout_for(self, job: Optional[Job]) -> int:
        if job is not None and job.timeout_seconds:
            return job.timeout_seconds
        return self.settings.default_timeout_seconds

    def reconcile(self, run: Run, job: Optional[Job], now: datetime) -> Optional[Run]:
        handle = run.handle
        if handle is None:
            return self.finish(run, job, None, RUN_LOST, "no process handle recorded")

        if self.launcher.is_alive(handle):
            deadline = self.enforcer.deadline(run.started_at, self.timeout_for(job))
            try:
                self.enforcer.enforce(handle, deadline, now=now, job_name=run.job_name, run_id=run.run_id)
            except TimeoutExceeded as exc:
                logger.warning("%s", exc)
                return self.finish(run, job, self.launcher.exit_status(handle), RUN_TIMED_OUT, str(exc))
            return None

        exit_status = self.launcher.exit_status(handle)
        if exit_status is None:
            logger.warning("%s Exit status unknown.", StaleHandle(run.job_name, run.run_id, run.pid))
        return self.finish(run, job, exit_status, status_for_exit(exit_status))

    def finish(
        self,
        run: Run,
        job: Optional[Job],
        exit_status: Optional[int],
        status: str,
        error: Optional[str] = None,
    ) -> Run:
        finished, ended_here = self.registry.record_run_end(run, exit_status, status=status, error=error)
        if run.handle is not None:
            self.launcher.release(run.handle)
        if not ended_here:
            logger.info("Run %s of %s was already finished as %s.", run.run_id, run.job_name, finished.status)
            return finished
        duration = finished.duration_seconds()
        append_log(
            Path(run.log_path),
            f"finished run={run.run_id} status={finished.status} exit={exit_status} duration={duration:.2f}s",
        )
        level = "INFO" if finished.status == RUN_SUCCEEDED else "ERROR"
        logger.log(
            logging.INFO if level == "INFO" else logging.ERROR,
            "Run %s of %s finished: status=%s exit=%s (%.2fs)",
            run.run_id,
            run.job_name,
            finished.status,
            exit_status,
            duration,
        )
        if self.notifier is not None:
            self.notifier.emit(
                make_event(
                    f"run.{finished.status}",
                    level,
                    f"Run {run.run_id} of {run.job_name} finished with status {finished.status}.",
                    job_name=run.job_name,
                    run_id=run.run_id,
                    success=finished.status == RUN_SUCCEEDED,
                    return_code=exit_status,
                    duration_ms=int(duration * 1000),
                    metadata={"trigger": run.trigger, "error": error},
                )
            )
        if job is not None:
            if finished.status in FAILED_STATUSES:
                message = error or f"exit status {exit_status}"
                self.policy.record_failure(job.retry_key, message, label=f"job {job.name}", job_name=job.name)
            elif finished.status == RUN_SUCCEEDED:
                self.policy.record_success(job.retry_key, job_name=job.name)
        return finished


@dataclass
class TickReport:
    at: datetime
    evaluated_cron: bool = False
    dispatched: List[Run] = field(default_factory=list)
    finished: List[Run] = field(default_factory=list)
    stopped: bool = False


def read_daemon_pid(settings: Settings) -> Optional[int]:
    try:
        pid = int(settings.pid_file.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None
    return pid if pid_exists(pid) else None


def request_daemon_stop(settings: Settings) -> None:
    settings.state_dir.mkdir(parents=True, exist_ok=True)
    settings.stop_file.write_text(datetime.now(tz=UTC).isoformat() + "\n", encoding="utf-8")


class SupervisorDaemon:
    def __init__(
        self,
        settings: Settings,
        registry: JobRegistry,
        launcher: Optional[ProcessLauncher] = None,
        policy: Optional[RetryPolicy] = None,
        notifier: Optional[Any] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.registry = registry
        self.launcher = launcher or ProcessLauncher(launch_grace_seconds=settings.launch_grace_seconds)
        self.enforcer = TimeoutEnforcer(self.launcher, settings.kill_grace_seconds)
        self.notifier = notifier
        self.policy = policy or RetryPolicy(
            registry,
            notifier,
            base_seconds=settings.backoff.base_seconds,
            max_seconds=settings.backoff.max_seconds,
        )
        self.monitor = LivenessMonitor(settings, registry, self.launcher, self.enforcer, self.policy, notifier)
        self.state = STATE_IDLE
        self._clock = clock or (lambda: datetime.now(tz=settings.timezone))
        self._last_minute: Optional[datetime] = None
        self._stop_event = threading.Event()

    def now(self) -> datetime:
        return self._clock().astimezone(self.settings.timezone)

    def request_stop(self) -> None:
        self._stop_event.set()

    def stop_requested(self) -> bool:
        return self._stop_event.is_set() or self.settings.stop_file.exists()

    # -- one iteration -----------------------------------------------------

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        now = (now or self.now()).astimezone(self.settings.timezone)
        report = TickReport(at=now)
        if self.stop_requested():
            self.state = STATE_STOPPED
            report.stopped = True
            return report

        self.state = STATE_EVALUATING
        report.evaluated_cron, due = self.due_jobs(now)

        self.state = STATE_DISPATCHING
        for job in due:
            run = self.try_dispatch(job, TRIGGER_SCHEDULE, now)
            if run is not None:
                report.dispatched.append(run)

        self.state = STATE_SWEEPING
        report.finished = self.monitor.sweep(now, skip_run_ids=[r.run_id for r in report.dispatched])

        self.state = STATE_IDLE
        return report

    def due_jobs(self, now: datetime) -> Tuple[bool, List[Job]]:
        """Return ``(cron_evaluated, due_jobs)`` for this tick."""
        minute = now.replace(second=0, microsecond=0)
        evaluate_cron = minute != self._last_minute
        self._last_minute = minute

        due: List[Job] = []
        for job in self.registry.list():
            if not job.enabled:
                continue
            try:
                sched = job.schedule
            except ScheduleParseError as exc:
                logger.error("Job %s has an invalid schedule: %s", job.name, exc)
                continue
            if isinstance(sched, CronSchedule):
                if not evaluate_cron or self._ran_this_minute(job, minute):
                    continue
                if is_due(sched, now):
                    due.append(job)
            elif isinstance(sched, IntervalSchedule):
                if is_due(sched, now, last_run=job.last_run):
                    due.append(job)
        return evaluate_cron, due

    def _ran_this_minute(self, job: Job, minute: datetime) -> bool:
        if job.last_run is None:
            return False
        last = job.last_run.astimezone(self.settings.timezone).replace(second=0, microsecond=0)
        return last == minute

    def try_dispatch(self, job: Job, trigger: str, now: Optional[datetime] = None) -> Optional[Run]:
        now = now or self.now()
        active = self.registry.active_runs(job.name)
        if len(active) >= job.max_concurrent:
            logger.info("%s", ConcurrencyExhausted(job.name, len(active), job.max_concurrent))
            return None

        allowed, remaining = self.policy.should_retry(job.retry_key, now)
        if not allowed:
            if remaining is None:
                logger.warning(
                    "Job %s is blocked after repeated failures; run `jobwarden unblock %s` to resume.",
                    job.name,
                    job.name,
                )
            else:
                logger.info("Job %s is backing off; %.0fs until the next attempt.", job.name, remaining)
            return None

        try:
            return dispatch_job(self.settings, self.registry, self.launcher, job, trigger)
        except LaunchError as exc:
            logger.error("Failed to launch %s: %s", job.name, exc)
            self.policy.record_failure(job.retry_key, str(exc), label=f"job {job.name}", job_name=job.name)
            return None
        except JobNotFoundError:
            logger.info("Job %s was removed before it could be dispatched.", job.name)
            return None

    # -- startup -----------------------------------------------------------

    def startup(self, now: Optional[datetime] = None) -> List[Run]:
        now = (now or self.now()).astimezone(self.settings.timezone)
        minute = now.replace(second=0, microsecond=0)
        fired: List[Run] = []
        for job in self.registry.list():
            if not job.enabled:
                continue
            try:
                sched = job.schedule
            except ScheduleParseError as exc:
                logger.error("Job %s has an invalid schedule: %s", job.name, exc)
                continue
            trigger = None
            if isinstance(sched, StartupSchedule):
                trigger = TRIGGER_STARTUP
            elif isinstance(sched, CronSchedule) and self.settings.catch_up == "once":
                if self._missed_occurrence(job, sched, minute):
                    trigger = TRIGGER_CATCH_UP
            if trigger is None:
                continue
            logger.info("Startup dispatch of %s (trigger=%s)", job.name, trigger)
            run = self.try_dispatch(job, trigger, now)
            if run is not None:
                fired.append(run)
        return fired

    def _missed_occurrence(self, job: Job, sched: CronSchedule, minute: datetime) -> bool:
        reference = job.last_run or job.created
        if reference is None:
            return False
        upcoming = next_runs(sched, reference.astimezone(self.settings.timezone), 1)
        return bool(upcoming) and upcoming[0] < minute

    # -- loop --------------------------------------------------------------

    def _acquire_pid_file(self) -> None:
        existing = read_daemon_pid(self.settings)
        if existing is not None and existing != os.getpid():
            raise AlreadyRunningError(f"Error: Daemon already running (pid={existing}).")
        self.settings.state_dir.mkdir(parents=True, exist_ok=True)
        self.settings.pid_file.write_text(f"{os.getpid()}\n", encoding="utf-8")
        # A stop request left behind by a previous daemon must not stop this one.
        self.settings.stop_file.unlink(missing_ok=True)

    def _release_pid_file(self) -> None:
        try:
            if int(self.settings.pid_file.read_text(encoding="utf-8").strip()) == os.getpid():
                self.settings.pid_file.unlink()
        except (OSError, ValueError):
            pass
        self.settings.stop_file.unlink(missing_ok=True)

    def _install_signal_handlers(self) -> Dict[int, Any]:
        previous: Dict[int, Any] = {}

        def _handle(signum: int, _frame: Any) -> None:
            logger.info("Received signal %s; stopping after this tick.", signum)
            self.request_stop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            previous[sig] = signal.signal(sig, _handle)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: Dict[int, Any]) -> None:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    def run(self, max_ticks: Optional[int] = None, install_signal_handlers: bool = True) -> int:
        previous_handlers: Dict[int, Any] = {}
        if install_signal_handlers and threading.current_thread() is threading.main_thread():
            # Installed before the pid file exists so a stop aimed at that pid is never fatal.
            previous_handlers = self._install_signal_handlers()
        try:
            self._acquire_pid_file()
        except AlreadyRunningError:
            self._restore_signal_handlers(previous_handlers)
            raise
        logger.info(
            "Starting daemon pid=%s poll_seconds=%s timezone=%s catch_up=%s",
            os.getpid(),
            self.settings.poll_seconds,
            self.settings.timezone_name,
            self.settings.catch_up,
        )
        ticks = 0
        try:
            self.startup()
            while True:
                report = self.tick()
                if report.stopped:
                    logger.info("Stop requested; daemon exiting.")
                    break
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                self._stop_event.wait(self.settings.poll_seconds)
        except KeyboardInterrupt:
            logger.info("Daemon interrupted by user.")
            return EXIT_INTERRUPTED
        finally:
            self.state = STATE_STOPPED
            self._restore_signal_handlers(previous_handlers)
            self._release_pid_file()
        return 0
