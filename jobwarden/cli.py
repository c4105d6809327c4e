"""
jobwarden command line: manage jobs, run them by hand, and drive the daemon.
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import subprocess
import sys
import time
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from jobwarden.backoff import RetryPolicy
from jobwarden.batch import ConcurrencyLimiter, units_for_job
from jobwarden.config import DEFAULT_CONFIG, Settings, load_settings, setup_logging
from jobwarden.daemon import (
    LivenessMonitor,
    SupervisorDaemon,
    dispatch_job,
    read_daemon_pid,
    request_daemon_stop,
)
from jobwarden.errors import (
    EXIT_INTERNAL,
    EXIT_INTERRUPTED,
    AlreadyRunningError,
    ConfigError,
    JobwardenError,
)
from jobwarden.notify import Notifier
from jobwarden.process import ProcessLauncher, TimeoutEnforcer
from jobwarden.registry import (
    RUN_TIMED_OUT,
    TRIGGER_MANUAL,
    Job,
    JobRegistry,
    parse_env_pairs,
    status_for_exit,
    validate_job_name,
)
from jobwarden import schedule as schedule_engine

logger = logging.getLogger("jobwarden.cli")

DEFAULT_PREVIEW_COUNT = 5
DEFAULT_LOG_LINES = 50
DEFAULT_HISTORY_LINES = 20
DETACH_WAIT_SECONDS = 5.0
STOP_WAIT_SECONDS = 30.0


def _fmt_dt(value: Optional[datetime], settings: Settings) -> str:
    if value is None:
        return "-"
    return value.astimezone(settings.timezone).strftime("%Y-%m-%d %H:%M:%S %Z")


def _open_registry(settings: Settings) -> JobRegistry:
    return JobRegistry(settings.registry_path, timezone=settings.timezone, history_limit=settings.history_limit)


def _policy(settings: Settings, registry: JobRegistry, notifier: Optional[Notifier] = None) -> RetryPolicy:
    return RetryPolicy(
        registry,
        notifier,
        base_seconds=settings.backoff.base_seconds,
        max_seconds=settings.backoff.max_seconds,
    )


def _exit_code_for(exit_status: Optional[int]) -> int:
    if exit_status is None:
        return EXIT_INTERNAL
    if exit_status < 0:
        return 128 - exit_status
    return exit_status


def command_add(settings: Settings, args: argparse.Namespace) -> int:
    registry = _open_registry(settings)
    if args.max_concurrent < 1:
        raise ConfigError("Error: --max-concurrent must be >= 1.")
    if args.timeout is not None and args.timeout < 1:
        raise ConfigError("Error: --timeout must be >= 1.")
    workdir = None
    if args.workdir:
        workdir_path = Path(args.workdir).expanduser().resolve()
        if not workdir_path.is_dir():
            raise ConfigError(f"Error: Working directory does not exist: {workdir_path}")
        workdir = str(workdir_path)
    job = registry.add(
        Job(
            name=validate_job_name(args.name),
            command=args.job_command,
            workdir=workdir,
            env=parse_env_pairs(args.env),
            raw_schedule=args.schedule,
            enabled=not args.disabled,
            max_concurrent=args.max_concurrent,
            timeout_seconds=args.timeout,
        )
    )
    print(f"Added job {job.name}: {schedule_engine.describe(job.schedule)}")
    if job.next_run is not None:
        print(f"Next run: {_fmt_dt(job.next_run, settings)}")
    return 0


def command_remove(settings: Settings, name: str, force: bool) -> int:
    _open_registry(settings).remove(name, force=force)
    print(f"Removed job {name}")
    return 0


def command_list(settings: Settings) -> int:
    registry = _open_registry(settings)
    jobs = registry.list()
    if not jobs:
        print("No jobs registered.")
        return 0
    print(f"{'NAME':<24} {'ENABLED':<8} {'SCHEDULE':<32} {'NEXT RUN':<26} LAST EXIT")
    for job in jobs:
        last_exit = "-" if job.last_exit_status is None else str(job.last_exit_status)
        print(
            f"{job.name:<24} {('yes' if job.enabled else 'no'):<8} "
            f"{schedule_engine.describe(job.schedule):<32} {_fmt_dt(job.next_run, settings):<26} {last_exit}"
        )
    return 0


def command_set_enabled(settings: Settings, name: str, enabled: bool) -> int:
    registry = _open_registry(settings)
    job = registry.enable(name) if enabled else registry.disable(name)
    print(f"{'Enabled' if enabled else 'Disabled'} job {job.name}")
    return 0


def command_run_now(settings: Settings, name: str, wait: bool) -> int:
    registry = _open_registry(settings)
    job = registry.get(name)
    active = registry.active_runs(name)
    if len(active) >= job.max_concurrent:
        raise AlreadyRunningError(
            f"Error: Job {name} already has {len(active)} active run(s) (max_concurrent={job.max_concurrent})."
        )
    launcher = ProcessLauncher(launch_grace_seconds=settings.launch_grace_seconds)
    notifier = Notifier(settings.notify_settings)
    try:
        run = dispatch_job(settings, registry, launcher, job, TRIGGER_MANUAL)
        print(f"Started {name} run={run.run_id} pid={run.pid}")
        if not wait:
            return 0

        enforcer = TimeoutEnforcer(launcher, settings.kill_grace_seconds)
        monitor = LivenessMonitor(settings, registry, launcher, enforcer, _policy(settings, registry, notifier), notifier)
        handle = run.handle
        timeout = monitor.timeout_for(job)
        if launcher.wait(handle, timeout=timeout):
            exit_status = launcher.exit_status(handle)
            finished = monitor.finish(run, job, exit_status, status_for_exit(exit_status))
        else:
            forced = launcher.terminate(handle, settings.kill_grace_seconds)
            exit_status = launcher.exit_status(handle)
            note = f"timed out after {timeout}s" + (" (killed)" if forced else "")
            finished = monitor.finish(run, job, exit_status, RUN_TIMED_OUT, note)
        print(f"Run {finished.run_id} finished: status={finished.status} exit={finished.exit_status}")
        return _exit_code_for(exit_status)
    finally:
        notifier.close()


def command_status(settings: Settings, name: Optional[str]) -> int:
    registry = _open_registry(settings)
    daemon_pid = read_daemon_pid(settings)
    if daemon_pid is None:
        # Nobody else is reconciling; do one sweep so finished runs show up.
        launcher = ProcessLauncher(launch_grace_seconds=settings.launch_grace_seconds)
        monitor = LivenessMonitor(
            settings,
            registry,
            launcher,
            TimeoutEnforcer(launcher, settings.kill_grace_seconds),
            _policy(settings, registry),
        )
        monitor.sweep()
        print("Daemon: not running")
    else:
        print(f"Daemon: running (pid={daemon_pid})")

    jobs = [registry.get(name)] if name else registry.list()
    policy = _policy(settings, registry)
    for job in jobs:
        active = registry.active_runs(job.name)
        history = registry.history(job.name, limit=1)
        retry = policy.state(job.retry_key)
        print("=" * 60)
        print(f"Job: {job.name} (enabled={job.enabled})")
        print(f"Command: {job.command}")
        print(f"Schedule: {schedule_engine.describe(job.schedule)}")
        print(f"Next run: {_fmt_dt(job.next_run, settings)}")
        print(f"Runs: {job.run_count} total, {len(active)} active (max {job.max_concurrent})")
        for run in active:
            print(f"- running {run.run_id} pid={run.pid} since {_fmt_dt(run.started_at, settings)}")
        if history:
            last = history[-1]
            print(f"Last run: {last.run_id} status={last.status} exit={last.exit_status}")
        if retry is not None:
            print(f"Failures: {retry.failures} consecutive (tier={retry.tier}); last error: {retry.last_error}")
    return 0


def command_history(settings: Settings, name: str, limit: int) -> int:
    runs = _open_registry(settings).history(name, limit=limit)
    if not runs:
        print(f"No runs recorded for {name}.")
        return 0
    for run in runs:
        duration = "-" if run.active else f"{run.duration_seconds():.1f}s"
        exit_text = "-" if run.exit_status is None else str(run.exit_status)
        print(
            f"{_fmt_dt(run.started_at, settings)}  {run.run_id}  {run.trigger:<9} "
            f"{run.status:<13} exit={exit_text:<4} {duration}"
        )
    return 0


def command_start_daemon(settings: Settings, config_path: Path, detach: bool) -> int:
    existing = read_daemon_pid(settings)
    if existing is not None:
        raise AlreadyRunningError(f"Error: Daemon already running (pid={existing}).")
    if detach:
        argv = [
            sys.executable,
            "-m",
            "jobwarden",
            "--config",
            str(config_path),
            "--state-dir",
            str(settings.state_dir),
            "start-daemon",
        ]
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        deadline = time.monotonic() + DETACH_WAIT_SECONDS
        while time.monotonic() < deadline:
            if read_daemon_pid(settings) == proc.pid:
                print(f"Daemon started (pid={proc.pid})")
                return 0
            if proc.poll() is not None:
                break
            time.sleep(0.1)
        raise JobwardenError(f"Error: Daemon did not start; see {settings.log_file}.")

    registry = _open_registry(settings)
    notifier = Notifier(settings.notify_settings)
    try:
        return SupervisorDaemon(settings, registry, notifier=notifier).run()
    finally:
        notifier.close()


def command_stop_daemon(settings: Settings, wait: bool) -> int:
    pid = read_daemon_pid(settings)
    if pid is None:
        print("Daemon is not running.")
        return 0
    request_daemon_stop(settings)
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        pass
    print(f"Stop requested (pid={pid})")
    if not wait:
        return 0
    deadline = time.monotonic() + STOP_WAIT_SECONDS
    while time.monotonic() < deadline:
        if read_daemon_pid(settings) is None:
            print("Daemon stopped.")
            return 0
        time.sleep(0.1)
    raise JobwardenError(f"Error: Daemon (pid={pid}) did not stop within {STOP_WAIT_SECONDS:g}s.")


def command_logs(settings: Settings, name: Optional[str], lines: int) -> int:
    if name:
        _open_registry(settings).get(name)
        path = settings.job_log_path(name)
    else:
        path = settings.log_file
    if not path.exists():
        print(f"No log yet at {path}")
        return 0
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        tail = deque(handle, maxlen=lines)
    for line in tail:
        print(line, end="")
    return 0


def command_preview(settings: Settings, name: Optional[str], expr: Optional[str], count: int) -> int:
    last_run = None
    if name:
        job = _open_registry(settings).get(name)
        sched = job.schedule
        last_run = job.last_run
        print(f"Job: {job.name} (enabled={job.enabled})")
    else:
        sched = schedule_engine.parse(expr or "")
    print(schedule_engine.describe(sched))
    if sched is None:
        return 0
    now = settings.now()
    runs = schedule_engine.next_runs(
        sched, now, count, last_run=last_run.astimezone(settings.timezone) if last_run else None
    )
    print(f"Next {count} run(s):")
    if not runs:
        print("- none")
    for run_dt in runs:
        print(f"- {run_dt.astimezone(settings.timezone).isoformat()}")
    return 0


def command_batch(settings: Settings, args: argparse.Namespace) -> int:
    registry = _open_registry(settings)
    job = registry.get(args.job) if args.job else None
    template = job or Job(name="batch", command=args.template)
    units = units_for_job(template, args.inputs)
    if not units:
        raise ConfigError("Error: batch needs at least one input.")
    limiter = ConcurrencyLimiter(
        ProcessLauncher(launch_grace_seconds=settings.launch_grace_seconds),
        settings.logs_dir / "batch",
        registry=registry if job else None,
        kill_grace_seconds=settings.kill_grace_seconds,
    )
    result = limiter.dispatch_all(
        units,
        args.max_concurrent,
        collect=args.collect,
        timeout_seconds=args.timeout,
        job=job,
    )
    for unit in result.results.values():
        exit_text = "-" if unit.exit_status is None else str(unit.exit_status)
        print(f"{unit.key}: status={unit.status} exit={exit_text} log={unit.log_path}")
        if args.collect and unit.output:
            for line in unit.output.splitlines():
                print(f"  | {line}")
    print(f"{len(result.succeeded)} succeeded, {len(result.failed)} failed (peak running {result.peak_running})")
    return 0 if result.ok else 1


def command_unblock(settings: Settings, name: str) -> int:
    registry = _open_registry(settings)
    job = registry.get(name)
    if _policy(settings, registry).clear(job.retry_key):
        print(f"Cleared failure state for {name}")
    else:
        print(f"{name} has no recorded failures.")
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="jobwarden",
        description="jobwarden background job supervisor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to jobwarden YAML config (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument("--state-dir", help="Override the state directory from the config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    add_parser = subparsers.add_parser("add", help="Register a job")
    add_parser.add_argument("name", help="Unique job name")
    add_parser.add_argument("job_command", metavar="command", help="Shell command to run")
    add_parser.add_argument("--schedule", help='Cron expression, "@every 5m", "@daily", "@startup"...')
    add_parser.add_argument("--workdir", help="Working directory for the command")
    add_parser.add_argument("--env", action="append", default=[], help="KEY=VALUE override (repeatable)")
    add_parser.add_argument("--max-concurrent", type=int, default=1, help="Concurrent run ceiling (default: 1)")
    add_parser.add_argument("--timeout", type=int, help="Timeout in seconds (default: from config)")
    add_parser.add_argument("--disabled", action="store_true", help="Register the job disabled")

    remove_parser = subparsers.add_parser("remove", help="Remove a job")
    remove_parser.add_argument("name")
    remove_parser.add_argument("--force", action="store_true", help="Remove even with active runs")

    subparsers.add_parser("list", help="List registered jobs")

    enable_parser = subparsers.add_parser("enable", help="Enable a job")
    enable_parser.add_argument("name")
    disable_parser = subparsers.add_parser("disable", help="Disable a job")
    disable_parser.add_argument("name")

    run_parser = subparsers.add_parser("run-now", help="Start a job immediately")
    run_parser.add_argument("name")
    run_parser.add_argument("--wait", action="store_true", help="Wait and exit with the worker's status")

    status_parser = subparsers.add_parser("status", help="Show daemon and job status")
    status_parser.add_argument("name", nargs="?")

    history_parser = subparsers.add_parser("history", help="Show run history of a job")
    history_parser.add_argument("name")
    history_parser.add_argument("--limit", type=int, default=DEFAULT_HISTORY_LINES, help="Runs to show")

    start_parser = subparsers.add_parser("start-daemon", help="Run the supervisor daemon")
    start_parser.add_argument("--detach", action="store_true", help="Run in the background")

    stop_parser = subparsers.add_parser("stop-daemon", help="Ask the daemon to stop")
    stop_parser.add_argument("--wait", action="store_true", help="Wait until it has exited")

    logs_parser = subparsers.add_parser("logs", help="Tail a job log (or the daemon log)")
    logs_parser.add_argument("name", nargs="?")
    logs_parser.add_argument("--lines", type=int, default=DEFAULT_LOG_LINES, help="Lines to show")

    preview_parser = subparsers.add_parser("preview", help="Show upcoming due times")
    preview_target = preview_parser.add_mutually_exclusive_group(required=True)
    preview_target.add_argument("name", nargs="?", help="Preview a registered job")
    preview_target.add_argument("--expr", help="Preview a raw schedule expression")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    batch_parser = subparsers.add_parser("batch", help="Run a command over many inputs with a concurrency ceiling")
    batch_source = batch_parser.add_mutually_exclusive_group(required=True)
    batch_source.add_argument("--job", help="Use a registered job's command as the template")
    batch_source.add_argument("--command", dest="template", help="Command template; {} is the input")
    batch_parser.add_argument("--max-concurrent", type=int, default=4, help="Running-set ceiling (default: 4)")
    batch_parser.add_argument("--timeout", type=float, help="Per-unit timeout in seconds")
    batch_parser.add_argument("--collect", action="store_true", help="Print each unit's output")
    batch_parser.add_argument("inputs", nargs="*")

    unblock_parser = subparsers.add_parser("unblock", help="Clear a job's failure and backoff state")
    unblock_parser.add_argument("name")

    return parser.parse_args(argv)


def run_command(settings: Settings, config_path: Path, args: argparse.Namespace) -> int:
    if args.command == "add":
        return command_add(settings, args)
    if args.command == "remove":
        return command_remove(settings, args.name, args.force)
    if args.command == "list":
        return command_list(settings)
    if args.command in ("enable", "disable"):
        return command_set_enabled(settings, args.name, args.command == "enable")
    if args.command == "run-now":
        return command_run_now(settings, args.name, args.wait)
    if args.command == "status":
        return command_status(settings, args.name)
    if args.command == "history":
        if args.limit <= 0:
            raise ConfigError("Error: --limit must be >= 1.")
        return command_history(settings, args.name, args.limit)
    if args.command == "start-daemon":
        return command_start_daemon(settings, config_path, args.detach)
    if args.command == "stop-daemon":
        return command_stop_daemon(settings, args.wait)
    if args.command == "logs":
        if args.lines <= 0:
            raise ConfigError("Error: --lines must be >= 1.")
        return command_logs(settings, args.name, args.lines)
    if args.command == "preview":
        if args.count <= 0:
            raise ConfigError("Error: --count must be >= 1.")
        return command_preview(settings, args.name, args.expr, args.count)
    if args.command == "batch":
        return command_batch(settings, args)
    if args.command == "unblock":
        return command_unblock(settings, args.name)
    raise JobwardenError(f"Error: Unsupported command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config or DEFAULT_CONFIG).resolve()

    try:
        settings = load_settings(config_path, state_dir=Path(args.state_dir) if args.state_dir else None)
    except JobwardenError as exc:
        setup_logging()
        logger.error(str(exc))
        return exc.exit_code
    setup_logging(settings.log_file)

    try:
        return run_command(settings, config_path, args)
    except JobwardenError as exc:
        logger.error(str(exc))
        return exc.exit_code
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        return EXIT_INTERRUPTED
    except Exception as exc:  # pragma: no cover - unexpected failures
        logger.exception("Unexpected error: %s", exc)
        return EXIT_INTERNAL


if __name__ == "__main__":
    raise SystemExit(main())
