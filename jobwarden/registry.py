"""
Job registry: persistent Job definitions, Run history and retry state.

Everything lives in one JSON document. Each mutation reloads the document,
applies the change and atomically replaces the file, so readers never see a
partial write. Writers are not locked against each other: a clobbered update
is detected through the document revision and logged, not repaired.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone, tzinfo
from functools import cached_property
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from jobwarden import schedule as schedule_engine
from jobwarden.backoff import RetryState, failure_key
from jobwarden.config import DEFAULT_HISTORY_LIMIT
from jobwarden.errors import (
    AlreadyRunningError,
    ConfigError,
    JobExistsError,
    JobNotFoundError,
    RegistryWriteConflict,
)
from jobwarden.process import ProcessHandle

logger = logging.getLogger(__name__)
UTC = timezone.utc

JOB_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")
ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
REGISTRY_VERSION = 1

RUN_RUNNING = "running"
RUN_SUCCEEDED = "succeeded"
RUN_FAILED = "failed"
RUN_TIMED_OUT = "timed_out"
RUN_LAUNCH_FAILED = "launch_failed"
RUN_LOST = "lost"
FAILED_STATUSES = {RUN_FAILED, RUN_TIMED_OUT, RUN_LAUNCH_FAILED}

TRIGGER_SCHEDULE = "schedule"
TRIGGER_STARTUP = "startup"
TRIGGER_CATCH_UP = "catch_up"
TRIGGER_MANUAL = "manual"
TRIGGER_BATCH = "batch"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def validate_job_name(name: Any) -> str:
    if not isinstance(name, str) or not JOB_NAME_RE.match(name):
        raise ConfigError(
            f'Error: Invalid job name "{name}"; use letters, digits, ".", "_" or "-".'
        )
    return name


def parse_env_pairs(pairs: Any) -> Tuple[str, ...]:
    if not pairs:
        return ()
    out: List[str] = []
    for pair in pairs:
        if not isinstance(pair, str) or "=" not in pair:
            raise ConfigError(f'Error: Environment override must be KEY=VALUE, got "{pair}".')
        key = pair.split("=", 1)[0]
        if not ENV_KEY_RE.match(key):
            raise ConfigError(f'Error: Invalid environment variable name "{key}".')
        out.append(pair)
    return tuple(out)


def new_run_id(job_name: str, started: datetime) -> str:
    return f"{job_name}-{started.strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:6]}"


@dataclass(frozen=True)
class Job:
    name: str
    command: str
    workdir: Optional[str] = None
    env: Tuple[str, ...] = ()
    raw_schedule: Optional[str] = None
    enabled: bool = True
    max_concurrent: int = 1
    timeout_seconds: Optional[int] = None
    created: Optional[datetime] = None
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    run_count: int = 0
    last_exit_status: Optional[int] = None

    @cached_property
    def schedule(self) -> Optional[schedule_engine.Schedule]:
        if not self.raw_schedule:
            return None
        return schedule_engine.parse(self.raw_schedule)

    @property
    def env_map(self) -> Dict[str, str]:
        # Later pairs win, matching the order they were given in.
        return dict(pair.split("=", 1) for pair in self.env)

    @property
    def retry_key(self) -> str:
        return failure_key(f"job:{self.name}\ncommand:{self.command}")

    def to_dict(self) -> Dict[str, Any]:
        sched = self.schedule
        return {
            "name": self.name,
            "command": self.command,
            "workdir": self.workdir,
            "env": list(self.env),
            "schedule": schedule_engine.to_dict(sched) if sched is not None else None,
            "raw_schedule": self.raw_schedule,
            "enabled": self.enabled,
            "max_concurrent": self.max_concurrent,
            "timeout_seconds": self.timeout_seconds,
            "created": _iso(self.created),
            "last_run": _iso(self.last_run),
            "next_run": _iso(self.next_run),
            "run_count": self.run_count,
            "last_exit_status": self.last_exit_status,
        }

    @staticmethod
    def from_dict(raw: Dict[str, Any]) -> "Job":
        return Job(
            name=raw["name"],
            command=raw["command"],
            workdir=raw.get("workdir"),
            env=tuple(raw.get("env") or ()),
            raw_schedule=raw.get("raw_schedule"),
            enabled=bool(raw.get("enabled", True)),
            max_concurrent=int(raw.get("max_concurrent", 1)),
            timeout_seconds=raw.get("timeout_seconds"),
            created=_parse_dt(raw.get("created")),
            last_run=_parse_dt(raw.get("last_run")),
            next_run=_parse_dt(raw.get("next_run")),
            run_count=int(raw.get("run_count", 0)),
            last_exit_status=raw.get("last_exit_status"),
        )


@dataclass(frozen=True)
class Run:
    job_name: str
    run_id: str
    started_at: datetime
    log_path: str
    trigger: str = TRIGGER_MANUAL
    status: str = RUN_RUNNING
    pid: Optional[int] = None
    status_path: Optional[str] = None
    ended_at: Optional[datetime] = None
    exit_status: Optional[int] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def active(self) -> bool:
        return self.ended_at is None

    @property
    def handle(self) -> Optional[ProcessHandle]:
        if self.pid is None:
            return None
        return ProcessHandle(
            pid=self.pid,
            started_at=self.started_at,
            log_path=Path(self.log_path),
            status_path=Path(self.status_path) if self.status_path else None,
        )

    def duration_seconds(self, now: Optional[datetime] = None) -> float:
        end = self.ended_at or now or datetime.now(tz=UTC)
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_name": self.job_name,
            "run_id": self.run_id,
            "started_at": _iso(self.started_at),
            "log_path": self.log_path,
            "trigger": self.trigger,
            "status": self.status,
            "pid": self.pid,
            "status_path": self.status_path,
            "ended_at": _iso(self.ended_at),
            "exit_status": self.exit_status,
            "error": self.error,
            "metadata": self.metadata,
        }

    @staticmethod
    def from_dict(raw: Dict[str, Any]) -> "Run":
        return Run(
            job_name=raw["job_name"],
            run_id=raw["run_id"],
            started_at=datetime.fromisoformat(raw["started_at"]),
            log_path=raw["log_path"],
            trigger=raw.get("trigger", TRIGGER_MANUAL),
            status=raw.get("status", RUN_RUNNING),
            pid=raw.get("pid"),
            status_path=raw.get("status_path"),
            ended_at=_parse_dt(raw.get("ended_at")),
            exit_status=raw.get("exit_status"),
            error=raw.get("error"),
            metadata=raw.get("metadata") or {},
        )


def status_for_exit(exit_status: Optional[int]) -> str:
    if exit_status is None:
        return RUN_LOST
    return RUN_SUCCEEDED if exit_status == 0 else RUN_FAILED


class JobRegistry:
    def __init__(
        self,
        path: Path,
        timezone: Optional[tzinfo] = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.path = Path(path)
        self.timezone = timezone or UTC
        self.history_limit = history_limit
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    # -- storage -----------------------------------------------------------

    @staticmethod
    def _empty() -> Dict[str, Any]:
        return {"version": REGISTRY_VERSION, "revision": 0, "jobs": {}, "runs": {}, "retry": {}}

    def _load(self) -> Dict[str, Any]:
        try:
            doc = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return self._empty()
        except ValueError as exc:
            raise ConfigError(f"Error: Registry {self.path} is not valid JSON: {exc}") from exc
        if not isinstance(doc, dict):
            raise ConfigError(f"Error: Registry {self.path} must contain a JSON object.")
        for key, default in self._empty().items():
            doc.setdefault(key, default)
        return doc

    def _on_disk_revision(self) -> int:
        try:
            return int(json.loads(self.path.read_text(encoding="utf-8")).get("revision", 0))
        except (FileNotFoundError, ValueError, AttributeError):
            return 0

    def _write(self, doc: Dict[str, Any], expected_revision: int) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        found = self._on_disk_revision()
        if found != expected_revision:
            logger.warning("%s", RegistryWriteConflict(str(self.path), expected_revision, found))
        fd, tmp_name = tempfile.mkstemp(prefix=".registry-", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(doc, handle, indent=2, sort_keys=True)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _mutate(self, fn: Callable[[Dict[str, Any]], Any]) -> Any:
        doc = self._load()
        revision = int(doc.get("revision", 0))
        result = fn(doc)
        doc["revision"] = revision + 1
        self._write(doc, revision)
        return result

    def _now(self) -> datetime:
        return self._clock().astimezone(self.timezone)

    def _next_run(self, job: Job, after: datetime) -> Optional[datetime]:
        sched = job.schedule
        if sched is None or not job.enabled:
            return None
        last_run = job.last_run.astimezone(self.timezone) if job.last_run else None
        runs = schedule_engine.next_runs(sched, after.astimezone(self.timezone), 1, last_run=last_run)
        return runs[0] if runs else None

    @staticmethod
    def _job_from(doc: Dict[str, Any], name: str) -> Job:
        raw = doc["jobs"].get(name)
        if raw is None:
            raise JobNotFoundError(name)
        return Job.from_dict(raw)

    # -- jobs --------------------------------------------------------------

    def add(self, job: Job) -> Job:
        validate_job_name(job.name)
        if not job.command or not job.command.strip():
            raise ConfigError("Error: command must be a non-empty string.")
        if job.max_concurrent < 1:
            raise ConfigError("Error: max_concurrent must be >= 1.")
        parse_env_pairs(job.env)
        _ = job.schedule  # raises ScheduleParseError before anything is written

        def apply(doc: Dict[str, Any]) -> Job:
            if job.name in doc["jobs"]:
                raise JobExistsError(job.name)
            now = self._now()
            stored = replace(job, created=job.created or now)
            stored = replace(stored, next_run=self._next_run(stored, now))
            doc["jobs"][job.name] = stored.to_dict()
            doc["runs"].setdefault(job.name, [])
            return stored

        created = self._mutate(apply)
        logger.info("Added job %s (%s)", created.name, schedule_engine.describe(created.schedule))
        return created

    def get(self, name: str) -> Job:
        return self._job_from(self._load(), name)

    def list(self) -> List[Job]:
        doc = self._load()
        return [Job.from_dict(doc["jobs"][name]) for name in sorted(doc["jobs"])]

    def remove(self, name: str, force: bool = False) -> Job:
        def apply(doc: Dict[str, Any]) -> Job:
            job = self._job_from(doc, name)
            active = [r for r in doc["runs"].get(name, []) if not r.get("ended_at")]
            if active and not force:
                raise AlreadyRunningError(
                    f"Error: Job {name} has {len(active)} active run(s); wait for them or use --force."
                )
            del doc["jobs"][name]
            doc["runs"].pop(name, None)
            doc["retry"].pop(job.retry_key, None)
            return job

        removed = self._mutate(apply)
        logger.info("Removed job %s", name)
        return removed

    def update(self, name: str, fn: Callable[[Job], Job]) -> Job:
        """Atomically replace one job with ``fn(job)``."""

        def apply(doc: Dict[str, Any]) -> Job:
            current = self._job_from(doc, name)
            updated = fn(current)
            if updated.name != name:
                raise ConfigError("Error: Job name cannot be changed by an update.")
            if updated.raw_schedule != current.raw_schedule or updated.enabled != current.enabled:
                updated = replace(updated, next_run=self._next_run(updated, self._now()))
            doc["jobs"][name] = updated.to_dict()
            return updated

        return self._mutate(apply)

    def enable(self, name: str) -> Job:
        return self.update(name, lambda job: replace(job, enabled=True))

    def disable(self, name: str) -> Job:
        return self.update(name, lambda job: replace(job, enabled=False))

    # -- runs --------------------------------------------------------------

    def _append_run(self, doc: Dict[str, Any], run: Run) -> None:
        runs = doc["runs"].setdefault(run.job_name, [])
        runs.append(run.to_dict())
        excess = len(runs) - self.history_limit
        if excess > 0:
            kept: List[Dict[str, Any]] = []
            for entry in runs:
                if excess > 0 and entry.get("ended_at"):
                    excess -= 1
                    continue
                kept.append(entry)
            doc["runs"][run.job_name] = kept

    def record_run_start(
        self,
        job_name: str,
        handle: ProcessHandle,
        trigger: str = TRIGGER_MANUAL,
        run_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Run:
        started = handle.started_at.astimezone(self.timezone)
        run = Run(
            job_name=job_name,
            run_id=run_id or new_run_id(job_name, started),
            started_at=started,
            log_path=str(handle.log_path),
            trigger=trigger,
            pid=handle.pid,
            status_path=str(handle.status_path) if handle.status_path else None,
            metadata=metadata or {},
        )

        def apply(doc: Dict[str, Any]) -> Run:
            job = self._job_from(doc, job_name)
            job = replace(job, last_run=started, run_count=job.run_count + 1)
            job = replace(job, next_run=self._next_run(job, started))
            doc["jobs"][job_name] = job.to_dict()
            self._append_run(doc, run)
            return run

        return self._mutate(apply)

    def record_launch_failure(
        self,
        job_name: str,
        error: str,
        log_path: Path,
        trigger: str = TRIGGER_MANUAL,
        run_id: Optional[str] = None,
    ) -> Run:
        now = self._now()
        run = Run(
            job_name=job_name,
            run_id=run_id or new_run_id(job_name, now),
            started_at=now,
            log_path=str(log_path),
            trigger=trigger,
            status=RUN_LAUNCH_FAILED,
            ended_at=now,
            error=error,
        )

        def apply(doc: Dict[str, Any]) -> Run:
            job = self._job_from(doc, job_name)
            job = replace(job, last_run=now, run_count=job.run_count + 1)
            job = replace(job, next_run=self._next_run(job, now))
            doc["jobs"][job_name] = job.to_dict()
            self._append_run(doc, run)
            return run

        return self._mutate(apply)

    def record_run_end(
        self,
        run: Run,
        exit_status: Optional[int],
        status: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Tuple[Run, bool]:
        """End an active run; the flag is False when it had already ended."""
        ended = self._now()

        def apply(doc: Dict[str, Any]) -> Tuple[Run, bool]:
            entries = doc["runs"].get(run.job_name, [])
            for idx, entry in enumerate(entries):
                if entry.get("run_id") != run.run_id:
                    continue
                stored = Run.from_dict(entry)
                if not stored.active:
                    # Someone else already reconciled this run.
                    return stored, False
                finished = replace(
                    stored,
                    ended_at=ended,
                    exit_status=exit_status,
                    status=status or status_for_exit(exit_status),
                    error=error,
                )
                entries[idx] = finished.to_dict()
                raw_job = doc["jobs"].get(run.job_name)
                if raw_job is not None and exit_status is not None:
                    raw_job["last_exit_status"] = exit_status
                return finished, True
            logger.warning("Run %s of %s is not in the registry; nothing to record.", run.run_id, run.job_name)
            ended_run = replace(run, ended_at=ended, exit_status=exit_status, status=status or status_for_exit(exit_status))
            return ended_run, False

        return self._mutate(apply)

    def history(self, job_name: str, limit: Optional[int] = None) -> List[Run]:
        doc = self._load()
        self._job_from(doc, job_name)
        runs = [Run.from_dict(entry) for entry in doc["runs"].get(job_name, [])]
        runs.sort(key=lambda r: r.started_at)
        if limit is not None:
            runs = runs[-limit:] if limit > 0 else []
        return runs

    def active_runs(self, job_name: Optional[str] = None) -> List[Run]:
        doc = self._load()
        names = [job_name] if job_name else list(doc["runs"].keys())
        out: List[Run] = []
        for name in names:
            for entry in doc["runs"].get(name, []):
                if not entry.get("ended_at"):
                    out.append(Run.from_dict(entry))
        out.sort(key=lambda r: r.started_at)
        return out

    # -- retry state -------------------------------------------------------

    def get_retry_state(self, key: str) -> Optional[RetryState]:
        raw = self._load()["retry"].get(key)
        return RetryState.from_dict(raw) if raw else None

    def put_retry_state(self, state: RetryState) -> None:
        def apply(doc: Dict[str, Any]) -> None:
            doc["retry"][state.key] = state.to_dict()

        self._mutate(apply)

    def delete_retry_state(self, key: str) -> bool:
        def apply(doc: Dict[str, Any]) -> bool:
            return doc["retry"].pop(key, None) is not None

        return self._mutate(apply)

    def retry_states(self) -> List[RetryState]:
        return [RetryState.from_dict(raw) for raw in self._load()["retry"].values()]
