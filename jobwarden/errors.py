"""
Error taxonomy for jobwarden.

Every error carries the process exit code the CLI returns for it. Codes
100-109 are reserved for supervisor-internal failures so they never collide
with a worker's own exit status.
"""

from __future__ import annotations

from typing import Optional

EXIT_OK = 0
EXIT_INTERNAL = 100
EXIT_SCHEDULE_PARSE = 101
EXIT_JOB_NOT_FOUND = 102
EXIT_ALREADY_RUNNING = 103
EXIT_LAUNCH_FAILED = 104
EXIT_CONFIG = 105
EXIT_JOB_EXISTS = 106
EXIT_INTERRUPTED = 130


class JobwardenError(Exception):
    """Base error for jobwarden."""

    exit_code = EXIT_INTERNAL


class ConfigError(JobwardenError):
    """Config validation error."""

    exit_code = EXIT_CONFIG


class ScheduleParseError(JobwardenError):
    """Malformed schedule expression."""

    exit_code = EXIT_SCHEDULE_PARSE

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class LaunchError(JobwardenError):
    """A worker process could not be started."""

    exit_code = EXIT_LAUNCH_FAILED


class TimeoutExceeded(JobwardenError):
    """A run outlived its deadline and was terminated."""

    def __init__(self, job_name: str, run_id: str, timeout_seconds: float, forced: bool):
        how = "killed" if forced else "terminated"
        super().__init__(
            f"Run {run_id} of {job_name} exceeded {timeout_seconds:g}s and was {how}."
        )
        self.job_name = job_name
        self.run_id = run_id
        self.timeout_seconds = timeout_seconds
        self.forced = forced


class StaleHandle(JobwardenError):
    """A recorded pid no longer refers to a live process."""

    def __init__(self, job_name: str, run_id: str, pid: Optional[int]):
        super().__init__(f"Run {run_id} of {job_name} (pid={pid}) is no longer alive.")
        self.job_name = job_name
        self.run_id = run_id
        self.pid = pid


class ConcurrencyExhausted(JobwardenError):
    """A due job is already at its instance ceiling."""

    def __init__(self, job_name: str, running: int, ceiling: int):
        super().__init__(
            f"Job {job_name} is at its concurrency ceiling ({running}/{ceiling}); skipping."
        )
        self.job_name = job_name
        self.running = running
        self.ceiling = ceiling


class RegistryWriteConflict(JobwardenError):
    """Another writer replaced the registry between our load and our write."""

    def __init__(self, path: str, expected_revision: int, found_revision: int):
        super().__init__(
            f"Registry {path} changed underneath us "
            f"(expected revision {expected_revision}, found {found_revision}); "
            "the other writer's update may be lost."
        )
        self.path = path
        self.expected_revision = expected_revision
        self.found_revision = found_revision


class JobNotFoundError(JobwardenError):
    exit_code = EXIT_JOB_NOT_FOUND

    def __init__(self, name: str):
        super().__init__(f'Error: Unknown job "{name}".')
        self.name = name


class JobExistsError(JobwardenError):
    exit_code = EXIT_JOB_EXISTS

    def __init__(self, name: str):
        super().__init__(f'Error: Job "{name}" already exists.')
        self.name = name


class AlreadyRunningError(JobwardenError):
    exit_code = EXIT_ALREADY_RUNNING
