"""
Runtime configuration and logging setup for jobwarden.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from jobwarden.errors import ConfigError

DEFAULT_CONFIG = "jobwarden.yaml"
DEFAULT_STATE_DIR = ".jobwarden"
DEFAULT_POLL_SECONDS = 10
DEFAULT_TIMEOUT_SECONDS = 3600
DEFAULT_KILL_GRACE_SECONDS = 10
DEFAULT_LAUNCH_GRACE_SECONDS = 2
DEFAULT_HISTORY_LIMIT = 200
DEFAULT_BACKOFF_BASE_SECONDS = 60
DEFAULT_BACKOFF_MAX_SECONDS = 3600
DEFAULT_NOTIFY_ENDPOINT = "http://127.0.0.1:7410"
DEFAULT_NOTIFY_TIMEOUT_MS = 400
DEFAULT_NOTIFY_BUFFER_MAX_EVENTS = 5000
DEFAULT_NOTIFY_BUFFER_FLUSH_MS = 1000
DEFAULT_NOTIFY_SPOOL_FILE = "notify_spool.jsonl"
LOG_FILE = "jobwarden.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
VALID_CATCH_UP = {"skip", "once"}


@dataclass(frozen=True)
class NotifyBufferSettings:
    max_events: int
    flush_interval_ms: int
    spool_file: Path


@dataclass(frozen=True)
class NotifySettings:
    enabled: bool
    endpoint: str
    api_key: str
    timeout_ms: int
    buffer: NotifyBufferSettings


@dataclass(frozen=True)
class BackoffSettings:
    base_seconds: int = DEFAULT_BACKOFF_BASE_SECONDS
    max_seconds: int = DEFAULT_BACKOFF_MAX_SECONDS


@dataclass(frozen=True)
class Settings:
    state_dir: Path
    timezone: ZoneInfo
    timezone_name: str
    poll_seconds: float = DEFAULT_POLL_SECONDS
    default_timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS
    launch_grace_seconds: float = DEFAULT_LAUNCH_GRACE_SECONDS
    catch_up: str = "skip"
    history_limit: int = DEFAULT_HISTORY_LIMIT
    backoff: BackoffSettings = field(default_factory=BackoffSettings)
    notify: Optional[NotifySettings] = None

    @property
    def registry_path(self) -> Path:
        return self.state_dir / "registry.json"

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def pid_file(self) -> Path:
        return self.state_dir / "daemon.pid"

    @property
    def stop_file(self) -> Path:
        return self.state_dir / "daemon.stop"

    @property
    def log_file(self) -> Path:
        return self.state_dir / LOG_FILE

    @property
    def notify_settings(self) -> NotifySettings:
        return self.notify or default_notify_settings(self.state_dir)

    def job_log_path(self, job_name: str) -> Path:
        return self.logs_dir / f"{job_name}.log"

    def run_status_path(self, run_id: str) -> Path:
        return self.state_dir / "status" / f"{run_id}.json"

    def now(self) -> datetime:
        return datetime.now(tz=self.timezone)


def setup_logging(log_file: Optional[Path] = None, level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger("jobwarden")
    if logger.handlers:
        return logger
    logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    return logger


def system_timezone() -> Tuple[ZoneInfo, str]:
    local_tz = datetime.now().astimezone().tzinfo
    if isinstance(local_tz, ZoneInfo):
        return local_tz, local_tz.key
    tz_name = os.environ.get("TZ")
    if tz_name:
        try:
            zone = ZoneInfo(tz_name)
            return zone, tz_name
        except ZoneInfoNotFoundError:
            pass
    return ZoneInfo("UTC"), "UTC"


def parse_timezone(name: str, field_path: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_number(value: Any, field_path: str, default: float, minimum: float = 0) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Error: {field_path} must be a number.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return float(value)


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_mapping(value: Any, field_path: str, allowed: set) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    unknown = set(value.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")
    return value


def _resolve_path(value: Any, base_dir: Path, field_path: str) -> Path:
    raw = Path(ensure_str(value, field_path)).expanduser()
    return raw if raw.is_absolute() else (base_dir / raw).resolve()


def default_notify_settings(state_dir: Path) -> NotifySettings:
    return NotifySettings(
        enabled=False,
        endpoint=DEFAULT_NOTIFY_ENDPOINT,
        api_key="",
        timeout_ms=DEFAULT_NOTIFY_TIMEOUT_MS,
        buffer=NotifyBufferSettings(
            max_events=DEFAULT_NOTIFY_BUFFER_MAX_EVENTS,
            flush_interval_ms=DEFAULT_NOTIFY_BUFFER_FLUSH_MS,
            spool_file=state_dir / DEFAULT_NOTIFY_SPOOL_FILE,
        ),
    )


def parse_notify_settings(raw: Any, base_dir: Path, state_dir: Path, field_path: str = "notify") -> NotifySettings:
    defaults = default_notify_settings(state_dir)
    if raw is None:
        return defaults
    raw = ensure_mapping(raw, field_path, {"enabled", "endpoint", "api_key", "timeout_ms", "buffer"})

    enabled = ensure_bool(raw.get("enabled"), f"{field_path}.enabled", False)
    endpoint = ensure_str(raw.get("endpoint", DEFAULT_NOTIFY_ENDPOINT), f"{field_path}.endpoint")
    if not (endpoint.startswith("http://") or endpoint.startswith("https://")):
        raise ConfigError(f"Error: {field_path}.endpoint must be an HTTP URL.")
    api_key = raw.get("api_key", "")
    if not isinstance(api_key, str):
        raise ConfigError(f"Error: {field_path}.api_key must be a string.")
    timeout_ms = ensure_int(raw.get("timeout_ms"), f"{field_path}.timeout_ms", DEFAULT_NOTIFY_TIMEOUT_MS, 1)

    buffer_raw = ensure_mapping(
        raw.get("buffer"), f"{field_path}.buffer", {"max_events", "flush_interval_ms", "spool_file"}
    )
    max_events = ensure_int(
        buffer_raw.get("max_events"), f"{field_path}.buffer.max_events", DEFAULT_NOTIFY_BUFFER_MAX_EVENTS, 1
    )
    flush_interval_ms = ensure_int(
        buffer_raw.get("flush_interval_ms"),
        f"{field_path}.buffer.flush_interval_ms",
        DEFAULT_NOTIFY_BUFFER_FLUSH_MS,
        1,
    )
    spool_file = defaults.buffer.spool_file
    if "spool_file" in buffer_raw:
        spool_file = _resolve_path(buffer_raw["spool_file"], base_dir, f"{field_path}.buffer.spool_file")

    return NotifySettings(
        enabled=enabled,
        endpoint=endpoint,
        api_key=api_key,
        timeout_ms=timeout_ms,
        buffer=NotifyBufferSettings(
            max_events=max_events,
            flush_interval_ms=flush_interval_ms,
            spool_file=spool_file,
        ),
    )


def parse_settings(payload: Dict[str, Any], base_dir: Path, state_dir: Optional[Path] = None) -> Settings:
    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    unknown = set(payload.keys()) - {
        "state_dir",
        "timezone",
        "poll_seconds",
        "default_timeout_seconds",
        "kill_grace_seconds",
        "launch_grace_seconds",
        "catch_up",
        "history_limit",
        "backoff",
        "notify",
    }
    if unknown:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown)}.")

    if state_dir is None:
        state_dir = _resolve_path(payload.get("state_dir", DEFAULT_STATE_DIR), base_dir, "state_dir")

    if "timezone" in payload:
        timezone_name = ensure_str(payload["timezone"], "timezone")
        zone = parse_timezone(timezone_name, "timezone")
    else:
        zone, timezone_name = system_timezone()

    catch_up = ensure_str(payload.get("catch_up", "skip"), "catch_up").lower()
    if catch_up not in VALID_CATCH_UP:
        raise ConfigError(f'Error: catch_up must be one of {sorted(VALID_CATCH_UP)}, got "{catch_up}".')

    backoff_raw = ensure_mapping(payload.get("backoff"), "backoff", {"base_seconds", "max_seconds"})
    backoff = BackoffSettings(
        base_seconds=ensure_int(
            backoff_raw.get("base_seconds"), "backoff.base_seconds", DEFAULT_BACKOFF_BASE_SECONDS, 1
        ),
        max_seconds=ensure_int(
            backoff_raw.get("max_seconds"), "backoff.max_seconds", DEFAULT_BACKOFF_MAX_SECONDS, 1
        ),
    )
    if backoff.max_seconds < backoff.base_seconds:
        raise ConfigError("Error: backoff.max_seconds must be >= backoff.base_seconds.")

    return Settings(
        state_dir=state_dir,
        timezone=zone,
        timezone_name=timezone_name,
        poll_seconds=ensure_number(payload.get("poll_seconds"), "poll_seconds", DEFAULT_POLL_SECONDS, 0.01),
        default_timeout_seconds=ensure_int(
            payload.get("default_timeout_seconds"), "default_timeout_seconds", DEFAULT_TIMEOUT_SECONDS, 1
        ),
        kill_grace_seconds=ensure_number(
            payload.get("kill_grace_seconds"), "kill_grace_seconds", DEFAULT_KILL_GRACE_SECONDS, 0
        ),
        launch_grace_seconds=ensure_number(
            payload.get("launch_grace_seconds"), "launch_grace_seconds", DEFAULT_LAUNCH_GRACE_SECONDS, 0.01
        ),
        catch_up=catch_up,
        history_limit=ensure_int(payload.get("history_limit"), "history_limit", DEFAULT_HISTORY_LIMIT, 1),
        backoff=backoff,
        notify=parse_notify_settings(payload.get("notify"), base_dir, state_dir),
    )


def load_settings(config_path: Optional[Path] = None, state_dir: Optional[Path] = None) -> Settings:
    """Load settings from YAML; a missing config file means all defaults."""
    config_path = Path(config_path or DEFAULT_CONFIG).resolve()
    payload: Dict[str, Any] = {}
    if config_path.exists():
        try:
            payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc
    if state_dir is not None:
        state_dir = Path(state_dir).expanduser().resolve()
    return parse_settings(payload, config_path.parent, state_dir=state_dir)
