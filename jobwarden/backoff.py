"""
Retry/backoff policy for repeatedly failing units of work.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from jobwarden.config import DEFAULT_BACKOFF_BASE_SECONDS, DEFAULT_BACKOFF_MAX_SECONDS
from jobwarden.notify import make_event

logger = logging.getLogger(__name__)
UTC = timezone.utc

TIER_RETRY = "retry"
TIER_WARN = "warn"
TIER_BLOCKED = "blocked"
WARN_AFTER_FAILURES = 3
BLOCK_AFTER_FAILURES = 5
TIER_LEVELS = {TIER_RETRY: "WARN", TIER_WARN: "ERROR", TIER_BLOCKED: "CRITICAL"}


def backoff_seconds(
    failures: int,
    base_seconds: int = DEFAULT_BACKOFF_BASE_SECONDS,
    max_seconds: int = DEFAULT_BACKOFF_MAX_SECONDS,
) -> int:
    if failures < 1:
        return 0
    return min(base_seconds * 2 ** (failures - 1), max_seconds)


def escalation_tier(failures: int) -> str:
    if failures >= BLOCK_AFTER_FAILURES:
        return TIER_BLOCKED
    if failures >= WARN_AFTER_FAILURES:
        return TIER_WARN
    return TIER_RETRY


def failure_key(description: str) -> str:
    return hashlib.sha256(description.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class RetryState:
    key: str
    failures: int
    last_attempt: datetime
    last_error: str = ""
    label: str = ""

    @property
    def tier(self) -> str:
        return escalation_tier(self.failures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "failures": self.failures,
            "last_attempt": self.last_attempt.astimezone(UTC).isoformat(),
            "last_error": self.last_error,
            "label": self.label,
        }

    @staticmethod
    def from_dict(raw: Dict[str, Any]) -> "RetryState":
        return RetryState(
            key=raw["key"],
            failures=int(raw["failures"]),
            last_attempt=datetime.fromisoformat(raw["last_attempt"]),
            last_error=raw.get("last_error", ""),
            label=raw.get("label", ""),
        )


class RetryStore(Protocol):
    def get_retry_state(self, key: str) -> Optional[RetryState]: ...

    def put_retry_state(self, state: RetryState) -> None: ...

    def delete_retry_state(self, key: str) -> bool: ...


class EventSink(Protocol):
    def emit(self, event: Any) -> None: ...


class RetryPolicy:
    def __init__(
        self,
        store: RetryStore,
        notifier: Optional[EventSink] = None,
        base_seconds: int = DEFAULT_BACKOFF_BASE_SECONDS,
        max_seconds: int = DEFAULT_BACKOFF_MAX_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def backoff_seconds(self, failures: int) -> int:
        return backoff_seconds(failures, self.base_seconds, self.max_seconds)

    def state(self, key: str) -> Optional[RetryState]:
        return self.store.get_retry_state(key)

    def should_retry(self, key: str, now: Optional[datetime] = None) -> Tuple[bool, Optional[float]]:
        """Return ``(True, 0)`` or ``(False, seconds_remaining)``; blocked units get ``None``."""
        state = self.store.get_retry_state(key)
        if state is None:
            return True, 0.0
        if state.tier == TIER_BLOCKED:
            return False, None
        now = now or self._clock()
        retry_at = state.last_attempt + timedelta(seconds=self.backoff_seconds(state.failures))
        if now >= retry_at:
            return True, 0.0
        return False, (retry_at - now).total_seconds()

    def record_failure(
        self,
        key: str,
        message: str,
        label: str = "",
        job_name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        previous = self.store.get_retry_state(key)
        failures = (previous.failures if previous else 0) + 1
        state = RetryState(
            key=key,
            failures=failures,
            last_attempt=now or self._clock(),
            last_error=message,
            label=label or (previous.label if previous else ""),
        )
        self.store.put_retry_state(state)
        tier = state.tier
        delay = self.backoff_seconds(failures)

        if tier == TIER_BLOCKED:
            text = f"{state.label or key} failed {failures} times in a row; blocked until cleared."
        else:
            text = f"{state.label or key} failed ({failures} consecutive); next attempt in {delay}s."
        self._emit(
            "failure.recorded",
            TIER_LEVELS[tier],
            text,
            job_name,
            {"key": key, "failures": failures, "tier": tier, "backoff_seconds": delay, "error": message},
        )
        return tier

    def record_success(self, key: str, job_name: Optional[str] = None) -> bool:
        previous = self.store.get_retry_state(key)
        if previous is None:
            return False
        self.store.delete_retry_state(key)
        self._emit(
            "failure.recovered",
            "INFO",
            f"{previous.label or key} recovered after {previous.failures} failure(s).",
            job_name,
            {"key": key, "failures": previous.failures},
        )
        return True

    def clear(self, key: str) -> bool:
        cleared = self.store.delete_retry_state(key)
        if cleared:
            logger.info("Cleared retry state %s", key)
        return cleared

    def _emit(
        self,
        event_type: str,
        level: str,
        message: str,
        job_name: Optional[str],
        metadata: Dict[str, Any],
    ) -> None:
        if self.notifier is None:
            logger.log(logging.INFO if level == "INFO" else logging.WARNING, message)
            return
        self.notifier.emit(make_event(event_type, level, message, job_name=job_name, metadata=metadata))
