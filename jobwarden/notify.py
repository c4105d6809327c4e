"""
Notification collaborator: posts supervisor events to an HTTP endpoint.

Delivery is best effort. Events are buffered on a background thread, sent in
batches, and spooled to a JSONL file when the endpoint is unreachable. While
spooled, repeated failure reports for one retry key collapse into the latest.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Any, Dict, List, Optional
from urllib import error as urllib_error
from urllib import request as urllib_request

from jobwarden.config import NotifySettings

logger = logging.getLogger(__name__)
UTC = timezone.utc

LEVEL_TO_LOGGING = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


@dataclass(frozen=True)
class Event:
    event_type: str
    level: str
    message: str
    event_at: datetime
    job_name: Optional[str] = None
    run_id: Optional[str] = None
    success: Optional[bool] = None
    return_code: Optional[int] = None
    duration_ms: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "sourceType": "jobwarden",
            "eventType": self.event_type,
            "level": self.level,
            "message": self.message,
            "eventAt": self.event_at.astimezone(UTC).isoformat(),
            "metadata": self.metadata,
        }
        if self.job_name:
            payload["jobName"] = self.job_name
        if self.run_id:
            payload["runId"] = self.run_id
        if self.success is not None:
            payload["success"] = self.success
        if self.return_code is not None:
            payload["returnCode"] = self.return_code
        if self.duration_ms is not None:
            payload["durationMs"] = self.duration_ms
        return payload


def spool_key(payload: Dict[str, Any]) -> Optional[str]:
    """Failure reports for one retry key supersede each other while undelivered."""
    if payload.get("eventType") != "failure.recorded":
        return None
    metadata = payload.get("metadata") or {}
    key = metadata.get("key")
    return f"failure:{key}" if key else None


class EventSpool:
    """JSONL file holding payloads the endpoint has not accepted yet."""

    def __init__(self, path: Path, max_events: int):
        self.path = path
        self.max_events = max_events

    def load(self) -> List[Dict[str, Any]]:
        try:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []
        payloads: List[Dict[str, Any]] = []
        for line in lines:
            try:
                payload = json.loads(line)
            except ValueError:
                continue
            if isinstance(payload, dict):
                payloads.append(payload)
        return payloads

    def save(self, payloads: List[Dict[str, Any]]) -> None:
        if not payloads:
            self.path.unlink(missing_ok=True)
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text("".join(json.dumps(p, separators=(",", ":")) + "\n" for p in payloads), encoding="utf-8")
        os.replace(tmp, self.path)

    def merge(self, pending: List[Dict[str, Any]], incoming: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        merged = list(pending)
        for payload in incoming:
            key = spool_key(payload)
            if key is not None:
                earlier = [p for p in merged if spool_key(p) == key]
                if earlier:
                    merged = [p for p in merged if spool_key(p) != key]
                    folded = sum(1 + int((p.get("metadata") or {}).get("superseded", 0)) for p in earlier)
                    payload = dict(payload, metadata=dict(payload.get("metadata") or {}, superseded=folded))
            merged.append(payload)
        overflow = len(merged) - self.max_events
        if overflow > 0:
            logger.warning("Notifier spool is full; discarding %s oldest event(s).", overflow)
            merged = merged[overflow:]
        return merged


class Notifier:
    """Best-effort, non-blocking event emitter.

    Spooled events are always sent before newer ones so the endpoint sees
    them in order.
    """

    def __init__(self, settings: NotifySettings):
        self.settings = settings
        self.spool = EventSpool(settings.buffer.spool_file, settings.buffer.max_events)
        self._queue: "Queue[Event]" = Queue(maxsize=settings.buffer.max_events)
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._dropped_events = 0

        if self.settings.enabled:
            self._thread = threading.Thread(target=self._run, daemon=True, name="jobwarden-notifier")
            self._thread.start()

    def emit(self, event: Event) -> None:
        logger.log(LEVEL_TO_LOGGING.get(event.level, logging.INFO), "[notify] %s", event.message)
        if not self.settings.enabled:
            return
        try:
            self._queue.put_nowait(event)
        except Full:
            self._dropped_events += 1
            logger.warning("Notifier queue is full; dropping event (dropped=%s).", self._dropped_events)

    def flush(self, limit: int = 250) -> bool:
        """Deliver spooled events, then queued ones. Returns False if anything stayed behind."""
        with self._lock:
            try:
                pending = self.spool.load()
            except OSError as exc:
                logger.warning("Notifier failed to read spool: %s", exc)
                pending = []
            fresh = self._drain_queue()
            outbox = self.spool.merge(pending, fresh)
            if not outbox:
                return True
            delivered = 0
            while delivered < len(outbox):
                chunk = outbox[delivered : delivered + limit]
                if not self._post(chunk):
                    break
                delivered += len(chunk)
            if delivered == len(outbox) and not pending:
                return True
            try:
                self.spool.save(outbox[delivered:])
            except OSError as exc:
                logger.warning("Notifier failed to write spool: %s", exc)
            return delivered == len(outbox)

    def close(self, timeout_seconds: float = 2.0) -> None:
        if not self.settings.enabled:
            return
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout_seconds)
        self.flush()

    def _run(self) -> None:
        interval = max(0.05, self.settings.buffer.flush_interval_ms / 1000.0)
        while not self._stop_event.wait(interval):
            try:
                self.flush()
            except Exception:  # pragma: no cover - keeps the sender thread alive
                logger.exception("Notifier flush failed")

    def _drain_queue(self) -> List[Dict[str, Any]]:
        payloads: List[Dict[str, Any]] = []
        while True:
            try:
                payloads.append(self._queue.get_nowait().to_payload())
            except Empty:
                return payloads

    def _post(self, payloads: List[Dict[str, Any]]) -> bool:
        body = json.dumps({"events": payloads}).encode("utf-8")
        url = self.settings.endpoint.rstrip("/") + "/v1/events/batch"
        headers = {"Content-Type": "application/json"}
        if self.settings.api_key:
            headers["x-api-key"] = self.settings.api_key
        req = urllib_request.Request(url=url, data=body, method="POST", headers=headers)
        try:
            with urllib_request.urlopen(req, timeout=max(0.1, self.settings.timeout_ms / 1000.0)) as response:
                return 200 <= response.status < 300
        except (urllib_error.URLError, OSError) as exc:
            logger.warning("Notifier failed to send %s event(s): %s", len(payloads), exc)
            return False



def make_event(
    event_type: str,
    level: str,
    message: str,
    job_name: Optional[str] = None,
    **kwargs: Any,
) -> Event:
    return Event(
        event_type=event_type,
        level=level,
        message=message,
        event_at=datetime.now(tz=UTC),
        job_name=job_name,
        **kwargs,
    )
