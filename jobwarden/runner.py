#!/usr/bin/env python3
"""
Worker wrapper executed inside every launched process.

Runs one shell command, waits for it, and atomically writes its exit status
to a JSON file so supervisors that are not the parent can still read it.
Only the standard library is used: this file is executed by path.
"""

from __future__ import annotations

import argparse
import json
import os
import signal
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

SHELL = "/bin/sh"


def write_status(path: Path, exit_status: int, signals: List[int]) -> None:
    payload = {
        "exit_status": exit_status,
        "signals_received": signals,
        "finished_at": datetime.now(tz=timezone.utc).isoformat(),
        "runner_pid": os.getpid(),
    }
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(payload), encoding="utf-8")
    os.replace(tmp, path)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a command and record its exit status.")
    parser.add_argument("--status-file", help="Where to write the exit status JSON")
    parser.add_argument("command", help="Shell command to execute")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    terminate_requests: List[int] = []

    def _note_signal(signum: int, _frame: Any) -> None:
        # The whole process group receives the signal; the command decides
        # whether to exit and we keep waiting so its status is recorded.
        terminate_requests.append(signum)

    signal.signal(signal.SIGTERM, _note_signal)
    signal.signal(signal.SIGINT, _note_signal)

    sys.stdout.flush()
    if terminate_requests:
        # Asked to stop before the command ever started.
        exit_status = -terminate_requests[0]
    else:
        proc = subprocess.Popen([SHELL, "-c", args.command])
        exit_status = proc.wait()
    if args.status_file:
        write_status(Path(args.status_file), exit_status, terminate_requests)
    if exit_status < 0:
        return 128 - exit_status
    return exit_status


if __name__ == "__main__":
    raise SystemExit(main())
