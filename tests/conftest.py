from __future__ import annotations

import logging
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

from jobwarden.config import Settings


@pytest.fixture(autouse=True)
def _reset_jobwarden_logger():
    yield
    # setup_logging() only configures once; drop handlers bound to this test's stdout and tmp dir.
    logger = logging.getLogger("jobwarden")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        state_dir=tmp_path / "state",
        timezone=ZoneInfo("UTC"),
        timezone_name="UTC",
        poll_seconds=0.05,
        kill_grace_seconds=0.5,
        launch_grace_seconds=2,
    )
