"""Shared test fixtures and factories."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

import pytest

from config.settings import SchedulerConfig
from evaluator.constraints import EnvironmentSnapshot
from evaluator.environment import MutableEnvironmentSource
from scheduler.service import PeriodicWorkService
from storage.sqlite import SQLiteScheduleStore

REPO_ROOT = Path(__file__).resolve().parents[1]
SCHEMAS_DIR = REPO_ROOT / "schemas"

T0 = datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock shared by the store, resolver and scheduler."""

    def __init__(self, start: datetime = T0):
        self._lock = threading.Lock()
        self._now = start

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, delta: timedelta | None = None, **kwargs: float) -> datetime:
        with self._lock:
            self._now += delta if delta is not None else timedelta(**kwargs)
            return self._now


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


# =============================================================================
# Runtime Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    return SchedulerConfig(
        poll_interval_seconds=3600,
        min_interval_seconds=900,
        backoff_base_seconds=30,
        backoff_max_seconds=18000,
        default_timeout_seconds=None,
        max_workers=4,
    )


@pytest.fixture
def sqlite_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "schedule.sqlite"


@pytest.fixture
def store(sqlite_path: Path, clock: FakeClock) -> SQLiteScheduleStore:
    return SQLiteScheduleStore.open(sqlite_path, clock=clock)


@pytest.fixture
def environment() -> MutableEnvironmentSource:
    return MutableEnvironmentSource(EnvironmentSnapshot())


@pytest.fixture
def service(store, environment, scheduler_config, clock):
    svc = PeriodicWorkService(
        store=store,
        environment=environment,
        config=scheduler_config,
        clock=clock,
        instance_id="test-instance",
    )
    yield svc
    svc.stop()
    svc.scheduler.join_inflight(timeout=5)
