"""
Job Queue Test Fixtures.

Base fixtures:
  - Empty SQLite database (temporary file)
  - Mocked clock at fixed time
  - Store, manager and service wired to both

Helpers:
  - Job publishing factory
  - Assertion helpers for job state
  - wait_for() for tests that run background threads
"""

import tempfile
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Generator

import pytest

from src.jobqueue import (
    JobState,
    QueueConfig,
    QueueManager,
    QueueService,
    SqliteJobStore,
)


# Fixed time for deterministic tests; a multiple of every singleton window used
FIXED_DATETIME = datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc)


class MockClock:
    """
    Mock clock for deterministic time control.

    - Starts at fixed time
    - Advances only when explicitly ticked
    - Callable, so it can be passed directly as a store clock
    """

    def __init__(self, start_time: datetime = FIXED_DATETIME):
        self._current = start_time

    def __call__(self) -> datetime:
        return self._current

    def now(self) -> datetime:
        return self._current

    def tick(self, seconds: float = 1) -> None:
        """Advance time by specified seconds."""
        self._current += timedelta(seconds=seconds)

    def set(self, time: datetime) -> None:
        """Set time to specific value."""
        self._current = time


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def temp_db_path() -> Generator[str, None, None]:
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield db_path

    # Cleanup
    Path(db_path).unlink(missing_ok=True)
    # Also cleanup WAL and SHM files
    Path(f"{db_path}-wal").unlink(missing_ok=True)
    Path(f"{db_path}-shm").unlink(missing_ok=True)


@pytest.fixture
def mock_clock() -> MockClock:
    """Create a mock clock at fixed time."""
    return MockClock()


@pytest.fixture
def store(temp_db_path: str, mock_clock: MockClock) -> Generator[SqliteJobStore, None, None]:
    """Create a fresh SqliteJobStore with the schema in place."""
    store = SqliteJobStore(temp_db_path, clock=mock_clock)
    store.ensure_schema()
    yield store
    store.close()


@pytest.fixture
def in_memory_store(mock_clock: MockClock) -> Generator[SqliteJobStore, None, None]:
    """Create an in-memory SqliteJobStore for fast tests."""
    store = SqliteJobStore(":memory:", clock=mock_clock)
    store.ensure_schema()
    yield store
    store.close()


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def manager(store: SqliteJobStore) -> QueueManager:
    """Create a QueueManager with the test database."""
    return QueueManager(store)


@pytest.fixture
def config(temp_db_path: str) -> QueueConfig:
    """Config with fast polling for tests."""
    return QueueConfig(
        database_url=f"sqlite:///{temp_db_path}",
        new_job_check_interval_seconds=0.02,
        expire_check_interval_seconds=0.05,
        archive_check_interval_seconds=0.05,
        purge_check_interval_seconds=0.05,
    )


@pytest.fixture
def service(config: QueueConfig, mock_clock: MockClock) -> Generator[QueueService, None, None]:
    """Create a QueueService; not started."""
    service = QueueService.create(config, clock=mock_clock)
    yield service
    service.close()


@pytest.fixture
def started_service(service: QueueService) -> QueueService:
    """Create a started QueueService."""
    service.start()
    return service


# =============================================================================
# Job Factory Fixtures
# =============================================================================


@pytest.fixture
def publish(manager: QueueManager) -> Callable:
    """
    Factory fixture for publishing jobs.

    Returns a function that publishes a job and returns its id.
    """

    def _publish(name: str = "test-queue", data: dict = None, **options) -> str:
        job_id = manager.publish(name, data if data is not None else {"test": True}, options)
        assert job_id is not None, "publish was unexpectedly rejected"
        return job_id

    return _publish


# =============================================================================
# Assertion Helpers
# =============================================================================


def assert_job_state(store: SqliteJobStore, job_id: str, expected: JobState):
    """Assert a job has the expected state."""
    job = store.get_job(job_id)
    assert job is not None, f"Job {job_id} not found"
    assert job.state == expected, f"Expected {expected}, got {job.state}"


def assert_claim_order(jobs: list, expected_ids: list):
    """Assert jobs were claimed in the expected order."""
    actual_ids = [job.id for job in jobs]
    assert actual_ids == expected_ids, f"Expected order {expected_ids}, got {actual_ids}"
