"""
Claim Tests for the job queue.

- Ordering: priority DESC, created_on ASC, id ASC
- Delayed jobs are invisible until start_after
- Concurrent claimers never receive the same job
"""

import threading
from datetime import timedelta

import pytest

from src.jobqueue import QueueManager, SqliteJobStore, ValidationError

from .conftest import FIXED_DATETIME, MockClock, assert_claim_order


class TestClaimOrdering:
    """Jobs are handed out by priority, then age."""

    def test_higher_priority_first(self, manager: QueueManager, mock_clock: MockClock, publish):
        """A newer high-priority job is claimed before an older default one."""
        low = publish(priority=0)
        mock_clock.tick()
        high = publish(priority=10)

        jobs = manager.fetch("test-queue", batch_size=2)

        assert_claim_order(jobs, [high, low])

    def test_oldest_first_within_priority(self, manager: QueueManager, mock_clock: MockClock, publish):
        """Equal priority: FIFO by created_on."""
        ids = []
        for _ in range(3):
            ids.append(publish())
            mock_clock.tick()

        jobs = manager.fetch("test-queue", batch_size=3)

        assert_claim_order(jobs, ids)

    def test_id_breaks_ties(self, manager: QueueManager, publish):
        """Same priority and created_on: ascending id."""
        ids = [publish() for _ in range(4)]

        jobs = manager.fetch("test-queue", batch_size=4)

        assert_claim_order(jobs, sorted(ids))

    def test_single_fetch_returns_job_or_none(self, manager: QueueManager, publish):
        """Without batch_size, fetch returns one Job or None."""
        assert manager.fetch("test-queue") is None

        job_id = publish()
        job = manager.fetch("test-queue")

        assert job.id == job_id

    def test_batch_fetch_returns_list(self, manager: QueueManager, publish):
        """With batch_size, fetch returns at most that many jobs."""
        for _ in range(5):
            publish()

        assert len(manager.fetch("test-queue", batch_size=3)) == 3
        assert len(manager.fetch("test-queue", batch_size=3)) == 2
        assert manager.fetch("test-queue", batch_size=3) == []

    def test_fetch_only_named_queues(self, manager: QueueManager, publish):
        """Jobs of other names are not claimed."""
        publish(name="a")
        publish(name="b")
        publish(name="c")

        jobs = manager.fetch(["a", "b"], batch_size=10)

        assert sorted(job.name for job in jobs) == ["a", "b"]

    @pytest.mark.parametrize("batch_size", [0, -1, True, "2"])
    def test_invalid_batch_size(self, manager: QueueManager, batch_size):
        """batch_size must be a positive integer."""
        with pytest.raises(ValidationError):
            manager.fetch("test-queue", batch_size=batch_size)

    @pytest.mark.parametrize("name", ["", "   ", None, 42])
    def test_invalid_name(self, manager: QueueManager, name):
        """Queue names must be non-empty strings."""
        with pytest.raises(ValidationError):
            manager.fetch(name)


class TestDelayedStart:
    """start_after hides a job until the given instant."""

    def test_relative_delay(self, manager: QueueManager, mock_clock: MockClock, publish):
        """A job delayed by 30s is claimable exactly at +30s."""
        job_id = publish(start_after=30)

        assert manager.fetch("test-queue") is None
        mock_clock.tick(29)
        assert manager.fetch("test-queue") is None
        mock_clock.tick(1)

        job = manager.fetch("test-queue")
        assert job.id == job_id

    def test_timedelta_delay(self, manager: QueueManager, mock_clock: MockClock, publish):
        """timedelta delays behave like seconds."""
        publish(start_after=timedelta(minutes=1))

        assert manager.fetch("test-queue") is None
        mock_clock.tick(60)
        assert manager.fetch("test-queue") is not None

    def test_absolute_start(self, manager: QueueManager, mock_clock: MockClock, publish):
        """An absolute datetime is used as-is."""
        job_id = publish(start_after=FIXED_DATETIME + timedelta(minutes=10))

        mock_clock.tick(599)
        assert manager.fetch("test-queue") is None
        mock_clock.tick(1)
        assert manager.fetch("test-queue").id == job_id

    def test_iso_string_start(self, manager: QueueManager, mock_clock: MockClock, store: SqliteJobStore, publish):
        """ISO-8601 strings with a Z suffix are parsed as UTC."""
        job_id = publish(start_after="2026-01-01T00:05:00Z")

        assert store.get_job(job_id).start_after == FIXED_DATETIME + timedelta(minutes=5)

    def test_past_start_is_immediate(self, manager: QueueManager, publish):
        """A start_after in the past does not delay the job."""
        job_id = publish(start_after=FIXED_DATETIME - timedelta(hours=1))

        assert manager.fetch("test-queue").id == job_id


class TestConcurrentClaims:
    """No job instance is handed to two claimers."""

    def test_no_double_claim(self, temp_db_path: str, mock_clock: MockClock):
        """Many threads fetching from one queue claim each job exactly once."""
        store = SqliteJobStore(temp_db_path, clock=mock_clock)
        store.ensure_schema()
        manager = QueueManager(store)

        published = {manager.publish("shared", {"n": n}) for n in range(60)}

        claimed: list[str] = []
        lock = threading.Lock()
        errors: list[BaseException] = []

        def claimer():
            # Separate store per thread: separate connections
            own = QueueManager(SqliteJobStore(temp_db_path, clock=mock_clock))
            try:
                while True:
                    jobs = own.fetch("shared", batch_size=3)
                    if not jobs:
                        return
                    with lock:
                        claimed.extend(job.id for job in jobs)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=claimer) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert errors == []
        assert len(claimed) == len(set(claimed)), "a job was claimed twice"
        assert set(claimed) == published

    def test_in_memory_store_shared_between_threads(self, in_memory_store: SqliteJobStore):
        """The in-memory store keeps one connection that all threads share."""
        manager = QueueManager(in_memory_store)
        for n in range(20):
            manager.publish("mem", {"n": n})

        claimed: list[str] = []
        lock = threading.Lock()

        def claimer():
            while True:
                job = manager.fetch("mem")
                if job is None:
                    return
                with lock:
                    claimed.append(job.id)

        threads = [threading.Thread(target=claimer) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert len(claimed) == 20
        assert len(set(claimed)) == 20
