"""
Completion and Archive Pipeline Tests.

- complete / terminal fail / expire write a completion record
- Completion records are consumed like any other queue
- Expire sweep applies the retry rules
- Archive moves finished jobs; purge deletes old archive rows
"""

from datetime import timedelta

from src.jobqueue import (
    COMPLETED_JOB_SUFFIX,
    JobState,
    QueueManager,
    SqliteJobStore,
    completion_name,
)
from src.jobqueue.maintenance import Maintenance

from .conftest import MockClock, assert_job_state


class TestCompletionRecords:
    """Finished jobs feed <name>__state__complete."""

    def test_complete_round_trip(self, manager: QueueManager, publish):
        """The completion record carries request and response."""
        job_id = publish(data={"to": "a@example.com"})
        manager.fetch("test-queue")
        manager.complete(job_id, {"sent": True})

        record = manager.fetch_completed("test-queue")

        assert record is not None
        assert record.name == "test-queue" + COMPLETED_JOB_SUFFIX
        assert record.data == {
            "request": {"id": job_id, "name": "test-queue", "data": {"to": "a@example.com"}},
            "response": {"sent": True},
            "state": "complete",
        }

    def test_terminal_failure_record(self, manager: QueueManager, publish):
        """A FAILED job produces a record with state 'failed'."""
        job_id = publish()
        manager.fetch("test-queue")
        manager.fail(job_id, {"message": "boom"})

        record = manager.fetch_completed("test-queue")

        assert record.data["state"] == "failed"
        assert record.data["response"] == {"message": "boom"}
        assert record.data["request"]["id"] == job_id

    def test_retry_writes_no_record(self, manager: QueueManager, publish):
        """Going to RETRY is not a completion."""
        job_id = publish(retry_limit=1)
        manager.fetch("test-queue")
        manager.fail(job_id)

        assert manager.fetch_completed("test-queue") is None

    def test_completion_record_has_no_record(self, manager: QueueManager, publish):
        """Completing a completion record does not create another one."""
        job_id = publish()
        manager.fetch("test-queue")
        manager.complete(job_id)

        record = manager.fetch_completed("test-queue")
        result = manager.complete(record.id)

        assert result.updated == 1
        assert manager.fetch(completion_name(completion_name("test-queue"))) is None
        assert manager.fetch_completed("test-queue") is None

    def test_one_record_per_completed_job(self, manager: QueueManager, publish):
        """Completing a batch writes one record each."""
        ids = [publish() for _ in range(3)]
        manager.fetch("test-queue", batch_size=3)
        manager.complete(ids)

        records = manager.fetch_completed("test-queue", batch_size=10)

        assert sorted(record.data["request"]["id"] for record in records) == sorted(ids)


class TestExpireSweep:
    """Active jobs past expire_in are expired or retried."""

    def test_expire_without_retries(
        self, manager: QueueManager, store: SqliteJobStore, mock_clock: MockClock, publish
    ):
        """retry_limit 0: ACTIVE -> EXPIRED with a completion record."""
        job_id = publish(expire_in=60)
        manager.fetch("test-queue")

        mock_clock.tick(60)
        assert store.expire() == 0

        mock_clock.tick(1)
        assert store.expire() == 1

        job = store.get_job(job_id)
        assert job.state == JobState.EXPIRED
        assert job.completed_on is not None

        record = manager.fetch_completed("test-queue")
        assert record.data["state"] == "expired"
        assert record.data["response"] is None

        mock_clock.tick(61)
        assert store.expire() == 0
        assert manager.fetch_completed("test-queue") is None

    def test_expire_then_retry(
        self, manager: QueueManager, store: SqliteJobStore, mock_clock: MockClock, publish
    ):
        """retry_limit 1: first expiration goes to RETRY and the job is claimable again."""
        job_id = publish(expire_in=60, retry_limit=1)
        manager.fetch("test-queue")

        mock_clock.tick(61)
        store.expire()

        assert_job_state(store, job_id, JobState.RETRY)
        assert manager.fetch_completed("test-queue") is None

        job = manager.fetch("test-queue")
        assert job.id == job_id
        assert job.retry_count == 1

        mock_clock.tick(61)
        store.expire()
        assert_job_state(store, job_id, JobState.EXPIRED)

        record = manager.fetch_completed("test-queue")
        assert record.data["request"]["id"] == job_id
        assert record.data["state"] == "expired"
        assert manager.fetch_completed("test-queue") is None

    def test_created_jobs_never_expire(self, store: SqliteJobStore, mock_clock: MockClock, publish):
        """Only ACTIVE jobs are swept."""
        job_id = publish(expire_in=1)

        mock_clock.tick(3600)

        assert store.expire() == 0
        assert_job_state(store, job_id, JobState.CREATED)


class TestArchiveAndPurge:
    """Finished jobs move to the archive and are eventually deleted."""

    def test_archive_completed_job(
        self, manager: QueueManager, store: SqliteJobStore, mock_clock: MockClock, publish
    ):
        """A job completed more than an hour ago is archived."""
        job_id = publish()
        manager.fetch("test-queue")
        manager.complete(job_id)
        maintenance = Maintenance(store, manager)

        mock_clock.tick(3600)
        assert maintenance.archive() == 0

        mock_clock.tick(1)
        # The job and its unconsumed completion record
        assert maintenance.archive() == 2

        assert store.get_job(job_id) is None
        archived = store.get_archived_job(job_id)
        assert archived is not None
        assert archived.name == "test-queue"
        assert archived.state == JobState.COMPLETE
        assert archived.archived_on == mock_clock.now()

    def test_archive_keeps_unfinished_jobs(
        self, manager: QueueManager, store: SqliteJobStore, mock_clock: MockClock, publish
    ):
        """created, retry and active jobs stay in the live table."""
        created_id = publish()
        active_id = publish(name="other")
        manager.fetch("other")

        mock_clock.tick(86400)

        assert store.archive(timedelta(hours=1)) == 0
        assert_job_state(store, created_id, JobState.CREATED)
        assert_job_state(store, active_id, JobState.ACTIVE)

    def test_archive_cancelled_and_failed(
        self, manager: QueueManager, store: SqliteJobStore, mock_clock: MockClock, publish
    ):
        """Every terminal state has completed_on and is archived."""
        cancelled = publish()
        failed = publish(name="failing")
        manager.cancel(cancelled)
        manager.fail(failed)

        mock_clock.tick(3601)
        store.archive(timedelta(hours=1))

        assert store.get_archived_job(cancelled).state == JobState.CANCELLED
        assert store.get_archived_job(failed).state == JobState.FAILED

    def test_purge_old_archive_rows(
        self, manager: QueueManager, store: SqliteJobStore, mock_clock: MockClock, publish
    ):
        """Archived rows older than the retention are deleted."""
        job_id = publish()
        manager.cancel(job_id)
        maintenance = Maintenance(store, manager, delete_archived_after=timedelta(days=7))

        mock_clock.tick(3601)
        maintenance.archive()

        mock_clock.tick(7 * 86400)
        assert maintenance.purge() == 0

        mock_clock.tick(1)
        assert maintenance.purge() == 1
        assert store.get_archived_job(job_id) is None

    def test_run_all_collects_stats(
        self, manager: QueueManager, store: SqliteJobStore, mock_clock: MockClock, publish
    ):
        """run_all reports every sweep."""
        publish(expire_in=10)
        manager.fetch("test-queue")
        mock_clock.tick(11)

        stats = Maintenance(store, manager).run_all()

        assert stats["expired"] == 1
        assert stats["archived"] == 0
        assert stats["purged"] == 0
        assert stats["errors"] == []


class TestCountStates:
    """State counts exclude completion records."""

    def test_counts(self, manager: QueueManager, publish):
        publish(name="a")
        publish(name="a")
        done = publish(name="b")
        manager.fetch("b")
        manager.complete(done)

        counts = manager.count_states()

        assert counts["all"] == 3
        assert counts["created"] == 2
        assert counts["complete"] == 1
        assert counts["failed"] == 0
        assert counts["queues"]["a"]["created"] == 2
        assert counts["queues"]["a"]["all"] == 2
        assert counts["queues"]["b"]["complete"] == 1
        assert completion_name("b") not in counts["queues"]
