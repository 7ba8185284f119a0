"""
Queue Manager for the job queue.

- Validates arguments and options before touching the store
- Resolves delays and singleton windows into concrete insert attempts
- Exposes fetch / complete / fail / cancel over one or many ids

What QueueManager MUST NOT do:
- Run handlers (Worker's responsibility)
- Sweep expired or finished jobs (Maintenance's responsibility)
"""

import json
import logging
from typing import Any, Optional, Sequence, Union

from .entities import (
    JobState,
    Job,
    NewJob,
    UpdateResult,
    completion_name,
    generate_uuid,
)
from .errors import ValidationError
from .options import PublishOptions, coerce_options
from .singleton import SingletonResolver
from .store import JobStore


logger = logging.getLogger(__name__)

IdsArg = Union[str, Sequence[str]]


def check_name(name: Any) -> str:
    """
    Raises:
        ValidationError: If name is not a non-empty string
    """
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("job name must be a non-empty string")
    return name


def normalize_ids(ids: IdsArg) -> list[str]:
    """Accept one id or a sequence of ids; reject empty input."""
    if isinstance(ids, str):
        ids = [ids]
    elif not isinstance(ids, Sequence):
        raise ValidationError(f"expected a job id or a list of ids, got {type(ids).__name__}")

    ids = list(ids)
    if not ids:
        raise ValidationError("at least one job id is required")
    for job_id in ids:
        if not isinstance(job_id, str) or not job_id:
            raise ValidationError(f"invalid job id: {job_id!r}")
    return ids


def check_json(value: Any, what: str) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{what} must be JSON-serializable: {e}") from e
    return value


class QueueManager:
    """
    Publish and consume operations over a JobStore.

    Key behaviors:
    - publish: returns the new id, or None when a singleton window rejects it
    - fetch: claims without waiting; returns None / [] when nothing is eligible
    - complete/fail/cancel: report how many of the requested jobs changed state
    """

    def __init__(
        self,
        store: JobStore,
        uuid_version: str = "v4",
        resolver: Optional[SingletonResolver] = None,
    ):
        """
        Initialize QueueManager.

        Args:
            store: JobStore for persistence
            uuid_version: "v4" (random) or "v1" (time-based) job ids
            resolver: Singleton slot resolver
        """
        self.store = store
        self.uuid_version = uuid_version
        self.resolver = resolver or SingletonResolver()

    # =========================================================================
    # Publish
    # =========================================================================

    def publish(
        self,
        name: str,
        data: Any = None,
        options: Union[PublishOptions, dict, None] = None,
    ) -> Optional[str]:
        """
        Create a job.

        Args:
            name: Queue name
            data: JSON-serializable payload
            options: PublishOptions or an equivalent dict

        Returns:
            The job id, or None if a singleton constraint rejected every attempt

        Raises:
            ValidationError: On a missing name, bad options or unserializable data
        """
        check_name(name)
        check_json(data, "job data")
        opts = coerce_options(PublishOptions, options)

        now = self.store.now()
        job_id = generate_uuid(self.uuid_version)

        for attempt in self.resolver.plan(opts, now):
            job = NewJob(
                id=job_id,
                name=name,
                data=data,
                priority=opts.priority,
                retry_limit=opts.retry_limit,
                start_after=attempt.start_after,
                expire_in=opts.expire_in,
                singleton_key=opts.singleton_key,
                singleton_on=attempt.singleton_on,
            )
            if self.store.insert_job(job):
                logger.debug(f"Published job {job_id} to '{name}' (start_after={attempt.start_after.isoformat()})")
                return job_id

        logger.info(f"Publish to '{name}' rejected by singleton constraint")
        return None

    # =========================================================================
    # Fetch
    # =========================================================================

    def fetch(
        self,
        names: Union[str, Sequence[str]],
        batch_size: Optional[int] = None,
    ) -> Union[Job, None, list[Job]]:
        """
        Claim eligible jobs.

        Args:
            names: One queue name or several
            batch_size: None for a single job, otherwise the maximum to claim

        Returns:
            Job or None when batch_size is None, otherwise a (possibly empty) list
        """
        if isinstance(names, str) or not isinstance(names, Sequence):
            names = [names]
        names = [check_name(name) for name in names]
        if not names:
            raise ValidationError("at least one job name is required")

        if batch_size is not None:
            if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size < 1:
                raise ValidationError(f"batch_size must be a positive integer, got {batch_size!r}")

        jobs = self.store.claim(names, batch_size or 1)
        if jobs:
            logger.debug(f"Claimed {len(jobs)} job(s) from {names}")

        if batch_size is None:
            return jobs[0] if jobs else None
        return jobs

    def fetch_completed(self, name: str, batch_size: Optional[int] = None) -> Union[Job, None, list[Job]]:
        """Claim completion records of ``name``."""
        return self.fetch(completion_name(check_name(name)), batch_size)

    # =========================================================================
    # State Transitions
    # =========================================================================

    def complete(self, ids: IdsArg, data: Any = None) -> UpdateResult:
        """Mark ACTIVE jobs complete, recording ``data`` as the response."""
        ids = normalize_ids(ids)
        check_json(data, "completion data")
        updated = self.store.complete(ids, data)
        logger.debug(f"Completed {updated}/{len(ids)} job(s)")
        return UpdateResult(requested=len(ids), updated=updated, ids=ids)

    def fail(self, ids: IdsArg, data: Any = None) -> UpdateResult:
        """Fail unfinished jobs; each goes to RETRY while attempts remain."""
        ids = normalize_ids(ids)
        check_json(data, "failure data")
        updated = self.store.fail(ids, data)
        logger.debug(f"Failed {updated}/{len(ids)} job(s)")
        return UpdateResult(requested=len(ids), updated=updated, ids=ids)

    def cancel(self, ids: IdsArg) -> UpdateResult:
        ids = normalize_ids(ids)
        updated = self.store.cancel(ids)
        logger.info(f"Cancelled {updated}/{len(ids)} job(s)")
        return UpdateResult(requested=len(ids), updated=updated, ids=ids)

    # =========================================================================
    # Queue Management
    # =========================================================================

    def delete_queue(self, name: str) -> int:
        """Delete jobs of ``name`` that have not been claimed yet."""
        deleted = self.store.delete_queue(check_name(name))
        logger.info(f"Deleted {deleted} queued job(s) from '{name}'")
        return deleted

    def delete_all_queues(self) -> int:
        deleted = self.store.delete_all_queues()
        logger.info(f"Deleted {deleted} queued job(s) from all queues")
        return deleted

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        return self.store.get_job(job_id)

    def get_archived_job(self, job_id: str) -> Optional[Job]:
        """Get an archived job by ID."""
        return self.store.get_archived_job(job_id)

    def count_states(self) -> dict:
        """
        Job counts by state, overall and per queue.

        Completion records are excluded. Every state appears with 0 when
        absent.

        Returns:
            {"all": n, "<state>": n, ..., "queues": {name: {"all": n, "<state>": n, ...}}}
        """
        def empty() -> dict:
            counts = {"all": 0}
            counts.update({state.value: 0 for state in JobState})
            return counts

        totals = empty()
        queues: dict[str, dict] = {}

        for name, state, size in self.store.count_states():
            queue = queues.setdefault(name, empty())
            queue[state] += size
            queue["all"] += size
            totals[state] += size
            totals["all"] += size

        totals["queues"] = queues
        return totals
