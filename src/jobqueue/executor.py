"""
Executor for the job queue.

- Runs subscriber handlers against claimed jobs
- Converts each handler outcome into complete (return value) or fail
  (error payload)
- Reports handler errors to the error observer

What Executor MUST NOT do:
- Claim jobs (Worker's responsibility)
- Decide retry policy (the store applies retry_limit on fail)
"""

import logging
from concurrent.futures import Executor as PoolExecutor
from concurrent.futures import wait
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .entities import Job
from .errors import ValidationError
from .queue_manager import QueueManager


logger = logging.getLogger(__name__)

Handler = Callable[[Job], Any]
BatchHandler = Callable[[list[Job]], Any]
ErrorObserver = Callable[[BaseException], None]


def error_payload(exc: BaseException) -> dict:
    """Response data recorded on a job whose handler raised."""
    return {"message": str(exc), "type": type(exc).__name__}


def notify(observer: Optional[Callable[..., None]], *args: Any) -> None:
    """Invoke an observer callback; an observer that raises is logged and ignored."""
    if observer is None:
        return
    try:
        observer(*args)
    except Exception as e:
        logger.error(f"Error in observer callback {observer!r}: {e}", exc_info=True)


@dataclass
class JobOutcome:
    """Result of running a handler on one job."""

    job: Job
    result: Any = None
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class Executor:
    """
    Runs handlers and settles the jobs they were given.

    Team mode: one handler call per job, auto-complete or auto-fail.
    Batch mode: one handler call per list, no auto-complete; a raised
    error fails the whole batch.
    """

    def __init__(self, manager: QueueManager, on_error: Optional[ErrorObserver] = None):
        """
        Initialize Executor.

        Args:
            manager: QueueManager used to complete or fail jobs
            on_error: Observer receiving handler and settlement errors
        """
        self.manager = manager
        self.on_error = on_error

    def run(self, handler: Handler, job: Job) -> JobOutcome:
        """Run ``handler`` on ``job`` without settling it."""
        try:
            result = handler(job)
        except Exception as e:
            logger.error(f"Handler for job {job.id} ('{job.name}') raised: {e}", exc_info=True)
            notify(self.on_error, e)
            return JobOutcome(job=job, error=e)
        return JobOutcome(job=job, result=result)

    def settle(self, outcome: JobOutcome) -> None:
        """Complete a successful job with its result, or fail it with the error payload."""
        job = outcome.job
        if not outcome.succeeded:
            self.manager.fail(job.id, error_payload(outcome.error))
            return

        try:
            self.manager.complete(job.id, outcome.result)
        except ValidationError as e:
            # Handler returned something that cannot be stored
            logger.error(f"Job {job.id} result rejected: {e}")
            notify(self.on_error, e)
            self.manager.fail(job.id, error_payload(e))

    def process(self, handler: Handler, job: Job) -> JobOutcome:
        outcome = self.run(handler, job)
        self.settle(outcome)
        return outcome

    def run_team(self, handler: Handler, jobs: list[Job], pool: PoolExecutor) -> list[JobOutcome]:
        """
        Run one handler call per job on ``pool`` and wait for all of them.

        Jobs are submitted in claim order. A settlement error on one job is
        reported and does not affect the others.
        """
        futures = [pool.submit(self.process, handler, job) for job in jobs]
        wait(futures)

        outcomes = []
        for job, future in zip(jobs, futures):
            error = future.exception()
            if error is not None:
                logger.error(f"Error settling job {job.id}: {error}", exc_info=error)
                notify(self.on_error, error)
                continue
            outcomes.append(future.result())
        return outcomes

    def run_batch(self, handler: BatchHandler, jobs: list[Job]) -> Optional[BaseException]:
        """
        Deliver ``jobs`` to ``handler`` in one call.

        The handler completes jobs itself. If it raises, every job in the
        batch is failed with the error payload.

        Returns:
            The handler's error, or None
        """
        try:
            handler(jobs)
        except Exception as e:
            logger.error(f"Batch handler for '{jobs[0].name}' raised: {e}", exc_info=True)
            notify(self.on_error, e)
            self.manager.fail([job.id for job in jobs], error_payload(e))
            return e
        return None
