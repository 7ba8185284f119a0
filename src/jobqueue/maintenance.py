"""
Maintenance for the job queue.

Three independent sweeps, each on its own timer:
- expire: ACTIVE jobs past expire_in go to RETRY or EXPIRED
- archive: finished jobs (and unconsumed completion records) move to the archive
- purge: old archive rows are deleted

Plus an optional state monitor that reports count_states() periodically.

Every sweep is idempotent. A failing tick is logged and reported, and the
timer always reschedules.
"""

import logging
import threading
from datetime import timedelta
from typing import Any, Callable, Optional

from .executor import ErrorObserver, notify
from .queue_manager import QueueManager
from .store import JobStore


logger = logging.getLogger(__name__)

# Defaults for finished-job retention
DEFAULT_ARCHIVE_COMPLETED_AFTER = timedelta(hours=1)
DEFAULT_DELETE_ARCHIVED_AFTER = timedelta(days=7)


class PeriodicTask:
    """
    Runs ``action`` immediately on start and then every ``interval_seconds``.

    Errors raised by the action are logged and passed to ``on_error``;
    results are passed to ``on_result``.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        action: Callable[[], Any],
        on_error: Optional[ErrorObserver] = None,
        on_result: Optional[Callable[[Any], None]] = None,
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self.action = action
        self.on_error = on_error
        self.on_result = on_result

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> Any:
        """Run one tick; returns the action result or None on error."""
        try:
            result = self.action()
        except Exception as e:
            logger.error(f"Error in maintenance task '{self.name}': {e}", exc_info=True)
            notify(self.on_error, e)
            return None

        notify(self.on_result, result)
        return result

    def start(self) -> None:
        if self.is_running():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name=f"jobqueue-{self.name}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"Maintenance task '{self.name}' did not stop within timeout")
            self._thread = None

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self.interval_seconds)


class Maintenance:
    """
    Owns the expire, archive, purge and monitor tasks.

    The sweep methods can also be called directly for one-shot maintenance.
    """

    def __init__(
        self,
        store: JobStore,
        manager: QueueManager,
        expire_interval_seconds: float = 60,
        archive_interval_seconds: float = 60,
        purge_interval_seconds: float = 3600,
        archive_completed_after: timedelta = DEFAULT_ARCHIVE_COMPLETED_AFTER,
        delete_archived_after: timedelta = DEFAULT_DELETE_ARCHIVED_AFTER,
        monitor_interval_seconds: Optional[float] = None,
        on_error: Optional[ErrorObserver] = None,
        on_monitor_states: Optional[Callable[[dict], None]] = None,
    ):
        """
        Initialize Maintenance.

        Args:
            store: JobStore the sweeps run against
            manager: QueueManager used for state counts
            expire_interval_seconds: Seconds between expire sweeps
            archive_interval_seconds: Seconds between archive sweeps
            purge_interval_seconds: Seconds between purge sweeps
            archive_completed_after: Age at which finished jobs are archived
            delete_archived_after: Age at which archived jobs are deleted
            monitor_interval_seconds: Seconds between state reports; None disables
            on_error: Observer for sweep errors
            on_monitor_states: Observer receiving count_states() results
        """
        self.store = store
        self.manager = manager
        self.archive_completed_after = archive_completed_after
        self.delete_archived_after = delete_archived_after

        self._tasks = [
            PeriodicTask("expire", expire_interval_seconds, self.expire, on_error),
            PeriodicTask("archive", archive_interval_seconds, self.archive, on_error),
            PeriodicTask("purge", purge_interval_seconds, self.purge, on_error),
        ]
        if monitor_interval_seconds is not None:
            self._tasks.append(
                PeriodicTask(
                    "monitor-states",
                    monitor_interval_seconds,
                    self.manager.count_states,
                    on_error,
                    on_result=on_monitor_states,
                )
            )

    @property
    def tasks(self) -> list[PeriodicTask]:
        return list(self._tasks)

    def set_observers(
        self,
        on_error: Optional[ErrorObserver],
        on_monitor_states: Optional[Callable[[dict], None]] = None,
    ) -> None:
        """
        Set the error and state-report observers on every task.

        Must be called before start().
        """
        for task in self._tasks:
            task.on_error = on_error
            if task.name == "monitor-states":
                task.on_result = on_monitor_states

    # =========================================================================
    # Sweeps
    # =========================================================================

    def expire(self) -> int:
        """Expire timed-out ACTIVE jobs."""
        count = self.store.expire()
        if count:
            logger.info(f"Expired {count} job(s)")
        return count

    def archive(self) -> int:
        """Archive jobs finished more than archive_completed_after ago."""
        count = self.store.archive(self.archive_completed_after)
        if count:
            logger.info(f"Archived {count} job(s)")
        return count

    def purge(self) -> int:
        """Delete archived jobs older than delete_archived_after."""
        count = self.store.purge(self.delete_archived_after)
        if count:
            logger.info(f"Purged {count} archived job(s)")
        return count

    def run_all(self) -> dict:
        """
        Run every sweep once.

        Returns:
            Sweep statistics; a failing sweep is recorded under "errors"
            and does not stop the others
        """
        stats = {
            "expired": 0,
            "archived": 0,
            "purged": 0,
            "errors": [],
        }

        for key, sweep in (("expired", self.expire), ("archived", self.archive), ("purged", self.purge)):
            try:
                stats[key] = sweep()
            except Exception as e:
                logger.error(f"Error during {sweep.__name__} sweep: {e}", exc_info=True)
                stats["errors"].append(f"{sweep.__name__}: {e}")

        return stats

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        for task in self._tasks:
            task.start()
        logger.info(f"Maintenance started ({', '.join(task.name for task in self._tasks)})")

    def stop(self) -> None:
        for task in self._tasks:
            task.stop()
        logger.info("Maintenance stopped")
