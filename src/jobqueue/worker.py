"""
Worker for the job queue.

- Polls one queue name on a background thread
- Hands claimed jobs to the Executor (team or batch mode)
- Backpressure: the next fetch waits until the current jobs are handled

What Worker MUST NOT do:
- Interrupt a running handler (stop waits for it)
- Let a store or handler error end the loop
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Optional

from .errors import WorkerStateError
from .executor import BatchHandler, ErrorObserver, Executor, Handler, notify
from .options import SubscribeOptions
from .queue_manager import QueueManager


logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    """Worker lifecycle states."""

    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


class Worker:
    """
    Polls a queue and delivers jobs to a handler.

    Key behaviors:
    1. Fetch up to team_size jobs (or batch_size in batch mode)
    2. If jobs were delivered, poll again immediately
    3. Otherwise wait interval_seconds
    4. Errors go to on_error and the log; the loop continues
    """

    def __init__(
        self,
        name: str,
        manager: QueueManager,
        handler: Handler | BatchHandler,
        options: Optional[SubscribeOptions] = None,
        interval_seconds: float = 1.0,
        on_error: Optional[ErrorObserver] = None,
    ):
        """
        Initialize Worker.

        Args:
            name: Queue name to fetch from
            manager: QueueManager for fetch/complete/fail
            handler: Called with a Job (team mode) or a list of Jobs (batch mode)
            options: SubscribeOptions; interval_seconds there overrides the default
            interval_seconds: Seconds between polls when the queue is idle
            on_error: Observer for store and handler errors
        """
        self.name = name
        self.manager = manager
        self.handler = handler
        self.options = options or SubscribeOptions()
        self.interval_seconds = self.options.interval_seconds or interval_seconds
        self.on_error = on_error
        self.executor = Executor(manager, on_error=on_error)

        self._state = WorkerState.STOPPED
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._fetching = threading.Lock()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._pool_threads: set[int] = set()

    @property
    def state(self) -> WorkerState:
        """Get current worker state."""
        return self._state

    @property
    def batch_mode(self) -> bool:
        return self.options.batch_size is not None

    def is_running(self) -> bool:
        return self._state == WorkerState.RUNNING

    def _get_pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self.options.team_size,
                thread_name_prefix=f"jobqueue-{self.name}",
                initializer=self._register_pool_thread,
            )
        return self._pool

    def _register_pool_thread(self) -> None:
        self._pool_threads.add(threading.get_ident())

    def _on_own_thread(self) -> bool:
        """True when called from this worker's poll thread or one of its handler threads."""
        return (
            threading.current_thread() is self._thread
            or threading.get_ident() in self._pool_threads
        )

    def _shutdown_pool(self, wait: bool = True) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
            self._pool = None
            self._pool_threads = set()

    # =========================================================================
    # Single Poll
    # =========================================================================

    def poll_once(self) -> int:
        """
        Fetch and handle one round of jobs.

        Skipped (returns 0) while a previous fetch is still being handled.

        Returns:
            Number of jobs delivered to the handler

        Raises:
            Store errors from fetch; handler errors never propagate
        """
        if not self._fetching.acquire(blocking=False):
            logger.debug(f"Worker '{self.name}' busy, skipping poll")
            return 0

        try:
            if self.batch_mode:
                jobs = self.manager.fetch(self.name, self.options.batch_size)
                if jobs:
                    self.executor.run_batch(self.handler, jobs)
            else:
                jobs = self.manager.fetch(self.name, self.options.team_size)
                if jobs:
                    self.executor.run_team(self.handler, jobs, self._get_pool())

            if jobs:
                logger.debug(f"Worker '{self.name}' handled {len(jobs)} job(s)")
            return len(jobs)
        finally:
            self._fetching.release()

    # =========================================================================
    # Polling Loop
    # =========================================================================

    def start(self) -> None:
        """
        Start polling on a background thread.

        Raises:
            WorkerStateError: If the worker is not stopped
        """
        if self._state != WorkerState.STOPPED:
            raise WorkerStateError(self.name, self._state.value)

        self._stop_event.clear()
        self._state = WorkerState.RUNNING
        self._thread = threading.Thread(
            target=self._poll_loop,
            name=f"jobqueue-worker-{self.name}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float = 30.0) -> None:
        """
        Stop polling. In-flight handlers finish; no new fetch is issued.

        Called from one of the worker's own threads (a handler unsubscribing
        itself), it signals the loop and returns without joining.

        Args:
            timeout: Maximum seconds to wait for the loop to exit
        """
        own_thread = self._on_own_thread()

        if self._state == WorkerState.STOPPED:
            self._shutdown_pool(wait=not own_thread)
            return

        logger.info(f"Stopping worker '{self.name}'...")
        self._state = WorkerState.STOPPING
        self._stop_event.set()

        if own_thread:
            self._thread = None
        elif self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"Worker '{self.name}' did not stop within timeout")
            self._thread = None

        self._shutdown_pool(wait=not own_thread)
        self._state = WorkerState.STOPPED
        logger.info(f"Worker '{self.name}' stopped")

    def _poll_loop(self) -> None:
        """Main polling loop."""
        logger.info(f"Worker '{self.name}' started (interval={self.interval_seconds}s)")

        while not self._stop_event.is_set():
            try:
                delivered = self.poll_once()

                if delivered == 0:
                    # Nothing to do, wait before polling again
                    self._stop_event.wait(self.interval_seconds)
                # If jobs were delivered, immediately check for more

            except Exception as e:
                logger.error(f"Error in worker '{self.name}' loop: {e}", exc_info=True)
                notify(self.on_error, e)
                self._stop_event.wait(self.interval_seconds)

        logger.info(f"Worker '{self.name}' loop ended")
