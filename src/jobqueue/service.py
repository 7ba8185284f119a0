"""
Queue Service - Main entry point for the job queue.

This service orchestrates all job queue components:
- JobStore (SQLite or PostgreSQL persistence)
- QueueManager (publish / fetch / complete / fail / cancel)
- Worker (one polling loop per subscription)
- Maintenance (expire, archive, purge, state monitor)

Usage:
    service = QueueService.create(QueueConfig.from_env())
    service.start()
    service.subscribe("email", send_email, {"team_size": 4})
    service.publish("email", {"to": "someone@example.com"})
    # ... workers poll in the background ...
    service.stop()
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional, Sequence, Union

from .config import QueueConfig
from .entities import Job, UpdateResult, completion_name
from .errors import ValidationError
from .executor import BatchHandler, ErrorObserver, Handler, notify
from .maintenance import Maintenance
from .options import PublishOptions, SubscribeOptions, coerce_options
from .persistence import SqliteJobStore
from .queue_manager import IdsArg, QueueManager, check_name
from .store import JobStore
from .worker import Worker


logger = logging.getLogger(__name__)


def create_store(config: QueueConfig, clock: Optional[Callable[[], datetime]] = None) -> JobStore:
    """
    Build the store selected by ``config.database_url``.

    Args:
        config: Queue configuration
        clock: Time source for the SQLite store; PostgreSQL uses the database clock
    """
    if config.backend == "postgres":
        # psycopg is only needed for PostgreSQL URLs
        from .postgres import PostgresJobStore

        return PostgresJobStore(config.database_url, schema=config.schema)
    return SqliteJobStore(config.sqlite_path, clock=clock)


class QueueService:
    """
    Main service that coordinates all job queue components.

    Provides:
    - Component initialization and wiring
    - Schema check or creation at startup
    - Subscriptions with background workers
    - Graceful shutdown
    """

    def __init__(
        self,
        config: QueueConfig,
        store: JobStore,
        manager: QueueManager,
        maintenance: Maintenance,
    ):
        """
        Initialize QueueService with all components.

        Use QueueService.create() for convenient construction.
        """
        self.config = config
        self.store = store
        self.manager = manager
        self.maintenance = maintenance

        # Observers; replaceable at any time
        self.on_error: Optional[ErrorObserver] = None
        self.on_monitor_states: Optional[Callable[[dict], None]] = None

        self.maintenance.set_observers(self._emit_error, self._emit_monitor_states)

        self._workers: dict[str, list[Worker]] = {}
        self._started = False
        self._schema_checked = False

    @classmethod
    def create(
        cls,
        config: Optional[QueueConfig] = None,
        store: Optional[JobStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "QueueService":
        """
        Create a QueueService with all components wired together.

        Args:
            config: Queue configuration (defaults to QueueConfig())
            store: Use this store instead of building one from config
            clock: Time source for a SQLite store built from config

        Returns:
            Configured QueueService
        """
        config = config or QueueConfig()
        store = store or create_store(config, clock=clock)
        manager = QueueManager(store, uuid_version=config.uuid_version)

        maintenance = Maintenance(
            store=store,
            manager=manager,
            expire_interval_seconds=config.expire_check_interval_seconds,
            archive_interval_seconds=config.archive_check_interval_seconds,
            purge_interval_seconds=config.purge_check_interval_seconds,
            archive_completed_after=config.archive_completed_after,
            delete_archived_after=config.delete_archived_after,
            monitor_interval_seconds=config.monitor_state_interval_seconds,
        )

        return cls(config=config, store=store, manager=manager, maintenance=maintenance)

    def _emit_error(self, error: BaseException) -> None:
        notify(self.on_error, error)

    def _emit_monitor_states(self, states: dict) -> None:
        notify(self.on_monitor_states, states)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def connect(self) -> None:
        """
        Verify the schema without starting maintenance.

        Raises:
            SchemaError: If the job tables are missing or at another version
        """
        self.store.verify_schema()
        self._schema_checked = True
        logger.info("Connected to job queue store")

    def start(self) -> None:
        """
        Prepare the schema and start maintenance.

        Creates the schema when auto_create_schema is set, otherwise only
        verifies it.

        Raises:
            SchemaError: If the schema is missing or incompatible
            RuntimeError: If already started
        """
        if self._started:
            raise RuntimeError("Queue service already started")

        logger.info("Starting queue service...")

        if self.config.auto_create_schema:
            self.store.ensure_schema()
        else:
            self.store.verify_schema()
        self._schema_checked = True

        self.maintenance.start()
        self._started = True

        logger.info("Queue service started")

    def stop(self, timeout: float = 30.0) -> None:
        """
        Stop every worker and maintenance task.

        In-flight handlers are allowed to finish.

        Args:
            timeout: Maximum wait per worker
        """
        logger.info("Stopping queue service...")

        for name in list(self._workers):
            self.unsubscribe(name, timeout=timeout)

        if self._started:
            self.maintenance.stop()
            self._started = False

        logger.info("Queue service stopped")

    def close(self) -> None:
        """Stop everything and release store connections."""
        self.stop()
        self.store.close()

    @property
    def is_started(self) -> bool:
        return self._started

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(
        self,
        name: str,
        handler: Union[Handler, BatchHandler],
        options: Union[SubscribeOptions, dict, None] = None,
    ) -> Worker:
        """
        Start a worker delivering jobs of ``name`` to ``handler``.

        Args:
            name: Queue name
            handler: Called with a Job (team mode) or list of Jobs (batch_size set)
            options: SubscribeOptions or an equivalent dict

        Returns:
            The started Worker

        Raises:
            ValidationError: On a missing name, non-callable handler or bad options
            SchemaError: If neither connect() nor start() has run and the schema is missing
        """
        check_name(name)
        if not callable(handler):
            raise ValidationError("handler must be callable")
        opts = coerce_options(SubscribeOptions, options)

        if not self._schema_checked:
            self.store.verify_schema()
            self._schema_checked = True

        worker = Worker(
            name=name,
            manager=self.manager,
            handler=handler,
            options=opts,
            interval_seconds=self.config.new_job_check_interval_seconds,
            on_error=self._emit_error,
        )
        worker.start()
        self._workers.setdefault(name, []).append(worker)

        logger.info(
            f"Subscribed to '{name}' (team_size={opts.team_size}, batch_size={opts.batch_size})"
        )
        return worker

    def unsubscribe(self, name: str, timeout: float = 30.0) -> bool:
        """
        Stop every worker subscribed to ``name``.

        Returns:
            True if any worker was stopped
        """
        workers = self._workers.pop(name, [])
        for worker in workers:
            worker.stop(timeout=timeout)
        return bool(workers)

    def on_complete(
        self,
        name: str,
        handler: Union[Handler, BatchHandler],
        options: Union[SubscribeOptions, dict, None] = None,
    ) -> Worker:
        """Subscribe to the completion records of ``name``."""
        return self.subscribe(completion_name(check_name(name)), handler, options)

    def off_complete(self, name: str, timeout: float = 30.0) -> bool:
        return self.unsubscribe(completion_name(check_name(name)), timeout=timeout)

    def workers(self, name: Optional[str] = None) -> list[Worker]:
        """Active workers, optionally for one queue name."""
        if name is not None:
            return list(self._workers.get(name, []))
        return [worker for group in self._workers.values() for worker in group]

    # =========================================================================
    # Job Operations
    # =========================================================================

    def publish(
        self,
        name: str,
        data: Any = None,
        options: Union[PublishOptions, dict, None] = None,
    ) -> Optional[str]:
        """Create a job; returns its id or None if a singleton window rejected it."""
        return self.manager.publish(name, data, options)

    def fetch(self, names: Union[str, Sequence[str]], batch_size: Optional[int] = None):
        return self.manager.fetch(names, batch_size)

    def fetch_completed(self, name: str, batch_size: Optional[int] = None):
        return self.manager.fetch_completed(name, batch_size)

    def complete(self, ids: IdsArg, data: Any = None) -> UpdateResult:
        return self.manager.complete(ids, data)

    def fail(self, ids: IdsArg, data: Any = None) -> UpdateResult:
        return self.manager.fail(ids, data)

    def cancel(self, ids: IdsArg) -> UpdateResult:
        return self.manager.cancel(ids)

    def delete_queue(self, name: str) -> int:
        return self.manager.delete_queue(name)

    def delete_all_queues(self) -> int:
        return self.manager.delete_all_queues()

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        return self.manager.get_job(job_id)

    def get_archived_job(self, job_id: str) -> Optional[Job]:
        return self.manager.get_archived_job(job_id)

    def count_states(self) -> dict:
        return self.manager.count_states()

    # =========================================================================
    # One-shot Maintenance
    # =========================================================================

    def expire(self) -> int:
        return self.maintenance.expire()

    def archive(self) -> int:
        return self.maintenance.archive()

    def purge(self) -> int:
        return self.maintenance.purge()
