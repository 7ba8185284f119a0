"""
Job Queue Core Module.

Durable multi-worker job queue on a transactional store:
- Job lifecycle state machine with bounded retries and expiration
- Concurrency-safe claiming (SKIP LOCKED on PostgreSQL, exclusive
  write transactions on SQLite)
- Singleton / throttle / debounce publishing
- Polling workers, completion records, archive and purge
"""

from .entities import (
    JobState,
    Job,
    NewJob,
    UpdateResult,
    COMPLETED_JOB_SUFFIX,
    STATE_JOB_DELIMITER,
    completion_name,
)
from .errors import (
    QueueError,
    ValidationError,
    SchemaError,
    WorkerStateError,
)
from .options import PublishOptions, SubscribeOptions
from .store import JobStore
from .persistence import SqliteJobStore
from .singleton import SingletonResolver, SlotAttempt, slot_for
from .queue_manager import QueueManager
from .executor import Executor, JobOutcome, error_payload
from .worker import Worker, WorkerState
from .maintenance import Maintenance, PeriodicTask
from .config import QueueConfig
from .service import QueueService, create_store

__all__ = [
    # Entities
    "JobState",
    "Job",
    "NewJob",
    "UpdateResult",
    "COMPLETED_JOB_SUFFIX",
    "STATE_JOB_DELIMITER",
    "completion_name",
    # Errors
    "QueueError",
    "ValidationError",
    "SchemaError",
    "WorkerStateError",
    # Options
    "PublishOptions",
    "SubscribeOptions",
    # Persistence
    "JobStore",
    "SqliteJobStore",
    # Singleton
    "SingletonResolver",
    "SlotAttempt",
    "slot_for",
    # Queue
    "QueueManager",
    # Executor
    "Executor",
    "JobOutcome",
    "error_payload",
    # Worker
    "Worker",
    "WorkerState",
    # Maintenance
    "Maintenance",
    "PeriodicTask",
    # Service
    "QueueConfig",
    "QueueService",
    "create_store",
]
