"""
Job Queue Domain Entities.

- Job: Single unit of work stored in the live job table
- NewJob: Row written by publish before the store assigns created_on
- UpdateResult: Outcome of complete/fail/cancel
- Completion records: derived jobs named ``<name>__state__complete``

State values are totally ordered; queries use the ordering to mean
"claimable" (< ACTIVE) and "not yet finished" (< COMPLETE).
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional
import uuid


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

STATE_JOB_DELIMITER = "__state__"


class JobState(str, Enum):
    """
    Job state values.

    Declaration order is significant: it defines the ordering used by
    ``rank`` and by the PostgreSQL enum type.
    """

    CREATED = "created"
    RETRY = "retry"
    ACTIVE = "active"
    COMPLETE = "complete"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATE_ORDER.index(self)

    def __lt__(self, other: "JobState") -> bool:
        if not isinstance(other, JobState):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: "JobState") -> bool:
        if not isinstance(other, JobState):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: "JobState") -> bool:
        if not isinstance(other, JobState):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: "JobState") -> bool:
        if not isinstance(other, JobState):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def below(cls, bound: "JobState") -> list["JobState"]:
        """All states strictly lower than ``bound``."""
        return [state for state in _STATE_ORDER if state < bound]


_STATE_ORDER = list(JobState)

COMPLETED_JOB_SUFFIX = STATE_JOB_DELIMITER + JobState.COMPLETE.value

# Default expiration for active jobs
DEFAULT_EXPIRE_IN = timedelta(minutes=15)


def generate_uuid(version: str = "v4") -> str:
    """Generate a new job id."""
    if version == "v1":
        return str(uuid.uuid1())
    return str(uuid.uuid4())


def now_utc() -> datetime:
    """Get current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_epoch(value: Optional[datetime]) -> Optional[float]:
    """Convert a datetime to Unix epoch seconds. Naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def from_epoch(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def completion_name(name: str) -> str:
    """Name of the completion stream for ``name``."""
    return name + COMPLETED_JOB_SUFFIX


def is_completion_name(name: str) -> bool:
    return name.endswith(COMPLETED_JOB_SUFFIX)


def completion_data(job_id: str, name: str, data: Any, response: Any, state: JobState) -> dict:
    """Payload of a completion record for the given origin job."""
    return {
        "request": {"id": job_id, "name": name, "data": data},
        "response": response,
        "state": state.value,
    }


def transition_on_failure(retry_count: int, retry_limit: int, terminal: JobState) -> JobState:
    """
    Next state for a job that failed or expired.

    RETRY while attempts remain, otherwise ``terminal`` (FAILED or EXPIRED).
    """
    if retry_count < retry_limit:
        return JobState.RETRY
    return terminal


@dataclass
class NewJob:
    """
    A job as written by publish.

    start_after and singleton_on are already resolved to absolute instants.
    """

    id: str
    name: str
    data: Any = None
    priority: int = 0
    retry_limit: int = 0
    start_after: Optional[datetime] = None
    expire_in: timedelta = DEFAULT_EXPIRE_IN
    singleton_key: Optional[str] = None
    singleton_on: Optional[datetime] = None


@dataclass
class Job:
    """
    Single unit of work in the live job table (or the archive).

    Mutability rules:
    - id, name, data, priority, retry_limit, expire_in, singleton_*, created_on: Immutable
    - state, retry_count, started_on, completed_on: Changed only by store transitions
    """

    id: str
    name: str
    state: JobState
    data: Any = None
    priority: int = 0
    retry_limit: int = 0
    retry_count: int = 0
    start_after: Optional[datetime] = None
    started_on: Optional[datetime] = None
    expire_in: timedelta = DEFAULT_EXPIRE_IN
    singleton_key: Optional[str] = None
    singleton_on: Optional[datetime] = None
    created_on: Optional[datetime] = None
    completed_on: Optional[datetime] = None
    archived_on: Optional[datetime] = None


@dataclass
class UpdateResult:
    """Counts returned by complete, fail and cancel."""

    requested: int
    updated: int
    ids: list[str] = field(default_factory=list)
