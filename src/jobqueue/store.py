"""
Store adapter contract.

The queue core talks to persistence only through JobStore. Each adapter
implements the atomic bounded claim with whatever locking primitive its
database offers (SKIP LOCKED on PostgreSQL, an exclusive write transaction
on SQLite).

What a store MUST provide:
- Conditional insert: a uniqueness conflict is a silent no-op reported as False
- Atomic claim: no row is returned to two concurrent claimers
- Completion records written in the same transaction as the state change
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence

from .entities import Job, NewJob


# Bumped whenever the table layout changes
SCHEMA_VERSION = "1"


class JobStore(ABC):
    """Abstract persistence for jobs and the archive."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time as the store sees it (aware UTC)."""
        ...

    # =========================================================================
    # Schema
    # =========================================================================

    @abstractmethod
    def ensure_schema(self) -> None:
        """Create tables and indexes if missing; idempotent."""
        ...

    @abstractmethod
    def verify_schema(self) -> None:
        """
        Raises:
            SchemaError: If tables are missing or at another version
        """
        ...

    # =========================================================================
    # Jobs
    # =========================================================================

    @abstractmethod
    def insert_job(self, job: NewJob) -> bool:
        """
        Insert a job unless a uniqueness constraint rejects it.

        Returns:
            True if a row was written, False on a singleton conflict
        """
        ...

    @abstractmethod
    def claim(self, names: Sequence[str], batch_size: int) -> list[Job]:
        """
        Atomically claim up to ``batch_size`` eligible jobs.

        Eligible: state < ACTIVE, name in ``names``, start_after <= now.
        Order: priority DESC, created_on ASC, id ASC.
        """
        ...

    @abstractmethod
    def complete(self, ids: Sequence[str], response: Any) -> int:
        """ACTIVE -> COMPLETE plus completion records. Returns jobs updated."""
        ...

    @abstractmethod
    def fail(self, ids: Sequence[str], response: Any) -> int:
        """< COMPLETE -> RETRY or FAILED plus completion records for FAILED. Returns jobs updated."""
        ...

    @abstractmethod
    def cancel(self, ids: Sequence[str]) -> int:
        """< COMPLETE -> CANCELLED. Returns jobs updated."""
        ...

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    def delete_queue(self, name: str) -> int:
        """Delete jobs of ``name`` that were never claimed (state < ACTIVE)."""
        ...

    @abstractmethod
    def delete_all_queues(self) -> int:
        """Delete every job with state < ACTIVE."""
        ...

    @abstractmethod
    def count_states(self) -> list[tuple[str, str, int]]:
        """(name, state, count) rows for non-completion jobs."""
        ...

    # =========================================================================
    # Maintenance
    # =========================================================================

    @abstractmethod
    def expire(self) -> int:
        """Transition timed-out ACTIVE jobs. Returns jobs transitioned."""
        ...

    @abstractmethod
    def archive(self, completed_after: timedelta) -> int:
        """Move finished jobs older than ``completed_after`` into the archive."""
        ...

    @abstractmethod
    def purge(self, archived_after: timedelta) -> int:
        """Delete archive rows older than ``archived_after``."""
        ...

    @abstractmethod
    def get_archived_job(self, job_id: str) -> Optional[Job]:
        ...

    def close(self) -> None:
        """Release connections held by the store."""
        return None
