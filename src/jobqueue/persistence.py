"""
SQLite store for the job queue.

- WAL mode for concurrent readers
- Every write runs in a BEGIN IMMEDIATE transaction, so claims serialize on
  the database write lock and no row is handed to two claimers
- Timestamps are stored as Unix epoch seconds (REAL) so interval arithmetic
  stays in SQL
- Singleton uniqueness is enforced by partial unique indexes; publish uses
  ON CONFLICT DO NOTHING and reads the row count
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Sequence

from .entities import (
    DEFAULT_EXPIRE_IN,
    STATE_JOB_DELIMITER,
    Job,
    JobState,
    NewJob,
    completion_data,
    completion_name,
    from_epoch,
    generate_uuid,
    is_completion_name,
    now_utc,
    to_epoch,
    transition_on_failure,
)
from .errors import SchemaError
from .store import SCHEMA_VERSION, JobStore


logger = logging.getLogger(__name__)


def _state_list(states: Sequence[JobState]) -> str:
    return "(" + ", ".join(f"'{state.value}'" for state in states) + ")"


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


CLAIMABLE = _state_list(JobState.below(JobState.ACTIVE))
UNFINISHED = _state_list(JobState.below(JobState.COMPLETE))
NOT_EXPIRED = _state_list(JobState.below(JobState.EXPIRED))

JOB_COLUMNS = (
    "id, name, priority, data, state, retry_limit, retry_count, start_after, "
    "started_on, expire_in, singleton_key, singleton_on, created_on, completed_on"
)


class SqliteJobStore(JobStore):
    """
    SQLite-based persistence for jobs and the archive.

    - Does NOT contain publish/subscribe policy
    - Does NOT validate beyond schema constraints
    - Each operation is its own transaction
    """

    def __init__(
        self,
        db_path: str | Path,
        clock: Optional[Callable[[], datetime]] = None,
        busy_timeout: float = 5.0,
    ):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file. ":memory:" keeps one shared connection.
            clock: Returns the current aware UTC time; injectable for tests
            busy_timeout: Seconds to wait for the write lock before failing
        """
        self.db_path = str(db_path)
        self._clock = clock or now_utc
        self._busy_timeout = busy_timeout
        self._lock = threading.RLock()
        self._shared_conn: Optional[sqlite3.Connection] = None
        if self.db_path == ":memory:":
            self._shared_conn = self._get_connection()

    def now(self) -> datetime:
        return self._clock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get an autocommit connection with WAL mode enabled."""
        conn = sqlite3.connect(
            self.db_path,
            timeout=self._busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections."""
        if self._shared_conn is not None:
            with self._lock:
                yield self._shared_conn
            return

        conn = self._get_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction holding the database write lock from the start."""
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def close(self) -> None:
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None

    # =========================================================================
    # Schema
    # =========================================================================

    def ensure_schema(self) -> None:
        """Create tables and indexes."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version TEXT PRIMARY KEY
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 0,
                    data TEXT,
                    state TEXT NOT NULL DEFAULT 'created',
                    retry_limit INTEGER NOT NULL DEFAULT 0,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    start_after REAL NOT NULL,
                    started_on REAL,
                    expire_in REAL NOT NULL,
                    singleton_key TEXT,
                    singleton_on REAL,
                    created_on REAL NOT NULL,
                    completed_on REAL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS archive (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    priority INTEGER NOT NULL,
                    data TEXT,
                    state TEXT NOT NULL,
                    retry_limit INTEGER NOT NULL,
                    retry_count INTEGER NOT NULL,
                    start_after REAL NOT NULL,
                    started_on REAL,
                    expire_in REAL NOT NULL,
                    singleton_key TEXT,
                    singleton_on REAL,
                    created_on REAL NOT NULL,
                    completed_on REAL,
                    archived_on REAL NOT NULL
                )
            """)

            conn.execute(f"""
                CREATE INDEX IF NOT EXISTS job_name
                ON jobs (name) WHERE state IN {CLAIMABLE}
            """)

            # Index for claim ordering
            conn.execute(f"""
                CREATE INDEX IF NOT EXISTS job_fetch
                ON jobs (name, priority DESC, created_on, id) WHERE state IN {CLAIMABLE}
            """)

            # Only one queued or active job per key
            conn.execute(f"""
                CREATE UNIQUE INDEX IF NOT EXISTS job_singleton_key
                ON jobs (name, singleton_key)
                WHERE state IN {UNFINISHED} AND singleton_on IS NULL
            """)

            # Only one job per time bucket, queued, active or completed
            conn.execute(f"""
                CREATE UNIQUE INDEX IF NOT EXISTS job_singleton_on
                ON jobs (name, singleton_on)
                WHERE state IN {NOT_EXPIRED} AND singleton_key IS NULL
            """)

            # Only one job per time bucket and key
            conn.execute(f"""
                CREATE UNIQUE INDEX IF NOT EXISTS job_singleton_key_on
                ON jobs (name, singleton_on, singleton_key)
                WHERE state IN {NOT_EXPIRED}
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS archive_archived_on
                ON archive (archived_on)
            """)

            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?) ON CONFLICT DO NOTHING",
                (SCHEMA_VERSION,),
            )

    def verify_schema(self) -> None:
        with self._connection() as conn:
            tables = {
                row["name"]
                for row in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type = 'table'"
                ).fetchall()
            }
            missing = {"schema_version", "jobs", "archive"} - tables
            if missing:
                raise SchemaError(
                    f"Job queue tables missing in {self.db_path}: {', '.join(sorted(missing))}"
                )

            row = conn.execute("SELECT version FROM schema_version").fetchone()

        found = row["version"] if row is not None else None
        if found != SCHEMA_VERSION:
            raise SchemaError(
                f"Job queue schema version {found!r} does not match expected {SCHEMA_VERSION!r}",
                found_version=found,
            )

    # =========================================================================
    # Row Conversion
    # =========================================================================

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        """Convert a database row to a Job entity."""
        return Job(
            id=row["id"],
            name=row["name"],
            priority=row["priority"],
            data=json.loads(row["data"]) if row["data"] is not None else None,
            state=JobState(row["state"]),
            retry_limit=row["retry_limit"],
            retry_count=row["retry_count"],
            start_after=from_epoch(row["start_after"]),
            started_on=from_epoch(row["started_on"]),
            expire_in=timedelta(seconds=row["expire_in"]),
            singleton_key=row["singleton_key"],
            singleton_on=from_epoch(row["singleton_on"]),
            created_on=from_epoch(row["created_on"]),
            completed_on=from_epoch(row["completed_on"]),
            archived_on=from_epoch(row["archived_on"]) if "archived_on" in row.keys() else None,
        )

    def _insert_completion(
        self,
        conn: sqlite3.Connection,
        row: sqlite3.Row,
        response: Any,
        state: JobState,
        now: float,
    ) -> None:
        """Insert the completion record for ``row`` inside the caller's transaction."""
        if is_completion_name(row["name"]):
            return

        data = completion_data(
            row["id"],
            row["name"],
            json.loads(row["data"]) if row["data"] is not None else None,
            response,
            state,
        )
        conn.execute(
            """
            INSERT INTO jobs
            (id, name, priority, data, state, retry_limit, retry_count,
             start_after, expire_in, created_on)
            VALUES (?, ?, 0, ?, ?, 0, 0, ?, ?, ?)
            """,
            (
                generate_uuid(),
                completion_name(row["name"]),
                json.dumps(data),
                JobState.CREATED.value,
                now,
                DEFAULT_EXPIRE_IN.total_seconds(),
                now,
            ),
        )

    # =========================================================================
    # Job Operations
    # =========================================================================

    def insert_job(self, job: NewJob) -> bool:
        now = to_epoch(self.now())
        start_after = to_epoch(job.start_after) if job.start_after is not None else now

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO jobs
                (id, name, priority, data, state, retry_limit, retry_count,
                 start_after, expire_in, singleton_key, singleton_on, created_on)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)
                ON CONFLICT DO NOTHING
                """,
                (
                    job.id,
                    job.name,
                    job.priority,
                    json.dumps(job.data) if job.data is not None else None,
                    JobState.CREATED.value,
                    job.retry_limit,
                    start_after,
                    job.expire_in.total_seconds(),
                    job.singleton_key,
                    to_epoch(job.singleton_on),
                    now,
                ),
            )
            return cursor.rowcount == 1

    def claim(self, names: Sequence[str], batch_size: int) -> list[Job]:
        """
        Atomically transition up to batch_size eligible jobs to ACTIVE.

        The SELECT and UPDATE share one BEGIN IMMEDIATE transaction, so a
        concurrent claimer waits for the write lock and then sees the rows
        as ACTIVE.
        """
        if not names or batch_size < 1:
            return []

        now = to_epoch(self.now())

        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT id FROM jobs
                WHERE state IN {CLAIMABLE}
                  AND name IN ({_placeholders(len(names))})
                  AND start_after <= ?
                ORDER BY priority DESC, created_on ASC, id ASC
                LIMIT ?
                """,
                (*names, now, batch_size),
            ).fetchall()

            ids = [row["id"] for row in rows]
            if not ids:
                return []

            conn.execute(
                f"""
                UPDATE jobs
                SET state = ?,
                    started_on = ?,
                    retry_count = CASE WHEN state = ? THEN retry_count + 1 ELSE retry_count END
                WHERE id IN ({_placeholders(len(ids))})
                """,
                (JobState.ACTIVE.value, now, JobState.RETRY.value, *ids),
            )

            claimed = conn.execute(
                f"SELECT {JOB_COLUMNS} FROM jobs WHERE id IN ({_placeholders(len(ids))})",
                ids,
            ).fetchall()

        by_id = {row["id"]: self._row_to_job(row) for row in claimed}
        return [by_id[job_id] for job_id in ids]

    def complete(self, ids: Sequence[str], response: Any) -> int:
        now = to_epoch(self.now())

        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT {JOB_COLUMNS} FROM jobs
                WHERE id IN ({_placeholders(len(ids))}) AND state = ?
                """,
                (*ids, JobState.ACTIVE.value),
            ).fetchall()

            for row in rows:
                conn.execute(
                    "UPDATE jobs SET state = ?, completed_on = ? WHERE id = ?",
                    (JobState.COMPLETE.value, now, row["id"]),
                )
                self._insert_completion(conn, row, response, JobState.COMPLETE, now)

        return len(rows)

    def fail(self, ids: Sequence[str], response: Any) -> int:
        now = to_epoch(self.now())

        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT {JOB_COLUMNS} FROM jobs
                WHERE id IN ({_placeholders(len(ids))}) AND state IN {UNFINISHED}
                """,
                ids,
            ).fetchall()

            for row in rows:
                state = transition_on_failure(row["retry_count"], row["retry_limit"], JobState.FAILED)
                conn.execute(
                    "UPDATE jobs SET state = ?, completed_on = ? WHERE id = ?",
                    (state.value, now if state == JobState.FAILED else None, row["id"]),
                )
                if state == JobState.FAILED:
                    self._insert_completion(conn, row, response, state, now)

        return len(rows)

    def cancel(self, ids: Sequence[str]) -> int:
        now = to_epoch(self.now())

        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE jobs
                SET state = ?, completed_on = ?
                WHERE id IN ({_placeholders(len(ids))}) AND state IN {UNFINISHED}
                """,
                (JobState.CANCELLED.value, now, *ids),
            )
            return cursor.rowcount

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?",
                (job_id,),
            ).fetchone()

        if row is None:
            return None

        return self._row_to_job(row)

    def delete_queue(self, name: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                f"DELETE FROM jobs WHERE name = ? AND state IN {CLAIMABLE}",
                (name,),
            )
            return cursor.rowcount

    def delete_all_queues(self) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(f"DELETE FROM jobs WHERE state IN {CLAIMABLE}")
            return cursor.rowcount

    def count_states(self) -> list[tuple[str, str, int]]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT name, state, COUNT(*) AS size
                FROM jobs
                WHERE instr(name, ?) = 0
                GROUP BY name, state
                """,
                (STATE_JOB_DELIMITER,),
            ).fetchall()

        return [(row["name"], row["state"], row["size"]) for row in rows]

    # =========================================================================
    # Maintenance
    # =========================================================================

    def expire(self) -> int:
        now = to_epoch(self.now())

        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT {JOB_COLUMNS} FROM jobs
                WHERE state = ? AND started_on + expire_in < ?
                """,
                (JobState.ACTIVE.value, now),
            ).fetchall()

            for row in rows:
                state = transition_on_failure(row["retry_count"], row["retry_limit"], JobState.EXPIRED)
                conn.execute(
                    "UPDATE jobs SET state = ?, completed_on = ? WHERE id = ?",
                    (state.value, now if state == JobState.EXPIRED else None, row["id"]),
                )
                if state == JobState.EXPIRED:
                    self._insert_completion(conn, row, None, state, now)

        return len(rows)

    def archive(self, completed_after: timedelta) -> int:
        now = to_epoch(self.now())
        cutoff = now - completed_after.total_seconds()
        where = """
            completed_on < ?
            OR (state = ? AND instr(name, ?) > 0 AND created_on < ?)
        """
        params = (cutoff, JobState.CREATED.value, STATE_JOB_DELIMITER, cutoff)

        with self._transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO archive ({JOB_COLUMNS}, archived_on)
                SELECT {JOB_COLUMNS}, ? FROM jobs WHERE {where}
                """,
                (now, *params),
            )
            cursor = conn.execute(f"DELETE FROM jobs WHERE {where}", params)
            return cursor.rowcount

    def purge(self, archived_after: timedelta) -> int:
        cutoff = to_epoch(self.now()) - archived_after.total_seconds()

        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM archive WHERE archived_on < ?",
                (cutoff,),
            )
            return cursor.rowcount

    def get_archived_job(self, job_id: str) -> Optional[Job]:
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT {JOB_COLUMNS}, archived_on FROM archive WHERE id = ?",
                (job_id,),
            ).fetchone()

        if row is None:
            return None

        return self._row_to_job(row)
