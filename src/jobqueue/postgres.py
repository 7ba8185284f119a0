"""
PostgreSQL store for the job queue.

Claims use a CTE with FOR UPDATE SKIP LOCKED so concurrent workers never
wait on each other's rows; state transitions and their completion records
are written by a single statement with data-modifying CTEs.

Requires psycopg 3 (``pip install "psycopg[binary]"``).
"""

import logging
import re
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator, Optional, Sequence

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from .entities import (
    COMPLETED_JOB_SUFFIX,
    DEFAULT_EXPIRE_IN,
    STATE_JOB_DELIMITER,
    Job,
    JobState,
    NewJob,
)
from .errors import SchemaError, ValidationError
from .store import SCHEMA_VERSION, JobStore


logger = logging.getLogger(__name__)

_SCHEMA_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _valid_ids(ids: Sequence[str]) -> list[str]:
    # Malformed ids cannot match a uuid column; drop them instead of failing the batch
    valid = []
    for job_id in ids:
        try:
            valid.append(str(uuid.UUID(str(job_id))))
        except ValueError:
            continue
    return valid


class PostgresJobStore(JobStore):
    """
    psycopg-based persistence for jobs and the archive.

    One connection per operation; the connection context commits on
    success and rolls back on error.
    """

    def __init__(self, dsn: str, schema: str = "jobqueue"):
        if not _SCHEMA_NAME.match(schema):
            raise ValidationError(f"invalid schema name: {schema!r}")
        self.dsn = dsn
        self.schema = schema

    @contextmanager
    def _connection(self) -> Iterator[psycopg.Connection]:
        with psycopg.connect(self.dsn, row_factory=dict_row) as conn:
            yield conn

    def now(self) -> datetime:
        with self._connection() as conn:
            row = conn.execute("SELECT now() AS now").fetchone()
        return row["now"]

    # =========================================================================
    # Schema
    # =========================================================================

    def _create_statements(self) -> list[str]:
        s = self.schema
        states = ", ".join(f"'{state.value}'" for state in JobState)
        return [
            f"CREATE SCHEMA IF NOT EXISTS {s}",
            "CREATE EXTENSION IF NOT EXISTS pgcrypto",
            f"CREATE TABLE IF NOT EXISTS {s}.version (version text primary key)",
            # Enum order defines state comparison
            f"CREATE TYPE {s}.job_state AS ENUM ({states})",
            f"""
            CREATE TABLE IF NOT EXISTS {s}.job (
                id uuid primary key not null default gen_random_uuid(),
                name text not null,
                priority integer not null default(0),
                data jsonb,
                state {s}.job_state not null default('{JobState.CREATED.value}'),
                retry_limit integer not null default(0),
                retry_count integer not null default(0),
                start_after timestamp with time zone not null default now(),
                started_on timestamp with time zone,
                singleton_key text,
                singleton_on timestamp without time zone,
                expire_in interval not null default(interval '{int(DEFAULT_EXPIRE_IN.total_seconds())} seconds'),
                created_on timestamp with time zone not null default now(),
                completed_on timestamp with time zone
            )
            """,
            f"CREATE TABLE IF NOT EXISTS {s}.archive (LIKE {s}.job)",
            f"ALTER TABLE {s}.archive ADD archived_on timestamptz NOT NULL DEFAULT now()",
            f"""
            CREATE INDEX job_name ON {s}.job (name)
            WHERE state < '{JobState.ACTIVE.value}'
            """,
            f"""
            CREATE INDEX job_fetch ON {s}.job (name, priority desc, created_on, id)
            WHERE state < '{JobState.ACTIVE.value}'
            """,
            # Only one job per time bucket, queued, active or completed
            f"""
            CREATE UNIQUE INDEX job_singleton_on ON {s}.job (name, singleton_on)
            WHERE state < '{JobState.EXPIRED.value}' AND singleton_key IS NULL
            """,
            # Only one job per time bucket and key
            f"""
            CREATE UNIQUE INDEX job_singleton_key_on ON {s}.job (name, singleton_on, singleton_key)
            WHERE state < '{JobState.EXPIRED.value}'
            """,
            # Only one queued or active job per key
            f"""
            CREATE UNIQUE INDEX job_singleton_key ON {s}.job (name, singleton_key)
            WHERE state < '{JobState.COMPLETE.value}' AND singleton_on IS NULL
            """,
            f"CREATE INDEX archive_archived_on ON {s}.archive (archived_on)",
        ]

    def _version_table_exists(self, conn: psycopg.Connection) -> bool:
        row = conn.execute(
            "SELECT to_regclass(%s) AS name",
            (f"{self.schema}.version",),
        ).fetchone()
        return row["name"] is not None

    def ensure_schema(self) -> None:
        with self._connection() as conn:
            if self._version_table_exists(conn):
                exists = True
            else:
                exists = False
                for statement in self._create_statements():
                    conn.execute(statement)
                conn.execute(
                    f"INSERT INTO {self.schema}.version (version) VALUES (%s)",
                    (SCHEMA_VERSION,),
                )
                logger.info(f"Created job queue schema '{self.schema}' at version {SCHEMA_VERSION}")

        if exists:
            self.verify_schema()

    def verify_schema(self) -> None:
        with self._connection() as conn:
            if not self._version_table_exists(conn):
                raise SchemaError(f"Job queue schema '{self.schema}' not found in database")
            row = conn.execute(f"SELECT version FROM {self.schema}.version").fetchone()

        found = row["version"] if row is not None else None
        if found != SCHEMA_VERSION:
            raise SchemaError(
                f"Job queue schema version {found!r} does not match expected {SCHEMA_VERSION!r}",
                found_version=found,
            )

    # =========================================================================
    # Row Conversion
    # =========================================================================

    def _row_to_job(self, row: dict) -> Job:
        singleton_on = row["singleton_on"]
        if singleton_on is not None:
            singleton_on = singleton_on.replace(tzinfo=timezone.utc)

        return Job(
            id=str(row["id"]),
            name=row["name"],
            priority=row["priority"],
            data=row["data"],
            state=JobState(row["state"]),
            retry_limit=row["retry_limit"],
            retry_count=row["retry_count"],
            start_after=row["start_after"],
            started_on=row["started_on"],
            expire_in=row["expire_in"],
            singleton_key=row["singleton_key"],
            singleton_on=singleton_on,
            created_on=row["created_on"],
            completed_on=row["completed_on"],
            archived_on=row.get("archived_on"),
        )

    def _completion_insert(self, where: str) -> str:
        """CTE inserting completion records for the ``results`` rows matching ``where``."""
        return f"""
            completions AS (
                INSERT INTO {self.schema}.job (name, data)
                SELECT
                    name || %(suffix)s,
                    jsonb_build_object(
                        'request', jsonb_build_object('id', id, 'name', name, 'data', data),
                        'response', %(response)s::jsonb,
                        'state', state
                    )
                FROM results
                WHERE {where}
                  AND right(name, char_length(%(suffix)s)) <> %(suffix)s
            )
        """

    # =========================================================================
    # Job Operations
    # =========================================================================

    def insert_job(self, job: NewJob) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                f"""
                INSERT INTO {self.schema}.job
                (id, name, priority, state, retry_limit, start_after, expire_in,
                 data, singleton_key, singleton_on)
                VALUES (%s, %s, %s, %s, %s, COALESCE(%s::timestamptz, now()), %s, %s, %s, %s)
                ON CONFLICT DO NOTHING
                """,
                (
                    job.id,
                    job.name,
                    job.priority,
                    JobState.CREATED.value,
                    job.retry_limit,
                    job.start_after,
                    job.expire_in,
                    Jsonb(job.data) if job.data is not None else None,
                    job.singleton_key,
                    _naive_utc(job.singleton_on),
                ),
            )
            return cursor.rowcount == 1

    def claim(self, names: Sequence[str], batch_size: int) -> list[Job]:
        if not names or batch_size < 1:
            return []

        s = self.schema
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                WITH next_job AS (
                    SELECT id
                    FROM {s}.job
                    WHERE state < '{JobState.ACTIVE.value}'
                      AND name = ANY(%s)
                      AND start_after <= now()
                    ORDER BY priority DESC, created_on, id
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE {s}.job j SET
                    state = '{JobState.ACTIVE.value}',
                    started_on = now(),
                    retry_count = CASE WHEN j.state = '{JobState.RETRY.value}'
                                       THEN j.retry_count + 1 ELSE j.retry_count END
                FROM next_job
                WHERE j.id = next_job.id
                RETURNING j.*
                """,
                (list(names), batch_size),
            ).fetchall()

        jobs = [self._row_to_job(row) for row in rows]
        # RETURNING order is unspecified
        jobs.sort(key=lambda job: (-job.priority, job.created_on, job.id))
        return jobs

    def complete(self, ids: Sequence[str], response: Any) -> int:
        ids = _valid_ids(ids)
        if not ids:
            return 0

        s = self.schema
        with self._connection() as conn:
            row = conn.execute(
                f"""
                WITH results AS (
                    UPDATE {s}.job
                    SET completed_on = now(),
                        state = '{JobState.COMPLETE.value}'
                    WHERE id = ANY(%(ids)s::uuid[])
                      AND state = '{JobState.ACTIVE.value}'
                    RETURNING *
                ),
                {self._completion_insert("true")}
                SELECT count(*) AS updated FROM results
                """,
                {"ids": ids, "suffix": COMPLETED_JOB_SUFFIX, "response": Jsonb(response)},
            ).fetchone()
        return row["updated"]

    def fail(self, ids: Sequence[str], response: Any) -> int:
        ids = _valid_ids(ids)
        if not ids:
            return 0

        s = self.schema
        with self._connection() as conn:
            row = conn.execute(
                f"""
                WITH results AS (
                    UPDATE {s}.job
                    SET state = CASE WHEN retry_count < retry_limit
                                     THEN '{JobState.RETRY.value}'::{s}.job_state
                                     ELSE '{JobState.FAILED.value}'::{s}.job_state END,
                        completed_on = CASE WHEN retry_count < retry_limit THEN NULL ELSE now() END
                    WHERE id = ANY(%(ids)s::uuid[])
                      AND state < '{JobState.COMPLETE.value}'
                    RETURNING *
                ),
                {self._completion_insert(f"state = '{JobState.FAILED.value}'")}
                SELECT count(*) AS updated FROM results
                """,
                {"ids": ids, "suffix": COMPLETED_JOB_SUFFIX, "response": Jsonb(response)},
            ).fetchone()
        return row["updated"]

    def cancel(self, ids: Sequence[str]) -> int:
        ids = _valid_ids(ids)
        if not ids:
            return 0

        with self._connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE {self.schema}.job
                SET completed_on = now(),
                    state = '{JobState.CANCELLED.value}'
                WHERE id = ANY(%s::uuid[])
                  AND state < '{JobState.COMPLETE.value}'
                """,
                (ids,),
            )
            return cursor.rowcount

    def get_job(self, job_id: str) -> Optional[Job]:
        ids = _valid_ids([job_id])
        if not ids:
            return None

        with self._connection() as conn:
            row = conn.execute(
                f"SELECT * FROM {self.schema}.job WHERE id = %s::uuid",
                (ids[0],),
            ).fetchone()

        if row is None:
            return None

        return self._row_to_job(row)

    def delete_queue(self, name: str) -> int:
        with self._connection() as conn:
            cursor = conn.execute(
                f"""
                DELETE FROM {self.schema}.job
                WHERE name = %s AND state < '{JobState.ACTIVE.value}'
                """,
                (name,),
            )
            return cursor.rowcount

    def delete_all_queues(self) -> int:
        with self._connection() as conn:
            cursor = conn.execute(
                f"DELETE FROM {self.schema}.job WHERE state < '{JobState.ACTIVE.value}'"
            )
            return cursor.rowcount

    def count_states(self) -> list[tuple[str, str, int]]:
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT name, state::text AS state, count(*) AS size
                FROM {self.schema}.job
                WHERE position(%s in name) = 0
                GROUP BY name, state
                """,
                (STATE_JOB_DELIMITER,),
            ).fetchall()

        return [(row["name"], row["state"], row["size"]) for row in rows]

    # =========================================================================
    # Maintenance
    # =========================================================================

    def expire(self) -> int:
        s = self.schema
        with self._connection() as conn:
            row = conn.execute(
                f"""
                WITH results AS (
                    UPDATE {s}.job
                    SET state = CASE WHEN retry_count < retry_limit
                                     THEN '{JobState.RETRY.value}'::{s}.job_state
                                     ELSE '{JobState.EXPIRED.value}'::{s}.job_state END,
                        completed_on = CASE WHEN retry_count < retry_limit THEN NULL ELSE now() END
                    WHERE state = '{JobState.ACTIVE.value}'
                      AND (started_on + expire_in) < now()
                    RETURNING *
                ),
                {self._completion_insert(f"state = '{JobState.EXPIRED.value}'")}
                SELECT count(*) AS updated FROM results
                """,
                {"suffix": COMPLETED_JOB_SUFFIX, "response": None},
            ).fetchone()
        return row["updated"]

    def archive(self, completed_after: timedelta) -> int:
        s = self.schema
        with self._connection() as conn:
            cursor = conn.execute(
                f"""
                WITH archived_rows AS (
                    DELETE FROM {s}.job
                    WHERE (completed_on + %(after)s) < now()
                       OR (
                           state = '{JobState.CREATED.value}'
                           AND position(%(delimiter)s in name) > 0
                           AND (created_on + %(after)s) < now()
                       )
                    RETURNING *
                )
                INSERT INTO {s}.archive
                SELECT * FROM archived_rows
                """,
                {"after": completed_after, "delimiter": STATE_JOB_DELIMITER},
            )
            return cursor.rowcount

    def purge(self, archived_after: timedelta) -> int:
        with self._connection() as conn:
            cursor = conn.execute(
                f"DELETE FROM {self.schema}.archive WHERE (archived_on + %s) < now()",
                (archived_after,),
            )
            return cursor.rowcount

    def get_archived_job(self, job_id: str) -> Optional[Job]:
        ids = _valid_ids([job_id])
        if not ids:
            return None

        with self._connection() as conn:
            row = conn.execute(
                f"SELECT * FROM {self.schema}.archive WHERE id = %s::uuid",
                (ids[0],),
            ).fetchone()

        if row is None:
            return None

        return self._row_to_job(row)
