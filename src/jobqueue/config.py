"""
Configuration for the job queue.

Values come from JOBQUEUE_* environment variables (a .env file is loaded
by the CLI). Intervals and retention ages are in seconds.
"""

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional

from .errors import ValidationError


# Exit codes
EXIT_SUCCESS = 0
EXIT_INVALID_INPUT = 1
EXIT_SCHEMA_ERROR = 2
EXIT_PUBLISH_REJECTED = 3

ENV_PREFIX = "JOBQUEUE_"

DEFAULT_DATABASE_URL = "sqlite:///jobqueue.db"
DEFAULT_SCHEMA = "jobqueue"

SQLITE_PREFIX = "sqlite:///"
POSTGRES_PREFIXES = ("postgresql://", "postgres://")

UUID_VERSIONS = ("v1", "v4")


def _parse_float(env: Mapping[str, str], key: str, default: Optional[float]) -> Optional[float]:
    raw = env.get(ENV_PREFIX + key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValidationError(f"{ENV_PREFIX + key} must be a number, got {raw!r}")
    if value <= 0:
        raise ValidationError(f"{ENV_PREFIX + key} must be positive, got {raw!r}")
    return value


def _parse_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(ENV_PREFIX + key)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValidationError(f"{ENV_PREFIX + key} must be true or false, got {raw!r}")


@dataclass
class QueueConfig:
    """Settings for QueueService."""

    database_url: str = DEFAULT_DATABASE_URL
    schema: str = DEFAULT_SCHEMA
    new_job_check_interval_seconds: float = 1.0
    expire_check_interval_seconds: float = 60
    archive_check_interval_seconds: float = 60
    purge_check_interval_seconds: float = 3600
    archive_completed_after_seconds: float = 3600
    delete_archived_after_seconds: float = 7 * 24 * 3600
    monitor_state_interval_seconds: Optional[float] = None
    uuid_version: str = "v4"
    auto_create_schema: bool = True

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """
        Raises:
            ValidationError: If any setting is out of range
        """
        if self.backend not in ("sqlite", "postgres"):
            raise ValidationError(
                f"database_url must start with {SQLITE_PREFIX!r} or "
                f"{POSTGRES_PREFIXES[0]!r}, got {self.database_url!r}"
            )
        if self.uuid_version not in UUID_VERSIONS:
            raise ValidationError(f"uuid_version must be one of {UUID_VERSIONS}, got {self.uuid_version!r}")

        for field_name in (
            "new_job_check_interval_seconds",
            "expire_check_interval_seconds",
            "archive_check_interval_seconds",
            "purge_check_interval_seconds",
            "archive_completed_after_seconds",
            "delete_archived_after_seconds",
        ):
            if getattr(self, field_name) <= 0:
                raise ValidationError(f"{field_name} must be positive")

        if self.monitor_state_interval_seconds is not None and self.monitor_state_interval_seconds <= 0:
            raise ValidationError("monitor_state_interval_seconds must be positive")

    @property
    def backend(self) -> str:
        if self.database_url.startswith(SQLITE_PREFIX):
            return "sqlite"
        if self.database_url.startswith(POSTGRES_PREFIXES):
            return "postgres"
        return "unknown"

    @property
    def sqlite_path(self) -> str:
        """Database file path for sqlite URLs (":memory:" for an in-memory store)."""
        return self.database_url[len(SQLITE_PREFIX):]

    @property
    def archive_completed_after(self) -> timedelta:
        return timedelta(seconds=self.archive_completed_after_seconds)

    @property
    def delete_archived_after(self) -> timedelta:
        return timedelta(seconds=self.delete_archived_after_seconds)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "QueueConfig":
        """
        Build a config from JOBQUEUE_* variables.

        Args:
            environ: Mapping to read instead of os.environ

        Raises:
            ValidationError: On unparsable or out-of-range values
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        return cls(
            database_url=env.get(ENV_PREFIX + "DATABASE_URL") or defaults.database_url,
            schema=env.get(ENV_PREFIX + "SCHEMA") or defaults.schema,
            new_job_check_interval_seconds=_parse_float(
                env, "NEW_JOB_CHECK_INTERVAL_SECONDS", defaults.new_job_check_interval_seconds
            ),
            expire_check_interval_seconds=_parse_float(
                env, "EXPIRE_CHECK_INTERVAL_SECONDS", defaults.expire_check_interval_seconds
            ),
            archive_check_interval_seconds=_parse_float(
                env, "ARCHIVE_CHECK_INTERVAL_SECONDS", defaults.archive_check_interval_seconds
            ),
            purge_check_interval_seconds=_parse_float(
                env, "PURGE_CHECK_INTERVAL_SECONDS", defaults.purge_check_interval_seconds
            ),
            archive_completed_after_seconds=_parse_float(
                env, "ARCHIVE_COMPLETED_AFTER_SECONDS", defaults.archive_completed_after_seconds
            ),
            delete_archived_after_seconds=_parse_float(
                env, "DELETE_ARCHIVED_AFTER_SECONDS", defaults.delete_archived_after_seconds
            ),
            monitor_state_interval_seconds=_parse_float(env, "MONITOR_STATE_INTERVAL_SECONDS", None),
            uuid_version=(env.get(ENV_PREFIX + "UUID_VERSION") or defaults.uuid_version).strip().lower(),
            auto_create_schema=_parse_bool(env, "AUTO_CREATE_SCHEMA", defaults.auto_create_schema),
        )
