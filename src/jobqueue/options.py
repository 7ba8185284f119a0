"""
Option structures for publish and subscribe.

One explicit model per operation, validated before use. Dicts are accepted
and validated into the model; anything else is rejected.
"""

from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .entities import DEFAULT_EXPIRE_IN
from .errors import ValidationError


# Seconds per singleton window unit, checked in this order
SINGLETON_UNITS = (
    ("singleton_seconds", 1),
    ("singleton_minutes", 60),
    ("singleton_hours", 60 * 60),
    ("singleton_days", 60 * 60 * 24),
)


def _seconds_to_timedelta(value: Any, field_name: str) -> Any:
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be a number of seconds, timedelta or datetime")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"{field_name} cannot be negative")
        return timedelta(seconds=value)
    return value


class PublishOptions(BaseModel):
    """Options accepted by publish."""

    model_config = ConfigDict(extra="forbid")

    priority: int = Field(default=0, description="Higher values are claimed first")
    start_after: Optional[Union[datetime, timedelta]] = Field(
        default=None,
        description="Delay in seconds, timedelta, absolute datetime or ISO-8601 string",
    )
    retry_limit: int = Field(default=0, ge=0, description="Automatic retries after failure or expiration")
    expire_in: timedelta = Field(default=DEFAULT_EXPIRE_IN, description="Active jobs older than this are expired")
    singleton_key: Optional[str] = Field(default=None, min_length=1)
    singleton_seconds: Optional[int] = Field(default=None, ge=0)
    singleton_minutes: Optional[int] = Field(default=None, ge=0)
    singleton_hours: Optional[int] = Field(default=None, ge=0)
    singleton_days: Optional[int] = Field(default=None, ge=0)
    singleton_offset: int = Field(default=0, ge=0)
    singleton_next_slot: bool = Field(default=False, description="Debounce into the next window instead of dropping")

    @field_validator("start_after", mode="before")
    @classmethod
    def _parse_start_after(cls, value: Any) -> Any:
        if isinstance(value, str):
            text = value.strip()
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            try:
                return datetime.fromisoformat(text)
            except ValueError:
                raise ValueError(f"start_after is not an ISO-8601 timestamp: {value!r}")
        return _seconds_to_timedelta(value, "start_after")

    @field_validator("start_after")
    @classmethod
    def _check_start_after(cls, value: Any) -> Any:
        if isinstance(value, timedelta) and value < timedelta(0):
            raise ValueError("start_after cannot be negative")
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_validator("expire_in", mode="before")
    @classmethod
    def _parse_expire_in(cls, value: Any) -> Any:
        return _seconds_to_timedelta(value, "expire_in")

    @field_validator("expire_in")
    @classmethod
    def _check_expire_in(cls, value: timedelta) -> timedelta:
        if value <= timedelta(0):
            raise ValueError("expire_in must be positive")
        return value

    def singleton_window(self) -> Optional[int]:
        """Window width in seconds, or None when no time-bucket de-duplication is requested."""
        for field_name, unit in SINGLETON_UNITS:
            value = getattr(self, field_name)
            if value is not None and value > 0:
                return value * unit
        return None

    def resolve_start_after(self, now: datetime) -> datetime:
        """Absolute instant the job becomes claimable."""
        if self.start_after is None:
            return now
        if isinstance(self.start_after, timedelta):
            return now + self.start_after
        return self.start_after


class SubscribeOptions(BaseModel):
    """Options accepted by subscribe and on_complete."""

    model_config = ConfigDict(extra="forbid")

    team_size: int = Field(default=1, ge=1, description="Concurrent single-job handlers")
    batch_size: Optional[int] = Field(default=None, ge=1, description="Deliver this many jobs per handler call")
    interval_seconds: Optional[float] = Field(default=None, gt=0, description="Polling interval; None uses the service default")


OptionsT = TypeVar("OptionsT", bound=BaseModel)


def coerce_options(model: type[OptionsT], value: Any) -> OptionsT:
    """
    Validate ``value`` into ``model``.

    Raises:
        ValidationError: If value is not None, a model instance or a mapping,
            or if any field fails validation
    """
    if value is None:
        return model()
    if isinstance(value, model):
        return value
    if not isinstance(value, Mapping):
        raise ValidationError(f"expected {model.__name__} or a mapping, got {type(value).__name__}")
    try:
        return model.model_validate(dict(value))
    except PydanticValidationError as e:
        raise ValidationError(f"invalid {model.__name__}: {e}") from e
