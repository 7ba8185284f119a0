"""
Singleton / throttle / debounce slot resolution.

A time-bucketed publish is keyed by ``singleton_on``, the start of the
window of width S that contains ``now + offset``. The store's unique
indexes turn a second publish into the same bucket into a no-op.

Debounce ("next slot") is a bounded plan of two attempts: the current
bucket, then the next one with the job delayed by S. Every attempt is
computed from the same ``now`` so the plan is deterministic.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .entities import EPOCH
from .options import PublishOptions


def slot_for(now: datetime, seconds: int, offset: int = 0) -> datetime:
    """
    Start of the singleton window containing ``now + offset``.

    Args:
        now: Aware UTC instant
        seconds: Window width S (> 0)
        offset: Seconds added to ``now`` before bucketing

    Returns:
        EPOCH + S * floor((now_epoch + offset) / S)
    """
    if seconds <= 0:
        raise ValueError("singleton window must be positive")
    now_epoch = (now - EPOCH).total_seconds()
    bucket = math.floor((now_epoch + offset) / seconds)
    return EPOCH + timedelta(seconds=seconds * bucket)


@dataclass(frozen=True)
class SlotAttempt:
    """One insert attempt: the bucket to claim and when the job becomes claimable."""

    singleton_on: Optional[datetime]
    start_after: datetime


class SingletonResolver:
    """Builds the ordered list of insert attempts for a publish."""

    def plan(self, options: PublishOptions, now: datetime) -> list[SlotAttempt]:
        """
        Attempts to try in order; the first accepted insert wins.

        - No window: a single attempt with no bucket
        - Throttle: a single attempt in the current bucket
        - Debounce: current bucket, then the next bucket delayed by S
        """
        start_after = options.resolve_start_after(now)
        window = options.singleton_window()

        if window is None:
            return [SlotAttempt(singleton_on=None, start_after=start_after)]

        attempts = [
            SlotAttempt(
                singleton_on=slot_for(now, window, options.singleton_offset),
                start_after=start_after,
            )
        ]

        if options.singleton_next_slot:
            attempts.append(
                SlotAttempt(
                    singleton_on=slot_for(now, window, window),
                    start_after=now + timedelta(seconds=window),
                )
            )

        return attempts
