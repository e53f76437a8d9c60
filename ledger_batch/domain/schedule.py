"""
Pure schedule evaluation functions.

Contract:
    ``compute_next_run()`` and ``backoff_delay()`` are PURE -- no I/O, no
    clock.  The scheduler passes ``now`` from its injected Clock.

Architecture: ledger_batch/domain.  ZERO I/O.

Rules:
    interval_seconds  next = now + N seconds.
    daily_at_utc      next = today at HH:MM UTC, or tomorrow when that
                      moment is not after ``now``.
    Failures back off 1, 5, 15, 60 minutes by attempt number, capped at
    the last tier.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from ledger_batch.domain.types import ScheduleType

DEFAULT_BACKOFF_MINUTES: tuple[int, ...] = (1, 5, 15, 60)
DEFAULT_MAX_ATTEMPTS = 5


def compute_next_run(
    schedule_type: ScheduleType | str,
    now: datetime,
    interval_seconds: int | None = None,
    daily_hour_utc: int | None = None,
    daily_minute_utc: int | None = None,
) -> datetime:
    """Next run time after ``now``.

    Naive ``now`` values are taken as UTC and the result stays naive;
    aware values are converted to UTC.

    Raises:
        ValueError: Missing parameters for the schedule type.
    """
    schedule_type = ScheduleType(schedule_type)

    if schedule_type == ScheduleType.INTERVAL_SECONDS:
        if not interval_seconds:
            raise ValueError("interval_seconds schedule requires interval_seconds")
        return now + timedelta(seconds=int(interval_seconds))

    if daily_hour_utc is None or daily_minute_utc is None:
        raise ValueError("daily_at_utc schedule requires daily_hour_utc and daily_minute_utc")

    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    candidate = now.replace(
        hour=int(daily_hour_utc),
        minute=int(daily_minute_utc),
        second=0,
        microsecond=0,
    )
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def backoff_delay(
    attempt_count: int,
    backoff_minutes: tuple[int, ...] = DEFAULT_BACKOFF_MINUTES,
) -> timedelta:
    """Delay before retry number ``attempt_count`` (1-based)."""
    if not backoff_minutes:
        raise ValueError("backoff_minutes must not be empty")
    index = min(max(attempt_count, 1) - 1, len(backoff_minutes) - 1)
    return timedelta(minutes=backoff_minutes[index])
