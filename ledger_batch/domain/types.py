"""
ledger_batch.domain.types -- Pure frozen dataclasses for the scheduler.

ZERO I/O.  Same shape as the service-tier DTO modules: frozen dataclasses
with str-enum status fields.

Invariants enforced:
    - All DTOs are frozen.
    - A TaskDefinition carries exactly the parameters its schedule type
      needs (checked in __post_init__).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Callable, Optional
from uuid import UUID


# =============================================================================
# Status enums
# =============================================================================


class ScheduleType(str, Enum):
    """How the next run time is computed."""

    INTERVAL_SECONDS = "interval_seconds"  # now + N seconds
    DAILY_AT_UTC = "daily_at_utc"  # next HH:MM UTC


class TaskRunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


# =============================================================================
# Handler contract
# =============================================================================


@dataclass(frozen=True)
class TaskResult:
    """Optional return value of a handler.  ``None`` means success."""

    skipped: bool = False
    message: str | None = None


@dataclass(frozen=True)
class TaskContext:
    """What a handler receives for one attempt."""

    task_code: str
    run_id: UUID
    now: datetime
    today: date
    owner: str
    attempt: int = 0


TaskHandler = Callable[[TaskContext], Optional[TaskResult]]


@dataclass(frozen=True)
class TaskDefinition:
    """A registered task: identity, schedule and handler."""

    code: str
    name: str
    schedule_type: ScheduleType
    handler: TaskHandler
    interval_seconds: int | None = None
    daily_hour_utc: int | None = None
    daily_minute_utc: int | None = None
    enabled: bool = True

    def __post_init__(self) -> None:
        schedule_type = ScheduleType(self.schedule_type)
        if schedule_type == ScheduleType.INTERVAL_SECONDS:
            if not self.interval_seconds or self.interval_seconds <= 0:
                raise ValueError(f"Task {self.code}: interval_seconds must be > 0")
        else:
            if self.daily_hour_utc is None or not 0 <= self.daily_hour_utc <= 23:
                raise ValueError(f"Task {self.code}: daily_hour_utc must be 0-23")
            if self.daily_minute_utc is None or not 0 <= self.daily_minute_utc <= 59:
                raise ValueError(f"Task {self.code}: daily_minute_utc must be 0-59")


# =============================================================================
# Persisted state snapshots
# =============================================================================


@dataclass(frozen=True)
class ScheduledTaskInfo:
    code: str
    name: str
    schedule_type: ScheduleType
    interval_seconds: int | None
    daily_hour_utc: int | None
    daily_minute_utc: int | None
    is_enabled: bool
    next_run_at: datetime | None
    last_run_at: datetime | None
    attempt_count: int
    max_attempts: int
    locked_at: datetime | None = None
    locked_by: str | None = None


@dataclass(frozen=True)
class TaskRunInfo:
    id: UUID
    task_code: str
    status: TaskRunStatus
    message: str | None
    error: str | None
    started_at: datetime | None
    finished_at: datetime | None
