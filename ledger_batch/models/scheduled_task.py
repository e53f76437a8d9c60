"""
ORM models for scheduler persistence.

ScheduledTaskModel   one row per task code (global, not per organisation)
ScheduledTaskRunModel one row per attempt, written as ``running`` and
                      completed in place with status/message/error.

Architecture: ledger_batch/models.  Imports from ledger_kernel.db.base only.
System-owned rows: no actor columns, so these extend ``Base`` rather than
``TrackedBase``.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import Base, UTCDateTime

from ledger_batch.domain.types import (
    ScheduledTaskInfo,
    ScheduleType,
    TaskRunInfo,
    TaskRunStatus,
)


class ScheduledTaskModel(Base):
    """Persisted schedule state for one task code."""

    __tablename__ = "scheduled_tasks"

    __table_args__ = (
        Index("ix_scheduled_tasks_due", "is_enabled", "next_run_at"),
    )

    code: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    schedule_type: Mapped[str] = mapped_column(String(30), nullable=False)
    interval_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    daily_hour_utc: Mapped[int | None] = mapped_column(Integer, nullable=True)
    daily_minute_utc: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    next_run_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True,
    )
    last_run_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True,
    )
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    locked_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True,
    )
    locked_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now(), nullable=False,
    )

    def to_dto(self) -> ScheduledTaskInfo:
        return ScheduledTaskInfo(
            code=self.code,
            name=self.name,
            schedule_type=ScheduleType(self.schedule_type),
            interval_seconds=self.interval_seconds,
            daily_hour_utc=self.daily_hour_utc,
            daily_minute_utc=self.daily_minute_utc,
            is_enabled=self.is_enabled,
            next_run_at=self.next_run_at,
            last_run_at=self.last_run_at,
            attempt_count=self.attempt_count,
            max_attempts=self.max_attempts,
            locked_at=self.locked_at,
            locked_by=self.locked_by,
        )


class ScheduledTaskRunModel(Base):
    """One attempt of a scheduled task."""

    __tablename__ = "scheduled_task_runs"

    __table_args__ = (
        Index("ix_scheduled_task_runs_code_started", "task_code", "started_at"),
    )

    task_code: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True,
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True,
    )

    def to_dto(self) -> TaskRunInfo:
        return TaskRunInfo(
            id=self.id,
            task_code=self.task_code,
            status=TaskRunStatus(self.status),
            message=self.message,
            error=self.error,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )
