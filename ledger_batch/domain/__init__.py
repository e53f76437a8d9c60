"""
ledger_batch.domain -- Pure types and schedule math for the scheduler.

ZERO I/O.  All types are frozen dataclasses.
"""

from ledger_batch.domain.types import (
    ScheduledTaskInfo,
    ScheduleType,
    TaskContext,
    TaskDefinition,
    TaskHandler,
    TaskResult,
    TaskRunInfo,
    TaskRunStatus,
)

__all__ = [
    "ScheduledTaskInfo",
    "ScheduleType",
    "TaskContext",
    "TaskDefinition",
    "TaskHandler",
    "TaskResult",
    "TaskRunInfo",
    "TaskRunStatus",
]
