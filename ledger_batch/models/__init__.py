"""
ledger_batch.models -- ORM models for scheduler persistence.

Architecture: ledger_batch/models. Imports from ledger_kernel.db.base only.
"""

from ledger_batch.models.scheduled_task import (
    ScheduledTaskModel,
    ScheduledTaskRunModel,
)

__all__ = [
    "ScheduledTaskModel",
    "ScheduledTaskRunModel",
]
