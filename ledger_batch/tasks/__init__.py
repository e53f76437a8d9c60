"""
ledger_batch.tasks -- Task registry and the accrual task implementations.

ZERO kernel/service imports in base.py.
accrual_tasks.py imports from ledger_kernel and ledger_services.
"""

from ledger_batch.tasks.accrual_tasks import (
    RUN_DUE_DAILY,
    RUN_PERIOD_END,
    RUN_REVERSALS_DAILY,
    RunAccrualReversalsTask,
    RunDueAccrualsTask,
    RunPeriodEndAccrualsTask,
    accrual_task_definitions,
)
from ledger_batch.tasks.base import TaskRegistry

__all__ = [
    "RUN_DUE_DAILY",
    "RUN_PERIOD_END",
    "RUN_REVERSALS_DAILY",
    "RunAccrualReversalsTask",
    "RunDueAccrualsTask",
    "RunPeriodEndAccrualsTask",
    "TaskRegistry",
    "accrual_task_definitions",
]
