"""
ledger_services -- stateful services above the kernel.

Accrual Runner (rules, runs, auto-reversals) and period close
orchestration.  These components own their transactions.
"""

from ledger_services._accrual_types import (
    AccrualFrequency,
    AccrualRuleInfo,
    AccrualRuleInput,
    AccrualRuleLineInput,
    AccrualRuleStatus,
    AccrualRuleType,
    AccrualRunInfo,
    AccrualRunStatus,
    LineDirection,
    ReversalBatchResult,
    ReverseTiming,
    RunOutcome,
)
from ledger_services.accrual_runner import AccrualRunner
from ledger_services.accrual_service import AccrualService
from ledger_services.period_close import AccrualChecker, ClosePreview, PeriodCloseOrchestrator

__all__ = [
    "AccrualChecker",
    "AccrualFrequency",
    "AccrualRuleInfo",
    "AccrualRuleInput",
    "AccrualRuleLineInput",
    "AccrualRuleStatus",
    "AccrualRuleType",
    "AccrualRunInfo",
    "AccrualRunStatus",
    "AccrualRunner",
    "AccrualService",
    "ClosePreview",
    "LineDirection",
    "PeriodCloseOrchestrator",
    "ReversalBatchResult",
    "ReverseTiming",
    "RunOutcome",
]
