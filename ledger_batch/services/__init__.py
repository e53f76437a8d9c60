"""
ledger_batch.services -- Polling scheduler.
"""

from ledger_batch.services.scheduler import TaskScheduler

__all__ = ["TaskScheduler"]
