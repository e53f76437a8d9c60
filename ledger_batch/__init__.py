"""
ledger_batch -- Background scheduler and the accrual jobs it runs.

Provides a persisted, polling task scheduler with per-task named leases,
exponential backoff and auto-disable after repeated failure, plus the
three accrual jobs (due accruals, period-end accruals, auto-reversals).

Architecture:
    ledger_batch/ is a top-level package.  Nothing in ledger_kernel/ or
    ledger_services/ imports from ledger_batch, except the model import
    in ledger_kernel.db.engine.import_all_models used for table creation.

Invariants:
    - Schedule evaluation is pure (ledger_batch.domain.schedule).
    - Clock injection: no datetime.now() calls.
    - One attempt at a time per task code across processes.
    - Failures back off, then disable the task at max_attempts.
"""
