"""
Typed Exception Hierarchy for the Ledger Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the posting core (invoice, bill and payment flows, period close,
the scheduler) must react to *kinds* of failure, not to message wording:

    try:
        journals.post_draft(org_id, journal_id, actor_id)
    except PeriodNotOpenError as e:
        api_response(status=e.http_status, code=e.code, period=e.period_code)

Every class below carries:
  1. a ``code`` class attribute (machine-readable, API-safe),
  2. an ``http_status`` class attribute (400 / 404 / 409 / 500 equivalence),
  3. structured attributes set in ``__init__`` (never just a message).

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    LedgerError (base)
    |
    +-- ValidationError                      400  bad input shape or values
    |   +-- InvalidJournalLineError
    |   +-- UnbalancedEntryError
    |   +-- InvalidAccountError
    |   +-- InvalidPeriodRangeError
    |   +-- InvalidAccrualRuleError
    |
    +-- NotFoundError                        404  missing entity
    |   +-- AccountNotFoundError
    |   +-- PeriodNotFoundError
    |   +-- JournalNotFoundError
    |   +-- AccrualRuleNotFoundError
    |   +-- AccrualRunNotFoundError
    |   +-- ScheduledTaskNotFoundError
    |
    +-- ConflictError                        409  state-incompatible request
    |   +-- DuplicateCodeError
    |   +-- PeriodOverlapError
    |   +-- PeriodNotOpenError
    |   +-- PeriodNotClosedError
    |   +-- EntryDateOutOfRangeError
    |   +-- NoOpenPeriodError
    |   +-- NotDraftError
    |   +-- EntryNotPostedError
    |   +-- EntryAlreadyReversedError
    |   +-- OpenDraftsError
    |   +-- MissingRequiredAccrualsError
    |   +-- FailedAccrualRunsError
    |
    +-- InternalInconsistencyError           500  structurally impossible state
    |
    +-- TaskExecutionError                   500  scheduled handler failure

===============================================================================
PROPAGATION
===============================================================================

  - Validation and conflict errors abort the whole transaction.
  - Accrual batch runners record per-item failures and keep going.
  - TaskExecutionError is recorded by the scheduler and never escapes the
    poll loop.
"""


class LedgerError(Exception):
    """
    Base exception for all ledger errors.

    All subclasses define ``code`` and ``http_status``.
    """

    code: str = "LEDGER_ERROR"
    http_status: int = 500


# Taxonomy roots


class ValidationError(LedgerError):
    """Bad input shape or values."""

    code: str = "VALIDATION_ERROR"
    http_status: int = 400

    def __init__(self, message: str):
        super().__init__(message)


class NotFoundError(LedgerError):
    """Referenced entity does not exist in the organisation."""

    code: str = "NOT_FOUND"
    http_status: int = 404


class ConflictError(LedgerError):
    """Request is incompatible with the current state."""

    code: str = "CONFLICT"
    http_status: int = 409


class InternalInconsistencyError(LedgerError):
    """
    An invariant that should be structurally impossible to break was broken.

    Never expected; always fatal to the operation.
    """

    code: str = "INTERNAL_INCONSISTENCY"
    http_status: int = 500

    def __init__(self, message: str, **details: object):
        self.details = details
        super().__init__(message)


class TaskExecutionError(LedgerError):
    """A scheduled task handler raised."""

    code: str = "TASK_EXECUTION_FAILED"
    http_status: int = 500

    def __init__(self, task_code: str, message: str):
        self.task_code = task_code
        self.detail = message
        super().__init__(f"Task {task_code} failed: {message}")


# Validation


class InvalidJournalLineError(ValidationError):
    """A journal or accrual line is malformed."""

    code: str = "INVALID_JOURNAL_LINE"

    def __init__(self, line_no: int | None, reason: str):
        self.line_no = line_no
        self.reason = reason
        prefix = f"Line {line_no}: " if line_no is not None else ""
        super().__init__(f"{prefix}{reason}")


class UnbalancedEntryError(ValidationError):
    """Debits do not equal credits to the cent."""

    code: str = "UNBALANCED_ENTRY"

    def __init__(self, debits: str, credits: str):
        self.debits = debits
        self.credits = credits
        super().__init__(f"Journal not balanced: debits={debits}, credits={credits}")


class InvalidAccountError(ValidationError):
    """Account cannot take postings (missing, not postable, or inactive)."""

    code: str = "INVALID_ACCOUNT"

    def __init__(self, account_id: str, reason: str):
        self.account_id = account_id
        self.reason = reason
        super().__init__(f"Invalid account {account_id}: {reason}")


class InvalidPeriodRangeError(ValidationError):
    """Period start date is after its end date."""

    code: str = "INVALID_PERIOD_RANGE"

    def __init__(self, start_date: str, end_date: str):
        self.start_date = start_date
        self.end_date = end_date
        super().__init__(f"start_date ({start_date}) cannot be after end_date ({end_date})")


class InvalidAccrualRuleError(ValidationError):
    """Accrual rule definition is inconsistent."""

    code: str = "INVALID_ACCRUAL_RULE"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


# Not found


class AccountNotFoundError(NotFoundError):
    code: str = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class PeriodNotFoundError(NotFoundError):
    code: str = "PERIOD_NOT_FOUND"

    def __init__(self, period_id: str):
        self.period_id = period_id
        super().__init__(f"Period not found: {period_id}")


class JournalNotFoundError(NotFoundError):
    code: str = "JOURNAL_NOT_FOUND"

    def __init__(self, journal_id: str):
        self.journal_id = journal_id
        super().__init__(f"Journal not found: {journal_id}")


class AccrualRuleNotFoundError(NotFoundError):
    code: str = "ACCRUAL_RULE_NOT_FOUND"

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Accrual rule not found: {rule_id}")


class AccrualRunNotFoundError(NotFoundError):
    code: str = "ACCRUAL_RUN_NOT_FOUND"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Accrual run not found: {run_id}")


class ScheduledTaskNotFoundError(NotFoundError):
    code: str = "SCHEDULED_TASK_NOT_FOUND"

    def __init__(self, task_code: str):
        self.task_code = task_code
        super().__init__(f"Scheduled task not found: {task_code}")


# Conflict


class DuplicateCodeError(ConflictError):
    """An entity with this code already exists in the organisation."""

    code: str = "DUPLICATE_CODE"

    def __init__(self, entity: str, entity_code: str):
        self.entity = entity
        self.entity_code = entity_code
        super().__init__(f"{entity} code already exists: {entity_code}")


class PeriodOverlapError(ConflictError):
    """New period date range overlaps an existing period of the organisation."""

    code: str = "PERIOD_OVERLAP"

    def __init__(
        self,
        new_period_code: str,
        existing_period_code: str,
        overlap_start: str,
        overlap_end: str,
    ):
        self.new_period_code = new_period_code
        self.existing_period_code = existing_period_code
        self.overlap_start = overlap_start
        self.overlap_end = overlap_end
        super().__init__(
            f"Period {new_period_code} overlaps with {existing_period_code} "
            f"({overlap_start} to {overlap_end})"
        )


class PeriodNotOpenError(ConflictError):
    code: str = "PERIOD_NOT_OPEN"

    def __init__(self, period_code: str, status: str):
        self.period_code = period_code
        self.status = status
        super().__init__(f"Period {period_code} is not open (status={status})")


class PeriodNotClosedError(ConflictError):
    code: str = "PERIOD_NOT_CLOSED"

    def __init__(self, period_code: str, status: str):
        self.period_code = period_code
        self.status = status
        super().__init__(f"Only closed periods can be reopened ({period_code} is {status})")


class EntryDateOutOfRangeError(ConflictError):
    code: str = "ENTRY_DATE_OUT_OF_RANGE"

    def __init__(self, entry_date: str, period_code: str, start_date: str, end_date: str):
        self.entry_date = entry_date
        self.period_code = period_code
        self.start_date = start_date
        self.end_date = end_date
        super().__init__(
            f"Entry date {entry_date} is outside period {period_code} "
            f"({start_date} to {end_date})"
        )


class NoOpenPeriodError(ConflictError):
    code: str = "NO_OPEN_PERIOD"

    def __init__(self, for_date: str):
        self.for_date = for_date
        super().__init__(f"No open accounting period for date {for_date}")


class NotDraftError(ConflictError):
    code: str = "NOT_DRAFT"

    def __init__(self, journal_id: str, status: str):
        self.journal_id = journal_id
        self.status = status
        super().__init__(f"Only draft journals can be posted ({journal_id} is {status})")


class EntryNotPostedError(ConflictError):
    code: str = "ENTRY_NOT_POSTED"

    def __init__(self, journal_id: str, status: str):
        self.journal_id = journal_id
        self.status = status
        super().__init__(f"Only posted journals can be reversed ({journal_id} is {status})")


class OpenDraftsError(ConflictError):
    code: str = "OPEN_DRAFTS"

    def __init__(self, period_code: str, draft_count: int):
        self.period_code = period_code
        self.draft_count = draft_count
        super().__init__(
            f"Cannot close period {period_code}: {draft_count} draft journal(s) exist"
        )


class MissingRequiredAccrualsError(ConflictError):
    code: str = "MISSING_REQUIRED_ACCRUALS"

    def __init__(self, period_code: str, rule_codes: list[str]):
        self.period_code = period_code
        self.rule_codes = rule_codes
        super().__init__(
            f"Cannot close period {period_code}: required accruals not posted "
            f"({', '.join(rule_codes)})"
        )


class FailedAccrualRunsError(ConflictError):
    code: str = "FAILED_ACCRUAL_RUNS"

    def __init__(self, period_code: str, failed_count: int):
        self.period_code = period_code
        self.failed_count = failed_count
        super().__init__(
            f"Cannot close period {period_code}: {failed_count} failed accrual run(s)"
        )


class EntryAlreadyReversedError(ConflictError):
    code: str = "ENTRY_ALREADY_REVERSED"

    def __init__(self, journal_id: str, reversal_journal_id: str):
        self.journal_id = journal_id
        self.reversal_journal_id = reversal_journal_id
        super().__init__(
            f"Journal {journal_id} was already reversed by {reversal_journal_id}"
        )
