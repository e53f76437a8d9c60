"""
ledger_services.period_close -- period close with accrual guards.

Responsibility:
    Close a period through the full guard sequence and produce a read-only
    close preview.  The kernel PeriodService owns the state transition;
    this orchestrator adds the accrual guards and the period-end accrual
    run that precedes them.

Architecture position:
    Services -- owns its transaction boundaries (session factory).
    Composes PeriodService and an optional ``AccrualChecker`` (normally
    the AccrualRunner).  With no checker the accrual guards are skipped.

Close sequence:
    1. Transaction A: lock the period row, require open, require no draft
       journals.  Commit (releases the lock).
    2. If a checker is present and auto_run_accruals: run PERIOD_END
       accruals for the period (their own transactions).
    3. Transaction B: re-lock, re-check open + drafts, require every
       active required PERIOD_END rule to have a posted/reversed run,
       require no failed runs, then mark closed.

    Any failure leaves the period open and unmodified.  Nothing is retried.

Failure modes:
    PeriodNotFoundError, PeriodNotOpenError, OpenDraftsError,
    MissingRequiredAccrualsError, FailedAccrualRunsError.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol
from uuid import UUID

from sqlalchemy.orm import Session

from ledger_kernel.db.engine import session_scope
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.dtos import FiscalPeriodInfo
from ledger_kernel.exceptions import FailedAccrualRunsError, MissingRequiredAccrualsError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.services.period_service import PeriodService
from ledger_services._accrual_types import AccrualRuleInfo, RunOutcome

logger = get_logger("services.period_close")


class AccrualChecker(Protocol):
    """What period close needs from the accrual subsystem."""

    def run_period_end_accruals(
        self, organization_id: UUID, actor_id: UUID, period_id: UUID
    ) -> list[RunOutcome]: ...

    def missing_required_accruals(
        self, session: Session, organization_id: UUID, period_id: UUID
    ) -> list[AccrualRuleInfo]: ...

    def failed_run_count(
        self, session: Session, organization_id: UUID, period_id: UUID
    ) -> int: ...


# ---------------------------------------------------------------------------
# Preview DTOs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CloseBlocker:
    code: str
    message: str


@dataclass(frozen=True)
class MissingAccrual:
    rule_id: UUID
    code: str
    name: str


@dataclass(frozen=True)
class ClosePreview:
    period: FiscalPeriodInfo
    accruals_installed: bool
    draft_journal_count: int
    missing_required_accruals: tuple[MissingAccrual, ...] = field(default_factory=tuple)
    failed_accrual_run_count: int = 0
    blockers: tuple[CloseBlocker, ...] = field(default_factory=tuple)

    @property
    def can_close(self) -> bool:
        return not self.blockers


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class PeriodCloseOrchestrator:
    """
    Period close and close preview.

    Contract:
        Takes a session factory and commits its own transactions.  The
        caller must not hold an open transaction on the period.

    Guarantees:
        - ``close_period`` either returns the closed period or raises with
          the period still open.
        - ``close_preview`` never writes.

    Non-goals:
        - Reopen stays on PeriodService (no accrual guard applies).
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
        accrual_checker: AccrualChecker | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._accruals = accrual_checker

    @property
    def accruals_installed(self) -> bool:
        return self._accruals is not None

    def close_period(
        self,
        organization_id: UUID,
        period_id: UUID,
        actor_id: UUID,
        auto_run_accruals: bool = True,
    ) -> FiscalPeriodInfo:
        """Run the close sequence.  See module docstring for the steps."""
        with session_scope(self._session_factory) as session:
            period = PeriodService(session, self._clock).begin_close(organization_id, period_id)

        if self._accruals is not None and auto_run_accruals:
            outcomes = self._accruals.run_period_end_accruals(
                organization_id, actor_id, period_id
            )
            logger.info(
                "period_end_accruals_ran",
                extra={
                    "period_code": period.period_code,
                    "rule_count": len(outcomes),
                    "failed_count": sum(1 for o in outcomes if o.failed),
                },
            )

        with session_scope(self._session_factory) as session:
            periods = PeriodService(session, self._clock)
            period = periods.begin_close(organization_id, period_id)

            if self._accruals is not None:
                missing = self._accruals.missing_required_accruals(
                    session, organization_id, period_id
                )
                if missing:
                    logger.warning(
                        "period_close_blocked",
                        extra={
                            "period_code": period.period_code,
                            "missing_rules": [r.code for r in missing],
                        },
                    )
                    raise MissingRequiredAccrualsError(
                        period.period_code, [r.code for r in missing]
                    )

                failed = self._accruals.failed_run_count(session, organization_id, period_id)
                if failed:
                    logger.warning(
                        "period_close_blocked",
                        extra={"period_code": period.period_code, "failed_runs": failed},
                    )
                    raise FailedAccrualRunsError(period.period_code, failed)

            return periods.mark_closed(organization_id, period_id, actor_id)

    def close_preview(self, organization_id: UUID, period_id: UUID) -> ClosePreview:
        """Evaluate the close guards without changing anything."""
        with session_scope(self._session_factory) as session:
            periods = PeriodService(session, self._clock)
            period = periods.get_period(organization_id, period_id)
            drafts = periods.count_draft_entries(organization_id, period_id)

            missing: list[AccrualRuleInfo] = []
            failed = 0
            if self._accruals is not None:
                missing = self._accruals.missing_required_accruals(
                    session, organization_id, period_id
                )
                failed = self._accruals.failed_run_count(session, organization_id, period_id)

        blockers: list[CloseBlocker] = []
        if not period.is_open:
            blockers.append(
                CloseBlocker("period_not_open", f"Period status is {period.status.value}")
            )
        if drafts:
            blockers.append(
                CloseBlocker("draft_journals_exist", f"{drafts} draft journal(s) exist")
            )
        if missing:
            blockers.append(
                CloseBlocker(
                    "missing_required_accruals",
                    "Missing required period-end accruals: "
                    + ", ".join(r.code for r in missing),
                )
            )
        if failed:
            blockers.append(
                CloseBlocker("failed_accrual_runs", f"{failed} accrual run(s) failed for this period")
            )

        return ClosePreview(
            period=period,
            accruals_installed=self.accruals_installed,
            draft_journal_count=drafts,
            missing_required_accruals=tuple(
                MissingAccrual(rule_id=r.id, code=r.code, name=r.name) for r in missing
            ),
            failed_accrual_run_count=failed,
            blockers=tuple(blockers),
        )
