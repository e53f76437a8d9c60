"""
AccrualService -- accrual rule catalogue and run monitoring.

Responsibility:
    Create and list accrual rules (template + fixed lines), toggle rule
    status, list and fetch runs, and answer the two period-close accrual
    guards (missing required PERIOD_END runs, failed runs).

Architecture position:
    Services -- flush-only over a caller-owned Session.  AccrualRunner and
    PeriodCloseOrchestrator build one per transaction.

Invariants enforced:
    - Rule code unique per organisation.
    - Rule lines: at least two, dc debit|credit, amount > 0 with at most
      two decimals, accounts postable+active, debits == credits.
    - REVERSING rules have auto_reverse=True; reverse_timing, when set, is
      NEXT_PERIOD_START.
    - end_date >= start_date.

Failure modes:
    - InvalidAccrualRuleError / InvalidAccountError on create.
    - DuplicateCodeError on a reused code.
    - AccrualRuleNotFoundError, AccrualRunNotFoundError on lookups.
"""

from datetime import date
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_kernel.db.types import ZERO, parse_money
from ledger_kernel.exceptions import (
    AccrualRuleNotFoundError,
    AccrualRunNotFoundError,
    DuplicateCodeError,
    InvalidAccountError,
    InvalidAccrualRuleError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.account import AccountStatus
from ledger_kernel.services.account_service import AccountService
from ledger_kernel.services.base import BaseService
from ledger_services._accrual_types import (
    AccrualFrequency,
    AccrualRuleInfo,
    AccrualRuleInput,
    AccrualRuleStatus,
    AccrualRuleType,
    AccrualRunInfo,
    AccrualRunStatus,
    LineDirection,
    ReverseTiming,
)
from ledger_services.orm import AccrualRuleLineModel, AccrualRuleModel, AccrualRunModel

logger = get_logger("services.accrual")

MAX_CODE_LENGTH = 50
MAX_NAME_LENGTH = 200
MAX_LINE_DESCRIPTION_LENGTH = 300
MIN_RULE_LINES = 2

DEFAULT_RUN_LIMIT = 50
MAX_RUN_LIMIT = 200

# Statuses that satisfy a required PERIOD_END rule
_SATISFYING_STATUSES = (AccrualRunStatus.POSTED.value, AccrualRunStatus.REVERSED.value)


class AccrualService(BaseService[AccrualRuleModel]):
    """
    Accrual rule and run catalogue.

    Contract:
        Organisation id first on every call; returns frozen DTOs from
        ``_accrual_types``.  Never commits.

    Non-goals:
        - Does not execute rules (AccrualRunner does).
        - Percentage or derived amounts: lines are fixed amounts only.
    """

    def __init__(
        self,
        session: Session,
        accounts: AccountService | None = None,
        run_limit_default: int = DEFAULT_RUN_LIMIT,
        run_limit_max: int = MAX_RUN_LIMIT,
    ):
        super().__init__(session)
        self._accounts = accounts or AccountService(session)
        self._run_limit_default = run_limit_default
        self._run_limit_max = run_limit_max

    # -------------------------------------------------------------------------
    # Rules
    # -------------------------------------------------------------------------

    def create_rule(
        self,
        organization_id: UUID,
        actor_id: UUID,
        payload: AccrualRuleInput,
    ) -> AccrualRuleInfo:
        """
        Validate and persist a rule with its lines in one flush.

        Raises:
            InvalidAccrualRuleError, InvalidAccountError, DuplicateCodeError.
        """
        code, name, rule_type, frequency, reverse_timing, status = self._validate_header(payload)
        lines = self._validate_lines(organization_id, payload)

        existing = self.session.execute(
            select(AccrualRuleModel.id).where(
                AccrualRuleModel.organization_id == organization_id,
                AccrualRuleModel.code == code,
            )
        ).scalar_one_or_none()
        if existing is not None:
            raise DuplicateCodeError("AccrualRule", code)

        rule = AccrualRuleModel(
            organization_id=organization_id,
            code=code,
            name=name,
            rule_type=rule_type.value,
            frequency=frequency.value,
            auto_reverse=bool(payload.auto_reverse),
            reverse_timing=reverse_timing.value if reverse_timing else None,
            start_date=payload.start_date,
            end_date=payload.end_date,
            status=status.value,
            is_required=bool(payload.is_required),
            created_by_id=actor_id,
        )
        rule.lines = [
            AccrualRuleLineModel(
                line_no=line_no,
                account_id=account_id,
                dc=dc.value,
                amount_type="fixed",
                amount_value=amount,
                description=description,
                created_by_id=actor_id,
            )
            for line_no, account_id, dc, amount, description in lines
        ]

        try:
            with self.session.begin_nested():
                self.session.add(rule)
                self.session.flush()
        except IntegrityError:
            raise DuplicateCodeError("AccrualRule", code) from None

        logger.info(
            "accrual_rule_created",
            extra={
                "organization_id": str(organization_id),
                "rule_id": str(rule.id),
                "rule_code": rule.code,
                "rule_type": rule.rule_type,
                "frequency": rule.frequency,
                "actor_id": str(actor_id),
            },
        )
        return rule.to_dto()

    def list_rules(
        self,
        organization_id: UUID,
        status: AccrualRuleStatus | None = None,
        frequency: AccrualFrequency | None = None,
    ) -> list[AccrualRuleInfo]:
        stmt = select(AccrualRuleModel).where(
            AccrualRuleModel.organization_id == organization_id
        )
        if status is not None:
            stmt = stmt.where(AccrualRuleModel.status == AccrualRuleStatus(status).value)
        if frequency is not None:
            stmt = stmt.where(AccrualRuleModel.frequency == AccrualFrequency(frequency).value)
        stmt = stmt.order_by(AccrualRuleModel.created_at, AccrualRuleModel.code)
        return [r.to_dto() for r in self.session.execute(stmt).scalars().all()]

    def get_rule(self, organization_id: UUID, rule_id: UUID) -> AccrualRuleInfo:
        return self._require_rule(organization_id, rule_id).to_dto()

    def set_rule_status(
        self,
        organization_id: UUID,
        rule_id: UUID,
        actor_id: UUID,
        status: AccrualRuleStatus,
    ) -> AccrualRuleInfo:
        try:
            status = AccrualRuleStatus(status)
        except ValueError:
            raise InvalidAccrualRuleError(f"Unknown rule status: {status}") from None

        rule = self._require_rule(organization_id, rule_id)
        rule.status = status.value
        rule.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "accrual_rule_status_changed",
            extra={
                "organization_id": str(organization_id),
                "rule_code": rule.code,
                "status": status.value,
            },
        )
        return rule.to_dto()

    def active_rules(
        self,
        organization_id: UUID,
        frequencies: tuple[AccrualFrequency, ...],
    ) -> list[AccrualRuleInfo]:
        """Active rules with one of ``frequencies``, oldest first."""
        stmt = (
            select(AccrualRuleModel)
            .where(
                AccrualRuleModel.organization_id == organization_id,
                AccrualRuleModel.status == AccrualRuleStatus.ACTIVE.value,
                AccrualRuleModel.frequency.in_([f.value for f in frequencies]),
            )
            .order_by(AccrualRuleModel.created_at, AccrualRuleModel.code)
        )
        return [r.to_dto() for r in self.session.execute(stmt).scalars().all()]

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    def list_runs(
        self,
        organization_id: UUID,
        rule_id: UUID | None = None,
        period_id: UUID | None = None,
        status: AccrualRunStatus | None = None,
        from_date: date | None = None,
        to_date: date | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[AccrualRunInfo]:
        """Runs newest as-of date first.  ``limit`` is capped at the configured max."""
        limit = min(limit or self._run_limit_default, self._run_limit_max)
        offset = max(offset or 0, 0)

        stmt = select(AccrualRunModel).where(AccrualRunModel.organization_id == organization_id)
        if rule_id is not None:
            stmt = stmt.where(AccrualRunModel.rule_id == rule_id)
        if period_id is not None:
            stmt = stmt.where(AccrualRunModel.period_id == period_id)
        if status is not None:
            stmt = stmt.where(AccrualRunModel.status == AccrualRunStatus(status).value)
        if from_date is not None:
            stmt = stmt.where(AccrualRunModel.as_of_date >= from_date)
        if to_date is not None:
            stmt = stmt.where(AccrualRunModel.as_of_date <= to_date)
        stmt = (
            stmt.order_by(AccrualRunModel.as_of_date.desc(), AccrualRunModel.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return [r.to_dto() for r in self.session.execute(stmt).scalars().all()]

    def get_run(self, organization_id: UUID, run_id: UUID) -> AccrualRunInfo:
        run = self.session.execute(
            select(AccrualRunModel).where(
                AccrualRunModel.organization_id == organization_id,
                AccrualRunModel.id == run_id,
            )
        ).scalar_one_or_none()
        if run is None:
            raise AccrualRunNotFoundError(str(run_id))
        return run.to_dto()

    # -------------------------------------------------------------------------
    # Close guards
    # -------------------------------------------------------------------------

    def missing_required_accruals(
        self, organization_id: UUID, period_id: UUID
    ) -> list[AccrualRuleInfo]:
        """Active required PERIOD_END rules with no posted/reversed run in the period."""
        satisfied = (
            select(AccrualRunModel.id)
            .where(
                AccrualRunModel.organization_id == organization_id,
                AccrualRunModel.rule_id == AccrualRuleModel.id,
                AccrualRunModel.period_id == period_id,
                AccrualRunModel.status.in_(_SATISFYING_STATUSES),
            )
            .exists()
        )
        stmt = (
            select(AccrualRuleModel)
            .where(
                AccrualRuleModel.organization_id == organization_id,
                AccrualRuleModel.status == AccrualRuleStatus.ACTIVE.value,
                AccrualRuleModel.frequency == AccrualFrequency.PERIOD_END.value,
                AccrualRuleModel.is_required.is_(True),
                ~satisfied,
            )
            .order_by(AccrualRuleModel.code)
        )
        return [r.to_dto() for r in self.session.execute(stmt).scalars().all()]

    def failed_run_count(self, organization_id: UUID, period_id: UUID) -> int:
        return self.session.execute(
            select(func.count(AccrualRunModel.id)).where(
                AccrualRunModel.organization_id == organization_id,
                AccrualRunModel.period_id == period_id,
                AccrualRunModel.status == AccrualRunStatus.FAILED.value,
            )
        ).scalar_one()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _require_rule(self, organization_id: UUID, rule_id: UUID) -> AccrualRuleModel:
        rule = self.session.execute(
            select(AccrualRuleModel).where(
                AccrualRuleModel.organization_id == organization_id,
                AccrualRuleModel.id == rule_id,
            )
        ).scalar_one_or_none()
        if rule is None:
            raise AccrualRuleNotFoundError(str(rule_id))
        return rule

    @staticmethod
    def _validate_header(payload: AccrualRuleInput):
        code = (payload.code or "").strip()
        name = (payload.name or "").strip()
        if not code or len(code) > MAX_CODE_LENGTH:
            raise InvalidAccrualRuleError(f"code must be 1-{MAX_CODE_LENGTH} characters")
        if not name or len(name) > MAX_NAME_LENGTH:
            raise InvalidAccrualRuleError(f"name must be 1-{MAX_NAME_LENGTH} characters")

        try:
            rule_type = AccrualRuleType(payload.rule_type)
            frequency = AccrualFrequency(payload.frequency)
            status = AccrualRuleStatus(payload.status)
            reverse_timing = (
                ReverseTiming(payload.reverse_timing) if payload.reverse_timing else None
            )
        except ValueError as exc:
            raise InvalidAccrualRuleError(str(exc)) from None

        if payload.start_date and payload.end_date and payload.end_date < payload.start_date:
            raise InvalidAccrualRuleError("end_date must be on or after start_date")

        if rule_type == AccrualRuleType.REVERSING and not payload.auto_reverse:
            raise InvalidAccrualRuleError("REVERSING rules must have auto_reverse=True")

        return code, name, rule_type, frequency, reverse_timing, status

    def _validate_lines(self, organization_id: UUID, payload: AccrualRuleInput):
        if len(payload.lines) < MIN_RULE_LINES:
            raise InvalidAccrualRuleError(f"at least {MIN_RULE_LINES} lines are required")

        normalized = []
        debits = ZERO
        credits = ZERO
        for line_no, line in enumerate(payload.lines, start=1):
            try:
                dc = LineDirection(line.dc)
            except ValueError:
                raise InvalidAccrualRuleError(f"line {line_no}: dc must be debit or credit") from None
            try:
                amount = parse_money(line.amount)
            except ValueError as exc:
                raise InvalidAccrualRuleError(f"line {line_no}: {exc}") from None
            if amount <= ZERO:
                raise InvalidAccrualRuleError(f"line {line_no}: amount must be > 0")
            if line.description and len(line.description) > MAX_LINE_DESCRIPTION_LENGTH:
                raise InvalidAccrualRuleError(
                    f"line {line_no}: description exceeds {MAX_LINE_DESCRIPTION_LENGTH} characters"
                )
            if dc == LineDirection.DEBIT:
                debits += amount
            else:
                credits += amount
            normalized.append((line_no, line.account_id, dc, amount, line.description))

        if debits != credits:
            raise InvalidAccrualRuleError(
                f"Rule lines not balanced (debit={debits}, credit={credits})"
            )

        found = self._accounts.get_posting_status(
            organization_id, list(dict.fromkeys(n[1] for n in normalized))
        )
        for _, account_id, _, _, _ in normalized:
            if account_id not in found:
                raise InvalidAccountError(str(account_id), "account not found")
            is_postable, status = found[account_id]
            if not is_postable:
                raise InvalidAccountError(str(account_id), "account is not postable")
            if status != AccountStatus.ACTIVE:
                raise InvalidAccountError(str(account_id), "account is not active")

        return normalized
