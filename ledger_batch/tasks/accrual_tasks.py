"""
Scheduled tasks: accruals (due daily, period end, reversals).

Each task walks every organisation known to the ledger, resolves that
organisation's system actor and hands the work to ``AccrualRunner``.  One
organisation failing does not stop the others.  The due and period-end tasks
fail as a whole when any organisation failed, so the scheduler backs off and
retries.  Reversal failures are recorded per posting by the runner and only
counted in the task message; a permanently unreversible accrual must not
disable reversals for every organisation.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Callable
from uuid import UUID

from sqlalchemy.orm import Session

from ledger_kernel.db.engine import session_scope
from ledger_kernel.exceptions import TaskExecutionError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_kernel.services.period_service import PeriodService
from ledger_kernel.services.system_actor_service import SystemActorService
from ledger_services.accrual_runner import AccrualRunner

from ledger_batch.domain.types import ScheduleType, TaskContext, TaskDefinition, TaskResult

if TYPE_CHECKING:
    from ledger_config.schema import TaskScheduleConfig

logger = get_logger("batch.tasks.accruals")

RUN_DUE_DAILY = "accruals.run_due_daily"
RUN_PERIOD_END = "accruals.run_period_end"
RUN_REVERSALS_DAILY = "accruals.run_reversals_daily"

# (hour, minute) UTC
DEFAULT_SCHEDULES: dict[str, tuple[int, int]] = {
    RUN_DUE_DAILY: (0, 15),
    RUN_REVERSALS_DAILY: (0, 30),
    RUN_PERIOD_END: (23, 30),
}


class _AccrualTask:
    """Shared organisation loop.  Subclasses implement ``_run_for``."""

    code: str = ""
    name: str = ""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        runner: AccrualRunner,
        system_email: str | None = None,
        system_name: str | None = None,
    ):
        self._session_factory = session_factory
        self._runner = runner
        self._actor_kwargs = {}
        if system_email:
            self._actor_kwargs["email"] = system_email
        if system_name:
            self._actor_kwargs["display_name"] = system_name

    def __call__(self, context: TaskContext) -> TaskResult:
        with session_scope(self._session_factory) as session:
            organization_ids = LedgerSelector(session).list_organization_ids()

        if not organization_ids:
            return TaskResult(skipped=True, message="No organizations")

        done = 0
        failed_items = 0
        failures: list[str] = []
        for organization_id in organization_ids:
            try:
                actor_id = self._system_actor(organization_id)
                org_done, org_failed = self._run_for(organization_id, actor_id, context)
            except Exception as exc:
                detail = exc.detail if isinstance(exc, TaskExecutionError) else str(exc)
                failures.append(f"{organization_id}: {detail}")
                logger.exception(
                    "accrual_task_org_failed",
                    extra={"task_code": self.code, "organization_id": str(organization_id)},
                )
                continue
            done += org_done
            failed_items += org_failed

        if failures:
            raise TaskExecutionError(self.code, "; ".join(failures))
        message = self._summary(len(organization_ids), done)
        if failed_items:
            message = f"{message}, {failed_items} failed"
        return TaskResult(message=message)

    def definition(self, schedule: TaskScheduleConfig | None = None) -> TaskDefinition:
        """Definition on the default daily time unless ``schedule`` overrides it."""
        if schedule is None:
            hour, minute = DEFAULT_SCHEDULES[self.code]
            return TaskDefinition(
                code=self.code,
                name=self.name,
                schedule_type=ScheduleType.DAILY_AT_UTC,
                handler=self,
                daily_hour_utc=hour,
                daily_minute_utc=minute,
            )
        return TaskDefinition(
            code=self.code,
            name=self.name,
            schedule_type=ScheduleType(schedule.schedule_type),
            handler=self,
            interval_seconds=schedule.interval_seconds,
            daily_hour_utc=schedule.daily_hour_utc,
            daily_minute_utc=schedule.daily_minute_utc,
            enabled=schedule.enabled,
        )

    def _system_actor(self, organization_id: UUID) -> UUID:
        with session_scope(self._session_factory) as session:
            return SystemActorService(session, **self._actor_kwargs).get_system_actor_id(
                organization_id
            )

    def _run_for(
        self, organization_id: UUID, actor_id: UUID, context: TaskContext
    ) -> tuple[int, int]:
        """Returns (items done, items failed without failing the task)."""
        raise NotImplementedError

    def _summary(self, org_count: int, done: int) -> str:
        return f"{org_count} organizations, {done} processed"


class RunDueAccrualsTask(_AccrualTask):
    """Post every DAILY / WEEKLY / MONTHLY rule due today."""

    code = RUN_DUE_DAILY
    name = "Run due accruals"

    def _run_for(self, organization_id, actor_id, context):
        outcomes = self._runner.run_due_accruals(organization_id, actor_id, context.today)
        failed = [o for o in outcomes if o.failed]
        if failed:
            raise TaskExecutionError(
                self.code, f"{len(failed)} of {len(outcomes)} accrual runs failed",
            )
        return sum(1 for o in outcomes if not o.skipped), 0

    def _summary(self, org_count, done):
        return f"{org_count} organizations, {done} accruals posted"


class RunPeriodEndAccrualsTask(_AccrualTask):
    """Post PERIOD_END rules for every open period ending today."""

    code = RUN_PERIOD_END
    name = "Run period-end accruals"

    def _run_for(self, organization_id, actor_id, context):
        with session_scope(self._session_factory) as session:
            periods = [
                p for p in PeriodService(session).list_periods(organization_id)
                if p.is_open and p.end_date == context.today
            ]

        posted = 0
        for period in periods:
            outcomes = self._runner.run_period_end_accruals(organization_id, actor_id, period.id)
            failed = [o for o in outcomes if o.failed]
            if failed:
                raise TaskExecutionError(
                    self.code,
                    f"{len(failed)} period-end accrual runs failed for {period.period_code}",
                )
            posted += sum(1 for o in outcomes if not o.skipped)
        return posted, 0

    def _summary(self, org_count, done):
        return f"{org_count} organizations, {done} period-end accruals posted"


class RunAccrualReversalsTask(_AccrualTask):
    """Reverse auto-reversing accruals into the period covering today."""

    code = RUN_REVERSALS_DAILY
    name = "Run accrual reversals"

    def _run_for(self, organization_id, actor_id, context):
        with session_scope(self._session_factory) as session:
            period = PeriodService(session).find_open_period_covering(
                organization_id, context.today
            )
        if period is None:
            logger.info(
                "accrual_reversals_no_open_period",
                extra={"organization_id": str(organization_id), "today": context.today.isoformat()},
            )
            return 0, 0

        result = self._runner.run_reversals(organization_id, actor_id, period.id)
        if result.failed_count:
            logger.warning(
                "accrual_reversals_partially_failed",
                extra={
                    "organization_id": str(organization_id),
                    "failed_count": result.failed_count,
                },
            )
        return result.reversed_count, result.failed_count

    def _summary(self, org_count, done):
        return f"{org_count} organizations, {done} accruals reversed"


ACCRUAL_TASK_TYPES: tuple[type[_AccrualTask], ...] = (
    RunDueAccrualsTask,
    RunPeriodEndAccrualsTask,
    RunAccrualReversalsTask,
)


def accrual_task_definitions(
    session_factory: Callable[[], Session],
    runner: AccrualRunner,
    schedules: Mapping[str, TaskScheduleConfig] | None = None,
    system_email: str | None = None,
    system_name: str | None = None,
) -> tuple[TaskDefinition, ...]:
    """Build the three accrual task definitions.

    ``schedules`` maps task code to a schedule override; codes without one
    run on ``DEFAULT_SCHEDULES``.
    """
    schedules = schedules or {}
    return tuple(
        task.definition(schedules.get(task.code))
        for task in (
            task_type(session_factory, runner, system_email, system_name)
            for task_type in ACCRUAL_TASK_TYPES
        )
    )
