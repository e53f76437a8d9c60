"""
LedgerOrchestrator -- DI container for the background side of the ledger.

Contract:
    Wires the AccrualRunner, the PeriodCloseOrchestrator, the accrual task
    definitions and the TaskScheduler around one session factory and one
    Clock.  Single place where these dependencies are composed.

Architecture: ledger_batch (top-level).  Canonical entry point for
    operator scripts.  Nothing in ledger_kernel or ledger_services imports
    from here.

Invariants enforced:
    - Clock injection: every component receives the same Clock.
    - Config isolation: only this module and scripts read LedgerConfig.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable

from sqlalchemy.orm import Session

from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.logging_config import get_logger
from ledger_services.accrual_runner import AccrualRunner
from ledger_services.accrual_service import AccrualService
from ledger_services.period_close import PeriodCloseOrchestrator

from ledger_batch.services.scheduler import TaskScheduler
from ledger_batch.tasks.accrual_tasks import accrual_task_definitions
from ledger_batch.tasks.base import TaskRegistry

if TYPE_CHECKING:
    from ledger_config.schema import LedgerConfig

logger = get_logger("batch.orchestrator")


class LedgerOrchestrator:
    """DI container for accruals, period close and the scheduler.

    Contract:
        - ``from_config()`` creates a fully wired orchestrator.
        - ``create_scheduler()`` returns a TaskScheduler for background use.
        - ``accrual_runner`` / ``period_close`` are shared instances.

    Non-goals:
        - Does NOT start the scheduler automatically -- caller decides.
        - Does NOT create tables or initialise the engine.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
        task_registry: TaskRegistry | None = None,
        config: LedgerConfig | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._config = config
        self._accrual_runner = AccrualRunner(session_factory, clock=self._clock)
        self._period_close = PeriodCloseOrchestrator(
            session_factory,
            clock=self._clock,
            accrual_checker=self._accrual_runner,
        )
        self._task_registry = (
            task_registry if task_registry is not None else self._default_task_registry()
        )

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        config: LedgerConfig,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
    ) -> LedgerOrchestrator:
        """Create a fully wired orchestrator from a loaded configuration set."""
        return cls(session_factory=session_factory, clock=clock, config=config)

    # -------------------------------------------------------------------------
    # Scheduler
    # -------------------------------------------------------------------------

    def create_scheduler(self, poll_interval_seconds: float | None = None) -> TaskScheduler:
        """Create a TaskScheduler over the orchestrator's task registry.

        Args:
            poll_interval_seconds: Overrides the configured interval.
        """
        kwargs = {}
        if self._config is not None:
            scheduler = self._config.scheduler
            kwargs = {
                "batch_size": scheduler.batch_size,
                "max_attempts": scheduler.max_attempts,
                "backoff_minutes": scheduler.backoff_minutes,
                "poll_interval_seconds": scheduler.poll_interval_seconds,
            }
        if poll_interval_seconds is not None:
            kwargs["poll_interval_seconds"] = poll_interval_seconds

        logger.info(
            "scheduler_created",
            extra={"task_codes": list(self._task_registry.list_codes())},
        )
        return TaskScheduler(
            self._session_factory,
            self._task_registry,
            clock=self._clock,
            **kwargs,
        )

    def accrual_service(self, session: Session) -> AccrualService:
        """Flush-only AccrualService with the configured run-listing limits."""
        if self._config is None:
            return AccrualService(session)
        return AccrualService(
            session,
            run_limit_default=self._config.accruals.run_limit_default,
            run_limit_max=self._config.accruals.run_limit_max,
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def task_registry(self) -> TaskRegistry:
        return self._task_registry

    @property
    def accrual_runner(self) -> AccrualRunner:
        return self._accrual_runner

    @property
    def period_close(self) -> PeriodCloseOrchestrator:
        return self._period_close

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _default_task_registry(self) -> TaskRegistry:
        schedules = {}
        system_email = system_name = None
        if self._config is not None:
            schedules = {task.code: task for task in self._config.tasks}
            system_email = self._config.system_actor.email
            system_name = self._config.system_actor.display_name

        return TaskRegistry(
            accrual_task_definitions(
                self._session_factory,
                self._accrual_runner,
                schedules=schedules,
                system_email=system_email,
                system_name=system_name,
            )
        )
