"""
TaskScheduler -- persisted, lease-guarded polling scheduler.

Contract:
    Keeps one ``scheduled_tasks`` row per registered task, polls for due
    rows, and runs each due task's handler under a non-blocking named lease
    keyed by the task code.  Several processes may poll the same table; the
    lease guarantees one attempt at a time per task.

Architecture: ledger_batch/services.  Uses ledger_batch.domain.schedule
    for pure next-run / backoff math and ledger_kernel.db.locks for leases.

Attempt lifecycle (one task):
    1. Lease ``scheduled_task:{code}``; busy -> skip until next tick.
    2. Short transaction: re-check enabled + due, stamp locked_at /
       locked_by, insert a ``running`` run row.  Commit.
    3. Call the handler outside any transaction.
    4. Short transaction: success/skip -> attempt_count=0, last_run_at,
       next_run_at from the schedule; failure -> attempt_count+1 and
       backoff, or disable at max_attempts.  Clear lock fields, complete
       the run row.  Commit.
    5. Release the lease (always).

Invariants enforced:
    - All timestamps from the injected Clock, normalised to aware UTC.
    - Handler exceptions never escape tick(); they are recorded on the run
      and drive backoff.
    - Existing task rows are never overwritten on startup.
"""

from __future__ import annotations

import os
import socket
import threading
import traceback
from datetime import datetime, timezone
from typing import Callable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_kernel.db.engine import session_scope
from ledger_kernel.db.locks import try_lease
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.exceptions import ScheduledTaskNotFoundError, TaskExecutionError
from ledger_kernel.logging_config import LogContext, get_logger

from ledger_batch.domain.schedule import (
    DEFAULT_BACKOFF_MINUTES,
    DEFAULT_MAX_ATTEMPTS,
    backoff_delay,
    compute_next_run,
)
from ledger_batch.domain.types import (
    ScheduledTaskInfo,
    TaskContext,
    TaskDefinition,
    TaskRunInfo,
    TaskRunStatus,
)
from ledger_batch.models.scheduled_task import ScheduledTaskModel, ScheduledTaskRunModel
from ledger_batch.tasks.base import TaskRegistry

logger = get_logger("batch.scheduler")

DEFAULT_RUN_LIMIT = 50
MAX_RUN_LIMIT = 200


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def lease_name(task_code: str) -> str:
    return f"scheduled_task:{task_code}"


class TaskScheduler:
    """Polling scheduler over persisted task rows.

    Contract:
        - ``ensure_tasks()`` creates missing rows for registered tasks.
        - ``tick()`` runs up to ``batch_size`` due tasks; public for tests.
        - ``start()`` / ``stop()`` for background thread operation.

    Non-goals:
        - NOT a leader-elected scheduler: coordination is per task only.
        - Does NOT resume a failed attempt; the next due tick retries.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        registry: TaskRegistry,
        clock: Clock | None = None,
        batch_size: int = 5,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_minutes: tuple[int, ...] = DEFAULT_BACKOFF_MINUTES,
        poll_interval_seconds: float = 5.0,
        owner: str | None = None,
    ):
        self._session_factory = session_factory
        self._registry = registry
        self._clock = clock or SystemClock()
        self._batch_size = batch_size
        self._max_attempts = max_attempts
        self._backoff = tuple(backoff_minutes)
        self._poll_interval = poll_interval_seconds
        self._owner = owner or default_owner()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def owner(self) -> str:
        return self._owner

    # -------------------------------------------------------------------------
    # Startup
    # -------------------------------------------------------------------------

    def ensure_tasks(self) -> int:
        """Insert a row for every registered task that has none.

        Returns the number of rows created.
        """
        created = 0
        with session_scope(self._session_factory) as session:
            existing = set(session.execute(select(ScheduledTaskModel.code)).scalars().all())
            now = self._now()
            for definition in self._registry.definitions():
                if definition.code in existing:
                    continue
                task = ScheduledTaskModel(
                    code=definition.code,
                    name=definition.name,
                    schedule_type=definition.schedule_type.value,
                    interval_seconds=definition.interval_seconds,
                    daily_hour_utc=definition.daily_hour_utc,
                    daily_minute_utc=definition.daily_minute_utc,
                    is_enabled=definition.enabled,
                    next_run_at=self._next_run(definition, now),
                    attempt_count=0,
                    max_attempts=self._max_attempts,
                )
                try:
                    with session.begin_nested():
                        session.add(task)
                        session.flush()
                except IntegrityError:
                    # Another instance registered it first.
                    continue
                created += 1
                logger.info(
                    "scheduled_task_registered",
                    extra={"task_code": definition.code, "next_run_at": task.next_run_at},
                )
        return created

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    def tick(self) -> int:
        """Run due tasks once.  Returns how many attempts were executed."""
        now = self._now()
        with session_scope(self._session_factory) as session:
            engine = session.get_bind()
            due = session.execute(
                select(ScheduledTaskModel.code)
                .where(
                    ScheduledTaskModel.is_enabled.is_(True),
                    ScheduledTaskModel.next_run_at.is_not(None),
                    ScheduledTaskModel.next_run_at <= now,
                )
                .order_by(ScheduledTaskModel.next_run_at)
                .limit(self._batch_size)
            ).scalars().all()

        executed = 0
        for code in due:
            if self._stop_event.is_set():
                break
            try:
                if self._run_task(engine, code):
                    executed += 1
            except Exception:
                logger.exception("scheduled_task_attempt_error", extra={"task_code": code})
        return executed

    def start(self) -> None:
        """Ensure tasks, tick once, then poll on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self.ensure_tasks()
        self._stop_event.clear()
        self._safe_tick()

        self._thread = threading.Thread(
            target=self._run_loop,
            name="ledger-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "scheduler_started",
            extra={"owner": self._owner, "poll_interval": self._poll_interval},
        )

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the polling thread to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped", extra={"owner": self._owner})

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Administration
    # -------------------------------------------------------------------------

    def list_tasks(self) -> list[ScheduledTaskInfo]:
        with session_scope(self._session_factory) as session:
            tasks = session.execute(
                select(ScheduledTaskModel).order_by(ScheduledTaskModel.code)
            ).scalars().all()
            return [t.to_dto() for t in tasks]

    def set_enabled(self, code: str, enabled: bool) -> ScheduledTaskInfo:
        """Enable or disable a task.

        Re-enabling a disabled task clears its attempt count and schedules
        it from now.

        Raises:
            ScheduledTaskNotFoundError: Unknown task code.
        """
        with session_scope(self._session_factory) as session:
            task = self._lock_task(session, code)
            if task is None:
                raise ScheduledTaskNotFoundError(code)

            if enabled and not task.is_enabled:
                task.attempt_count = 0
                task.next_run_at = self._next_run(task, self._now())
            task.is_enabled = enabled
            session.flush()

            logger.info(
                "scheduled_task_toggled",
                extra={"task_code": code, "enabled": enabled},
            )
            return task.to_dto()

    def list_runs(self, code: str | None = None, limit: int | None = None) -> list[TaskRunInfo]:
        limit = min(limit or DEFAULT_RUN_LIMIT, MAX_RUN_LIMIT)
        with session_scope(self._session_factory) as session:
            stmt = select(ScheduledTaskRunModel)
            if code is not None:
                stmt = stmt.where(ScheduledTaskRunModel.task_code == code)
            stmt = stmt.order_by(ScheduledTaskRunModel.started_at.desc()).limit(limit)
            return [r.to_dto() for r in session.execute(stmt).scalars().all()]

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        """Background polling loop. Exits when stop_event is set."""
        while not self._stop_event.wait(timeout=self._poll_interval):
            self._safe_tick()

    def _safe_tick(self) -> None:
        try:
            self.tick()
        except Exception:
            logger.exception("scheduler_tick_failed")

    def _run_task(self, engine: Engine, code: str) -> bool:
        if code not in self._registry:
            self._disable_unregistered(code)
            return False
        definition = self._registry.get(code)

        with try_lease(engine, lease_name(code)) as acquired:
            if not acquired:
                logger.info("scheduled_task_lease_busy", extra={"task_code": code})
                return False

            started = self._begin_attempt(code)
            if started is None:
                return False
            run_id, attempt_count = started

            status, message, error = self._invoke(definition, run_id, attempt_count)
            self._finish_attempt(code, run_id, status, message, error)
        return True

    def _begin_attempt(self, code: str) -> tuple[UUID, int] | None:
        with session_scope(self._session_factory) as session:
            task = self._lock_task(session, code)
            now = self._now()
            if (
                task is None
                or not task.is_enabled
                or task.next_run_at is None
                or task.next_run_at > now
            ):
                # Another instance ran it between our poll and our lease.
                return None

            task.locked_at = now
            task.locked_by = self._owner
            run = ScheduledTaskRunModel(
                task_code=code,
                status=TaskRunStatus.RUNNING.value,
                message=f"Started by {self._owner}",
                started_at=now,
            )
            session.add(run)
            session.flush()
            return run.id, task.attempt_count

    def _invoke(
        self, definition: TaskDefinition, run_id: UUID, attempt_count: int
    ) -> tuple[TaskRunStatus, str, str | None]:
        context = TaskContext(
            task_code=definition.code,
            run_id=run_id,
            now=self._now(),
            today=self._clock.today_utc(),
            owner=self._owner,
            attempt=attempt_count,
        )
        try:
            with LogContext.bind(task_code=definition.code):
                result = definition.handler(context)
        except Exception as exc:
            if isinstance(exc, TaskExecutionError):
                failure = exc
            else:
                failure = TaskExecutionError(definition.code, f"{type(exc).__name__}: {exc}")
            logger.exception(
                "scheduled_task_failed",
                extra={"task_code": definition.code, "error_code": failure.code},
            )
            return TaskRunStatus.FAILED, "Task failed", f"{failure}\n{traceback.format_exc()}"

        if result is not None and result.skipped:
            return TaskRunStatus.SKIPPED, result.message or "Skipped", None
        message = result.message if result is not None and result.message else "OK"
        return TaskRunStatus.SUCCESS, message, None

    def _finish_attempt(
        self,
        code: str,
        run_id: UUID,
        status: TaskRunStatus,
        message: str,
        error: str | None,
    ) -> None:
        with session_scope(self._session_factory) as session:
            task = self._lock_task(session, code)
            now = self._now()

            if status == TaskRunStatus.FAILED:
                task.attempt_count += 1
                if task.attempt_count >= task.max_attempts:
                    task.is_enabled = False
                    logger.warning(
                        "scheduled_task_disabled",
                        extra={"task_code": code, "attempt_count": task.attempt_count},
                    )
                else:
                    task.next_run_at = now + backoff_delay(task.attempt_count, self._backoff)
            else:
                task.attempt_count = 0
                task.last_run_at = now
                task.next_run_at = self._next_run(task, now)
            task.locked_at = None
            task.locked_by = None

            run = session.get(ScheduledTaskRunModel, run_id)
            run.status = status.value
            run.message = message
            run.error = error
            run.finished_at = now

        logger.info(
            "scheduled_task_completed",
            extra={"task_code": code, "status": status.value, "run_message": message},
        )

    def _disable_unregistered(self, code: str) -> None:
        with session_scope(self._session_factory) as session:
            task = self._lock_task(session, code)
            if task is None or not task.is_enabled:
                return
            now = self._now()
            task.is_enabled = False
            session.add(
                ScheduledTaskRunModel(
                    task_code=code,
                    status=TaskRunStatus.FAILED.value,
                    message="No handler registered",
                    started_at=now,
                    finished_at=now,
                )
            )
        logger.warning("scheduled_task_no_handler", extra={"task_code": code})

    def _now(self) -> datetime:
        """Clock time as aware UTC; naive clock values are taken as UTC."""
        now = self._clock.now()
        if now.tzinfo is None:
            return now.replace(tzinfo=timezone.utc)
        return now.astimezone(timezone.utc)

    @staticmethod
    def _lock_task(session: Session, code: str) -> ScheduledTaskModel | None:
        return session.execute(
            select(ScheduledTaskModel)
            .where(ScheduledTaskModel.code == code)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    @staticmethod
    def _next_run(schedule, now):
        """``schedule`` is a TaskDefinition or a ScheduledTaskModel."""
        return compute_next_run(
            schedule.schedule_type,
            now,
            interval_seconds=schedule.interval_seconds,
            daily_hour_utc=schedule.daily_hour_utc,
            daily_minute_utc=schedule.daily_minute_utc,
        )
