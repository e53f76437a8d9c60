"""
LedgerConfig schema.

Frozen dataclasses parsed from a configuration set YAML by
``ledger_config.loader``.  Every field has a default so a partial file is
valid; the loader rejects values of the wrong shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseConfig:
    url: str = "sqlite:///ledger.db"
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10


@dataclass(frozen=True)
class SchedulerConfig:
    """Polling scheduler tuning."""

    poll_interval_seconds: float = 5.0
    batch_size: int = 5
    max_attempts: int = 5
    backoff_minutes: tuple[int, ...] = (1, 5, 15, 60)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TaskScheduleConfig:
    """Schedule override for one task code."""

    code: str
    schedule_type: str = "daily_at_utc"  # daily_at_utc | interval_seconds
    interval_seconds: int | None = None
    daily_hour_utc: int | None = None
    daily_minute_utc: int | None = None
    enabled: bool = True


# ---------------------------------------------------------------------------
# Accruals / actors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AccrualConfig:
    run_limit_default: int = 50
    run_limit_max: int = 200


@dataclass(frozen=True)
class SystemActorConfig:
    email: str = "system@ledger.local"
    display_name: str = "System"


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerConfig:
    """One named configuration set."""

    name: str = "default"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    tasks: tuple[TaskScheduleConfig, ...] = ()
    accruals: AccrualConfig = field(default_factory=AccrualConfig)
    system_actor: SystemActorConfig = field(default_factory=SystemActorConfig)

    def task(self, code: str) -> TaskScheduleConfig | None:
        for task in self.tasks:
            if task.code == code:
                return task
        return None
